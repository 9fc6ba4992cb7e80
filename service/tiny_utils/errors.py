# 2026-10-12  tiny_utils/errors.py

from http.client import responses
from typing import Optional


class RequestNotValidError(ValueError):
    """
    Errors that should be corrected by users.
    Other exceptions are considered internal server errors, which should be
    fixed by developer.
    """
    def __init__(self, status_code: int, message: str):
        if not (400 <= status_code < 500):
            raise ValueError(
                f"status_code must be in [400, 500), but got {status_code}"
            )
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.reason = responses[status_code]

    def __str__(self) -> str:
        return "{:d} {:s}: {:s}".format(
            self.status_code, self.reason, self.message
        )


class MalformedTagError(RequestNotValidError):
    def __init__(self, message: str):
        super().__init__(400, message)


class EntryNotFoundError(RequestNotValidError):
    def __init__(self, message: str):
        super().__init__(404, message)


class PipelineError(RuntimeError):
    """
    Failures of the resolve -> fetch -> bundle pipeline.
    They abort the current request only, with a 5xx status.
    """
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.reason = responses[self.status_code]

    def __str__(self) -> str:
        return "{:d} {:s}: {:s}".format(
            self.status_code, self.reason, self.message
        )


class ResolutionError(PipelineError):
    """The registry has no version matching the request."""
    status_code = 502


class FetchIntegrityError(PipelineError):
    """A fetch finished without usable content in the store."""
    status_code = 502


class MissingManifestError(PipelineError):
    status_code = 500


class PipelineTimeoutError(PipelineError):
    status_code = 504


class BundleFailure(PipelineError):
    status_code = 500

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        # Bundler diagnostics (stderr), if any.
        self.detail = detail
