# 2026-10-16  tiny_utils/store.py

import heapq
import json
import logging
import os
import threading
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from functools import cmp_to_key
from typing import Optional, Protocol

from tiny_utils.errors import FetchIntegrityError, MissingManifestError
from tiny_utils.errors import PipelineTimeoutError
from tiny_utils.general import get_entry_size, size_text
from tiny_utils.node_ecosys import PackageManifest, ResolvedPackage
from tiny_utils.node_ecosys import VersionJson
from tiny_utils.registry import FetchResponse, ResolvedVersion
from tiny_utils.registry import UNPACKING_PREFIX


logger = logging.getLogger(__name__)

# Directory under the store that the bundler searches for bare imports.
SEARCH_ROOT_NAME = 'node_modules'


class VersionResolver(Protocol):
    def resolve(self, package_name: str, version_spec: str) -> ResolvedVersion:
        ...


class Fetcher(Protocol):
    def fetch(
            self,
            package_name: str,
            version: str,
            metadata: VersionJson,
            dest: str
            ) -> FetchResponse:
        ...


class PackageStore(object):
    """
    Materializes packages on local disk, keyed by `(name, version)`.

    At most one fetch runs per distinct version: later callers wait on the
    first caller's future (the store index). Fetches of all packages
    together are capped at `network_concurrency`.
    """

    def __init__(
            self,
            resolver: VersionResolver,
            fetcher: Fetcher,
            store_dir: str,
            network_concurrency: int = 1,
            fetch_timeout: Optional[float] = None
            ) -> None:
        if network_concurrency < 1:
            raise ValueError(
                f"network_concurrency must be >= 1, "
                f"but got {network_concurrency}"
            )
        self._resolver = resolver
        self._fetcher = fetcher
        self._store_dir = os.path.abspath(store_dir)
        self._fetch_timeout = fetch_timeout
        self._network_gate = threading.BoundedSemaphore(network_concurrency)
        self._index: dict[tuple[str, str], Future[ResolvedPackage]] = {}
        self._index_lock = threading.Lock()
        self._link_lock = threading.Lock()
        self._on_new_fetch: list[Callable[[ResolvedPackage], None]] = []

        os.makedirs(self.search_root, exist_ok=True)

    @property
    def store_dir(self) -> str:
        return self._store_dir

    @property
    def search_root(self) -> str:
        return os.path.join(self._store_dir, SEARCH_ROOT_NAME)

    @property
    def resolver(self) -> VersionResolver:
        return self._resolver

    def add_fetch_listener(
            self,
            listener: Callable[[ResolvedPackage], None]
            ) -> None:
        """Called after every fetch this store performs itself."""
        self._on_new_fetch.append(listener)

    def location_of(self, package_name: str, version: str) -> str:
        return os.path.join(
            self._store_dir, "{:s}@{:s}".format(package_name, version)
        )

    def materialize(
            self,
            package_name: str,
            version_spec: str
            ) -> ResolvedPackage:
        resolved = self._resolver.resolve(package_name, version_spec)
        key = (resolved.canonical_name, resolved.version)

        with self._index_lock:
            future = self._index.get(key)
            is_owner = future is None
            if is_owner:
                future = Future()
                self._index[key] = future

        if not is_owner:
            logger.debug("Waiting for in-flight fetch of %s@%s", *key)
            try:
                return future.result(timeout=self._fetch_timeout)
            except FutureTimeoutError as e:
                raise PipelineTimeoutError(
                    "timed out waiting for {:s}@{:s}".format(*key)
                ) from e

        try:
            package = self._fetch_and_read(resolved)
        except Exception as e:
            # Failures are not remembered; a later request tries again.
            with self._index_lock:
                self._index.pop(key, None)
            future.set_exception(e)
            raise

        future.set_result(package)
        for listener in self._on_new_fetch:
            try:
                listener(package)
            except Exception:
                logger.exception("Fetch listener failed for %s",
                                 package.local_name)
        return package

    def _fetch_and_read(self, resolved: ResolvedVersion) -> ResolvedPackage:
        dest = self.location_of(resolved.canonical_name, resolved.version)

        with self._network_gate:
            response = self._fetcher.fetch(
                resolved.canonical_name,
                resolved.version,
                resolved.metadata,
                dest,
            )

        if not (response.files_written and response.finished) \
                or not response.in_store_location:
            raise FetchIntegrityError(
                "fetch of {:s}@{:s} reported no usable store location".format(
                    resolved.canonical_name, resolved.version
                )
            )

        package_dir = os.path.join(response.in_store_location, 'package')
        manifest = read_manifest(package_dir)
        package = ResolvedPackage(
            resolved.canonical_name, resolved.version, manifest, package_dir
        )
        self._link_into_search_root(package)
        return package

    def _link_into_search_root(self, package: ResolvedPackage) -> None:
        """
        Make `node_modules/<name>` point to the package, so bare imports
        resolve. The first materialized version of a name keeps the link.
        """
        link = os.path.join(self.search_root, package.canonical_name)
        with self._link_lock:
            if os.path.lexists(link):
                return
            os.makedirs(os.path.dirname(link), exist_ok=True)
            os.symlink(package.location, link, target_is_directory=True)

    def close(self) -> None:
        with self._index_lock:
            self._index.clear()

    def report_size(self, logger: logging.Logger, threshold: int) -> None:
        """Show a warning if the store folder is too large."""
        ls: list[tuple[int, str]] = []
        for entry in os.listdir(self._store_dir):
            if entry == SEARCH_ROOT_NAME \
                    or entry.startswith(UNPACKING_PREFIX):
                continue
            entry_path = os.path.join(self._store_dir, entry)
            try:
                size = get_entry_size(entry_path)
            except FileNotFoundError:
                # Replaced or removed while walking.
                continue
            if os.path.isdir(entry_path):
                entry += '/'
            ls.append((size, entry))

        folder_size = sum(size for size, _ in ls)

        if folder_size < threshold:
            return

        def compare_size_entry(
                lhs: tuple[int, str], rhs: tuple[int, str]
                ) -> int:
            """Compare by size (reversed), then by entry name."""
            size1, entry1 = lhs
            size2, entry2 = rhs
            if size1 != size2:
                return -1 if size1 > size2 else 1
            return (entry1 > entry2) - (entry1 < entry2)

        to_report = heapq.nsmallest(10, ls, key=cmp_to_key(compare_size_entry))

        msg = "Store folder size is too large: {:s}.\n".format(
            size_text(folder_size)
        )

        msg += 'Large store entries:\n'

        msg += '\n'.join(
            "- {:>12s}: {:s}".format(size_text(size), entry)
            for size, entry in to_report
        )

        logger.warning(msg)


def read_manifest(package_dir: str) -> PackageManifest:
    package_json_path = os.path.join(package_dir, 'package.json')
    try:
        with open(package_json_path, 'r', encoding='utf-8') as f:
            package_json = json.load(f)
        return PackageManifest.parse(package_json)
    except FileNotFoundError as e:
        raise MissingManifestError(
            f"Couldn't find the `package.json` in {package_dir}."
        ) from e
    except ValueError as e:
        raise MissingManifestError(
            f"Couldn't read the `package.json` in {package_dir}: {e}"
        ) from e
