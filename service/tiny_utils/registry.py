# 2026-10-15  tiny_utils/registry.py

import hashlib
import io
import logging
import os
import shutil
import tarfile
import tempfile
import threading
import time
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Optional

import requests

from tiny_utils.errors import FetchIntegrityError
from tiny_utils.errors import PipelineTimeoutError, ResolutionError
from tiny_utils.node_ecosys import ValidRegistryJson, VersionJson
from tiny_utils.node_ecosys import is_valid_version, semver_cmp
from tiny_utils.node_ecosys import NodeVersionRange


logger = logging.getLogger(__name__)

# Tarballs are unpacked into sibling directories with this prefix.
UNPACKING_PREFIX = '.unpacking-'


@dataclass(frozen=True)
class ResolvedVersion(object):
    canonical_name: str
    version:        str
    metadata:       VersionJson
    latest:         Optional[str]


def pick_version(
        version_spec_str: str,
        registry_json: ValidRegistryJson
        ) -> Optional[str]:
    """
    The concrete version in `registry_json` that `version_spec_str` names.
    `None` if there is none.
    """
    versions = registry_json.get('versions', {})
    dist_tags = registry_json.get('dist-tags', {})

    if is_valid_version(version_spec_str):
        # An exact version.
        return version_spec_str if version_spec_str in versions else None

    if version_spec_str in dist_tags:
        # A `dist-tag`, such as `'latest'` or `'next'`.
        return dist_tags[version_spec_str]

    try:
        ver_range = NodeVersionRange(version_spec_str)
    except (ValueError, TypeError):
        return None

    # Like npm, prefer `latest` if it satisfies the range.
    latest = dist_tags.get('latest')
    if latest is not None and latest in versions and latest in ver_range:
        return latest

    feasible = [ver for ver in versions.keys() if ver in ver_range]
    if not feasible:
        return None
    return max(feasible, key=cmp_to_key(semver_cmp))


def _registry_path(package_name: str) -> str:
    # The registry wants the scope separator encoded: `@scope%2Fname`.
    return package_name.replace('/', '%2F')


class RegistryResolver(object):
    """
    Turns `(name, version spec)` into a concrete version by asking the
    registry. Registry json is cached for `meta_cache_ttl` seconds.
    """

    def __init__(
            self,
            registry_url: str,
            timeout: float = 30,
            meta_cache_ttl: float = 300,
            session: Optional[requests.Session] = None
            ) -> None:
        self._registry_url = registry_url.rstrip('/')
        self._timeout = timeout
        self._meta_cache_ttl = meta_cache_ttl
        self._session = session or requests.Session()
        self._meta_cache: dict[str, tuple[float, ValidRegistryJson]] = {}
        self._meta_lock = threading.Lock()

    def get_registry_json(self, package_name: str) -> ValidRegistryJson:
        """
        Download the json, which holds meta data of the package,
        from registry website.
        """
        now = time.monotonic()
        with self._meta_lock:
            cached = self._meta_cache.get(package_name)
        if cached is not None and now - cached[0] < self._meta_cache_ttl:
            return cached[1]

        registry_json_url = "{:s}/{:s}".format(
            self._registry_url, _registry_path(package_name)
        )
        try:
            r = self._session.get(registry_json_url, timeout=self._timeout)
        except requests.Timeout as e:
            raise PipelineTimeoutError(
                f"registry timed out for {package_name}"
            ) from e
        except requests.RequestException as e:
            raise ResolutionError(
                f"registry request failed for {package_name}: {e}"
            ) from e

        if r.status_code == 404:
            raise ResolutionError(f"package {package_name} not found")
        try:
            r.raise_for_status()
            registry_json: ValidRegistryJson = r.json()
        except (requests.HTTPError, ValueError) as e:
            raise ResolutionError(
                f"bad registry response for {package_name}: {e}"
            ) from e

        with self._meta_lock:
            expired = [
                name for name, (fetched_at, _) in self._meta_cache.items()
                if now - fetched_at >= self._meta_cache_ttl
            ]
            for name in expired:
                del self._meta_cache[name]
            self._meta_cache[package_name] = (now, registry_json)
        return registry_json

    def resolve(self, package_name: str, version_spec: str) -> ResolvedVersion:
        registry_json = self.get_registry_json(package_name)

        version = pick_version(version_spec, registry_json)
        if version is None:
            raise ResolutionError(
                "no version of {:s} matches '{:s}'".format(
                    package_name, version_spec
                )
            )

        return ResolvedVersion(
            registry_json.get('name', package_name),
            version,
            registry_json['versions'][version],
            registry_json.get('dist-tags', {}).get('latest'),
        )


@dataclass(frozen=True)
class FetchResponse(object):
    in_store_location: Optional[str]
    files_written:     bool
    finished:          bool


class TarballFetcher(object):
    """
    Download a version's tarball and unpack it to `dest`.
    Contents end up in `dest/package`. Idempotent per `dest`.
    """

    def __init__(
            self,
            timeout: float = 30,
            session: Optional[requests.Session] = None
            ) -> None:
        self._timeout = timeout
        self._session = session or requests.Session()

    def fetch(
            self,
            package_name: str,
            version: str,
            metadata: VersionJson,
            dest: str
            ) -> FetchResponse:
        if os.path.isdir(os.path.join(dest, 'package')):
            # Already there.
            return FetchResponse(dest, True, True)

        dist = metadata.get('dist', {})
        tarball_url = dist.get('tarball')
        if not tarball_url:
            raise FetchIntegrityError(
                f"no tarball for {package_name}@{version}"
            )

        logger.info("Fetching %s@%s from %s", package_name, version,
                    tarball_url)
        try:
            r = self._session.get(tarball_url, timeout=self._timeout)
            r.raise_for_status()
        except requests.Timeout as e:
            raise PipelineTimeoutError(
                f"tarball download timed out for {package_name}@{version}"
            ) from e
        except requests.RequestException as e:
            raise FetchIntegrityError(
                f"tarball download failed for {package_name}@{version}: {e}"
            ) from e

        expected_shasum = dist.get('shasum')
        if expected_shasum:
            actual_shasum = hashlib.sha1(r.content).hexdigest()
            if actual_shasum != expected_shasum:
                raise FetchIntegrityError(
                    "shasum mismatch for {:s}@{:s}: "
                    "expected {:s}, got {:s}".format(
                        package_name, version, expected_shasum, actual_shasum
                    )
                )

        os.makedirs(os.path.dirname(dest) or '.', exist_ok=True)
        # Unpacked next to `dest`, then moved into place.
        tmp_dir = tempfile.mkdtemp(
            prefix=UNPACKING_PREFIX, dir=os.path.dirname(dest) or '.'
        )
        try:
            _unpack_tarball(r.content, tmp_dir)
            if os.path.exists(dest):
                shutil.rmtree(dest)
            os.replace(tmp_dir, dest)
        except (tarfile.TarError, OSError) as e:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise FetchIntegrityError(
                f"could not unpack {package_name}@{version}: {e}"
            ) from e

        return FetchResponse(dest, True, True)


def _unpack_tarball(content: bytes, target_dir: str) -> None:
    """
    Extract a tarball and rename its single top-level directory to
    `package`. Most tarballs already use that name.
    """
    with tarfile.open(fileobj=io.BytesIO(content)) as tar:
        tar.extractall(target_dir, filter='data')

    roots = os.listdir(target_dir)
    if 'package' in roots:
        return
    if len(roots) != 1 \
            or not os.path.isdir(os.path.join(target_dir, roots[0])):
        raise tarfile.TarError(
            f"expected one top-level directory, got {sorted(roots)}"
        )
    os.rename(
        os.path.join(target_dir, roots[0]),
        os.path.join(target_dir, 'package')
    )
