# 2026-10-16  tiny_utils/bundler.py

import logging
import os
import subprocess
import tempfile
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from tiny_utils.errors import BundleFailure, PipelineTimeoutError
from tiny_utils.node_ecosys import ResolvedPackage
from tiny_utils.store import PackageStore


logger = logging.getLogger(__name__)

# Tail of esbuild's stderr kept in a failure.
_MAX_DETAIL_CHARS = 4000


class _OutputLock(object):
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


@dataclass(frozen=True)
class BundleResult(object):
    output_path: str
    code:        str


@dataclass(frozen=True)
class BundleOutcome(object):
    """
    Either a finished bundle, or a failure with whatever output exists.
    The caller decides whether partial output is served.
    """
    output_path: str
    code:        Optional[str]
    failure:     Optional[BundleFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.code is not None

    @property
    def result(self) -> BundleResult:
        if not self.ok:
            raise self.failure or BundleFailure(
                f"no output at {self.output_path}"
            )
        return BundleResult(self.output_path, self.code)


class EsbuildBundler(object):
    """
    Bundle a package entry and everything it imports into one ES module,
    using the `esbuild` executable.
    """

    def __init__(
            self,
            store: PackageStore,
            bundle_dir: str,
            esbuild: str = 'esbuild',
            timeout: Optional[float] = 60,
            await_dependencies: bool = True,
            dependency_workers: int = 4,
            dependency_timeout: Optional[float] = None
            ) -> None:
        self._store = store
        self._bundle_dir = os.path.abspath(bundle_dir)
        self._esbuild = esbuild
        self._timeout = timeout
        self._await_dependencies = await_dependencies
        self._dependency_timeout = dependency_timeout
        self._executor = ThreadPoolExecutor(
            max_workers=dependency_workers,
            thread_name_prefix='dependency-fetch',
        )
        self._output_locks: dict[str, _OutputLock] = {}
        self._output_locks_guard = threading.Lock()

    def output_path_for(self, package: ResolvedPackage, entry: str) -> str:
        return os.path.join(self._bundle_dir, package.local_name, entry)

    def bundle(self, package: ResolvedPackage, entry: str) -> BundleOutcome:
        """
        Bundle `entry` (relative to the package location).
        A finished bundle for the same entry is reused. Only a successful
        build is kept at `output_path`; a failed build is retried next time.
        """
        self.ensure_dependencies(package)

        output_path = self.output_path_for(package, entry)
        with self._output_lock(output_path):
            if os.path.isfile(output_path):
                logger.debug("Reusing bundle %s", output_path)
                return BundleOutcome(output_path, _read_text(output_path))

            code, failure = self._run_esbuild(
                os.path.join(package.location, entry), output_path
            )

        if failure is not None:
            logger.warning("Bundling %s/%s failed: %s",
                           package.local_name, entry, failure)
        else:
            logger.info("Bundled %s/%s", package.local_name, entry)
        return BundleOutcome(output_path, code, failure)

    def ensure_dependencies(self, package: ResolvedPackage) -> None:
        """
        Materialize the declared dependencies, recursively.
        A dependency that fails is logged and does not stop the bundle.
        """
        if not package.manifest.dependencies:
            return
        if self._await_dependencies:
            self._walk_dependencies(package)
            return
        threading.Thread(
            target=self._walk_dependencies,
            args=(package,),
            name=f"prefetch-{package.local_name}",
            daemon=True,
        ).start()

    def _walk_dependencies(self, package: ResolvedPackage) -> None:
        seen_specs: set[tuple[str, str]] = set()
        seen_packages = {(package.canonical_name, package.version)}
        frontier = [package]
        deadline = None if self._dependency_timeout is None \
            else time.monotonic() + self._dependency_timeout

        while frontier:
            futures: dict[Future[ResolvedPackage], tuple[str, str]] = {}
            for parent in frontier:
                for dep_name, dep_spec in parent.manifest.dependencies.items():
                    if (dep_name, dep_spec) in seen_specs:
                        continue
                    seen_specs.add((dep_name, dep_spec))
                    futures[self._executor.submit(
                        self._store.materialize, dep_name, dep_spec
                    )] = (dep_name, dep_spec)
            frontier = []
            if not futures:
                break

            remaining = None if deadline is None \
                else max(0.0, deadline - time.monotonic())
            done, not_done = wait(futures, timeout=remaining)

            for future in done:
                dep_name, dep_spec = futures[future]
                exc = future.exception()
                if exc is not None:
                    logger.warning("Dependency %s@%s of %s failed: %s",
                                   dep_name, dep_spec, package.local_name, exc)
                    continue
                dep = future.result()
                key = (dep.canonical_name, dep.version)
                if key not in seen_packages:
                    seen_packages.add(key)
                    frontier.append(dep)

            if not_done:
                logger.warning(
                    "Gave up waiting for %d dependencies of %s",
                    len(not_done), package.local_name
                )
                break

    @contextmanager
    def _output_lock(self, output_path: str) -> Iterator[None]:
        """Serialize builds of one output. Unused locks are dropped."""
        with self._output_locks_guard:
            holder = self._output_locks.get(output_path)
            if holder is None:
                holder = self._output_locks[output_path] = _OutputLock()
            holder.users += 1
        try:
            with holder.lock:
                yield
        finally:
            with self._output_locks_guard:
                holder.users -= 1
                if holder.users == 0:
                    del self._output_locks[output_path]

    def _run_esbuild(
            self,
            entry_path: str,
            output_path: str
            ) -> tuple[Optional[str], Optional[BundleFailure]]:
        """
        Build into a temporary file next to `output_path`, moved into place
        only when esbuild succeeds. On failure the partial output, if any,
        is returned and the temporary file removed.
        """
        out_dir, out_name = os.path.split(output_path)
        os.makedirs(out_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".building-{out_name}-",
            suffix=os.path.splitext(out_name)[1],
            dir=out_dir,
        )
        os.close(fd)

        cmd = [
            self._esbuild,
            entry_path,
            '--bundle',
            '--format=esm',
            f"--outfile={tmp_path}",
            '--log-level=warning',
        ]
        env = {**os.environ, 'NODE_PATH': self._store.search_root}

        logger.info("Running %s", ' '.join(cmd))
        try:
            try:
                r = subprocess.run(
                    cmd, capture_output=True, text=True,
                    env=env, timeout=self._timeout, check=False,
                )
            except FileNotFoundError as e:
                return None, BundleFailure(
                    f"bundler not found: {self._esbuild}", str(e)
                )
            except subprocess.TimeoutExpired as e:
                raise PipelineTimeoutError(
                    f"bundling {entry_path} timed out after {self._timeout}s"
                ) from e

            if r.returncode == 0:
                os.replace(tmp_path, output_path)
                return _read_text(output_path), None

            # An empty file is the placeholder from `mkstemp`.
            partial = _read_text(tmp_path) \
                if os.path.getsize(tmp_path) > 0 else None
            return partial, BundleFailure(
                f"esbuild failed (rc={r.returncode}) for {entry_path}",
                r.stderr[-_MAX_DETAIL_CHARS:],
            )
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


def _read_text(path: str) -> str:
    with open(path, 'r', encoding='utf-8') as f:
        return f.read()
