import json
import os
import subprocess
import threading
import time
from typing import Optional

import pytest

from tiny_esm_cdn import CdnConfig, create_app
from tiny_utils.bundler import EsbuildBundler
from tiny_utils.errors import ResolutionError
from tiny_utils.registry import FetchResponse, ResolvedVersion
from tiny_utils.store import PackageStore


class FakeRegistry(object):
    """A version resolver and a fetcher serving packages from memory."""

    def __init__(self) -> None:
        self.packages: dict[str, dict[str, dict[str, str | dict]]] = {}
        self.dist_tags: dict[str, dict[str, str]] = {}
        self.resolve_calls: list[tuple[str, str]] = []
        self.fetch_calls: list[tuple[str, str]] = []
        self.failing: set[str] = set()
        # When set, `fetch()` blocks until `release` is set.
        self.release: Optional[threading.Event] = None
        self.fetch_started = threading.Event()
        self.fetch_delay = 0.0
        self.active_fetches = 0
        self.max_active_fetches = 0
        self._lock = threading.Lock()

    def add(
            self,
            name: str,
            version: str,
            files: dict[str, str | dict],
            latest: bool = True
            ) -> None:
        self.packages.setdefault(name, {})[version] = files
        if latest:
            self.dist_tags.setdefault(name, {})['latest'] = version

    def resolve(self, package_name: str, version_spec: str) -> ResolvedVersion:
        with self._lock:
            self.resolve_calls.append((package_name, version_spec))
        versions = self.packages.get(package_name)
        if versions is None:
            raise ResolutionError(f"package {package_name} not found")
        tags = self.dist_tags.get(package_name, {})
        version = tags.get(version_spec, version_spec)
        if version not in versions:
            raise ResolutionError(
                f"no version of {package_name} matches '{version_spec}'"
            )
        return ResolvedVersion(
            package_name,
            version,
            {'name': package_name, 'version': version,
             'dist': {'tarball': f"https://example.test/{package_name}.tgz"}},
            tags.get('latest'),
        )

    def fetch(
            self,
            package_name: str,
            version: str,
            metadata: dict,
            dest: str
            ) -> FetchResponse:
        with self._lock:
            self.fetch_calls.append((package_name, version))
            self.active_fetches += 1
            self.max_active_fetches = max(
                self.max_active_fetches, self.active_fetches
            )
        self.fetch_started.set()
        try:
            if self.release is not None:
                assert self.release.wait(5), "fetch was never released"
            if self.fetch_delay:
                time.sleep(self.fetch_delay)
            if package_name in self.failing:
                raise ConnectionError(f"cannot download {package_name}")
            write_package(
                os.path.join(dest, 'package'),
                self.packages[package_name][version]
            )
        finally:
            with self._lock:
                self.active_fetches -= 1
        return FetchResponse(dest, True, True)


def write_package(package_dir: str, files: dict[str, str | dict]) -> None:
    for relative, content in files.items():
        path = os.path.join(package_dir, relative)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            if isinstance(content, dict):
                json.dump(content, f)
            else:
                f.write(content)


LEFT_PAD_FILES = {
    'package.json': {
        'name': 'left-pad',
        'version': '1.3.0',
        'main': 'index.js',
        'module': './index.mjs',
    },
    'index.js': 'module.exports = function leftPad() {};\n',
    'index.mjs': 'export default function leftPad() {}\n',
    'custom.js': 'export const custom = true;\n',
}


@pytest.fixture
def registry() -> FakeRegistry:
    registry = FakeRegistry()
    registry.add('left-pad', '1.0.0', LEFT_PAD_FILES, latest=False)
    registry.add('left-pad', '1.3.0', LEFT_PAD_FILES)
    registry.add('@scope/name', '2.0.0', {
        'package.json': {
            'name': '@scope/name',
            'version': '2.0.0',
            'main': 'lib/main.js',
            'dependencies': {'left-pad': '1.3.0'},
        },
        'lib/main.js': 'import pad from "left-pad";\n',
    })
    return registry


@pytest.fixture
def store(tmp_path, registry) -> PackageStore:
    store = PackageStore(
        registry, registry, str(tmp_path / 'store'),
        network_concurrency=1, fetch_timeout=5,
    )
    yield store
    store.close()


class FakeEsbuild(object):
    """Stands in for `subprocess.run` of the esbuild executable."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.envs: list[dict[str, str]] = []
        self.returncode = 0
        self.stderr = ''
        self.write_output = True

    def __call__(self, cmd, **kwargs) -> subprocess.CompletedProcess:
        self.calls.append(cmd)
        self.envs.append(kwargs.get('env') or {})
        entry_path = cmd[1]
        outfile = next(
            arg.split('=', 1)[1] for arg in cmd if arg.startswith('--outfile=')
        )
        if self.write_output:
            with open(entry_path, 'r', encoding='utf-8') as f:
                source = f.read()
            os.makedirs(os.path.dirname(outfile), exist_ok=True)
            with open(outfile, 'w', encoding='utf-8') as f:
                f.write(f"// bundled from {os.path.basename(entry_path)}\n")
                f.write(source)
        return subprocess.CompletedProcess(
            cmd, self.returncode, '', self.stderr
        )


@pytest.fixture
def fake_esbuild(monkeypatch) -> FakeEsbuild:
    fake = FakeEsbuild()
    monkeypatch.setattr('tiny_utils.bundler.subprocess.run', fake)
    return fake


@pytest.fixture
def bundler(tmp_path, store, fake_esbuild) -> EsbuildBundler:
    bundler = EsbuildBundler(
        store, str(tmp_path / 'bundled'), timeout=5,
        dependency_timeout=5,
    )
    yield bundler
    bundler.close()


@pytest.fixture
def config(tmp_path) -> CdnConfig:
    public_dir = tmp_path / 'public'
    public_dir.mkdir()
    return CdnConfig(
        store_dir=str(tmp_path / 'store'),
        bundle_dir=str(tmp_path / 'bundled'),
        public_dir=str(public_dir),
        store_size_warning=2 ** 40,
    )


@pytest.fixture
def app(config, store, bundler):
    return create_app(config, store=store, bundler=bundler)


@pytest.fixture
def client(app):
    return app.test_client()
