# 2026-10-15  tiny_utils/node_ecosys.py

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional, TypedDict

import nodesemver

from tiny_utils.errors import EntryNotFoundError


class _DistObjectJson(TypedDict, total=False):
    tarball: str
    shasum:  str

class VersionJson(TypedDict, total=False):
    name:         str
    version:      str
    dist:         _DistObjectJson
    dependencies: dict[str, str]


# A type describing the registry json file, for type hinting.
# Written this way because `dist-tags` is not a valid Python identifier.
ValidRegistryJson = TypedDict('ValidRegistryJson', {
    'name':      str,
    'dist-tags': dict[str, str],
    'versions':  dict[str, VersionJson],
})


class ModuleType(Enum):
    """Module conventions a request may ask for, e.g. `?module`."""
    MODULE            = 'module'
    MAIN              = 'main'
    BROWSER           = 'browser'
    ESM               = 'esm'
    NODE              = 'node'
    COMMONJS          = 'commonjs'
    COMMON_JS         = 'common-js'
    COMMONJS_EXTERNAL = 'commonjs-external'

    @property
    def priority(self) -> int:
        return MODULE_TYPE_PRIORITY[self]

    @staticmethod
    def in_priority_order() -> list['ModuleType']:
        return sorted(ModuleType, key=lambda t: t.priority)


# When a request names several module types, the lowest number wins.
MODULE_TYPE_PRIORITY: dict[ModuleType, int] = {
    ModuleType.MODULE:            0,
    ModuleType.MAIN:              1,
    ModuleType.BROWSER:           2,
    ModuleType.ESM:               3,
    ModuleType.NODE:              4,
    ModuleType.COMMONJS:          5,
    ModuleType.COMMON_JS:         6,
    ModuleType.COMMONJS_EXTERNAL: 7,
}

# Tried in order when no requested module type is in the manifest.
# ESM-style before CommonJS-style.
DEFAULT_ENTRY_ORDER = (ModuleType.MODULE, ModuleType.MAIN)
DEFAULT_ENTRY_FILE = 'index.js'

_ENTRY_PROBE_SUFFIXES = ('', '.js', '.mjs', '.cjs', '/index.js')


def _string_field(name: str) -> Callable[[dict], Optional[str]]:
    def get(package_json: dict) -> Optional[str]:
        res = package_json.get(name)
        return res if isinstance(res, str) and res else None
    return get


def _root_export(condition: str) -> Callable[[dict], Optional[str]]:
    """`exports["."][condition]` of a package.json, if it is a string."""
    def get(package_json: dict) -> Optional[str]:
        exports = package_json.get('exports')
        if not isinstance(exports, dict):
            return None
        root = exports.get('.')
        if not isinstance(root, dict):
            return None
        res = root.get(condition)
        return res if isinstance(res, str) and res else None
    return get


def _first_of(
        *accessors: Callable[[dict], Optional[str]]
        ) -> Callable[[dict], Optional[str]]:
    def get(package_json: dict) -> Optional[str]:
        for accessor in accessors:
            res = accessor(package_json)
            if res is not None:
                return res
        return None
    return get


_ENTRY_ACCESSORS: dict[ModuleType, Callable[[dict], Optional[str]]] = {
    ModuleType.MODULE:    _string_field('module'),
    ModuleType.MAIN:      _string_field('main'),
    # `browser` may also be an object of replacements. Only a string is
    # an entry file.
    ModuleType.BROWSER:   _first_of(_string_field('browser'),
                                    _root_export('browser')),
    ModuleType.ESM:       _first_of(_string_field('esm'),
                                    _root_export('import')),
    ModuleType.NODE:      _first_of(_string_field('node'),
                                    _root_export('node')),
    ModuleType.COMMONJS:  _first_of(_string_field('commonjs'),
                                    _root_export('require')),
    ModuleType.COMMON_JS: _string_field('common-js'),
    ModuleType.COMMONJS_EXTERNAL: _string_field('commonjs-external'),
}


def requested_module_types(query_keys: Iterable[str]) -> set[ModuleType]:
    """Module types named as flags in a query, e.g. `?module&browser`."""
    by_value = {t.value: t for t in ModuleType}
    return {by_value[k] for k in query_keys if k in by_value}


@dataclass(frozen=True)
class PackageManifest(object):
    name:         str
    version:      str
    dependencies: dict[str, str] = field(default_factory=dict)
    entries:      dict[ModuleType, str] = field(default_factory=dict)

    @staticmethod
    def parse(package_json: dict) -> 'PackageManifest':
        """
        Validate a `package.json` object.
        Fields of the wrong type are dropped instead of failing.
        """
        if not isinstance(package_json, dict):
            raise ValueError(
                f"package.json must be an object, "
                f"but got {type(package_json).__name__}"
            )

        deps = package_json.get('dependencies')
        dependencies = {
            name: spec
            for name, spec in (deps.items() if isinstance(deps, dict) else [])
            if isinstance(name, str) and isinstance(spec, str)
        }

        entries = {}
        for module_type, accessor in _ENTRY_ACCESSORS.items():
            res = accessor(package_json)
            if res is not None:
                entries[module_type] = normalize_entry_name(res)

        return PackageManifest(
            str(package_json.get('name', '')),
            str(package_json.get('version', '')),
            dependencies,
            entries,
        )


@dataclass(frozen=True)
class ResolvedPackage(object):
    canonical_name: str
    version:        str
    manifest:       PackageManifest
    # `<store>/<name>@<version>/package`, owned by the package store.
    location:       str

    @property
    def local_name(self) -> str:
        return "{:s}@{:s}".format(self.canonical_name, self.version)


def normalize_entry_name(entry: str) -> str:
    """'./dist/index.js' -> 'dist/index.js'"""
    return PurePosixPath(entry).as_posix().lstrip('/')


def select_entry_name(
        manifest: PackageManifest,
        requested: set[ModuleType]
        ) -> str:
    """
    Entry file name from module type hints and the manifest only.
    The file is not checked on disk.
    """
    for module_type in ModuleType.in_priority_order():
        if module_type in requested and module_type in manifest.entries:
            return manifest.entries[module_type]

    for module_type in DEFAULT_ENTRY_ORDER:
        if module_type in manifest.entries:
            return manifest.entries[module_type]

    return DEFAULT_ENTRY_FILE


def _file_inside(root: Path, relative: str) -> Optional[Path]:
    """`root / relative` if it is an existing file not escaping `root`."""
    candidate = (root / relative).resolve()
    if not candidate.is_relative_to(root) or not candidate.is_file():
        return None
    return candidate


def resolve_entry(
        package: ResolvedPackage,
        requested: set[ModuleType],
        explicit_filename: Optional[str] = None
        ) -> str:
    """
    Choose the bundle entry of a package, as a path relative to its location.
    An existing `explicit_filename` beats any module type hint.
    """
    root = Path(package.location).resolve()

    if explicit_filename:
        found = _file_inside(root, explicit_filename)
        if found is not None:
            return found.relative_to(root).as_posix()

    entry_name = select_entry_name(package.manifest, requested)
    for suffix in _ENTRY_PROBE_SUFFIXES:
        found = _file_inside(root, entry_name + suffix)
        if found is not None:
            return found.relative_to(root).as_posix()

    raise EntryNotFoundError(
        "Couldn't find the entry file {:s} in {:s}.".format(
            entry_name, package.local_name
        )
    )


class NodeVersionRange(object):
    def __init__(self, range_str: str, loose: bool = False) -> None:
        self._range = nodesemver.Range(range_str, loose)
        self._raw_str = range_str

    def __contains__(self, version: str) -> bool:
        return nodesemver.satisfies(version, self._range)

    def __str__(self) -> str:
        return self._raw_str


def is_valid_version(version_str: str) -> bool:
    try:
        return bool(nodesemver.valid(version_str, False))
    except (ValueError, TypeError):
        return False


def semver_cmp(version1: str, version2: str, loose: bool = False) -> int:
    """
    `-1` if `version1` <  `version2`,
    `0`  if `version1` == `version2`,
    `1`  if `version1` >  `version2`.
    """
    return nodesemver.compare(version1, version2, loose)
