# 2026-10-14  tiny_utils/network.py

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import quote

from flask import make_response, Response

from tiny_utils.errors import MalformedTagError


CONTENT_TYPE_UTF_8_TEXT = 'text/plain; charset=utf-8'
CONTENT_TYPE_JAVASCRIPT = 'text/javascript; charset=utf-8'

# Characters left unquoted by `encode_query()`.
# Version ranges and scoped names stay readable in redirect targets.
_QUERY_SAFE_CHARS = "-._~^@/:,*"


def make_response_altered(
        content: str | bytes,
        status_code: int,
        altered_mime_type: Optional[str] | tuple[Optional[str], Optional[str]]
        ) -> Response:
    """
    Make a flask.Response object.
    Basically same as flask.make_response, but with altered mime type.
    Type of `altered_mime_type` is compatible with return value of
    `mimetypes.guess_type()` and `mimetypes.guess_file_type()`.
    """
    resp = make_response(content, status_code)
    if altered_mime_type is None:
        pass
    elif isinstance(altered_mime_type, str):
        resp.headers['Content-Type'] = altered_mime_type
    elif isinstance(altered_mime_type, tuple):
        altered_content_type, altered_content_encoding = altered_mime_type
        if altered_content_type is not None:
            resp.headers['Content-Type'] = altered_content_type
        if altered_content_encoding is not None:
            resp.headers['Content-Encoding'] = altered_content_encoding
    else:
        raise TypeError(f"altered_mime_type must be str or tuple[str, str], "
                        f"but got {type(altered_mime_type)}")
    return resp


def redirect_response(location: str) -> Response:
    """302 with a short human-readable body."""
    resp = make_response_altered(
        f"redirecting to {location}", 302, CONTENT_TYPE_UTF_8_TEXT
    )
    resp.headers['Location'] = location
    return resp


def encode_query(
        options: Mapping[str, str] | Iterable[tuple[str, str]]
        ) -> str:
    """
    {}                          -> ""
    {"module": "", "--debug": ""} -> "?module&--debug"
    {"a": "1", "b": "2"}        -> "?a=1&b=2"
    Insertion order is kept. Flag-style options (empty value) lose the `=`.
    """
    pairs = options.items() if isinstance(options, Mapping) else options
    parts = [
        quote(k, safe=_QUERY_SAFE_CHARS)
        if v == ''
        else "{:s}={:s}".format(
            quote(k, safe=_QUERY_SAFE_CHARS), quote(v, safe=_QUERY_SAFE_CHARS)
        )
        for k, v in pairs
    ]
    if not parts:
        return ''
    return '?' + '&'.join(parts)


@dataclass(frozen=True)
class PackageTag(object):
    name:         str
    version_spec: Optional[str]


# A scoped name. The leading `'@'` belongs to the name, not the version.
_NAMESPACED_NAME_RE = re.compile(r'^@[^/]+/[^@]+')


def parse_package_tag(tag: str, version_required: bool = True) -> PackageTag:
    """
    'lodash@^4'           -> PackageTag('lodash', '^4')
    '@scope/name@1.2.3'   -> PackageTag('@scope/name', '1.2.3')
    'lodash'              -> PackageTag('lodash', None),
                             or MalformedTagError if `version_required`.
    """
    namespaced = _NAMESPACED_NAME_RE.match(tag)
    if namespaced:
        name, rest = namespaced.group(0), tag[namespaced.end():]
    else:
        at = tag.find('@')
        name, rest = (tag, '') if at == -1 else (tag[:at], tag[at:])

    if not name:
        raise MalformedTagError(f"package name is empty, tag: '{tag}'")

    # `rest` is either empty or starts with the separating `'@'`.
    version_spec = rest[1:] or None
    if version_spec is not None and '@' in version_spec:
        raise MalformedTagError(
            f"too many '@'s in name and version part, tag: '{tag}'"
        )
    if version_required and version_spec is None:
        raise MalformedTagError(
            f"a package name and a version tag are required, tag: '{tag}'"
        )

    return PackageTag(name, version_spec)


class RouteKind(Enum):
    SHORTHAND = 'shorthand'
    VERSIONED = 'versioned'
    UNMATCHED = 'unmatched'


_VERSIONED_RE = re.compile(r'^/-/(@[^/]+/[^/]+|[^/@][^/]*)/(.*)$')
_SCOPED_SHORTHAND_RE = re.compile(r'^/@([^/]+)/([^/]+)$')
_SHORTHAND_RE = re.compile(r'^/([^/]+)$')


@dataclass(frozen=True)
class RouteInfo(object):
    kind:     RouteKind
    tag:      Optional[str] = None
    # Everything after the tag of a versioned path; `''` asks for the entry.
    filename: Optional[str] = None

    @staticmethod
    def make(path: str) -> 'RouteInfo':
        """
        example:
        '/-/@scope/name@1.0.0/lib/a.js' -> (
            kind:     RouteKind.VERSIONED,
            tag:      '@scope/name@1.0.0',
            filename: 'lib/a.js'
        )
        '/@scope/name' -> (RouteKind.SHORTHAND, '@scope/name', None)
        """
        assert path.startswith('/')

        versioned = _VERSIONED_RE.match(path)
        if versioned:
            return RouteInfo(
                RouteKind.VERSIONED, versioned.group(1), versioned.group(2)
            )

        scoped = _SCOPED_SHORTHAND_RE.match(path)
        if scoped:
            namespace, tag = scoped.groups()
            return RouteInfo(RouteKind.SHORTHAND, f"@{namespace}/{tag}")

        shorthand = _SHORTHAND_RE.match(path)
        if shorthand:
            return RouteInfo(RouteKind.SHORTHAND, shorthand.group(1))

        return RouteInfo(RouteKind.UNMATCHED)
