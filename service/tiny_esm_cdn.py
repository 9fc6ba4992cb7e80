# 2026-10-17  tiny_esm_cdn.py

import logging
import mimetypes
import os
from dataclasses import dataclass
from typing import Optional

from flask import Flask, current_app, request, Response
from werkzeug.datastructures import MultiDict
from werkzeug.security import safe_join

from tiny_utils.bundler import BundleOutcome, EsbuildBundler
from tiny_utils.errors import BundleFailure, PipelineError
from tiny_utils.errors import RequestNotValidError
from tiny_utils.general import env_flag
from tiny_utils.network import CONTENT_TYPE_JAVASCRIPT, CONTENT_TYPE_UTF_8_TEXT
from tiny_utils.network import RouteInfo, RouteKind
from tiny_utils.network import encode_query, parse_package_tag
from tiny_utils.network import make_response_altered, redirect_response
from tiny_utils.node_ecosys import requested_module_types
from tiny_utils.node_ecosys import resolve_entry, select_entry_name
from tiny_utils.registry import RegistryResolver, TarballFetcher
from tiny_utils.store import PackageStore


STATIC_CACHE_CONTROL = 'public, no-cache, max-age=604800'
DEBUG_FLAG = '--debug'
EXTENSION_KEY = 'tiny_esm_cdn'


@dataclass
class CdnConfig(object):
    registry_url:        str = 'https://registry.npmjs.org'
    store_dir:           str = '.store'
    bundle_dir:          str = '.bundled'
    public_dir:          str = 'public'
    network_concurrency: int = 1
    request_timeout:     float = 30
    fetch_timeout:       float = 120
    bundle_timeout:      float = 60
    meta_cache_ttl:      float = 300
    esbuild:             str = 'esbuild'
    # Turn a failed bundle into a 500 instead of serving partial output.
    strict_bundling:     bool = False
    await_dependencies:  bool = True
    dependency_workers:  int = 4
    # The unmatched route answers "404" with this status.
    not_found_status:    int = 200
    store_size_warning:  int = (2 ** 20) * 256  # 256 MiB
    host:                str = '0.0.0.0'
    port:                int = 2357
    debug:               bool = False
    log_level:           str = 'INFO'

    @staticmethod
    def make_from_env() -> 'CdnConfig':
        default = CdnConfig()
        return CdnConfig(
            registry_url=os.getenv(
                'REGISTRY', default.registry_url
            ).rstrip('/'),
            store_dir=os.getenv('STORE_DIR', default.store_dir),
            bundle_dir=os.getenv('BUNDLE_DIR', default.bundle_dir),
            public_dir=os.getenv('PUBLIC_DIR', default.public_dir),
            network_concurrency=int(os.getenv(
                'NETWORK_CONCURRENCY', default.network_concurrency
            )),
            request_timeout=float(os.getenv(
                'REQUEST_TIMEOUT', default.request_timeout
            )),
            fetch_timeout=float(os.getenv(
                'FETCH_TIMEOUT', default.fetch_timeout
            )),
            bundle_timeout=float(os.getenv(
                'BUNDLE_TIMEOUT', default.bundle_timeout
            )),
            meta_cache_ttl=float(os.getenv(
                'META_CACHE_TTL', default.meta_cache_ttl
            )),
            esbuild=os.getenv('ESBUILD', default.esbuild),
            strict_bundling=env_flag(
                'STRICT_BUNDLING', default.strict_bundling
            ),
            await_dependencies=env_flag(
                'AWAIT_DEPENDENCIES', default.await_dependencies
            ),
            dependency_workers=int(os.getenv(
                'DEPENDENCY_WORKERS', default.dependency_workers
            )),
            not_found_status=int(os.getenv(
                'NOT_FOUND_STATUS', default.not_found_status
            )),
            store_size_warning=int(os.getenv(
                'STORE_SIZE_WARNING', default.store_size_warning
            )),
            host=os.getenv('HOST', default.host),
            port=int(os.getenv('PORT', default.port)),
            debug=env_flag('DEBUG', default.debug),
            log_level=os.getenv('LOG_LEVEL', default.log_level).upper(),
        )


@dataclass
class CdnServices(object):
    """Long-lived pipeline objects, built at startup and closed at exit."""
    config:  CdnConfig
    store:   PackageStore
    bundler: EsbuildBundler

    def close(self) -> None:
        self.bundler.close()
        self.store.close()


def create_app(
        config: Optional[CdnConfig] = None,
        store: Optional[PackageStore] = None,
        bundler: Optional[EsbuildBundler] = None
        ) -> Flask:
    config = config or CdnConfig.make_from_env()

    if store is None:
        store = PackageStore(
            RegistryResolver(
                config.registry_url,
                timeout=config.request_timeout,
                meta_cache_ttl=config.meta_cache_ttl,
            ),
            TarballFetcher(timeout=config.request_timeout),
            config.store_dir,
            network_concurrency=config.network_concurrency,
            fetch_timeout=config.fetch_timeout,
        )
    if bundler is None:
        bundler = EsbuildBundler(
            store,
            config.bundle_dir,
            esbuild=config.esbuild,
            timeout=config.bundle_timeout,
            await_dependencies=config.await_dependencies,
            dependency_workers=config.dependency_workers,
            dependency_timeout=config.fetch_timeout,
        )

    app = Flask(__name__, static_folder=None)
    app.extensions[EXTENSION_KEY] = CdnServices(config, store, bundler)

    store.add_fetch_listener(
        lambda _: store.report_size(app.logger, config.store_size_warning)
    )

    app.add_url_rule('/', 'delivr', delivr, defaults={'thepath': ''})
    app.add_url_rule('/<path:thepath>', 'delivr', delivr)
    return app


def delivr(thepath: str) -> Response:
    """
    Handle CDN request.
    Also handle exceptions.
    """
    services: CdnServices = current_app.extensions[EXTENSION_KEY]

    try:
        return handle_path(services, request.path, request.args)
    except RequestNotValidError as e:
        return make_response_altered(
            f"Request Not Valid:\n{e}", e.status_code, CONTENT_TYPE_UTF_8_TEXT
        )
    except PipelineError as e:
        current_app.logger.error("%s failed: %s", request.path, e)
        return make_response_altered(
            str(e), e.status_code, CONTENT_TYPE_UTF_8_TEXT
        )


def handle_path(
        services: CdnServices,
        abs_path: str,
        query: MultiDict
        ) -> Response:
    """
    Handle CDN request.
    """
    static_resp = give_static_file(services.config, abs_path)
    if static_resp is not None:
        return static_resp

    route = RouteInfo.make(abs_path)
    match route.kind:
        case RouteKind.SHORTHAND:
            return give_shorthand_redirect(services, route, query)
        case RouteKind.VERSIONED:
            return give_versioned(services, route, query)
        case _:
            return make_response_altered(
                '404',
                services.config.not_found_status,
                CONTENT_TYPE_UTF_8_TEXT
            )


def give_static_file(config: CdnConfig, abs_path: str) -> Optional[Response]:
    """A file from the public folder, if there is one at this path."""
    relative = abs_path.lstrip('/')
    if not relative:
        return None
    path_from_script = safe_join(config.public_dir, relative)
    if path_from_script is None or not os.path.isfile(path_from_script):
        return None

    with open(path_from_script, 'rb') as f:
        content = f.read()
    resp = make_response_altered(
        content,
        200,
        mimetypes.guess_file_type(path_from_script)
    )
    resp.headers['Cache-Control'] = STATIC_CACHE_CONTROL
    return resp


def give_shorthand_redirect(
        services: CdnServices,
        route: RouteInfo,
        query: MultiDict
        ) -> Response:
    """
    '/left-pad?module' -> '/-/left-pad@1.3.0/?module'
    Only the registry is asked. Nothing is downloaded.
    """
    tag = parse_package_tag(route.tag, version_required=False)
    resolved = services.store.resolver.resolve(
        tag.name, tag.version_spec or 'latest'
    )

    return redirect_response("/-/{:s}@{:s}/{:s}".format(
        resolved.canonical_name,
        resolved.version,
        encode_query(query.items(multi=True))
    ))


def give_versioned(
        services: CdnServices,
        route: RouteInfo,
        query: MultiDict
        ) -> Response:
    """Redirect to the entry file, or bundle the requested file."""
    tag = parse_package_tag(route.tag, version_required=True)
    package = services.store.materialize(tag.name, tag.version_spec)

    requested = requested_module_types(query.keys())
    debug = DEBUG_FLAG in query

    if not route.filename:
        if debug:
            # Where the package lives in the store.
            return make_response_altered(
                package.location, 200, CONTENT_TYPE_UTF_8_TEXT
            )
        entry_name = select_entry_name(package.manifest, requested)
        return redirect_response(
            entry_name + encode_query(query.items(multi=True))
        )

    entry = resolve_entry(package, requested, route.filename)
    outcome = services.bundler.bundle(package, entry)
    return give_bundle(services.config, outcome, debug)


def give_bundle(
        config: CdnConfig,
        outcome: BundleOutcome,
        debug: bool
        ) -> Response:
    if outcome.ok:
        return make_response_altered(
            outcome.code, 200, CONTENT_TYPE_JAVASCRIPT
        )

    failure = outcome.failure or BundleFailure(
        f"no bundle output at {outcome.output_path}"
    )
    if debug:
        return make_response_altered(
            "{:s}\n\n{:s}".format(str(failure), failure.detail or ''),
            200,
            CONTENT_TYPE_UTF_8_TEXT
        )

    if config.strict_bundling or outcome.code is None:
        raise failure

    current_app.logger.warning(
        "Serving partial bundle %s: %s", outcome.output_path, failure
    )
    return make_response_altered(outcome.code, 200, CONTENT_TYPE_JAVASCRIPT)


def main() -> None:
    config = CdnConfig.make_from_env()
    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    app = create_app(config)
    services: CdnServices = app.extensions[EXTENSION_KEY]
    services.store.report_size(app.logger, config.store_size_warning)

    try:
        # `use_reloader` set to `False`
        # in order to avoid the services being built twice.
        app.run(
            host=config.host,
            port=config.port,
            debug=config.debug,
            threaded=True,
            use_reloader=False,
        )
    finally:
        services.close()


if __name__ == '__main__':
    main()
