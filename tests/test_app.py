import pytest

from tiny_esm_cdn import CdnConfig, STATIC_CACHE_CONTROL, create_app


class TestShorthandRedirect:

    def test_redirect_to_latest(self, client):
        resp = client.get('/left-pad')

        assert resp.status_code == 302
        assert resp.headers['Location'] == '/-/left-pad@1.3.0/'
        assert resp.get_data(as_text=True) == \
            'redirecting to /-/left-pad@1.3.0/'

    def test_query_is_preserved(self, client):
        resp = client.get('/left-pad?module&a=1')

        assert resp.status_code == 302
        assert resp.headers['Location'] == '/-/left-pad@1.3.0/?module&a=1'

    def test_version_in_tag(self, client):
        resp = client.get('/left-pad@1.0.0')

        assert resp.headers['Location'] == '/-/left-pad@1.0.0/'

    def test_scoped_name(self, client):
        resp = client.get('/@scope/name?--debug')

        assert resp.status_code == 302
        assert resp.headers['Location'] == '/-/@scope/name@2.0.0/?--debug'

    def test_shorthand_does_not_fetch(self, client, registry):
        client.get('/left-pad')

        assert registry.fetch_calls == []

    def test_unknown_package(self, client):
        resp = client.get('/no-such-package')

        assert resp.status_code == 502
        assert 'not found' in resp.get_data(as_text=True)

    def test_malformed_tag(self, client):
        resp = client.get('/@oops')

        assert resp.status_code == 400
        assert resp.get_data(as_text=True).startswith('Request Not Valid:')


class TestEntryRedirect:

    def test_redirect_to_default_entry(self, client):
        resp = client.get('/-/left-pad@latest/')

        assert resp.status_code == 302
        # `module` is preferred over `main` by default.
        assert resp.headers['Location'] == 'index.mjs'

    def test_redirect_keeps_query(self, client):
        resp = client.get('/-/left-pad@latest/?main&x=1')

        assert resp.headers['Location'] == 'index.js?main&x=1'

    def test_scoped_package(self, client):
        resp = client.get('/-/@scope/name@2.0.0/')

        assert resp.headers['Location'] == 'lib/main.js'

    def test_version_is_required(self, client):
        resp = client.get('/-/left-pad/')

        assert resp.status_code == 400

    def test_size_report_failure_does_not_fail_request(
            self, client, monkeypatch):
        def get_entry_size(path):
            raise FileNotFoundError(2, 'No such file', path)
        monkeypatch.setattr('tiny_utils.store.get_entry_size', get_entry_size)

        resp = client.get('/-/left-pad@1.3.0/')

        assert resp.status_code == 302
        assert resp.headers['Location'] == 'index.mjs'

    def test_debug_shows_store_location(self, client, store):
        resp = client.get('/-/left-pad@1.3.0/?--debug')

        assert resp.status_code == 200
        assert resp.get_data(as_text=True) == \
            store.location_of('left-pad', '1.3.0') + '/package'


class TestBundleRoute:

    def test_module_hint_selects_module_field(self, client, fake_esbuild):
        resp = client.get('/-/left-pad@1.0.0/missing.js?module')

        assert resp.status_code == 200
        assert resp.content_type.startswith('text/javascript')
        body = resp.get_data(as_text=True)
        assert body.startswith('// bundled from index.mjs')
        assert 'export default function leftPad' in body

    def test_existing_file_beats_hint(self, client):
        resp = client.get('/-/left-pad@1.3.0/custom.js?module')

        assert resp.get_data(as_text=True).startswith(
            '// bundled from custom.js'
        )

    def test_scoped_package(self, client, registry):
        resp = client.get('/-/@scope/name@2.0.0/lib/main.js')

        assert resp.status_code == 200
        assert 'import pad from "left-pad"' in resp.get_data(as_text=True)
        assert ('left-pad', '1.3.0') in registry.fetch_calls

    def test_entry_not_found(self, client, registry):
        registry.add('empty', '1.0.0', {'package.json': {'name': 'empty'}})

        resp = client.get('/-/empty@1.0.0/gone.js')

        assert resp.status_code == 404

    def test_debug_with_filename_returns_bundle(self, client):
        resp = client.get('/-/left-pad@1.3.0/index.js?--debug')

        assert resp.get_data(as_text=True).startswith(
            '// bundled from index.js'
        )

    def test_lenient_policy_serves_partial_output(self, client, fake_esbuild):
        fake_esbuild.returncode = 1

        resp = client.get('/-/left-pad@1.3.0/index.js')

        assert resp.status_code == 200
        assert resp.get_data(as_text=True).startswith(
            '// bundled from index.js'
        )

    def test_failure_without_output_is_500(self, client, fake_esbuild):
        fake_esbuild.returncode = 1
        fake_esbuild.write_output = False

        resp = client.get('/-/left-pad@1.3.0/index.js')

        assert resp.status_code == 500
        assert 'esbuild failed' in resp.get_data(as_text=True)

    def test_strict_policy(self, config, store, bundler, fake_esbuild):
        config.strict_bundling = True
        client = create_app(config, store=store, bundler=bundler).test_client()
        fake_esbuild.returncode = 1

        resp = client.get('/-/left-pad@1.3.0/index.js')

        assert resp.status_code == 500

    def test_strict_policy_failure_is_not_cached(
            self, config, store, bundler, fake_esbuild):
        config.strict_bundling = True
        client = create_app(config, store=store, bundler=bundler).test_client()
        fake_esbuild.returncode = 1

        first = client.get('/-/left-pad@1.3.0/index.js')
        second = client.get('/-/left-pad@1.3.0/index.js')

        assert first.status_code == 500
        assert second.status_code == 500
        assert len(fake_esbuild.calls) == 2

    def test_lenient_policy_rebuilds_after_failure(self, client, fake_esbuild):
        fake_esbuild.returncode = 1
        client.get('/-/left-pad@1.3.0/index.js')
        fake_esbuild.returncode = 0

        resp = client.get('/-/left-pad@1.3.0/index.js')

        assert resp.status_code == 200
        assert len(fake_esbuild.calls) == 2

    def test_debug_shows_bundle_failure(self, client, fake_esbuild):
        fake_esbuild.returncode = 1
        fake_esbuild.write_output = False
        fake_esbuild.stderr = 'X [ERROR] Could not resolve "nope"'

        resp = client.get('/-/left-pad@1.3.0/index.js?--debug')

        assert resp.status_code == 200
        body = resp.get_data(as_text=True)
        assert 'esbuild failed' in body
        assert 'Could not resolve "nope"' in body


class TestFallback:

    def test_unmatched_path_says_404(self, client):
        resp = client.get('/a/b/c')

        assert resp.status_code == 200
        assert resp.get_data(as_text=True) == '404'

    def test_root(self, client):
        assert client.get('/').get_data(as_text=True) == '404'

    def test_not_found_status_is_configurable(self, config, store, bundler):
        config.not_found_status = 404
        client = create_app(config, store=store, bundler=bundler).test_client()

        resp = client.get('/a/b/c')

        assert resp.status_code == 404
        assert resp.get_data(as_text=True) == '404'


class TestStaticFiles:

    def test_static_file(self, client, config):
        with open(f"{config.public_dir}/style.css", 'w') as f:
            f.write('body {}')

        resp = client.get('/style.css')

        assert resp.status_code == 200
        assert resp.get_data(as_text=True) == 'body {}'
        assert resp.headers['Cache-Control'] == STATIC_CACHE_CONTROL
        assert 'Last-Modified' not in resp.headers
        assert resp.content_type.startswith('text/css')

    def test_static_file_shadows_shorthand(self, client, config, registry):
        with open(f"{config.public_dir}/left-pad", 'w') as f:
            f.write('static')

        resp = client.get('/left-pad')

        assert resp.get_data(as_text=True) == 'static'
        assert registry.resolve_calls == []

    def test_no_escape_from_public_dir(self, client, tmp_path):
        (tmp_path / 'secret.txt').write_text('secret')

        resp = client.get('/../secret.txt')

        assert resp.get_data(as_text=True) != 'secret'


class TestConfig:

    def test_defaults(self, monkeypatch):
        for name in ('REGISTRY', 'NETWORK_CONCURRENCY', 'STRICT_BUNDLING',
                     'NOT_FOUND_STATUS', 'AWAIT_DEPENDENCIES'):
            monkeypatch.delenv(name, raising=False)

        config = CdnConfig.make_from_env()

        assert config.registry_url == 'https://registry.npmjs.org'
        assert config.network_concurrency == 1
        assert config.strict_bundling is False
        assert config.await_dependencies is True
        assert config.not_found_status == 200

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv('REGISTRY', 'https://registry.test/')
        monkeypatch.setenv('NETWORK_CONCURRENCY', '4')
        monkeypatch.setenv('STRICT_BUNDLING', 'true')
        monkeypatch.setenv('AWAIT_DEPENDENCIES', '0')
        monkeypatch.setenv('NOT_FOUND_STATUS', '404')
        monkeypatch.setenv('LOG_LEVEL', 'debug')

        config = CdnConfig.make_from_env()

        assert config.registry_url == 'https://registry.test'
        assert config.network_concurrency == 4
        assert config.strict_bundling is True
        assert config.await_dependencies is False
        assert config.not_found_status == 404
        assert config.log_level == 'DEBUG'

    def test_create_app_builds_services(self, tmp_path, monkeypatch):
        monkeypatch.setenv('STORE_DIR', str(tmp_path / 'store'))
        monkeypatch.setenv('BUNDLE_DIR', str(tmp_path / 'bundled'))

        app = create_app()
        services = app.extensions['tiny_esm_cdn']
        try:
            assert services.store.store_dir == str(tmp_path / 'store')
            assert (tmp_path / 'store' / 'node_modules').is_dir()
        finally:
            services.close()


@pytest.mark.parametrize('path', ['/-/left-pad@9.9.9/', '/-/left-pad@^9/a.js'])
def test_no_matching_version(client, path):
    assert client.get(path).status_code == 502
