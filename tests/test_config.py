"""Tests for settings precedence and component wiring."""

import argparse

import pytest
from pydantic import ValidationError as SettingsError

from calibra.config import Settings, add_args, load_settings
from calibra.entrypoints.server import build_components, build_ledger, build_store
from calibra.ledger.memory import InMemoryLedger
from calibra.store.filesystem import FilesystemEnvelopeStore
from calibra.store.http_client import HTTPEnvelopeStore


def _parse(argv):
    parser = argparse.ArgumentParser()
    add_args(parser)
    return parser.parse_args(argv)


class TestLoadSettings:

    def test_defaults(self):
        settings = load_settings(environ={})
        assert settings.server.port == 8300
        assert settings.auth.nonce_ttl_seconds == 600
        assert settings.store.retention_days == 30
        assert settings.canonical_policy == "strict"

    def test_flags(self):
        args = _parse(["--server.port", "9000", "--store.backend", "http", "--canonical_policy", "LENIENT"])
        settings = load_settings(args, environ={})
        assert settings.server.port == 9000
        assert settings.store.backend == "http"
        assert settings.canonical_policy == "lenient"

    def test_env_overrides_flags(self):
        args = _parse(["--server.port", "9000"])
        settings = load_settings(args, environ={"CALIBRA_SERVER__PORT": "9100", "CALIBRA_AUTH__NONCE_TTL_SECONDS": "60"})
        assert settings.server.port == 9100
        assert settings.auth.nonce_ttl_seconds == 60

    def test_unrelated_env_ignored(self):
        settings = load_settings(environ={"CALIBRA_TEST_MODE": "true", "CALIBRA_SUBMISSION_ENC_KEY_BASE64": "x", "HOME": "/"})
        assert settings == Settings()

    @pytest.mark.parametrize("env", [
        {"CALIBRA_AUTH__NONCE_TTL_SECONDS": "0"},
        {"CALIBRA_STORE__BACKEND": "s3"},
        {"CALIBRA_SERVER__PORT": "not-a-port"},
    ])
    def test_invalid_values(self, env):
        with pytest.raises(SettingsError):
            load_settings(environ=env)


class TestWiring:

    def test_default_backends(self, tmp_path):
        settings = load_settings(environ={"CALIBRA_STORE__DATA_DIR": str(tmp_path)})
        assert isinstance(build_store(settings), FilesystemEnvelopeStore)
        assert isinstance(build_ledger(settings), InMemoryLedger)

    def test_http_store_requires_credentials(self):
        settings = load_settings(environ={"CALIBRA_STORE__BACKEND": "http"})
        with pytest.raises(ValueError):
            build_store(settings)

    @pytest.mark.asyncio
    async def test_http_store_configured(self):
        settings = load_settings(environ={
            "CALIBRA_STORE__BACKEND": "http",
            "CALIBRA_STORE__BASE_URL": "https://storage.test/",
            "CALIBRA_STORE__SERVICE_KEY": "k",
        })
        store = build_store(settings)
        assert isinstance(store, HTTPEnvelopeStore)
        assert store.base_url == "https://storage.test"
        await store.close()

    def test_web3_ledger_requires_endpoint(self):
        settings = load_settings(environ={"CALIBRA_LEDGER__BACKEND": "web3"})
        with pytest.raises(ValueError):
            build_ledger(settings)

    @pytest.mark.asyncio
    async def test_build_components(self, tmp_path, ledger):
        settings = load_settings(environ={
            "CALIBRA_DATABASE__URL": "sqlite+aiosqlite://",
            "CALIBRA_STORE__DATA_DIR": str(tmp_path),
        })
        components = await build_components(settings, ledger=ledger)
        try:
            assert components.ledger is ledger
            assert components.server.port == 8300
            assert components.server.build_app().router is not None
        finally:
            await components.database.dispose()
