"""Tests for permit builder settings loading."""

from pathlib import Path

import pytest
import yaml

from permit_expediter import startup
from permit_expediter.config.settings import (
    DEV_SIGNING_SECRET,
    PermitBuilderSettings,
    load_settings,
)

ENV_VARS = (
    "PERMIT_ENVIRONMENT",
    "PERMIT_WORKSPACE_DIR",
    "PERMIT_DEFAULT_STATE",
    "PERMIT_PARCEL_CACHE_TTL_DAYS",
    "PERMIT_SIGNING_SECRET",
    "PERMIT_STORE_TIMEOUT_SECONDS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def write_config(workspace: Path, data) -> Path:
    config_dir = workspace / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    path = config_dir / "permit_builder.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestPermitBuilderSettings:
    def test_defaults(self):
        settings = PermitBuilderSettings()

        assert settings.environment == "development"
        assert settings.default_state == "FL"
        assert settings.parcel_cache_ttl_days == 7
        assert settings.signing_secret == DEV_SIGNING_SECRET
        assert not settings.is_production
        assert settings.config_dir == Path("workspace") / "config"

    def test_production_requires_signing_secret(self):
        with pytest.raises(ValueError):
            PermitBuilderSettings(environment="Production")

        settings = PermitBuilderSettings(environment="Production", signing_secret="s3cret")
        assert settings.is_production

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValueError):
            PermitBuilderSettings(parcel_ttl=3)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("PERMIT_PARCEL_CACHE_TTL_DAYS", "14")
        monkeypatch.setenv("PERMIT_DEFAULT_STATE", "GA")

        settings = PermitBuilderSettings.from_env()

        assert settings.parcel_cache_ttl_days == 14
        assert settings.default_state == "GA"


class TestLoadSettings:
    def test_without_config_file(self, tmp_path: Path):
        settings = load_settings(workspace_dir=tmp_path)
        assert settings.workspace_dir == tmp_path
        assert settings.parcel_cache_ttl_days == 7

    def test_yaml_then_env(self, tmp_path: Path, monkeypatch):
        write_config(tmp_path, {"parcel_cache_ttl_days": 14, "documents_bucket": "permit-docs"})
        monkeypatch.setenv("PERMIT_PARCEL_CACHE_TTL_DAYS", "30")

        settings = load_settings(workspace_dir=tmp_path)

        assert settings.documents_bucket == "permit-docs"
        assert settings.parcel_cache_ttl_days == 30

    def test_workspace_from_env(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("PERMIT_WORKSPACE_DIR", str(tmp_path))
        assert load_settings().workspace_dir == tmp_path

    def test_explicit_workspace_beats_env(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("PERMIT_WORKSPACE_DIR", "/somewhere/else")
        assert load_settings(workspace_dir=tmp_path).workspace_dir == tmp_path

    def test_config_must_be_a_mapping(self, tmp_path: Path):
        write_config(tmp_path, ["not", "a", "mapping"])
        with pytest.raises(ValueError):
            load_settings(workspace_dir=tmp_path)

    def test_invalid_values(self, tmp_path: Path):
        write_config(tmp_path, {"store_timeout_seconds": -1})
        with pytest.raises(ValueError) as exc_info:
            load_settings(workspace_dir=tmp_path)
        assert "Invalid permit builder settings" in str(exc_info.value)


class TestStartup:
    def setup_method(self):
        startup.reset()

    def teardown_method(self):
        startup.reset()

    def test_get_settings_requires_initialization(self):
        with pytest.raises(RuntimeError):
            startup.get_settings()

    def test_ensure_initialized_is_cached(self, tmp_path: Path):
        first = startup.ensure_initialized(tmp_path)
        second = startup.ensure_initialized()

        assert first is second
        assert startup.get_settings() is first

    def test_new_workspace_reloads(self, tmp_path: Path):
        first = startup.ensure_initialized(tmp_path / "a")
        second = startup.ensure_initialized(tmp_path / "b")

        assert first is not second
        assert second.workspace_dir == tmp_path / "b"
