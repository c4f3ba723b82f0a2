"""Tests for Settings loading."""

from __future__ import annotations

from stagehand.core.config import Settings, get_settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("STAGEHAND_METADATA_ROOT", raising=False)
        monkeypatch.delenv("STAGEHAND_MULTISIG_POLL_TIMEOUT_SECONDS", raising=False)
        s = Settings(_env_file=None)
        assert s.app_name == "Stagehand"
        assert s.metadata_root == ".stagehand"
        assert s.forge_path == "forge"
        assert s.cast_path == "cast"
        assert s.multisig_poll_timeout_seconds == 300.0
        assert s.ledger_derivation_path == "44'/60'/0'/0/0"
        assert s.operator

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("STAGEHAND_FORGE_PATH", "/opt/foundry/bin/forge")
        monkeypatch.setenv("STAGEHAND_HARDWARE_TIMEOUT_SECONDS", "30")
        s = Settings(_env_file=None)
        assert s.forge_path == "/opt/foundry/bin/forge"
        assert s.hardware_timeout_seconds == 30.0

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
