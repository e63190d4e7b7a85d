"""Tests for settings loading and credential validation."""
import pytest

from config.settings import (
    ConfigurationError, WhatsAppConfig, get_settings, load_settings, reset_settings,
)

YAML = """
app_name: TestEngine
whatsapp:
  phone_number_id: ${TEST_PHONE_ID}
  access_token: ${TEST_TOKEN}
  api_version: v21.0
database:
  url: sqlite:///./test.db
  store_backend: sql
dispatch:
  max_automation_depth: 5
  poller_enabled: true
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(YAML)
    return str(path)


class TestLoadSettings:
    def test_yaml_with_env_substitution(self, config_file):
        settings = load_settings(config_file, environ={})
        assert settings.app_name == "TestEngine"
        assert settings.whatsapp.api_version == "v21.0"
        assert settings.database.store_backend == "sql"
        assert settings.dispatch.max_automation_depth == 5
        assert settings.dispatch.poller_enabled is True

    def test_substituted_values(self, config_file, monkeypatch):
        monkeypatch.setenv("TEST_PHONE_ID", "1001")
        monkeypatch.setenv("TEST_TOKEN", "EAAG")
        settings = load_settings(config_file, environ={})
        assert settings.whatsapp.phone_number_id == "1001"
        assert settings.whatsapp.access_token == "EAAG"

    def test_empty_substitution_keeps_default(self, config_file, monkeypatch):
        monkeypatch.delenv("TEST_PHONE_ID", raising=False)
        settings = load_settings(config_file, environ={})
        assert settings.whatsapp.phone_number_id == ""
        assert settings.whatsapp.graph_base_url == "https://graph.facebook.com"

    def test_env_overrides_win(self, config_file):
        settings = load_settings(config_file, environ={
            "META_WHATSAPP_PHONE_NUMBER_ID": "2002",
            "META_GRAPH_API_VERSION": "v23.0",
            "DATABASE_URL": "postgresql://u:p@db/app",
        })
        assert settings.whatsapp.phone_number_id == "2002"
        assert settings.whatsapp.api_version == "v23.0"
        assert settings.database.url == "postgresql://u:p@db/app"

    def test_missing_file_uses_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"), environ={})
        assert settings.database.store_backend == "memory"
        assert settings.dispatch.schedule_threshold_seconds == 1.0

    def test_get_settings_is_cached(self, config_file, monkeypatch):
        monkeypatch.setenv("MESSAGING_CONFIG", config_file)
        reset_settings()
        assert get_settings() is get_settings()
        assert get_settings().app_name == "TestEngine"


class TestWhatsAppConfig:
    def test_validate_lists_missing(self):
        with pytest.raises(ConfigurationError) as exc_info:
            WhatsAppConfig().validate()
        assert "META_WHATSAPP_PHONE_NUMBER_ID" in str(exc_info.value)
        assert "META_WHATSAPP_ACCESS_TOKEN" in str(exc_info.value)

    def test_validate_ok(self):
        WhatsAppConfig(phone_number_id="1", access_token="t").validate()

    def test_api_base(self):
        config = WhatsAppConfig(graph_base_url="https://graph.facebook.com/", api_version="v22.0",
                                phone_number_id="1001")
        assert config.api_base == "https://graph.facebook.com/v22.0"
        assert config.messages_url == "https://graph.facebook.com/v22.0/1001/messages"

    def test_status(self):
        status = WhatsAppConfig(phone_number_id="1", access_token="t").status()
        assert status["is_fully_configured"]
        assert not status["has_production_auth"]
        assert not status["has_business_account_id"]

    @pytest.mark.asyncio
    async def test_business_account_memoized(self):
        config = WhatsAppConfig()
        calls = []

        async def lookup():
            calls.append(1)
            return "WABA-1"

        assert await config.resolve_business_account_id(lookup) == "WABA-1"
        assert await config.resolve_business_account_id(lookup) == "WABA-1"
        assert calls == [1]
