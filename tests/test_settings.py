"""Tests for YAML settings loading and env substitution."""
from datetime import timedelta

from config.settings import get_settings, load_settings


class TestLoadSettings:
    def test_missing_file_gives_defaults(self):
        settings = get_settings()

        assert settings.engine.max_steps_per_tick == 50
        assert settings.engine.max_retries == 2
        assert settings.engine.inactivity_timeout == timedelta(minutes=30)
        assert settings.database.store_backend == "memory"
        assert settings.bots == []

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("BOOKING_URL", "http://booking.test/book")
        monkeypatch.delenv("MAIL_KEY", raising=False)
        path = tmp_path / "settings.yaml"
        path.write_text(
            "engine:\n"
            "  max_steps_per_tick: 10\n"
            "  http_timeout: 2.5\n"
            "integrations:\n"
            "  booking_url: ${BOOKING_URL}\n"
            "  email_api_key: ${MAIL_KEY:-dev-key}\n"
            "  email_api_url: ${UNSET_MAIL_URL}\n"
        )

        settings = load_settings(str(path))

        assert settings.engine.max_steps_per_tick == 10
        assert settings.engine.http_timeout == 2.5
        assert settings.engine.quick_reply_reprompts == 1
        assert settings.integrations.booking_url == "http://booking.test/book"
        assert settings.integrations.email_api_key == "dev-key"
        assert settings.integrations.email_api_url == "${UNSET_MAIL_URL}"

    def test_channels_and_bots(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "channels:\n"
            "  telegram:\n"
            "    enabled: true\n"
            "    credentials: {send_url: 'http://relay.test/send'}\n"
            "  email:\n"
            "bots:\n"
            "  - id: greeter\n"
            "    name: Greeter\n"
        )
        monkeypatch.setenv("FLOWRUNNER_CONFIG", str(path))

        settings = load_settings()

        assert settings.channels["telegram"].enabled is True
        assert settings.channels["telegram"].credentials == {"send_url": "http://relay.test/send"}
        assert settings.channels["email"].enabled is False
        assert settings.bots == [{"id": "greeter", "name": "Greeter"}]
        assert get_settings() is settings
