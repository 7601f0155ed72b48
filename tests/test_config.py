"""Tests for settings loading."""

from pathlib import Path

import pytest

from fresh_auth.config import (
    DEFAULT_AUTH_SERVICE_URL,
    Settings,
    default_session_file,
    normalize_service_url,
)

ENV_VARS = [
    "AUTH_SERVICE_URL", "AUTH_SERVICE", "OFFICE_AUTO_REQUEST", "FRESH_AUTH_AUTO_REQUEST",
    "FRESH_AUTH_AGENT_SESSION_FILE", "NOTION_API_VERSION", "NOTION_BACKLOG_DB_ID",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))


class TestServiceUrl:
    """Tests for broker URL handling."""

    @pytest.mark.parametrize("raw, expected", [
        ("https://auth.example.com", "https://auth.example.com"),
        ("https://auth.example.com/", "https://auth.example.com"),
        ("https://auth.example.com/api", "https://auth.example.com"),
        ("https://auth.example.com/api/", "https://auth.example.com"),
        (" https://auth.example.com// ", "https://auth.example.com"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_service_url(raw) == expected

    def test_default(self):
        assert Settings(_env_file=None).auth_service_url == DEFAULT_AUTH_SERVICE_URL

    def test_primary_env_name(self, monkeypatch):
        monkeypatch.setenv("AUTH_SERVICE_URL", "https://one.test/api")
        assert Settings(_env_file=None).auth_service_url == "https://one.test"

    def test_legacy_env_name(self, monkeypatch):
        monkeypatch.setenv("AUTH_SERVICE", "https://two.test/")
        assert Settings(_env_file=None).auth_service_url == "https://two.test"

    def test_url_joins_path(self, monkeypatch):
        monkeypatch.setenv("AUTH_SERVICE_URL", "https://one.test")
        assert Settings(_env_file=None).url("/api/agent/status") == "https://one.test/api/agent/status"


class TestAutoRequest:
    """Tests for the auto grant request switch."""

    def test_enabled_by_default(self):
        assert Settings(_env_file=None).auto_request is True

    @pytest.mark.parametrize("value", ["0", "false"])
    def test_disabled(self, monkeypatch, value):
        monkeypatch.setenv("OFFICE_AUTO_REQUEST", value)
        assert Settings(_env_file=None).auto_request is False


class TestSessionFiles:
    """Tests for session file locations."""

    def test_default_location(self, tmp_path):
        settings = Settings(_env_file=None)
        assert settings.agent_session_file == default_session_file()
        assert settings.agent_session_file == tmp_path / ".config" / "fresh-auth" / "agent-session"

    def test_env_override_expands_user(self, monkeypatch, tmp_path):
        monkeypatch.setenv("FRESH_AUTH_AGENT_SESSION_FILE", "~/custom/session")
        assert Settings(_env_file=None).agent_session_file == tmp_path / "custom" / "session"

    def test_candidates_primary_first(self, tmp_path):
        settings = Settings(_env_file=None)
        assert settings.session_candidates == [
            tmp_path / ".config" / "fresh-auth" / "agent-session",
            tmp_path / ".config" / "office-cli" / "agent-session",
        ]

    def test_explicit_values(self, tmp_path):
        settings = Settings(
            _env_file=None,
            agent_session_file=tmp_path / "a",
            legacy_session_files=[],
        )
        assert settings.session_candidates == [Path(tmp_path / "a")]
