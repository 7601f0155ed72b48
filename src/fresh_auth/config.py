"""fresh-auth configuration.

Settings are read from environment variables first, then from a `.env` file in
the working directory. Variable names match the ones the shell clients used so
existing setups keep working:

- AUTH_SERVICE_URL (or AUTH_SERVICE): broker base URL
- OFFICE_AUTO_REQUEST=0 (or FRESH_AUTH_AUTO_REQUEST=0): disable auto grant requests
- FRESH_AUTH_AGENT_SESSION_FILE: primary agent session file
- NOTION_API_VERSION: Notion-Version header sent through the proxy
- NOTION_BACKLOG_DB_ID: database used by the backlog shortcuts
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_AUTH_SERVICE_URL = "https://auth.freshhub.ai"

# Header carrying the agent session on every broker/proxy call
SESSION_HEADER = "X-Agent-Session"

# Grant and registration polling
POLL_INTERVAL_SECONDS = 2.0
DEFAULT_GRANT_WINDOW_SECONDS = 5 * 60
DEFAULT_REGISTRATION_WINDOW_SECONDS = 300


def _config_dir() -> Path:
    return Path.home() / ".config"


def default_session_file() -> Path:
    """Primary session file shared by every fresh-auth client."""
    return _config_dir() / "fresh-auth" / "agent-session"


def default_legacy_session_files() -> list[Path]:
    """Older session locations, read as fallbacks and removed on logout."""
    return [_config_dir() / "office-cli" / "agent-session"]


def normalize_service_url(url: str) -> str:
    """Strip trailing slashes and a trailing `/api` from a broker URL."""
    url = url.strip().rstrip("/")
    if url.endswith("/api"):
        url = url[: -len("/api")]
    return url


class Settings(BaseSettings):
    """Runtime settings for the CLI, pipeline and MCP server."""

    auth_service_url: str = Field(
        default=DEFAULT_AUTH_SERVICE_URL,
        validation_alias=AliasChoices("AUTH_SERVICE_URL", "AUTH_SERVICE", "auth_service_url"),
    )
    auto_request: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "OFFICE_AUTO_REQUEST", "FRESH_AUTH_AUTO_REQUEST", "auto_request"
        ),
    )
    agent_session_file: Path = Field(
        default_factory=default_session_file,
        validation_alias=AliasChoices("FRESH_AUTH_AGENT_SESSION_FILE", "agent_session_file"),
    )
    legacy_session_files: list[Path] = Field(default_factory=default_legacy_session_files)
    notion_api_version: str = Field(
        default="2022-06-28",
        validation_alias=AliasChoices("NOTION_API_VERSION", "notion_api_version"),
    )
    notion_backlog_db_id: str = Field(
        default="",
        validation_alias=AliasChoices("NOTION_BACKLOG_DB_ID", "notion_backlog_db_id"),
    )
    http_timeout: float = Field(
        default=30.0,
        validation_alias=AliasChoices("FRESH_AUTH_HTTP_TIMEOUT", "http_timeout"),
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("auth_service_url")
    @classmethod
    def _normalize_url(cls, value: str) -> str:
        return normalize_service_url(value) or DEFAULT_AUTH_SERVICE_URL

    @field_validator("agent_session_file")
    @classmethod
    def _expand_session_file(cls, value: Path) -> Path:
        return Path(value).expanduser()

    @property
    def session_candidates(self) -> list[Path]:
        """Session files in precedence order: primary first, then legacy."""
        return [self.agent_session_file, *self.legacy_session_files]

    def url(self, path: str) -> str:
        """Absolute broker URL for a path starting with '/'."""
        return f"{self.auth_service_url}{path}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, loaded once."""
    settings = Settings()
    logger.debug(f"Broker: {settings.auth_service_url} (auto-request: {settings.auto_request})")
    return settings
