"""Configuration module for the GRC importer.

Reads all settings from environment variables with the ``GRC_IMPORTER_`` prefix.
An optional ``.env`` file is also supported for local development.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """GRC importer configuration.

    All fields are read from environment variables prefixed with ``GRC_IMPORTER_``.
    Example: ``GRC_IMPORTER_API_KEY=service-role-key``.
    """

    model_config = SettingsConfigDict(
        env_prefix="GRC_IMPORTER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    store_url: str = Field(
        default="http://localhost:54321/rest/v1",
        description="Base URL of the PostgREST table API",
    )
    api_key: str = Field(
        description="API key sent to the table store",
    )
    reader_proxy_url: str = Field(
        default="https://r.jina.ai/",
        description="Prefix of the text-extraction reader proxy",
    )
    fetch_timeout: float = Field(
        default=15.0,
        description="Timeout in seconds for each URL fetch strategy",
    )
    request_timeout: float = Field(
        default=30.0,
        description="Table store request timeout in seconds",
    )
    max_retries: int = Field(
        default=3,
        description="Maximum number of retries for failed store reads",
    )
    search_limit: int = Field(
        default=20,
        description="Maximum number of risks/controls returned by a search",
    )
    min_paste_length: int = Field(
        default=20,
        description="Minimum number of characters accepted in paste mode",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level: DEBUG, INFO, WARNING, ERROR",
    )
    transport: str = Field(
        default="stdio",
        description="MCP transport mode: stdio or http",
    )
    session_ttl: float = Field(
        default=3600.0,
        description="Seconds an unused import session is kept before eviction",
    )
    max_sessions: int = Field(
        default=100,
        description="Maximum number of import sessions kept in memory",
    )


def load_settings() -> Settings:
    """Build ``Settings`` from the environment."""
    return Settings()  # type: ignore[call-arg]
