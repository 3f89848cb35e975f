from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional

# Application version
VERSION = "0.1.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8085
    LOG_LEVEL: str = "info"
    APP_DEBUG: bool = False
    RELOAD: bool = False
    DOCS_URL: str = "/docs"
    REDOC_URL: str = "/redoc"
    OPENAPI_URL: str = "/openapi.json"

    # Route Configuration
    ROOT_PATH: str = ""
    # Mirror URLs look like /<ROUTE_PREFIX>/<identifier>.<ext>
    ROUTE_PREFIX: str = "stream"
    PLAYLIST_EXTENSIONS: List[str] = ["m3u", "m3u8"]

    # Device sessions
    # Trailing window (seconds) after the last heartbeat during which a device
    # still counts as active. Applies to admission and reporting alike.
    SESSION_TTL: int = 300
    SESSION_SWEEP_ENABLED: bool = True
    SESSION_SWEEP_INTERVAL: int = 60

    # Per-playlist device cap bounds
    MIN_DEVICES: int = 1
    MAX_DEVICES: int = 10
    DEFAULT_MAX_DEVICES: int = 1

    # Origin fetch
    ORIGIN_TIMEOUT: float = 15.0
    ORIGIN_CONNECT_TIMEOUT: float = 10.0
    # Sent upstream when the viewer did not declare a user agent
    ORIGIN_USER_AGENT: str = "M3U-Mirror/1.0"
    FORWARD_CLIENT_USER_AGENT: bool = True
    # Larger origin bodies are rejected as a fetch failure
    ORIGIN_MAX_BYTES: int = 10 * 1024 * 1024

    # Mirror identifiers
    IDENTIFIER_LENGTH: int = 8
    IDENTIFIER_FALLBACK_LENGTH: int = 12
    IDENTIFIER_MAX_ATTEMPTS: int = 5
    # No 0/o/1/l to keep identifiers readable when typed into a TV remote
    IDENTIFIER_ALPHABET: str = "abcdefghijkmnpqrstuvwxyz23456789"

    # Access audit trail
    ACCESS_LOG_ENABLED: bool = True
    ACCESS_LOG_RETENTION_DAYS: int = 30
    # Window (seconds) used for per-category access counts in reports
    REPORT_WINDOW: int = 3600

    # Client identity
    # Enable only behind a reverse proxy that overwrites X-Forwarded-For
    TRUST_FORWARDED_FOR: bool = False

    # Redis Configuration for multi-worker session sharing
    REDIS_HOST: str = "localhost"
    REDIS_SERVER_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    REDIS_ENABLED: bool = False
    REDIS_KEY_PREFIX: str = "m3u-mirror"

    # API Authentication (admin endpoints only, never the mirror route)
    API_TOKEN: Optional[str] = None

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )


# Global settings instance
settings = Settings()
