"""Application settings using Pydantic BaseSettings."""

import os
import re

from pydantic_settings import BaseSettings, SettingsConfigDict


def get_async_database_url() -> str:
    """Get database URL converted for asyncpg driver."""
    url = os.environ.get("DATABASE_URL", "") or settings.database_url
    # Convert postgres:// to postgresql+asyncpg:// for SQLAlchemy async
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgresql://") and "+asyncpg" not in url:
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    # asyncpg doesn't support sslmode, it uses ssl parameter
    if "sslmode=" in url:
        url = re.sub(r'[?&]sslmode=[^&]*', '', url)
        url = url.rstrip('?&')
    return url


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./leadbridge.db"

    # Redis (optional, used for sent-message pins across workers)
    redis_url: str = "redis://localhost:6379/0"
    redis_enabled: bool = False

    # Application
    environment: str = "development"
    log_level: str = "INFO"
    api_v1_prefix: str = "/api/v1"

    # Fernet key for session credential material at rest
    field_encryption_key: str | None = None

    # Session credentials: "file" or "database"
    credential_store_backend: str = "file"
    session_path: str = "./sessions"

    # Protocol client: "package.module:attribute" resolving to a ProtocolSessionFactory
    protocol_factory: str | None = None

    # Identity
    default_protocol_domain: str = "s.whatsapp.net"

    # Connection lifecycle
    max_reconnect_attempts: int = 5
    reconnect_delay_seconds: float = 5.0
    reconnect_backoff: str = "fixed"  # fixed, exponential
    reconnect_max_delay_seconds: float = 60.0
    restart_retry_delay_seconds: float = 2.0
    method_rejected_retry_delay_seconds: float = 3.0
    qr_regenerate_delay_seconds: float = 2.0
    qr_expiry_seconds: float = 60.0
    logout_confirm_timeout_seconds: float = 10.0

    # Ingestion
    historical_window_seconds: int = 300
    dedup_window_seconds: int = 30
    sent_pin_ttl_seconds: int = 300
    profile_lookup_timeout_seconds: float = 5.0

    # Replies
    audio_data_dir: str = "./data"
    ffmpeg_path: str = "ffmpeg"

    # Shutdown
    shutdown_drain_timeout_seconds: float = 10.0
    shutdown_session_timeout_seconds: float = 5.0

    # Tenants started on application startup
    autostart_tenants: list[int] = []

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
