"""Centralized configuration for the PrakritiMitra server.

Settings are read from environment variables prefixed with ``PRAKRITI_``,
for example ``PRAKRITI_DATABASE_URL`` or ``PRAKRITI_REDIS_URL``.

Example:
    >>> from prakritimitra.config import Settings
    >>> Settings().page_size
    20
"""

from pathlib import Path
from typing import Annotated

from fastapi import Depends, Request
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

MAX_UPLOAD_BYTES = 10 * 1024 * 1024  # 10 MB

DEFAULT_UPLOAD_TYPES = [
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/pdf",
    "text/plain",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
]


class Settings(BaseSettings):
    """Server settings.

    Attributes
    ----------
    database_url
        SQLAlchemy async URL. SQLite uses ``aiosqlite``.
    redis_url
        Redis URL for room membership, typing state and the Socket.IO
        pub/sub manager. ``None`` runs an in-process fakeredis instance,
        which only works for a single server process.
    jwt_secret
        Shared secret used to verify bearer tokens issued by the account
        service.
    media_path
        Directory that receives chat uploads, served under ``/uploads``.
    edit_window_seconds
        Window after ``created_at`` in which a sender may edit or unsend.
    page_size
        Default number of messages returned per history page.
    """

    model_config = SettingsConfigDict(env_prefix="PRAKRITI_", extra="ignore")

    database_url: str = "sqlite+aiosqlite:///./prakritimitra.db"
    redis_url: str | None = None
    host: str = "127.0.0.1"
    port: int = 5000
    jwt_secret: SecretStr = SecretStr("dev-secret-change-in-production")
    jwt_algorithm: str = "HS256"
    media_path: Path = Path("./uploads")
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    allowed_upload_types: list[str] = Field(
        default_factory=lambda: list(DEFAULT_UPLOAD_TYPES)
    )
    edit_window_seconds: int = 5 * 60
    page_size: int = 20
    init_db_on_startup: bool = True
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"


def get_settings(request: Request) -> Settings:
    """Get settings from app.state."""
    return request.app.state.settings


SettingsDep = Annotated[Settings, Depends(get_settings)]
