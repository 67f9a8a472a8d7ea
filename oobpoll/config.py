from __future__ import annotations
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    # Collaborator server
    SERVER_URL: str = Field(default="https://oast.pro")
    TOKEN: str | None = Field(default=None)
    DISABLE_HTTP_FALLBACK: bool = Field(default=False)

    # Identity
    CORRELATION_ID_LENGTH: int = Field(default=20, ge=1)
    SECRET_KEY_LENGTH: int = Field(default=32, ge=1)
    NONCE_LENGTH: int = Field(default=13, ge=1)

    # Crypto
    KEY_SIZE: int = Field(default=2048, ge=1024)

    # Polling / networking
    POLL_INTERVAL_MS: int = Field(default=5000, gt=0)
    TIMEOUT_S: float = Field(default=10.0, gt=0)

    LOG_LEVEL: str = Field(default="WARNING")

    model_config = SettingsConfigDict(env_prefix="OOBPOLL_", env_file=".env", env_file_encoding="utf-8")
