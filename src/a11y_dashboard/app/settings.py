"""Application settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import DEFAULT_STANDARD

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "a11y-dashboard"
    host: str = "127.0.0.1"
    port: int = Field(default=4000, ge=1, le=65535)
    readonly: bool = False
    noindex: bool = True
    default_standard: str = DEFAULT_STANDARD
    engine_command: str = "pa11y"
    engine_grace_s: float = Field(default=30.0, ge=0.0)
    dashboard_url: str = "http://127.0.0.1:4000"
    durable_path: Path = Path("a11y-dashboard.sqlite3")
    http_timeout_s: float = Field(default=120.0, ge=0.5)
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="A11Y_DASHBOARD_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
