"""Runtime settings, read from ICOOK_* environment variables or a .env file."""

from functools import lru_cache
from pathlib import Path
from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ICOOK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = "sqlite:///./icook.db"

    # Uploaded images live in upload_dir and are served under upload_url_prefix
    upload_dir: Path = Path("uploads")
    upload_url_prefix: str = "/uploads"
    max_upload_bytes: int = 5 * 1024 * 1024
    allowed_mime: List[str] = ["image/jpeg", "image/png", "image/webp"]

    default_source_name: str = "Personal"
    default_owner: str = "local"
    default_category_icon: str = "fork.knife"

    # Empty list keeps CORS disabled (native clients do not need it)
    cors_origins: List[str] = []

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000


@lru_cache
def get_settings() -> Settings:
    return Settings()
