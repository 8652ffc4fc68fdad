from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator

# Load environment variables from project root .env if present
current_file_path = Path(__file__).resolve()
project_root_depth = 2  # Two levels up from qbank/core/settings.py to project root

if len(current_file_path.parents) <= project_root_depth:
    project_root = Path.cwd()
else:
    project_root = current_file_path.parents[project_root_depth]

ENV_PATH = project_root / ".env"
load_dotenv(ENV_PATH)

logger = logging.getLogger(__name__)

_STORE_BACKENDS_ALLOWED = {"memory", "sql"}


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=ENV_PATH,
        extra="ignore",
        populate_by_name=True,
    )

    # Persistence
    database_url: str = Field(default="sqlite:///./qbank.db", alias="DATABASE_URL")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")
    submission_store_backend: str = Field(default="memory", alias="SUBMISSION_STORE_BACKEND")

    # Workflow behaviour
    rejection_placeholder: str = Field(default="No reason provided", alias="REJECTION_PLACEHOLDER")
    default_page_size: int = Field(default=5, alias="DEFAULT_PAGE_SIZE")
    max_page_size: int = Field(default=100, alias="MAX_PAGE_SIZE")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    @field_validator("submission_store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        value = (v or "").strip().lower()
        if value not in _STORE_BACKENDS_ALLOWED:
            raise ValueError(
                f"submission_store_backend must be one of {sorted(_STORE_BACKENDS_ALLOWED)}, got {v!r}"
            )
        return value

    @field_validator("rejection_placeholder")
    @classmethod
    def validate_rejection_placeholder(cls, v: str) -> str:
        """A rejected submission must always carry a non-empty reason."""
        if not v or not v.strip():
            raise ValueError("rejection_placeholder cannot be empty")
        return v.strip()

    @field_validator("default_page_size", "max_page_size")
    @classmethod
    def validate_page_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("page sizes must be at least 1")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return (v or "INFO").upper()

    def is_sql_backend(self) -> bool:
        return self.submission_store_backend == "sql"

    def is_in_memory_database(self, url: Optional[str] = None) -> bool:
        """True for SQLite URLs that never touch the filesystem (defaults to database_url)."""
        url = (url or self.database_url).strip()
        return url in ("sqlite://", "sqlite:///:memory:")


@lru_cache()
def get_settings() -> Settings:
    """
    Return a singleton instance of the application settings.

    Uses an internal cache to ensure the same Settings instance is returned on each call.
    """
    return Settings()
