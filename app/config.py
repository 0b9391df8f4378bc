# app/config.py
from __future__ import annotations

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# This file lives in <root>/app/config.py -> parents[1] is the project root
PROJECT_ROOT = Path(__file__).resolve().parents[1]
ENV_FILE = PROJECT_ROOT / ".env"
DEFAULT_RULES_FILE = PROJECT_ROOT / "configs" / "xp_rules.yml"
load_dotenv(ENV_FILE, override=False)  # pre-load into the process environment


class Settings(BaseSettings):
    # ---- App / Infra ----
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Only the Postgres store needs this; the in-memory store ignores it.
    DATABASE_URL: Optional[str] = None
    DB_POOL_MIN_SIZE: int = Field(default=1, ge=1)
    DB_POOL_MAX_SIZE: int = Field(default=4, ge=1)
    DB_STATEMENT_TIMEOUT_MS: int = 30_000
    DB_LOCK_TIMEOUT_MS: int = 5_000
    DB_SLOW_QUERY_MS: int = 1_000

    # ---- Anti-gaming ----
    XP_GAMING_MAX_AWARDS: int = Field(default=5, ge=1)
    XP_GAMING_WINDOW_SECONDS: int = Field(default=60, ge=1)

    # ---- Ledger ----
    XP_LEVEL_SIZE: int = Field(default=1000, ge=1)
    XP_STREAK_HISTORY_LIMIT: int = Field(default=30, ge=1)
    XP_RECENT_HISTORY_LIMIT: int = Field(default=10, ge=1)

    # ---- Rule documents ----
    XP_RULES_PATH: Path = DEFAULT_RULES_FILE

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()


def require_database_url() -> str:
    """
    Runtime check with a clear message when the Postgres store is used without a DSN.
    """
    if not settings.DATABASE_URL:
        raise RuntimeError(
            "DATABASE_URL is missing. Set it in .env "
            f"(looked for: {ENV_FILE}) or use the in-memory store."
        )
    return settings.DATABASE_URL
