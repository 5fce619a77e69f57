"""
Environment-driven settings for the card management stack.

All values can be overridden with `CARD_`-prefixed environment variables
or a local `.env` file. Leaving `CARD_MONGO_URI` unset selects the
in-memory store, which is only meant for tests and local development.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CARD_", env_file=".env", case_sensitive=False
    )

    # Storage
    mongo_uri: Optional[str] = None
    mongo_db: str = "card_management"

    # Audit trail mirror (line-delimited JSON)
    audit_log_path: str = "logs/card_audit.log"

    # Plan quotas written when no limits configuration exists yet
    default_free_limit: int = 2
    default_pro_limit: int = 999

    # Admission
    max_admission_attempts: int = 3
    max_slug_attempts: int = 5

    limits_cache_ttl_seconds: int = 300

    log_level: str = "INFO"

    # Public card pages live under <public_base_url>/c/<slug>
    public_base_url: str = "http://localhost:8000"


@lru_cache
def get_settings() -> Settings:
    return Settings()
