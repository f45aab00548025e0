"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SEARCH_QUERY = (
    'subject:(order OR confirmation OR shipped OR delivery OR tracking OR invoice '
    'OR replacement OR "your supply") '
    '(amazon OR dexcom OR cvs OR walgreens OR "us med" OR edgepark OR omnipod '
    "OR insulet OR theomnipodteam) newer_than:90d"
)


class SupplySyncSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="SUPPLY_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Gmail access: one authorized-user token file per user, named {user_id}.json
    token_dir: Path = Path("credentials/tokens")
    search_query: str = DEFAULT_SEARCH_QUERY
    max_results: int = 20
    mail_timeout_seconds: float = 30.0

    # Database
    database_path: Path = Path("data/supply_sync.db")
    ledger_timeout_seconds: float = 10.0

    # Reconciliation
    default_pack_size: int = 3
    fuzzy_lookback_days: int = 7
    fuzzy_window_days: int = 5
    default_product_keyword: str = "Dexcom"

    # Concurrency
    lock_timeout_seconds: float = 60.0
    sync_workers: int = 4

    # Rate limiting & retry
    max_retries: int = 5
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0
    num_retries: int = 3

    # Logging
    log_level: str = "INFO"

    def token_path_for(self, user_id: str) -> Path:
        """Path of the cached Gmail token for a user."""
        return self.token_dir / f"{user_id}.json"

    def ensure_directories(self) -> None:
        """Create data and credential directories if they don't exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.token_dir.mkdir(parents=True, exist_ok=True)
