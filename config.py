import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        posting_hour: int,
        posting_minute: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.posting_hour = posting_hour
        self.posting_minute = posting_minute
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Australia/Sydney")
    posting_hour = int(os.getenv("LEDGER_POSTING_HOUR", "2"))
    posting_minute = int(os.getenv("LEDGER_POSTING_MINUTE", "15"))
    scheduler_enabled = _env_flag("LEDGER_SCHEDULER_ENABLED", "true")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        posting_hour=posting_hour,
        posting_minute=posting_minute,
        scheduler_enabled=scheduler_enabled,
    )
