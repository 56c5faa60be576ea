import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        keepalive_secs: float,
        read_timeout_secs: float,
        subscriber_queue_size: int,
        lock_past_years: bool,
        reconcile_interval_minutes: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.keepalive_secs = keepalive_secs
        self.read_timeout_secs = read_timeout_secs
        self.subscriber_queue_size = subscriber_queue_size
        self.lock_past_years = lock_past_years
        self.reconcile_interval_minutes = reconcile_interval_minutes


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("CAREBUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "care_budget.db"
    database_url = os.getenv("CAREBUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("CAREBUDGET_TIMEZONE", "Australia/Melbourne")
    keepalive_secs = float(os.getenv("CAREBUDGET_KEEPALIVE_SECS", "25"))
    read_timeout_secs = float(os.getenv("CAREBUDGET_READ_TIMEOUT_SECS", "10"))
    subscriber_queue_size = int(os.getenv("CAREBUDGET_SUBSCRIBER_QUEUE_SIZE", "100"))
    lock_past_years = _env_flag("CAREBUDGET_LOCK_PAST_YEARS")
    reconcile_interval_minutes = int(
        os.getenv("CAREBUDGET_RECONCILE_INTERVAL_MINUTES", "60")
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        keepalive_secs=keepalive_secs,
        read_timeout_secs=read_timeout_secs,
        subscriber_queue_size=subscriber_queue_size,
        lock_past_years=lock_past_years,
        reconcile_interval_minutes=reconcile_interval_minutes,
    )
