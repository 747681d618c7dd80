import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_currency: str,
        default_alert_threshold: Decimal,
        scheduler_hour: int,
        scheduler_minute: int,
        run_on_startup: bool,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_currency = default_currency
        self.default_alert_threshold = default_alert_threshold
        self.scheduler_hour = scheduler_hour
        self.scheduler_minute = scheduler_minute
        self.run_on_startup = run_on_startup
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("MONEYFLOW_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "moneyflow.db"
    database_url = os.getenv("MONEYFLOW_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("MONEYFLOW_TIMEZONE", "UTC")
    default_currency = os.getenv("MONEYFLOW_DEFAULT_CURRENCY", "USD").upper()
    default_alert_threshold = Decimal(
        os.getenv("MONEYFLOW_DEFAULT_ALERT_THRESHOLD", "80.00")
    )
    scheduler_hour = int(os.getenv("MONEYFLOW_SCHEDULER_HOUR", "0"))
    scheduler_minute = int(os.getenv("MONEYFLOW_SCHEDULER_MINUTE", "5"))
    run_on_startup = _env_flag("MONEYFLOW_RUN_ON_STARTUP", "true")
    log_level = os.getenv("MONEYFLOW_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_currency=default_currency,
        default_alert_threshold=default_alert_threshold,
        scheduler_hour=scheduler_hour,
        scheduler_minute=scheduler_minute,
        run_on_startup=run_on_startup,
        log_level=log_level,
    )
