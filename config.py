import os
from functools import lru_cache
from pathlib import Path

ATOMIC_MODES = ("transactional", "sequential")


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        atomic_mode: str,
        scheduler_enabled: bool,
        bill_scan_minutes: int,
        log_level: str,
    ) -> None:
        if atomic_mode not in ATOMIC_MODES:
            raise ValueError(f"Unsupported atomic mode: {atomic_mode}")
        self.database_url = database_url
        self.timezone = timezone
        self.atomic_mode = atomic_mode
        self.scheduler_enabled = scheduler_enabled
        self.bill_scan_minutes = bill_scan_minutes
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Asia/Ho_Chi_Minh")
    atomic_mode = os.getenv("LEDGER_ATOMIC_MODE", "transactional").strip().lower()
    scheduler_enabled = _env_flag("LEDGER_SCHEDULER_ENABLED", "true")
    bill_scan_minutes = int(os.getenv("LEDGER_BILL_SCAN_MINUTES", "5"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        atomic_mode=atomic_mode,
        scheduler_enabled=scheduler_enabled,
        bill_scan_minutes=bill_scan_minutes,
        log_level=log_level,
    )
