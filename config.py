import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        drift_tolerance_cents: int,
        enable_scheduler: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.drift_tolerance_cents = drift_tolerance_cents
        self.enable_scheduler = enable_scheduler


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("ALLOWANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "allowance.db"
    database_url = os.getenv("ALLOWANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("ALLOWANCE_TIMEZONE", "Asia/Kolkata")
    # 10 currency units
    drift_tolerance_cents = int(os.getenv("ALLOWANCE_DRIFT_TOLERANCE_CENTS", "1000"))
    enable_scheduler = _env_flag("ALLOWANCE_ENABLE_SCHEDULER", "true")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        drift_tolerance_cents=drift_tolerance_cents,
        enable_scheduler=enable_scheduler,
    )
