import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        rebuild_batch_size: int,
        nightly_rebuild_hour: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.rebuild_batch_size = rebuild_batch_size
        self.nightly_rebuild_hour = nightly_rebuild_hour
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    rebuild_batch_size = max(1, int(os.getenv("LEDGER_REBUILD_BATCH_SIZE", "500")))
    nightly_rebuild_hour = int(os.getenv("LEDGER_NIGHTLY_REBUILD_HOUR", "3"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        rebuild_batch_size=rebuild_batch_size,
        nightly_rebuild_hour=nightly_rebuild_hour,
        log_level=log_level,
    )
