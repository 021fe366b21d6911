import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        default_user_id: int,
        history_months: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.default_user_id = default_user_id
        self.history_months = history_months
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("PROVISIONS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "provisions.db"
    database_url = os.getenv("PROVISIONS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("PROVISIONS_TIMEZONE", "America/Sao_Paulo")
    csrf_secret = os.getenv(
        "PROVISIONS_CSRF_SECRET",
        "3f0c9a7be21d4c55a8e6d0b94f17c2ae6b58d1f03c7e49a2b6d8f1e0c4a7b935",
    )
    default_user_id = int(os.getenv("PROVISIONS_DEFAULT_USER_ID", "1"))
    history_months = max(1, int(os.getenv("PROVISIONS_HISTORY_MONTHS", "3")))
    scheduler_enabled = os.getenv("PROVISIONS_SCHEDULER_ENABLED", "1").lower() in {
        "1",
        "true",
        "yes",
        "on",
    }
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        default_user_id=default_user_id,
        history_months=history_months,
        scheduler_enabled=scheduler_enabled,
    )
