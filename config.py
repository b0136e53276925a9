import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        user_id: Optional[int],
        atomic_mutations: bool,
        tolerance_cents: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.user_id = user_id
        self.atomic_mutations = atomic_mutations
        self.tolerance_cents = tolerance_cents
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("BUDGET_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'budget.db'}"
    timezone = os.getenv("BUDGET_TIMEZONE", "Europe/Berlin")
    csrf_secret = os.getenv(
        "BUDGET_CSRF_SECRET",
        "5f1c0b7e9a2d48c3b6e4f0a19d8c7b2e3a4f5d6c7b8a9e0f1d2c3b4a5e6f7089",
    )
    raw_user = os.getenv("BUDGET_USER_ID", "1").strip()
    user_id = int(raw_user) if raw_user else None
    atomic_mutations = _env_flag("BUDGET_ATOMIC_MUTATIONS", "1")
    tolerance_cents = int(os.getenv("BUDGET_TOLERANCE_CENTS", "1"))
    log_level = os.getenv("BUDGET_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        user_id=user_id,
        atomic_mutations=atomic_mutations,
        tolerance_cents=tolerance_cents,
        log_level=log_level,
    )
