import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        api_secret: str,
        api_token_max_age_secs: int,
        match_amount_tolerance: Decimal,
        match_date_tolerance_days: int,
        categorize_batch_size: int,
        categorize_sweep_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.api_secret = api_secret
        self.api_token_max_age_secs = api_token_max_age_secs
        self.match_amount_tolerance = match_amount_tolerance
        self.match_date_tolerance_days = match_date_tolerance_days
        self.categorize_batch_size = categorize_batch_size
        self.categorize_sweep_enabled = categorize_sweep_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TIMEZONE", "Europe/Berlin")
    api_secret = os.getenv(
        "BUDGET_API_SECRET",
        "5d0c3f1a9e7b4c28a61f0e9d2b7c4a13f8e6d5c4b3a29180f7e6d5c4b3a29180",
    )
    api_token_max_age_secs = int(os.getenv("BUDGET_API_TOKEN_MAX_AGE_SECS", "86400"))
    match_amount_tolerance = Decimal(os.getenv("BUDGET_MATCH_AMOUNT_TOLERANCE", "0.01"))
    match_date_tolerance_days = int(os.getenv("BUDGET_MATCH_DATE_TOLERANCE_DAYS", "3"))
    categorize_batch_size = int(os.getenv("BUDGET_CATEGORIZE_BATCH_SIZE", "500"))
    categorize_sweep_enabled = _env_flag("BUDGET_CATEGORIZE_SWEEP", "1")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        api_secret=api_secret,
        api_token_max_age_secs=api_token_max_age_secs,
        match_amount_tolerance=match_amount_tolerance,
        match_date_tolerance_days=match_date_tolerance_days,
        categorize_batch_size=categorize_batch_size,
        categorize_sweep_enabled=categorize_sweep_enabled,
    )
