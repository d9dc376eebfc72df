import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        token_secret: str,
        token_max_age_hours: int,
        default_currency: str,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.token_secret = token_secret
        self.token_max_age_hours = token_max_age_hours
        self.default_currency = default_currency
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "UTC")
    token_secret = os.getenv(
        "FINANCE_TOKEN_SECRET",
        "3f0c2b7d9a41e6c58b1d0f7e2a94c36d5e8b17a0c4f92d6e1b3a75c08d4e2f91",
    )
    token_max_age_hours = int(os.getenv("FINANCE_TOKEN_MAX_AGE_HOURS", "24"))
    default_currency = os.getenv("FINANCE_DEFAULT_CURRENCY", "USD").upper()
    log_level = os.getenv("FINANCE_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        token_secret=token_secret,
        token_max_age_hours=token_max_age_hours,
        default_currency=default_currency,
        log_level=log_level,
    )
