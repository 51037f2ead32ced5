import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        token_secret: str,
        token_max_age_hours: int,
        gemini_api_key: Optional[str],
        gemini_model: str,
        generation_timeout_secs: float,
        review_job_enabled: bool,
        account_rate_limit: int,
        account_rate_window_secs: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.token_secret = token_secret
        self.token_max_age_hours = token_max_age_hours
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.generation_timeout_secs = generation_timeout_secs
        self.review_job_enabled = review_job_enabled
        self.account_rate_limit = account_rate_limit
        self.account_rate_window_secs = account_rate_window_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "Europe/Istanbul")
    token_secret = os.getenv(
        "FINANCE_TOKEN_SECRET",
        "5c0f3d7e9a41b2c8d6e0f1a3b5c7d9e1f2a4b6c8d0e2f4a6b8c0d2e4f6a8b0c2",
    )
    token_max_age_hours = int(os.getenv("FINANCE_TOKEN_MAX_AGE_HOURS", "720"))
    gemini_api_key = os.getenv("FINANCE_GEMINI_API_KEY") or None
    gemini_model = os.getenv("FINANCE_GEMINI_MODEL", "gemini-1.5-pro")
    generation_timeout_secs = float(os.getenv("FINANCE_GENERATION_TIMEOUT_SECS", "30"))
    review_job_enabled = _env_flag("FINANCE_REVIEW_JOB_ENABLED", "1")
    account_rate_limit = int(os.getenv("FINANCE_ACCOUNT_RATE_LIMIT", "5"))
    account_rate_window_secs = int(os.getenv("FINANCE_ACCOUNT_RATE_WINDOW_SECS", "180"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        token_secret=token_secret,
        token_max_age_hours=token_max_age_hours,
        gemini_api_key=gemini_api_key,
        gemini_model=gemini_model,
        generation_timeout_secs=generation_timeout_secs,
        review_job_enabled=review_job_enabled,
        account_rate_limit=account_rate_limit,
        account_rate_window_secs=account_rate_window_secs,
    )
