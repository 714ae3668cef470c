import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        smtp_host: Optional[str],
        smtp_port: int,
        smtp_username: Optional[str],
        smtp_password: Optional[str],
        smtp_sender: str,
        smtp_starttls: bool,
        gemini_api_key: Optional[str],
        gemini_model: str,
        insights_timeout_secs: float,
        budget_alert_percent: int,
        owner_concurrency: int,
        dispatch_workers: int,
        unit_max_attempts: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.smtp_sender = smtp_sender
        self.smtp_starttls = smtp_starttls
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.insights_timeout_secs = insights_timeout_secs
        self.budget_alert_percent = budget_alert_percent
        self.owner_concurrency = owner_concurrency
        self.dispatch_workers = dispatch_workers
        self.unit_max_attempts = unit_max_attempts
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    return Settings(
        database_url=os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}"),
        timezone=os.getenv("LEDGER_TIMEZONE", "UTC"),
        smtp_host=os.getenv("LEDGER_SMTP_HOST") or None,
        smtp_port=int(os.getenv("LEDGER_SMTP_PORT", "587")),
        smtp_username=os.getenv("LEDGER_SMTP_USERNAME") or None,
        smtp_password=os.getenv("LEDGER_SMTP_PASSWORD") or None,
        smtp_sender=os.getenv("LEDGER_SMTP_SENDER", "alerts@ledger.local"),
        smtp_starttls=_env_bool("LEDGER_SMTP_STARTTLS", True),
        gemini_api_key=os.getenv("LEDGER_GEMINI_API_KEY") or None,
        gemini_model=os.getenv("LEDGER_GEMINI_MODEL", "gemini-2.0-flash"),
        insights_timeout_secs=float(os.getenv("LEDGER_INSIGHTS_TIMEOUT_SECS", "10")),
        budget_alert_percent=int(os.getenv("LEDGER_BUDGET_ALERT_PERCENT", "80")),
        owner_concurrency=int(os.getenv("LEDGER_OWNER_CONCURRENCY", "10")),
        dispatch_workers=int(os.getenv("LEDGER_DISPATCH_WORKERS", "4")),
        unit_max_attempts=int(os.getenv("LEDGER_UNIT_MAX_ATTEMPTS", "3")),
        scheduler_enabled=_env_bool("LEDGER_SCHEDULER_ENABLED", True),
    )
