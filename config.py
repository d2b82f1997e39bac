import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        app_url: str,
        fanout_workers: int,
        qb_environment: str,
        qb_client_id: Optional[str],
        qb_client_secret: Optional[str],
        qb_redirect_uri: str,
        qb_timeout_secs: float,
        default_budget_rate: float = 0.33,
        default_reference_period_months: int = 6,
        token_key: Optional[str] = None,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.app_url = app_url
        self.fanout_workers = fanout_workers
        self.qb_environment = qb_environment
        self.qb_client_id = qb_client_id
        self.qb_client_secret = qb_client_secret
        self.qb_redirect_uri = qb_redirect_uri
        self.qb_timeout_secs = qb_timeout_secs
        self.default_budget_rate = default_budget_rate
        self.default_reference_period_months = default_reference_period_months
        self.token_key = token_key

    @property
    def quickbooks_configured(self) -> bool:
        return bool(self.qb_client_id) and bool(self.qb_client_secret)

    @property
    def qb_api_base(self) -> str:
        if self.qb_environment == "production":
            return "https://quickbooks.api.intuit.com"
        return "https://sandbox-quickbooks.api.intuit.com"


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("COSBUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _qb_credentials(environment: str) -> tuple[Optional[str], Optional[str]]:
    client_id = os.getenv("QUICKBOOKS_CLIENT_ID")
    client_secret = os.getenv("QUICKBOOKS_CLIENT_SECRET")
    if environment != "production":
        client_id = os.getenv("QUICKBOOKS_CLIENT_ID_SANDBOX") or client_id
        client_secret = os.getenv("QUICKBOOKS_CLIENT_SECRET_SANDBOX") or client_secret
    return client_id, client_secret


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "cosbudget.db"
    database_url = os.getenv("COSBUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("COSBUDGET_TIMEZONE", "America/New_York")
    secret_key = os.getenv(
        "COSBUDGET_SECRET_KEY",
        "3f0c9d7e51b24a8c92e6f1d0b7a4c3e58d2f6a19b0c7e4d3a2f1e0d9c8b7a6f5",
    )
    app_url = os.getenv("COSBUDGET_APP_URL", "http://localhost:8000").rstrip("/")
    fanout_workers = int(os.getenv("COSBUDGET_FANOUT_WORKERS", "8"))
    qb_environment = os.getenv("QUICKBOOKS_ENVIRONMENT", "sandbox").lower()
    qb_client_id, qb_client_secret = _qb_credentials(qb_environment)
    qb_redirect_uri = os.getenv(
        "QUICKBOOKS_REDIRECT_URI", f"{app_url}/api/quickbooks/auth/callback"
    )
    qb_timeout_secs = float(os.getenv("QUICKBOOKS_TIMEOUT_SECS", "25"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        app_url=app_url,
        fanout_workers=fanout_workers,
        qb_environment=qb_environment,
        qb_client_id=qb_client_id,
        qb_client_secret=qb_client_secret,
        qb_redirect_uri=qb_redirect_uri,
        qb_timeout_secs=qb_timeout_secs,
        token_key=os.getenv("COSBUDGET_TOKEN_KEY") or None,
    )
