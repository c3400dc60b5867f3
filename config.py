import os
from functools import lru_cache
from pathlib import Path


DEFAULT_PAYEES = ("Nihad Karulai", "Muhammed Rashad", "Softnova Digital")


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        token_max_age_secs: int,
        payees: tuple[str, ...],
        receipts_dir: Path,
        receipt_base_url: str,
        receipt_max_bytes: int,
        dashboard_workers: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.token_max_age_secs = token_max_age_secs
        self.payees = payees
        self.receipts_dir = receipts_dir
        self.receipt_base_url = receipt_base_url
        self.receipt_max_bytes = receipt_max_bytes
        self.dashboard_workers = dashboard_workers
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_payees(raw: str) -> tuple[str, ...]:
    names = [name.strip() for name in raw.split(",")]
    return tuple(name for name in names if name)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "expenses.db"
    database_url = os.getenv("EXPENSES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("EXPENSES_TIMEZONE", "Asia/Kolkata")
    session_secret = os.getenv(
        "EXPENSES_SESSION_SECRET",
        "3f1c9a7be2d84c06a5e0d1b9c47f2a8e61d0b3c5f7a9e2d4c6b8a0f1e3d5c7b9",
    )
    token_max_age_secs = int(os.getenv("EXPENSES_TOKEN_MAX_AGE_SECS", "43200"))
    payees = _parse_payees(os.getenv("EXPENSES_PAYEES", ",".join(DEFAULT_PAYEES)))
    receipts_dir = Path(
        os.getenv("EXPENSES_RECEIPTS_DIR", str(data_dir / "receipts"))
    ).resolve()
    receipts_dir.mkdir(parents=True, exist_ok=True)
    receipt_base_url = os.getenv("EXPENSES_RECEIPT_BASE_URL", "/receipts").rstrip("/")
    receipt_max_bytes = int(
        os.getenv("EXPENSES_RECEIPT_MAX_BYTES", str(5 * 1024 * 1024))
    )
    dashboard_workers = int(os.getenv("EXPENSES_DASHBOARD_WORKERS", "4"))
    log_level = os.getenv("EXPENSES_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        token_max_age_secs=token_max_age_secs,
        payees=payees,
        receipts_dir=receipts_dir,
        receipt_base_url=receipt_base_url,
        receipt_max_bytes=receipt_max_bytes,
        dashboard_workers=max(dashboard_workers, 1),
        log_level=log_level,
    )
