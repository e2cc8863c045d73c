"""Runtime settings for printshop, read from PRINTSHOP_* environment variables."""

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Mapping

ENV_PREFIX = "PRINTSHOP_"

# Local data directory within the printshop project
_default_data_dir = Path(__file__).parent.parent.parent / "data"
DEFAULT_DATABASE_URL = f"sqlite:///{_default_data_dir / 'printshop.db'}"


def normalize_database_url(url: str) -> str:
    """Make Postgres URLs use the psycopg driver."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def _flag(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    s3_bucket: str | None = None
    s3_region: str = "us-east-1"
    s3_endpoint_url: str | None = None
    payment_window_hours: int = 24
    staff_email: str | None = None  # inbox for PaymentSubmitted notices
    create_schema: bool = True
    log_level: str = "INFO"
    log_json: bool = False

    @property
    def payment_window(self) -> timedelta:
        return timedelta(hours=self.payment_window_hours)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """
        Load settings from the environment.

        Args:
            environ: Mapping to read instead of os.environ (for testing).
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value if value else None

        window = get("PAYMENT_WINDOW_HOURS")
        return cls(
            database_url=normalize_database_url(get("DATABASE_URL") or DEFAULT_DATABASE_URL),
            s3_bucket=get("S3_BUCKET"),
            s3_region=get("S3_REGION") or env.get("AWS_REGION") or "us-east-1",
            s3_endpoint_url=get("S3_ENDPOINT_URL"),
            payment_window_hours=int(window) if window else 24,
            staff_email=get("STAFF_EMAIL"),
            create_schema=_flag(get("CREATE_SCHEMA"), True),
            log_level=(get("LOG_LEVEL") or "INFO").upper(),
            log_json=_flag(get("LOG_JSON"), False),
        )
