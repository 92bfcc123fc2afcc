"""Configuration management for the billmail ingestion service."""

import os
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional


def _env(*names: str, default: Optional[str] = None) -> Optional[str]:
    """Return the first non-empty environment variable among names."""
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return default


def _env_bool(*names: str, default: bool) -> bool:
    value = _env(*names)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Application configuration loaded from environment variables."""

    # Database
    database_url: str

    # IMAP
    imap_user: str
    imap_host: str = "localhost"
    imap_port: int = 993
    imap_secure: bool = True
    imap_password: Optional[str] = None
    mailbox: str = "INBOX"

    # XOAUTH2 (alternative to password login)
    imap_access_token: Optional[str] = None
    imap_refresh_token: Optional[str] = None
    google_oauth2_client_id: Optional[str] = None
    google_oauth2_client_secret: Optional[str] = None

    # Ingestion behaviour
    polling_interval_sec: float = 300.0
    first_email_date: Optional[date] = None
    user_id: Optional[str] = None
    batch_size: int = 200
    mark_seen: bool = False

    # Upload store
    upload_path: str = "./uploads"
    upload_backend: str = "local"  # "local" or "s3"
    s3_endpoint: Optional[str] = None
    s3_bucket: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None

    # LLM classification tier
    openai_api_key: Optional[str] = None
    openai_model_name: str = "gpt-4o-mini"
    openai_base_url: Optional[str] = None
    llm_confidence_threshold: float = 0.6

    @property
    def llm_enabled(self) -> bool:
        return bool(self.openai_api_key)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables.

        EMAIL_INGESTION_* names win; IMAP_* names are accepted as fallbacks.

        Returns:
            Config: Configuration object

        Raises:
            ValueError: If required environment variables are missing or malformed
        """
        missing = []
        if not _env("DATABASE_URL"):
            missing.append("DATABASE_URL")
        if not _env("EMAIL_INGESTION_USER", "IMAP_USER"):
            missing.append("EMAIL_INGESTION_USER")
        if not _env("EMAIL_INGESTION_PASSWORD", "IMAP_PASS", "EMAIL_INGESTION_ACCESS_TOKEN"):
            missing.append("EMAIL_INGESTION_PASSWORD (or EMAIL_INGESTION_ACCESS_TOKEN)")

        upload_backend = _env("UPLOAD_BACKEND", default="local").lower()
        if upload_backend not in ("local", "s3"):
            raise ValueError(f"UPLOAD_BACKEND must be 'local' or 's3', got {upload_backend!r}")
        if upload_backend == "s3":
            missing.extend(
                var for var in ("S3_ENDPOINT", "S3_BUCKET", "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY")
                if not _env(var)
            )

        if missing:
            raise ValueError(f"Missing required environment variables: {', '.join(missing)}")

        first_email_date = None
        raw_first_date = _env("EMAIL_INGESTION_FIRST_EMAIL_DATE")
        if raw_first_date:
            try:
                first_email_date = datetime.strptime(raw_first_date, "%Y-%m-%d").date()
            except ValueError:
                raise ValueError(
                    f"EMAIL_INGESTION_FIRST_EMAIL_DATE must be YYYY-MM-DD, got {raw_first_date!r}"
                )

        return cls(
            database_url=_env("DATABASE_URL"),
            imap_user=_env("EMAIL_INGESTION_USER", "IMAP_USER"),
            imap_host=_env("EMAIL_INGESTION_HOST", "IMAP_HOST", default="localhost"),
            imap_port=int(_env("EMAIL_INGESTION_PORT", "IMAP_PORT", default="993")),
            imap_secure=_env_bool("EMAIL_INGESTION_SECURE", "IMAP_SECURE", default=True),
            imap_password=_env("EMAIL_INGESTION_PASSWORD", "IMAP_PASS"),
            mailbox=_env("EMAIL_INGESTION_MAILBOX", "IMAP_MAILBOX", default="INBOX"),
            imap_access_token=_env("EMAIL_INGESTION_ACCESS_TOKEN"),
            imap_refresh_token=_env("EMAIL_INGESTION_REFRESH_TOKEN"),
            google_oauth2_client_id=_env("GOOGLE_OAUTH2_CLIENT_ID"),
            google_oauth2_client_secret=_env("GOOGLE_OAUTH2_CLIENT_SECRET"),
            polling_interval_sec=int(
                _env("EMAIL_INGESTION_POLLING_INTERVAL", "IMAP_POLLING_INTERVAL", default="300000")
            ) / 1000.0,
            first_email_date=first_email_date,
            user_id=_env("EMAIL_INGESTION_USER_ID"),
            batch_size=int(_env("EMAIL_INGESTION_BATCH_SIZE", default="200")),
            mark_seen=_env_bool("EMAIL_INGESTION_MARK_SEEN", default=False),
            upload_path=_env("UPLOAD_PATH", "UPLOADS_DIR", default="./uploads"),
            upload_backend=upload_backend,
            s3_endpoint=_env("S3_ENDPOINT"),
            s3_bucket=_env("S3_BUCKET"),
            aws_access_key_id=_env("AWS_ACCESS_KEY_ID"),
            aws_secret_access_key=_env("AWS_SECRET_ACCESS_KEY"),
            openai_api_key=_env("OPENAI_API_KEY"),
            openai_model_name=_env("OPENAI_MODEL_NAME", default="gpt-4o-mini"),
            openai_base_url=_env("OPENAI_BASE_URL"),
            llm_confidence_threshold=float(_env("LLM_CONFIDENCE_THRESHOLD", default="0.6")),
        )
