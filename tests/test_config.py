"""
tests/test_config.py - Config.from_env: required vars, fallbacks, parsing.

Run with: pytest tests/test_config.py -v
"""

from __future__ import annotations

from datetime import date

import pytest

from billmail.config import Config

ENV_VARS = [
    "DATABASE_URL",
    "EMAIL_INGESTION_HOST", "IMAP_HOST",
    "EMAIL_INGESTION_PORT", "IMAP_PORT",
    "EMAIL_INGESTION_SECURE", "IMAP_SECURE",
    "EMAIL_INGESTION_USER", "IMAP_USER",
    "EMAIL_INGESTION_PASSWORD", "IMAP_PASS",
    "EMAIL_INGESTION_ACCESS_TOKEN", "EMAIL_INGESTION_REFRESH_TOKEN",
    "GOOGLE_OAUTH2_CLIENT_ID", "GOOGLE_OAUTH2_CLIENT_SECRET",
    "EMAIL_INGESTION_MAILBOX", "IMAP_MAILBOX",
    "EMAIL_INGESTION_POLLING_INTERVAL", "IMAP_POLLING_INTERVAL",
    "EMAIL_INGESTION_FIRST_EMAIL_DATE", "EMAIL_INGESTION_USER_ID",
    "EMAIL_INGESTION_BATCH_SIZE", "EMAIL_INGESTION_MARK_SEEN",
    "UPLOAD_PATH", "UPLOADS_DIR", "UPLOAD_BACKEND",
    "S3_ENDPOINT", "S3_BUCKET", "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY",
    "OPENAI_API_KEY", "OPENAI_MODEL_NAME", "OPENAI_BASE_URL", "LLM_CONFIDENCE_THRESHOLD",
]


@pytest.fixture
def env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/bills")
    monkeypatch.setenv("EMAIL_INGESTION_USER", "owner@example.com")
    monkeypatch.setenv("EMAIL_INGESTION_PASSWORD", "secret")
    return monkeypatch


def test_defaults(env) -> None:
    config = Config.from_env()

    assert config.database_url == "postgresql://localhost/bills"
    assert config.imap_host == "localhost"
    assert config.imap_port == 993
    assert config.imap_secure is True
    assert config.mailbox == "INBOX"
    assert config.polling_interval_sec == 300.0
    assert config.batch_size == 200
    assert config.mark_seen is False
    assert config.upload_path == "./uploads"
    assert config.upload_backend == "local"
    assert config.first_email_date is None
    assert config.llm_enabled is False
    assert config.llm_confidence_threshold == 0.6


def test_missing_required_vars_are_all_listed(env) -> None:
    env.delenv("DATABASE_URL")
    env.delenv("EMAIL_INGESTION_PASSWORD")
    with pytest.raises(ValueError) as excinfo:
        Config.from_env()
    assert "DATABASE_URL" in str(excinfo.value)
    assert "EMAIL_INGESTION_PASSWORD" in str(excinfo.value)


def test_access_token_satisfies_credentials(env) -> None:
    env.delenv("EMAIL_INGESTION_PASSWORD")
    env.setenv("EMAIL_INGESTION_ACCESS_TOKEN", "ya29.token")
    config = Config.from_env()
    assert config.imap_access_token == "ya29.token"
    assert config.imap_password is None


def test_imap_fallback_names(env) -> None:
    env.delenv("EMAIL_INGESTION_USER")
    env.setenv("IMAP_USER", "legacy@example.com")
    env.setenv("IMAP_HOST", "imap.example.com")
    env.setenv("IMAP_PORT", "143")
    env.setenv("IMAP_SECURE", "false")
    env.setenv("IMAP_MAILBOX", "Bills")

    config = Config.from_env()

    assert config.imap_user == "legacy@example.com"
    assert config.imap_host == "imap.example.com"
    assert config.imap_port == 143
    assert config.imap_secure is False
    assert config.mailbox == "Bills"


def test_polling_interval_is_milliseconds(env) -> None:
    env.setenv("EMAIL_INGESTION_POLLING_INTERVAL", "60000")
    assert Config.from_env().polling_interval_sec == 60.0


def test_first_email_date(env) -> None:
    env.setenv("EMAIL_INGESTION_FIRST_EMAIL_DATE", "2025-01-15")
    assert Config.from_env().first_email_date == date(2025, 1, 15)


def test_invalid_first_email_date(env) -> None:
    env.setenv("EMAIL_INGESTION_FIRST_EMAIL_DATE", "15/01/2025")
    with pytest.raises(ValueError, match="YYYY-MM-DD"):
        Config.from_env()


def test_s3_backend_requires_credentials(env) -> None:
    env.setenv("UPLOAD_BACKEND", "s3")
    env.setenv("S3_BUCKET", "bills")
    with pytest.raises(ValueError) as excinfo:
        Config.from_env()
    assert "S3_ENDPOINT" in str(excinfo.value)
    assert "S3_BUCKET" not in str(excinfo.value)


def test_unknown_backend(env) -> None:
    env.setenv("UPLOAD_BACKEND", "ftp")
    with pytest.raises(ValueError, match="UPLOAD_BACKEND"):
        Config.from_env()


def test_llm_enabled_with_api_key(env) -> None:
    env.setenv("OPENAI_API_KEY", "sk-test")
    env.setenv("LLM_CONFIDENCE_THRESHOLD", "0.75")
    config = Config.from_env()
    assert config.llm_enabled
    assert config.llm_confidence_threshold == 0.75
