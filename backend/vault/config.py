# backend/vault/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _seconds_list_env(name: str, default: str) -> tuple[int, ...]:
    raw = os.environ.get(name) or default
    return tuple(int(part) for part in raw.split(",") if part.strip())


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/vault.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///vault.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # API credentials are stored as HMAC-SHA256(API_KEY_HASH_SECRET, raw_key)
    API_KEY_HASH_SECRET = os.environ.get("API_KEY_HASH_SECRET", "dev-api-key-secret-change-me")
    API_RATE_LIMIT = _int_env("API_RATE_LIMIT", 100)
    API_RATE_WINDOW_SECONDS = _int_env("API_RATE_WINDOW_SECONDS", 60)

    # Outbound webhooks
    WEBHOOK_TIMEOUT_SECONDS = _int_env("WEBHOOK_TIMEOUT_SECONDS", 10)
    WEBHOOK_MAX_ATTEMPTS = _int_env("WEBHOOK_MAX_ATTEMPTS", 3)
    WEBHOOK_BACKOFF_SECONDS = _seconds_list_env("WEBHOOK_BACKOFF_SECONDS", "60,300,1800")
    WEBHOOK_RETRY_BATCH = _int_env("WEBHOOK_RETRY_BATCH", 50)
    WEBHOOK_WORKERS = _int_env("WEBHOOK_WORKERS", 4)
    WEBHOOK_QUEUE_SIZE = _int_env("WEBHOOK_QUEUE_SIZE", 256)
    # Optional httpx transport (tests inject httpx.MockTransport here)
    WEBHOOK_HTTP_TRANSPORT = None

    # "thread" hands notifications to the worker pool, "inline" runs them in the caller
    NOTIFIER_MODE = os.environ.get("NOTIFIER_MODE", "thread")

    INTEGRATION_TIMEOUT_SECONDS = _int_env("INTEGRATION_TIMEOUT_SECONDS", 5)

    # Bearer secret for the externally scheduled retry sweep; unset disables the check
    CRON_SECRET = os.environ.get("CRON_SECRET")

    ORDER_SETTLEMENT_GRACE_SECONDS = _int_env("ORDER_SETTLEMENT_GRACE_SECONDS", 300)
