"""
Environment configurations for the compensation cycle service.

``create_app`` picks one by name (``APP_ENV``, default ``development``)::

    app.config.from_object(config["production"])

Engine tunables (batch size, escalation delay, drift threshold, job retry
policy) are read from the environment once at import.
"""

import os
import secrets

_ROOT = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
_LOCAL_DB = "sqlite:///" + os.path.join(_ROOT, "instance", "compcycle.db")

DAY_MS = 24 * 60 * 60 * 1000


def _int(name: str, default: int) -> int:
    value = os.getenv(name, "").strip()
    return int(value) if value else default


def _float(name: str, default: float) -> float:
    value = os.getenv(name, "").strip()
    return float(value) if value else default


def _database_url(fallback: str | None) -> str | None:
    # SQLAlchemy 2 rejects the legacy postgres:// scheme
    url = os.getenv("DATABASE_URL", "")
    if not url:
        return fallback
    return url.replace("postgres://", "postgresql://", 1)


class Config:
    DEBUG = False
    TESTING = False
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # ── Cycle engine ────────────────────────────────────────────────────
    BULK_BATCH_SIZE = _int("BULK_BATCH_SIZE", 500)
    DEFAULT_ESCALATION_DELAY_MS = _int("DEFAULT_ESCALATION_DELAY_MS", 3 * DAY_MS)
    DRIFT_THRESHOLD_PCT = _float("DRIFT_THRESHOLD_PCT", 5.0)
    MONITOR_HISTORY_KEEP = _int("MONITOR_HISTORY_KEEP", 9)

    # ── Job queue / worker ──────────────────────────────────────────────
    MONITOR_INTERVAL_SECONDS = _int("MONITOR_INTERVAL_SECONDS", 3600)
    JOB_MAX_ATTEMPTS = _int("JOB_MAX_ATTEMPTS", 3)
    JOB_RETRY_BACKOFF_SECONDS = _int("JOB_RETRY_BACKOFF_SECONDS", 60)
    WORKER_POLL_SECONDS = _int("WORKER_POLL_SECONDS", 5)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_LOCAL_DB)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    # Tests cross batch boundaries with a handful of rows
    BULK_BATCH_SIZE = 2


class ProductionConfig(Config):
    """Postgres only; refuses to start without DATABASE_URL and SECRET_KEY."""

    SQLALCHEMY_DATABASE_URI = _database_url(None)
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        # Bulk batches are small; anything slower than this is a runaway query
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        missing = [
            name for name, value in (
                ("DATABASE_URL", self.SQLALCHEMY_DATABASE_URI),
                ("SECRET_KEY", os.getenv("SECRET_KEY")),
            ) if not value
        ]
        if missing:
            raise RuntimeError(f"Production requires environment variables: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
