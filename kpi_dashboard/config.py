"""
KPI Dashboard Backend
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'kpi_dashboard_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _parse_backoff(raw: str) -> list[int]:
    """Parse a comma separated list of backoff seconds ("1,4" -> [1, 4])."""
    return [int(part) for part in raw.split(",") if part.strip()]


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # Redis (hierarchy read cache); memory:// keeps the in-process backend
    REDIS_URL = os.getenv("REDIS_URL", "memory://")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Background scheduler thread
    SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "false").lower() == "true"

    # Central hierarchy synchronisation
    HIERARCHY_SYNC_CRON = os.getenv("HIERARCHY_SYNC_CRON", "0 */6 * * *")
    CENTRAL_HIERARCHY_URL = os.getenv("CENTRAL_HIERARCHY_URL", "")
    CENTRAL_HIERARCHY_API_KEY = os.getenv("CENTRAL_HIERARCHY_API_KEY", "")
    CENTRAL_HIERARCHY_FORMAT = os.getenv("CENTRAL_HIERARCHY_FORMAT", "sf360")
    CENTRAL_HIERARCHY_TIMEOUT = int(os.getenv("CENTRAL_HIERARCHY_TIMEOUT", "30"))
    HIERARCHY_SYNC_RETRY_MAX_ATTEMPTS = int(os.getenv("HIERARCHY_SYNC_RETRY_MAX_ATTEMPTS", "3"))
    HIERARCHY_SYNC_RETRY_BACKOFF = _parse_backoff(os.getenv("HIERARCHY_SYNC_RETRY_BACKOFF", "1,4"))
    HIERARCHY_SYNC_CASCADE_POLICY = os.getenv("HIERARCHY_SYNC_CASCADE_POLICY", "missing_external_port")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    REDIS_URL = "memory://"
    RATELIMIT_ENABLED = False
    SCHEDULER_ENABLED = False
    CENTRAL_HIERARCHY_URL = "https://central-hierarchy.test/api/hierarchy"
    CENTRAL_HIERARCHY_API_KEY = "test-api-key"
    HIERARCHY_SYNC_RETRY_BACKOFF = [0]


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
