"""
Tourlink Marketplace
Per-environment settings for the app factory.

    app.config.from_object(config[os.getenv("APP_ENV", "development")])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))


def _env_bool(name, default="false"):
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_int(name, default):
    return int(os.getenv(name, str(default)))


def _database_url(fallback=None):
    """DATABASE_URL with the legacy ``postgres://`` scheme rewritten for SQLAlchemy 2."""
    url = os.getenv("DATABASE_URL", "")
    if not url:
        return fallback
    return url.replace("postgres://", "postgresql://", 1)


def _pooled_engine(**extra):
    options = {
        "pool_pre_ping": True,
        "pool_size": _env_int("DB_POOL_SIZE", 5),
        "max_overflow": _env_int("DB_MAX_OVERFLOW", 10),
        "pool_recycle": 300,
        "pool_timeout": 20,
    }
    options.update(extra)
    return options


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = _pooled_engine()

    # Empty means in-memory rate limit counters
    REDIS_URL = os.getenv("REDIS_URL", "")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Without MAIL_SERVER emails are only logged
    MAIL_SERVER = os.getenv("MAIL_SERVER")
    MAIL_PORT = _env_int("MAIL_PORT", 587)
    MAIL_USE_TLS = _env_bool("MAIL_USE_TLS", "true")
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "noreply@tourlink.local")

    WORKFLOW_TX_TIMEOUT_MS = _env_int("WORKFLOW_TX_TIMEOUT_MS", 5000)
    WORKFLOW_CREATOR_FANOUT_LIMIT = _env_int("WORKFLOW_CREATOR_FANOUT_LIMIT", 10)
    REVIEW_AUTO_APPROVE_DAYS = _env_int("REVIEW_AUTO_APPROVE_DAYS", 3)
    NOTIFICATION_EMAIL_ENABLED = _env_bool("NOTIFICATION_EMAIL_ENABLED")
    NOTIFICATION_RETENTION_DAYS = _env_int("NOTIFICATION_RETENTION_DAYS", 30)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        f"sqlite:///{os.path.join(basedir, 'instance', 'tourlink_dev.db')}"
    )


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    # single static connection for in-memory SQLite
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
    RATELIMIT_ENABLED = False
    NOTIFICATION_EMAIL_ENABLED = False
    MAIL_SERVER = None


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = _pooled_engine(
        connect_args={"options": f"-c statement_timeout={_env_int('DB_STATEMENT_TIMEOUT_MS', 30000)}"},
    )

    def __init__(self):
        missing = [name for name in ("DATABASE_URL", "SECRET_KEY") if not os.getenv(name)]
        if missing:
            raise RuntimeError(f"Production requires {', '.join(missing)} to be set")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
