"""
Roomflow settings, one class per environment.

    app.config.from_object(config[os.getenv("APP_ENV", "development")]())

Environment variables:
    DATABASE_URL / TEST_DATABASE_URL   database for dev+prod / tests
    LOG_LEVEL                          overrides the per-environment level
    STAGE_UNIQUE_INDEX_AUTO_INSTALL    "false" keeps the merger from adding
                                       the stage uniqueness index
"""

import os

_PROJECT_ROOT = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
_LOCAL_DB = "sqlite:///" + os.path.join(_PROJECT_ROOT, "instance", "roomflow_dev.db")


def _database_url(env_var: str, fallback: str | None) -> str | None:
    url = os.getenv(env_var)
    if not url:
        return fallback
    # SQLAlchemy 2 only accepts the postgresql:// scheme
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def _flag(env_var: str, default: bool) -> bool:
    return os.getenv(env_var, str(default)).strip().lower() in ("1", "true", "yes")


class Config:
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    LOG_FORMAT = "readable"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG")

    STAGE_UNIQUE_INDEX_AUTO_INSTALL = _flag("STAGE_UNIQUE_INDEX_AUTO_INSTALL", True)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL", _LOCAL_DB)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = _database_url("TEST_DATABASE_URL", "sqlite:///:memory:")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "WARNING")


class ProductionConfig(Config):
    """Postgres with a bounded pool; refuses to start without DATABASE_URL."""

    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL", None)
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        # merges lock a room row; do not wait forever on a stuck one
        "connect_args": {"options": "-c lock_timeout=10000"},
    }

    LOG_FORMAT = "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL must be set when APP_ENV=production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
