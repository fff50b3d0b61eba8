"""
Courier Onboarding Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'courier_onboarding_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)

_DEFAULT_MIME_TYPES = "image/jpeg,image/png,image/gif,application/pdf"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_list(name: str, default: str) -> list[str]:
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }

    # Redis (rate-limit storage)
    REDIS_URL = os.getenv("REDIS_URL", "memory://")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Uploads: multipart bodies carry the document bytes, so the request cap
    # sits a little above the per-document maximum.
    DOCUMENT_MAX_FILE_SIZE = int(os.getenv("DOCUMENT_MAX_FILE_SIZE", str(10 * 1024 * 1024)))
    DOCUMENT_ALLOWED_MIME_TYPES = _env_list("DOCUMENT_ALLOWED_MIME_TYPES", _DEFAULT_MIME_TYPES)
    DOCUMENT_REVIEW_SLA_DAYS = int(os.getenv("DOCUMENT_REVIEW_SLA_DAYS", "3"))
    MAX_CONTENT_LENGTH = DOCUMENT_MAX_FILE_SIZE + 1024 * 1024
    BLOB_STORAGE_PATH = os.getenv("BLOB_STORAGE_PATH", os.path.join(basedir, "instance", "blobs"))

    # Workflow policy
    ALLOW_REAPPLICATION = _env_bool("ALLOW_REAPPLICATION", "true")
    AI_VERIFICATION_ENABLED = _env_bool("AI_VERIFICATION_ENABLED", "true")
    # "background": dispatch uploads to AI verification in a worker thread;
    # "inline": dispatch before the upload request returns
    AI_DISPATCH_MODE = os.getenv("AI_DISPATCH_MODE", "background")

    # External providers
    KYC_PROVIDER_URL = os.getenv("KYC_PROVIDER_URL", "http://localhost:8101")
    AUTH_PROVIDER_URL = os.getenv("AUTH_PROVIDER_URL", "http://localhost:8102")
    BILLING_PROVIDER_URL = os.getenv("BILLING_PROVIDER_URL", "http://localhost:8103")
    AI_VERIFICATION_URL = os.getenv("AI_VERIFICATION_URL", "http://localhost:8104")
    AI_VERIFICATION_CALLBACK_URL = os.getenv(
        "AI_VERIFICATION_CALLBACK_URL",
        "http://localhost:5000/api/v1/onboarding/ai-verification/callback",
    )
    PROVIDER_API_KEY = os.getenv("PROVIDER_API_KEY", "")
    PROVIDER_TIMEOUT_SECONDS = int(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"))
    PROVIDER_MAX_RETRIES = int(os.getenv("PROVIDER_MAX_RETRIES", "2"))


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
    RATELIMIT_ENABLED = False
    AI_VERIFICATION_ENABLED = True
    AI_DISPATCH_MODE = "inline"
    PROVIDER_MAX_RETRIES = 0


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Heroku-style URLs use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
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
