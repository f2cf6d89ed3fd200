"""
Application configuration.
This module defines the configuration settings for the sealed-bid service, including database connection, secret key,
PIN policy and notification transport. It uses environment variables for sensitive information and defaults for
development. In production, make sure to set the appropriate environment variables and secure the secret key.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    """Base configuration shared by all environments."""

    # IMPORTANT: change this in production
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me-please")

    # Database: SQLite for development (simple file in project folder)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'procurex.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # One-time PIN policy
    PIN_LENGTH = int(os.environ.get("PIN_LENGTH", "6"))
    PIN_TTL_HOURS = int(os.environ.get("PIN_TTL_HOURS", "24"))
    PIN_HASH_METHOD = os.environ.get("PIN_HASH_METHOD", "pbkdf2:sha256")

    # Development only: bulk PIN generation echoes plaintexts in the response
    PIN_EXPOSE_PLAINTEXT = _env_bool("PIN_EXPOSE_PLAINTEXT", False)

    # Notifications: "smtp", "log" or "memory"
    MAIL_BACKEND = os.environ.get("MAIL_BACKEND", "log")
    MAIL_SERVER = os.environ.get("MAIL_SERVER", "")
    MAIL_PORT = int(os.environ.get("MAIL_PORT", "587"))
    MAIL_USE_TLS = _env_bool("MAIL_USE_TLS", True)
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME", "")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD", "")
    MAIL_DEFAULT_SENDER = os.environ.get("MAIL_DEFAULT_SENDER", "procurement@localhost")

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
    LOG_JSON = _env_bool("LOG_JSON", False)

    # Service name (used in notification subjects)
    APP_NAME = "Procurement Sealed-Bid Service"


class TestConfig(Config):
    """In-memory database and captured notifications for the test suite."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    MAIL_BACKEND = "memory"
    PIN_EXPOSE_PLAINTEXT = True
    LOG_LEVEL = "WARNING"
