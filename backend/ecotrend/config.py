# backend/ecotrend/config.py
from __future__ import annotations
import os
from decimal import Decimal


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str) -> list[str]:
    raw = os.environ.get(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/ecotrend.sqlite3 unless DATABASE_URL is set
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///ecotrend.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    APP_VERSION = "1.0.0"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Realtime device mirror (Firebase Realtime Database REST endpoint).
    # Unset URL means telemetry runs in fallback-only mode.
    FIREBASE_DB_URL = os.environ.get("FIREBASE_DB_URL")
    FIREBASE_AUTH_TOKEN = os.environ.get("FIREBASE_AUTH_TOKEN")
    TELEMETRY_TIMEOUT_SECONDS = float(os.environ.get("TELEMETRY_TIMEOUT_SECONDS", "5"))

    # Kaspi payment network
    KASPI_BIN = os.environ.get("KASPI_BIN", "820909403043")
    KASPI_ALLOWED_IPS = _env_list("KASPI_ALLOWED_IPS")
    # Reverse proxies in front of the app whose X-Forwarded-For is trusted (0 = none)
    PROXY_FIX_X_FOR = int(os.environ.get("PROXY_FIX_X_FOR", "0"))
    KASPI_QR_BASE_URL = os.environ.get("KASPI_QR_BASE_URL", "https://pay.kaspi.kz/payment")
    KASPI_SERVICE_NAME = os.environ.get("KASPI_SERVICE_NAME", "CHEMICAL_DISPENSING")

    # "direct" (session-driven) or "balance" (legacy top-up)
    PAYMENT_MODE = os.environ.get("PAYMENT_MODE", "direct")
    AMOUNT_TOLERANCE = Decimal("0.01")
    ACTIVE_SESSION_WINDOW_HOURS = int(os.environ.get("ACTIVE_SESSION_WINDOW_HOURS", "24"))

    DEFAULT_TANK_COUNT = 7
    DEFAULT_CHEMICAL_PRICE = Decimal(os.environ.get("DEFAULT_CHEMICAL_PRICE", "100.00"))

    # Include exception text in 500 responses (diagnostics only, never in production)
    EXPOSE_ERROR_DETAILS = _env_bool("EXPOSE_ERROR_DETAILS", False)


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    FIREBASE_DB_URL = None
    KASPI_ALLOWED_IPS: list[str] = []
    PROXY_FIX_X_FOR = 0
    PAYMENT_MODE = "direct"
