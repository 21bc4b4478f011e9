# backend/storefront/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # development | production | test
    APP_ENV = os.environ.get("APP_ENV", "development")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///storefront.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Payment gateway (DirectPay-style hosted payment page)
    PAYMENT_GATEWAY_URL = os.environ.get("PAYMENT_GATEWAY_URL", "http://localhost:3001")
    PAYMENT_GATEWAY_MERCHANT_ID = os.environ.get("PAYMENT_GATEWAY_MERCHANT_ID", "MERCHANT_TEST")
    PAYMENT_GATEWAY_API_KEY = os.environ.get("PAYMENT_GATEWAY_API_KEY", "test_api_key")
    PAYMENT_GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("PAYMENT_GATEWAY_TIMEOUT_SECONDS", "10"))
    PAYMENT_CURRENCY = os.environ.get("PAYMENT_CURRENCY", "LKR")

    # Shared secret for inbound webhook HMAC signatures
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "test_webhook_secret")
    # REQUIRED | OPTIONAL_IF_ABSENT; unset means "derive from APP_ENV"
    PAYMENT_SIGNATURE_POLICY = os.environ.get("PAYMENT_SIGNATURE_POLICY")

    SITE_URL = os.environ.get("SITE_URL", "http://localhost:3000")
    SITE_NAME = os.environ.get("SITE_NAME", "Storefront")
    EMAIL_FROM = os.environ.get("EMAIL_FROM", "noreply@storefront.local")

    # Store settings (all money in cents)
    FREE_SHIPPING_THRESHOLD_CENTS = _env_int("FREE_SHIPPING_THRESHOLD_CENTS", 10000)
    STANDARD_SHIPPING_CENTS = _env_int("STANDARD_SHIPPING_CENTS", 999)
    EXPRESS_SHIPPING_CENTS = _env_int("EXPRESS_SHIPPING_CENTS", 1999)
    TAX_RATE_BPS = _env_int("TAX_RATE_BPS", 800)

    # Lower in tests; bcrypt cost doubles per round
    BCRYPT_ROUNDS = _env_int("BCRYPT_ROUNDS", 12)

    ORDER_NUMBER_PREFIX = os.environ.get("ORDER_NUMBER_PREFIX", "ORD")
    AUTO_CANCEL_PENDING_ORDERS_HOURS = _env_int("AUTO_CANCEL_PENDING_ORDERS_HOURS", 48)

    CORS_ALLOWED_ORIGINS = {
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:3000,http://127.0.0.1:3000",
        ).split(",")
        if origin.strip()
    }
