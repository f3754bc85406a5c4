# backend/couponledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/couponledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///couponledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Business number customers message with their coupon code
    WHATSAPP_NUMBER = os.environ.get("WHATSAPP_NUMBER", "")

    # Shared secrets for the messaging integration and the admin dashboard.
    # Unset means the corresponding routes reject every request.
    INTEGRATION_API_KEY = os.environ.get("INTEGRATION_API_KEY")
    ADMIN_API_KEY = os.environ.get("ADMIN_API_KEY")

    # Daily quotas reset at local midnight in this zone
    COUPON_RESET_TIMEZONE = os.environ.get("COUPON_RESET_TIMEZONE", "Europe/Istanbul")
    COUPON_CLAIM_DAILY_LIMIT = int(os.environ.get("COUPON_CLAIM_DAILY_LIMIT", "5"))

    POLICY_CACHE_TTL_SECONDS = 300

    ABUSE_THRESHOLD = 50
    ABUSE_WINDOW_SECONDS = 3600
    ABUSE_REPEAT_EVERY = 10
