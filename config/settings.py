"""App settings — loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # "development" or "production"; controls error detail in 500 responses
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///affiliates.db")
    DB_ECHO = os.getenv("DB_ECHO", "false").lower() in ("1", "true", "yes")
    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "20"))
    DB_POOL_RECYCLE_SECONDS = int(os.getenv("DB_POOL_RECYCLE_SECONDS", "1800"))

    # Admin sessions (opaque bearer tokens stored in admin_sessions)
    ADMIN_SESSION_TTL_HOURS = int(os.getenv("ADMIN_SESSION_TTL_HOURS", "168"))
    AFFILIATE_SESSION_TTL_HOURS = int(os.getenv("AFFILIATE_SESSION_TTL_HOURS", "168"))

    # Referral links (/ref/{affiliate_number})
    # Shop used when a link carries no ?shop= (single-store installs)
    DEFAULT_SHOP_ID = os.getenv("DEFAULT_SHOP_ID", "")
    # Where links land when the affiliate has no redirect_base_url; empty means the storefront home
    REFERRAL_DEFAULT_URL = os.getenv("REFERRAL_DEFAULT_URL", "")
    REFERRAL_COOKIE_DAYS = int(os.getenv("REFERRAL_COOKIE_DAYS", "30"))

    # Commissions
    DEFAULT_PAYOUT_TERMS_DAYS = int(os.getenv("DEFAULT_PAYOUT_TERMS_DAYS", "30"))

    # Live analytics stream tick
    ANALYTICS_STREAM_INTERVAL_SECONDS = float(os.getenv("ANALYTICS_STREAM_INTERVAL_SECONDS", "5"))

    # Outbound affiliate webhooks
    WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))
    WEBHOOK_USER_AGENT = os.getenv("WEBHOOK_USER_AGENT", "Affiliate-Dashboard/1.0")
    # Hosts we never post back to (e.g. the merchant's own storefront)
    WEBHOOK_BLOCKED_HOSTS = [
        h.strip().lower() for h in os.getenv("WEBHOOK_BLOCKED_HOSTS", "").split(",") if h.strip()
    ]

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


settings = Settings()
