"""Startup validation — catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import settings

logger = logging.getLogger(__name__)


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations in production.
    """
    warnings: list[str] = []
    is_prod = settings.is_production

    # Critical: production must not run on the local SQLite file
    if is_prod and settings.DATABASE_URL.startswith("sqlite"):
        logger.critical("DATABASE_URL points at SQLite in production. Configure PostgreSQL.")
        sys.exit(1)

    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to * — restrict in production")

    if settings.ADMIN_SESSION_TTL_HOURS <= 0:
        warnings.append("ADMIN_SESSION_TTL_HOURS is not positive — every login expires immediately")

    if settings.AFFILIATE_SESSION_TTL_HOURS <= 0:
        warnings.append("AFFILIATE_SESSION_TTL_HOURS is not positive — affiliate logins expire immediately")

    if settings.REFERRAL_DEFAULT_URL and not settings.REFERRAL_DEFAULT_URL.startswith(("http://", "https://")):
        warnings.append("REFERRAL_DEFAULT_URL is not an absolute http(s) URL — referral redirects will be relative to the API")

    if settings.DEFAULT_PAYOUT_TERMS_DAYS < 0:
        warnings.append("DEFAULT_PAYOUT_TERMS_DAYS is negative — commissions become eligible before they are earned")

    if settings.ANALYTICS_STREAM_INTERVAL_SECONDS < 1:
        warnings.append("ANALYTICS_STREAM_INTERVAL_SECONDS below 1s — the live stream will hammer the database")

    if not settings.WEBHOOK_BLOCKED_HOSTS:
        warnings.append("WEBHOOK_BLOCKED_HOSTS not set — misconfigured postbacks may hit the storefront")

    if is_prod and not settings.SENTRY_DSN:
        warnings.append("SENTRY_DSN not set — production errors won't be reported")

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
