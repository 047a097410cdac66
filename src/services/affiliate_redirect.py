"""
Referral link redirects and server-side click tracking.

Every affiliate gets one link: ``/ref/{affiliate_number}?shop=<shop>``. Optional
``url`` (or ``destination``) picks a page on the landing site.

Flow:
  Visitor opens /ref/42 →
  look up active affiliate #42 in the shop →
  record a click row (hashed IP and user agent) →
  302 to the landing URL with ``ref`` and ``click_id`` appended

The landing site is the affiliate's ``redirect_base_url``, falling back to
REFERRAL_DEFAULT_URL and then the storefront home. Unknown or inactive
affiliates are redirected there too, without a click.
"""
from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.analytics.ingest import shop_id_from_domain
from src.db.affiliate_tables import AffiliateClickRow, AffiliateRow
from src.models.affiliate import AffiliateStatus

logger = logging.getLogger(__name__)

# Query params that steer the redirect itself rather than describe the visit
CONTROL_PARAMS = ("shop", "url", "destination")


@dataclass(frozen=True)
class ReferralRedirect:
    """Where to send the visitor, and the click recorded on the way (if any)."""
    location: str
    click: Optional[AffiliateClickRow] = None
    affiliate_id: Optional[str] = None


def hash_value(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def generate_click_id() -> str:
    return secrets.token_hex(16)


def landing_base(shop_id: Optional[str], affiliate: Optional[AffiliateRow] = None) -> str:
    if affiliate is not None and affiliate.redirect_base_url:
        return affiliate.redirect_base_url
    if settings.REFERRAL_DEFAULT_URL:
        return settings.REFERRAL_DEFAULT_URL
    if shop_id:
        return f"https://{shop_id}.myshopify.com/"
    return "/"


def resolve_destination(base: str, requested: Optional[str]) -> str:
    """Join a requested page onto the landing base.

    Only site-relative paths are honoured; absolute or protocol-relative
    values fall back to the base so the link can't bounce anywhere else.
    """
    if not requested:
        return base
    requested = requested.strip()
    if not requested.startswith("/") or requested.startswith("//"):
        logger.info("Ignoring off-site referral destination %r", requested)
        return base
    return urljoin(base, requested)


def append_tracking(url: str, affiliate_number: int, click_id: str) -> str:
    """Set ``ref`` and ``click_id`` on ``url``, keeping its other query params."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in ("ref", "click_id")]
    query += [("ref", str(affiliate_number)), ("click_id", click_id)]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


async def find_referral_affiliate(db: AsyncSession, shop_id: str, affiliate_number: int) -> Optional[AffiliateRow]:
    return (await db.execute(
        select(AffiliateRow).where(
            AffiliateRow.shop_id == shop_id,
            AffiliateRow.affiliate_number == affiliate_number,
            AffiliateRow.status == AffiliateStatus.ACTIVE.value,
        )
    )).scalar_one_or_none()


async def record_click(
    db: AsyncSession,
    affiliate: AffiliateRow,
    landing_url: str,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    url_params: Optional[Mapping[str, str]] = None,
) -> AffiliateClickRow:
    click = AffiliateClickRow(
        id=generate_click_id(),
        shop_id=affiliate.shop_id,
        affiliate_id=affiliate.id,
        landing_url=landing_url,
        ip_hash=hash_value(ip) if ip else None,
        user_agent_hash=hash_value(user_agent) if user_agent else None,
        url_params=dict(url_params or {}),
    )
    db.add(click)
    await db.commit()
    return click


async def handle_referral(
    db: AsyncSession,
    affiliate_number: str,
    query: Mapping[str, str],
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ReferralRedirect:
    """Resolve a referral link visit into a redirect, recording the click when it counts."""
    shop = query.get("shop") or settings.DEFAULT_SHOP_ID
    shop_id = shop_id_from_domain(shop) if shop else None
    requested = query.get("url") or query.get("destination")

    number = affiliate_number.strip()
    if not shop_id or not number.isdigit():
        logger.info("Referral link without a usable shop or number: shop=%r number=%r", shop, affiliate_number)
        return ReferralRedirect(location=resolve_destination(landing_base(shop_id), requested))

    affiliate = await find_referral_affiliate(db, shop_id, int(number))
    if affiliate is None:
        logger.info("Referral link for unknown or inactive affiliate #%s in shop %s", number, shop_id)
        return ReferralRedirect(location=resolve_destination(landing_base(shop_id), requested))

    landing = resolve_destination(landing_base(shop_id, affiliate), requested)
    params = {k: v for k, v in query.items() if k not in CONTROL_PARAMS}
    click = await record_click(db, affiliate, landing, ip, user_agent, params)
    logger.info("Referral click %s for affiliate #%d (shop %s)", click.id, affiliate.affiliate_number, shop_id)
    return ReferralRedirect(
        location=append_tracking(landing, affiliate.affiliate_number, click.id),
        click=click,
        affiliate_id=affiliate.id,
    )


async def list_clicks(db: AsyncSession, shop_id: str, affiliate_id: str, limit: int = 100) -> list[AffiliateClickRow]:
    return list((await db.execute(
        select(AffiliateClickRow)
        .where(AffiliateClickRow.shop_id == shop_id, AffiliateClickRow.affiliate_id == affiliate_id)
        .order_by(AffiliateClickRow.created_at.desc())
        .limit(limit)
    )).scalars().all())


def serialize_click(click: AffiliateClickRow) -> dict:
    return {
        "id": click.id,
        "affiliate_id": click.affiliate_id,
        "landing_url": click.landing_url,
        "url_params": click.url_params or {},
        "created_at": click.created_at.isoformat() if click.created_at else None,
    }
