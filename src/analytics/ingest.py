"""Storefront tracking ingestion — turns script beacons into sessions and events."""
from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.analytics.tables import VisitorEventRow, VisitorSessionRow, now_ms
from src.analytics.url_params import coerce_params, merge_params, parse_query_params
from src.db.affiliate_tables import AffiliateRow
from src.models.affiliate import AffiliateStatus

logger = logging.getLogger(__name__)

# URL params the redirect links use to carry an affiliate number
AFFILIATE_REF_PARAMS = ("ref", "aff", "affiliate")


class PageInfo(BaseModel):
    url: Optional[str] = None
    path: Optional[str] = None
    title: Optional[str] = Field(None, max_length=500)
    referrer: Optional[str] = None


class ReferrerInfo(BaseModel):
    type: Optional[str] = None
    url: Optional[str] = None
    domain: Optional[str] = None


class DeviceInfo(BaseModel):
    type: Optional[str] = None
    userAgent: Optional[str] = None


class LocationInfo(BaseModel):
    country: Optional[str] = None


class TrackPayload(BaseModel):
    event: Optional[str] = Field(None, max_length=50)
    session_id: Optional[str] = Field(None, max_length=100)
    visitor_id: Optional[str] = Field(None, max_length=100)
    shop: Optional[str] = None
    page: PageInfo = Field(default_factory=PageInfo)
    referrer: ReferrerInfo = Field(default_factory=ReferrerInfo)
    device: DeviceInfo = Field(default_factory=DeviceInfo)
    location: LocationInfo = Field(default_factory=LocationInfo)
    timestamp: Optional[int] = None
    event_data: dict[str, Any] = Field(default_factory=dict)
    affiliate_number: Optional[int] = None
    url_params: dict[str, Any] = Field(default_factory=dict)


def shop_id_from_domain(shop: str) -> str:
    return shop.strip().lower().replace(".myshopify.com", "")


async def _find_session(db: AsyncSession, session_id: str) -> Optional[VisitorSessionRow]:
    return (await db.execute(
        select(VisitorSessionRow).where(VisitorSessionRow.session_id == session_id)
    )).scalar_one_or_none()


async def _resolve_affiliate(
    db: AsyncSession, shop_id: str, affiliate_number: Optional[int], params: dict[str, str],
) -> Optional[str]:
    """Affiliate id for an explicit number or a ref param. Active affiliates only."""
    number = affiliate_number
    if number is None:
        for key in AFFILIATE_REF_PARAMS:
            value = params.get(key, "").strip()
            if value.isdigit():
                number = int(value)
                break
    if number is None:
        return None

    affiliate = (await db.execute(
        select(AffiliateRow).where(
            AffiliateRow.shop_id == shop_id,
            AffiliateRow.affiliate_number == number,
        )
    )).scalar_one_or_none()
    if affiliate is None:
        return None
    if affiliate.status != AffiliateStatus.ACTIVE.value:
        logger.info("Ignoring attribution to %s affiliate #%s", affiliate.status, number)
        return None
    return affiliate.id


async def _record_page_view(db: AsyncSession, payload: TrackPayload, shop_id: str, ts: int) -> VisitorSessionRow:
    path = payload.page.path or "/"
    params = merge_params([
        coerce_params(payload.url_params),
        parse_query_params(payload.page.url),
    ])

    visitor_session = await _find_session(db, payload.session_id)
    if visitor_session is None:
        visitor_session = VisitorSessionRow(
            session_id=payload.session_id,
            visitor_id=payload.visitor_id,
            shop_id=shop_id,
            start_time=ts,
            updated_at=ts,
            pages_visited=[path],
            entry_page=path,
            page_views=1,
            is_bounce=True,
            device_type=payload.device.type,
            user_agent=payload.device.userAgent,
            referrer_type=payload.referrer.type,
            referrer_url=payload.referrer.url,
            referrer_domain=payload.referrer.domain,
            location_country=payload.location.country,
            landing_page_url=payload.page.url,
            url_params=params or None,
        )
        db.add(visitor_session)
    else:
        pages = list(visitor_session.pages_visited or []) + [path]
        visitor_session.pages_visited = pages
        visitor_session.page_views = (visitor_session.page_views or 0) + 1
        visitor_session.is_bounce = len(pages) == 1
        visitor_session.updated_at = max(int(visitor_session.updated_at or 0), ts)

    if visitor_session.affiliate_id is None:
        visitor_session.affiliate_id = await _resolve_affiliate(
            db, shop_id, payload.affiliate_number, params,
        )

    await db.flush()

    event_data = dict(payload.event_data)
    if params:
        event_data["url_params"] = params
    db.add(VisitorEventRow(
        session_id=visitor_session.id,
        visitor_id=payload.visitor_id,
        shop_id=shop_id,
        event_type="page_view",
        page_url=payload.page.url or "",
        page_path=path,
        page_title=payload.page.title,
        referrer=payload.page.referrer or payload.referrer.url,
        timestamp=ts,
        event_data=event_data,
    ))
    return visitor_session


def _seconds_on_page(value: Any) -> Optional[int]:
    """Whole seconds from a client-reported millisecond duration; None if missing or unparseable."""
    if not value:
        return None
    try:
        return int(float(value)) // 1000
    except (TypeError, ValueError, OverflowError):
        return None


async def _record_page_exit(db: AsyncSession, payload: TrackPayload, shop_id: str, ts: int) -> Optional[VisitorSessionRow]:
    visitor_session = await _find_session(db, payload.session_id)
    if visitor_session is None:
        return None

    exit_page = payload.event_data.get("exit_page") or payload.page.path or "/"
    visitor_session.exit_page = exit_page
    visitor_session.end_time = ts
    seconds = _seconds_on_page(payload.event_data.get("time_on_page"))
    if seconds is not None:
        visitor_session.total_time = seconds
    visitor_session.updated_at = max(int(visitor_session.updated_at or 0), ts)

    db.add(VisitorEventRow(
        session_id=visitor_session.id,
        visitor_id=payload.visitor_id,
        shop_id=shop_id,
        event_type="page_exit",
        page_url=payload.page.url or "",
        page_path=exit_page,
        timestamp=ts,
        event_data=payload.event_data,
    ))
    return visitor_session


async def record_tracking_event(db: AsyncSession, payload: TrackPayload) -> Optional[VisitorSessionRow]:
    """Apply one beacon. Returns the affected session (None if it doesn't exist yet)."""
    shop_id = shop_id_from_domain(payload.shop)
    ts = payload.timestamp or now_ms()

    if payload.event == "page_view":
        visitor_session = await _record_page_view(db, payload, shop_id, ts)
    elif payload.event == "page_exit":
        visitor_session = await _record_page_exit(db, payload, shop_id, ts)
    else:
        visitor_session = await _find_session(db, payload.session_id)
        if visitor_session is not None:
            db.add(VisitorEventRow(
                session_id=visitor_session.id,
                visitor_id=payload.visitor_id,
                shop_id=shop_id,
                event_type=payload.event,
                page_url=payload.page.url or "",
                page_path=payload.page.path or "/",
                timestamp=ts,
                event_data=payload.event_data,
            ))

    await db.commit()
    return visitor_session
