"""Visitor stats queries for the analytics dashboard.

Two ways to pick the session set, then the same aggregations
(``src.analytics.aggregator``) over whichever set was selected:

* realtime: sessions with a page view in the last 30 minutes
* historical: sessions that started inside the requested time range

Only affiliate-attributed sessions are reported in either mode.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.analytics import aggregator
from src.analytics.tables import VisitorEventRow, VisitorSessionRow, now_ms
from src.db.affiliate_tables import AffiliateRow
from src.errors import ValidationFailed
from src.models.affiliate import TimeRange, ViewMode

logger = logging.getLogger(__name__)

REALTIME_WINDOW_MS = 30 * 60 * 1000
REALTIME_EVENT_LIMIT = 1000
REALTIME_SESSION_LIMIT = 50
HISTORICAL_SESSION_LIMIT = 1000
HISTORICAL_EVENT_LIMIT = 5000


def parse_view_mode(value: Optional[str]) -> ViewMode:
    try:
        return ViewMode(value or ViewMode.REALTIME.value)
    except ValueError:
        raise ValidationFailed(
            f"Invalid viewMode {value!r}; expected one of: realtime, historical",
        ) from None


def parse_time_range(value: Optional[str]) -> TimeRange:
    try:
        return TimeRange(value or TimeRange.ONE_DAY.value)
    except ValueError:
        raise ValidationFailed(
            f"Invalid timeRange {value!r}; expected one of: 1h, 24h, 7d, 30d",
        ) from None


async def _affiliate_lookup(session: AsyncSession, affiliate_ids: set[str]) -> dict[str, AffiliateRow]:
    """Display data for the given affiliates. Sessions carry no FK, so this is a plain id lookup."""
    if not affiliate_ids:
        return {}
    rows = (await session.execute(
        select(AffiliateRow).where(AffiliateRow.id.in_(sorted(affiliate_ids)))
    )).scalars().all()
    return {row.id: row for row in rows}


async def realtime_sessions(
    session: AsyncSession, shop_id: str, now: int,
) -> tuple[list[VisitorSessionRow], dict[str, VisitorEventRow]]:
    """Sessions with a recent page view plus each one's latest page_view event."""
    events = (await session.execute(
        select(VisitorEventRow)
        .where(
            VisitorEventRow.shop_id == shop_id,
            VisitorEventRow.event_type == "page_view",
            VisitorEventRow.timestamp >= now - REALTIME_WINDOW_MS,
        )
        .order_by(VisitorEventRow.timestamp.desc())
        .limit(REALTIME_EVENT_LIMIT)
    )).scalars().all()

    latest = aggregator.latest_page_views(events)
    if not latest:
        return [], {}

    sessions = (await session.execute(
        select(VisitorSessionRow)
        .where(
            VisitorSessionRow.shop_id == shop_id,
            VisitorSessionRow.id.in_(list(latest)),
            VisitorSessionRow.affiliate_id.is_not(None),
        )
        .order_by(VisitorSessionRow.updated_at.desc())
        .limit(REALTIME_SESSION_LIMIT)
    )).scalars().all()

    return list(sessions), latest


async def historical_sessions(
    session: AsyncSession, shop_id: str, window_start: int,
) -> tuple[list[VisitorSessionRow], dict[str, VisitorEventRow]]:
    """Attributed sessions started since ``window_start`` plus their latest page views."""
    candidates = (await session.execute(
        select(VisitorSessionRow)
        .where(
            VisitorSessionRow.shop_id == shop_id,
            VisitorSessionRow.affiliate_id.is_not(None),
        )
        .order_by(VisitorSessionRow.start_time.desc())
        .limit(HISTORICAL_SESSION_LIMIT)
    )).scalars().all()

    # The window is applied here rather than in SQL: the in-memory comparison
    # on integer ms is the authoritative one.
    sessions = [s for s in candidates if s.start_time is not None and int(s.start_time) >= window_start]
    if not sessions:
        return [], {}

    events = (await session.execute(
        select(VisitorEventRow)
        .where(
            VisitorEventRow.session_id.in_([s.id for s in sessions]),
            VisitorEventRow.event_type == "page_view",
        )
        .order_by(VisitorEventRow.timestamp.desc())
        .limit(HISTORICAL_EVENT_LIMIT)
    )).scalars().all()

    return sessions, aggregator.latest_page_views(events)


async def get_visitor_stats(
    session: AsyncSession,
    shop_id: str,
    view_mode: ViewMode,
    time_range: TimeRange,
    now: Optional[int] = None,
) -> dict:
    """Full dashboard payload for one shop."""
    now = now if now is not None else now_ms()

    if view_mode is ViewMode.REALTIME:
        sessions, latest = await realtime_sessions(session, shop_id, now)
    else:
        sessions, latest = await historical_sessions(session, shop_id, now - time_range.milliseconds)

    affiliates = await _affiliate_lookup(session, {s.affiliate_id for s in sessions if s.affiliate_id})

    logger.debug(
        "Visitor stats shop=%s mode=%s range=%s sessions=%d",
        shop_id, view_mode.value, time_range.value, len(sessions),
    )

    payload = aggregator.build_dashboard(sessions, latest, affiliates)
    payload.update({
        "viewMode": view_mode.value,
        "timeRange": time_range.value,
        "generated_at": now,
    })
    return payload
