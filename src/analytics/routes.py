"""Analytics API routes — storefront tracking, dashboard stats and the live stream."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.analytics.ingest import TrackPayload, record_tracking_event
from src.analytics.stats import get_visitor_stats, parse_time_range, parse_view_mode
from src.auth import require_admin
from src.db import engine as db_engine
from src.db.engine import get_session
from src.db.tables import AdminRow
from src.errors import ValidationFailed
from src.models.affiliate import TimeRange, ViewMode

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/analytics", tags=["Analytics"])

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


# --- Ingestion ---

@router.post("/track")
async def track(payload: TrackPayload, session: AsyncSession = Depends(get_session)):
    """Receive a beacon from the storefront tracking script."""
    if not (payload.event and payload.session_id and payload.visitor_id and payload.shop):
        raise ValidationFailed("Missing required fields: event, session_id, visitor_id, shop")
    await record_tracking_event(session, payload)
    return JSONResponse({"success": True}, headers=_CORS_HEADERS)


@router.options("/track")
async def track_preflight():
    return JSONResponse(None, headers=_CORS_HEADERS)


# --- Dashboard ---

@router.get("/stats")
async def stats(
    viewMode: Optional[str] = Query(None, description="realtime | historical"),
    timeRange: Optional[str] = Query(None, description="1h | 24h | 7d | 30d"),
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    """Visitor metrics, top pages, sources, devices and per-affiliate traffic."""
    return await get_visitor_stats(
        session,
        admin.shop_id,
        parse_view_mode(viewMode),
        parse_time_range(timeRange),
    )


def _sse(message: dict) -> str:
    return f"data: {json.dumps(message, default=str)}\n\n"


async def stream_updates(
    shop_id: str,
    interval: float,
    max_updates: Optional[int] = None,
) -> AsyncIterator[str]:
    """Yield SSE frames: one ``connected`` frame, then realtime stats every ``interval`` seconds."""
    yield _sse({"type": "connected", "message": "Analytics stream connected"})
    sent = 0
    while max_updates is None or sent < max_updates:
        try:
            async with db_engine.async_session() as session:
                data = await get_visitor_stats(session, shop_id, ViewMode.REALTIME, TimeRange.ONE_DAY)
            yield _sse({"type": "update", "data": data})
        except Exception as exc:
            logger.exception("Analytics stream update failed for shop %s", shop_id)
            yield _sse({"type": "error", "message": str(exc) or "Failed to fetch analytics"})
        sent += 1
        if max_updates is None or sent < max_updates:
            await asyncio.sleep(interval)


@router.get("/stream")
async def stream(admin: AdminRow = Depends(require_admin)):
    """Server-Sent Events feed of realtime stats. Clients fall back to polling on disconnect."""
    return StreamingResponse(
        stream_updates(admin.shop_id, settings.ANALYTICS_STREAM_INTERVAL_SECONDS),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
