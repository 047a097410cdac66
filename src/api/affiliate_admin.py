"""
Affiliate and offer admin endpoints.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth import require_admin
from src.db.engine import get_session
from src.db.tables import AdminRow
from src.services.affiliate import (
    AffiliateCreate,
    AffiliateUpdate,
    OfferCreate,
    create_affiliate,
    create_offer,
    list_affiliates,
    list_offers,
    serialize_affiliate,
    serialize_offer,
    update_affiliate,
)
from src.services.affiliate_redirect import list_clicks, serialize_click
from src.services.affiliate_webhook import WEBHOOK_FIELDS
from src.services.commissions import get_affiliate

router = APIRouter(prefix="/api/v1/admin", tags=["Affiliate Admin"])
logger = logging.getLogger(__name__)


# --- Affiliates ---

@router.post("/affiliates", status_code=201)
async def add_affiliate(
    req: AffiliateCreate,
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    affiliate = await create_affiliate(session, admin.shop_id, req)
    return {"affiliate": serialize_affiliate(affiliate)}


@router.get("/affiliates")
async def get_affiliates(
    status: Optional[str] = Query(None),
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    rows = await list_affiliates(session, admin.shop_id, status)
    return {"affiliates": [serialize_affiliate(a) for a in rows]}


@router.get("/affiliates/webhook-fields")
async def get_webhook_fields(admin: AdminRow = Depends(require_admin)):
    """Fields a dynamic webhook mapping can refer to."""
    return {"fields": [{"key": key, "label": label} for key, label in WEBHOOK_FIELDS.items()]}


@router.get("/affiliates/{affiliate_id}")
async def get_affiliate_detail(
    affiliate_id: str,
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    affiliate = await get_affiliate(session, admin.shop_id, affiliate_id)
    return {"affiliate": serialize_affiliate(affiliate)}


@router.patch("/affiliates/{affiliate_id}")
async def patch_affiliate(
    affiliate_id: str,
    req: AffiliateUpdate,
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    """Partial update. Changing payout terms needs ``recalculate_eligible_dates``."""
    affiliate, recalculated = await update_affiliate(session, admin.shop_id, affiliate_id, req)
    response = {"affiliate": serialize_affiliate(affiliate)}
    if recalculated is not None:
        response["recalculated_count"] = recalculated
    return response


@router.get("/affiliates/{affiliate_id}/clicks")
async def affiliate_clicks(
    affiliate_id: str,
    limit: int = Query(100, ge=1, le=500),
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    """Most recent referral-link clicks for one affiliate."""
    affiliate = await get_affiliate(session, admin.shop_id, affiliate_id)
    clicks = await list_clicks(session, admin.shop_id, affiliate.id, limit)
    return {"clicks": [serialize_click(c) for c in clicks], "count": len(clicks)}


# --- Offers ---

@router.post("/offers", status_code=201)
async def add_offer(
    req: OfferCreate,
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    offer = await create_offer(session, admin.shop_id, req)
    return {"offer": serialize_offer(offer)}


@router.get("/offers")
async def get_offers(
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    return {"offers": [serialize_offer(o) for o in await list_offers(session, admin.shop_id)]}
