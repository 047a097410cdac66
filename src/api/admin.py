"""Admin commission and fraud-review endpoints."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth import require_admin
from src.db.engine import get_session
from src.db.tables import AdminRow
from src.models.affiliate import WebhookEvent, WebhookLogStatus
from src.services.affiliate_webhook import (
    deliver_commission_webhook,
    deliver_commission_webhooks,
    list_webhook_logs,
    refire_webhook,
    serialize_log,
)
from src.services.commissions import (
    TransitionResult,
    approve_commissions,
    create_commission,
    list_commissions,
    reject_commissions,
    serialize_commission,
    validate_commissions,
)
from src.services.fraud import list_fraud_flags, resolve_fraud_flag, serialize_flag

router = APIRouter(prefix="/api/v1/admin", tags=["Admin"])
logger = logging.getLogger(__name__)


class CommissionCreateRequest(BaseModel):
    affiliate_id: str
    order_id: str
    order_number: Optional[str] = None
    order_subtotal: float = Field(..., ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    customer_email: Optional[str] = None
    attribution_type: Optional[str] = None
    subscription_payment_number: Optional[int] = Field(None, ge=0)


class CommissionIdsRequest(BaseModel):
    commissionIds: list[str] = Field(default_factory=list)


class RejectRequest(CommissionIdsRequest):
    reason: Optional[str] = None


class ResolveFraudRequest(BaseModel):
    fraudFlagId: str


def _transition_response(result: TransitionResult) -> dict:
    return {
        "success": True,
        "count": result.count,
        "commission_ids": result.changed,
        "skipped": result.skipped,
    }


# --- Commissions ---

@router.post("/commissions", status_code=201)
async def record_commission(
    req: CommissionCreateRequest,
    background_tasks: BackgroundTasks,
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    """Record a commission for an attributed order and notify the affiliate's postback URL."""
    commission = await create_commission(session, admin.shop_id, **req.model_dump())
    if commission is None:
        return {"success": True, "created": False, "reason": "Offer does not credit this payment"}
    background_tasks.add_task(deliver_commission_webhook, commission.id)
    return {"success": True, "created": True, "commission": serialize_commission(commission)}


@router.get("/commissions")
async def get_commissions(
    status: Optional[str] = Query(None),
    affiliate_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    rows = await list_commissions(session, admin.shop_id, status, affiliate_id, limit, offset)
    return {"commissions": [serialize_commission(c) for c in rows], "count": len(rows)}


@router.post("/commissions/validate")
async def validate(
    req: CommissionIdsRequest,
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    """pending → eligible."""
    return _transition_response(await validate_commissions(session, admin.shop_id, req.commissionIds))


@router.post("/commissions/approve")
async def approve(
    req: CommissionIdsRequest,
    background_tasks: BackgroundTasks,
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    """eligible → approved; blocked by unresolved fraud flags."""
    result = await approve_commissions(session, admin.shop_id, req.commissionIds)
    if result.changed:
        background_tasks.add_task(deliver_commission_webhooks, result.changed, WebhookEvent.APPROVED.value)
    return _transition_response(result)


@router.post("/commissions/reject")
async def reject(
    req: RejectRequest,
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    return _transition_response(
        await reject_commissions(session, admin.shop_id, req.commissionIds, req.reason)
    )


@router.get("/commissions/{commission_id}/webhook-logs")
async def commission_webhook_logs(
    commission_id: str,
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    logs = await list_webhook_logs(session, admin.shop_id, commission_id)
    return {"logs": [serialize_log(log) for log in logs]}


@router.post("/commissions/{commission_id}/webhook-logs")
async def fire_commission_webhook(
    commission_id: str,
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    """Fire the affiliate's postback again now and return the new log entry."""
    log = await refire_webhook(session, admin.shop_id, commission_id)
    success = log.status == WebhookLogStatus.SUCCESS.value
    return {
        "success": success,
        "message": "Webhook fired successfully" if success else "Webhook failed - check logs for details",
        "log": serialize_log(log),
    }


# --- Fraud ---

@router.get("/fraud")
async def get_fraud_flags(
    resolved: Optional[bool] = Query(None),
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    flags = await list_fraud_flags(session, admin.shop_id, resolved)
    return {"fraud_flags": [serialize_flag(f) for f in flags]}


@router.post("/fraud/resolve")
async def resolve_fraud(
    req: ResolveFraudRequest,
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    """Mark a flag resolved. The commission itself is not moved."""
    flag, changed = await resolve_fraud_flag(session, admin.shop_id, req.fraudFlagId)
    return {"success": True, "already_resolved": not changed, "fraud_flag": serialize_flag(flag)}
