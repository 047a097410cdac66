"""Payout run, upcoming payout and payout report endpoints."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth import require_admin
from src.db.engine import get_session
from src.db.tables import AdminRow, utcnow
from src.errors import ValidationFailed
from src.models.affiliate import WebhookEvent
from src.services.affiliate_webhook import deliver_commission_webhooks
from src.services.payouts import (
    approve_payout_run,
    create_payout_run,
    get_payout_run,
    list_payout_runs,
    payout_report,
    render_report_csv,
    serialize_run,
    upcoming_payouts,
)

router = APIRouter(prefix="/api/v1/admin", tags=["Payouts"])
logger = logging.getLogger(__name__)


class PayoutRunCreate(BaseModel):
    period_start: datetime
    period_end: datetime
    commission_ids: list[str] = []


class PayoutRunApprove(BaseModel):
    payout_reference: Optional[str] = None


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# --- Payout runs ---

@router.post("/payout-runs", status_code=201)
async def new_payout_run(
    req: PayoutRunCreate,
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    run = await create_payout_run(
        session, admin.shop_id,
        _naive_utc(req.period_start), _naive_utc(req.period_end), req.commission_ids,
    )
    return {"payout_run": serialize_run(run)}


@router.get("/payout-runs")
async def get_payout_runs(
    status: Optional[str] = Query(None),
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    runs = await list_payout_runs(session, admin.shop_id, status)
    return {"payout_runs": [serialize_run(r) for r in runs]}


@router.get("/payout-runs/{run_id}")
async def get_payout_run_detail(
    run_id: str,
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    return {"payout_run": serialize_run(await get_payout_run(session, admin.shop_id, run_id))}


@router.post("/payout-runs/{run_id}/approve")
async def approve_run(
    run_id: str,
    background_tasks: BackgroundTasks,
    req: Optional[PayoutRunApprove] = Body(None),
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    """Pay every commission in the run, or none of them."""
    reference = req.payout_reference if req else None
    run = await approve_payout_run(session, admin.shop_id, run_id, reference)
    background_tasks.add_task(
        deliver_commission_webhooks, [item.commission_id for item in run.items], WebhookEvent.PAID.value,
    )
    return {"success": True, "payout_run": serialize_run(run)}


# --- Obligations & reports ---

@router.get("/payouts/upcoming")
async def get_upcoming_payouts(
    date: Optional[datetime] = Query(None, description="Due-by date (default now)"),
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    as_of = _naive_utc(date) or utcnow()
    obligations = await upcoming_payouts(session, admin.shop_id, as_of)
    return {
        "as_of": as_of.isoformat(),
        "obligations": [o.to_dict() for o in obligations],
        "total_commissions": sum(o.commission_count for o in obligations),
    }


@router.get("/payouts/reports")
async def get_payout_report(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    affiliate_id: Optional[str] = Query(None),
    format: str = Query("json"),
    admin: AdminRow = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    if format not in ("json", "csv"):
        raise ValidationFailed("format must be json or csv", details={"format": format})
    report = await payout_report(
        session, admin.shop_id, _naive_utc(start_date), _naive_utc(end_date), affiliate_id,
    )
    if format == "json":
        return report

    filename = f"payout-report-{utcnow().strftime('%Y-%m-%d')}.csv"
    return Response(
        content=render_report_csv(report),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
