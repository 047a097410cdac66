"""
Payout runs and payout obligations.

A payout run is a draft batch of eligible/approved commissions. Approving it
marks every commission ``paid`` in one transaction: if any commission moved
out of a payable status since the run was drafted, nothing changes.
"""
from __future__ import annotations

import csv
import io
import logging
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.affiliate_tables import AffiliateRow, CommissionRow, PayoutRunCommissionRow, PayoutRunRow
from src.db.tables import utcnow
from src.errors import AppError, NotFoundError, StateConflict, ValidationFailed
from src.models.affiliate import PAYABLE_STATUSES, CommissionStatus, PayoutRunStatus

logger = logging.getLogger(__name__)


@dataclass
class PayoutObligation:
    """What one affiliate is owed in one currency."""
    affiliate_id: str
    affiliate_number: Optional[int]
    affiliate_name: Optional[str]
    affiliate_email: Optional[str]
    payout_method: Optional[str]
    payout_identifier: Optional[str]
    currency: str
    total_amount: float = 0.0
    commission_count: int = 0
    commission_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def group_obligations(commissions: Iterable[CommissionRow]) -> list[PayoutObligation]:
    """Sum commissions per (affiliate, currency), largest total first."""
    groups: "OrderedDict[tuple[str, str], PayoutObligation]" = OrderedDict()
    for commission in commissions:
        key = (commission.affiliate_id, commission.currency)
        obligation = groups.get(key)
        if obligation is None:
            affiliate = commission.affiliate
            obligation = groups[key] = PayoutObligation(
                affiliate_id=commission.affiliate_id,
                affiliate_number=affiliate.affiliate_number if affiliate else None,
                affiliate_name=affiliate.name if affiliate else None,
                affiliate_email=affiliate.email if affiliate else None,
                payout_method=affiliate.payout_method if affiliate else None,
                payout_identifier=affiliate.payout_identifier if affiliate else None,
                currency=commission.currency,
            )
        obligation.total_amount = round(obligation.total_amount + float(commission.amount), 2)
        obligation.commission_count += 1
        obligation.commission_ids.append(commission.id)
    return sorted(groups.values(), key=lambda o: o.total_amount, reverse=True)


async def _draft_run_commission_ids(db: AsyncSession, shop_id: str, commission_ids: list[str]) -> set[str]:
    rows = (await db.execute(
        select(PayoutRunCommissionRow.commission_id)
        .join(PayoutRunRow, PayoutRunRow.id == PayoutRunCommissionRow.payout_run_id)
        .where(
            PayoutRunRow.shop_id == shop_id,
            PayoutRunRow.status == PayoutRunStatus.DRAFT.value,
            PayoutRunCommissionRow.commission_id.in_(commission_ids),
        )
    )).scalars().all()
    return set(rows)


def _draft_commission_ids_subquery(shop_id: str):
    return (
        select(PayoutRunCommissionRow.commission_id)
        .join(PayoutRunRow, PayoutRunRow.id == PayoutRunCommissionRow.payout_run_id)
        .where(PayoutRunRow.shop_id == shop_id, PayoutRunRow.status == PayoutRunStatus.DRAFT.value)
    )


# ── Runs ─────────────────────────────────────────────────────────────────────

async def create_payout_run(
    db: AsyncSession,
    shop_id: str,
    period_start: datetime,
    period_end: datetime,
    commission_ids: list[str],
) -> PayoutRunRow:
    if period_start > period_end:
        raise ValidationFailed("period_start must be on or before period_end")
    ids = list(dict.fromkeys(commission_ids or []))
    if not ids:
        raise ValidationFailed("commission_ids must not be empty")

    commissions = (await db.execute(
        select(CommissionRow).where(CommissionRow.shop_id == shop_id, CommissionRow.id.in_(ids))
    )).scalars().all()
    found = {c.id for c in commissions}
    missing = [cid for cid in ids if cid not in found]
    if missing:
        raise ValidationFailed("Commissions not found", details={"missing_commission_ids": missing})

    not_payable = [c.id for c in commissions if c.status not in PAYABLE_STATUSES]
    if not_payable:
        raise ValidationFailed(
            "Only eligible or approved commissions can be paid out",
            details={"invalid_commission_ids": sorted(not_payable)},
        )

    already_drafted = await _draft_run_commission_ids(db, shop_id, ids)
    if already_drafted:
        raise ValidationFailed(
            "Commissions already belong to another draft payout run",
            details={"conflicting_commission_ids": sorted(already_drafted)},
        )

    currencies: dict[str, set[str]] = {}
    for commission in commissions:
        currencies.setdefault(commission.affiliate_id, set()).add(commission.currency)
    mixed = sorted(aid for aid, found_currencies in currencies.items() if len(found_currencies) > 1)
    if mixed:
        raise ValidationFailed(
            "An affiliate's commissions in one payout run must share a currency",
            details={"mixed_currency_affiliate_ids": mixed},
        )

    run = PayoutRunRow(
        shop_id=shop_id,
        period_start=period_start,
        period_end=period_end,
        status=PayoutRunStatus.DRAFT.value,
    )
    run.items = [PayoutRunCommissionRow(commission_id=cid) for cid in ids]
    db.add(run)
    try:
        await db.commit()
    except IntegrityError:
        # another run drafted one of these commissions after the check above
        await db.rollback()
        conflicting = await _draft_run_commission_ids(db, shop_id, ids)
        raise ValidationFailed(
            "Commissions already belong to another draft payout run",
            details={"conflicting_commission_ids": sorted(conflicting)},
        )
    logger.info("Payout run %s drafted with %d commission(s)", run.id, len(ids))
    return await get_payout_run(db, shop_id, run.id)


async def get_payout_run(db: AsyncSession, shop_id: str, run_id: str) -> PayoutRunRow:
    run = (await db.execute(
        select(PayoutRunRow)
        .where(PayoutRunRow.id == run_id, PayoutRunRow.shop_id == shop_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if run is None:
        raise NotFoundError("Payout run not found", details={"payout_run_id": run_id})
    return run


async def list_payout_runs(db: AsyncSession, shop_id: str, status: Optional[str] = None) -> list[PayoutRunRow]:
    stmt = select(PayoutRunRow).where(PayoutRunRow.shop_id == shop_id)
    if status:
        stmt = stmt.where(PayoutRunRow.status == status)
    stmt = stmt.order_by(PayoutRunRow.created_at.desc())
    return list((await db.execute(stmt)).scalars().all())


async def approve_payout_run(
    db: AsyncSession, shop_id: str, run_id: str, payout_reference: Optional[str] = None,
) -> PayoutRunRow:
    """Mark the run approved and all of its commissions paid, or change nothing."""
    try:
        run = await get_payout_run(db, shop_id, run_id)
        if run.status != PayoutRunStatus.DRAFT.value:
            raise StateConflict(
                f"Payout run is already {run.status}",
                details={"payout_run_id": run_id, "status": run.status},
            )

        ids = [item.commission_id for item in run.items]
        commissions = (await db.execute(
            select(CommissionRow).where(CommissionRow.id.in_(ids))
        )).scalars().all()
        offending = sorted(c.id for c in commissions if c.status not in PAYABLE_STATUSES)
        if offending:
            raise StateConflict(
                "Some commissions are no longer payable",
                details={"invalid_commission_ids": offending},
            )

        now = utcnow()
        values = {"status": PayoutRunStatus.APPROVED.value, "approved_at": now, "updated_at": now}
        if payout_reference:
            values["payout_reference"] = payout_reference
        result = await db.execute(
            update(PayoutRunRow)
            .where(PayoutRunRow.id == run_id, PayoutRunRow.status == PayoutRunStatus.DRAFT.value)
            .values(**values)
        )
        if result.rowcount != 1:
            raise StateConflict("Payout run was approved concurrently", details={"payout_run_id": run_id})
        await db.execute(
            update(PayoutRunCommissionRow)
            .where(PayoutRunCommissionRow.payout_run_id == run_id)
            .values(is_draft=False)
        )

        result = await db.execute(
            update(CommissionRow)
            .where(CommissionRow.id.in_(ids), CommissionRow.status.in_(PAYABLE_STATUSES))
            .values(status=CommissionStatus.PAID.value, updated_at=now)
        )
        if result.rowcount != len(ids):
            raise StateConflict(
                "Some commissions changed status during approval",
                details={"payout_run_id": run_id},
            )
        await db.commit()
    except AppError:
        await db.rollback()
        raise

    logger.info("Payout run %s approved: %d commission(s) paid", run_id, len(ids))
    return await get_payout_run(db, shop_id, run_id)


def serialize_run(run: PayoutRunRow) -> dict:
    commissions = [item.commission for item in run.items if item.commission is not None]
    obligations = group_obligations(commissions)
    return {
        "id": run.id,
        "status": run.status,
        "period_start": run.period_start.isoformat() if run.period_start else None,
        "period_end": run.period_end.isoformat() if run.period_end else None,
        "payout_reference": run.payout_reference,
        "created_at": run.created_at.isoformat() if run.created_at else None,
        "approved_at": run.approved_at.isoformat() if run.approved_at else None,
        "commission_count": len(run.items),
        "total_amount": round(sum(o.total_amount for o in obligations), 2),
        "obligations": [o.to_dict() for o in obligations],
    }


# ── Upcoming & reports ───────────────────────────────────────────────────────

async def upcoming_payouts(db: AsyncSession, shop_id: str, as_of: Optional[datetime] = None) -> list[PayoutObligation]:
    """Payable commissions due by ``as_of`` that aren't already in a draft run."""
    as_of = as_of or utcnow()
    commissions = (await db.execute(
        select(CommissionRow).where(
            CommissionRow.shop_id == shop_id,
            CommissionRow.status.in_(PAYABLE_STATUSES),
            CommissionRow.eligible_date <= as_of,
            CommissionRow.id.not_in(_draft_commission_ids_subquery(shop_id)),
        ).order_by(CommissionRow.eligible_date)
    )).scalars().all()
    return group_obligations(commissions)


async def affiliate_payouts(db: AsyncSession, affiliate: AffiliateRow) -> list[dict]:
    """An affiliate's payable and paid commissions with the payout runs they belong to."""
    commissions = (await db.execute(
        select(CommissionRow).where(
            CommissionRow.shop_id == affiliate.shop_id,
            CommissionRow.affiliate_id == affiliate.id,
            CommissionRow.status.in_([*PAYABLE_STATUSES, CommissionStatus.PAID.value]),
        ).order_by(CommissionRow.eligible_date.desc())
    )).scalars().all()

    runs_by_commission: dict[str, list[PayoutRunRow]] = {}
    if commissions:
        rows = (await db.execute(
            select(PayoutRunCommissionRow.commission_id, PayoutRunRow)
            .join(PayoutRunRow, PayoutRunRow.id == PayoutRunCommissionRow.payout_run_id)
            .where(PayoutRunCommissionRow.commission_id.in_([c.id for c in commissions]))
            .order_by(PayoutRunRow.created_at)
        )).all()
        for commission_id, run in rows:
            runs_by_commission.setdefault(commission_id, []).append(run)

    return [
        {
            "id": c.id,
            "order_number": c.order_number or c.order_id,
            "amount": c.amount,
            "currency": c.currency,
            "status": c.status,
            "eligible_date": c.eligible_date.isoformat() if c.eligible_date else None,
            "payout_runs": [
                {
                    "id": run.id,
                    "period_start": run.period_start.isoformat() if run.period_start else None,
                    "period_end": run.period_end.isoformat() if run.period_end else None,
                    "status": run.status,
                    "payout_reference": run.payout_reference,
                }
                for run in runs_by_commission.get(c.id, [])
            ],
        }
        for c in commissions
    ]


REPORT_COLUMNS = [
    "payout_run_id",
    "approved_at",
    "period_start",
    "period_end",
    "payout_reference",
    "affiliate_number",
    "affiliate_name",
    "affiliate_email",
    "payout_method",
    "payout_identifier",
    "currency",
    "total_amount",
    "commission_count",
]


async def payout_report(
    db: AsyncSession,
    shop_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    affiliate_id: Optional[str] = None,
) -> dict:
    """Approved runs in the window, one row per run and affiliate obligation."""
    stmt = select(PayoutRunRow).where(
        PayoutRunRow.shop_id == shop_id,
        PayoutRunRow.status == PayoutRunStatus.APPROVED.value,
    )
    if start_date:
        stmt = stmt.where(PayoutRunRow.created_at >= start_date)
    if end_date:
        stmt = stmt.where(PayoutRunRow.created_at <= end_date)
    runs = (await db.execute(stmt.order_by(PayoutRunRow.created_at.desc()))).scalars().all()

    rows = []
    for run in runs:
        commissions = [item.commission for item in run.items if item.commission is not None]
        if affiliate_id:
            commissions = [c for c in commissions if c.affiliate_id == affiliate_id]
        for obligation in group_obligations(commissions):
            rows.append({
                "payout_run_id": run.id,
                "approved_at": run.approved_at.isoformat() if run.approved_at else None,
                "period_start": run.period_start.isoformat(),
                "period_end": run.period_end.isoformat(),
                "payout_reference": run.payout_reference,
                "affiliate_id": obligation.affiliate_id,
                "affiliate_number": obligation.affiliate_number,
                "affiliate_name": obligation.affiliate_name,
                "affiliate_email": obligation.affiliate_email,
                "payout_method": obligation.payout_method or "manual",
                "payout_identifier": obligation.payout_identifier,
                "currency": obligation.currency,
                "total_amount": obligation.total_amount,
                "commission_count": obligation.commission_count,
            })

    totals: dict[str, float] = {}
    for row in rows:
        totals[row["currency"]] = round(totals.get(row["currency"], 0.0) + row["total_amount"], 2)

    return {
        "summary": {
            "total_payout_runs": len({row["payout_run_id"] for row in rows}),
            "total_commissions": sum(row["commission_count"] for row in rows),
            "totals_by_currency": totals,
            "date_range": {
                "start": start_date.isoformat() if start_date else None,
                "end": end_date.isoformat() if end_date else None,
            },
        },
        "payouts": rows,
    }


def render_report_csv(report: dict) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(REPORT_COLUMNS)
    for row in report["payouts"]:
        writer.writerow(["" if row.get(col) is None else row[col] for col in REPORT_COLUMNS])
    return output.getvalue()
