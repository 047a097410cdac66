"""
Commission lifecycle.

    pending ──validate──▶ eligible ──approve──▶ approved ──payout run──▶ paid
       │                     │                      │
       └───────reject────────┴────────reject────────┴──▶ reversed

``paid`` and ``reversed`` are terminal. ``paid`` is only reachable through
payout-run approval (``src.services.payouts``). Approval is refused while a
commission carries an unresolved fraud flag.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.affiliate_tables import AffiliateRow, CommissionRow, OfferRow
from src.db.tables import utcnow
from src.errors import FraudFlagBlocked, NotFoundError, ValidationFailed
from src.models.affiliate import (
    OPEN_STATUSES,
    AffiliateStatus,
    CommissionStatus,
    CommissionType,
    SellingSubscriptions,
)
from src.services.fraud import check_self_referral, flag_commission, unresolved_flags

logger = logging.getLogger(__name__)

# action -> (allowed source statuses, target status)
TRANSITIONS: dict[str, tuple[tuple[CommissionStatus, ...], CommissionStatus]] = {
    "validate": ((CommissionStatus.PENDING,), CommissionStatus.ELIGIBLE),
    "approve": ((CommissionStatus.ELIGIBLE,), CommissionStatus.APPROVED),
    "reject": (
        (CommissionStatus.PENDING, CommissionStatus.ELIGIBLE, CommissionStatus.APPROVED),
        CommissionStatus.REVERSED,
    ),
}


def can_transition(action: str, status: str) -> bool:
    sources, _ = TRANSITIONS[action]
    return CommissionStatus(status) in sources


@dataclass
class TransitionResult:
    """Outcome of a batch transition: which ids moved and which were left alone."""
    action: str
    changed: list[str] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.changed)


# ── Amount calculation ───────────────────────────────────────────────────────

def _apply_rate(commission_type: str, value: float, subtotal: float) -> float:
    if commission_type == CommissionType.FLAT_RATE.value:
        return round(float(value), 2)
    if commission_type == CommissionType.PERCENTAGE.value:
        return round(subtotal * float(value) / 100, 2)
    return 0.0


def calculate_commission_amount(
    offer: Any, order_subtotal: float, payment_number: Optional[int] = None,
) -> Optional[float]:
    """Commission for one payment, or None when the offer doesn't credit it.

    ``payment_number`` is None (or 0) for one-time orders and the initial
    subscription payment; rebills count up from 1.
    """
    if offer is None:
        return None
    if not payment_number:
        return _apply_rate(offer.commission_type, offer.amount, order_subtotal)

    policy = offer.selling_subscriptions
    if policy == SellingSubscriptions.CREDIT_ALL.value:
        return _apply_rate(offer.commission_type, offer.amount, order_subtotal)
    if policy == SellingSubscriptions.CREDIT_FIRST_ONLY.value:
        max_payments = offer.subscription_max_payments
        if max_payments and payment_number > max_payments:
            return None
        if offer.subscription_rebill_commission_type and offer.subscription_rebill_commission_value is not None:
            return _apply_rate(
                offer.subscription_rebill_commission_type,
                offer.subscription_rebill_commission_value,
                order_subtotal,
            )
        return _apply_rate(offer.commission_type, offer.amount, order_subtotal)
    # no / credit_none
    return None


def offer_snapshot(offer: OfferRow, payment_number: Optional[int]) -> dict:
    return {
        "offer_id": offer.id,
        "offer_name": offer.name,
        "commission_type": offer.commission_type,
        "amount": offer.amount,
        "currency": offer.currency,
        "selling_subscriptions": offer.selling_subscriptions,
        "subscription_max_payments": offer.subscription_max_payments,
        "subscription_rebill_commission_type": offer.subscription_rebill_commission_type,
        "subscription_rebill_commission_value": offer.subscription_rebill_commission_value,
        "is_initial_payment": not payment_number,
    }


# ── Creation ─────────────────────────────────────────────────────────────────

async def get_affiliate(db: AsyncSession, shop_id: str, affiliate_id: str) -> AffiliateRow:
    affiliate = (await db.execute(
        select(AffiliateRow)
        .where(AffiliateRow.id == affiliate_id, AffiliateRow.shop_id == shop_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if affiliate is None:
        raise NotFoundError("Affiliate not found", details={"affiliate_id": affiliate_id})
    return affiliate


async def create_commission(
    db: AsyncSession,
    shop_id: str,
    *,
    affiliate_id: str,
    order_id: str,
    order_subtotal: float,
    currency: Optional[str] = None,
    order_number: Optional[str] = None,
    customer_email: Optional[str] = None,
    attribution_type: Optional[str] = None,
    subscription_payment_number: Optional[int] = None,
) -> Optional[CommissionRow]:
    """Record a pending commission for an attributed order.

    Returns None when the affiliate's offer does not credit this payment.
    """
    affiliate = await get_affiliate(db, shop_id, affiliate_id)
    if affiliate.status != AffiliateStatus.ACTIVE.value:
        raise ValidationFailed(
            f"Affiliate is {affiliate.status}; commissions are only recorded for active affiliates",
            details={"affiliate_id": affiliate_id},
        )
    offer = affiliate.offer
    if offer is None:
        raise ValidationFailed("Affiliate has no offer assigned", details={"affiliate_id": affiliate_id})

    amount = calculate_commission_amount(offer, order_subtotal, subscription_payment_number)
    if amount is None:
        logger.info(
            "Offer %s does not credit payment %s of order %s", offer.id, subscription_payment_number, order_id,
        )
        return None

    now = utcnow()
    commission = CommissionRow(
        shop_id=shop_id,
        affiliate_id=affiliate.id,
        order_id=order_id,
        order_number=order_number,
        customer_email=customer_email,
        amount=amount,
        currency=(currency or offer.currency or "USD").upper(),
        status=CommissionStatus.PENDING.value,
        eligible_date=now + timedelta(days=affiliate.payout_terms_days),
        attribution_type=attribution_type,
        subscription_payment_number=subscription_payment_number or None,
        offer_snapshot=offer_snapshot(offer, subscription_payment_number),
        created_at=now,
    )
    db.add(commission)
    await db.flush()

    check = check_self_referral(affiliate, customer_email)
    if check.should_flag:
        flag_commission(db, commission, check)

    await db.commit()
    logger.info(
        "Commission %s recorded: affiliate #%s order %s %.2f %s",
        commission.id, affiliate.affiliate_number, order_id, amount, commission.currency,
    )
    return await get_commission(db, shop_id, commission.id)


async def get_commission(db: AsyncSession, shop_id: str, commission_id: str) -> CommissionRow:
    commission = (await db.execute(
        select(CommissionRow)
        .where(CommissionRow.id == commission_id, CommissionRow.shop_id == shop_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if commission is None:
        raise NotFoundError("Commission not found", details={"commission_id": commission_id})
    return commission


# ── Transitions ──────────────────────────────────────────────────────────────

async def load_commissions(db: AsyncSession, shop_id: str, commission_ids: Iterable[str]) -> list[CommissionRow]:
    """All requested commissions, in request order. Raises if any id is unknown."""
    ids = list(dict.fromkeys(commission_ids))
    if not ids:
        raise ValidationFailed("commissionIds array is required")
    rows = (await db.execute(
        select(CommissionRow).where(CommissionRow.shop_id == shop_id, CommissionRow.id.in_(ids))
    )).scalars().all()
    by_id = {row.id: row for row in rows}
    missing = [cid for cid in ids if cid not in by_id]
    if missing:
        raise NotFoundError("Commissions not found", details={"missing_commission_ids": missing})
    return [by_id[cid] for cid in ids]


def _apply(action: str, commissions: list[CommissionRow], reason: Optional[str] = None) -> TransitionResult:
    _, target = TRANSITIONS[action]
    result = TransitionResult(action=action)
    for commission in commissions:
        if not can_transition(action, commission.status):
            result.skipped.append({"id": commission.id, "status": commission.status})
            continue
        commission.status = target.value
        if reason is not None:
            commission.reversal_reason = reason
        result.changed.append(commission.id)
    return result


async def validate_commissions(db: AsyncSession, shop_id: str, commission_ids: list[str]) -> TransitionResult:
    """pending → eligible."""
    commissions = await load_commissions(db, shop_id, commission_ids)
    result = _apply("validate", commissions)
    await db.commit()
    logger.info("Validated %d commission(s), skipped %d", result.count, len(result.skipped))
    return result


async def approve_commissions(db: AsyncSession, shop_id: str, commission_ids: list[str]) -> TransitionResult:
    """eligible → approved. Refuses the whole batch if any commission is fraud-flagged."""
    commissions = await load_commissions(db, shop_id, commission_ids)
    flags = await unresolved_flags(db, shop_id, [c.id for c in commissions])
    if flags:
        flagged = sorted({f.commission_id for f in flags})
        raise FraudFlagBlocked(
            "Cannot approve commissions with unresolved fraud flags",
            details={"fraud_commission_ids": flagged},
        )
    result = _apply("approve", commissions)
    await db.commit()
    logger.info("Approved %d commission(s), skipped %d", result.count, len(result.skipped))
    return result


async def reject_commissions(
    db: AsyncSession, shop_id: str, commission_ids: list[str], reason: Optional[str],
) -> TransitionResult:
    """Any non-terminal status → reversed. A reason is mandatory; fraud flags don't matter."""
    if not reason or not reason.strip():
        raise ValidationFailed("A reason is required to reject commissions")
    commissions = await load_commissions(db, shop_id, commission_ids)
    result = _apply("reject", commissions, reason=reason.strip())
    await db.commit()
    logger.info("Reversed %d commission(s), skipped %d: %s", result.count, len(result.skipped), reason)
    return result


# ── Payout terms ─────────────────────────────────────────────────────────────

async def recalculate_eligible_dates(db: AsyncSession, affiliate: AffiliateRow, payout_terms_days: int) -> int:
    """Re-derive eligible_date for the affiliate's open commissions. Caller commits."""
    commissions = (await db.execute(
        select(CommissionRow).where(
            CommissionRow.affiliate_id == affiliate.id,
            CommissionRow.status.in_(OPEN_STATUSES),
        )
    )).scalars().all()
    for commission in commissions:
        commission.eligible_date = commission.created_at + timedelta(days=payout_terms_days)
    logger.info(
        "Recalculated eligible dates of %d commission(s) for affiliate #%s (net-%d)",
        len(commissions), affiliate.affiliate_number, payout_terms_days,
    )
    return len(commissions)


# ── Queries ──────────────────────────────────────────────────────────────────

async def list_commissions(
    db: AsyncSession,
    shop_id: str,
    status: Optional[str] = None,
    affiliate_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> list[CommissionRow]:
    stmt = select(CommissionRow).where(CommissionRow.shop_id == shop_id)
    if status:
        stmt = stmt.where(CommissionRow.status == status)
    if affiliate_id:
        stmt = stmt.where(CommissionRow.affiliate_id == affiliate_id)
    stmt = stmt.order_by(CommissionRow.created_at.desc()).limit(limit).offset(offset)
    return list((await db.execute(stmt)).scalars().all())


def serialize_commission(commission: CommissionRow) -> dict:
    affiliate = commission.affiliate
    return {
        "id": commission.id,
        "affiliate_id": commission.affiliate_id,
        "affiliate_number": affiliate.affiliate_number if affiliate else None,
        "affiliate_name": affiliate.name if affiliate else None,
        "order_id": commission.order_id,
        "order_number": commission.order_number,
        "amount": commission.amount,
        "currency": commission.currency,
        "status": commission.status,
        "eligible_date": commission.eligible_date.isoformat() if commission.eligible_date else None,
        "created_at": commission.created_at.isoformat() if commission.created_at else None,
        "attribution_type": commission.attribution_type,
        "subscription_payment_number": commission.subscription_payment_number,
        "reversal_reason": commission.reversal_reason,
        "fraud_flags": [
            {"id": f.id, "flag_type": f.flag_type, "score": f.score, "resolved": f.resolved}
            for f in commission.fraud_flags
        ],
    }


def serialize_for_affiliate(commission: CommissionRow) -> dict:
    """Portal view of a commission: no customer data, no fraud review state."""
    return {
        "id": commission.id,
        "order_number": commission.order_number or commission.order_id,
        "amount": commission.amount,
        "currency": commission.currency,
        "status": commission.status,
        "eligible_date": commission.eligible_date.isoformat() if commission.eligible_date else None,
        "created_at": commission.created_at.isoformat() if commission.created_at else None,
    }
