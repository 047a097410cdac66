"""
Fraud detection and flag review.

Flags are attached to commissions. While any flag on a commission is
unresolved the commission cannot be approved; resolving is one-way and does
not move the commission by itself.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.affiliate_tables import AffiliateRow, CommissionRow, FraudFlagRow
from src.db.tables import utcnow
from src.errors import NotFoundError

logger = logging.getLogger(__name__)

SELF_REFERRAL_SCORE = 50
FLAG_THRESHOLD = 50


@dataclass
class FraudCheck:
    should_flag: bool
    flag_type: str
    score: int
    reason: str


def check_self_referral(affiliate: AffiliateRow, customer_email: Optional[str]) -> FraudCheck:
    """Order placed with the affiliate's own email address."""
    score = 0
    reasons: list[str] = []
    if customer_email and affiliate.email and customer_email.strip().lower() == affiliate.email.strip().lower():
        score += SELF_REFERRAL_SCORE
        reasons.append("Email matches affiliate email")
    return FraudCheck(
        should_flag=score >= FLAG_THRESHOLD,
        flag_type="self_referral",
        score=min(score, 100),
        reason="; ".join(reasons),
    )


def flag_commission(db: AsyncSession, commission: CommissionRow, check: FraudCheck) -> FraudFlagRow:
    flag = FraudFlagRow(
        shop_id=commission.shop_id,
        commission_id=commission.id,
        flag_type=check.flag_type,
        score=check.score,
        reason=check.reason,
        resolved=False,
    )
    db.add(flag)
    logger.warning(
        "Fraud flag %s (score %d) raised on commission %s: %s",
        check.flag_type, check.score, commission.id, check.reason,
    )
    return flag


async def unresolved_flags(db: AsyncSession, shop_id: str, commission_ids: list[str]) -> list[FraudFlagRow]:
    if not commission_ids:
        return []
    return list((await db.execute(
        select(FraudFlagRow).where(
            FraudFlagRow.shop_id == shop_id,
            FraudFlagRow.commission_id.in_(commission_ids),
            FraudFlagRow.resolved.is_(False),
        )
    )).scalars().all())


async def resolve_fraud_flag(db: AsyncSession, shop_id: str, flag_id: str) -> tuple[FraudFlagRow, bool]:
    """Mark a flag resolved. Returns (flag, changed); resolving twice is a no-op."""
    flag = (await db.execute(
        select(FraudFlagRow).where(FraudFlagRow.id == flag_id, FraudFlagRow.shop_id == shop_id)
    )).scalar_one_or_none()
    if flag is None:
        raise NotFoundError("Fraud flag not found", details={"fraud_flag_id": flag_id})
    if flag.resolved:
        return flag, False

    flag.resolved = True
    flag.resolved_at = utcnow()
    await db.commit()
    logger.info("Fraud flag %s on commission %s resolved", flag.id, flag.commission_id)
    return flag, True


async def list_fraud_flags(db: AsyncSession, shop_id: str, resolved: Optional[bool] = None) -> list[FraudFlagRow]:
    stmt = select(FraudFlagRow).where(FraudFlagRow.shop_id == shop_id)
    if resolved is not None:
        stmt = stmt.where(FraudFlagRow.resolved.is_(resolved))
    stmt = stmt.order_by(FraudFlagRow.created_at.desc())
    return list((await db.execute(stmt)).scalars().all())


def serialize_flag(flag: FraudFlagRow) -> dict:
    return {
        "id": flag.id,
        "commission_id": flag.commission_id,
        "flag_type": flag.flag_type,
        "score": flag.score,
        "reason": flag.reason,
        "resolved": flag.resolved,
        "resolved_at": flag.resolved_at.isoformat() if flag.resolved_at else None,
        "created_at": flag.created_at.isoformat() if flag.created_at else None,
    }
