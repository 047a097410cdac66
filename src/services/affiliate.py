"""
Affiliate and offer management.

Affiliates get a per-shop sequential ``affiliate_number`` that never changes;
it's what redirect links and the tracking script carry. Changing an
affiliate's payout terms requires an explicit choice about commissions that
already exist.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.auth import hash_password
from src.db.affiliate_tables import AffiliateRow, OfferRow
from src.errors import NotFoundError, StateConflict, ValidationFailed
from src.models.affiliate import AffiliateStatus, CommissionType, SellingSubscriptions
from src.services.commissions import get_affiliate, recalculate_eligible_dates

logger = logging.getLogger(__name__)


# ── Request models ───────────────────────────────────────────────────────────

class OfferCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    commission_type: CommissionType = CommissionType.PERCENTAGE
    amount: float = Field(..., ge=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    attribution_window_days: int = Field(30, ge=1)
    selling_subscriptions: SellingSubscriptions = SellingSubscriptions.NO
    subscription_max_payments: Optional[int] = Field(None, ge=1)
    subscription_rebill_commission_type: Optional[CommissionType] = None
    subscription_rebill_commission_value: Optional[float] = Field(None, ge=0)
    is_public: bool = False
    is_private: bool = False


class AffiliateCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    payout_method: Optional[str] = None
    payout_identifier: Optional[str] = None
    payout_terms_days: Optional[int] = Field(None, ge=0)
    offer_id: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_parameter_mapping: Optional[dict[str, Any]] = None
    redirect_base_url: Optional[str] = None
    password: Optional[str] = Field(None, min_length=8, max_length=200)


class AffiliateUpdate(BaseModel):
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    email: Optional[str] = None
    status: Optional[AffiliateStatus] = None
    payout_method: Optional[str] = None
    payout_identifier: Optional[str] = None
    payout_terms_days: Optional[int] = Field(None, ge=0)
    recalculate_eligible_dates: Optional[bool] = None
    offer_id: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_parameter_mapping: Optional[dict[str, Any]] = None
    redirect_base_url: Optional[str] = None
    # empty string clears the portal password
    password: Optional[str] = Field(None, max_length=200)


# ── Offers ───────────────────────────────────────────────────────────────────

async def create_offer(db: AsyncSession, shop_id: str, data: OfferCreate) -> OfferRow:
    last = (await db.execute(
        select(func.max(OfferRow.offer_number)).where(OfferRow.shop_id == shop_id)
    )).scalar()
    credit_first_only = data.selling_subscriptions == SellingSubscriptions.CREDIT_FIRST_ONLY
    offer = OfferRow(
        shop_id=shop_id,
        offer_number=(last or 0) + 1,
        name=data.name,
        commission_type=data.commission_type.value,
        amount=data.amount,
        currency=data.currency.upper(),
        attribution_window_days=data.attribution_window_days,
        selling_subscriptions=data.selling_subscriptions.value,
        # rebill settings only apply to credit_first_only offers
        subscription_max_payments=data.subscription_max_payments if credit_first_only else None,
        subscription_rebill_commission_type=(
            data.subscription_rebill_commission_type.value
            if credit_first_only and data.subscription_rebill_commission_type else None
        ),
        subscription_rebill_commission_value=(
            data.subscription_rebill_commission_value if credit_first_only else None
        ),
        is_public=data.is_public,
        is_private=data.is_private,
    )
    db.add(offer)
    await db.commit()
    await db.refresh(offer)
    logger.info("Offer #%d '%s' created for shop %s", offer.offer_number, offer.name, shop_id)
    return offer


async def list_offers(db: AsyncSession, shop_id: str) -> list[OfferRow]:
    return list((await db.execute(
        select(OfferRow).where(OfferRow.shop_id == shop_id).order_by(OfferRow.offer_number)
    )).scalars().all())


async def _get_offer(db: AsyncSession, shop_id: str, offer_id: str) -> OfferRow:
    offer = (await db.execute(
        select(OfferRow).where(OfferRow.id == offer_id, OfferRow.shop_id == shop_id)
    )).scalar_one_or_none()
    if offer is None:
        raise ValidationFailed("Offer not found", details={"offer_id": offer_id})
    return offer


def serialize_offer(offer: OfferRow) -> dict:
    return {
        "id": offer.id,
        "offer_number": offer.offer_number,
        "name": offer.name,
        "commission_type": offer.commission_type,
        "amount": offer.amount,
        "currency": offer.currency,
        "attribution_window_days": offer.attribution_window_days,
        "selling_subscriptions": offer.selling_subscriptions,
        "subscription_max_payments": offer.subscription_max_payments,
        "subscription_rebill_commission_type": offer.subscription_rebill_commission_type,
        "subscription_rebill_commission_value": offer.subscription_rebill_commission_value,
        "is_public": offer.is_public,
        "is_private": offer.is_private,
    }


# ── Affiliates ───────────────────────────────────────────────────────────────

def _display_name(name: Optional[str], first: Optional[str], last: Optional[str], email: str) -> str:
    if name and name.strip():
        return name.strip()
    joined = " ".join(p.strip() for p in (first, last) if p and p.strip())
    return joined or email


async def _email_taken(db: AsyncSession, shop_id: str, email: str, exclude_id: Optional[str] = None) -> bool:
    stmt = select(AffiliateRow.id).where(AffiliateRow.shop_id == shop_id, AffiliateRow.email == email)
    if exclude_id:
        stmt = stmt.where(AffiliateRow.id != exclude_id)
    return (await db.execute(stmt)).first() is not None


async def create_affiliate(db: AsyncSession, shop_id: str, data: AffiliateCreate) -> AffiliateRow:
    email = data.email.strip().lower()
    if await _email_taken(db, shop_id, email):
        raise StateConflict("An affiliate with this email already exists", details={"email": email})
    if data.offer_id:
        await _get_offer(db, shop_id, data.offer_id)

    last = (await db.execute(
        select(func.max(AffiliateRow.affiliate_number)).where(AffiliateRow.shop_id == shop_id)
    )).scalar()
    affiliate = AffiliateRow(
        shop_id=shop_id,
        affiliate_number=(last or 0) + 1,
        name=_display_name(data.name, data.first_name, data.last_name, email),
        first_name=data.first_name,
        last_name=data.last_name,
        company=data.company,
        email=email,
        payout_method=data.payout_method,
        payout_identifier=data.payout_identifier,
        payout_terms_days=(
            data.payout_terms_days if data.payout_terms_days is not None
            else settings.DEFAULT_PAYOUT_TERMS_DAYS
        ),
        status=AffiliateStatus.ACTIVE.value,
        offer_id=data.offer_id,
        webhook_url=data.webhook_url,
        webhook_parameter_mapping=data.webhook_parameter_mapping,
        redirect_base_url=data.redirect_base_url,
        password_hash=hash_password(data.password) if data.password else None,
    )
    db.add(affiliate)
    await db.commit()
    logger.info("Affiliate #%d (%s) created for shop %s", affiliate.affiliate_number, email, shop_id)
    return await get_affiliate(db, shop_id, affiliate.id)


async def list_affiliates(db: AsyncSession, shop_id: str, status: Optional[str] = None) -> list[AffiliateRow]:
    stmt = select(AffiliateRow).where(AffiliateRow.shop_id == shop_id)
    if status:
        stmt = stmt.where(AffiliateRow.status == status)
    return list((await db.execute(stmt.order_by(AffiliateRow.affiliate_number))).scalars().all())


_PLAIN_FIELDS = (
    "first_name", "last_name", "company", "payout_method", "payout_identifier",
    "webhook_url", "webhook_parameter_mapping", "redirect_base_url",
)


async def update_affiliate(
    db: AsyncSession, shop_id: str, affiliate_id: str, data: AffiliateUpdate,
) -> tuple[AffiliateRow, Optional[int]]:
    """Apply a partial update. Returns (affiliate, recalculated_count or None)."""
    affiliate = await get_affiliate(db, shop_id, affiliate_id)
    changes = data.model_dump(exclude_unset=True)
    derived_name = _display_name(None, affiliate.first_name, affiliate.last_name, affiliate.email)

    terms_changed = (
        data.payout_terms_days is not None and data.payout_terms_days != affiliate.payout_terms_days
    )
    if terms_changed and data.recalculate_eligible_dates is None:
        raise ValidationFailed(
            "Changing payout_terms_days requires recalculate_eligible_dates (true to update "
            "existing commissions, false to apply to future commissions only)",
            details={"requires_confirmation": True},
        )

    if "email" in changes and data.email:
        email = data.email.strip().lower()
        if await _email_taken(db, shop_id, email, exclude_id=affiliate.id):
            raise StateConflict("An affiliate with this email already exists", details={"email": email})
        affiliate.email = email
    if "offer_id" in changes:
        if data.offer_id:
            await _get_offer(db, shop_id, data.offer_id)
        affiliate.offer_id = data.offer_id or None
    if data.status is not None:
        affiliate.status = data.status.value
    for name in _PLAIN_FIELDS:
        if name in changes:
            setattr(affiliate, name, changes[name])
    if "password" in changes:
        if data.password and len(data.password) < 8:
            raise ValidationFailed("Password must be at least 8 characters")
        affiliate.password_hash = hash_password(data.password) if data.password else None
    # an explicitly chosen display name survives edits to the name parts
    if "name" in changes or affiliate.name == derived_name:
        affiliate.name = _display_name(
            changes.get("name"), affiliate.first_name, affiliate.last_name, affiliate.email,
        )

    recalculated = None
    if terms_changed:
        affiliate.payout_terms_days = data.payout_terms_days
        if data.recalculate_eligible_dates:
            recalculated = await recalculate_eligible_dates(db, affiliate, data.payout_terms_days)

    await db.commit()
    logger.info("Affiliate #%d updated: %s", affiliate.affiliate_number, sorted(changes))
    return await get_affiliate(db, shop_id, affiliate.id), recalculated


def serialize_affiliate(affiliate: AffiliateRow) -> dict:
    return {
        "id": affiliate.id,
        "affiliate_number": affiliate.affiliate_number,
        "name": affiliate.name,
        "first_name": affiliate.first_name,
        "last_name": affiliate.last_name,
        "company": affiliate.company,
        "email": affiliate.email,
        "status": affiliate.status,
        "payout_method": affiliate.payout_method,
        "payout_identifier": affiliate.payout_identifier,
        "payout_terms_days": affiliate.payout_terms_days,
        "offer": serialize_offer(affiliate.offer) if affiliate.offer else None,
        "webhook_url": affiliate.webhook_url,
        "webhook_parameter_mapping": affiliate.webhook_parameter_mapping or {},
        "redirect_base_url": affiliate.redirect_base_url,
        "has_password": bool(affiliate.password_hash),
        "created_at": affiliate.created_at.isoformat() if affiliate.created_at else None,
    }
