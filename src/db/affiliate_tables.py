"""
Database tables for affiliates, offers, commissions, fraud flags and payout runs.
"""
from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Boolean, JSON, Text,
    ForeignKey, Index, UniqueConstraint, text,
)
from sqlalchemy.orm import relationship

from src.db.tables import Base, new_id, utcnow


class OfferRow(Base):
    """Commission plan assigned to affiliates."""
    __tablename__ = "offers"

    id = Column(String(36), primary_key=True, default=new_id)
    shop_id = Column(String(255), nullable=False, index=True)
    offer_number = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)

    commission_type = Column(String(20), nullable=False, default="percentage")  # flat_rate | percentage
    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    attribution_window_days = Column(Integer, nullable=False, default=30)

    # Subscription rebill policy
    selling_subscriptions = Column(String(20), nullable=False, default="no")
    subscription_max_payments = Column(Integer, nullable=True)
    subscription_rebill_commission_type = Column(String(20), nullable=True)
    subscription_rebill_commission_value = Column(Float, nullable=True)

    is_public = Column(Boolean, nullable=False, default=False)
    is_private = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("shop_id", "offer_number", name="uq_offer_number"),
    )


class AffiliateRow(Base):
    """A partner who earns commissions on attributed orders."""
    __tablename__ = "affiliates"

    id = Column(String(36), primary_key=True, default=new_id)
    shop_id = Column(String(255), nullable=False, index=True)
    affiliate_number = Column(Integer, nullable=False)  # human-facing, immutable

    name = Column(String(255), nullable=False)
    first_name = Column(String(120), nullable=True)
    last_name = Column(String(120), nullable=True)
    company = Column(String(255), nullable=True)
    email = Column(String(320), nullable=False)

    payout_method = Column(String(50), nullable=True)  # paypal, bank, manual
    payout_identifier = Column(String(320), nullable=True)
    payout_terms_days = Column(Integer, nullable=False, default=30)
    status = Column(String(20), nullable=False, default="active")

    offer_id = Column(String(36), ForeignKey("offers.id", ondelete="SET NULL"), nullable=True)

    webhook_url = Column(String(2000), nullable=True)
    webhook_parameter_mapping = Column(JSON, nullable=True)  # placeholder -> {type, value}
    redirect_base_url = Column(String(2000), nullable=True)
    password_hash = Column(String(200), nullable=True)  # portal login; None until an admin sets one

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    offer = relationship("OfferRow", lazy="joined")

    __table_args__ = (
        UniqueConstraint("shop_id", "affiliate_number", name="uq_affiliate_number"),
        UniqueConstraint("shop_id", "email", name="uq_affiliate_email"),
    )


class AffiliateSessionRow(Base):
    """Opaque bearer token for the affiliate portal."""
    __tablename__ = "affiliate_sessions"

    token = Column(String(64), primary_key=True)
    affiliate_id = Column(String(36), ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False)


class AffiliateClickRow(Base):
    """One visit through an affiliate's referral link."""
    __tablename__ = "affiliate_clicks"

    id = Column(String(36), primary_key=True)  # click id, also sent to the storefront
    shop_id = Column(String(255), nullable=False, index=True)
    affiliate_id = Column(String(36), ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False)
    landing_url = Column(Text, nullable=False)
    ip_hash = Column(String(64), nullable=True)
    user_agent_hash = Column(String(64), nullable=True)
    url_params = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_clicks_affiliate_created", "affiliate_id", "created_at"),
    )


class CommissionRow(Base):
    """Money owed to an affiliate for one order (or subscription rebill)."""
    __tablename__ = "commissions"

    id = Column(String(36), primary_key=True, default=new_id)
    shop_id = Column(String(255), nullable=False, index=True)
    affiliate_id = Column(String(36), ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False)

    order_id = Column(String(100), nullable=False)
    order_number = Column(String(100), nullable=True)
    customer_email = Column(String(320), nullable=True)

    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default="pending", index=True)
    eligible_date = Column(DateTime, nullable=False)

    attribution_type = Column(String(30), nullable=True)  # link, coupon, manual
    subscription_payment_number = Column(Integer, nullable=True)  # None = one-time / initial
    offer_snapshot = Column(JSON, nullable=True)
    reversal_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    affiliate = relationship("AffiliateRow", lazy="joined")
    fraud_flags = relationship("FraudFlagRow", back_populates="commission", lazy="selectin")

    __table_args__ = (
        Index("ix_commissions_shop_status", "shop_id", "status"),
        Index("ix_commissions_affiliate_status", "affiliate_id", "status"),
    )


class FraudFlagRow(Base):
    """Suspicion attached to a commission. Unresolved flags block approval."""
    __tablename__ = "fraud_flags"

    id = Column(String(36), primary_key=True, default=new_id)
    shop_id = Column(String(255), nullable=False, index=True)
    commission_id = Column(String(36), ForeignKey("commissions.id", ondelete="CASCADE"), nullable=False, index=True)
    flag_type = Column(String(50), nullable=False)  # self_referral, excessive_clicks, ...
    score = Column(Integer, nullable=False, default=0)  # 0-100
    reason = Column(Text, nullable=True)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    commission = relationship("CommissionRow", back_populates="fraud_flags")


class PayoutRunRow(Base):
    """A batch of commissions paid together."""
    __tablename__ = "payout_runs"

    id = Column(String(36), primary_key=True, default=new_id)
    shop_id = Column(String(255), nullable=False, index=True)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default="draft")  # draft | approved
    payout_reference = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    approved_at = Column(DateTime, nullable=True)

    items = relationship(
        "PayoutRunCommissionRow", back_populates="payout_run",
        lazy="selectin", cascade="all, delete-orphan",
    )


class PayoutRunCommissionRow(Base):
    """Link row: commission included in a payout run."""
    __tablename__ = "payout_run_commissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payout_run_id = Column(String(36), ForeignKey("payout_runs.id", ondelete="CASCADE"), nullable=False)
    commission_id = Column(String(36), ForeignKey("commissions.id", ondelete="CASCADE"), nullable=False, index=True)
    # cleared when the run is approved; at most one draft link per commission
    is_draft = Column(Boolean, nullable=False, default=True)

    payout_run = relationship("PayoutRunRow", back_populates="items")
    commission = relationship("CommissionRow", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("payout_run_id", "commission_id", name="uq_run_commission"),
        Index(
            "uq_draft_run_commission", "commission_id", unique=True,
            sqlite_where=text("is_draft"), postgresql_where=text("is_draft"),
        ),
    )


class AffiliateWebhookLogRow(Base):
    """One outbound webhook attempt to an affiliate's postback URL."""
    __tablename__ = "affiliate_webhook_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    shop_id = Column(String(255), nullable=False, index=True)
    commission_id = Column(String(36), nullable=False, index=True)
    affiliate_id = Column(String(36), nullable=False, index=True)
    webhook_url = Column(String(4000), nullable=False)
    event = Column(String(20), nullable=False, default="created")
    request_method = Column(String(10), nullable=False, default="GET")
    request_params = Column(JSON, default=dict)
    status = Column(String(20), nullable=False, default="pending")
    response_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    last_attempt_at = Column(DateTime, nullable=True)
