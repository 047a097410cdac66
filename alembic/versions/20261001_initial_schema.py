"""Initial schema: admins, affiliates, offers, commissions, payouts, visitor analytics.

Revision ID: 3f9c1a2b7d10
Revises:
Create Date: 2026-10-01
"""
from alembic import op
import sqlalchemy as sa

revision = "3f9c1a2b7d10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "admins",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True, index=True),
        sa.Column("password_hash", sa.String(200), nullable=False),
        sa.Column("shop_id", sa.String(255), nullable=False, index=True),
        sa.Column("created_at", sa.DateTime),
    )
    op.create_table(
        "admin_sessions",
        sa.Column("token", sa.String(64), primary_key=True),
        sa.Column("admin_id", sa.String(36), sa.ForeignKey("admins.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime),
        sa.Column("expires_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_admin_sessions_admin", "admin_sessions", ["admin_id"])

    op.create_table(
        "offers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("shop_id", sa.String(255), nullable=False, index=True),
        sa.Column("offer_number", sa.Integer, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("commission_type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Float, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("attribution_window_days", sa.Integer, nullable=False),
        sa.Column("selling_subscriptions", sa.String(20), nullable=False),
        sa.Column("subscription_max_payments", sa.Integer),
        sa.Column("subscription_rebill_commission_type", sa.String(20)),
        sa.Column("subscription_rebill_commission_value", sa.Float),
        sa.Column("is_public", sa.Boolean, nullable=False),
        sa.Column("is_private", sa.Boolean, nullable=False),
        sa.Column("created_at", sa.DateTime),
        sa.Column("updated_at", sa.DateTime),
        sa.UniqueConstraint("shop_id", "offer_number", name="uq_offer_number"),
    )
    op.create_table(
        "affiliates",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("shop_id", sa.String(255), nullable=False, index=True),
        sa.Column("affiliate_number", sa.Integer, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(120)),
        sa.Column("last_name", sa.String(120)),
        sa.Column("company", sa.String(255)),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("payout_method", sa.String(50)),
        sa.Column("payout_identifier", sa.String(320)),
        sa.Column("payout_terms_days", sa.Integer, nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("offer_id", sa.String(36), sa.ForeignKey("offers.id", ondelete="SET NULL")),
        sa.Column("webhook_url", sa.String(2000)),
        sa.Column("webhook_parameter_mapping", sa.JSON),
        sa.Column("redirect_base_url", sa.String(2000)),
        sa.Column("created_at", sa.DateTime),
        sa.Column("updated_at", sa.DateTime),
        sa.UniqueConstraint("shop_id", "affiliate_number", name="uq_affiliate_number"),
        sa.UniqueConstraint("shop_id", "email", name="uq_affiliate_email"),
    )
    op.create_table(
        "commissions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("shop_id", sa.String(255), nullable=False, index=True),
        sa.Column("affiliate_id", sa.String(36), sa.ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False),
        sa.Column("order_id", sa.String(100), nullable=False),
        sa.Column("order_number", sa.String(100)),
        sa.Column("customer_email", sa.String(320)),
        sa.Column("amount", sa.Float, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, index=True),
        sa.Column("eligible_date", sa.DateTime, nullable=False),
        sa.Column("attribution_type", sa.String(30)),
        sa.Column("subscription_payment_number", sa.Integer),
        sa.Column("offer_snapshot", sa.JSON),
        sa.Column("reversal_reason", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime),
    )
    op.create_index("ix_commissions_shop_status", "commissions", ["shop_id", "status"])
    op.create_index("ix_commissions_affiliate_status", "commissions", ["affiliate_id", "status"])

    op.create_table(
        "fraud_flags",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("shop_id", sa.String(255), nullable=False, index=True),
        sa.Column("commission_id", sa.String(36), sa.ForeignKey("commissions.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("flag_type", sa.String(50), nullable=False),
        sa.Column("score", sa.Integer, nullable=False),
        sa.Column("reason", sa.Text),
        sa.Column("resolved", sa.Boolean, nullable=False),
        sa.Column("resolved_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime),
    )
    op.create_table(
        "payout_runs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("shop_id", sa.String(255), nullable=False, index=True),
        sa.Column("period_start", sa.DateTime, nullable=False),
        sa.Column("period_end", sa.DateTime, nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("payout_reference", sa.String(255)),
        sa.Column("created_at", sa.DateTime),
        sa.Column("updated_at", sa.DateTime),
        sa.Column("approved_at", sa.DateTime),
    )
    op.create_table(
        "payout_run_commissions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("payout_run_id", sa.String(36), sa.ForeignKey("payout_runs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("commission_id", sa.String(36), sa.ForeignKey("commissions.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.UniqueConstraint("payout_run_id", "commission_id", name="uq_run_commission"),
    )
    op.create_table(
        "affiliate_webhook_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("shop_id", sa.String(255), nullable=False, index=True),
        sa.Column("commission_id", sa.String(36), nullable=False, index=True),
        sa.Column("affiliate_id", sa.String(36), nullable=False, index=True),
        sa.Column("webhook_url", sa.String(4000), nullable=False),
        sa.Column("request_method", sa.String(10), nullable=False),
        sa.Column("request_params", sa.JSON),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("response_code", sa.Integer),
        sa.Column("response_body", sa.Text),
        sa.Column("error_message", sa.Text),
        sa.Column("created_at", sa.DateTime),
        sa.Column("last_attempt_at", sa.DateTime),
    )

    op.create_table(
        "visitor_sessions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("session_id", sa.String(100), nullable=False, unique=True),
        sa.Column("visitor_id", sa.String(100), nullable=False, index=True),
        sa.Column("shop_id", sa.String(255), nullable=False, index=True),
        sa.Column("affiliate_id", sa.String(36), index=True),
        sa.Column("start_time", sa.BigInteger, nullable=False),
        sa.Column("end_time", sa.BigInteger),
        sa.Column("updated_at", sa.BigInteger, nullable=False),
        sa.Column("pages_visited", sa.JSON, nullable=False),
        sa.Column("entry_page", sa.String(2000)),
        sa.Column("exit_page", sa.String(2000)),
        sa.Column("page_views", sa.Integer, nullable=False),
        sa.Column("is_bounce", sa.Boolean, nullable=False),
        sa.Column("total_time", sa.Integer),
        sa.Column("device_type", sa.String(20)),
        sa.Column("user_agent", sa.String(1000)),
        sa.Column("referrer_type", sa.String(30)),
        sa.Column("referrer_url", sa.Text),
        sa.Column("referrer_domain", sa.String(255)),
        sa.Column("location_country", sa.String(100)),
        sa.Column("landing_page_url", sa.Text),
        sa.Column("url_params", sa.JSON),
    )
    op.create_index("ix_vsessions_shop_start", "visitor_sessions", ["shop_id", "start_time"])
    op.create_index("ix_vsessions_shop_updated", "visitor_sessions", ["shop_id", "updated_at"])

    op.create_table(
        "visitor_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("session_id", sa.String(36), sa.ForeignKey("visitor_sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("visitor_id", sa.String(100), nullable=False),
        sa.Column("shop_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("page_url", sa.Text),
        sa.Column("page_path", sa.String(2000)),
        sa.Column("page_title", sa.String(500)),
        sa.Column("referrer", sa.Text),
        sa.Column("timestamp", sa.BigInteger, nullable=False),
        sa.Column("event_data", sa.JSON),
    )
    op.create_index("ix_vevents_shop_type_ts", "visitor_events", ["shop_id", "event_type", "timestamp"])
    op.create_index("ix_vevents_session_ts", "visitor_events", ["session_id", "timestamp"])


def downgrade() -> None:
    op.drop_table("visitor_events")
    op.drop_table("visitor_sessions")
    op.drop_table("affiliate_webhook_logs")
    op.drop_table("payout_run_commissions")
    op.drop_table("payout_runs")
    op.drop_table("fraud_flags")
    op.drop_table("commissions")
    op.drop_table("affiliates")
    op.drop_table("offers")
    op.drop_table("admin_sessions")
    op.drop_table("admins")
