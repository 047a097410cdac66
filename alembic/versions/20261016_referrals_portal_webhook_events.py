"""Referral clicks, affiliate portal logins, webhook events, one draft run per commission.

Revision ID: 8b2e4d6f1a93
Revises: 3f9c1a2b7d10
Create Date: 2026-10-16
"""
from alembic import op
import sqlalchemy as sa

revision = "8b2e4d6f1a93"
down_revision = "3f9c1a2b7d10"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("affiliates", sa.Column("password_hash", sa.String(200)))

    op.create_table(
        "affiliate_sessions",
        sa.Column("token", sa.String(64), primary_key=True),
        sa.Column("affiliate_id", sa.String(36), sa.ForeignKey("affiliates.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("created_at", sa.DateTime),
        sa.Column("expires_at", sa.DateTime, nullable=False),
    )
    op.create_table(
        "affiliate_clicks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("shop_id", sa.String(255), nullable=False, index=True),
        sa.Column("affiliate_id", sa.String(36), sa.ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False),
        sa.Column("landing_url", sa.Text, nullable=False),
        sa.Column("ip_hash", sa.String(64)),
        sa.Column("user_agent_hash", sa.String(64)),
        sa.Column("url_params", sa.JSON),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_clicks_affiliate_created", "affiliate_clicks", ["affiliate_id", "created_at"])

    op.add_column(
        "affiliate_webhook_logs",
        sa.Column("event", sa.String(20), nullable=False, server_default="created"),
    )

    op.add_column(
        "payout_run_commissions",
        sa.Column("is_draft", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.execute(
        "UPDATE payout_run_commissions SET is_draft = false WHERE payout_run_id IN "
        "(SELECT id FROM payout_runs WHERE status <> 'draft')"
    )
    op.create_index(
        "uq_draft_run_commission", "payout_run_commissions", ["commission_id"], unique=True,
        sqlite_where=sa.text("is_draft"), postgresql_where=sa.text("is_draft"),
    )


def downgrade() -> None:
    op.drop_index("uq_draft_run_commission", table_name="payout_run_commissions")
    op.drop_column("payout_run_commissions", "is_draft")
    op.drop_column("affiliate_webhook_logs", "event")
    op.drop_index("ix_clicks_affiliate_created", table_name="affiliate_clicks")
    op.drop_table("affiliate_clicks")
    op.drop_table("affiliate_sessions")
    op.drop_column("affiliates", "password_hash")
