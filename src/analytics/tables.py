"""Visitor analytics tables: one row per browsing session, one per tracked event.

Timestamps are epoch milliseconds, as reported by the storefront script.
"""
from __future__ import annotations

import time

from sqlalchemy import Column, String, Integer, BigInteger, Boolean, Text, JSON, ForeignKey, Index

from src.db.tables import Base, new_id


def now_ms() -> int:
    return int(time.time() * 1000)


class VisitorSessionRow(Base):
    """One browsing session. pages_visited only ever grows."""
    __tablename__ = "visitor_sessions"

    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(String(100), nullable=False, unique=True)
    visitor_id = Column(String(100), nullable=False, index=True)
    shop_id = Column(String(255), nullable=False, index=True)
    affiliate_id = Column(String(36), nullable=True, index=True)  # set once, never changed

    start_time = Column(BigInteger, nullable=False, default=now_ms)
    end_time = Column(BigInteger, nullable=True)
    updated_at = Column(BigInteger, nullable=False, default=now_ms)

    pages_visited = Column(JSON, nullable=False, default=list)
    entry_page = Column(String(2000), nullable=True)
    exit_page = Column(String(2000), nullable=True)
    page_views = Column(Integer, nullable=False, default=1)
    is_bounce = Column(Boolean, nullable=False, default=True)
    total_time = Column(Integer, nullable=True)  # seconds

    device_type = Column(String(20), nullable=True)
    user_agent = Column(String(1000), nullable=True)
    referrer_type = Column(String(30), nullable=True)  # direct, search, social, referral
    referrer_url = Column(Text, nullable=True)
    referrer_domain = Column(String(255), nullable=True)
    location_country = Column(String(100), nullable=True)

    landing_page_url = Column(Text, nullable=True)
    url_params = Column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_vsessions_shop_start", "shop_id", "start_time"),
        Index("ix_vsessions_shop_updated", "shop_id", "updated_at"),
    )


class VisitorEventRow(Base):
    """A tracked action (page_view, page_exit, click...). Never updated."""
    __tablename__ = "visitor_events"

    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(String(36), ForeignKey("visitor_sessions.id", ondelete="CASCADE"), nullable=False)
    visitor_id = Column(String(100), nullable=False)
    shop_id = Column(String(255), nullable=False)
    event_type = Column(String(50), nullable=False)
    page_url = Column(Text, nullable=True)
    page_path = Column(String(2000), nullable=True)
    page_title = Column(String(500), nullable=True)
    referrer = Column(Text, nullable=True)
    timestamp = Column(BigInteger, nullable=False, default=now_ms)
    event_data = Column(JSON, default=dict)

    __table_args__ = (
        Index("ix_vevents_shop_type_ts", "shop_id", "event_type", "timestamp"),
        Index("ix_vevents_session_ts", "session_id", "timestamp"),
    )
