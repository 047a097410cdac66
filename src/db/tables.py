"""SQLAlchemy declarative base + admin account tables."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC now — all DateTime columns store naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class AdminRow(Base):
    """A merchant admin. One admin belongs to one Shopify shop."""
    __tablename__ = "admins"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(320), nullable=False, unique=True, index=True)
    password_hash = Column(String(200), nullable=False)
    shop_id = Column(String(255), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)


class AdminSessionRow(Base):
    """Opaque bearer-token session issued at login."""
    __tablename__ = "admin_sessions"

    token = Column(String(64), primary_key=True)
    admin_id = Column(String(36), ForeignKey("admins.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_admin_sessions_admin", "admin_id"),
    )
