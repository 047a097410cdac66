"""Admin and affiliate authentication — password login + opaque bearer-token sessions."""
from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.affiliate_tables import AffiliateRow, AffiliateSessionRow
from src.db.engine import get_session
from src.db.tables import AdminRow, AdminSessionRow, utcnow
from src.models.affiliate import AffiliateStatus
from config.settings import settings

# ---- Password hashing (PBKDF2, stdlib only) ----

_ITERATIONS = 260_000
_SALT_LEN = 32


def hash_password(password: str) -> str:
    salt = uuid.uuid4().hex[:_SALT_LEN]
    dk = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), _ITERATIONS)
    return f"{salt}${dk.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        salt, dk_hex = stored.split("$", 1)
    except ValueError:
        return False
    dk = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), _ITERATIONS)
    return hmac.compare_digest(dk.hex(), dk_hex)


# ---- Sessions ----

async def create_admin_session(session: AsyncSession, admin: AdminRow) -> AdminSessionRow:
    """Issue a new bearer token for ``admin``."""
    row = AdminSessionRow(
        token=secrets.token_urlsafe(32),
        admin_id=admin.id,
        expires_at=utcnow() + timedelta(hours=settings.ADMIN_SESSION_TTL_HOURS),
    )
    session.add(row)
    await session.commit()
    return row


async def revoke_admin_session(session: AsyncSession, token: str) -> bool:
    result = await session.execute(delete(AdminSessionRow).where(AdminSessionRow.token == token))
    await session.commit()
    return result.rowcount > 0


# ---- FastAPI dependency ----

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_admin(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_session),
) -> Optional[AdminRow]:
    if not creds or not creds.credentials:
        return None
    result = await session.execute(
        select(AdminRow)
        .join(AdminSessionRow, AdminSessionRow.admin_id == AdminRow.id)
        .where(
            AdminSessionRow.token == creds.credentials,
            AdminSessionRow.expires_at > utcnow(),
        )
    )
    return result.scalar_one_or_none()


async def require_admin(admin: Optional[AdminRow] = Depends(get_current_admin)) -> AdminRow:
    if not admin:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return admin


# ---- Affiliate portal ----

async def create_affiliate_session(session: AsyncSession, affiliate: AffiliateRow) -> AffiliateSessionRow:
    row = AffiliateSessionRow(
        token=secrets.token_urlsafe(32),
        affiliate_id=affiliate.id,
        expires_at=utcnow() + timedelta(hours=settings.AFFILIATE_SESSION_TTL_HOURS),
    )
    session.add(row)
    await session.commit()
    return row


async def revoke_affiliate_session(session: AsyncSession, token: str) -> bool:
    result = await session.execute(delete(AffiliateSessionRow).where(AffiliateSessionRow.token == token))
    await session.commit()
    return result.rowcount > 0


def _ensure_active(affiliate: AffiliateRow) -> None:
    if affiliate.status != AffiliateStatus.ACTIVE.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is not active. Please contact support.",
        )


async def authenticate_affiliate(
    session: AsyncSession, email: str, password: str, shop: Optional[str] = None,
) -> AffiliateRow:
    """The affiliate these credentials belong to.

    401 for unknown emails, wrong passwords and accounts without a password;
    403 once the password checks out but the affiliate isn't active.
    """
    stmt = select(AffiliateRow).where(AffiliateRow.email == email.strip().lower())
    if shop:
        stmt = stmt.where(AffiliateRow.shop_id == shop.strip().lower().replace(".myshopify.com", ""))
    candidates = (await session.execute(stmt)).scalars().all()
    affiliate = next(
        (a for a in candidates if a.password_hash and verify_password(password, a.password_hash)),
        None,
    )
    if affiliate is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
    _ensure_active(affiliate)
    return affiliate


async def get_current_affiliate(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_session),
) -> Optional[AffiliateRow]:
    if not creds or not creds.credentials:
        return None
    result = await session.execute(
        select(AffiliateRow)
        .join(AffiliateSessionRow, AffiliateSessionRow.affiliate_id == AffiliateRow.id)
        .where(
            AffiliateSessionRow.token == creds.credentials,
            AffiliateSessionRow.expires_at > utcnow(),
        )
    )
    return result.scalar_one_or_none()


async def require_affiliate(affiliate: Optional[AffiliateRow] = Depends(get_current_affiliate)) -> AffiliateRow:
    """Logged-in affiliate; suspended accounts lose portal access immediately."""
    if not affiliate:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    _ensure_active(affiliate)
    return affiliate


# ---- Request/Response models ----

class LoginRequest(BaseModel):
    email: str
    password: str


class AffiliateLoginRequest(LoginRequest):
    shop: Optional[str] = None
