"""Affiliate-facing portal: login and the affiliate's own commissions and payouts."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth import (
    AffiliateLoginRequest,
    authenticate_affiliate,
    bearer_scheme,
    create_affiliate_session,
    require_affiliate,
    revoke_affiliate_session,
)
from src.db.affiliate_tables import AffiliateRow
from src.db.engine import get_session
from src.services.commissions import list_commissions, serialize_for_affiliate
from src.services.payouts import affiliate_payouts

router = APIRouter(prefix="/api/v1/affiliate", tags=["Affiliate portal"])
logger = logging.getLogger(__name__)


def _profile(affiliate: AffiliateRow) -> dict:
    return {
        "id": affiliate.id,
        "affiliate_number": affiliate.affiliate_number,
        "name": affiliate.name,
        "email": affiliate.email,
        "shop_id": affiliate.shop_id,
    }


@router.post("/login")
async def affiliate_login(req: AffiliateLoginRequest, session: AsyncSession = Depends(get_session)):
    """Email + password login for active affiliates; returns an opaque bearer token."""
    affiliate = await authenticate_affiliate(session, req.email, req.password, req.shop)
    portal_session = await create_affiliate_session(session, affiliate)
    logger.info("Affiliate #%d logged in (shop %s)", affiliate.affiliate_number, affiliate.shop_id)
    return {
        "success": True,
        "token": portal_session.token,
        "expires_at": portal_session.expires_at.isoformat(),
        "affiliate": _profile(affiliate),
    }


@router.post("/logout")
async def affiliate_logout(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_session),
):
    if not creds or not creds.credentials:
        raise HTTPException(401, "Unauthorized")
    revoked = await revoke_affiliate_session(session, creds.credentials)
    return {"success": True, "revoked": revoked}


@router.get("/me")
async def affiliate_me(affiliate: AffiliateRow = Depends(require_affiliate)):
    return {"affiliate": _profile(affiliate)}


@router.get("/commissions")
async def affiliate_commissions(
    limit: int = Query(100, ge=1, le=500),
    affiliate: AffiliateRow = Depends(require_affiliate),
    session: AsyncSession = Depends(get_session),
):
    rows = await list_commissions(session, affiliate.shop_id, affiliate_id=affiliate.id, limit=limit)
    return {"commissions": [serialize_for_affiliate(c) for c in rows]}


@router.get("/payouts")
async def affiliate_payout_history(
    affiliate: AffiliateRow = Depends(require_affiliate),
    session: AsyncSession = Depends(get_session),
):
    return {"payouts": await affiliate_payouts(session, affiliate)}
