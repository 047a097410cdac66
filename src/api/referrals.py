"""Public referral links: ``GET /ref/{affiliate_number}``."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.db.engine import get_session
from src.services.affiliate_redirect import handle_referral

router = APIRouter(tags=["Referrals"])
logger = logging.getLogger(__name__)


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or (request.client.host if request.client else None)


@router.get("/ref/{affiliate_number}")
async def referral_redirect(
    affiliate_number: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    """Record the click and 302 to the affiliate's landing page.

    Unknown or inactive affiliates still get redirected, just without tracking.
    """
    result = await handle_referral(
        session,
        affiliate_number,
        dict(request.query_params),
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    response = RedirectResponse(url=result.location, status_code=302)
    if result.click is not None:
        max_age = settings.REFERRAL_COOKIE_DAYS * 24 * 60 * 60
        response.set_cookie("affiliate_click_id", result.click.id, max_age=max_age, samesite="lax", path="/")
        response.set_cookie("affiliate_id", result.affiliate_id, max_age=max_age, samesite="lax", path="/")
    return response
