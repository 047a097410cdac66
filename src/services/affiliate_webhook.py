"""
Affiliate postback webhooks.

Each affiliate may configure a ``webhook_url`` and a parameter mapping. A
mapping entry is either ``{"type": "fixed", "value": "abc"}`` (sent as-is) or
``{"type": "dynamic", "value": "<field>"}`` (looked up in WEBHOOK_FIELDS at
delivery time). Older rows store a bare field name, which counts as dynamic.

``{name}`` placeholders in the URL are substituted in place; mapped names that
don't appear as placeholders are appended as query parameters.

Postbacks fire when a commission is created, approved or paid, and on demand
from the admin API. The triggering event is available as the ``event`` field.

Delivery is a single GET. Every attempt is written to affiliate_webhook_logs
and failures are logged, never raised.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Optional
from urllib.parse import parse_qsl, quote, urlencode, urlsplit

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.db import engine as db_engine
from src.db.affiliate_tables import AffiliateWebhookLogRow, CommissionRow
from src.db.tables import utcnow
from src.errors import NotFoundError, ValidationFailed
from src.models.affiliate import WebhookEvent, WebhookLogStatus

logger = logging.getLogger(__name__)

WEBHOOK_FIELDS = {
    "event": "Event (created, approved, paid, manual)",
    "commission_id": "Commission ID",
    "commission_amount": "Commission Amount",
    "commission_currency": "Commission Currency",
    "commission_status": "Commission Status",
    "order_id": "Order ID",
    "order_number": "Order Number",
    "order_date": "Order Date",
    "customer_email": "Customer Email",
    "affiliate_id": "Affiliate ID (internal)",
    "affiliate_number": "Affiliate Number",
    "affiliate_name": "Affiliate Name",
    "affiliate_email": "Affiliate Email",
    "offer_id": "Offer ID",
    "offer_name": "Offer Name",
}

MAX_RESPONSE_BODY = 1000
_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")


def field_values(commission: CommissionRow, event: str = WebhookEvent.CREATED.value) -> dict[str, str]:
    affiliate = commission.affiliate
    offer = affiliate.offer if affiliate else None
    return {
        "event": event,
        "commission_id": commission.id,
        "commission_amount": f"{float(commission.amount):.2f}",
        "commission_currency": commission.currency,
        "commission_status": commission.status,
        "order_id": commission.order_id,
        "order_number": commission.order_number or "",
        "order_date": commission.created_at.isoformat() if commission.created_at else "",
        "customer_email": commission.customer_email or "",
        "affiliate_id": commission.affiliate_id,
        "affiliate_number": str(affiliate.affiliate_number) if affiliate else "",
        "affiliate_name": affiliate.name if affiliate else "",
        "affiliate_email": affiliate.email if affiliate else "",
        "offer_id": offer.id if offer else "",
        "offer_name": offer.name if offer else "",
    }


def resolve_mapping(entry: Any, values: dict[str, str]) -> Optional[str]:
    """Value for one mapping entry, or None if it can't be resolved."""
    if isinstance(entry, str):
        return values.get(entry)
    if isinstance(entry, dict) and "type" in entry and "value" in entry:
        if entry["type"] == "fixed":
            return str(entry["value"])
        if entry["type"] == "dynamic":
            return values.get(str(entry["value"]))
    return None


def build_webhook_url(template: str, mapping: Optional[dict], values: dict[str, str]) -> str:
    mapping = mapping or {}
    url = template
    substituted: set[str] = set()

    for name in set(_PLACEHOLDER.findall(template)):
        if name not in mapping:
            continue
        value = resolve_mapping(mapping[name], values)
        if value is None:
            continue
        url = url.replace("{%s}" % name, quote(value, safe=""))
        substituted.add(name)

    extra = []
    for name, entry in mapping.items():
        if name in substituted or "{%s}" % name in url:
            continue
        value = resolve_mapping(entry, values)
        if value is not None:
            extra.append((name, value))
    if extra:
        url += ("&" if "?" in url else "?") + urlencode(extra)
    return url


def is_blocked_host(url: str) -> bool:
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return False
    return host in settings.WEBHOOK_BLOCKED_HOSTS


def _request_params(url: str) -> dict[str, str]:
    try:
        return dict(parse_qsl(urlsplit(url).query, keep_blank_values=True))
    except ValueError:
        return {}


async def send_webhook(
    db: AsyncSession,
    commission: CommissionRow,
    client: Optional[httpx.AsyncClient] = None,
    event: str = WebhookEvent.CREATED.value,
) -> Optional[AffiliateWebhookLogRow]:
    """Fire the affiliate's postback for ``commission``.

    Returns the log row for the attempt, or None when no webhook is configured.
    """
    affiliate = commission.affiliate
    if affiliate is None or not affiliate.webhook_url:
        return None

    url = build_webhook_url(
        affiliate.webhook_url, affiliate.webhook_parameter_mapping, field_values(commission, event),
    )
    log = AffiliateWebhookLogRow(
        shop_id=commission.shop_id,
        commission_id=commission.id,
        affiliate_id=affiliate.id,
        webhook_url=url,
        event=event,
        request_method="GET",
        request_params=_request_params(url),
        status=WebhookLogStatus.PENDING.value,
    )
    db.add(log)

    if is_blocked_host(url):
        log.status = WebhookLogStatus.FAILED.value
        log.error_message = "Skipped: webhook host is blocked"
        log.last_attempt_at = utcnow()
        await db.commit()
        logger.warning("Skipping webhook for affiliate %s: blocked host in %s", affiliate.id, url)
        return log

    await db.commit()

    success = False
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS) as own_client:
                resp = await own_client.get(url, headers={"User-Agent": settings.WEBHOOK_USER_AGENT})
        else:
            resp = await client.get(url, headers={"User-Agent": settings.WEBHOOK_USER_AGENT})
        body = resp.text
        if len(body) > MAX_RESPONSE_BODY:
            body = body[:MAX_RESPONSE_BODY] + "... (truncated)"
        success = resp.is_success
        log.response_code = resp.status_code
        log.response_body = body
        if not success:
            log.error_message = f"HTTP {resp.status_code}: {body[:200] or 'No response body'}"
    except httpx.TimeoutException:
        log.error_message = f"Request timeout ({settings.WEBHOOK_TIMEOUT_SECONDS:g}s)"
    except httpx.HTTPError as exc:
        log.error_message = str(exc) or exc.__class__.__name__

    log.status = WebhookLogStatus.SUCCESS.value if success else WebhookLogStatus.FAILED.value
    log.last_attempt_at = utcnow()
    await db.commit()

    if success:
        logger.info("Webhook (%s) delivered for commission %s (HTTP %s)", event, commission.id, log.response_code)
    else:
        logger.warning("Webhook (%s) failed for commission %s: %s", event, commission.id, log.error_message)
    return log


async def deliver_commission_webhook(commission_id: str, event: str = WebhookEvent.CREATED.value) -> bool:
    """Background-task entry point: open a fresh session and fire the webhook."""
    async with db_engine.async_session() as db:
        commission = (await db.execute(
            select(CommissionRow).where(CommissionRow.id == commission_id)
        )).scalar_one_or_none()
        if commission is None:
            logger.warning("Webhook skipped: commission %s no longer exists", commission_id)
            return False
        log = await send_webhook(db, commission, event=event)
        return log is not None and log.status == WebhookLogStatus.SUCCESS.value


async def deliver_commission_webhooks(commission_ids: list[str], event: str) -> int:
    """Fire ``event`` for each commission in turn. Returns how many were delivered."""
    delivered = 0
    for commission_id in commission_ids:
        if await deliver_commission_webhook(commission_id, event):
            delivered += 1
    return delivered


async def refire_webhook(
    db: AsyncSession,
    shop_id: str,
    commission_id: str,
    client: Optional[httpx.AsyncClient] = None,
) -> AffiliateWebhookLogRow:
    """Fire a commission's postback again from the admin API and return the attempt's log."""
    commission = (await db.execute(
        select(CommissionRow).where(CommissionRow.id == commission_id, CommissionRow.shop_id == shop_id)
    )).scalar_one_or_none()
    if commission is None:
        raise NotFoundError("Commission not found", details={"commission_id": commission_id})
    if commission.affiliate is None or not commission.affiliate.webhook_url:
        raise ValidationFailed(
            "Affiliate does not have a webhook URL configured",
            details={"commission_id": commission_id},
        )
    return await send_webhook(db, commission, client=client, event=WebhookEvent.MANUAL.value)


async def list_webhook_logs(db: AsyncSession, shop_id: str, commission_id: str) -> list[AffiliateWebhookLogRow]:
    return list((await db.execute(
        select(AffiliateWebhookLogRow)
        .where(
            AffiliateWebhookLogRow.shop_id == shop_id,
            AffiliateWebhookLogRow.commission_id == commission_id,
        )
        .order_by(AffiliateWebhookLogRow.created_at.desc())
    )).scalars().all())


def serialize_log(log: AffiliateWebhookLogRow) -> dict:
    return {
        "id": log.id,
        "commission_id": log.commission_id,
        "affiliate_id": log.affiliate_id,
        "event": log.event,
        "webhook_url": log.webhook_url,
        "request_method": log.request_method,
        "request_params": log.request_params or {},
        "status": log.status,
        "response_code": log.response_code,
        "response_body": log.response_body,
        "error_message": log.error_message,
        "created_at": log.created_at.isoformat() if log.created_at else None,
        "last_attempt_at": log.last_attempt_at.isoformat() if log.last_attempt_at else None,
    }
