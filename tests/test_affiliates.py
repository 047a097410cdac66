"""Tests for affiliate and offer management."""
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import get_test_session, make_affiliate, make_commission, make_offer
from src.db.affiliate_tables import CommissionRow
from src.db.tables import utcnow


async def _eligible_date(commission_id):
    async with get_test_session() as session:
        return (await session.execute(
            select(CommissionRow.eligible_date).where(CommissionRow.id == commission_id)
        )).scalar_one()


@pytest.mark.asyncio
async def test_create_affiliates_numbers_sequentially(client, admin_headers):
    first = await client.post("/api/v1/admin/affiliates", headers=admin_headers,
                              json={"email": "Ann@Partners.test", "first_name": "Ann", "last_name": "Lee"})
    second = await client.post("/api/v1/admin/affiliates", headers=admin_headers,
                               json={"email": "bob@partners.test", "payout_terms_days": 14})
    assert first.status_code == 201
    ann = first.json()["affiliate"]
    bob = second.json()["affiliate"]
    assert ann["affiliate_number"] == 1
    assert ann["email"] == "ann@partners.test"
    assert ann["name"] == "Ann Lee"
    assert ann["payout_terms_days"] == 30
    assert ann["status"] == "active"
    assert bob["affiliate_number"] == 2
    assert bob["name"] == "bob@partners.test"
    assert bob["payout_terms_days"] == 14


@pytest.mark.asyncio
async def test_duplicate_email_conflicts(client, admin_headers):
    await client.post("/api/v1/admin/affiliates", headers=admin_headers, json={"email": "ann@partners.test"})
    resp = await client.post("/api/v1/admin/affiliates", headers=admin_headers, json={"email": "ANN@partners.test"})
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_create_with_unknown_offer(client, admin_headers):
    resp = await client.post("/api/v1/admin/affiliates", headers=admin_headers,
                             json={"email": "ann@partners.test", "offer_id": "nope"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_detail_and_list(client, admin_headers):
    async with get_test_session() as session:
        offer = await make_offer(session)
        ann = await make_affiliate(session, 1, offer_id=offer.id)
        await make_affiliate(session, 2, status="suspended")

    detail = await client.get(f"/api/v1/admin/affiliates/{ann.id}", headers=admin_headers)
    assert detail.json()["affiliate"]["offer"]["id"] == offer.id

    active = await client.get("/api/v1/admin/affiliates?status=active", headers=admin_headers)
    assert [a["affiliate_number"] for a in active.json()["affiliates"]] == [1]

    missing = await client.get("/api/v1/admin/affiliates/nope", headers=admin_headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_terms_change_requires_explicit_choice(client, admin_headers):
    async with get_test_session() as session:
        ann = await make_affiliate(session, payout_terms_days=30)

    resp = await client.patch(f"/api/v1/admin/affiliates/{ann.id}", headers=admin_headers,
                              json={"payout_terms_days": 7})
    assert resp.status_code == 400
    assert resp.json()["requires_confirmation"] is True

    # same terms is not a change
    resp = await client.patch(f"/api/v1/admin/affiliates/{ann.id}", headers=admin_headers,
                              json={"payout_terms_days": 30, "company": "Lee Media"})
    assert resp.status_code == 200
    assert resp.json()["affiliate"]["company"] == "Lee Media"


@pytest.mark.asyncio
async def test_terms_change_recalculates_open_commissions(client, admin_headers):
    created = utcnow() - timedelta(days=3)
    async with get_test_session() as session:
        ann = await make_affiliate(session, payout_terms_days=30)
        pending = await make_commission(session, ann, "pending", created_at=created,
                                        eligible_date=created + timedelta(days=30))
        paid = await make_commission(session, ann, "paid", created_at=created,
                                     eligible_date=created + timedelta(days=30))

    resp = await client.patch(f"/api/v1/admin/affiliates/{ann.id}", headers=admin_headers,
                              json={"payout_terms_days": 7, "recalculate_eligible_dates": True})
    assert resp.status_code == 200
    assert resp.json()["recalculated_count"] == 1
    assert resp.json()["affiliate"]["payout_terms_days"] == 7
    assert await _eligible_date(pending.id) == created + timedelta(days=7)
    assert await _eligible_date(paid.id) == created + timedelta(days=30)


@pytest.mark.asyncio
async def test_terms_change_for_future_only(client, admin_headers):
    created = utcnow() - timedelta(days=3)
    async with get_test_session() as session:
        ann = await make_affiliate(session, payout_terms_days=30)
        pending = await make_commission(session, ann, "pending", created_at=created,
                                        eligible_date=created + timedelta(days=30))

    resp = await client.patch(f"/api/v1/admin/affiliates/{ann.id}", headers=admin_headers,
                              json={"payout_terms_days": 7, "recalculate_eligible_dates": False})
    assert resp.status_code == 200
    assert "recalculated_count" not in resp.json()
    assert resp.json()["affiliate"]["payout_terms_days"] == 7
    assert await _eligible_date(pending.id) == created + timedelta(days=30)


@pytest.mark.asyncio
async def test_email_change_conflict(client, admin_headers):
    async with get_test_session() as session:
        ann = await make_affiliate(session, 1)
        bob = await make_affiliate(session, 2)

    resp = await client.patch(f"/api/v1/admin/affiliates/{bob.id}", headers=admin_headers,
                              json={"email": ann.email})
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_name_part_edit_keeps_explicit_display_name(client, admin_headers):
    created = await client.post("/api/v1/admin/affiliates", headers=admin_headers, json={
        "email": "ann@partners.test", "name": "Acme Partners", "first_name": "Ann", "last_name": "Lee",
    })
    affiliate_id = created.json()["affiliate"]["id"]

    resp = await client.patch(f"/api/v1/admin/affiliates/{affiliate_id}", headers=admin_headers,
                              json={"first_name": "Anna"})
    assert resp.status_code == 200
    body = resp.json()["affiliate"]
    assert body["first_name"] == "Anna"
    assert body["name"] == "Acme Partners"


@pytest.mark.asyncio
async def test_derived_display_name_follows_name_parts(client, admin_headers):
    created = await client.post("/api/v1/admin/affiliates", headers=admin_headers, json={
        "email": "ann@partners.test", "first_name": "Ann", "last_name": "Lee",
    })
    affiliate_id = created.json()["affiliate"]["id"]

    resp = await client.patch(f"/api/v1/admin/affiliates/{affiliate_id}", headers=admin_headers,
                              json={"first_name": "Anna"})
    assert resp.json()["affiliate"]["name"] == "Anna Lee"

    resp = await client.patch(f"/api/v1/admin/affiliates/{affiliate_id}", headers=admin_headers,
                              json={"name": "Lee Media"})
    assert resp.json()["affiliate"]["name"] == "Lee Media"


@pytest.mark.asyncio
async def test_offer_numbering_and_rebill_fields(client, admin_headers):
    plain = await client.post("/api/v1/admin/offers", headers=admin_headers, json={
        "name": "Standard", "amount": 10,
        "subscription_max_payments": 6, "subscription_rebill_commission_value": 2,
    })
    tiered = await client.post("/api/v1/admin/offers", headers=admin_headers, json={
        "name": "Subscriptions", "commission_type": "flat_rate", "amount": 20, "currency": "eur",
        "selling_subscriptions": "credit_first_only", "subscription_max_payments": 6,
        "subscription_rebill_commission_type": "percentage", "subscription_rebill_commission_value": 5,
    })
    assert plain.status_code == 201
    plain, tiered = plain.json()["offer"], tiered.json()["offer"]

    assert plain["offer_number"] == 1
    assert plain["subscription_max_payments"] is None
    assert plain["subscription_rebill_commission_value"] is None

    assert tiered["offer_number"] == 2
    assert tiered["currency"] == "EUR"
    assert tiered["subscription_max_payments"] == 6
    assert tiered["subscription_rebill_commission_type"] == "percentage"

    listing = await client.get("/api/v1/admin/offers", headers=admin_headers)
    assert [o["name"] for o in listing.json()["offers"]] == ["Standard", "Subscriptions"]


@pytest.mark.asyncio
async def test_invalid_offer_payload(client, admin_headers):
    resp = await client.post("/api/v1/admin/offers", headers=admin_headers,
                             json={"name": "Bad", "amount": -1})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_webhook_fields(client, admin_headers):
    resp = await client.get("/api/v1/admin/affiliates/webhook-fields", headers=admin_headers)
    keys = [f["key"] for f in resp.json()["fields"]]
    assert "commission_amount" in keys
    assert "order_id" in keys
