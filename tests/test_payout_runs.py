"""Tests for payout runs, obligations, upcoming payouts and reports."""
from __future__ import annotations

import csv
import io
from datetime import timedelta

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

import src.services.payouts as payouts_service
from conftest import SHOP, get_test_session, make_affiliate, make_commission
from src.db.affiliate_tables import CommissionRow, PayoutRunCommissionRow, PayoutRunRow
from src.db.tables import utcnow
from src.errors import StateConflict
from src.services.payouts import approve_payout_run, group_obligations

PERIOD = {"period_start": "2026-09-01T00:00:00", "period_end": "2026-09-30T23:59:59"}


async def _statuses(*ids):
    async with get_test_session() as session:
        rows = (await session.execute(
            select(CommissionRow.id, CommissionRow.status).where(CommissionRow.id.in_(ids))
        )).all()
    return {row.id: row.status for row in rows}


async def _create_run(client, headers, ids):
    return await client.post("/api/v1/admin/payout-runs", headers=headers, json={**PERIOD, "commission_ids": ids})


# ── Obligation grouping ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_group_obligations_per_affiliate_and_currency():
    async with get_test_session() as session:
        ann = await make_affiliate(session, 1)
        bob = await make_affiliate(session, 2)
        rows = [
            await make_commission(session, ann, "approved", amount=10.0),
            await make_commission(session, ann, "approved", amount=5.55),
            await make_commission(session, ann, "approved", amount=7.0, currency="EUR"),
            await make_commission(session, bob, "eligible", amount=40.0),
        ]

    async with get_test_session() as session:
        loaded = (await session.execute(
            select(CommissionRow).where(CommissionRow.id.in_([r.id for r in rows]))
        )).scalars().all()

    obligations = group_obligations(loaded)
    summary = [(o.affiliate_id, o.currency, o.total_amount, o.commission_count) for o in obligations]
    assert summary == [
        (bob.id, "USD", 40.0, 1),
        (ann.id, "USD", 15.55, 2),
        (ann.id, "EUR", 7.0, 1),
    ]


# ── Create ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_run_with_obligations(client, admin_headers):
    async with get_test_session() as session:
        ann = await make_affiliate(session, 1, payout_method="paypal", payout_identifier="ann@pay.test")
        c1 = await make_commission(session, ann, "approved", amount=12.0)
        c2 = await make_commission(session, ann, "eligible", amount=8.0)

    resp = await _create_run(client, admin_headers, [c1.id, c2.id])
    assert resp.status_code == 201
    run = resp.json()["payout_run"]
    assert run["status"] == "draft"
    assert run["commission_count"] == 2
    assert run["total_amount"] == 20.0
    [obligation] = run["obligations"]
    assert obligation["affiliate_id"] == ann.id
    assert obligation["payout_identifier"] == "ann@pay.test"
    assert sorted(obligation["commission_ids"]) == sorted([c1.id, c2.id])


@pytest.mark.asyncio
async def test_create_run_rejects_inverted_period(client, admin_headers):
    async with get_test_session() as session:
        ann = await make_affiliate(session)
        c1 = await make_commission(session, ann, "approved")

    resp = await client.post("/api/v1/admin/payout-runs", headers=admin_headers, json={
        "period_start": "2026-09-30T00:00:00", "period_end": "2026-09-01T00:00:00", "commission_ids": [c1.id],
    })
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_create_run_requires_commissions(client, admin_headers):
    resp = await _create_run(client, admin_headers, [])
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_create_run_rejects_unpayable_commissions(client, admin_headers):
    async with get_test_session() as session:
        ann = await make_affiliate(session)
        pending = await make_commission(session, ann, "pending")
        ok = await make_commission(session, ann, "approved")

    resp = await _create_run(client, admin_headers, [pending.id, ok.id])
    assert resp.status_code == 400
    assert resp.json()["invalid_commission_ids"] == [pending.id]


@pytest.mark.asyncio
async def test_create_run_rejects_commissions_in_another_draft(client, admin_headers):
    async with get_test_session() as session:
        ann = await make_affiliate(session)
        c1 = await make_commission(session, ann, "approved")

    assert (await _create_run(client, admin_headers, [c1.id])).status_code == 201
    resp = await _create_run(client, admin_headers, [c1.id])
    assert resp.status_code == 400
    assert resp.json()["conflicting_commission_ids"] == [c1.id]


@pytest.mark.asyncio
async def test_create_run_rejects_mixed_currency_for_one_affiliate(client, admin_headers):
    async with get_test_session() as session:
        ann = await make_affiliate(session)
        usd = await make_commission(session, ann, "approved", currency="USD")
        eur = await make_commission(session, ann, "approved", currency="EUR")

    resp = await _create_run(client, admin_headers, [usd.id, eur.id])
    assert resp.status_code == 400
    assert resp.json()["mixed_currency_affiliate_ids"] == [ann.id]


# ── Approve ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_approve_pays_every_commission(client, admin_headers):
    async with get_test_session() as session:
        ann = await make_affiliate(session, 1)
        bob = await make_affiliate(session, 2)
        c1 = await make_commission(session, ann, "approved")
        c2 = await make_commission(session, bob, "eligible")

    run_id = (await _create_run(client, admin_headers, [c1.id, c2.id])).json()["payout_run"]["id"]
    resp = await client.post(f"/api/v1/admin/payout-runs/{run_id}/approve", headers=admin_headers,
                             json={"payout_reference": "BATCH-77"})
    assert resp.status_code == 200
    run = resp.json()["payout_run"]
    assert run["status"] == "approved"
    assert run["payout_reference"] == "BATCH-77"
    assert run["approved_at"] is not None
    assert await _statuses(c1.id, c2.id) == {c1.id: "paid", c2.id: "paid"}


@pytest.mark.asyncio
async def test_approve_is_all_or_nothing(client, admin_headers):
    async with get_test_session() as session:
        ann = await make_affiliate(session)
        c1 = await make_commission(session, ann, "approved")
        c2 = await make_commission(session, ann, "approved")

    run_id = (await _create_run(client, admin_headers, [c1.id, c2.id])).json()["payout_run"]["id"]

    # one commission gets refunded while the run sits in draft
    resp = await client.post("/api/v1/admin/commissions/reject", headers=admin_headers,
                             json={"commissionIds": [c2.id], "reason": "Refunded"})
    assert resp.status_code == 200

    resp = await client.post(f"/api/v1/admin/payout-runs/{run_id}/approve", headers=admin_headers)
    assert resp.status_code == 409
    assert resp.json()["invalid_commission_ids"] == [c2.id]
    assert await _statuses(c1.id, c2.id) == {c1.id: "approved", c2.id: "reversed"}

    async with get_test_session() as session:
        run = (await session.execute(select(PayoutRunRow).where(PayoutRunRow.id == run_id))).scalar_one()
    assert run.status == "draft"
    assert run.approved_at is None


@pytest.mark.asyncio
async def test_commission_moving_during_approval_pays_nothing(client, admin_headers, monkeypatch):
    async with get_test_session() as session:
        ann = await make_affiliate(session)
        c1 = await make_commission(session, ann, "approved")
        c2 = await make_commission(session, ann, "eligible")

    run_id = (await _create_run(client, admin_headers, [c1.id, c2.id])).json()["payout_run"]["id"]

    async with get_test_session() as session:
        execute = session.execute

        async def execute_with_concurrent_reversal(statement, *args, **kwargs):
            # c2 is reversed after the payable check but before the commissions update
            if getattr(statement, "is_update", False) and statement.table.name == "commissions":
                await execute(update(CommissionRow).where(CommissionRow.id == c2.id).values(status="reversed"))
            return await execute(statement, *args, **kwargs)

        monkeypatch.setattr(session, "execute", execute_with_concurrent_reversal)
        with pytest.raises(StateConflict) as exc_info:
            await approve_payout_run(session, SHOP, run_id)

    assert exc_info.value.details == {"payout_run_id": run_id}
    assert await _statuses(c1.id, c2.id) == {c1.id: "approved", c2.id: "eligible"}
    async with get_test_session() as session:
        run = (await session.execute(select(PayoutRunRow).where(PayoutRunRow.id == run_id))).scalar_one()
    assert run.status == "draft"
    assert run.approved_at is None


@pytest.mark.asyncio
async def test_draft_links_are_unique_per_commission(client, admin_headers):
    async with get_test_session() as session:
        ann = await make_affiliate(session)
        c1 = await make_commission(session, ann, "approved")

    assert (await _create_run(client, admin_headers, [c1.id])).status_code == 201

    async with get_test_session() as session:
        rival = PayoutRunRow(shop_id=SHOP, period_start=utcnow(), period_end=utcnow(), status="draft")
        rival.items = [PayoutRunCommissionRow(commission_id=c1.id)]
        session.add(rival)
        with pytest.raises(IntegrityError):
            await session.commit()


@pytest.mark.asyncio
async def test_concurrent_draft_of_same_commission_is_rejected(client, admin_headers, monkeypatch):
    async with get_test_session() as session:
        ann = await make_affiliate(session)
        c1 = await make_commission(session, ann, "approved")

    assert (await _create_run(client, admin_headers, [c1.id])).status_code == 201

    # the second request's pre-check runs before the first run is committed
    lookups = []

    async def stale_then_real(db, shop_id, ids):
        lookups.append(ids)
        if len(lookups) == 1:
            return set()
        return await real_lookup(db, shop_id, ids)

    real_lookup = payouts_service._draft_run_commission_ids
    monkeypatch.setattr(payouts_service, "_draft_run_commission_ids", stale_then_real)

    resp = await _create_run(client, admin_headers, [c1.id])
    assert resp.status_code == 400
    assert resp.json()["conflicting_commission_ids"] == [c1.id]
    assert len(lookups) == 2

    async with get_test_session() as session:
        runs = (await session.execute(select(PayoutRunRow))).scalars().all()
    assert len(runs) == 1


@pytest.mark.asyncio
async def test_approved_run_releases_draft_links(client, admin_headers):
    async with get_test_session() as session:
        ann = await make_affiliate(session)
        c1 = await make_commission(session, ann, "approved")

    run_id = (await _create_run(client, admin_headers, [c1.id])).json()["payout_run"]["id"]
    await client.post(f"/api/v1/admin/payout-runs/{run_id}/approve", headers=admin_headers)

    async with get_test_session() as session:
        [link] = (await session.execute(
            select(PayoutRunCommissionRow).where(PayoutRunCommissionRow.payout_run_id == run_id)
        )).scalars().all()
    assert link.is_draft is False


@pytest.mark.asyncio
async def test_approve_twice_conflicts(client, admin_headers):
    async with get_test_session() as session:
        ann = await make_affiliate(session)
        c1 = await make_commission(session, ann, "approved")

    run_id = (await _create_run(client, admin_headers, [c1.id])).json()["payout_run"]["id"]
    assert (await client.post(f"/api/v1/admin/payout-runs/{run_id}/approve", headers=admin_headers)).status_code == 200
    resp = await client.post(f"/api/v1/admin/payout-runs/{run_id}/approve", headers=admin_headers)
    assert resp.status_code == 409
    assert resp.json()["status"] == "approved"


@pytest.mark.asyncio
async def test_approve_unknown_run(client, admin_headers):
    resp = await client.post("/api/v1/admin/payout-runs/missing/approve", headers=admin_headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_list_and_get_runs(client, admin_headers):
    async with get_test_session() as session:
        ann = await make_affiliate(session)
        c1 = await make_commission(session, ann, "approved")

    run_id = (await _create_run(client, admin_headers, [c1.id])).json()["payout_run"]["id"]
    listing = await client.get("/api/v1/admin/payout-runs?status=draft", headers=admin_headers)
    assert [r["id"] for r in listing.json()["payout_runs"]] == [run_id]
    detail = await client.get(f"/api/v1/admin/payout-runs/{run_id}", headers=admin_headers)
    assert detail.json()["payout_run"]["obligations"][0]["commission_count"] == 1


# ── Upcoming & reports ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_upcoming_excludes_drafted_and_future(client, admin_headers):
    past = utcnow() - timedelta(days=1)
    async with get_test_session() as session:
        ann = await make_affiliate(session)
        due = await make_commission(session, ann, "approved", amount=10.0, eligible_date=past)
        drafted = await make_commission(session, ann, "approved", amount=99.0, eligible_date=past)
        await make_commission(session, ann, "approved", amount=50.0, eligible_date=utcnow() + timedelta(days=10))
        await make_commission(session, ann, "pending", amount=70.0, eligible_date=past)

    await _create_run(client, admin_headers, [drafted.id])

    resp = await client.get("/api/v1/admin/payouts/upcoming", headers=admin_headers)
    assert resp.status_code == 200
    [obligation] = resp.json()["obligations"]
    assert obligation["commission_ids"] == [due.id]
    assert obligation["total_amount"] == 10.0


@pytest.mark.asyncio
async def test_report_json_and_csv(client, admin_headers):
    async with get_test_session() as session:
        ann = await make_affiliate(session, 1, name='Ann "The Closer" Lee')
        c1 = await make_commission(session, ann, "approved", amount=30.0)

    run_id = (await _create_run(client, admin_headers, [c1.id])).json()["payout_run"]["id"]
    await client.post(f"/api/v1/admin/payout-runs/{run_id}/approve", headers=admin_headers,
                      json={"payout_reference": "REF-1"})

    resp = await client.get("/api/v1/admin/payouts/reports", headers=admin_headers)
    report = resp.json()
    assert report["summary"]["total_payout_runs"] == 1
    assert report["summary"]["totals_by_currency"] == {"USD": 30.0}
    assert report["payouts"][0]["payout_reference"] == "REF-1"

    resp = await client.get("/api/v1/admin/payouts/reports?format=csv", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert "attachment" in resp.headers["content-disposition"]
    rows = list(csv.DictReader(io.StringIO(resp.text)))
    assert len(rows) == 1
    assert rows[0]["affiliate_name"] == 'Ann "The Closer" Lee'
    assert rows[0]["total_amount"] == "30.0"


@pytest.mark.asyncio
async def test_report_filters_by_affiliate(client, admin_headers):
    async with get_test_session() as session:
        ann = await make_affiliate(session, 1)
        bob = await make_affiliate(session, 2)
        c1 = await make_commission(session, ann, "approved")
        c2 = await make_commission(session, bob, "approved")

    run_id = (await _create_run(client, admin_headers, [c1.id, c2.id])).json()["payout_run"]["id"]
    await client.post(f"/api/v1/admin/payout-runs/{run_id}/approve", headers=admin_headers)

    resp = await client.get(f"/api/v1/admin/payouts/reports?affiliate_id={bob.id}", headers=admin_headers)
    assert [row["affiliate_id"] for row in resp.json()["payouts"]] == [bob.id]


@pytest.mark.asyncio
async def test_report_rejects_unknown_format(client, admin_headers):
    resp = await client.get("/api/v1/admin/payouts/reports?format=xml", headers=admin_headers)
    assert resp.status_code == 400
