"""Tests for admin authentication."""
from datetime import timedelta

import pytest
from sqlalchemy import update

from conftest import ADMIN_PASSWORD, SHOP, get_test_session
from src.auth import hash_password, verify_password
from src.db.tables import AdminSessionRow, utcnow


class TestPasswordHashing:
    """Verify PBKDF2 hashing round trip."""

    def test_hash_verifies(self):
        stored = hash_password("s3cret")
        assert verify_password("s3cret", stored)
        assert not verify_password("wrong", stored)

    def test_salts_differ(self):
        assert hash_password("same") != hash_password("same")

    def test_malformed_hash_rejected(self):
        assert verify_password("anything", "no-dollar-sign") is False


@pytest.mark.asyncio
async def test_login_returns_token(client, admin):
    resp = await client.post("/api/v1/auth/login", json={"email": "Owner@Demo-Shop.com", "password": ADMIN_PASSWORD})
    assert resp.status_code == 200
    data = resp.json()
    assert data["token"]
    assert data["expires_at"]
    assert data["admin"]["shop_id"] == SHOP

    me = await client.get("/api/v1/admin/affiliates", headers={"Authorization": f"Bearer {data['token']}"})
    assert me.status_code == 200


@pytest.mark.asyncio
async def test_login_wrong_password(client, admin):
    resp = await client.post("/api/v1/auth/login", json={"email": admin.email, "password": "nope"})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Invalid email or password"


@pytest.mark.asyncio
async def test_login_unknown_email(client):
    resp = await client.post("/api/v1/auth/login", json={"email": "ghost@demo-shop.com", "password": "x"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_logout_revokes_token(client, admin_headers):
    assert (await client.get("/api/v1/admin/offers", headers=admin_headers)).status_code == 200

    resp = await client.post("/api/v1/auth/logout", headers=admin_headers)
    assert resp.json() == {"success": True, "revoked": True}

    assert (await client.get("/api/v1/admin/offers", headers=admin_headers)).status_code == 401


@pytest.mark.asyncio
async def test_expired_token_rejected(client, admin_headers):
    async with get_test_session() as session:
        await session.execute(update(AdminSessionRow).values(expires_at=utcnow() - timedelta(minutes=1)))
        await session.commit()

    resp = await client.get("/api/v1/admin/offers", headers=admin_headers)
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_garbage_token_rejected(client, admin):
    resp = await client.get("/api/v1/admin/offers", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 401
