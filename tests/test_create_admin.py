"""Tests for the admin bootstrap script."""
import pytest

from scripts.create_admin import create_admin
from src.auth import verify_password


@pytest.mark.asyncio
async def test_create_then_reset(client):
    admin, created = await create_admin("Boss@Shop.test", "first-pass", "my-store.myshopify.com")
    assert created is True
    assert admin.email == "boss@shop.test"
    assert admin.shop_id == "my-store"

    again, created = await create_admin("boss@shop.test", "second-pass", "my-store")
    assert created is False
    assert again.id == admin.id
    assert verify_password("second-pass", again.password_hash)

    resp = await client.post("/api/v1/auth/login", json={"email": "boss@shop.test", "password": "second-pass"})
    assert resp.status_code == 200
    assert resp.json()["admin"]["shop_id"] == "my-store"
