#!/usr/bin/env python3
"""Create (or reset the password of) a dashboard admin.

Usage:
  python scripts/create_admin.py <email> <password> <shop>

``shop`` may be given with or without the ``.myshopify.com`` suffix.
"""
import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from src.analytics.ingest import shop_id_from_domain
from src.auth import hash_password
from src.db import engine as db_engine
from src.db.tables import AdminRow, Base


async def create_admin(email: str, password: str, shop: str) -> tuple[AdminRow, bool]:
    """Returns (admin, created). An existing admin keeps its id and gets the new password."""
    email = email.strip().lower()
    async with db_engine.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with db_engine.async_session() as session:
        admin = (await session.execute(select(AdminRow).where(AdminRow.email == email))).scalar_one_or_none()
        created = admin is None
        if created:
            admin = AdminRow(email=email, shop_id=shop_id_from_domain(shop), password_hash=hash_password(password))
            session.add(admin)
        else:
            admin.password_hash = hash_password(password)
            admin.shop_id = shop_id_from_domain(shop)
        await session.commit()
        return admin, created


def main():
    if len(sys.argv) != 4:
        print(__doc__)
        sys.exit(1)
    admin, created = asyncio.run(create_admin(*sys.argv[1:]))
    print(f"{'Created' if created else 'Updated'} admin {admin.email} for shop {admin.shop_id}")


if __name__ == "__main__":
    main()
