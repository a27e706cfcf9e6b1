"""Seed development gift card brands and a small local pool into the API database."""

from __future__ import annotations

import asyncio
from decimal import Decimal
import os
from typing import TypedDict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from giftcard_api.core.settings import settings
from giftcard_api.models.inventory import GiftCardBrand
from giftcard_api.services.inventory import InventoryStore, InventoryUnitImport


class SeedBrand(TypedDict):
    id: str
    name: str
    supplier_brand_code: str


DEV_CLIENT_ID = os.getenv("DEV_SEED_CLIENT_ID", "dev-client")

DEV_BRANDS: list[SeedBrand] = [
    {"id": "amazon", "name": "Amazon", "supplier_brand_code": "amazon-us"},
    {"id": "starbucks", "name": "Starbucks", "supplier_brand_code": "starbucks-us"},
    {"id": "target", "name": "Target", "supplier_brand_code": "target-us"},
]

DEV_UNITS_PER_POOL = int(os.getenv("DEV_SEED_UNITS_PER_POOL", "5"))
DEV_DENOMINATIONS = (Decimal("10.00"), Decimal("25.00"))


async def seed_brands(session: AsyncSession) -> None:
    for brand in DEV_BRANDS:
        record = await session.get(GiftCardBrand, brand["id"])
        if record:
            record.name = brand["name"]
            record.supplier_brand_code = brand["supplier_brand_code"]
        else:
            session.add(
                GiftCardBrand(
                    id=brand["id"],
                    name=brand["name"],
                    supplier_brand_code=brand["supplier_brand_code"],
                )
            )
    await session.commit()


async def seed_units(session: AsyncSession) -> int:
    rows = [
        InventoryUnitImport(
            brand_id=brand["id"],
            denomination=denomination,
            owner_client_id=DEV_CLIENT_ID,
            source_code=f"DEV-{brand['id'].upper()}-{int(denomination)}-{index:04d}",
        )
        for brand in DEV_BRANDS
        for denomination in DEV_DENOMINATIONS
        for index in range(1, DEV_UNITS_PER_POOL + 1)
    ]
    result = await InventoryStore(session).insert_from_import(rows)
    await session.commit()
    return result.imported


async def main() -> None:
    engine = create_async_engine(settings.database_url, future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        async with session_factory() as session:
            await seed_brands(session)
            imported = await seed_units(session)
        print(f"Development gift card pool ready ({imported} new units)")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
