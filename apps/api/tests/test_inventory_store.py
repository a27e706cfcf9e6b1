import asyncio
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from conftest import seed_units
from giftcard_api.core.errors import InvalidStateTransition, UnitNotFound
from giftcard_api.models.inventory import InventoryUnit, InventoryUnitStatusEnum
from giftcard_api.services.inventory import InventoryStore, InventoryUnitImport, inventory_alert_severity


@pytest.mark.asyncio
async def test_reserve_one_returns_none_for_empty_pool(session_factory):
    async with session_factory() as session:
        store = InventoryStore(session)
        unit = await store.reserve_one("amazon", Decimal("25.00"), "client-a")
    assert unit is None


@pytest.mark.asyncio
async def test_reserve_one_only_matches_pool(session_factory):
    await seed_units(session_factory, 1, denomination=Decimal("50.00"), prefix="FIFTY")
    await seed_units(session_factory, 1, owner_client_id="client-b", prefix="OTHER")
    [target] = await seed_units(session_factory, 1, prefix="MATCH")

    claim_id = uuid4()
    async with session_factory() as session:
        store = InventoryStore(session)
        unit = await store.reserve_one("amazon", Decimal("25.00"), "client-a", claim_id=claim_id)
        await session.commit()

    assert unit is not None
    assert unit.id == target
    assert unit.status == InventoryUnitStatusEnum.RESERVED
    assert unit.reserved_claim_id == claim_id
    assert unit.reserved_at is not None


@pytest.mark.asyncio
async def test_concurrent_reservations_never_share_a_unit(file_session_factory):
    await seed_units(file_session_factory, 3)

    async def reserve():
        async with file_session_factory() as session:
            store = InventoryStore(session)
            unit = await store.reserve_one("amazon", Decimal("25.00"), "client-a", claim_id=uuid4())
            await session.commit()
            return unit.id if unit else None

    results = await asyncio.gather(*(reserve() for _ in range(6)))
    reserved = [unit_id for unit_id in results if unit_id is not None]

    assert len(reserved) == 3
    assert len(set(reserved)) == 3
    assert results.count(None) == 3


@pytest.mark.asyncio
async def test_lifecycle_transitions_follow_expected_order(session_factory):
    await seed_units(session_factory, 1)
    claim_id = uuid4()

    async with session_factory() as session:
        store = InventoryStore(session)
        unit = await store.reserve_one("amazon", Decimal("25.00"), "client-a", claim_id=claim_id)
        assigned = await store.mark_assigned(unit.id, claim_id)
        assert assigned.status == InventoryUnitStatusEnum.ASSIGNED
        assert assigned.claim_record_id == claim_id

        delivered = await store.mark_delivered(unit.id)
        assert delivered.status == InventoryUnitStatusEnum.DELIVERED
        assert delivered.delivered_at is not None
        await session.commit()


@pytest.mark.asyncio
async def test_invalid_transition_is_rejected_and_recorded(session_factory, reset_reward_store):
    [unit_id] = await seed_units(session_factory, 1)

    async with session_factory() as session:
        store = InventoryStore(session)
        with pytest.raises(InvalidStateTransition) as excinfo:
            await store.mark_delivered(unit_id)

        unit = await store.get_unit(unit_id)
        assert unit.status == InventoryUnitStatusEnum.AVAILABLE

    assert excinfo.value.current == "available"
    assert excinfo.value.target == "delivered"
    assert excinfo.value.expected == ("assigned",)
    events = reset_reward_store.snapshot().as_dict()["events"]
    assert events["last_invalid_transition"] is not None


@pytest.mark.asyncio
async def test_mark_assigned_twice_fails(session_factory):
    [unit_id] = await seed_units(session_factory, 1, status=InventoryUnitStatusEnum.RESERVED)

    async with session_factory() as session:
        store = InventoryStore(session)
        await store.mark_assigned(unit_id, uuid4())
        with pytest.raises(InvalidStateTransition):
            await store.mark_assigned(unit_id, uuid4())


@pytest.mark.asyncio
async def test_mark_failed_from_reserved(session_factory):
    [unit_id] = await seed_units(session_factory, 1, status=InventoryUnitStatusEnum.RESERVED)

    async with session_factory() as session:
        store = InventoryStore(session)
        unit = await store.mark_failed(unit_id, "card voided by supplier")
        await session.commit()

    assert unit.status == InventoryUnitStatusEnum.FAILED
    assert unit.failure_reason == "card voided by supplier"


@pytest.mark.asyncio
async def test_get_unit_raises_for_unknown_id(session_factory):
    async with session_factory() as session:
        with pytest.raises(UnitNotFound):
            await InventoryStore(session).get_unit(uuid4())


@pytest.mark.asyncio
async def test_insert_from_import_reports_duplicates(session_factory):
    await seed_units(session_factory, 1, prefix="EXISTING")

    rows = [
        InventoryUnitImport("amazon", Decimal("25.00"), "client-a", "NEW-0001", row_number=2),
        InventoryUnitImport("amazon", Decimal("25.00"), "client-a", "EXISTING-0000", row_number=3),
        InventoryUnitImport("amazon", Decimal("25.00"), "client-a", "NEW-0001", row_number=4),
        InventoryUnitImport("amazon", Decimal("0"), "client-a", "ZERO-0001", row_number=5),
    ]
    async with session_factory() as session:
        store = InventoryStore(session)
        result = await store.insert_from_import(rows)
        await session.commit()

    assert result.imported == 1
    assert result.duplicates == 2
    assert sorted(result.duplicate_codes) == ["EXISTING-0000", "NEW-0001"]
    assert [error.row_number for error in result.errors] == [5]

    async with session_factory() as session:
        unit = (
            await session.execute(select(InventoryUnit).where(InventoryUnit.source_code == "NEW-0001"))
        ).scalar_one()
        assert unit.status == InventoryUnitStatusEnum.AVAILABLE
        assert Decimal(unit.current_balance) == Decimal("25.00")


@pytest.mark.asyncio
async def test_inventory_levels_report_severity(session_factory, monkeypatch):
    from giftcard_api.core.settings import settings

    monkeypatch.setattr(settings, "inventory_low_threshold", 3)
    await seed_units(session_factory, 5, prefix="HEALTHY")
    await seed_units(session_factory, 2, denomination=Decimal("50.00"), prefix="LOW")
    await seed_units(
        session_factory,
        1,
        brand_id="starbucks",
        denomination=Decimal("10.00"),
        status=InventoryUnitStatusEnum.DELIVERED,
        prefix="EMPTY",
    )

    async with session_factory() as session:
        levels = await InventoryStore(session).inventory_levels(custom_threshold=8)

    by_pool = {(level.brand_id, level.denomination): level for level in levels}
    assert by_pool[("amazon", Decimal("25.00"))].available == 5
    assert by_pool[("amazon", Decimal("25.00"))].severity == "info"
    assert by_pool[("amazon", Decimal("50.00"))].severity == "warning"
    empty = by_pool[("starbucks", Decimal("10.00"))]
    assert empty.available == 0
    assert empty.total == 1
    assert empty.severity == "critical"


def test_inventory_alert_severity_thresholds():
    assert inventory_alert_severity(0, low_threshold=10) == "critical"
    assert inventory_alert_severity(9, low_threshold=10) == "warning"
    assert inventory_alert_severity(12, low_threshold=10, custom_threshold=20) == "info"
    assert inventory_alert_severity(25, low_threshold=10, custom_threshold=20) is None
    assert inventory_alert_severity(25, low_threshold=10) is None
