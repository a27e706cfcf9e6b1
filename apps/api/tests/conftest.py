import sys
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import giftcard_api.models  # noqa: E402,F401
from giftcard_api.app import create_app  # noqa: E402
from giftcard_api.core.errors import ProvisioningErrorKind, SupplierError  # noqa: E402
from giftcard_api.db.base import Base  # noqa: E402
from giftcard_api.db.session import get_session  # noqa: E402
from giftcard_api.models.inventory import InventoryUnit, InventoryUnitStatusEnum  # noqa: E402
from giftcard_api.observability.rewards import get_reward_store  # noqa: E402
from giftcard_api.services.provisioning import SupplierBalance, SupplierCard  # noqa: E402


async def _create_factory(url: str, **engine_kwargs):
    engine = create_async_engine(url, future=True, **engine_kwargs)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session_factory():
    engine, factory = await _create_factory("sqlite+aiosqlite:///:memory:")
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed database so concurrent sessions get their own connections."""
    engine, factory = await _create_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'giftcard.db'}",
        connect_args={"timeout": 30},
    )
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_reward_store():
    store = get_reward_store()
    store.reset()
    yield store
    store.reset()


async def seed_units(
    factory,
    count: int,
    *,
    brand_id: str = "amazon",
    denomination: Decimal = Decimal("25.00"),
    owner_client_id: str = "client-a",
    status: InventoryUnitStatusEnum = InventoryUnitStatusEnum.AVAILABLE,
    prefix: str = "CODE",
) -> list:
    async with factory() as session:
        units = [
            InventoryUnit(
                brand_id=brand_id,
                denomination=denomination,
                owner_client_id=owner_client_id,
                source_code=f"{prefix}-{index:04d}",
                status=status,
                current_balance=denomination,
            )
            for index in range(count)
        ]
        session.add_all(units)
        await session.commit()
        return [unit.id for unit in units]


class StubSupplier:
    """Supplier double recording purchases; ``error`` is raised on every call when set."""

    name = "stub"

    def __init__(self, *, error=None, balances=None) -> None:
        self.error = error
        self.balances = dict(balances or {})
        self.purchases: list[dict] = []
        self.balance_lookups: list[str] = []

    async def purchase(self, *, brand_code, denomination, currency, reference):
        self.purchases.append(
            {"brand_code": brand_code, "denomination": denomination, "currency": currency, "reference": reference}
        )
        if self.error is not None:
            raise self.error
        return SupplierCard(
            code=f"SUP-{len(self.purchases):04d}",
            reference=reference,
            supplier_reference=f"order-{len(self.purchases)}",
            http_status=200,
        )

    async def check_balance(self, *, card_code, brand_code):
        self.balance_lookups.append(card_code)
        outcome = self.balances.get(card_code, self.error)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            raise SupplierError(ProvisioningErrorKind.SUPPLIER_REJECTED, f"Unknown card {card_code}")
        return SupplierBalance(balance=Decimal(outcome), currency="USD", payload={"code": "000"})
