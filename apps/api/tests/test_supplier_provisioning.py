import json
from decimal import Decimal
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import select

from conftest import StubSupplier, seed_units
from giftcard_api.core.errors import ProvisioningError, ProvisioningErrorKind, SupplierError
from giftcard_api.core.settings import Settings
from giftcard_api.models.inventory import GiftCardBrand, InventoryUnitSourceEnum, InventoryUnitStatusEnum
from giftcard_api.models.reconciliation import SupplierPurchaseLog
from giftcard_api.services.inventory import InventoryStore
from giftcard_api.services.provisioning import (
    ProvisioningAdapter,
    TilloSupplierClient,
    build_supplier_client,
)
from giftcard_api.services.provisioning.supplier import classify_supplier_response, sign_request


def _tillo(handler) -> tuple[TilloSupplierClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = TilloSupplierClient(
        api_key="key-123",
        secret_key="secret-456",
        base_url="https://supplier.test/v2",
        http_client=http_client,
    )
    return client, http_client


@pytest.mark.asyncio
async def test_tillo_purchase_signs_request_and_returns_card():
    captured: dict[str, httpx.Request] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = request
        return httpx.Response(
            200,
            json={"code": "000", "data": {"code": "AMZN-ABCD-1234", "reference": "T-998", "url": "https://r.test/1"}},
        )

    client, http_client = _tillo(handler)
    async with http_client:
        card = await client.purchase(
            brand_code="amazon-us",
            denomination=Decimal("25.00"),
            currency="USD",
            reference="claim-1",
        )

    request = captured["request"]
    assert request.url == "https://supplier.test/v2/orders"
    body = json.loads(request.content)
    assert body == {"brand": "amazon-us", "face_value": {"amount": "25.00", "currency": "USD"}, "reference": "claim-1"}
    assert request.headers["API-Key"] == "key-123"
    timestamp = int(request.headers["Timestamp"])
    assert request.headers["Signature"] == sign_request("secret-456", timestamp, request.content.decode())

    assert card.code == "AMZN-ABCD-1234"
    assert card.supplier_reference == "T-998"
    assert card.http_status == 200
    assert card.response_payload["data"]["code"] == "***"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "payload", "expected"),
    [
        (503, {"message": "maintenance"}, ProvisioningErrorKind.SUPPLIER_UNAVAILABLE),
        (429, {}, ProvisioningErrorKind.SUPPLIER_UNAVAILABLE),
        (409, {"message": "no stock"}, ProvisioningErrorKind.OUT_OF_STOCK),
        (200, {"code": "out_of_stock"}, ProvisioningErrorKind.OUT_OF_STOCK),
        (422, {"message": "bad brand"}, ProvisioningErrorKind.SUPPLIER_REJECTED),
        (200, {"code": "070"}, ProvisioningErrorKind.SUPPLIER_REJECTED),
        (200, {"code": "000", "data": {}}, ProvisioningErrorKind.SUPPLIER_REJECTED),
    ],
)
async def test_tillo_purchase_classifies_failures(status_code, payload, expected):
    client, http_client = _tillo(lambda request: httpx.Response(status_code, json=payload))

    async with http_client:
        with pytest.raises(SupplierError) as excinfo:
            await client.purchase(brand_code="amazon", denomination=Decimal("25"), currency="USD", reference="r")

    assert excinfo.value.kind == expected


@pytest.mark.asyncio
async def test_tillo_timeout_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client, http_client = _tillo(handler)
    async with http_client:
        with pytest.raises(SupplierError) as excinfo:
            await client.check_balance(card_code="X", brand_code="amazon")

    assert excinfo.value.kind == ProvisioningErrorKind.SUPPLIER_UNAVAILABLE
    assert excinfo.value.transient is True


@pytest.mark.asyncio
async def test_tillo_balance_accepts_amount_objects():
    client, http_client = _tillo(
        lambda request: httpx.Response(
            200, json={"code": "000", "data": {"balance": {"amount": "17.5", "currency": "USD"}}}
        )
    )
    async with http_client:
        balance = await client.check_balance(card_code="X", brand_code="amazon")

    assert balance.balance == Decimal("17.50")
    assert balance.currency == "USD"


def test_classify_supplier_response_success():
    assert classify_supplier_response(200, {"code": "000"}) is None
    assert classify_supplier_response(201, {}) is None


def test_build_supplier_client_requires_credentials():
    assert build_supplier_client(Settings(supplier_api_key=None, supplier_secret_key=None)) is None
    client = build_supplier_client(Settings(supplier_api_key="k", supplier_secret_key="s"))
    assert isinstance(client, TilloSupplierClient)


@pytest.mark.asyncio
async def test_provision_prefers_local_pool_on_recheck(session_factory):
    [unit_id] = await seed_units(session_factory, 1)
    supplier = StubSupplier()

    async with session_factory() as session:
        adapter = ProvisioningAdapter(session, supplier=supplier)
        unit = await adapter.provision("amazon", Decimal("25.00"), "client-a", claim_id=uuid4())

    assert unit.id == unit_id
    assert supplier.purchases == []


@pytest.mark.asyncio
async def test_provision_purchases_and_persists_reserved_unit(session_factory):
    async with session_factory() as session:
        session.add(GiftCardBrand(id="amazon", name="Amazon", supplier_brand_code="amazon-us", currency="USD"))
        await session.commit()

    supplier = StubSupplier()
    claim_id = uuid4()
    async with session_factory() as session:
        adapter = ProvisioningAdapter(session, supplier=supplier)
        unit = await adapter.provision("amazon", Decimal("25.00"), "client-a", claim_id=claim_id)

    assert len(supplier.purchases) == 1
    assert supplier.purchases[0]["brand_code"] == "amazon-us"
    assert supplier.purchases[0]["reference"] == f"claim-{claim_id}"

    async with session_factory() as session:
        log = (await session.execute(select(SupplierPurchaseLog))).scalar_one()
        assert log.outcome == "success"
        assert log.inventory_unit_id == unit.id
        assert log.claim_record_id == claim_id

        stored = await InventoryStore(session).get_unit(unit.id)
        assert stored.status == InventoryUnitStatusEnum.RESERVED
        assert stored.source == InventoryUnitSourceEnum.SUPPLIER
        assert stored.reserved_claim_id == claim_id
        assert stored.source_code == "SUP-0001"


@pytest.mark.asyncio
async def test_provision_logs_and_raises_supplier_failure(session_factory):
    supplier = StubSupplier(
        error=SupplierError(ProvisioningErrorKind.SUPPLIER_UNAVAILABLE, "Supplier returned HTTP 503", status_code=503)
    )

    async with session_factory() as session:
        adapter = ProvisioningAdapter(session, supplier=supplier)
        with pytest.raises(ProvisioningError) as excinfo:
            await adapter.provision("amazon", Decimal("25.00"), "client-a", claim_id=uuid4())

    assert excinfo.value.kind == ProvisioningErrorKind.SUPPLIER_UNAVAILABLE
    assert excinfo.value.reason.startswith("supplier_unavailable")

    async with session_factory() as session:
        log = (await session.execute(select(SupplierPurchaseLog))).scalar_one()
        assert log.outcome == "error"
        assert log.error_kind == "supplier_unavailable"
        assert log.http_status == 503


@pytest.mark.asyncio
async def test_provision_without_supplier_is_out_of_stock(session_factory):
    async with session_factory() as session:
        adapter = ProvisioningAdapter(session, supplier=None)
        with pytest.raises(ProvisioningError) as excinfo:
            await adapter.provision("amazon", Decimal("25.00"), "client-a")

    assert excinfo.value.kind == ProvisioningErrorKind.OUT_OF_STOCK


@pytest.mark.asyncio
async def test_provision_respects_brand_toggle(session_factory):
    async with session_factory() as session:
        session.add(GiftCardBrand(id="target", name="Target", provisioning_enabled=False))
        await session.commit()

    supplier = StubSupplier()
    async with session_factory() as session:
        adapter = ProvisioningAdapter(session, supplier=supplier)
        with pytest.raises(ProvisioningError) as excinfo:
            await adapter.provision("target", Decimal("25.00"), "client-a")

    assert excinfo.value.kind == ProvisioningErrorKind.OUT_OF_STOCK
    assert supplier.purchases == []
