"""Inventory pool administration: CSV imports, levels and balance checks."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from giftcard_api.api.dependencies.security import require_engine_api_key
from giftcard_api.api.v1.endpoints.rewards import get_supplier_client
from giftcard_api.core.errors import UnitNotFound
from giftcard_api.core.settings import settings
from giftcard_api.db.session import get_session
from giftcard_api.models.reconciliation import BalanceCheck
from giftcard_api.schemas.inventory import (
    BalanceBatchRequest,
    BalanceBatchResponse,
    BalanceCheckResponse,
    ImportRowErrorResponse,
    InventoryImportResponse,
    InventoryLevelResponse,
)
from giftcard_api.services.inventory import InventoryStore, parse_inventory_csv
from giftcard_api.services.provisioning import SupplierClient
from giftcard_api.services.reconciliation import BalanceReconciler

router = APIRouter(
    prefix="/inventory",
    tags=["Inventory"],
    dependencies=[Depends(require_engine_api_key)],
)


async def get_inventory_store(session: AsyncSession = Depends(get_session)) -> InventoryStore:
    return InventoryStore(session)


async def get_balance_reconciler(
    session: AsyncSession = Depends(get_session),
    supplier: SupplierClient | None = Depends(get_supplier_client),
) -> BalanceReconciler:
    return BalanceReconciler(session, supplier=supplier)


def _serialize_check(check: BalanceCheck) -> BalanceCheckResponse:
    return BalanceCheckResponse(
        id=check.id,
        inventory_unit_id=check.inventory_unit_id,
        checked_at=check.checked_at,
        status=getattr(check.status, "value", check.status),
        reported_balance=check.reported_balance,
        expected_balance=check.expected_balance,
        discrepancy=check.discrepancy,
        source=check.source,
        error_message=check.error_message,
    )


@router.post(
    "/imports",
    response_model=InventoryImportResponse,
    summary="Import gift card codes from a CSV upload",
)
async def import_inventory(
    request: Request,
    owner_client_id: str | None = Query(default=None, alias="ownerClientId"),
    brand_id: str | None = Query(default=None, alias="brandId"),
    store: InventoryStore = Depends(get_inventory_store),
) -> InventoryImportResponse:
    raw = await request.body()
    if not raw.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="CSV body is empty")
    try:
        content = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="CSV must be UTF-8 encoded") from exc

    parsed = parse_inventory_csv(
        content,
        default_owner_client_id=owner_client_id or settings.inventory_import_default_owner,
        default_brand_id=brand_id,
    )
    result = await store.insert_from_import(parsed.units)
    await store.db.commit()

    errors = sorted(parsed.errors + result.errors, key=lambda error: error.row_number or 0)
    return InventoryImportResponse(
        imported=result.imported,
        duplicates=result.duplicates,
        errors=[ImportRowErrorResponse(**error.as_dict()) for error in errors],
        duplicate_codes=result.duplicate_codes,
    )


@router.get(
    "/levels",
    response_model=list[InventoryLevelResponse],
    summary="Available units per pool with alert severity",
)
async def inventory_levels(
    brand_id: str | None = Query(default=None, alias="brandId"),
    owner_client_id: str | None = Query(default=None, alias="ownerClientId"),
    threshold: int | None = Query(default=None, ge=1),
    store: InventoryStore = Depends(get_inventory_store),
) -> list[InventoryLevelResponse]:
    levels = await store.inventory_levels(
        brand_id=brand_id.lower() if brand_id else None,
        owner_client_id=owner_client_id,
        custom_threshold=threshold,
    )
    return [
        InventoryLevelResponse(
            brand_id=level.brand_id,
            denomination=level.denomination,
            owner_client_id=level.owner_client_id,
            available=level.available,
            total=level.total,
            severity=level.severity,
        )
        for level in levels
    ]


@router.post(
    "/units/{unit_id}/balance-checks",
    response_model=BalanceCheckResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Verify one unit's balance with the supplier",
)
async def check_unit_balance(
    unit_id: UUID,
    reconciler: BalanceReconciler = Depends(get_balance_reconciler),
) -> BalanceCheckResponse:
    try:
        check = await reconciler.check_balance(unit_id)
    except UnitNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _serialize_check(check)


@router.post(
    "/balance-checks",
    response_model=BalanceBatchResponse,
    summary="Verify balances for a batch of delivered units",
)
async def check_pool_balances(
    payload: BalanceBatchRequest | None = None,
    reconciler: BalanceReconciler = Depends(get_balance_reconciler),
) -> BalanceBatchResponse:
    payload = payload or BalanceBatchRequest()
    summary = await reconciler.check_pool_balances(
        brand_id=payload.brand_id,
        owner_client_id=payload.owner_client_id,
        limit=payload.limit,
    )
    return BalanceBatchResponse(**summary)
