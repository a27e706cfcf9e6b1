"""Balance verification for delivered gift cards."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from giftcard_api.core.errors import SupplierError, UnitNotFound
from giftcard_api.core.settings import settings
from giftcard_api.models.inventory import GiftCardBrand, InventoryUnit, InventoryUnitStatusEnum
from giftcard_api.models.reconciliation import BalanceCheck, BalanceCheckStatusEnum
from giftcard_api.observability.rewards import get_reward_store
from giftcard_api.services.provisioning.supplier import SupplierBalance, SupplierClient

BALANCE_CHECK_ERROR_SENTINEL = Decimal("-1.00")


@dataclass
class _LookupResult:
    balance: SupplierBalance | None = None
    error: str | None = None
    payload: Any = None


class BalanceReconciler:
    """Records supplier-reported balances against what the pool expects."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        supplier: SupplierClient | None,
        concurrency: int | None = None,
    ) -> None:
        self._db = db_session
        self._supplier = supplier
        self._concurrency = max(concurrency or settings.balance_check_concurrency, 1)

    @property
    def source(self) -> str:
        return self._supplier.name if self._supplier is not None else settings.supplier_name

    async def check_balance(self, unit_id: UUID) -> BalanceCheck:
        unit = await self._db.get(InventoryUnit, unit_id, populate_existing=True)
        if unit is None:
            raise UnitNotFound(unit_id)
        brand_code = await self._brand_code(unit.brand_id)
        lookup = await self._lookup(unit, brand_code, asyncio.Semaphore(1))
        check = self._record(unit, lookup)
        await self._db.commit()
        return check

    async def check_pool_balances(
        self,
        *,
        brand_id: str | None = None,
        owner_client_id: str | None = None,
        limit: int | None = None,
    ) -> Dict[str, int]:
        """Check delivered units in batches; supplier calls run concurrently, writes run in order."""

        units = await self._delivered_units(brand_id=brand_id, owner_client_id=owner_client_id, limit=limit)
        summary = {"checked": 0, "succeeded": 0, "failed": 0, "drifted": 0}
        if not units:
            return summary

        brand_codes = {unit.brand_id: await self._brand_code(unit.brand_id) for unit in units}
        semaphore = asyncio.Semaphore(self._concurrency)
        lookups = await asyncio.gather(
            *(self._lookup(unit, brand_codes[unit.brand_id], semaphore) for unit in units)
        )

        for unit, lookup in zip(units, lookups):
            check = self._record(unit, lookup)
            summary["checked"] += 1
            if check.status == BalanceCheckStatusEnum.SUCCESS:
                summary["succeeded"] += 1
                if check.discrepancy != 0:
                    summary["drifted"] += 1
            else:
                summary["failed"] += 1
        await self._db.commit()

        logger.bind(summary=summary).info(
            "Balance reconciliation completed",
            brand_id=brand_id,
            owner_client_id=owner_client_id,
        )
        return summary

    async def _delivered_units(
        self,
        *,
        brand_id: str | None,
        owner_client_id: str | None,
        limit: int | None,
    ) -> Sequence[InventoryUnit]:
        disabled = select(GiftCardBrand.id).where(GiftCardBrand.balance_check_enabled.is_(False))
        stmt = (
            select(InventoryUnit)
            .where(
                InventoryUnit.status == InventoryUnitStatusEnum.DELIVERED,
                InventoryUnit.brand_id.not_in(disabled),
            )
            .order_by(InventoryUnit.last_balance_check_at.asc().nulls_first(), InventoryUnit.created_at.asc())
            .limit(limit or settings.balance_check_batch_limit)
        )
        if settings.balance_check_brands_excluded:
            stmt = stmt.where(InventoryUnit.brand_id.not_in(settings.balance_check_brands_excluded))
        if brand_id:
            stmt = stmt.where(InventoryUnit.brand_id == brand_id)
        if owner_client_id:
            stmt = stmt.where(InventoryUnit.owner_client_id == owner_client_id)
        return list((await self._db.execute(stmt)).scalars().all())

    async def _brand_code(self, brand_id: str) -> str:
        brand = await self._db.get(GiftCardBrand, brand_id)
        return brand.supplier_code if brand is not None else brand_id

    async def _lookup(self, unit: InventoryUnit, brand_code: str, semaphore: asyncio.Semaphore) -> _LookupResult:
        if self._supplier is None:
            return _LookupResult(error="No supplier configured for balance checks")
        async with semaphore:
            try:
                balance = await self._supplier.check_balance(card_code=unit.source_code, brand_code=brand_code)
            except SupplierError as exc:
                logger.warning(
                    "Supplier balance check failed",
                    unit_id=str(unit.id),
                    kind=exc.kind.value,
                    status_code=exc.status_code,
                    error=str(exc),
                )
                return _LookupResult(error=f"{exc.kind.value}: {exc}", payload=exc.payload)
        return _LookupResult(balance=balance, payload=balance.payload)

    def _record(self, unit: InventoryUnit, lookup: _LookupResult) -> BalanceCheck:
        now = datetime.now(timezone.utc)
        expected = Decimal(unit.current_balance if unit.current_balance is not None else unit.denomination)
        metrics = get_reward_store()

        if lookup.balance is None:
            check = BalanceCheck(
                inventory_unit_id=unit.id,
                checked_at=now,
                reported_balance=None,
                expected_balance=expected,
                discrepancy=BALANCE_CHECK_ERROR_SENTINEL,
                status=BalanceCheckStatusEnum.ERROR,
                source=self.source,
                error_message=lookup.error,
                payload=lookup.payload if isinstance(lookup.payload, dict) else None,
            )
            self._db.add(check)
            metrics.record_balance_check(BalanceCheckStatusEnum.ERROR.value)
            return check

        reported = lookup.balance.balance
        check = BalanceCheck(
            inventory_unit_id=unit.id,
            checked_at=now,
            reported_balance=reported,
            expected_balance=expected,
            discrepancy=reported - expected,
            status=BalanceCheckStatusEnum.SUCCESS,
            source=self.source,
            payload=lookup.payload,
        )
        self._db.add(check)
        unit.current_balance = reported
        unit.last_balance_check_at = now
        metrics.record_balance_check(BalanceCheckStatusEnum.SUCCESS.value)
        if check.discrepancy != 0:
            logger.warning(
                "Balance drift detected",
                unit_id=str(unit.id),
                expected=str(expected),
                reported=str(reported),
                discrepancy=str(check.discrepancy),
            )
        return check


__all__ = ["BALANCE_CHECK_ERROR_SENTINEL", "BalanceReconciler"]
