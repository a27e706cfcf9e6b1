"""Atomic lifecycle operations over the gift card inventory pool."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import case, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from giftcard_api.core.errors import InvalidStateTransition, UnitNotFound
from giftcard_api.core.settings import settings
from giftcard_api.models.inventory import (
    InventoryUnit,
    InventoryUnitSourceEnum,
    InventoryUnitStatusEnum,
)
from giftcard_api.observability.rewards import get_reward_store


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class InventoryUnitImport:
    """One row destined for the pool, already parsed."""

    brand_id: str
    denomination: Decimal
    owner_client_id: str
    source_code: str
    currency: str = "USD"
    current_balance: Decimal | None = None
    row_number: int | None = None


@dataclass(slots=True)
class ImportRowError:
    row_number: int | None
    message: str
    source_code: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"row": self.row_number, "code": self.source_code, "message": self.message}


@dataclass
class ImportResult:
    imported: int = 0
    duplicates: int = 0
    errors: list[ImportRowError] = field(default_factory=list)
    duplicate_codes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class InventoryLevel:
    brand_id: str
    denomination: Decimal
    owner_client_id: str
    available: int
    total: int
    severity: str | None


def inventory_alert_severity(available: int, *, low_threshold: int, custom_threshold: int | None = None) -> str | None:
    """Map an available count onto critical/warning/info alerting."""

    if available <= 0:
        return "critical"
    if available < low_threshold:
        return "warning"
    if custom_threshold and available < custom_threshold:
        return "info"
    return None


class InventoryStore:
    """The only component allowed to change an inventory unit's status."""

    def __init__(self, db_session: AsyncSession, *, max_candidates: int | None = None) -> None:
        self._db = db_session
        self._max_candidates = max_candidates or settings.inventory_reserve_max_candidates

    @property
    def db(self) -> AsyncSession:
        return self._db

    async def get_unit(self, unit_id: UUID) -> InventoryUnit:
        unit = await self._db.get(InventoryUnit, unit_id, populate_existing=True)
        if unit is None:
            raise UnitNotFound(unit_id)
        return unit

    async def reserve_one(
        self,
        brand_id: str,
        denomination: Decimal,
        owner_client_id: str,
        *,
        claim_id: UUID | None = None,
    ) -> InventoryUnit | None:
        """Flip one available unit of the pool to reserved, or return None when the pool is empty.

        The flip is a conditional update guarded on ``status = available``; a
        zero rowcount means a concurrent caller took the candidate first, so
        the next candidate is tried.
        """

        skipped: list[UUID] = []
        for _ in range(self._max_candidates):
            stmt = (
                select(InventoryUnit.id)
                .where(
                    InventoryUnit.brand_id == brand_id,
                    InventoryUnit.denomination == denomination,
                    InventoryUnit.owner_client_id == owner_client_id,
                    InventoryUnit.status == InventoryUnitStatusEnum.AVAILABLE,
                )
                .order_by(InventoryUnit.created_at.asc(), InventoryUnit.id.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            if skipped:
                stmt = stmt.where(InventoryUnit.id.not_in(skipped))
            candidate_id = (await self._db.execute(stmt)).scalar_one_or_none()
            if candidate_id is None:
                return None

            now = _utcnow()
            result = await self._db.execute(
                update(InventoryUnit)
                .where(
                    InventoryUnit.id == candidate_id,
                    InventoryUnit.status == InventoryUnitStatusEnum.AVAILABLE,
                )
                .values(
                    status=InventoryUnitStatusEnum.RESERVED,
                    reserved_claim_id=claim_id,
                    reserved_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                unit = await self.get_unit(candidate_id)
                logger.info(
                    "Reserved inventory unit",
                    unit_id=str(candidate_id),
                    brand_id=brand_id,
                    denomination=str(denomination),
                    owner_client_id=owner_client_id,
                    claim_id=str(claim_id) if claim_id else None,
                )
                return unit

            skipped.append(candidate_id)
            logger.debug("Inventory candidate taken concurrently", unit_id=str(candidate_id))

        logger.warning(
            "Inventory reservation gave up after contended candidates",
            brand_id=brand_id,
            denomination=str(denomination),
            owner_client_id=owner_client_id,
            attempts=self._max_candidates,
        )
        return None

    async def find_reserved_for_claim(self, claim_id: UUID) -> InventoryUnit | None:
        stmt = (
            select(InventoryUnit)
            .where(
                InventoryUnit.reserved_claim_id == claim_id,
                InventoryUnit.status == InventoryUnitStatusEnum.RESERVED,
            )
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def add_provisioned_unit(
        self,
        *,
        brand_id: str,
        denomination: Decimal,
        owner_client_id: str,
        currency: str,
        source_code: str,
        supplier_reference: str | None,
        claim_id: UUID | None,
    ) -> InventoryUnit:
        """Persist a supplier-purchased card directly in the reserved state."""

        now = _utcnow()
        unit = InventoryUnit(
            brand_id=brand_id,
            denomination=denomination,
            currency=currency,
            owner_client_id=owner_client_id,
            source_code=source_code,
            source=InventoryUnitSourceEnum.SUPPLIER,
            supplier_reference=supplier_reference,
            status=InventoryUnitStatusEnum.RESERVED,
            reserved_claim_id=claim_id,
            reserved_at=now,
            current_balance=denomination,
        )
        self._db.add(unit)
        await self._db.flush()
        return unit

    async def mark_assigned(self, unit_id: UUID, claim_record_id: UUID) -> InventoryUnit:
        return await self._transition(
            unit_id,
            expected=(InventoryUnitStatusEnum.RESERVED,),
            target=InventoryUnitStatusEnum.ASSIGNED,
            values={"claim_record_id": claim_record_id, "assigned_at": _utcnow()},
        )

    async def mark_delivered(self, unit_id: UUID) -> InventoryUnit:
        return await self._transition(
            unit_id,
            expected=(InventoryUnitStatusEnum.ASSIGNED,),
            target=InventoryUnitStatusEnum.DELIVERED,
            values={"delivered_at": _utcnow()},
        )

    async def mark_failed(self, unit_id: UUID, reason: str) -> InventoryUnit:
        return await self._transition(
            unit_id,
            expected=(InventoryUnitStatusEnum.RESERVED, InventoryUnitStatusEnum.ASSIGNED),
            target=InventoryUnitStatusEnum.FAILED,
            values={"failure_reason": reason},
        )

    async def _transition(
        self,
        unit_id: UUID,
        *,
        expected: tuple[InventoryUnitStatusEnum, ...],
        target: InventoryUnitStatusEnum,
        values: dict[str, Any],
    ) -> InventoryUnit:
        result = await self._db.execute(
            update(InventoryUnit)
            .where(InventoryUnit.id == unit_id, InventoryUnit.status.in_(expected))
            .values(status=target, updated_at=_utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        unit = await self.get_unit(unit_id)
        if result.rowcount != 1:
            error = InvalidStateTransition(unit_id, current=unit.status, target=target, expected=expected)
            get_reward_store().record_invalid_transition(str(error))
            logger.error(
                "Rejected inventory state transition",
                unit_id=str(unit_id),
                current=error.current,
                target=error.target,
                expected=list(error.expected),
            )
            raise error
        logger.info("Inventory unit transitioned", unit_id=str(unit_id), status=target.value)
        return unit

    async def insert_from_import(self, units: Sequence[InventoryUnitImport]) -> ImportResult:
        """Bulk insert imported cards; codes already present are reported as duplicates."""

        result = ImportResult()
        seen: set[str] = set()
        for row in units:
            code = row.source_code.strip()
            if not code:
                result.errors.append(ImportRowError(row.row_number, "Card code is required"))
                continue
            if row.denomination is None or row.denomination <= 0:
                result.errors.append(
                    ImportRowError(row.row_number, "Denomination must be greater than zero", source_code=code)
                )
                continue
            if code in seen:
                result.duplicates += 1
                result.duplicate_codes.append(code)
                continue
            seen.add(code)

            values = {
                "brand_id": row.brand_id,
                "denomination": row.denomination,
                "currency": row.currency,
                "owner_client_id": row.owner_client_id,
                "source_code": code,
                "current_balance": row.current_balance if row.current_balance is not None else row.denomination,
            }
            inserted = await self._insert_ignoring_duplicate_code(values)
            if inserted:
                result.imported += 1
            else:
                result.duplicates += 1
                result.duplicate_codes.append(code)

        logger.info(
            "Inventory import processed",
            imported=result.imported,
            duplicates=result.duplicates,
            errors=len(result.errors),
        )
        return result

    async def _insert_ignoring_duplicate_code(self, values: dict[str, Any]) -> bool:
        dialect = self._db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(InventoryUnit).values(**values).on_conflict_do_nothing(index_elements=["source_code"])
        elif dialect == "sqlite":
            stmt = sqlite_insert(InventoryUnit).values(**values).on_conflict_do_nothing(index_elements=["source_code"])
        else:  # pragma: no cover - only postgres and sqlite are deployed
            raise RuntimeError(f"Unsupported dialect for inventory import: {dialect}")
        result = await self._db.execute(stmt)
        return result.rowcount == 1

    async def inventory_levels(
        self,
        *,
        brand_id: str | None = None,
        owner_client_id: str | None = None,
        custom_threshold: int | None = None,
    ) -> list[InventoryLevel]:
        available = func.sum(case((InventoryUnit.status == InventoryUnitStatusEnum.AVAILABLE, 1), else_=0))
        stmt = (
            select(
                InventoryUnit.brand_id,
                InventoryUnit.denomination,
                InventoryUnit.owner_client_id,
                available.label("available"),
                func.count(InventoryUnit.id).label("total"),
            )
            .group_by(InventoryUnit.brand_id, InventoryUnit.denomination, InventoryUnit.owner_client_id)
            .order_by(InventoryUnit.brand_id, InventoryUnit.denomination, InventoryUnit.owner_client_id)
        )
        if brand_id:
            stmt = stmt.where(InventoryUnit.brand_id == brand_id)
        if owner_client_id:
            stmt = stmt.where(InventoryUnit.owner_client_id == owner_client_id)

        rows = (await self._db.execute(stmt)).all()
        return [
            InventoryLevel(
                brand_id=row.brand_id,
                denomination=Decimal(row.denomination),
                owner_client_id=row.owner_client_id,
                available=int(row.available or 0),
                total=int(row.total or 0),
                severity=inventory_alert_severity(
                    int(row.available or 0),
                    low_threshold=settings.inventory_low_threshold,
                    custom_threshold=custom_threshold,
                ),
            )
            for row in rows
        ]


__all__ = [
    "ImportResult",
    "ImportRowError",
    "InventoryLevel",
    "InventoryStore",
    "InventoryUnitImport",
    "inventory_alert_severity",
]
