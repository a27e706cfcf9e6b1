"""Idempotent claim entry point: one condition, one reward, one unit."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from giftcard_api.core.errors import ClaimNotDeliverable, ClaimNotFound, ProvisioningError, ProvisioningErrorKind
from giftcard_api.core.settings import settings
from giftcard_api.models.claims import (
    ClaimDeliveryStatusEnum,
    ClaimOutcomeEnum,
    ClaimRecord,
    DeliveryChannelEnum,
)
from giftcard_api.models.inventory import InventoryUnit
from giftcard_api.observability.rewards import get_reward_store
from giftcard_api.observability.tracing import get_tracer
from giftcard_api.services.inventory.store import InventoryStore
from giftcard_api.services.provisioning.adapter import ProvisioningAdapter
from giftcard_api.services.provisioning.supplier import build_supplier_client


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(slots=True)
class DeliveryRequest:
    channel: DeliveryChannelEnum
    destination: str


@dataclass(slots=True)
class ClaimRequest:
    """A satisfied campaign condition asking for one reward."""

    recipient_id: str
    campaign_id: str
    condition_number: int
    brand_id: str
    denomination: Decimal
    owner_client_id: str
    delivery: DeliveryRequest | None = None


@dataclass(slots=True)
class ClaimResult:
    claim_id: UUID
    outcome: ClaimOutcomeEnum
    inventory_unit_id: UUID | None = None
    failure_reason: str | None = None
    replayed: bool = False

    @classmethod
    def from_record(cls, record: ClaimRecord, *, replayed: bool = False) -> "ClaimResult":
        return cls(
            claim_id=record.id,
            outcome=ClaimOutcomeEnum(record.outcome),
            inventory_unit_id=record.inventory_unit_id,
            failure_reason=record.failure_reason,
            replayed=replayed,
        )


class DeliveryScheduler(Protocol):
    def schedule(self, claim_id: UUID, channel: DeliveryChannelEnum, destination: str) -> Any:
        ...


class ClaimCoordinator:
    """Resolves claims exactly once per (recipient, campaign, condition)."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        provisioning: ProvisioningAdapter | None = None,
        handoff: DeliveryScheduler | None = None,
        store: InventoryStore | None = None,
        replay_wait_seconds: float | None = None,
        replay_poll_interval_seconds: float | None = None,
    ) -> None:
        self._db = db_session
        self._store = store or InventoryStore(db_session)
        self._provisioning = provisioning
        self._handoff = handoff
        self._replay_wait = (
            replay_wait_seconds if replay_wait_seconds is not None else settings.replay_wait_seconds
        )
        self._replay_poll = (
            replay_poll_interval_seconds
            if replay_poll_interval_seconds is not None
            else settings.claim_replay_poll_interval_seconds
        )

    @property
    def provisioning(self) -> ProvisioningAdapter:
        if self._provisioning is None:
            self._provisioning = ProvisioningAdapter(
                self._db,
                supplier=build_supplier_client(),
                store=self._store,
            )
        return self._provisioning

    async def claim(self, request: ClaimRequest) -> ClaimResult:
        """Insert-or-replay the claim record, then reserve or provision one unit for the winner."""

        tracer = get_tracer()
        with tracer.start_as_current_span("claims.claim") as span:
            span.set_attribute("giftcard.campaign_id", request.campaign_id)
            span.set_attribute("giftcard.condition_number", request.condition_number)
            span.set_attribute("giftcard.brand_id", request.brand_id)

            record = ClaimRecord(
                recipient_id=request.recipient_id,
                campaign_id=request.campaign_id,
                condition_number=request.condition_number,
                brand_id=request.brand_id,
                denomination=request.denomination,
                owner_client_id=request.owner_client_id,
                outcome=ClaimOutcomeEnum.PENDING,
                delivery_channel=request.delivery.channel if request.delivery else None,
                delivery_destination=request.delivery.destination if request.delivery else None,
                delivery_status=(
                    ClaimDeliveryStatusEnum.PENDING if request.delivery else ClaimDeliveryStatusEnum.NOT_REQUESTED
                ),
            )
            self._db.add(record)
            try:
                await self._db.commit()
            except IntegrityError:
                await self._db.rollback()
                span.set_attribute("giftcard.replayed", True)
                return await self._replay(request)

            span.set_attribute("giftcard.replayed", False)
            result = await self._fulfil(record)
            span.set_attribute("giftcard.outcome", result.outcome.value)
            return result

    async def resume(self, claim_id: UUID) -> ClaimResult:
        """Finish a claim left ``pending`` by a crash, adopting any unit already reserved for it."""

        record = await self._get_record(claim_id)
        if record.outcome != ClaimOutcomeEnum.PENDING:
            return ClaimResult.from_record(record, replayed=True)

        adopted = await self._store.find_reserved_for_claim(record.id)
        if adopted is not None:
            logger.info("Adopting unit reserved before interruption", claim_id=str(claim_id), unit_id=str(adopted.id))
            return await self._assign(record.id, adopted)
        return await self._fulfil(record)

    async def record_delivery_outcome(self, claim_id: UUID, outcome: str) -> ClaimRecord:
        """Persist the dispatcher's terminal status on the claim."""

        status = ClaimDeliveryStatusEnum(getattr(outcome, "value", outcome))
        record = await self._get_record(claim_id)
        record.delivery_status = status
        if status == ClaimDeliveryStatusEnum.DELIVERED and record.delivered_at is None:
            record.delivered_at = _utcnow()
        await self._db.commit()
        logger.info("Recorded delivery outcome", claim_id=str(claim_id), delivery_status=status.value)
        return record

    async def request_delivery(
        self,
        claim_id: UUID,
        *,
        channel: DeliveryChannelEnum | None = None,
        destination: str | None = None,
    ) -> ClaimRecord:
        """Operator re-delivery: update the target if given and hand the claim to the dispatcher again."""

        record = await self._get_record(claim_id)
        if record.outcome != ClaimOutcomeEnum.CLAIMED:
            raise ClaimNotDeliverable(claim_id, record.outcome)
        channel = channel or record.delivery_channel
        destination = destination or record.delivery_destination
        if channel is None or not destination:
            raise ValueError("A delivery channel and destination are required")

        record.delivery_channel = channel
        record.delivery_destination = destination
        if record.delivery_status != ClaimDeliveryStatusEnum.DELIVERED:
            record.delivery_status = ClaimDeliveryStatusEnum.PENDING
        await self._db.commit()

        self._schedule_delivery(record)
        return record

    async def get_claim(self, claim_id: UUID) -> ClaimRecord:
        stmt = (
            select(ClaimRecord)
            .options(selectinload(ClaimRecord.delivery_attempts))
            .where(ClaimRecord.id == claim_id)
            .execution_options(populate_existing=True)
        )
        record = (await self._db.execute(stmt)).scalar_one_or_none()
        if record is None:
            raise ClaimNotFound(claim_id)
        return record

    async def _replay(self, request: ClaimRequest) -> ClaimResult:
        existing = await self._load_by_key(request.recipient_id, request.campaign_id, request.condition_number)
        if existing is None:
            raise RuntimeError("Claim insert conflicted but no existing claim record was found")

        existing = await self._await_resolution(existing)
        outcome = ClaimOutcomeEnum(existing.outcome)
        get_reward_store().record_claim(outcome.value, replayed=True)
        logger.info(
            "Replayed existing claim",
            claim_id=str(existing.id),
            recipient_id=request.recipient_id,
            campaign_id=request.campaign_id,
            condition_number=request.condition_number,
            outcome=outcome.value,
        )
        return ClaimResult.from_record(existing, replayed=True)

    async def _await_resolution(self, record: ClaimRecord) -> ClaimRecord:
        if record.outcome != ClaimOutcomeEnum.PENDING:
            return record
        age = (_utcnow() - _as_utc(record.requested_at)).total_seconds()
        remaining = self._replay_wait - age
        deadline = time.monotonic() + max(remaining, 0.0)
        while record.outcome == ClaimOutcomeEnum.PENDING and time.monotonic() < deadline:
            await asyncio.sleep(self._replay_poll)
            record = await self._get_record(record.id)
        return record

    async def _fulfil(self, record: ClaimRecord) -> ClaimResult:
        claim_id = record.id
        unit = await self._store.reserve_one(
            record.brand_id,
            record.denomination,
            record.owner_client_id,
            claim_id=claim_id,
        )
        if unit is None:
            logger.info(
                "Local pool empty; provisioning",
                claim_id=str(claim_id),
                brand_id=record.brand_id,
                denomination=str(record.denomination),
                owner_client_id=record.owner_client_id,
            )
            try:
                unit = await self.provisioning.provision(
                    record.brand_id,
                    record.denomination,
                    record.owner_client_id,
                    claim_id=claim_id,
                )
            except ProvisioningError as exc:
                return await self._resolve_failure(claim_id, exc)
        return await self._assign(claim_id, unit)

    async def _assign(self, claim_id: UUID, unit: InventoryUnit) -> ClaimResult:
        unit_id = unit.id
        source = getattr(unit.source, "value", unit.source)
        await self._store.mark_assigned(unit_id, claim_id)
        resolved = await self._resolve(
            claim_id,
            outcome=ClaimOutcomeEnum.CLAIMED,
            inventory_unit_id=unit_id,
        )
        if not resolved:
            await self._db.rollback()
            await self._release_orphaned_unit(claim_id)
            current = await self._get_record(claim_id)
            logger.warning(
                "Claim resolved concurrently; assignment discarded",
                claim_id=str(claim_id),
                unit_id=str(unit_id),
                outcome=ClaimOutcomeEnum(current.outcome).value,
            )
            return ClaimResult.from_record(current, replayed=True)

        await self._db.commit()
        record = await self._get_record(claim_id)
        get_reward_store().record_claim(ClaimOutcomeEnum.CLAIMED.value)
        logger.info("Claim fulfilled", claim_id=str(claim_id), unit_id=str(unit_id), source=source)
        self._schedule_delivery(record)
        return ClaimResult.from_record(record)

    async def _release_orphaned_unit(self, claim_id: UUID) -> None:
        # Only units committed as reserved outlive the rollback.
        orphan = await self._store.find_reserved_for_claim(claim_id)
        if orphan is None:
            return
        orphan_id = orphan.id
        await self._store.mark_failed(orphan_id, f"orphaned: claim {claim_id} resolved concurrently")
        await self._db.commit()
        logger.error(
            "Reserved unit orphaned by a concurrently resolved claim; needs operator review",
            claim_id=str(claim_id),
            unit_id=str(orphan_id),
        )

    async def _resolve_failure(self, claim_id: UUID, exc: ProvisioningError) -> ClaimResult:
        outcome = (
            ClaimOutcomeEnum.OUT_OF_STOCK
            if exc.kind == ProvisioningErrorKind.OUT_OF_STOCK
            else ClaimOutcomeEnum.PROVISIONING_FAILED
        )
        resolved = await self._resolve(
            claim_id,
            outcome=outcome,
            failure_reason=exc.reason,
            delivery_status=ClaimDeliveryStatusEnum.NOT_REQUESTED,
        )
        if resolved:
            await self._db.commit()
        else:
            await self._db.rollback()
        record = await self._get_record(claim_id)

        metrics = get_reward_store()
        metrics.record_claim(ClaimOutcomeEnum(record.outcome).value, replayed=not resolved)
        if resolved and outcome == ClaimOutcomeEnum.PROVISIONING_FAILED:
            metrics.record_provisioning_failure(exc.reason)
        log = logger.warning if outcome == ClaimOutcomeEnum.OUT_OF_STOCK else logger.error
        log(
            "Claim could not be fulfilled",
            claim_id=str(record.id),
            outcome=outcome.value,
            failure_reason=exc.reason,
        )
        return ClaimResult.from_record(record, replayed=not resolved)

    async def _resolve(self, claim_id: UUID, *, outcome: ClaimOutcomeEnum, **values: Any) -> bool:
        now = _utcnow()
        result = await self._db.execute(
            update(ClaimRecord)
            .where(ClaimRecord.id == claim_id, ClaimRecord.outcome == ClaimOutcomeEnum.PENDING)
            .values(outcome=outcome, resolved_at=now, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _schedule_delivery(self, record: ClaimRecord) -> None:
        if self._handoff is None or record.delivery_channel is None or not record.delivery_destination:
            return
        if record.delivery_status == ClaimDeliveryStatusEnum.DELIVERED:
            return
        self._handoff.schedule(record.id, DeliveryChannelEnum(record.delivery_channel), record.delivery_destination)

    async def _get_record(self, claim_id: UUID) -> ClaimRecord:
        record = await self._db.get(ClaimRecord, claim_id, populate_existing=True)
        if record is None:
            raise ClaimNotFound(claim_id)
        return record

    async def _load_by_key(self, recipient_id: str, campaign_id: str, condition_number: int) -> ClaimRecord | None:
        stmt = (
            select(ClaimRecord)
            .where(
                ClaimRecord.recipient_id == recipient_id,
                ClaimRecord.campaign_id == campaign_id,
                ClaimRecord.condition_number == condition_number,
            )
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()


__all__ = ["ClaimCoordinator", "ClaimRequest", "ClaimResult", "DeliveryRequest", "DeliveryScheduler"]
