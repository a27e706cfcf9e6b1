"""Bounded-retry delivery of claimed gift cards over SMS or email."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from giftcard_api.core.errors import (
    ClaimNotDeliverable,
    ClaimNotFound,
    DeliveryChannelError,
    DeliveryInProgress,
    InvalidStateTransition,
    PermanentDeliveryError,
)
from giftcard_api.core.settings import settings
from giftcard_api.models.claims import (
    ClaimOutcomeEnum,
    ClaimRecord,
    DeliveryAttempt,
    DeliveryAttemptStatusEnum,
    DeliveryChannelEnum,
)
from giftcard_api.models.inventory import InventoryUnit, InventoryUnitStatusEnum
from giftcard_api.observability.rewards import get_reward_store
from giftcard_api.observability.tracing import get_tracer
from giftcard_api.services.inventory.store import InventoryStore

from .channels import EmailBackend, SMSBackend
from .templates import render_gift_card_email, render_gift_card_sms

SleepFn = Callable[[float], Awaitable[None]]


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    EXHAUSTED = "exhausted"


def backoff_delay(attempt_number: int, *, base: float, maximum: float) -> float:
    """Exponential delay before the attempt following ``attempt_number``."""

    return min(base * (2 ** (attempt_number - 1)), maximum)


class DeliveryDispatcher:
    """Pushes an assigned unit to its recipient, writing one DeliveryAttempt per try."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        sms_backend: SMSBackend | None = None,
        email_backend: EmailBackend | None = None,
        store: InventoryStore | None = None,
        max_attempts: int | None = None,
        backoff_base_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._db = db_session
        self._sms = sms_backend
        self._email = email_backend
        self._store = store or InventoryStore(db_session)
        self._max_attempts = max_attempts or settings.delivery_max_attempts
        self._backoff_base = (
            backoff_base_seconds if backoff_base_seconds is not None else settings.delivery_backoff_base_seconds
        )
        self._backoff_max = (
            backoff_max_seconds if backoff_max_seconds is not None else settings.delivery_backoff_max_seconds
        )
        self._sleep = sleep

    async def deliver(
        self,
        claim_record_id: UUID,
        channel: DeliveryChannelEnum | str,
        destination: str,
    ) -> DeliveryOutcome:
        channel = DeliveryChannelEnum(channel)
        tracer = get_tracer()
        with tracer.start_as_current_span("delivery.deliver") as span:
            span.set_attribute("giftcard.claim_id", str(claim_record_id))
            span.set_attribute("giftcard.channel", channel.value)

            claim = await self._db.get(ClaimRecord, claim_record_id, populate_existing=True)
            if claim is None:
                raise ClaimNotFound(claim_record_id)
            if claim.outcome != ClaimOutcomeEnum.CLAIMED or claim.inventory_unit_id is None:
                raise ClaimNotDeliverable(claim_record_id, claim.outcome)
            unit = await self._store.get_unit(claim.inventory_unit_id)

            last_number, already_sent = await self._attempt_state(claim_record_id)
            if already_sent or unit.status == InventoryUnitStatusEnum.DELIVERED:
                if unit.status == InventoryUnitStatusEnum.ASSIGNED:
                    await self._store.mark_delivered(unit.id)
                    await self._db.commit()
                logger.info("Claim already delivered; skipping send", claim_id=str(claim_record_id))
                span.set_attribute("giftcard.delivery_outcome", DeliveryOutcome.DELIVERED.value)
                return DeliveryOutcome.DELIVERED

            if unit.status != InventoryUnitStatusEnum.ASSIGNED:
                logger.error(
                    "Refusing to deliver a unit that is no longer assigned",
                    claim_id=str(claim_record_id),
                    unit_id=str(unit.id),
                    unit_status=unit.status.value,
                )
                raise ClaimNotDeliverable(claim_record_id, claim.outcome, unit_status=unit.status)

            outcome = await self._run_attempts(claim, unit, channel, destination, first_number=last_number + 1)
            span.set_attribute("giftcard.delivery_outcome", outcome.value)
            return outcome

    async def _attempt_state(self, claim_record_id: UUID) -> tuple[int, bool]:
        last_number = (
            await self._db.execute(
                select(func.max(DeliveryAttempt.attempt_number)).where(
                    DeliveryAttempt.claim_record_id == claim_record_id
                )
            )
        ).scalar_one_or_none()
        sent = (
            await self._db.execute(
                select(DeliveryAttempt.id)
                .where(
                    DeliveryAttempt.claim_record_id == claim_record_id,
                    DeliveryAttempt.status == DeliveryAttemptStatusEnum.SENT,
                )
                .limit(1)
            )
        ).scalar_one_or_none()
        return int(last_number or 0), sent is not None

    async def _run_attempts(
        self,
        claim: ClaimRecord,
        unit: InventoryUnit,
        channel: DeliveryChannelEnum,
        destination: str,
        *,
        first_number: int,
    ) -> DeliveryOutcome:
        metrics = get_reward_store()
        for index in range(1, self._max_attempts + 1):
            attempt_number = first_number + index - 1
            provider = self._provider_name(channel)
            try:
                message_id = await self._send(channel, destination, unit)
            except DeliveryChannelError as exc:
                final = index == self._max_attempts or not exc.transient
                status = DeliveryAttemptStatusEnum.EXHAUSTED if final else DeliveryAttemptStatusEnum.FAILED
                await self._write_attempt(
                    claim.id,
                    channel=channel,
                    attempt_number=attempt_number,
                    status=status,
                    provider=exc.provider or provider,
                    error_message=str(exc),
                )
                if final:
                    metrics.record_delivery(DeliveryOutcome.EXHAUSTED.value, claim_id=str(claim.id))
                    logger.error(
                        "Delivery exhausted; unit remains assigned for operator action",
                        claim_id=str(claim.id),
                        unit_id=str(unit.id),
                        channel=channel.value,
                        attempt_number=attempt_number,
                        transient=exc.transient,
                        error=str(exc),
                    )
                    return DeliveryOutcome.EXHAUSTED

                delay = backoff_delay(index, base=self._backoff_base, maximum=self._backoff_max)
                logger.warning(
                    "Delivery attempt failed; retrying",
                    claim_id=str(claim.id),
                    channel=channel.value,
                    attempt_number=attempt_number,
                    retry_in_seconds=delay,
                    error=str(exc),
                )
                await self._sleep(delay)
                continue

            # Sent row is committed before the unit transition.
            await self._write_attempt(
                claim.id,
                channel=channel,
                attempt_number=attempt_number,
                status=DeliveryAttemptStatusEnum.SENT,
                provider=self._provider_name(channel),
                provider_message_id=message_id,
            )
            try:
                await self._store.mark_delivered(unit.id)
            except InvalidStateTransition:
                await self._db.rollback()
                logger.error(
                    "Gift card sent but unit could not be marked delivered",
                    claim_id=str(claim.id),
                    unit_id=str(unit.id),
                    attempt_number=attempt_number,
                )
                raise
            await self._db.commit()
            metrics.record_delivery(DeliveryOutcome.DELIVERED.value, claim_id=str(claim.id))
            logger.info(
                "Gift card delivered",
                claim_id=str(claim.id),
                unit_id=str(unit.id),
                channel=channel.value,
                attempt_number=attempt_number,
                provider_message_id=message_id,
            )
            return DeliveryOutcome.DELIVERED

        return DeliveryOutcome.EXHAUSTED  # pragma: no cover - loop always returns

    async def _send(self, channel: DeliveryChannelEnum, destination: str, unit: InventoryUnit) -> str | None:
        label = settings.delivery_message_brand_label
        if channel == DeliveryChannelEnum.SMS:
            if self._sms is None:
                raise PermanentDeliveryError("No SMS backend configured")
            body = render_gift_card_sms(
                brand_id=unit.brand_id,
                denomination=unit.denomination,
                currency=unit.currency or "USD",
                code=unit.source_code,
                sender_label=label,
            )
            return await self._sms.send_sms(destination, body)

        if self._email is None:
            raise PermanentDeliveryError("No email backend configured")
        rendered = render_gift_card_email(
            brand_id=unit.brand_id,
            denomination=unit.denomination,
            currency=unit.currency or "USD",
            code=unit.source_code,
            sender_label=label,
        )
        return await self._email.send_email(
            destination,
            rendered.subject,
            rendered.text_body,
            body_html=rendered.html_body,
        )

    def _provider_name(self, channel: DeliveryChannelEnum) -> str | None:
        backend = self._sms if channel == DeliveryChannelEnum.SMS else self._email
        return getattr(backend, "provider", None)

    async def _write_attempt(
        self,
        claim_record_id: UUID,
        *,
        channel: DeliveryChannelEnum,
        attempt_number: int,
        status: DeliveryAttemptStatusEnum,
        provider: str | None,
        provider_message_id: str | None = None,
        error_message: str | None = None,
    ) -> None:
        self._db.add(
            DeliveryAttempt(
                claim_record_id=claim_record_id,
                channel=channel,
                attempt_number=attempt_number,
                status=status,
                provider=provider,
                provider_message_id=provider_message_id,
                error_message=error_message,
            )
        )
        try:
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            logger.warning(
                "Delivery attempt number already taken",
                claim_id=str(claim_record_id),
                attempt_number=attempt_number,
            )
            raise DeliveryInProgress(claim_record_id) from exc


__all__ = ["DeliveryDispatcher", "DeliveryOutcome", "backoff_delay"]
