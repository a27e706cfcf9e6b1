"""Fire-and-track handoff of claimed rewards to the delivery dispatcher."""

from __future__ import annotations

import asyncio
from typing import Callable, Set
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from giftcard_api.core.errors import EngineError
from giftcard_api.models.claims import DeliveryChannelEnum
from giftcard_api.services.claims.coordinator import ClaimCoordinator

from .channels import EmailBackend, SMSBackend, build_email_backend, build_sms_backend
from .dispatcher import DeliveryDispatcher, DeliveryOutcome

DispatcherFactory = Callable[[AsyncSession], DeliveryDispatcher]


async def run_delivery(
    session_factory: async_sessionmaker[AsyncSession],
    claim_id: UUID,
    channel: DeliveryChannelEnum,
    destination: str,
    *,
    dispatcher_factory: DispatcherFactory,
) -> DeliveryOutcome:
    """Deliver in a fresh session and report the terminal status back to the claim."""

    async with session_factory() as session:
        dispatcher = dispatcher_factory(session)
        outcome = await dispatcher.deliver(claim_id, channel, destination)
        await ClaimCoordinator(session).record_delivery_outcome(claim_id, outcome.value)
        return outcome


class DeliveryHandoff:
    """Schedules deliveries on the running loop and drains them on shutdown."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        sms_backend: SMSBackend | None = None,
        email_backend: EmailBackend | None = None,
        dispatcher_factory: DispatcherFactory | None = None,
    ) -> None:
        self._session_factory = session_factory
        sms = sms_backend if sms_backend is not None else build_sms_backend()
        email = email_backend if email_backend is not None else build_email_backend()
        self._dispatcher_factory = dispatcher_factory or (
            lambda session: DeliveryDispatcher(session, sms_backend=sms, email_backend=email)
        )
        self._tasks: Set[asyncio.Task[DeliveryOutcome | None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, claim_id: UUID, channel: DeliveryChannelEnum, destination: str) -> asyncio.Task:
        task = asyncio.create_task(
            self._run(claim_id, channel, destination),
            name=f"delivery:{claim_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Delivery scheduled", claim_id=str(claim_id), channel=channel.value)
        return task

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight deliveries; deliveries are never cancelled mid-attempt."""

        if not self._tasks:
            return
        pending = list(self._tasks)
        logger.info("Draining in-flight deliveries", count=len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logger.warning("Deliveries still running after drain timeout", count=len(still_running))

    async def _run(self, claim_id: UUID, channel: DeliveryChannelEnum, destination: str) -> DeliveryOutcome | None:
        try:
            return await run_delivery(
                self._session_factory,
                claim_id,
                channel,
                destination,
                dispatcher_factory=self._dispatcher_factory,
            )
        except EngineError as exc:
            logger.error("Delivery handoff failed", claim_id=str(claim_id), error=str(exc))
        except Exception:
            logger.exception("Unexpected delivery handoff failure", claim_id=str(claim_id))
        return None


__all__ = ["DeliveryHandoff", "run_delivery"]
