"""Worker wiring for stale pending claim recovery sweeps."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from giftcard_api.core.errors import EngineError
from giftcard_api.core.settings import settings
from giftcard_api.models.claims import ClaimDeliveryStatusEnum, ClaimOutcomeEnum, ClaimRecord
from giftcard_api.observability.rewards import get_reward_store
from giftcard_api.services.claims.coordinator import ClaimCoordinator, DeliveryScheduler

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]
CoordinatorFactory = Callable[[AsyncSession], ClaimCoordinator]

RECOVERY_EXHAUSTED_REASON = "recovery_exhausted"


async def _lease(session: AsyncSession, claim_id: UUID, seen_attempts: int, now: datetime) -> bool:
    result = await session.execute(
        update(ClaimRecord)
        .where(
            ClaimRecord.id == claim_id,
            ClaimRecord.outcome == ClaimOutcomeEnum.PENDING,
            ClaimRecord.recovery_attempts == seen_attempts,
        )
        .values(recovery_attempts=seen_attempts + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def recover_stale_pending_claims(
    session: AsyncSession,
    *,
    coordinator_factory: CoordinatorFactory | None = None,
    limit: int | None = None,
    max_attempts: int | None = None,
    pending_timeout_seconds: int | None = None,
) -> Dict[str, int]:
    """Resume claims stuck in ``pending``; give up on those past the attempt cap."""

    coordinator_factory = coordinator_factory or (lambda db: ClaimCoordinator(db))
    limit = limit or settings.claim_recovery_limit
    max_attempts = max_attempts or settings.claim_recovery_max_attempts
    timeout = pending_timeout_seconds if pending_timeout_seconds is not None else settings.claim_pending_timeout_seconds

    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=timeout)
    stmt = (
        select(ClaimRecord.id, ClaimRecord.recovery_attempts)
        .where(ClaimRecord.outcome == ClaimOutcomeEnum.PENDING, ClaimRecord.updated_at < cutoff)
        .order_by(ClaimRecord.requested_at.asc())
        .limit(limit)
    )
    candidates = (await session.execute(stmt)).all()

    summary: Dict[str, int] = {"scanned": len(candidates), "resumed": 0, "exhausted": 0, "skipped": 0, "errors": 0}
    coordinator = coordinator_factory(session)
    for claim_id, attempts in candidates:
        seen = int(attempts or 0)
        if not await _lease(session, claim_id, seen, now):
            summary["skipped"] += 1
            continue

        if seen + 1 > max_attempts:
            result = await session.execute(
                update(ClaimRecord)
                .where(ClaimRecord.id == claim_id, ClaimRecord.outcome == ClaimOutcomeEnum.PENDING)
                .values(
                    outcome=ClaimOutcomeEnum.PROVISIONING_FAILED,
                    failure_reason=RECOVERY_EXHAUSTED_REASON,
                    delivery_status=ClaimDeliveryStatusEnum.NOT_REQUESTED,
                    resolved_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount == 1:
                summary["exhausted"] += 1
                metrics = get_reward_store()
                metrics.record_claim(ClaimOutcomeEnum.PROVISIONING_FAILED.value)
                metrics.record_provisioning_failure(RECOVERY_EXHAUSTED_REASON)
                logger.error("Pending claim abandoned after recovery attempts", claim_id=str(claim_id), attempts=seen + 1)
            continue

        try:
            outcome = await coordinator.resume(claim_id)
        except EngineError as exc:
            await session.rollback()
            summary["errors"] += 1
            logger.error("Pending claim recovery failed", claim_id=str(claim_id), error=str(exc))
            continue
        except Exception as exc:
            await session.rollback()
            summary["errors"] += 1
            logger.exception("Pending claim recovery crashed", claim_id=str(claim_id), error=str(exc))
            continue
        summary["resumed"] += 1
        logger.info(
            "Recovered pending claim",
            claim_id=str(claim_id),
            outcome=outcome.outcome.value,
            attempt=seen + 1,
        )

    return summary


class ClaimRecoveryWorker:
    """Periodically resumes claims abandoned in the ``pending`` state."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        handoff: DeliveryScheduler | None = None,
        interval_seconds: int | None = None,
        limit: int | None = None,
        max_attempts: int | None = None,
        pending_timeout_seconds: int | None = None,
        trigger_label: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._handoff = handoff
        self.interval_seconds = interval_seconds or settings.claim_recovery_interval_seconds
        self._limit = limit or settings.claim_recovery_limit
        self._max_attempts = max_attempts or settings.claim_recovery_max_attempts
        self._pending_timeout = (
            pending_timeout_seconds if pending_timeout_seconds is not None else settings.claim_pending_timeout_seconds
        )
        self._trigger_label = trigger_label or settings.claim_recovery_trigger_label
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Claim recovery worker started",
            interval_seconds=self.interval_seconds,
            limit=self._limit,
            max_attempts=self._max_attempts,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Claim recovery worker stopped")

    async def run_once(self, *, triggered_by: str | None = None) -> Dict[str, int]:
        trigger = triggered_by or self._trigger_label
        session = await self._ensure_session()
        async with session as managed_session:
            summary = await recover_stale_pending_claims(
                managed_session,
                coordinator_factory=lambda db: ClaimCoordinator(db, handoff=self._handoff),
                limit=self._limit,
                max_attempts=self._max_attempts,
                pending_timeout_seconds=self._pending_timeout,
            )
        logger.bind(summary=summary).info("Claim recovery sweep completed", trigger=trigger)
        return summary

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - loop must survive a failed sweep
                logger.exception("Claim recovery iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


__all__ = ["ClaimRecoveryWorker", "RECOVERY_EXHAUSTED_REASON", "recover_stale_pending_claims"]
