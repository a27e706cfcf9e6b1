"""Reward claim trigger and claim inspection endpoints."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from giftcard_api.api.dependencies.security import require_engine_api_key
from giftcard_api.core.errors import ClaimNotDeliverable, ClaimNotFound, InvalidStateTransition
from giftcard_api.db.session import get_session
from giftcard_api.models.claims import ClaimRecord, DeliveryAttempt, DeliveryChannelEnum
from giftcard_api.observability.rewards import get_reward_store
from giftcard_api.schemas.claims import (
    ClaimDetailResponse,
    ClaimResponse,
    ConditionMetRequest,
    DeliveryAttemptResponse,
    RedeliveryRequest,
    RedeliveryResponse,
)
from giftcard_api.services.claims import ClaimCoordinator, ClaimRequest, ClaimResult, DeliveryRequest
from giftcard_api.services.provisioning import ProvisioningAdapter, SupplierClient, build_supplier_client

router = APIRouter(
    prefix="/rewards",
    tags=["Rewards"],
    dependencies=[Depends(require_engine_api_key)],
)


def get_supplier_client() -> SupplierClient | None:
    return build_supplier_client()


async def get_claim_coordinator(
    request: Request,
    session: AsyncSession = Depends(get_session),
    supplier: SupplierClient | None = Depends(get_supplier_client),
) -> ClaimCoordinator:
    return ClaimCoordinator(
        session,
        provisioning=ProvisioningAdapter(session, supplier=supplier),
        handoff=getattr(request.app.state, "delivery_handoff", None),
    )


def _value(item) -> str | None:
    return getattr(item, "value", item)


def _serialize_result(result: ClaimResult) -> ClaimResponse:
    return ClaimResponse(
        claim_id=result.claim_id,
        outcome=result.outcome.value,
        inventory_unit_id=result.inventory_unit_id,
        failure_reason=result.failure_reason,
        replayed=result.replayed,
    )


def _serialize_attempt(attempt: DeliveryAttempt) -> DeliveryAttemptResponse:
    return DeliveryAttemptResponse(
        id=attempt.id,
        channel=_value(attempt.channel),
        attempt_number=attempt.attempt_number,
        status=_value(attempt.status),
        provider=attempt.provider,
        provider_message_id=attempt.provider_message_id,
        error_message=attempt.error_message,
        attempted_at=attempt.attempted_at,
    )


def _serialize_claim(record: ClaimRecord) -> ClaimDetailResponse:
    return ClaimDetailResponse(
        id=record.id,
        recipient_id=record.recipient_id,
        campaign_id=record.campaign_id,
        condition_number=record.condition_number,
        brand_id=record.brand_id,
        denomination=record.denomination,
        owner_client_id=record.owner_client_id,
        outcome=_value(record.outcome),
        inventory_unit_id=record.inventory_unit_id,
        failure_reason=record.failure_reason,
        delivery_channel=_value(record.delivery_channel),
        delivery_destination=record.delivery_destination,
        delivery_status=_value(record.delivery_status),
        requested_at=record.requested_at,
        resolved_at=record.resolved_at,
        delivered_at=record.delivered_at,
        delivery_attempts=[_serialize_attempt(attempt) for attempt in record.delivery_attempts],
    )


@router.post("/claims", response_model=ClaimResponse, summary="Claim a reward for a satisfied condition")
async def claim_reward(
    payload: ConditionMetRequest,
    coordinator: ClaimCoordinator = Depends(get_claim_coordinator),
) -> ClaimResponse:
    delivery = (
        DeliveryRequest(channel=DeliveryChannelEnum(payload.delivery.channel), destination=payload.delivery.destination)
        if payload.delivery
        else None
    )
    try:
        result = await coordinator.claim(
            ClaimRequest(
                recipient_id=payload.recipient_id,
                campaign_id=payload.campaign_id,
                condition_number=payload.condition_number,
                brand_id=payload.brand_id,
                denomination=payload.denomination,
                owner_client_id=payload.owner_client_id,
                delivery=delivery,
            )
        )
    except InvalidStateTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _serialize_result(result)


@router.get("/claims/{claim_id}", response_model=ClaimDetailResponse, summary="Claim with delivery attempts")
async def get_claim(
    claim_id: UUID,
    coordinator: ClaimCoordinator = Depends(get_claim_coordinator),
) -> ClaimDetailResponse:
    try:
        record = await coordinator.get_claim(claim_id)
    except ClaimNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _serialize_claim(record)


@router.post(
    "/claims/{claim_id}/deliveries",
    response_model=RedeliveryResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Re-run delivery for a claimed reward",
)
async def redeliver_claim(
    claim_id: UUID,
    payload: RedeliveryRequest,
    coordinator: ClaimCoordinator = Depends(get_claim_coordinator),
) -> RedeliveryResponse:
    try:
        record = await coordinator.request_delivery(
            claim_id,
            channel=DeliveryChannelEnum(payload.channel) if payload.channel else None,
            destination=payload.destination,
        )
    except ClaimNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ClaimNotDeliverable as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    logger.info("Operator re-delivery requested", claim_id=str(claim_id))
    return RedeliveryResponse(
        claim_id=record.id,
        delivery_status=_value(record.delivery_status),
        delivery_channel=_value(record.delivery_channel),
        delivery_destination=record.delivery_destination,
    )


@router.get("/observability", summary="Reward fulfillment counters")
async def reward_observability() -> dict[str, object]:
    return get_reward_store().snapshot().as_dict()
