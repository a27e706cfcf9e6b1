from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import Field, model_validator

from ._base import _CamelModel

ClaimOutcome = Literal["pending", "claimed", "out_of_stock", "provisioning_failed"]
DeliveryChannel = Literal["sms", "email"]
DeliveryStatus = Literal["not_requested", "pending", "delivered", "exhausted"]
AttemptStatus = Literal["sent", "failed", "exhausted"]


class DeliveryTarget(_CamelModel):
    channel: DeliveryChannel
    destination: str = Field(..., min_length=3, max_length=320)


class ConditionMetRequest(_CamelModel):
    """A campaign condition satisfied for a recipient."""

    recipient_id: str = Field(..., min_length=1, max_length=128)
    campaign_id: str = Field(..., min_length=1, max_length=128)
    condition_number: int = Field(..., ge=1)
    brand_id: str = Field(..., min_length=1, max_length=64)
    denomination: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    owner_client_id: str = Field(..., min_length=1, max_length=128)
    delivery: DeliveryTarget | None = None

    @model_validator(mode="after")
    def _normalize_brand(self) -> "ConditionMetRequest":
        self.brand_id = self.brand_id.strip().lower()
        return self


class ClaimResponse(_CamelModel):
    claim_id: UUID
    outcome: ClaimOutcome
    inventory_unit_id: UUID | None = None
    failure_reason: str | None = None
    replayed: bool = False


class DeliveryAttemptResponse(_CamelModel):
    id: UUID
    channel: DeliveryChannel
    attempt_number: int
    status: AttemptStatus
    provider: str | None = None
    provider_message_id: str | None = None
    error_message: str | None = None
    attempted_at: datetime


class ClaimDetailResponse(_CamelModel):
    id: UUID
    recipient_id: str
    campaign_id: str
    condition_number: int
    brand_id: str
    denomination: Decimal
    owner_client_id: str
    outcome: ClaimOutcome
    inventory_unit_id: UUID | None = None
    failure_reason: str | None = None
    delivery_channel: DeliveryChannel | None = None
    delivery_destination: str | None = None
    delivery_status: DeliveryStatus
    requested_at: datetime
    resolved_at: datetime | None = None
    delivered_at: datetime | None = None
    delivery_attempts: list[DeliveryAttemptResponse] = Field(default_factory=list)


class RedeliveryRequest(_CamelModel):
    channel: DeliveryChannel | None = None
    destination: str | None = Field(default=None, min_length=3, max_length=320)


class RedeliveryResponse(_CamelModel):
    claim_id: UUID
    delivery_status: DeliveryStatus
    delivery_channel: DeliveryChannel
    delivery_destination: str
