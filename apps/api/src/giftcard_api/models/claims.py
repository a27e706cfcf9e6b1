"""Claim and delivery attempt models."""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from giftcard_api.db.base import Base
from giftcard_api.models.inventory import enum_values


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClaimOutcomeEnum(str, Enum):
    """Resolution of a reward claim."""
    PENDING = "pending"
    CLAIMED = "claimed"
    OUT_OF_STOCK = "out_of_stock"
    PROVISIONING_FAILED = "provisioning_failed"


class ClaimDeliveryStatusEnum(str, Enum):
    """Terminal delivery status reported back by the dispatcher."""
    NOT_REQUESTED = "not_requested"
    PENDING = "pending"
    DELIVERED = "delivered"
    EXHAUSTED = "exhausted"


class DeliveryChannelEnum(str, Enum):
    SMS = "sms"
    EMAIL = "email"


class DeliveryAttemptStatusEnum(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


class ClaimRecord(Base):
    """Binding between a reward request and the inventory unit that satisfies it."""
    __tablename__ = "claim_records"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    recipient_id = Column(String(128), nullable=False)
    campaign_id = Column(String(128), nullable=False)
    condition_number = Column(Integer, nullable=False)
    brand_id = Column(String(64), nullable=False)
    denomination = Column(Numeric(12, 2), nullable=False)
    owner_client_id = Column(String(128), nullable=False)
    inventory_unit_id = Column(UUID(as_uuid=True), ForeignKey("inventory_units.id"), nullable=True)
    outcome = Column(
        SqlEnum(ClaimOutcomeEnum, name="claim_outcome_enum", values_callable=enum_values),
        nullable=False,
        default=ClaimOutcomeEnum.PENDING,
        server_default=ClaimOutcomeEnum.PENDING.value,
    )
    failure_reason = Column(Text, nullable=True)
    delivery_channel = Column(
        SqlEnum(DeliveryChannelEnum, name="delivery_channel_enum", values_callable=enum_values),
        nullable=True,
    )
    delivery_destination = Column(String(320), nullable=True)
    delivery_status = Column(
        SqlEnum(ClaimDeliveryStatusEnum, name="claim_delivery_status_enum", values_callable=enum_values),
        nullable=False,
        default=ClaimDeliveryStatusEnum.NOT_REQUESTED,
        server_default=ClaimDeliveryStatusEnum.NOT_REQUESTED.value,
    )
    recovery_attempts = Column(Integer, nullable=False, default=0, server_default="0")
    requested_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    delivery_attempts = relationship(
        "DeliveryAttempt",
        back_populates="claim_record",
        order_by="DeliveryAttempt.attempt_number",
        lazy="raise",
    )

    __table_args__ = (
        UniqueConstraint(
            "recipient_id",
            "campaign_id",
            "condition_number",
            name="uq_claim_records_recipient_campaign_condition",
        ),
        Index("ix_claim_records_outcome_requested", "outcome", "requested_at"),
    )


class DeliveryAttempt(Base):
    """One immutable try at pushing a claimed reward to its recipient."""
    __tablename__ = "delivery_attempts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    claim_record_id = Column(UUID(as_uuid=True), ForeignKey("claim_records.id"), nullable=False)
    channel = Column(
        SqlEnum(DeliveryChannelEnum, name="delivery_channel_enum", values_callable=enum_values),
        nullable=False,
    )
    attempt_number = Column(Integer, nullable=False)
    status = Column(
        SqlEnum(DeliveryAttemptStatusEnum, name="delivery_attempt_status_enum", values_callable=enum_values),
        nullable=False,
    )
    provider = Column(String(64), nullable=True)
    provider_message_id = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)
    attempted_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    claim_record = relationship("ClaimRecord", back_populates="delivery_attempts")

    __table_args__ = (
        UniqueConstraint("claim_record_id", "attempt_number", name="uq_delivery_attempts_claim_attempt"),
    )
