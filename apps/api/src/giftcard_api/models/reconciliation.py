"""Balance verification and supplier audit models."""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Enum as SqlEnum, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import UUID

from giftcard_api.db.base import Base
from giftcard_api.models.inventory import enum_values


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BalanceCheckStatusEnum(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class BalanceCheck(Base):
    """Point-in-time verification of a unit's remaining value (append-only)."""
    __tablename__ = "balance_checks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    inventory_unit_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    checked_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    reported_balance = Column(Numeric(12, 2), nullable=True)
    expected_balance = Column(Numeric(12, 2), nullable=True)
    discrepancy = Column(Numeric(12, 2), nullable=False)
    status = Column(
        SqlEnum(BalanceCheckStatusEnum, name="balance_check_status_enum", values_callable=enum_values),
        nullable=False,
    )
    source = Column(String(64), nullable=False)
    error_message = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)


class SupplierPurchaseLog(Base):
    """Audit row for every supplier purchase call, successful or not."""
    __tablename__ = "supplier_purchase_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    supplier = Column(String(64), nullable=False)
    brand_id = Column(String(64), nullable=False)
    brand_code = Column(String(64), nullable=False)
    denomination = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    reference = Column(String(128), nullable=False)
    claim_record_id = Column(UUID(as_uuid=True), nullable=True)
    inventory_unit_id = Column(UUID(as_uuid=True), nullable=True)
    outcome = Column(String(32), nullable=False)
    error_kind = Column(String(32), nullable=True)
    error_message = Column(Text, nullable=True)
    http_status = Column(Integer, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    request_payload = Column(JSON, nullable=True)
    response_payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
