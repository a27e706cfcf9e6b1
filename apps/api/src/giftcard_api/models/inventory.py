"""Gift card inventory models."""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    Index,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from giftcard_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class InventoryUnitStatusEnum(str, Enum):
    """Lifecycle of a single gift card unit."""
    AVAILABLE = "available"
    RESERVED = "reserved"
    ASSIGNED = "assigned"
    DELIVERED = "delivered"
    FAILED = "failed"
    EXPIRED = "expired"


class InventoryUnitSourceEnum(str, Enum):
    """How a unit entered the pool."""
    CSV_IMPORT = "csv_import"
    SUPPLIER = "supplier"


class GiftCardBrand(Base):
    """Brand catalogue entry mapping a brand slug to its supplier configuration."""
    __tablename__ = "gift_card_brands"

    id = Column(String(64), primary_key=True)
    name = Column(String, nullable=False)
    supplier_brand_code = Column(String(64), nullable=True)
    currency = Column(String(3), nullable=False, server_default="USD")
    provisioning_enabled = Column(Boolean, nullable=False, server_default="true", default=True)
    balance_check_enabled = Column(Boolean, nullable=False, server_default="true", default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def supplier_code(self) -> str:
        return self.supplier_brand_code or self.id


class InventoryUnit(Base):
    """One physical or virtual gift card owned by a client pool."""
    __tablename__ = "inventory_units"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    brand_id = Column(String(64), nullable=False)
    denomination = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, server_default="USD", default="USD")
    owner_client_id = Column(String(128), nullable=False)
    source_code = Column(String(255), nullable=False, unique=True)
    source = Column(
        SqlEnum(InventoryUnitSourceEnum, name="inventory_unit_source_enum", values_callable=enum_values),
        nullable=False,
        default=InventoryUnitSourceEnum.CSV_IMPORT,
        server_default=InventoryUnitSourceEnum.CSV_IMPORT.value,
    )
    supplier_reference = Column(String(255), nullable=True)
    status = Column(
        SqlEnum(InventoryUnitStatusEnum, name="inventory_unit_status_enum", values_callable=enum_values),
        nullable=False,
        default=InventoryUnitStatusEnum.AVAILABLE,
        server_default=InventoryUnitStatusEnum.AVAILABLE.value,
    )
    reserved_claim_id = Column(UUID(as_uuid=True), nullable=True)
    claim_record_id = Column(UUID(as_uuid=True), nullable=True)
    current_balance = Column(Numeric(12, 2), nullable=True)
    last_balance_check_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)
    reserved_at = Column(DateTime(timezone=True), nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_inventory_units_pool_status", "brand_id", "denomination", "owner_client_id", "status"),
        Index("ix_inventory_units_reserved_claim", "reserved_claim_id"),
    )
