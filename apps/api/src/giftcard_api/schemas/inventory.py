from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import Field

from ._base import _CamelModel

AlertSeverity = Literal["critical", "warning", "info"]


class ImportRowErrorResponse(_CamelModel):
    row: int | None = None
    code: str | None = None
    message: str


class InventoryImportResponse(_CamelModel):
    imported: int
    duplicates: int
    errors: list[ImportRowErrorResponse] = Field(default_factory=list)
    duplicate_codes: list[str] = Field(default_factory=list)


class InventoryLevelResponse(_CamelModel):
    brand_id: str
    denomination: Decimal
    owner_client_id: str
    available: int
    total: int
    severity: AlertSeverity | None = None


class BalanceCheckResponse(_CamelModel):
    id: UUID
    inventory_unit_id: UUID
    checked_at: datetime
    status: Literal["success", "error"]
    reported_balance: Decimal | None = None
    expected_balance: Decimal | None = None
    discrepancy: Decimal
    source: str
    error_message: str | None = None


class BalanceBatchRequest(_CamelModel):
    brand_id: str | None = None
    owner_client_id: str | None = None
    limit: int | None = Field(default=None, ge=1, le=1000)


class BalanceBatchResponse(_CamelModel):
    checked: int
    succeeded: int
    failed: int
    drifted: int
