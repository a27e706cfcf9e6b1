"""Typed failures raised across the fulfillment engine."""

from __future__ import annotations

from enum import Enum
from typing import Any
from uuid import UUID


class EngineError(RuntimeError):
    """Base class for fulfillment engine failures."""


class InvalidStateTransition(EngineError):
    """Raised when a unit is asked to move from a state other than the expected predecessor."""

    def __init__(
        self,
        unit_id: UUID | str,
        *,
        current: Any,
        target: Any,
        expected: tuple[Any, ...] = (),
    ) -> None:
        self.unit_id = unit_id
        self.current = _value(current)
        self.target = _value(target)
        self.expected = tuple(_value(item) for item in expected)
        expected_label = ", ".join(str(item) for item in self.expected) or "n/a"
        super().__init__(
            f"Inventory unit {unit_id} cannot move from {self.current} to {self.target} "
            f"(expected one of: {expected_label})"
        )


class UnitNotFound(EngineError):
    """Raised when an inventory unit id does not resolve."""

    def __init__(self, unit_id: UUID | str) -> None:
        self.unit_id = unit_id
        super().__init__(f"Inventory unit {unit_id} not found")


class ClaimNotFound(EngineError):
    """Raised when a claim record id does not resolve."""

    def __init__(self, claim_id: UUID | str) -> None:
        self.claim_id = claim_id
        super().__init__(f"Claim record {claim_id} not found")


class ClaimNotDeliverable(EngineError):
    """Raised when delivery is requested for a claim that holds no assigned unit."""

    def __init__(self, claim_id: UUID | str, outcome: Any, *, unit_status: Any = None) -> None:
        self.claim_id = claim_id
        self.outcome = _value(outcome)
        self.unit_status = _value(unit_status)
        if self.unit_status is not None:
            message = f"Claim record {claim_id} holds a unit in state {self.unit_status} and cannot be delivered"
        else:
            message = f"Claim record {claim_id} has outcome {self.outcome} and cannot be delivered"
        super().__init__(message)


class DeliveryInProgress(EngineError):
    """Raised when another dispatcher wrote the same attempt number first."""

    def __init__(self, claim_id: UUID | str) -> None:
        self.claim_id = claim_id
        super().__init__(f"Delivery for claim record {claim_id} is already in progress")


class ProvisioningErrorKind(str, Enum):
    OUT_OF_STOCK = "out_of_stock"
    SUPPLIER_UNAVAILABLE = "supplier_unavailable"
    SUPPLIER_REJECTED = "supplier_rejected"


class SupplierError(EngineError):
    """Classified failure from a supplier API call."""

    def __init__(
        self,
        kind: ProvisioningErrorKind,
        message: str,
        *,
        status_code: int | None = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.payload = payload

    @property
    def transient(self) -> bool:
        return self.kind == ProvisioningErrorKind.SUPPLIER_UNAVAILABLE


class ProvisioningError(EngineError):
    """Typed outcome of a failed provisioning attempt."""

    def __init__(self, kind: ProvisioningErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def reason(self) -> str:
        return f"{self.kind.value}: {self}"


class DeliveryChannelError(EngineError):
    """Base class for classified delivery channel failures."""

    transient: bool = False

    def __init__(self, message: str, *, provider: str | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.code = code


class TransientDeliveryError(DeliveryChannelError):
    """Rate limits, timeouts and 5xx responses; eligible for retry."""

    transient = True


class PermanentDeliveryError(DeliveryChannelError):
    """Invalid destination or a hard provider rejection; never retried."""

    transient = False


def _value(item: Any) -> Any:
    return item.value if isinstance(item, Enum) else item


__all__ = [
    "ClaimNotDeliverable",
    "ClaimNotFound",
    "DeliveryInProgress",
    "DeliveryChannelError",
    "EngineError",
    "InvalidStateTransition",
    "PermanentDeliveryError",
    "ProvisioningError",
    "ProvisioningErrorKind",
    "SupplierError",
    "TransientDeliveryError",
    "UnitNotFound",
]
