"""SQLAlchemy models package."""

from .inventory import (  # noqa: F401
    GiftCardBrand,
    InventoryUnit,
    InventoryUnitSourceEnum,
    InventoryUnitStatusEnum,
)
from .claims import (  # noqa: F401
    ClaimDeliveryStatusEnum,
    ClaimOutcomeEnum,
    ClaimRecord,
    DeliveryAttempt,
    DeliveryAttemptStatusEnum,
    DeliveryChannelEnum,
)
from .reconciliation import (  # noqa: F401
    BalanceCheck,
    BalanceCheckStatusEnum,
    SupplierPurchaseLog,
)
