"""Supplier provisioning services."""

from .adapter import ProvisioningAdapter
from .supplier import (
    SupplierBalance,
    SupplierCard,
    SupplierClient,
    TilloSupplierClient,
    build_supplier_client,
)

__all__ = [
    "ProvisioningAdapter",
    "SupplierBalance",
    "SupplierCard",
    "SupplierClient",
    "TilloSupplierClient",
    "build_supplier_client",
]
