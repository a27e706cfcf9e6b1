"""Inventory pool services."""

from .importer import ParsedInventoryCsv, parse_inventory_csv, validate_card_code
from .store import (
    ImportResult,
    ImportRowError,
    InventoryLevel,
    InventoryStore,
    InventoryUnitImport,
    inventory_alert_severity,
)

__all__ = [
    "ImportResult",
    "ImportRowError",
    "InventoryLevel",
    "InventoryStore",
    "InventoryUnitImport",
    "ParsedInventoryCsv",
    "inventory_alert_severity",
    "parse_inventory_csv",
    "validate_card_code",
]
