"""CSV parsing for admin gift card uploads."""

from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from .store import ImportRowError, InventoryUnitImport

_CODE_PATTERN = re.compile(r"^[A-Za-z0-9 -]+$")
_CODE_MIN_LENGTH = 4
_CODE_MAX_LENGTH = 50

_COLUMN_ALIASES = {
    "brand_id": ("brand_id", "brand", "brand_code"),
    "denomination": ("denomination", "value", "amount", "face_value"),
    "code": ("code", "card_code", "source_code", "redemption_code"),
    "owner_client_id": ("owner_client_id", "client_id", "client"),
    "currency": ("currency",),
    "balance": ("balance", "current_balance"),
}


@dataclass
class ParsedInventoryCsv:
    units: list[InventoryUnitImport] = field(default_factory=list)
    errors: list[ImportRowError] = field(default_factory=list)


def validate_card_code(code: str) -> str | None:
    """Return an error message for a malformed redemption code, or None."""

    if not code:
        return "Card code is required"
    if not _CODE_MIN_LENGTH <= len(code) <= _CODE_MAX_LENGTH:
        return f"Card code must be between {_CODE_MIN_LENGTH} and {_CODE_MAX_LENGTH} characters"
    if not _CODE_PATTERN.match(code):
        return "Card code may only contain letters, numbers, dashes and spaces"
    return None


def _parse_amount(raw: str | None) -> Decimal | None:
    if raw is None:
        return None
    cleaned = raw.strip().replace("$", "").replace(",", "")
    if not cleaned:
        return None
    try:
        return Decimal(cleaned).quantize(Decimal("0.01"))
    except InvalidOperation:
        raise ValueError(f"'{raw}' is not a valid amount") from None


def _resolve_columns(fieldnames: list[str]) -> dict[str, str]:
    normalized = {name.strip().lower(): name for name in fieldnames if name}
    resolved: dict[str, str] = {}
    for key, aliases in _COLUMN_ALIASES.items():
        for alias in aliases:
            if alias in normalized:
                resolved[key] = normalized[alias]
                break
    return resolved


def parse_inventory_csv(
    content: str,
    *,
    default_owner_client_id: str | None = None,
    default_brand_id: str | None = None,
    default_currency: str = "USD",
) -> ParsedInventoryCsv:
    """Parse an uploaded CSV into import rows; malformed rows become errors, not exceptions."""

    parsed = ParsedInventoryCsv()
    reader = csv.DictReader(io.StringIO(content.lstrip("\ufeff")))
    if not reader.fieldnames:
        parsed.errors.append(ImportRowError(None, "CSV file has no header row"))
        return parsed

    columns = _resolve_columns(list(reader.fieldnames))
    missing = [key for key in ("code", "denomination") if key not in columns]
    if "brand_id" not in columns and not default_brand_id:
        missing.append("brand_id")
    if "owner_client_id" not in columns and not default_owner_client_id:
        missing.append("owner_client_id")
    if missing:
        parsed.errors.append(ImportRowError(None, f"Missing required columns: {', '.join(missing)}"))
        return parsed

    # Row 1 is the header.
    for row_number, row in enumerate(reader, start=2):
        if not any((value or "").strip() for value in row.values() if isinstance(value, str)):
            continue

        code = (row.get(columns["code"]) or "").strip().upper()
        code_error = validate_card_code(code)
        if code_error:
            parsed.errors.append(ImportRowError(row_number, code_error, source_code=code or None))
            continue

        try:
            denomination = _parse_amount(row.get(columns["denomination"]))
            balance = _parse_amount(row.get(columns["balance"])) if "balance" in columns else None
        except ValueError as exc:
            parsed.errors.append(ImportRowError(row_number, str(exc), source_code=code))
            continue
        if denomination is None or denomination <= 0:
            parsed.errors.append(
                ImportRowError(row_number, "Denomination must be greater than zero", source_code=code)
            )
            continue

        brand_id = (row.get(columns["brand_id"]) or "").strip() if "brand_id" in columns else ""
        brand_id = brand_id or (default_brand_id or "")
        owner = (row.get(columns["owner_client_id"]) or "").strip() if "owner_client_id" in columns else ""
        owner = owner or (default_owner_client_id or "")
        if not brand_id or not owner:
            parsed.errors.append(
                ImportRowError(row_number, "Brand and owning client are required", source_code=code)
            )
            continue

        currency = (row.get(columns["currency"]) or "").strip().upper() if "currency" in columns else ""
        parsed.units.append(
            InventoryUnitImport(
                brand_id=brand_id.lower(),
                denomination=denomination,
                owner_client_id=owner,
                source_code=code,
                currency=currency or default_currency,
                current_balance=balance,
                row_number=row_number,
            )
        )

    return parsed


__all__ = ["ParsedInventoryCsv", "parse_inventory_csv", "validate_card_code"]
