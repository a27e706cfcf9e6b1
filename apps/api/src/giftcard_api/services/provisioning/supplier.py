"""Supplier API clients used for on-demand card purchase and balance lookups."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Protocol

import httpx
from loguru import logger

from giftcard_api.core.errors import ProvisioningErrorKind, SupplierError
from giftcard_api.core.settings import Settings, settings as default_settings

_SUCCESS_CODE = "000"
_OUT_OF_STOCK_STATUSES = {409, 410}
_OUT_OF_STOCK_CODES = {"out_of_stock", "insufficient_stock", "stock_unavailable"}


@dataclass(slots=True)
class SupplierCard:
    """A card purchased from the supplier."""

    code: str
    reference: str
    supplier_reference: str | None = None
    url: str | None = None
    http_status: int | None = None
    request_payload: dict[str, Any] = field(default_factory=dict)
    response_payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SupplierBalance:
    balance: Decimal
    currency: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class SupplierClient(Protocol):
    name: str

    async def purchase(
        self,
        *,
        brand_code: str,
        denomination: Decimal,
        currency: str,
        reference: str,
    ) -> SupplierCard:
        ...

    async def check_balance(self, *, card_code: str, brand_code: str) -> SupplierBalance:
        ...


def sign_request(secret_key: str, timestamp: int, body: str | None) -> str:
    """HMAC-SHA256 over ``timestamp + body``, base64 encoded."""

    message = f"{timestamp}{body}" if body else str(timestamp)
    digest = hmac.new(secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _parse_body(response: httpx.Response) -> dict[str, Any]:
    try:
        parsed = response.json()
    except ValueError:
        return {"text": response.text}
    if isinstance(parsed, Mapping):
        return dict(parsed)
    return {"data": parsed}


def classify_supplier_response(status_code: int, payload: Mapping[str, Any]) -> SupplierError | None:
    """Return the classified error for a supplier response, or None when it succeeded."""

    supplier_code = str(payload.get("code") or "").strip()
    message = str(payload.get("message") or payload.get("error") or "").strip()
    normalized = supplier_code.lower()

    if status_code == 429 or status_code >= 500:
        return SupplierError(
            ProvisioningErrorKind.SUPPLIER_UNAVAILABLE,
            message or f"Supplier returned HTTP {status_code}",
            status_code=status_code,
            payload=dict(payload),
        )
    if status_code in _OUT_OF_STOCK_STATUSES or normalized in _OUT_OF_STOCK_CODES:
        return SupplierError(
            ProvisioningErrorKind.OUT_OF_STOCK,
            message or "Supplier has no stock for this brand and denomination",
            status_code=status_code,
            payload=dict(payload),
        )
    if status_code >= 400:
        return SupplierError(
            ProvisioningErrorKind.SUPPLIER_REJECTED,
            message or f"Supplier rejected the request with HTTP {status_code}",
            status_code=status_code,
            payload=dict(payload),
        )
    if supplier_code and supplier_code != _SUCCESS_CODE:
        return SupplierError(
            ProvisioningErrorKind.SUPPLIER_REJECTED,
            message or f"Supplier error code {supplier_code}",
            status_code=status_code,
            payload=dict(payload),
        )
    return None


class TilloSupplierClient:
    """Signed client for the Tillo v2 purchase and balance endpoints."""

    name = "tillo"

    def __init__(
        self,
        *,
        api_key: str,
        secret_key: str,
        base_url: str = "https://api.tillo.tech/v2",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http_client = http_client

    async def purchase(
        self,
        *,
        brand_code: str,
        denomination: Decimal,
        currency: str,
        reference: str,
    ) -> SupplierCard:
        body = {
            "brand": brand_code,
            "face_value": {"amount": str(denomination), "currency": currency},
            "reference": reference,
        }
        status_code, payload = await self._post("/orders", body)
        data = payload.get("data") if isinstance(payload.get("data"), Mapping) else {}
        code = data.get("code") if isinstance(data, Mapping) else None
        if not isinstance(code, str) or not code.strip():
            raise SupplierError(
                ProvisioningErrorKind.SUPPLIER_REJECTED,
                "Supplier response did not include a card code",
                status_code=status_code,
                payload=payload,
            )
        supplier_reference = data.get("reference") or data.get("order_id")
        return SupplierCard(
            code=code.strip(),
            reference=reference,
            supplier_reference=str(supplier_reference) if supplier_reference else None,
            url=data.get("url"),
            http_status=status_code,
            request_payload=body,
            response_payload=_redact(payload),
        )

    async def check_balance(self, *, card_code: str, brand_code: str) -> SupplierBalance:
        status_code, payload = await self._post("/balance", {"brand": brand_code, "code": card_code})
        data = payload.get("data") if isinstance(payload.get("data"), Mapping) else {}
        raw_balance = data.get("balance") if isinstance(data, Mapping) else None
        if isinstance(raw_balance, Mapping):
            currency = raw_balance.get("currency")
            raw_balance = raw_balance.get("amount")
        else:
            currency = data.get("currency") if isinstance(data, Mapping) else None
        try:
            balance = Decimal(str(raw_balance)).quantize(Decimal("0.01"))
        except (InvalidOperation, ValueError):
            raise SupplierError(
                ProvisioningErrorKind.SUPPLIER_REJECTED,
                "Supplier balance response did not include a balance",
                status_code=status_code,
                payload=payload,
            ) from None
        return SupplierBalance(balance=balance, currency=currency, payload=_redact(payload))

    async def _post(self, path: str, body: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        serialized = json.dumps(body, separators=(",", ":"))
        timestamp = int(time.time() * 1000)
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "API-Key": self._api_key,
            "Signature": sign_request(self._secret_key, timestamp, serialized),
            "Timestamp": str(timestamp),
        }
        url = f"{self._base_url}{path}"

        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        owns_client = self._http_client is None
        try:
            response = await client.post(url, content=serialized, headers=headers, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise SupplierError(ProvisioningErrorKind.SUPPLIER_UNAVAILABLE, f"Supplier timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise SupplierError(ProvisioningErrorKind.SUPPLIER_UNAVAILABLE, f"Supplier unreachable: {exc}") from exc
        finally:
            if owns_client:
                await client.aclose()

        payload = _parse_body(response)
        logger.info(
            "Supplier request completed",
            supplier=self.name,
            path=path,
            status_code=response.status_code,
            supplier_code=payload.get("code"),
        )
        error = classify_supplier_response(response.status_code, payload)
        if error is not None:
            raise error
        return response.status_code, payload


def _redact(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Strip redemption codes from payloads that end up in audit rows."""

    redacted = dict(payload)
    data = redacted.get("data")
    if isinstance(data, Mapping):
        redacted["data"] = {key: ("***" if key in {"code", "pin"} else value) for key, value in data.items()}
    return redacted


def build_supplier_client(
    config: Settings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> SupplierClient | None:
    """Return the configured supplier client, or None when purchasing is disabled."""

    config = config or default_settings
    if not config.supplier_configured:
        return None
    return TilloSupplierClient(
        api_key=config.supplier_api_key or "",
        secret_key=config.supplier_secret_key or "",
        base_url=config.supplier_base_url,
        timeout=config.supplier_timeout_seconds,
        http_client=http_client,
    )


__all__ = [
    "SupplierBalance",
    "SupplierCard",
    "SupplierClient",
    "TilloSupplierClient",
    "build_supplier_client",
    "classify_supplier_response",
    "sign_request",
]
