"""Provisioning fallback used when the local pool has no matching unit."""

from __future__ import annotations

import time
from decimal import Decimal
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from giftcard_api.core.errors import ProvisioningError, ProvisioningErrorKind, SupplierError
from giftcard_api.core.settings import settings
from giftcard_api.models.inventory import GiftCardBrand, InventoryUnit
from giftcard_api.models.reconciliation import SupplierPurchaseLog
from giftcard_api.observability.rewards import get_reward_store
from giftcard_api.observability.tracing import get_tracer
from giftcard_api.services.inventory.store import InventoryStore

from .supplier import SupplierCard, SupplierClient


class ProvisioningAdapter:
    """Sources a unit in fixed priority order: local pool re-check, then one supplier purchase."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        supplier: SupplierClient | None,
        store: InventoryStore | None = None,
        currency: str | None = None,
    ) -> None:
        self._db = db_session
        self._supplier = supplier
        self._store = store or InventoryStore(db_session)
        self._currency = currency or settings.supplier_currency

    async def provision(
        self,
        brand_id: str,
        denomination: Decimal,
        owner_client_id: str,
        *,
        claim_id: UUID | None = None,
    ) -> InventoryUnit:
        """Return a reserved unit or raise ``ProvisioningError``.

        A supplier-purchased unit is committed in the ``reserved`` state before
        it is returned so a crash between purchase and assignment never loses
        a paid-for card.
        """

        tracer = get_tracer()
        with tracer.start_as_current_span("provisioning.provision") as span:
            span.set_attribute("giftcard.brand_id", brand_id)
            span.set_attribute("giftcard.denomination", str(denomination))

            unit = await self._store.reserve_one(brand_id, denomination, owner_client_id, claim_id=claim_id)
            if unit is not None:
                span.set_attribute("giftcard.source", "local")
                logger.info(
                    "Provisioning satisfied from local pool on re-check",
                    unit_id=str(unit.id),
                    claim_id=str(claim_id) if claim_id else None,
                )
                return unit

            brand = await self._db.get(GiftCardBrand, brand_id)
            if self._supplier is None or (brand is not None and not brand.provisioning_enabled):
                span.set_attribute("giftcard.source", "none")
                raise ProvisioningError(
                    ProvisioningErrorKind.OUT_OF_STOCK,
                    f"No {brand_id} {denomination} units available and supplier provisioning is disabled",
                )

            span.set_attribute("giftcard.source", "supplier")
            brand_code = brand.supplier_code if brand is not None else brand_id
            currency = brand.currency if brand is not None and brand.currency else self._currency
            return await self._purchase(
                brand_id=brand_id,
                brand_code=brand_code,
                denomination=denomination,
                currency=currency,
                owner_client_id=owner_client_id,
                claim_id=claim_id,
            )

    async def _purchase(
        self,
        *,
        brand_id: str,
        brand_code: str,
        denomination: Decimal,
        currency: str,
        owner_client_id: str,
        claim_id: UUID | None,
    ) -> InventoryUnit:
        assert self._supplier is not None
        reference = f"claim-{claim_id}" if claim_id else f"adhoc-{uuid4().hex}"
        log = SupplierPurchaseLog(
            supplier=self._supplier.name,
            brand_id=brand_id,
            brand_code=brand_code,
            denomination=denomination,
            currency=currency,
            reference=reference,
            claim_record_id=claim_id,
        )
        metrics = get_reward_store()

        started = time.perf_counter()
        try:
            card: SupplierCard = await self._supplier.purchase(
                brand_code=brand_code,
                denomination=denomination,
                currency=currency,
                reference=reference,
            )
        except SupplierError as exc:
            log.duration_ms = int((time.perf_counter() - started) * 1000)
            log.outcome = "error"
            log.error_kind = exc.kind.value
            log.error_message = str(exc)
            log.http_status = exc.status_code
            log.response_payload = exc.payload if isinstance(exc.payload, dict) else None
            self._db.add(log)
            await self._db.commit()
            metrics.record_supplier_purchase(exc.kind.value)
            logger.warning(
                "Supplier purchase failed",
                supplier=self._supplier.name,
                brand_code=brand_code,
                denomination=str(denomination),
                reference=reference,
                kind=exc.kind.value,
                status_code=exc.status_code,
                error=str(exc),
            )
            raise ProvisioningError(exc.kind, str(exc)) from exc

        log.duration_ms = int((time.perf_counter() - started) * 1000)
        log.http_status = card.http_status
        log.request_payload = card.request_payload
        log.response_payload = card.response_payload
        try:
            unit = await self._store.add_provisioned_unit(
                brand_id=brand_id,
                denomination=denomination,
                owner_client_id=owner_client_id,
                currency=currency,
                source_code=card.code,
                supplier_reference=card.supplier_reference or card.reference,
                claim_id=claim_id,
            )
        except IntegrityError as exc:
            await self._db.rollback()
            kind = ProvisioningErrorKind.SUPPLIER_REJECTED
            message = "Supplier returned a card code already in inventory"
            log.outcome = "error"
            log.error_kind = kind.value
            log.error_message = message
            self._db.add(log)
            await self._db.commit()
            metrics.record_supplier_purchase(kind.value)
            logger.error(
                "Supplier purchase returned a duplicate card code",
                supplier=self._supplier.name,
                brand_code=brand_code,
                denomination=str(denomination),
                reference=reference,
                supplier_reference=card.supplier_reference,
            )
            raise ProvisioningError(kind, message) from exc

        log.outcome = "success"
        log.inventory_unit_id = unit.id
        self._db.add(log)
        await self._db.commit()
        metrics.record_supplier_purchase("success")
        logger.info(
            "Supplier purchase succeeded",
            supplier=self._supplier.name,
            brand_code=brand_code,
            denomination=str(denomination),
            reference=reference,
            unit_id=str(unit.id),
            duration_ms=log.duration_ms,
        )
        return unit


__all__ = ["ProvisioningAdapter"]
