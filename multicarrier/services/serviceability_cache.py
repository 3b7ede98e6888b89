"""
Serviceability Cache

Persisted (carrier, pincode) serviceability facts with a write-through
fallback to the carrier API.

- A stored row is authoritative until overwritten by a fresh API check
- A missing row triggers one API check whose result is stored
- COD additionally requires is_cod_available
- API failures fail closed: not serviceable, logged, nothing stored
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from multicarrier.models.carrier import Carrier
from multicarrier.models.serviceability import ServiceabilityRecord
from multicarrier.modules.shipping.carriers.base import BaseCarrier, ShipmentRequest

logger = logging.getLogger(__name__)


class ServiceabilityCache:
    """Pincode serviceability lookups backed by carrier_pincode_serviceability."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_record(self, carrier_id: int, pincode: str) -> Optional[ServiceabilityRecord]:
        result = await self.db.execute(
            select(ServiceabilityRecord).where(
                ServiceabilityRecord.carrier_id == carrier_id,
                ServiceabilityRecord.pincode == pincode,
            )
        )
        return result.scalar_one_or_none()

    async def is_serviceable(
        self,
        carrier: Carrier,
        shipment: ShipmentRequest,
        adapter: BaseCarrier,
    ) -> bool:
        record = await self.get_record(carrier.id, shipment.delivery_pincode)

        if record is not None:
            if not record.is_serviceable:
                return False
            if shipment.is_cod and not record.is_cod_available:
                return False
            return True

        return await self.check_via_api(carrier, shipment, adapter, existing=None)

    async def check_via_api(
        self,
        carrier: Carrier,
        shipment: ShipmentRequest,
        adapter: BaseCarrier,
        existing: Optional[ServiceabilityRecord] = None,
    ) -> bool:
        """Ask the carrier, store the answer, return it. Fails closed."""
        try:
            serviceable = bool(await adapter.check_serviceability(
                shipment.pickup_pincode,
                shipment.delivery_pincode,
                shipment.payment_mode,
            ))
        except Exception as e:
            logger.warning(
                f"Serviceability check failed for {carrier.code} -> {shipment.delivery_pincode}: {e}"
            )
            return False

        logger.info(
            f"Serviceability API result for {carrier.code} -> {shipment.delivery_pincode}: {serviceable}"
        )
        await self._store(carrier, shipment, serviceable, existing)
        return serviceable

    async def refresh(self, carrier: Carrier, shipment: ShipmentRequest, adapter: BaseCarrier) -> bool:
        """Overwrite the stored fact with a fresh API answer."""
        existing = await self.get_record(carrier.id, shipment.delivery_pincode)
        return await self.check_via_api(carrier, shipment, adapter, existing=existing)

    async def _store(
        self,
        carrier: Carrier,
        shipment: ShipmentRequest,
        serviceable: bool,
        existing: Optional[ServiceabilityRecord],
    ) -> None:
        # COD availability is only learned when the question was asked for COD
        cod_available = serviceable if shipment.is_cod else True
        now = datetime.now(timezone.utc)

        try:
            async with self.db.begin_nested():
                if existing is not None:
                    existing.is_serviceable = serviceable
                    existing.is_cod_available = cod_available
                    existing.last_checked_at = now
                else:
                    self.db.add(ServiceabilityRecord(
                        carrier_id=carrier.id,
                        pincode=shipment.delivery_pincode,
                        is_serviceable=serviceable,
                        is_cod_available=cod_available,
                        last_checked_at=now,
                    ))
        except SQLAlchemyError as e:
            # A concurrent request may have inserted the same pair
            logger.warning(f"Could not store serviceability for {carrier.code}/{shipment.delivery_pincode}: {e}")
