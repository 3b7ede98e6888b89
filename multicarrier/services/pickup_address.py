"""
Pickup Address Resolution

Turns a booking's optional warehouse selection into the pickup address handed
to the carrier adapter. What the selection means depends on how the carrier
identifies warehouses (WarehouseRequirement):

- registered_id: the value is the carrier's own warehouse id and is passed
  through alongside the default address
- registered_alias: the value names a location registered in the carrier
  account; the matching location is looked up through the adapter
- full_address: the value is a site warehouse id whose full address is sent

No selection, an unknown selection or a failed lookup all fall back to the
default address: the default active warehouse, then the PICKUP_* settings.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from multicarrier.core.config import Settings, settings as default_settings
from multicarrier.core.exceptions import ShippingError
from multicarrier.models.carrier import Carrier
from multicarrier.models.warehouse import Warehouse
from multicarrier.modules.shipping.carriers.base import BaseCarrier, WarehouseRequirement

logger = logging.getLogger(__name__)


class PickupAddressResolver:
    """Resolves pickup origins from site warehouses and carrier-registered locations."""

    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or default_settings

    async def active_warehouses(self) -> List[Warehouse]:
        result = await self.db.execute(
            select(Warehouse).where(Warehouse.is_active == True).order_by(Warehouse.id)  # noqa: E712
        )
        return list(result.scalars().all())

    async def default_address(self) -> Dict[str, Any]:
        warehouses = await self.active_warehouses()
        default = next((w for w in warehouses if w.is_default), None)
        if default is not None:
            return default.to_pickup_address()
        return self.settings.pickup_address()

    async def resolve(
        self,
        carrier: Carrier,
        adapter: BaseCarrier,
        warehouse_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not warehouse_id:
            return await self.default_address()

        requirement = adapter.WAREHOUSE_REQUIREMENT
        if requirement == WarehouseRequirement.REGISTERED_ID:
            address = await self.default_address()
            address["warehouse_id"] = warehouse_id
            return address

        if requirement == WarehouseRequirement.REGISTERED_ALIAS:
            return await self._registered_address(carrier, adapter, warehouse_id)

        warehouse = await self._site_warehouse(warehouse_id)
        if warehouse is not None:
            return warehouse.to_pickup_address()

        logger.warning(f"Warehouse {warehouse_id} not found for {carrier.code}, using default pickup address")
        return await self.default_address()

    async def _site_warehouse(self, warehouse_id: str) -> Optional[Warehouse]:
        if not str(warehouse_id).isdigit():
            return None
        warehouse = await self.db.get(Warehouse, int(warehouse_id))
        if warehouse is None or not warehouse.is_active:
            return None
        return warehouse

    async def _registered_address(
        self,
        carrier: Carrier,
        adapter: BaseCarrier,
        alias: str,
    ) -> Dict[str, Any]:
        address = await self.default_address()
        try:
            locations = await adapter.get_registered_pickup_locations()
        except ShippingError as e:
            logger.error(f"Failed to load registered pickup locations for {carrier.code}: {e.message}")
            return address

        for location in locations:
            if alias in (location.get("name"), location.get("carrier_warehouse_name"), str(location.get("id"))):
                address.update({
                    "name": location.get("name") or address["name"],
                    "carrier_warehouse_name": location.get("carrier_warehouse_name") or location.get("name"),
                    "phone": location.get("phone") or address["phone"],
                    "warehouse_id": alias,
                })
                return address

        logger.warning(f"Registered pickup location '{alias}' not found for {carrier.code}, using default")
        return address

    async def registered_pickup_locations(self, carrier: Carrier, adapter: BaseCarrier) -> List[Dict[str, Any]]:
        """
        Locations a booking may name for this carrier.

        Carriers without a registered list (or whose list cannot be fetched)
        get the site warehouses instead.
        """
        if adapter.WAREHOUSE_REQUIREMENT != WarehouseRequirement.FULL_ADDRESS:
            try:
                locations = await adapter.get_registered_pickup_locations()
                return [dict(location, is_registered=True) for location in locations]
            except ShippingError as e:
                logger.error(f"Failed to load registered pickup locations for {carrier.code}: {e.message}")

        return [
            {
                "id": str(w.id),
                "name": w.name,
                "carrier_warehouse_name": w.name,
                "address": w.address_1,
                "city": w.city,
                "pincode": w.pincode,
                "phone": w.phone or "",
                "is_default": w.is_default,
                "is_registered": False,
            }
            for w in await self.active_warehouses()
        ]
