"""
Multi-Carrier Shipping Service

Facade over the rate-shopping pipeline and the shipment lifecycle.

Rate shopping:
    request -> ShipmentRequest -> RateAggregator -> RulesEngine -> ranking
    -> response, cached as JSON text for RATE_CACHE_TTL_SECONDS

A rate-shopping call never raises for carrier failures; with no surviving
options the response has an empty `rates` list and `recommended = None`.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from multicarrier.core.config import Settings, settings as default_settings
from multicarrier.core.exceptions import NotFoundError
from multicarrier.core.rate_cache import RateCache, rate_cache as default_rate_cache
from multicarrier.models.carrier import Carrier
from multicarrier.models.shipment import Shipment
from multicarrier.modules.shipping.carriers import CarrierFactory
from multicarrier.modules.shipping.carriers.base import ShipmentRequest, TrackingInfo
from multicarrier.schemas.shipping import BookingOptions, OrderDetails, RateShoppingRequest
from multicarrier.services.label_storage import LabelStorage
from multicarrier.services.ranking import rank_rates, recommend, summarize
from multicarrier.services.rate_aggregator import RateAggregator
from multicarrier.services.rules_engine import RulesEngine
from multicarrier.services.serviceability_cache import ServiceabilityCache
from multicarrier.services.shipment_builder import prepare_shipment_request
from multicarrier.services.shipment_lifecycle import ShipmentLifecycleManager

logger = logging.getLogger(__name__)


class MultiCarrierShippingService:
    """
    Rate shopping and shipment operations across every configured carrier.

    Configuration (pickup address, thresholds, timeouts) comes from the
    injected Settings; nothing is looked up ad hoc.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        cache: Optional[RateCache] = None,
        factory=CarrierFactory,
        label_storage: Optional[LabelStorage] = None,
    ):
        self.db = db
        self.settings = settings or default_settings
        self.cache = cache if cache is not None else default_rate_cache
        self.factory = factory
        self.serviceability = ServiceabilityCache(db)
        self.aggregator = RateAggregator(
            db,
            settings=self.settings,
            serviceability=self.serviceability,
            factory=factory,
        )
        self.rules = RulesEngine(db)
        self.lifecycle = ShipmentLifecycleManager(
            db,
            settings=self.settings,
            factory=factory,
            label_storage=label_storage,
        )

    # ==================== Rate Shopping ====================

    async def get_rates_for_comparison(self, request: RateShoppingRequest) -> Dict[str, Any]:
        """
        Compare rates across carriers.

        Returns a JSON-ready dict with shipment_details, rates (ranked),
        summary, recommended and metadata. Identical requests within the
        cache TTL return the same payload without calling carriers, unless
        force_refresh is set (the fresh result is still cached).
        """
        return json.loads(await self.get_rates_payload(request))

    async def get_rates_payload(self, request: RateShoppingRequest) -> str:
        """Rate comparison as the JSON text stored in the cache."""
        shipment = prepare_shipment_request(request, self.settings)
        cache_key = self.cache.make_key(
            shipment.pickup_pincode,
            shipment.delivery_pincode,
            shipment.billable_weight,
            shipment.payment_mode,
            context=self._cache_context(shipment),
        )
        if not request.force_refresh:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return cached
        payload = await self._compare(shipment, cache_key)
        await self.cache.set(cache_key, payload)
        return payload

    @staticmethod
    def _cache_context(shipment: ShipmentRequest) -> Dict[str, Any]:
        # eligibility, rules, recommendation and shipment_details read these
        context = shipment.to_dict()
        for field in ("pickup_pincode", "delivery_pincode", "billable_weight", "payment_mode"):
            context.pop(field)
        return context

    async def _compare(self, shipment: ShipmentRequest, cache_key: str) -> str:
        aggregated = await self.aggregator.aggregate(shipment)
        rates = await self.rules.apply_business_rules(aggregated.rates, shipment)
        ranked = rank_rates(rates)
        recommended = recommend(ranked, shipment, self.settings)

        response = {
            "shipment_details": shipment.to_dict(),
            "rates": [rate.to_dict() for rate in ranked],
            "summary": summarize(ranked),
            "recommended": recommended.to_dict() if recommended else None,
            "metadata": {
                "total_carriers_checked": len(aggregated.carriers_checked),
                "total_options_available": len(ranked),
                "failed_carriers": aggregated.failed_carriers,
                "cache_key": cache_key,
                "generated_at": datetime.now(timezone.utc).isoformat(),
            },
        }
        logger.info(
            f"Rate comparison {shipment.pickup_pincode}->{shipment.delivery_pincode}: "
            f"{len(ranked)} options from {len(aggregated.carriers_checked)} carriers"
        )
        return json.dumps(jsonable_encoder(response), sort_keys=True)

    # ==================== Carriers ====================

    async def list_active_carriers(self) -> List[Dict[str, Any]]:
        carriers = await self.aggregator.load_active_carriers()
        return [
            {
                "id": c.id,
                "code": c.code,
                "name": c.display_name or c.name,
                "logo_url": c.logo_url,
                "priority": c.priority,
                "supported_payment_modes": c.supported_payment_modes or [],
                "is_live": c.is_live,
                "adapter_available": self.factory.is_supported(c.code),
            }
            for c in carriers
        ]

    async def get_carrier(self, carrier_id: int) -> Carrier:
        carrier = await self.db.get(Carrier, carrier_id)
        if carrier is None:
            raise NotFoundError(f"Carrier {carrier_id} not found", details={"carrier_id": carrier_id})
        return carrier

    async def check_serviceability(self, carrier_id: int, pincode: str, payment_mode: str = "prepaid") -> bool:
        """Serviceability of one carrier for a delivery pincode, from the warehouse."""
        carrier = await self.get_carrier(carrier_id)
        shipment = ShipmentRequest(
            pickup_pincode=self.settings.PICKUP_PINCODE,
            delivery_pincode=pincode,
            weight=0.0,
            volumetric_weight=0.0,
            billable_weight=0.0,
            payment_mode=payment_mode,
        )
        adapter = self.factory.make(carrier, settings=self.settings)
        try:
            return await self.serviceability.is_serviceable(carrier, shipment, adapter)
        finally:
            await adapter.close()

    async def probe_carrier(self, carrier_id: int) -> Dict[str, Any]:
        """Real connectivity check against the carrier API."""
        carrier = await self.get_carrier(carrier_id)
        adapter = self.factory.make(carrier, settings=self.settings, validate=False)
        try:
            result = await adapter.probe_connection()
        finally:
            await adapter.close()
        logger.info(f"Probe {carrier.code}: success={result['success']} in {result['response_time_ms']}ms")
        return result

    async def get_registered_pickup_locations(self, carrier_id: int) -> List[Dict[str, Any]]:
        """Pickup locations a booking with this carrier may name as warehouse_id."""
        carrier = await self.get_carrier(carrier_id)
        adapter = self.factory.make(carrier, settings=self.settings, validate=False)
        try:
            return await self.lifecycle.pickups.registered_pickup_locations(carrier, adapter)
        finally:
            await adapter.close()

    # ==================== Shipments ====================

    async def get_shipment(self, shipment_id: int) -> Shipment:
        result = await self.db.execute(select(Shipment).where(Shipment.id == shipment_id))
        shipment = result.scalar_one_or_none()
        if shipment is None:
            raise NotFoundError(f"Shipment {shipment_id} not found", details={"shipment_id": shipment_id})
        return shipment

    async def create_shipment(
        self,
        order: OrderDetails,
        carrier_id: int,
        service_code: str,
        options: Optional[BookingOptions] = None,
    ) -> Shipment:
        return await self.lifecycle.create(order, carrier_id, service_code, options)

    async def cancel_shipment(self, shipment: Shipment) -> bool:
        return await self.lifecycle.cancel(shipment)

    async def track_shipment(self, shipment: Shipment) -> Optional[TrackingInfo]:
        return await self.lifecycle.track(shipment)

    async def schedule_pickup(self, shipment: Shipment) -> bool:
        return await self.lifecycle.schedule_pickup(shipment)

    async def generate_label(self, shipment: Shipment) -> Optional[str]:
        return await self.lifecycle.generate_label(shipment)

    async def tracking_url(self, shipment: Shipment) -> Optional[str]:
        carrier = await self.get_carrier(shipment.carrier_id)
        adapter = self.factory.make(carrier, settings=self.settings, validate=False)
        return adapter.tracking_url(shipment.tracking_number)


async def get_multi_carrier_service(db: AsyncSession) -> MultiCarrierShippingService:
    """Create shipping service instance."""
    return MultiCarrierShippingService(db)
