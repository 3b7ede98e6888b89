"""
Rate Aggregator

Fetches quotes from every eligible carrier concurrently and normalises them
into RateOption records.

Pipeline:
1. Active carriers, highest priority first
2. Eligibility limits (weight, COD, insurance value)
3. Pincode serviceability (ServiceabilityCache)
4. One task per carrier, each bounded by CARRIER_RATE_TIMEOUT_SECONDS,
   joined with return_exceptions so a slow or failing carrier only
   contributes zero options
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from multicarrier.core.config import Settings, settings as default_settings
from multicarrier.core.exceptions import ShippingError
from multicarrier.models.carrier import Carrier
from multicarrier.modules.shipping.carriers import CarrierFactory
from multicarrier.modules.shipping.carriers.base import BaseCarrier, CarrierQuote, ShipmentRequest
from multicarrier.services.rate_option import RateOption
from multicarrier.services.serviceability_cache import ServiceabilityCache
from multicarrier.services.shipment_builder import billable_weight_for_divisor

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_CODE = "standard"
DEFAULT_SERVICE_NAME = "Standard Delivery"
DEFAULT_DELIVERY_DAYS = 3
DEFAULT_RATING = 4.0
DEFAULT_SUCCESS_RATE = 95.0


@dataclass
class AggregationResult:
    rates: List[RateOption] = field(default_factory=list)
    carriers_checked: List[Carrier] = field(default_factory=list)
    failed_carriers: List[str] = field(default_factory=list)


class RateAggregator:
    """Concurrent fan-out of rate requests across eligible carriers."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        serviceability: Optional[ServiceabilityCache] = None,
        factory=CarrierFactory,
    ):
        self.db = db
        self.settings = settings or default_settings
        self.serviceability = serviceability or ServiceabilityCache(db)
        self.factory = factory

    async def load_active_carriers(self) -> List[Carrier]:
        result = await self.db.execute(
            select(Carrier)
            .where(Carrier.is_active == True)  # noqa: E712
            .order_by(Carrier.priority.desc(), Carrier.id)
        )
        carriers = list(result.scalars().all())
        logger.info(f"Loaded {len(carriers)} active carriers: {[c.code for c in carriers]}")
        return carriers

    def is_eligible(self, carrier: Carrier, shipment: ShipmentRequest) -> bool:
        """Static limits only; no I/O."""
        weight = billable_weight_for_divisor(shipment, carrier.volumetric_divisor, self.settings)
        if carrier.max_weight and weight > carrier.max_weight:
            return False

        if shipment.is_cod:
            if not carrier.supports_payment_mode("cod"):
                return False
            if carrier.max_cod_amount and shipment.cod_amount > carrier.max_cod_amount:
                return False

        if shipment.requires_insurance and carrier.max_insurance_value:
            if shipment.order_value > carrier.max_insurance_value:
                return False

        return True

    def _make_adapter(self, carrier: Carrier) -> Optional[BaseCarrier]:
        try:
            return self.factory.make(carrier, settings=self.settings)
        except ShippingError as e:
            logger.warning(f"Carrier {carrier.code} skipped: {e.message}")
            return None

    async def eligible_carriers(
        self,
        carriers: List[Carrier],
        shipment: ShipmentRequest,
    ) -> List[Tuple[Carrier, BaseCarrier]]:
        eligible = []
        for carrier in carriers:
            if not self.is_eligible(carrier, shipment):
                logger.info(f"Carrier {carrier.code} filtered out by eligibility limits")
                continue

            adapter = self._make_adapter(carrier)
            if adapter is None:
                continue

            if await self.serviceability.is_serviceable(carrier, shipment, adapter):
                eligible.append((carrier, adapter))
            else:
                logger.info(f"Carrier {carrier.code} does not service {shipment.delivery_pincode}")
                await adapter.close()

        logger.info(f"Eligible carriers after all checks: {[c.code for c, _ in eligible]}")
        return eligible

    async def fetch_rates(
        self,
        eligible: List[Tuple[Carrier, BaseCarrier]],
        shipment: ShipmentRequest,
    ) -> AggregationResult:
        timeout = self.settings.CARRIER_RATE_TIMEOUT_SECONDS
        tasks = [
            asyncio.wait_for(adapter.get_rate_async(shipment), timeout=timeout)
            for _, adapter in eligible
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        aggregated = AggregationResult(carriers_checked=[carrier for carrier, _ in eligible])
        for (carrier, _), result in zip(eligible, results):
            if isinstance(result, asyncio.TimeoutError):
                logger.warning(f"Rate fetch from {carrier.code} timed out after {timeout}s")
                aggregated.failed_carriers.append(carrier.code)
            elif isinstance(result, ShippingError):
                logger.error(f"Failed to fetch rates from {carrier.code}: {result.message}")
                aggregated.failed_carriers.append(carrier.code)
            elif isinstance(result, BaseException):
                logger.error(f"Failed to fetch rates from {carrier.code}: {result!r}")
                aggregated.failed_carriers.append(carrier.code)
            else:
                options = self.to_rate_options(carrier, result or [])
                logger.info(f"Fetched {len(options)} rates from {carrier.code}")
                aggregated.rates.extend(options)

        return aggregated

    def to_rate_options(self, carrier: Carrier, quotes: List[CarrierQuote]) -> List[RateOption]:
        """Flatten carrier quotes, filling in defaults for unreported fields."""
        def num(value, default=0.0):
            return default if value is None else float(value)

        rating = carrier.avg_delivery_rating
        success_rate = carrier.success_rate
        return [
            RateOption(
                carrier_id=carrier.id,
                carrier_code=carrier.code,
                carrier_name=carrier.display_name or carrier.name,
                carrier_logo=carrier.logo_url,
                carrier_priority=carrier.priority or 0,
                service_code=quote.service_code or DEFAULT_SERVICE_CODE,
                service_name=quote.service_name or DEFAULT_SERVICE_NAME,
                base_charge=num(quote.base_charge),
                fuel_surcharge=num(quote.fuel_surcharge),
                gst=num(quote.gst),
                cod_charge=num(quote.cod_charge),
                insurance_charge=num(quote.insurance_charge),
                other_charges=num(quote.other_charges),
                total_charge=num(quote.total_charge),
                delivery_days=int(quote.delivery_days) if quote.delivery_days is not None else DEFAULT_DELIVERY_DAYS,
                expected_delivery_date=quote.expected_delivery_date,
                features=list(quote.features or []),
                tracking_available=True if quote.tracking_available is None else quote.tracking_available,
                rating=DEFAULT_RATING if rating is None else float(rating),
                success_rate=DEFAULT_SUCCESS_RATE if success_rate is None else float(success_rate),
            )
            for quote in quotes
        ]

    async def aggregate(self, shipment: ShipmentRequest) -> AggregationResult:
        carriers = await self.load_active_carriers()
        eligible = await self.eligible_carriers(carriers, shipment)
        try:
            return await self.fetch_rates(eligible, shipment)
        finally:
            for _, adapter in eligible:
                await adapter.close()
