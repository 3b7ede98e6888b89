"""
RateOption: one bookable (carrier, service) price point.

Created by the rate aggregator, adjusted by the rules engine, scored by the
ranking engine, then serialised into the rate-shopping response.
"""
from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Any, Dict, List, Optional


@dataclass
class RateOption:
    carrier_id: int
    carrier_code: str
    carrier_name: str
    service_code: str
    service_name: str
    carrier_logo: Optional[str] = None
    carrier_priority: int = 0

    # Cost breakdown
    base_charge: float = 0.0
    fuel_surcharge: float = 0.0
    gst: float = 0.0
    cod_charge: float = 0.0
    insurance_charge: float = 0.0
    other_charges: float = 0.0
    total_charge: float = 0.0

    # Delivery estimate and features
    delivery_days: int = 3
    expected_delivery_date: Optional[date] = None
    features: List[str] = field(default_factory=list)
    tracking_available: bool = True

    # Carrier quality signals
    rating: float = 4.0
    success_rate: float = 95.0

    # Set by the rules engine
    original_charge: Optional[float] = None
    discount: Optional[float] = None
    has_discount: bool = False
    is_free_shipping: bool = False
    service_upgraded: bool = False
    original_service: Optional[str] = None
    upgrade_service: Optional[str] = None

    # Set by the ranking engine
    ranking_score: Optional[float] = None
    is_cheapest: bool = False
    is_fastest: bool = False
    recommendation_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.expected_delivery_date:
            data["expected_delivery_date"] = self.expected_delivery_date.isoformat()
        return data
