"""
Ranking Engine

Weighted score out of 100:
    price 30, delivery speed 25, success rate 25, rating 20

Price and speed are min-max normalised across the option set (1.0 when every
option shares the value). Ties on score are broken by carrier priority.
"""
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional

from multicarrier.core.config import Settings, settings as default_settings
from multicarrier.modules.shipping.carriers.base import ShipmentRequest
from multicarrier.services.rate_option import RateOption

logger = logging.getLogger(__name__)

PRICE_WEIGHT = 30
SPEED_WEIGHT = 25
RELIABILITY_WEIGHT = 25
RATING_WEIGHT = 20

HIGH_RATING = 4.5
HIGH_SUCCESS_RATE = 98


def _normalised(value: float, low: float, high: float) -> float:
    if high > low:
        return 1 - (value - low) / (high - low)
    return 1.0


def score_option(option: RateOption, min_charge, max_charge, min_days, max_days) -> float:
    price_score = _normalised(option.total_charge, min_charge, max_charge)
    speed_score = _normalised(option.delivery_days, min_days, max_days)
    reliability_score = (option.success_rate if option.success_rate is not None else 95) / 100
    rating_score = (option.rating if option.rating is not None else 4) / 5
    score = (
        PRICE_WEIGHT * price_score
        + SPEED_WEIGHT * speed_score
        + RELIABILITY_WEIGHT * reliability_score
        + RATING_WEIGHT * rating_score
    )
    return round(score, 2)


def rank_rates(rates: List[RateOption]) -> List[RateOption]:
    """Score, flag cheapest/fastest, and sort best first."""
    if not rates:
        return []

    charges = [r.total_charge for r in rates]
    days = [r.delivery_days for r in rates]
    min_charge, max_charge = min(charges), max(charges)
    min_days, max_days = min(days), max(days)

    for rate in rates:
        rate.ranking_score = score_option(rate, min_charge, max_charge, min_days, max_days)
        rate.is_cheapest = rate.total_charge == min_charge
        rate.is_fastest = rate.delivery_days == min_days

    return sorted(rates, key=lambda r: (-r.ranking_score, -r.carrier_priority))


def recommendation_reason(option: RateOption) -> str:
    reasons = []
    if option.is_cheapest:
        reasons.append("Most economical option")
    if option.is_fastest:
        reasons.append("Fastest delivery")
    if (option.rating or 0) >= HIGH_RATING:
        reasons.append("Highly rated carrier")
    if (option.success_rate or 0) >= HIGH_SUCCESS_RATE:
        reasons.append("Excellent delivery success rate")
    return ", ".join(reasons) or "Best overall value"


def recommend(
    ranked: List[RateOption],
    shipment: ShipmentRequest,
    settings: Optional[Settings] = None,
) -> Optional[RateOption]:
    """
    Pick the option to highlight.

    Top-ranked by default; premium customers get the fastest option, low-value
    orders the cheapest. Returns a copy carrying recommendation_reason.
    """
    if not ranked:
        return None
    settings = settings or default_settings

    chosen = ranked[0]
    if shipment.customer_type == settings.PREMIUM_CUSTOMER_TYPE:
        chosen = next((r for r in ranked if r.is_fastest), chosen)
    elif shipment.order_value < settings.LOW_VALUE_ORDER_THRESHOLD:
        chosen = next((r for r in ranked if r.is_cheapest), chosen)

    return replace(chosen, recommendation_reason=recommendation_reason(chosen))


def summarize(ranked: List[RateOption]) -> Dict[str, Any]:
    if not ranked:
        return {
            "available_options": 0,
            "price_range": {"min": 0, "max": 0},
            "delivery_range": {"min": 0, "max": 0},
            "average_price": 0,
            "carriers_available": [],
        }

    charges = [r.total_charge for r in ranked]
    days = [r.delivery_days for r in ranked]
    carriers = []
    for rate in ranked:
        if rate.carrier_name not in carriers:
            carriers.append(rate.carrier_name)

    return {
        "available_options": len(ranked),
        "price_range": {"min": min(charges), "max": max(charges)},
        "delivery_range": {"min": min(days), "max": max(days)},
        "average_price": round(sum(charges) / len(charges), 2),
        "carriers_available": carriers,
    }
