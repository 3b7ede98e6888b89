"""
Shipment Request Builder

Turns a rate-shopping request into the ShipmentRequest every downstream
stage works on.

Weight conventions (all configurable):
- Missing item weight counts as DEFAULT_ITEM_WEIGHT kg
- Packaging adds max(PACKAGING_MIN_WEIGHT, PACKAGING_WEIGHT_RATIO * weight)
- Volumetric weight = sum(l * w * h * qty) / VOLUMETRIC_DIVISOR, only for
  items that declare dimensions; missing sides use the default item box
- Billable weight = max(actual, volumetric); all three rounded to 3 places
"""
import logging
from typing import Any, Dict, Iterable, Optional

from multicarrier.core.config import Settings, settings as default_settings
from multicarrier.core.exceptions import ValidationError
from multicarrier.modules.shipping.carriers.base import ShipmentRequest
from multicarrier.schemas.shipping import RateShoppingRequest

logger = logging.getLogger(__name__)


def _field(item: Any, name: str, default: Any = None) -> Any:
    if isinstance(item, dict):
        value = item.get(name, default)
    else:
        value = getattr(item, name, default)
    return default if value is None else value


def _item_volume(item: Any, settings: Settings) -> float:
    dims = _field(item, "dimensions")
    if not dims:
        return 0.0
    length = _field(dims, "length", settings.DEFAULT_ITEM_LENGTH)
    width = _field(dims, "width", settings.DEFAULT_ITEM_WIDTH)
    height = _field(dims, "height", settings.DEFAULT_ITEM_HEIGHT)
    return float(length) * float(width) * float(height)


def total_volume(items: Iterable[Any], settings: Settings = default_settings) -> float:
    """Sum of item volumes (cm3) times quantity."""
    return sum(_item_volume(item, settings) * int(_field(item, "quantity", 1)) for item in items)


def calculate_weight(
    items: Iterable[Any],
    settings: Settings = default_settings,
    volumetric_divisor: Optional[float] = None,
) -> Dict[str, float]:
    """
    Compute actual (with packaging), volumetric and billable weight in kg.

    Raises:
        ValidationError: an item has a negative weight or non-positive quantity
    """
    items = list(items)
    weight = 0.0
    for item in items:
        item_weight = float(_field(item, "weight", settings.DEFAULT_ITEM_WEIGHT))
        quantity = int(_field(item, "quantity", 1))
        if item_weight < 0:
            raise ValidationError("Item weight cannot be negative", details={"item": _field(item, "name")})
        if quantity < 1:
            raise ValidationError("Item quantity must be at least 1", details={"item": _field(item, "name")})
        weight += item_weight * quantity

    weight += max(settings.PACKAGING_MIN_WEIGHT, weight * settings.PACKAGING_WEIGHT_RATIO)

    divisor = volumetric_divisor or settings.VOLUMETRIC_DIVISOR
    volumetric = total_volume(items, settings) / divisor

    return {
        "weight": round(weight, 3),
        "volumetric_weight": round(volumetric, 3),
        "billable_weight": round(max(weight, volumetric), 3),
    }


def billable_weight_for_divisor(
    shipment: ShipmentRequest,
    volumetric_divisor: Optional[float],
    settings: Settings = default_settings,
) -> float:
    """Billable weight of a prepared shipment under a carrier's own divisor."""
    if not volumetric_divisor or volumetric_divisor == settings.VOLUMETRIC_DIVISOR:
        return shipment.billable_weight
    volumetric = round(total_volume(shipment.items, settings) / volumetric_divisor, 3)
    return round(max(shipment.weight, volumetric), 3)


def prepare_shipment_request(
    request: RateShoppingRequest,
    settings: Settings = default_settings,
) -> ShipmentRequest:
    """Build the ShipmentRequest for a validated rate-shopping request."""
    if not request.delivery_pincode:
        raise ValidationError("delivery_pincode is required")

    items = [item.model_dump() for item in request.items]
    weights = calculate_weight(items, settings)

    return ShipmentRequest(
        pickup_pincode=request.pickup_pincode or settings.PICKUP_PINCODE,
        delivery_pincode=request.delivery_pincode,
        weight=weights["weight"],
        volumetric_weight=weights["volumetric_weight"],
        billable_weight=weights["billable_weight"],
        order_value=request.order_value,
        payment_mode=request.payment_mode,
        cod_amount=request.cod_amount,
        customer_type=request.customer_type,
        is_fragile=request.is_fragile,
        is_valuable=request.is_valuable,
        requires_insurance=request.requires_insurance,
        dimensions=request.dimensions,
        preferred_delivery_date=request.preferred_delivery_date,
        items=items,
    )
