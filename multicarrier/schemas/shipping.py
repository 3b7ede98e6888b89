"""
Shipping Schemas

Pydantic models for rate-shopping, booking and webhook payloads.
"""
from datetime import date
from typing import Optional, List, Dict, Any, Literal
from pydantic import BaseModel, Field, field_validator, model_validator
import re

PINCODE_PATTERN = re.compile(r"^\d{6}$")


def _clean_pincode(v):
    if v is None:
        return v
    v = str(v).strip()
    if not PINCODE_PATTERN.match(v):
        raise ValueError("Pincode must be 6 digits")
    return v


# ==================== Rate Shopping Schemas ====================


class ItemDimensions(BaseModel):
    """Item dimensions in centimetres. Missing sides use configured defaults."""
    length: Optional[float] = Field(None, gt=0)
    width: Optional[float] = Field(None, gt=0)
    height: Optional[float] = Field(None, gt=0)


class RateItem(BaseModel):
    """One line of the shipment. Weight in kg."""
    name: Optional[str] = None
    weight: Optional[float] = Field(None, ge=0)
    quantity: int = Field(1, ge=1)
    value: float = Field(0, ge=0)
    dimensions: Optional[ItemDimensions] = None


class RateShoppingRequest(BaseModel):
    """Request rates from every eligible carrier."""
    pickup_pincode: Optional[str] = Field(None, description="Defaults to the warehouse pincode")
    delivery_pincode: str
    items: List[RateItem] = Field(default_factory=list)
    dimensions: Optional[Dict[str, float]] = None
    order_value: float = Field(0, ge=0)
    payment_mode: Literal["prepaid", "cod"] = "prepaid"
    cod_amount: float = Field(0, ge=0)
    customer_type: str = "regular"
    is_fragile: bool = False
    is_valuable: bool = False
    requires_insurance: bool = False
    preferred_delivery_date: Optional[date] = None
    force_refresh: bool = False

    @field_validator("pickup_pincode", "delivery_pincode")
    @classmethod
    def validate_pincode(cls, v):
        return _clean_pincode(v)

    @field_validator("payment_mode", mode="before")
    @classmethod
    def normalize_payment_mode(cls, v):
        return v.lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def default_cod_amount(self):
        if self.payment_mode == "cod" and not self.cod_amount:
            self.cod_amount = self.order_value
        return self


# ==================== Booking Schemas ====================


class OrderItem(BaseModel):
    name: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price: float = 0
    weight: Optional[float] = Field(None, ge=0)


class OrderDetails(BaseModel):
    """
    Order fields the booking flow reads.

    The order itself is owned elsewhere; nothing here is written back.
    """
    id: int
    order_number: str
    shipping_address: Dict[str, Any]
    total_amount: float = Field(..., ge=0)
    payment_method: str = "prepaid"
    items: List[OrderItem] = Field(default_factory=list)
    total_weight: Optional[float] = Field(None, ge=0)
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None

    @property
    def is_cod(self) -> bool:
        return self.payment_method.lower() == "cod"


class BookingOptions(BaseModel):
    """Optional booking overrides; package fields default from settings."""
    schedule_pickup: bool = False
    generate_label: Optional[bool] = None
    length: Optional[float] = Field(None, gt=0)
    width: Optional[float] = Field(None, gt=0)
    height: Optional[float] = Field(None, gt=0)
    description: Optional[str] = None
    shipping_cost: Optional[float] = Field(None, ge=0)
    warehouse_id: Optional[str] = None  # site warehouse id or carrier-registered location name

    @field_validator("warehouse_id", mode="before")
    @classmethod
    def warehouse_id_text(cls, v):
        if v is None:
            return v
        return str(v).strip() or None


class CreateShipmentRequest(BaseModel):
    order: OrderDetails
    carrier_id: int
    service_code: str = Field(..., min_length=1)
    options: BookingOptions = Field(default_factory=BookingOptions)


class ServiceabilityQuery(BaseModel):
    pincode: str
    payment_mode: Literal["prepaid", "cod"] = "prepaid"

    @field_validator("pincode")
    @classmethod
    def validate_pincode(cls, v):
        return _clean_pincode(v)


# ==================== Response Schemas ====================


class ShipmentResponse(BaseModel):
    """Booked shipment."""
    id: int
    order_id: int
    order_number: Optional[str] = None
    carrier_id: int
    service_code: Optional[str] = None
    service_name: Optional[str] = None
    tracking_number: str
    carrier_tracking_id: Optional[str] = None
    status: str
    label_url: Optional[str] = None
    pickup_token: Optional[str] = None
    warehouse_id: Optional[str] = None
    expected_delivery_date: Optional[date] = None

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v):
        return getattr(v, "value", v)

    class Config:
        from_attributes = True


# ==================== Webhook Schemas ====================


class DelhiveryWebhookPayload(BaseModel):
    """Delhivery scan push."""
    waybill: str = Field(..., min_length=1)
    status: str = Field(..., alias="Status", min_length=1)
    location: Optional[str] = Field(None, alias="StatusLocation")
    instructions: Optional[str] = Field(None, alias="Instructions")
    status_date_time: Optional[str] = Field(None, alias="StatusDateTime")

    model_config = {"populate_by_name": True, "extra": "ignore"}


class XpressbeesWebhookPayload(BaseModel):
    """Xpressbees status push."""
    awb_number: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    location: Optional[str] = None
    remarks: Optional[str] = None
    event_time: Optional[str] = None

    model_config = {"extra": "ignore"}
