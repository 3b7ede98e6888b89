"""
Carrier and CarrierService models

Carrier rows are maintained by admin tooling; the shipping core only reads them.
Credentials and endpoints are opaque to the core and handed to adapters as-is.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime,
    Float, Text, JSON, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
import enum

from multicarrier.core.database import Base


class CarrierCode(str, enum.Enum):
    """
    Carriers with a registered adapter.

    Carrier rows may carry other codes; resolving those raises
    UnsupportedCarrierError.
    """
    DELHIVERY = "delhivery"
    XPRESSBEES = "xpressbees"


class PaymentMode(str, enum.Enum):
    PREPAID = "prepaid"
    COD = "cod"


class Carrier(Base):
    """
    Carrier configuration, eligibility limits and quality signals.

    `priority` orders carrier iteration (higher first) and breaks ranking ties.
    """
    __tablename__ = "carriers"
    __table_args__ = (
        Index("ix_carriers_active_priority", "is_active", "priority"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Identification
    code = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    display_name = Column(String(100), nullable=False)
    logo_url = Column(String(500), nullable=True)
    tracking_url = Column(String(500), nullable=True)  # e.g. https://carrier/track/{tracking_number}

    # API configuration (opaque to core)
    api_mode = Column(String(20), default="test", nullable=False)  # test | live | production
    api_endpoint = Column(String(255), nullable=True)
    api_key = Column(Text, nullable=True)
    api_secret = Column(Text, nullable=True)
    config = Column(JSON, default=dict)

    # Eligibility limits (null = unlimited)
    supported_payment_modes = Column(JSON, default=lambda: ["prepaid", "cod"])
    max_weight = Column(Float, nullable=True)  # kg
    volumetric_divisor = Column(Float, nullable=True)
    max_cod_amount = Column(Float, nullable=True)
    max_insurance_value = Column(Float, nullable=True)

    # Behaviour
    auto_generate_labels = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    priority = Column(Integer, default=100, nullable=False)

    # Quality signals
    avg_delivery_rating = Column(Float, nullable=True)  # 0-5
    success_rate = Column(Float, nullable=True)  # 0-100

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    services = relationship("CarrierService", back_populates="carrier", cascade="all, delete-orphan")
    shipments = relationship("Shipment", back_populates="carrier")

    @property
    def is_live(self) -> bool:
        return (self.api_mode or "test").lower() in ("live", "production")

    def supports_payment_mode(self, payment_mode: str) -> bool:
        modes = self.supported_payment_modes or []
        return payment_mode in modes

    def __repr__(self):
        return f"<Carrier(id={self.id}, code={self.code}, priority={self.priority}, active={self.is_active})>"


class CarrierService(Base):
    """A bookable service of one carrier (e.g. SURFACE, EXPRESS)."""
    __tablename__ = "carrier_services"
    __table_args__ = (
        UniqueConstraint("carrier_id", "service_code", name="uq_carrier_services_code"),
    )

    id = Column(Integer, primary_key=True, index=True)
    carrier_id = Column(Integer, ForeignKey("carriers.id"), nullable=False)
    service_code = Column(String(50), nullable=False)
    name = Column(String(100), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    carrier = relationship("Carrier", back_populates="services")

    def __repr__(self):
        return f"<CarrierService(id={self.id}, carrier_id={self.carrier_id}, code={self.service_code})>"


# Names used when a chosen service has no CarrierService row
SERVICE_NAME_MAP = {
    "SURFACE": "Surface Delivery",
    "EXPRESS": "Express Delivery",
    "AIR": "Air Delivery",
    "STANDARD": "Standard Delivery",
    "PRIORITY": "Priority Delivery",
    "ECONOMY": "Economy Delivery",
    "OVERNIGHT": "Overnight Delivery",
}


def virtual_service_name(service_code: str) -> str:
    """Display name for a service code with no persisted CarrierService."""
    code = (service_code or "").upper()
    return SERVICE_NAME_MAP.get(code, f"{code.capitalize()} Service")
