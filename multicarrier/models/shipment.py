"""
Shipment, ShipmentEvent and CarrierApiLog models

Shipments are never deleted; their history is the append-only ShipmentEvent log.
The `version` column guards concurrent writers (optimistic concurrency).
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, DateTime, Date,
    Float, Text, JSON, Boolean, ForeignKey, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
import enum

from multicarrier.core.database import Base


class ShipmentStatus(str, enum.Enum):
    """Canonical shipment lifecycle states."""
    CREATED = "created"
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKED = "picked"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RTO = "rto"  # Return to origin


TERMINAL_STATUSES = frozenset({
    ShipmentStatus.DELIVERED,
    ShipmentStatus.CANCELLED,
    ShipmentStatus.RTO,
    ShipmentStatus.FAILED,
})


class Shipment(Base):
    """
    A booked shipment, from carrier booking through delivery/cancellation.
    """
    __tablename__ = "shipments"
    __table_args__ = (
        Index("ix_shipments_order_id", "order_id"),
        Index("ix_shipments_status", "status"),
        Index("ix_shipments_carrier_id", "carrier_id"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Order association (order rows live outside this package)
    order_id = Column(Integer, nullable=False)
    order_number = Column(String(50), nullable=True)

    # Carrier / service
    carrier_id = Column(Integer, ForeignKey("carriers.id"), nullable=False)
    carrier_service_id = Column(Integer, ForeignKey("carrier_services.id"), nullable=True)  # null for virtual services
    service_code = Column(String(50), nullable=False)
    service_name = Column(String(100), nullable=False)

    # Tracking
    tracking_number = Column(String(100), unique=True, nullable=False, index=True)
    carrier_tracking_id = Column(String(100), nullable=True)

    # Status
    status = Column(SQLEnum(ShipmentStatus), default=ShipmentStatus.CREATED, nullable=False)
    status_message = Column(String(255), nullable=True)
    current_location = Column(String(255), nullable=True)

    # Package / payment
    weight = Column(Float, nullable=True)
    payment_mode = Column(String(20), default="prepaid")
    cod_amount = Column(Float, default=0.0)
    shipping_cost = Column(Float, nullable=True)

    # Carrier data
    carrier_response = Column(JSON, nullable=True)
    label_url = Column(String(500), nullable=True)

    # Pickup
    pickup_token = Column(String(100), nullable=True)
    pickup_scheduled_at = Column(String(100), nullable=True)  # carrier-formatted slot
    warehouse_id = Column(String(100), nullable=True)  # site warehouse id or carrier-registered location

    # Dates
    expected_delivery_date = Column(Date, nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    last_tracked_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    __mapper_args__ = {"version_id_col": version}

    carrier = relationship("Carrier", back_populates="shipments")
    carrier_service = relationship("CarrierService")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<Shipment(id={self.id}, tracking={self.tracking_number}, status={self.status})>"


class ShipmentEvent(Base):
    """Append-only tracking/audit event for a shipment."""
    __tablename__ = "shipment_events"
    __table_args__ = (
        Index("ix_shipment_events_shipment_id", "shipment_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=False)
    event_type = Column(String(50), default="status_update", nullable=False)
    status = Column(String(50), nullable=True)
    location = Column(String(255), nullable=True)
    message = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    occurred_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    shipment = relationship("Shipment")

    def __repr__(self):
        return f"<ShipmentEvent(shipment_id={self.shipment_id}, type={self.event_type}, status={self.status})>"


class CarrierApiLog(Base):
    """Audit row for each outbound carrier call made for a shipment."""
    __tablename__ = "carrier_api_logs"
    __table_args__ = (
        Index("ix_carrier_api_logs_carrier_id", "carrier_id"),
        Index("ix_carrier_api_logs_created_at", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    carrier_id = Column(Integer, ForeignKey("carriers.id"), nullable=False)
    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=True)
    operation = Column(String(50), nullable=False)  # create, cancel, track, pickup, label
    endpoint = Column(String(255), nullable=True)
    http_method = Column(String(10), nullable=True)
    status_code = Column(Integer, nullable=True)
    request_payload = Column(JSON, nullable=True)
    response_payload = Column(JSON, nullable=True)
    success = Column(Boolean, default=False, nullable=False)
    error_message = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
