"""
Pincode serviceability facts per carrier.

A row is authoritative until a fresh API check overwrites it.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint

from multicarrier.core.database import Base


class ServiceabilityRecord(Base):
    __tablename__ = "carrier_pincode_serviceability"
    __table_args__ = (
        UniqueConstraint("carrier_id", "pincode", name="uq_serviceability_carrier_pincode"),
    )

    id = Column(Integer, primary_key=True, index=True)
    carrier_id = Column(Integer, ForeignKey("carriers.id"), nullable=False, index=True)
    pincode = Column(String(10), nullable=False, index=True)
    is_serviceable = Column(Boolean, default=False, nullable=False)
    is_cod_available = Column(Boolean, default=False, nullable=False)
    last_checked_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return (
            f"<ServiceabilityRecord(carrier_id={self.carrier_id}, pincode={self.pincode}, "
            f"serviceable={self.is_serviceable}, cod={self.is_cod_available})>"
        )
