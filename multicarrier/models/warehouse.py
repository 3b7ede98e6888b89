"""
Site warehouses (pickup origins).

Exactly one active row is expected to carry is_default; bookings without an
explicit warehouse ship from it. With no rows at all the PICKUP_* settings
are the origin.
"""
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text

from multicarrier.core.database import Base


class Warehouse(Base):
    __tablename__ = "warehouses"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    contact_person = Column(String(100), nullable=True)
    phone = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)
    address_1 = Column(Text, nullable=False)
    address_2 = Column(Text, nullable=True)
    city = Column(String(100), nullable=False)
    state = Column(String(100), nullable=True)
    pincode = Column(String(10), nullable=False, index=True)
    country = Column(String(50), default="India", nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    def to_pickup_address(self) -> Dict[str, Any]:
        """Same shape as Settings.pickup_address()."""
        return {
            "name": self.name,
            "contact_person": self.contact_person or self.name,
            "phone": self.phone,
            "email": self.email,
            "address_1": self.address_1,
            "address_2": self.address_2,
            "city": self.city,
            "state": self.state,
            "pincode": self.pincode,
            "country": self.country or "India",
            "warehouse_id": self.id,
        }

    def __repr__(self):
        return f"<Warehouse(id={self.id}, name={self.name}, pincode={self.pincode}, default={self.is_default})>"
