"""
Shipping business rules.

conditions/actions are stored as JSON and compiled into typed rules by
multicarrier.services.rules_engine when loaded.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, Index

from multicarrier.core.database import Base


class ShippingRule(Base):
    __tablename__ = "shipping_rules"
    __table_args__ = (
        Index("ix_shipping_rules_active_priority", "is_active", "priority"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    rule_type = Column(String(50), default="pricing", nullable=False)

    # {"order_value": {"min": 0, "max": 999}, "weight": {...},
    #  "customer_type": ["premium"], "payment_method": ["cod"]}
    conditions = Column(JSON, default=dict)
    # {"excluded_carriers": [...], "discount_type": "percent", "discount_value": 10,
    #  "free_shipping": true, "upgrade_service": "EXPRESS"}
    actions = Column(JSON, default=dict)

    priority = Column(Integer, default=0, nullable=False)  # higher evaluated first
    is_active = Column(Boolean, default=True, nullable=False)
    stop_processing = Column(Boolean, default=False, nullable=False)
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_to = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<ShippingRule(id={self.id}, name={self.name}, priority={self.priority})>"
