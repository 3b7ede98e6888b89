"""
Shipping Module

- BaseCarrier interface for all carrier implementations
- CarrierFactory resolves carrier configuration to an adapter
"""
from multicarrier.modules.shipping.carriers import CarrierFactory, register_carrier
from multicarrier.modules.shipping.carriers.base import BaseCarrier

__all__ = [
    "CarrierFactory",
    "register_carrier",
    "BaseCarrier",
]
