"""
Carrier Registry and Factory

- Adapters register themselves with @register_carrier(code)
- CarrierFactory.make resolves a Carrier row to a configured adapter
- Resolution is a pure function of configuration; safe to call repeatedly
"""
from typing import Dict, List, Optional, Type
import logging

from multicarrier.core.config import Settings
from multicarrier.core.exceptions import UnsupportedCarrierError
from multicarrier.models.carrier import Carrier
from multicarrier.modules.shipping.carriers.base import BaseCarrier

logger = logging.getLogger(__name__)

_CARRIER_REGISTRY: Dict[str, Type[BaseCarrier]] = {}


def register_carrier(carrier_code: str):
    """
    Decorator to register a carrier implementation.

    Usage:
        @register_carrier(CarrierCode.DELHIVERY)
        class DelhiveryCarrier(BaseCarrier):
            ...
    """
    def decorator(cls: Type[BaseCarrier]):
        code = str(getattr(carrier_code, "value", carrier_code)).lower()
        _CARRIER_REGISTRY[code] = cls
        logger.info(f"Registered carrier: {code} -> {cls.__name__}")
        return cls
    return decorator


class CarrierFactory:
    """Factory for creating carrier adapters from persisted configuration."""

    @classmethod
    def make(
        cls,
        carrier_config: Carrier,
        settings: Optional[Settings] = None,
        validate: bool = True,
    ) -> BaseCarrier:
        """
        Build the adapter for a carrier row.

        Raises:
            UnsupportedCarrierError: no adapter registered for the carrier code
            ConfigurationError: required credentials missing (when validate=True)
        """
        code = (carrier_config.code or "").lower()
        carrier_cls = _CARRIER_REGISTRY.get(code)
        if carrier_cls is None:
            raise UnsupportedCarrierError(
                f"Unsupported carrier: {carrier_config.code}",
                details={"carrier_code": carrier_config.code, "registered": cls.get_registered_carriers()},
            )

        adapter = carrier_cls(carrier_config, settings=settings)
        if validate:
            adapter.validate_configuration()
        return adapter

    @classmethod
    def is_supported(cls, carrier_code: str) -> bool:
        return (carrier_code or "").lower() in _CARRIER_REGISTRY

    @classmethod
    def get_registered_carriers(cls) -> List[str]:
        """Get list of all registered carrier codes."""
        return sorted(_CARRIER_REGISTRY.keys())


# Import carriers to trigger registration
# These imports must be at the bottom to avoid circular imports
from multicarrier.modules.shipping.carriers.delhivery import DelhiveryCarrier  # noqa: E402, F401
from multicarrier.modules.shipping.carriers.xpressbees import XpressbeesCarrier  # noqa: E402, F401
