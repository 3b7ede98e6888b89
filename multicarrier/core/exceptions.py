"""
Shipping Exception Hierarchy

Every error carries a machine-readable code, a message, details for the
audit trail, and a P0-P3 severity.

Exception Hierarchy:
    ShippingError
    ├── ConfigurationError
    ├── GatewayError
    │   └── CircuitOpenError
    ├── BookingError
    ├── NotFoundError
    ├── UnsupportedCarrierError
    ├── ValidationError
    ├── ShipmentConflictError
    └── WebhookRejectedError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class ShippingError(Exception):
    """
    Base exception for all shipping errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "SHIPPING_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class ConfigurationError(ShippingError):
    """Carrier is misconfigured (missing credentials or endpoint)."""
    default_code = "CARRIER_MISCONFIGURED"
    default_severity = "P1"


class GatewayError(ShippingError):
    """Carrier API returned a non-2xx status or an unparseable body."""
    default_code = "CARRIER_GATEWAY_ERROR"
    default_severity = "P2"

    def __init__(
        self,
        message: str,
        carrier_code: Optional[str] = None,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "carrier_code": carrier_code,
            "status_code": status_code,
            "body": body[:500] if body else None,
        })
        super().__init__(message, details=details, **kwargs)


class CircuitOpenError(GatewayError):
    """Carrier circuit breaker is OPEN and blocking requests."""
    default_code = "CARRIER_CIRCUIT_OPEN"

    def __init__(self, circuit_name: str, retry_after_seconds: float):
        self.circuit_name = circuit_name
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Circuit '{circuit_name}' is OPEN. Retry after {retry_after_seconds:.0f} seconds.",
            details={"retry_after_seconds": retry_after_seconds},
        )


class BookingError(ShippingError):
    """Carrier rejected a shipment creation."""
    default_code = "SHIPMENT_BOOKING_FAILED"
    default_severity = "P1"

    def __init__(
        self,
        message: str,
        carrier_code: Optional[str] = None,
        service_code: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "carrier_code": carrier_code,
            "service_code": service_code,
        })
        super().__init__(message, details=details, **kwargs)


class NotFoundError(ShippingError):
    """Unknown tracking number, order, carrier, or carrier-service pairing."""
    default_code = "NOT_FOUND"
    default_severity = "P3"


class UnsupportedCarrierError(ShippingError):
    """No adapter registered for a configured carrier code."""
    default_code = "UNSUPPORTED_CARRIER"
    default_severity = "P1"


class ValidationError(ShippingError):
    """Malformed rate-shopping or booking request."""
    default_code = "INVALID_SHIPPING_REQUEST"
    default_severity = "P3"


class ShipmentConflictError(ShippingError):
    """Shipment was modified concurrently; the write was rejected."""
    default_code = "SHIPMENT_CONFLICT"
    default_severity = "P2"


class WebhookRejectedError(ShippingError):
    """Webhook payload was malformed or could not be verified."""
    default_code = "WEBHOOK_REJECTED"
    default_severity = "P3"
