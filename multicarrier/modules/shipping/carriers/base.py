"""
Base Carrier Interface

All carriers implement this interface. Each carrier provides its own:
- Rate calculation (sync and concurrent fan-out form)
- Shipment booking and cancellation
- Tracking and status mapping
- Serviceability lookup
- Pickup scheduling and warehouse identification
- Label retrieval
- Connectivity probe

Shared plumbing (HTTP client, circuit breaker, error translation) lives here
so adapters only describe their wire formats.
"""
import asyncio
import enum
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx

from multicarrier.core.circuit_breaker import carrier_breaker
from multicarrier.core.config import Settings, settings as default_settings
from multicarrier.core.exceptions import ConfigurationError, GatewayError, ShippingError
from multicarrier.models.carrier import Carrier

logger = logging.getLogger(__name__)


class WarehouseRequirement(str, enum.Enum):
    """How a carrier expects the pickup warehouse to be identified on bookings."""
    REGISTERED_ID = "registered_id"  # carrier-issued warehouse id
    REGISTERED_ALIAS = "registered_alias"  # location name registered in the carrier account
    FULL_ADDRESS = "full_address"  # complete address sent with every booking


# =============================================================================
# Carrier-Agnostic Data Classes
# =============================================================================

@dataclass
class ShipmentRequest:
    """
    Rate-shopping shipment built per request; never persisted.

    Weights in kg. billable_weight = max(weight, volumetric_weight).
    """
    pickup_pincode: str
    delivery_pincode: str
    weight: float
    volumetric_weight: float
    billable_weight: float
    order_value: float = 0.0
    payment_mode: str = "prepaid"
    cod_amount: float = 0.0
    customer_type: str = "regular"
    is_fragile: bool = False
    is_valuable: bool = False
    requires_insurance: bool = False
    dimensions: Optional[Dict[str, float]] = None
    preferred_delivery_date: Optional[date] = None
    items: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_cod(self) -> bool:
        return self.payment_mode == "cod"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.preferred_delivery_date:
            data["preferred_delivery_date"] = self.preferred_delivery_date.isoformat()
        return data


@dataclass
class CarrierQuote:
    """
    One service quote as reported by a carrier.

    Fields the carrier did not report stay None; the aggregator applies defaults.
    """
    service_code: Optional[str] = None
    service_name: Optional[str] = None
    base_charge: Optional[float] = None
    fuel_surcharge: Optional[float] = None
    gst: Optional[float] = None
    cod_charge: Optional[float] = None
    insurance_charge: Optional[float] = None
    other_charges: Optional[float] = None
    total_charge: Optional[float] = None
    delivery_days: Optional[int] = None
    expected_delivery_date: Optional[date] = None
    features: List[str] = field(default_factory=list)
    tracking_available: Optional[bool] = None


@dataclass
class PackageDetails:
    """Physical package handed to the carrier (kg / cm)."""
    weight: float
    length: float
    width: float
    height: float
    value: float = 0.0
    description: str = "Books"
    quantity: int = 1


@dataclass
class BookingRequest:
    """Carrier-agnostic shipment booking."""
    order_id: int
    order_number: str
    service_code: str
    service_name: str
    pickup_address: Dict[str, Any]
    delivery_address: Dict[str, Any]
    package: PackageDetails
    payment_mode: str = "prepaid"
    cod_amount: float = 0.0
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None


@dataclass
class BookingResult:
    """Result of a carrier booking."""
    tracking_number: Optional[str]
    carrier_reference: Optional[str] = None
    label_url: Optional[str] = None
    pickup_date: Optional[date] = None
    expected_delivery: Optional[date] = None
    charges: Dict[str, float] = field(default_factory=dict)
    raw: Optional[Any] = None


@dataclass
class TrackingEvent:
    """A single tracking scan."""
    status: str
    timestamp: Optional[datetime] = None
    location: Optional[str] = None
    message: Optional[str] = None
    event_type: str = "status_update"
    raw: Optional[Dict[str, Any]] = None


@dataclass
class TrackingInfo:
    """
    Tracking snapshot.

    `status` is the adapter's normalised status word; `carrier_status` is the
    raw value the carrier reported.
    """
    tracking_number: str
    status: str
    carrier_status: str
    current_location: Optional[str] = None
    delivered_at: Optional[datetime] = None
    events: List[TrackingEvent] = field(default_factory=list)
    raw: Optional[Any] = None


@dataclass
class PickupRequest:
    pickup_date: date
    pickup_time: str
    packages_count: int = 1
    contact_person: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Dict[str, Any]] = None


@dataclass
class PickupResult:
    pickup_id: str
    scheduled_time: str


def parse_datetime(value: Any) -> Optional[datetime]:
    """Best-effort ISO-8601 parse of a carrier timestamp."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


# =============================================================================
# Base Carrier Interface
# =============================================================================

class BaseCarrier(ABC):
    """
    Abstract base class for all shipping carriers.

    Adapters are cheap to construct; the HTTP client is created lazily on
    first use and released by close().
    """

    REQUIRED_CREDENTIALS: Tuple[str, ...] = ("api_key",)
    WAREHOUSE_REQUIREMENT = WarehouseRequirement.FULL_ADDRESS

    def __init__(
        self,
        carrier_config: Carrier,
        settings: Optional[Settings] = None,
    ):
        self._config = carrier_config
        self._settings = settings or default_settings
        self._client: Optional[httpx.AsyncClient] = None
        self.last_call: Dict[str, Any] = {}

    @property
    @abstractmethod
    def carrier_code(self) -> str:
        """Registry code of this carrier."""

    @property
    @abstractmethod
    def base_url(self) -> str:
        """API base URL for the configured mode (test/live)."""

    @property
    def carrier_name(self) -> str:
        return self._config.display_name or self._config.name

    @property
    def breaker(self):
        return carrier_breaker(self.carrier_code, self._settings, self._config.config)

    def get_config_value(self, key: str, default: Any = None) -> Any:
        """Look up a key in the carrier's JSON config, then on the model."""
        extra = self._config.config or {}
        if key in extra:
            return extra[key]
        value = getattr(self._config, key, None)
        return default if value is None else value

    def validate_configuration(self) -> None:
        """Raise ConfigurationError if required credentials are missing."""
        missing = [key for key in self.REQUIRED_CREDENTIALS if not self.get_config_value(key)]
        if missing:
            raise ConfigurationError(
                f"{self.carrier_name} is missing credentials: {', '.join(missing)}",
                details={"carrier_code": self.carrier_code, "missing": missing},
            )

    # -------------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------------

    def _auth_headers(self) -> Dict[str, str]:
        return {}

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.CARRIER_HTTP_TIMEOUT_SECONDS)
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        accept_client_errors: bool = False,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> httpx.Response:
        """
        Send a request through this carrier's circuit breaker.

        Transport failures and 5xx responses count against the breaker and
        raise GatewayError. 4xx responses raise GatewayError too unless
        accept_client_errors is set, in which case they are returned for the
        adapter to interpret (booking rejections, already-cancelled, ...).
        """
        client = await self._get_http_client()
        url = self._url(path)
        request_headers = {**self._auth_headers(), **(headers or {})}

        async def send() -> httpx.Response:
            try:
                response = await client.request(method, url, headers=request_headers, **kwargs)
            except httpx.TimeoutException as e:
                raise GatewayError(
                    f"{self.carrier_name} request timed out: {method} {path}",
                    carrier_code=self.carrier_code,
                    code="CARRIER_TIMEOUT",
                ) from e
            except httpx.RequestError as e:
                raise GatewayError(
                    f"Network error calling {self.carrier_name}: {e}",
                    carrier_code=self.carrier_code,
                ) from e
            if response.status_code >= 500:
                raise GatewayError(
                    f"{self.carrier_name} API error {response.status_code} on {method} {path}",
                    carrier_code=self.carrier_code,
                    status_code=response.status_code,
                    body=response.text,
                )
            return response

        started = time.monotonic()
        try:
            response = await self.breaker.execute(send)
        finally:
            self.last_call = {
                "endpoint": path,
                "method": method.upper(),
                "duration_ms": int((time.monotonic() - started) * 1000),
            }
        self.last_call["status_code"] = response.status_code
        logger.debug(f"{self.carrier_code} API {method} {path} -> {response.status_code}")

        if response.status_code >= 400 and not accept_client_errors:
            raise GatewayError(
                f"{self.carrier_name} API error {response.status_code} on {method} {path}",
                carrier_code=self.carrier_code,
                status_code=response.status_code,
                body=response.text,
            )
        return response

    def _json(self, response: httpx.Response) -> Any:
        """Decode a JSON body or raise GatewayError."""
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(
                f"Malformed response from {self.carrier_name}",
                carrier_code=self.carrier_code,
                status_code=response.status_code,
                body=response.text,
            ) from e

    # -------------------------------------------------------------------------
    # Carrier operations
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_rates(self, shipment: ShipmentRequest) -> List[CarrierQuote]:
        """
        Get service quotes for a shipment.

        Raises:
            GatewayError: non-2xx or malformed response
        """

    def get_rate_async(self, shipment: ShipmentRequest) -> "asyncio.Task[List[CarrierQuote]]":
        """
        Schedule get_rates on the running loop and return the pending task.

        The caller is not blocked; join the task with its siblings.
        """
        return asyncio.ensure_future(self.get_rates(shipment))

    @abstractmethod
    async def create_shipment(self, request: BookingRequest) -> BookingResult:
        """
        Book a shipment.

        Raises:
            BookingError: carrier rejected the booking
            GatewayError: carrier unreachable or returned garbage
        """

    @abstractmethod
    async def cancel_shipment(self, tracking_number: str) -> bool:
        """Cancel a shipment. Cancelling an already-cancelled shipment returns True."""

    @abstractmethod
    async def track_shipment(self, tracking_number: str) -> TrackingInfo:
        """
        Fetch tracking information.

        Raises:
            NotFoundError: tracking number unknown to the carrier
        """

    @abstractmethod
    async def check_serviceability(
        self,
        pickup_pincode: str,
        delivery_pincode: str,
        payment_mode: str,
    ) -> bool:
        """Whether the carrier delivers to delivery_pincode in this payment mode."""

    @abstractmethod
    async def schedule_pickup(self, pickup: PickupRequest) -> PickupResult:
        """Request a pickup from the warehouse."""

    @abstractmethod
    def print_label(self, tracking_number: str) -> str:
        """Label reference (URL) for a booked shipment."""

    @abstractmethod
    def map_status(self, carrier_status: str) -> str:
        """Normalise a carrier status string into the canonical vocabulary."""

    @abstractmethod
    async def _probe(self) -> Dict[str, Any]:
        """Perform one cheap, read-only authenticated call; return details."""

    async def download_label(self, tracking_number: str, label_url: Optional[str] = None) -> bytes:
        """Fetch label bytes from the carrier."""
        response = await self._request("GET", label_url or self.print_label(tracking_number))
        return response.content

    async def get_registered_pickup_locations(self) -> List[Dict[str, Any]]:
        """
        Pickup locations registered in the carrier account.

        Each entry has id, name, carrier_warehouse_name and phone. Carriers that
        take a full address on every booking keep no such list.
        """
        return []

    async def probe_connection(self) -> Dict[str, Any]:
        """
        Real connectivity check against the carrier API.

        Never raises; returns success flag, message, latency and details.
        """
        started = time.monotonic()
        try:
            self.validate_configuration()
            details = await self._probe()
            success, message = True, f"Connected to {self.carrier_name}"
        except ShippingError as e:
            success, message, details = False, e.message, e.details
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"{self.carrier_name} probe returned an unexpected response: {e}")
            success, message, details = False, f"Unexpected response from {self.carrier_name}", {"error": str(e)}
        return {
            "success": success,
            "message": message,
            "response_time_ms": int((time.monotonic() - started) * 1000),
            "details": details,
        }

    def tracking_url(self, tracking_number: str) -> Optional[str]:
        """Public tracking page for a shipment, if the carrier has a template."""
        template = self._config.tracking_url
        if not template:
            return None
        if "{tracking_number}" in template:
            return template.replace("{tracking_number}", tracking_number)
        return f"{template}{tracking_number}"
