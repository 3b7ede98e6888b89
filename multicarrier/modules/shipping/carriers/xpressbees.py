"""
Xpressbees Carrier Implementation

- JWT auth: POST /users/login with the account email (api_key) and
  password (api_secret); the token is shared across adapter instances per
  carrier account for TOKEN_LIFETIME and refreshed once on a 401
- Rates: STANDARD (4 days) always, EXPRESS (2 days) when quoted
- Carrier quotes only a total; the breakdown is split 75/12/13 base/fuel/GST
"""
import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from multicarrier.core.exceptions import BookingError, GatewayError, NotFoundError
from multicarrier.models.carrier import CarrierCode
from multicarrier.modules.shipping.carriers import register_carrier
from multicarrier.modules.shipping.carriers.base import (
    BaseCarrier,
    BookingRequest,
    BookingResult,
    CarrierQuote,
    PickupRequest,
    PickupResult,
    ShipmentRequest,
    TrackingEvent,
    TrackingInfo,
    parse_datetime,
)

logger = logging.getLogger(__name__)

XPRESSBEES_PRODUCTION_URL = "https://ship.xpressbees.com/api"
XPRESSBEES_UAT_URL = "https://shipuat.xpressbees.com/api"

LOGIN_PATH = "/users/login"
CHARGES_PATH = "/shipments/charges"
SHIPMENTS_PATH = "/shipments"
TRACK_PATH = "/shipments/track/{awb}"
CANCEL_PATH = "/shipments/cancel"
SERVICEABILITY_PATH = "/serviceability"
PICKUP_PATH = "/pickup"
LABEL_PATH = "/shipments/label/{awb}"

STANDARD_DAYS = 4
EXPRESS_DAYS = 2
BOOKS_HSN_CODE = "49011010"

TOKEN_LIFETIME = timedelta(hours=1)
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)

# (carrier id, account email) -> (token, expires_at)
_token_cache: Dict[Tuple[Any, Optional[str]], Tuple[str, datetime]] = {}

XPRESSBEES_STATUS_MAP = {
    "pending_pickup": "created",
    "pickup_scheduled": "pickup_scheduled",
    "picked": "picked",
    "in_transit": "in_transit",
    "out_for_delivery": "out_for_delivery",
    "delivered": "delivered",
    "cancelled": "cancelled",
    "return_to_origin": "rto",
    "rto_delivered": "rto",
    "lost": "failed",
    "undelivered": "failed",
}


def clear_token_cache() -> None:
    _token_cache.clear()


def _split_charge(total: float) -> Dict[str, float]:
    return {
        "base_charge": round(total * 0.75, 2),
        "fuel_surcharge": round(total * 0.12, 2),
        "gst": round(total * 0.13, 2),
    }


@register_carrier(CarrierCode.XPRESSBEES)
class XpressbeesCarrier(BaseCarrier):
    """Xpressbees franchise-network adapter."""

    REQUIRED_CREDENTIALS = ("api_key", "api_secret")

    def __init__(self, carrier_config, settings=None):
        super().__init__(carrier_config, settings=settings)
        self._token: Optional[str] = self._cached_token()

    @property
    def carrier_code(self) -> str:
        return CarrierCode.XPRESSBEES.value

    @property
    def base_url(self) -> str:
        if self._config.api_endpoint:
            return self._config.api_endpoint
        return XPRESSBEES_PRODUCTION_URL if self._config.is_live else XPRESSBEES_UAT_URL

    def _auth_headers(self) -> Dict[str, str]:
        if self._token:
            return {"Authorization": f"Bearer {self._token}"}
        return {}

    def _token_key(self) -> Tuple[Any, Optional[str]]:
        return (self._config.id, self.get_config_value("api_key"))

    def _cached_token(self) -> Optional[str]:
        entry = _token_cache.get(self._token_key())
        if entry is None:
            return None
        token, expires_at = entry
        if datetime.now(timezone.utc) < expires_at - TOKEN_REFRESH_MARGIN:
            return token
        return None

    async def _login(self) -> str:
        self._token = None
        _token_cache.pop(self._token_key(), None)
        response = await self._request(
            "POST",
            LOGIN_PATH,
            json={
                "email": self.get_config_value("api_key"),
                "password": self.get_config_value("api_secret"),
            },
            accept_client_errors=True,
        )
        if response.status_code in (401, 403):
            raise GatewayError(
                "Invalid Xpressbees email or password",
                carrier_code=self.carrier_code,
                status_code=response.status_code,
                code="CARRIER_AUTH_FAILED",
            )
        data = self._json(response) if response.status_code < 400 else {}
        token = data.get("data") if isinstance(data, dict) else None
        if not token or not isinstance(token, str):
            raise GatewayError(
                "Xpressbees login returned no token",
                carrier_code=self.carrier_code,
                status_code=response.status_code,
                body=response.text,
                code="CARRIER_AUTH_FAILED",
            )
        self._token = token
        _token_cache[self._token_key()] = (token, datetime.now(timezone.utc) + TOKEN_LIFETIME)
        logger.info("Xpressbees token obtained")
        return token

    async def _call(
        self,
        method: str,
        path: str,
        *,
        accept_client_errors: bool = False,
        **kwargs,
    ) -> httpx.Response:
        """Authenticated request; re-login once if the token was rejected."""
        if not self._token:
            await self._login()

        response = await self._request(method, path, accept_client_errors=True, **kwargs)
        if response.status_code == 401:
            logger.info("Xpressbees token rejected, re-authenticating")
            await self._login()
            response = await self._request(method, path, accept_client_errors=True, **kwargs)

        if response.status_code >= 400 and not accept_client_errors:
            raise GatewayError(
                f"Xpressbees API error {response.status_code} on {method} {path}",
                carrier_code=self.carrier_code,
                status_code=response.status_code,
                body=response.text,
            )
        return response

    async def get_rates(self, shipment: ShipmentRequest) -> List[CarrierQuote]:
        response = await self._call(
            "POST",
            CHARGES_PATH,
            json={
                "pickup_pincode": shipment.pickup_pincode,
                "drop_pincode": shipment.delivery_pincode,
                "weight": shipment.billable_weight,
                "payment_type": "cod" if shipment.is_cod else "prepaid",
                "collectable_amount": shipment.cod_amount,
                "invoice_value": shipment.order_value,
            },
        )
        payload = self._json(response)
        if not isinstance(payload, dict):
            raise GatewayError(
                "Unexpected Xpressbees rate response shape",
                carrier_code=self.carrier_code,
                body=response.text,
            )
        data = payload.get("data")
        if not data:
            return []

        today = date.today()
        cod_charge = float(data.get("cod_charges") or 0)
        standard_total = float(data.get("standard_charge") or 0)
        quotes = [
            CarrierQuote(
                service_code="STANDARD",
                service_name="Standard Delivery",
                cod_charge=cod_charge,
                insurance_charge=0.0,
                other_charges=0.0,
                total_charge=standard_total,
                delivery_days=STANDARD_DAYS,
                expected_delivery_date=today + timedelta(days=STANDARD_DAYS),
                features=["tracking", "sms_updates", "doorstep_delivery"],
                tracking_available=True,
                **_split_charge(standard_total),
            )
        ]

        if data.get("express_charge") is not None:
            express_total = float(data["express_charge"])
            quotes.append(CarrierQuote(
                service_code="EXPRESS",
                service_name="Express Delivery",
                cod_charge=cod_charge,
                insurance_charge=0.0,
                other_charges=0.0,
                total_charge=express_total,
                delivery_days=EXPRESS_DAYS,
                expected_delivery_date=today + timedelta(days=EXPRESS_DAYS),
                features=["tracking", "priority_handling", "sms_updates", "doorstep_delivery"],
                tracking_available=True,
                **_split_charge(express_total),
            ))

        return quotes

    async def create_shipment(self, request: BookingRequest) -> BookingResult:
        delivery = request.delivery_address
        package = request.package
        body = {
            "order_id": request.order_number,
            "order_date": date.today().isoformat(),
            "pickup_location": self.get_config_value("pickup_location", "Primary"),
            "channel": "API",
            "billing_customer_name": delivery.get("name"),
            "billing_address": delivery.get("address_1"),
            "billing_city": delivery.get("city"),
            "billing_pincode": delivery.get("pincode"),
            "billing_state": delivery.get("state"),
            "billing_country": delivery.get("country") or "India",
            "billing_email": request.customer_email or "",
            "billing_phone": delivery.get("phone"),
            "shipping_is_billing": True,
            "order_items": [{
                "name": package.description,
                "qty": package.quantity,
                "selling_price": package.value,
                "discount": 0,
                "tax": 0,
                "hsn": BOOKS_HSN_CODE,
            }],
            "payment_method": "COD" if request.payment_mode == "cod" else "Prepaid",
            "collectable_amount": request.cod_amount,
            "sub_total": package.value,
            "length": package.length,
            "breadth": package.width,
            "height": package.height,
            "weight": package.weight,
            "service_type": request.service_code,
        }

        response = await self._call("POST", SHIPMENTS_PATH, json=body, accept_client_errors=True)
        try:
            result = self._json(response)
        except GatewayError:
            if response.status_code < 400:
                raise
            result = {}
        data = result.get("data") if isinstance(result, dict) else None

        if response.status_code >= 400 or not isinstance(data, dict) or not data.get("awb_number"):
            message = (result.get("message") if isinstance(result, dict) else None) or "No AWB number returned"
            raise BookingError(
                f"Xpressbees rejected shipment: {message}",
                carrier_code=self.carrier_code,
                service_code=request.service_code,
                details={"response": result},
            )

        awb = str(data["awb_number"])
        transit_days = EXPRESS_DAYS if request.service_code.upper() == "EXPRESS" else STANDARD_DAYS
        return BookingResult(
            tracking_number=awb,
            carrier_reference=str(data.get("shipment_id") or awb),
            label_url=data.get("label_url") or self.print_label(awb),
            pickup_date=date.today() + timedelta(days=1),
            expected_delivery=date.today() + timedelta(days=transit_days),
            charges={
                "base_rate": float(data.get("charges") or 0),
                "cod_fee": float(data.get("cod_charges") or 0),
                "total": float(data.get("total_charges") or 0),
            },
            raw=result,
        )

    async def cancel_shipment(self, tracking_number: str) -> bool:
        response = await self._call("POST", CANCEL_PATH, json={"awb": tracking_number}, accept_client_errors=True)
        if "already cancelled" in response.text.lower():
            logger.info(f"Xpressbees shipment {tracking_number} was already cancelled")
            return True
        if response.status_code >= 400:
            logger.warning(f"Xpressbees cancel rejected for {tracking_number}: {response.status_code}")
            return False
        data = self._json(response)
        return not (isinstance(data, dict) and data.get("status") is False)

    async def track_shipment(self, tracking_number: str) -> TrackingInfo:
        response = await self._call("GET", TRACK_PATH.format(awb=tracking_number), accept_client_errors=True)
        if response.status_code == 404:
            raise NotFoundError(
                f"Xpressbees has no shipment {tracking_number}",
                details={"carrier_code": self.carrier_code, "tracking_number": tracking_number},
            )
        if response.status_code >= 400:
            raise GatewayError(
                f"Xpressbees tracking failed with HTTP {response.status_code}",
                carrier_code=self.carrier_code,
                status_code=response.status_code,
                body=response.text,
            )

        payload = self._json(response)
        tracking = payload.get("data") if isinstance(payload, dict) else None
        if not tracking:
            raise NotFoundError(
                f"Xpressbees has no shipment {tracking_number}",
                details={"carrier_code": self.carrier_code, "tracking_number": tracking_number},
            )

        carrier_status = tracking.get("current_status") or ""
        events = [
            TrackingEvent(
                status=event.get("status") or "",
                timestamp=parse_datetime(event.get("date")),
                location=event.get("location"),
                message=event.get("activity"),
                raw=event,
            )
            for event in tracking.get("tracking_details") or []
        ]
        return TrackingInfo(
            tracking_number=tracking_number,
            status=self.map_status(carrier_status),
            carrier_status=carrier_status,
            current_location=tracking.get("current_location"),
            delivered_at=parse_datetime(tracking.get("delivered_date")),
            events=events,
            raw=payload,
        )

    async def check_serviceability(
        self,
        pickup_pincode: str,
        delivery_pincode: str,
        payment_mode: str,
    ) -> bool:
        response = await self._call(
            "GET",
            SERVICEABILITY_PATH,
            params={
                "pickup_pincode": pickup_pincode,
                "drop_pincode": delivery_pincode,
                "payment_type": "cod" if payment_mode == "cod" else "prepaid",
            },
        )
        payload = self._json(response)
        data = payload.get("data") if isinstance(payload, dict) else None
        return isinstance(data, dict) and data.get("serviceable") is True

    async def schedule_pickup(self, pickup: PickupRequest) -> PickupResult:
        response = await self._call(
            "POST",
            PICKUP_PATH,
            json={
                "pickup_date": pickup.pickup_date.isoformat(),
                "pickup_time": pickup.pickup_time,
                "packages": pickup.packages_count,
                "pickup_location": self.get_config_value("pickup_location", "Primary"),
            },
        )
        payload = self._json(response)
        data = (payload.get("data") if isinstance(payload, dict) else None) or {}
        return PickupResult(
            pickup_id=str(data.get("pickup_id") or f"XB{uuid.uuid4().hex[:10].upper()}"),
            scheduled_time=str(data.get("pickup_time") or pickup.pickup_date.isoformat()),
        )

    def print_label(self, tracking_number: str) -> str:
        return f"{self.base_url}{LABEL_PATH.format(awb=tracking_number)}"

    async def download_label(self, tracking_number: str, label_url: Optional[str] = None) -> bytes:
        response = await self._call("GET", label_url or self.print_label(tracking_number))
        return response.content

    def map_status(self, carrier_status: str) -> str:
        key = (carrier_status or "").strip().lower().replace(" ", "_")
        return XPRESSBEES_STATUS_MAP.get(key, key)

    async def _probe(self) -> Dict[str, Any]:
        await self._login()
        return {
            "endpoint_tested": f"{self.base_url}{LOGIN_PATH}",
            "api_mode": self._config.api_mode,
        }
