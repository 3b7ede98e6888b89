"""
Delhivery Carrier Implementation

- Token auth (Authorization: Token <api_key>)
- Rates: kinko invoice charges API; SURFACE always, EXPRESS up to 10 kg
- Booking: CMU create (form-encoded JSON document)
- Weights are sent in grams
- Pickups name a warehouse registered in the Delhivery panel (alias)
"""
import json
import logging
import uuid
from datetime import date, timedelta
from typing import Any, Dict, List

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
    WarehouseRequirement,
    parse_datetime,
)

logger = logging.getLogger(__name__)

DELHIVERY_LIVE_URL = "https://track.delhivery.com"
DELHIVERY_TEST_URL = "https://staging-express.delhivery.com"

RATES_PATH = "/api/kinko/v1/invoice/charges/.json"
CREATE_PATH = "/api/cmu/create.json"
TRACK_PATH = "/api/v1/packages/json/"
EDIT_PATH = "/api/p/edit"
PINCODE_PATH = "/c/api/pin-codes/json/"
PICKUP_PATH = "/fm/request/new/"
LABEL_PATH = "/api/p/packing_slip"
WAREHOUSE_PATH = "/api/backend/clientwarehouse/fetch/"

EXPRESS_MAX_WEIGHT_KG = 10
EXPRESS_MULTIPLIER = 1.25
METRO_ZONES = {"11", "12", "40", "56", "60", "70", "80"}
BOOKS_HSN_CODE = "49011010"

DELHIVERY_STATUS_MAP = {
    "manifested": "created",
    "pending": "pending",
    "not picked": "pickup_scheduled",
    "picked up": "picked",
    "in transit": "in_transit",
    "dispatched": "out_for_delivery",
    "delivered": "delivered",
    "rto initiated": "rto",
    "rto delivered": "rto",
    "lost": "failed",
    "cancelled": "cancelled",
}


def estimate_delivery_days(origin: str, destination: str, service: str) -> int:
    """Zone-based transit estimate from the first two pincode digits."""
    express = service == "EXPRESS"
    origin_zone, dest_zone = (origin or "")[:2], (destination or "")[:2]
    if origin_zone == dest_zone:
        return 1 if express else 2
    if origin_zone in METRO_ZONES and dest_zone in METRO_ZONES:
        return 2 if express else 3
    return 3 if express else 5


@register_carrier(CarrierCode.DELHIVERY)
class DelhiveryCarrier(BaseCarrier):
    """Delhivery B2C express adapter."""

    REQUIRED_CREDENTIALS = ("api_key",)
    WAREHOUSE_REQUIREMENT = WarehouseRequirement.REGISTERED_ALIAS

    @property
    def carrier_code(self) -> str:
        return CarrierCode.DELHIVERY.value

    @property
    def base_url(self) -> str:
        if self._config.api_endpoint:
            return self._config.api_endpoint
        return DELHIVERY_LIVE_URL if self._config.is_live else DELHIVERY_TEST_URL

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Token {self._config.api_key}"}

    async def get_rates(self, shipment: ShipmentRequest) -> List[CarrierQuote]:
        response = await self._request(
            "GET",
            RATES_PATH,
            params={
                "md": "S",
                "ss": "Delivered",
                "cgm": round(shipment.billable_weight * 1000),
                "o_pin": shipment.pickup_pincode,
                "d_pin": shipment.delivery_pincode,
                "pt": "COD" if shipment.is_cod else "Pre-paid",
            },
        )
        data = self._json(response)
        if not isinstance(data, list):
            raise GatewayError(
                "Unexpected Delhivery rate response shape",
                carrier_code=self.carrier_code,
                body=response.text,
            )
        if not data:
            return []

        rate = data[0]
        total = float(rate.get("total_amount") or 0)
        cod_charge = float(rate.get("cod_charges") or 0)
        today = date.today()

        surface_days = estimate_delivery_days(shipment.pickup_pincode, shipment.delivery_pincode, "SURFACE")
        quotes = [
            CarrierQuote(
                service_code="SURFACE",
                service_name="Surface Express",
                base_charge=total,
                fuel_surcharge=rate.get("fuel_surcharge"),
                gst=rate.get("gst_amount"),
                cod_charge=cod_charge,
                insurance_charge=0.0,
                other_charges=rate.get("docket_charge"),
                total_charge=total,
                delivery_days=surface_days,
                expected_delivery_date=today + timedelta(days=surface_days),
                features=["tracking", "insurance_optional", "doorstep_delivery"],
                tracking_available=True,
            )
        ]

        if shipment.billable_weight <= EXPRESS_MAX_WEIGHT_KG:
            express_total = round(total * EXPRESS_MULTIPLIER, 2)
            express_days = estimate_delivery_days(shipment.pickup_pincode, shipment.delivery_pincode, "EXPRESS")
            quotes.append(CarrierQuote(
                service_code="EXPRESS",
                service_name="Air Express",
                base_charge=round(express_total * 0.8, 2),
                fuel_surcharge=round(express_total * 0.1, 2),
                gst=round(express_total * 0.1, 2),
                cod_charge=cod_charge,
                insurance_charge=0.0,
                other_charges=0.0,
                total_charge=express_total,
                delivery_days=express_days,
                expected_delivery_date=today + timedelta(days=express_days),
                features=["tracking", "priority_handling", "insurance_optional", "doorstep_delivery"],
                tracking_available=True,
            ))

        logger.info(f"Delhivery returned {len(quotes)} services for {shipment.delivery_pincode}")
        return quotes

    async def create_shipment(self, request: BookingRequest) -> BookingResult:
        pickup = request.pickup_address
        delivery = request.delivery_address
        document = {
            "shipments": [{
                "name": delivery.get("name"),
                "add": f"{delivery.get('address_1', '')} {delivery.get('address_2') or ''}".strip(),
                "city": delivery.get("city"),
                "state": delivery.get("state"),
                "country": delivery.get("country") or "India",
                "phone": delivery.get("phone"),
                "pin": delivery.get("pincode"),
                "payment_mode": "COD" if request.payment_mode == "cod" else "Prepaid",
                "cod_amount": request.cod_amount,
                "order": request.order_number,
                "weight": round(request.package.weight * 1000),
                "quantity": request.package.quantity,
                "shipment_length": request.package.length,
                "shipment_width": request.package.width,
                "shipment_height": request.package.height,
                "seller_name": pickup.get("name"),
                "seller_add": pickup.get("address_1", ""),
                "seller_inv": request.order_number,
                "products_desc": request.package.description,
                "hsn_code": BOOKS_HSN_CODE,
                "total_amount": request.package.value,
            }],
            "pickup_location": {
                "name": pickup.get("carrier_warehouse_name") or pickup.get("name"),
                "add": f"{pickup.get('address_1', '')} {pickup.get('address_2') or ''}".strip(),
                "city": pickup.get("city"),
                "pin_code": pickup.get("pincode"),
                "country": pickup.get("country") or "India",
                "phone": pickup.get("phone"),
            },
        }

        response = await self._request(
            "POST",
            CREATE_PATH,
            data={"format": "json", "data": json.dumps(document)},
            accept_client_errors=True,
        )
        try:
            result = self._json(response)
        except GatewayError:
            if response.status_code < 400:
                raise
            result = {}
        packages = result.get("packages") if isinstance(result, dict) else None

        if response.status_code >= 400 or not packages:
            remark = (result.get("rmk") if isinstance(result, dict) else None) or response.text[:200]
            raise BookingError(
                f"Delhivery rejected shipment: {remark}",
                carrier_code=self.carrier_code,
                service_code=request.service_code,
                details={"response": result},
            )

        package = packages[0]
        if package.get("status") == "Fail" or not package.get("waybill"):
            remarks = package.get("remarks") or [result.get("rmk") or "No waybill generated"]
            raise BookingError(
                f"Delhivery shipment creation failed: {', '.join(str(r) for r in remarks)}",
                carrier_code=self.carrier_code,
                service_code=request.service_code,
                details={"response": result},
            )

        waybill = package["waybill"]
        transit_days = 2 if request.service_code.upper() == "EXPRESS" else 4
        return BookingResult(
            tracking_number=waybill,
            carrier_reference=package.get("refnum") or waybill,
            label_url=self.print_label(waybill),
            pickup_date=date.today() + timedelta(days=1),
            expected_delivery=date.today() + timedelta(days=transit_days),
            charges={
                "base_rate": float(package.get("rate") or 0),
                "cod_fee": float(package.get("cod_charges") or 0),
                "total": float(package.get("total_amount") or 0),
            },
            raw=result,
        )

    async def cancel_shipment(self, tracking_number: str) -> bool:
        response = await self._request(
            "POST",
            EDIT_PATH,
            json={"waybill": tracking_number, "cancellation": "true"},
            accept_client_errors=True,
        )
        text = response.text.lower()
        if "already cancelled" in text or "already been cancelled" in text:
            logger.info(f"Delhivery shipment {tracking_number} was already cancelled")
            return True
        if response.status_code >= 400:
            logger.warning(f"Delhivery cancel rejected for {tracking_number}: {response.status_code}")
            return False
        data = self._json(response)
        return not (isinstance(data, dict) and data.get("status") is False)

    async def track_shipment(self, tracking_number: str) -> TrackingInfo:
        response = await self._request("GET", TRACK_PATH, params={"waybill": tracking_number})
        data = self._json(response)
        shipments = data.get("ShipmentData") if isinstance(data, dict) else None
        if not shipments:
            raise NotFoundError(
                f"Delhivery has no shipment {tracking_number}",
                details={"carrier_code": self.carrier_code, "tracking_number": tracking_number},
            )

        shipment = shipments[0].get("Shipment", shipments[0])
        status_block = shipment.get("Status") or {}
        carrier_status = status_block.get("Status") or ""
        status = self.map_status(carrier_status)

        events = []
        for scan in shipment.get("Scans") or []:
            detail = scan.get("ScanDetail") or {}
            events.append(TrackingEvent(
                status=detail.get("Scan") or "",
                timestamp=parse_datetime(detail.get("ScanDateTime")),
                location=detail.get("ScannedLocation"),
                message=detail.get("Instructions"),
                raw=detail,
            ))

        return TrackingInfo(
            tracking_number=tracking_number,
            status=status,
            carrier_status=carrier_status,
            current_location=status_block.get("StatusLocation") or shipment.get("Origin"),
            delivered_at=parse_datetime(status_block.get("StatusDateTime")) if status == "delivered" else None,
            events=events,
            raw=data,
        )

    async def check_serviceability(
        self,
        pickup_pincode: str,
        delivery_pincode: str,
        payment_mode: str,
    ) -> bool:
        response = await self._request("GET", PINCODE_PATH, params={"filter_codes": delivery_pincode})
        data = self._json(response)
        codes = data.get("delivery_codes") if isinstance(data, dict) else None
        if not codes:
            return False

        postal = codes[0].get("postal_code") or {}
        if payment_mode == "cod":
            return postal.get("cash") == "Y"
        return postal.get("is_oda") == "N"

    async def schedule_pickup(self, pickup: PickupRequest) -> PickupResult:
        location = (pickup.address or {}).get("carrier_warehouse_name") or self.get_config_value(
            "pickup_location", "Registered Address"
        )
        response = await self._request(
            "POST",
            PICKUP_PATH,
            json={
                "pickup_date": pickup.pickup_date.isoformat(),
                "pickup_time": pickup.pickup_time,
                "pickup_location": location,
                "expected_package_count": pickup.packages_count,
            },
        )
        data = self._json(response)
        return PickupResult(
            pickup_id=str(data.get("pickup_id") or f"PU{uuid.uuid4().hex[:10].upper()}"),
            scheduled_time=str(data.get("pickup_time") or pickup.pickup_date.isoformat()),
        )

    async def get_registered_pickup_locations(self) -> List[Dict[str, Any]]:
        """Delhivery exposes the client's registered warehouse, not a list."""
        response = await self._request("GET", WAREHOUSE_PATH, params={"format": "json"})
        data = self._json(response)
        if isinstance(data, dict):
            data = data.get("data", data)
        rows = data if isinstance(data, list) else [data]

        locations = []
        for row in rows:
            if not isinstance(row, dict) or not row:
                continue
            alias = row.get("alias") or row.get("name") or row.get("client_name")
            if not alias:
                continue
            locations.append({
                "id": alias,
                "name": alias,
                "carrier_warehouse_name": alias,
                "address": row.get("registered_name") or "",
                "phone": row.get("registered_phone") or row.get("phone") or "",
                "email": row.get("registered_email") or "",
            })
        logger.info(f"Delhivery returned {len(locations)} registered pickup locations")
        return locations

    def print_label(self, tracking_number: str) -> str:
        return f"{self.base_url}{LABEL_PATH}?wbns={tracking_number}&pdf=true"

    def map_status(self, carrier_status: str) -> str:
        key = (carrier_status or "").strip().lower()
        return DELHIVERY_STATUS_MAP.get(key, key.replace(" ", "_"))

    async def _probe(self) -> Dict[str, Any]:
        response = await self._request(
            "GET",
            PINCODE_PATH,
            params={"filter_codes": "110001"},
            accept_client_errors=True,
        )
        if response.status_code in (401, 403):
            raise GatewayError(
                "Invalid Delhivery API token",
                carrier_code=self.carrier_code,
                status_code=response.status_code,
                code="CARRIER_AUTH_FAILED",
            )
        if response.status_code >= 400:
            raise GatewayError(
                f"Delhivery probe failed with HTTP {response.status_code}",
                carrier_code=self.carrier_code,
                status_code=response.status_code,
                body=response.text,
            )
        data = self._json(response)
        return {
            "endpoint_tested": f"{self.base_url}{PINCODE_PATH}",
            "api_mode": self._config.api_mode,
            "pincodes_returned": len(data.get("delivery_codes") or []) if isinstance(data, dict) else 0,
        }
