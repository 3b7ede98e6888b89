"""
Shipping API Routes

Provides endpoints for:
- Rate comparison across carriers
- Shipment booking, cancellation, tracking, pickup and labels
- Carrier listing, serviceability and connectivity probes
- Carrier webhook ingestion
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from multicarrier.core.database import get_db
from multicarrier.core.exceptions import (
    BookingError,
    ConfigurationError,
    GatewayError,
    NotFoundError,
    ShipmentConflictError,
    ShippingError,
    UnsupportedCarrierError,
    ValidationError,
    WebhookRejectedError,
)
from multicarrier.schemas.shipping import (
    CreateShipmentRequest,
    RateShoppingRequest,
    ServiceabilityQuery,
    ShipmentResponse,
)
from multicarrier.services.multi_carrier_service import MultiCarrierShippingService, get_multi_carrier_service
from multicarrier.services.webhooks import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shipping", tags=["shipping"])

ERROR_STATUS = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (ShipmentConflictError, status.HTTP_409_CONFLICT),
    (BookingError, status.HTTP_502_BAD_GATEWAY),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
    (UnsupportedCarrierError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConfigurationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
]

SIGNATURE_FAILURES = ("WEBHOOK_SIGNATURE_MISSING", "WEBHOOK_SIGNATURE_INVALID")


def http_error(error: ShippingError) -> HTTPException:
    """Map a shipping error to an HTTPException carrying error.to_dict()."""
    if isinstance(error, WebhookRejectedError):
        code = (
            status.HTTP_401_UNAUTHORIZED
            if error.code in SIGNATURE_FAILURES
            else status.HTTP_400_BAD_REQUEST
        )
        return HTTPException(status_code=code, detail=error.to_dict())
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return HTTPException(status_code=code, detail=error.to_dict())
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.to_dict())


async def shipping_service(db: AsyncSession = Depends(get_db)) -> MultiCarrierShippingService:
    return await get_multi_carrier_service(db)


# ==================== Rate Shopping ====================


@router.post("/rates/compare")
async def compare_rates(
    request: RateShoppingRequest,
    service: MultiCarrierShippingService = Depends(shipping_service),
):
    """
    Compare rates from every eligible carrier.

    Partial carrier failure is not an error; an empty `rates` list is a
    valid answer.
    """
    try:
        payload = await service.get_rates_payload(request)
    except ShippingError as e:
        raise http_error(e)
    return Response(content=payload, media_type="application/json")


# ==================== Carriers ====================


@router.get("/carriers")
async def list_carriers(service: MultiCarrierShippingService = Depends(shipping_service)):
    return {"carriers": await service.list_active_carriers()}


@router.get("/carriers/{carrier_id}/serviceability")
async def carrier_serviceability(
    carrier_id: int,
    query: ServiceabilityQuery = Depends(),
    service: MultiCarrierShippingService = Depends(shipping_service),
):
    try:
        serviceable = await service.check_serviceability(carrier_id, query.pincode, query.payment_mode)
    except ShippingError as e:
        raise http_error(e)
    return {"carrier_id": carrier_id, "pincode": query.pincode, "serviceable": serviceable}


@router.post("/carriers/{carrier_id}/probe")
async def probe_carrier(
    carrier_id: int,
    service: MultiCarrierShippingService = Depends(shipping_service),
):
    """Real connectivity check; failures are reported in the body, not as errors."""
    try:
        return await service.probe_carrier(carrier_id)
    except ShippingError as e:
        raise http_error(e)


@router.get("/carriers/{carrier_id}/pickup-locations")
async def carrier_pickup_locations(
    carrier_id: int,
    service: MultiCarrierShippingService = Depends(shipping_service),
):
    try:
        locations = await service.get_registered_pickup_locations(carrier_id)
    except ShippingError as e:
        raise http_error(e)
    return {"carrier_id": carrier_id, "locations": locations}


# ==================== Shipments ====================


@router.post("/shipments", response_model=ShipmentResponse, status_code=status.HTTP_201_CREATED)
async def create_shipment(
    request: CreateShipmentRequest,
    service: MultiCarrierShippingService = Depends(shipping_service),
):
    try:
        shipment = await service.create_shipment(
            request.order,
            request.carrier_id,
            request.service_code,
            request.options,
        )
    except ShippingError as e:
        logger.error(f"Shipment booking failed for order {request.order.order_number}: {e.message}")
        raise http_error(e)
    return ShipmentResponse.model_validate(shipment)


@router.post("/shipments/{shipment_id}/cancel")
async def cancel_shipment(
    shipment_id: int,
    service: MultiCarrierShippingService = Depends(shipping_service),
):
    try:
        shipment = await service.get_shipment(shipment_id)
        cancelled = await service.cancel_shipment(shipment)
    except ShippingError as e:
        raise http_error(e)
    return {"shipment_id": shipment_id, "cancelled": cancelled, "status": shipment.status.value}


@router.post("/shipments/{shipment_id}/track")
async def track_shipment(
    shipment_id: int,
    service: MultiCarrierShippingService = Depends(shipping_service),
):
    try:
        shipment = await service.get_shipment(shipment_id)
        tracking = await service.track_shipment(shipment)
    except ShippingError as e:
        raise http_error(e)
    return {
        "shipment_id": shipment_id,
        "tracking_number": shipment.tracking_number,
        "status": shipment.status.value,
        "current_location": shipment.current_location,
        "delivered_at": shipment.delivered_at,
        "refreshed": tracking is not None,
        "carrier_status": tracking.carrier_status if tracking else None,
        "events": [
            {
                "status": e.status,
                "location": e.location,
                "message": e.message,
                "timestamp": e.timestamp,
            }
            for e in (tracking.events if tracking else [])
        ],
        "tracking_url": await service.tracking_url(shipment),
    }


@router.post("/shipments/{shipment_id}/pickup")
async def schedule_pickup(
    shipment_id: int,
    service: MultiCarrierShippingService = Depends(shipping_service),
):
    try:
        shipment = await service.get_shipment(shipment_id)
        scheduled = await service.schedule_pickup(shipment)
    except ShippingError as e:
        raise http_error(e)
    return {
        "shipment_id": shipment_id,
        "scheduled": scheduled,
        "pickup_token": shipment.pickup_token,
        "pickup_scheduled_at": shipment.pickup_scheduled_at,
    }


@router.post("/shipments/{shipment_id}/label")
async def generate_label(
    shipment_id: int,
    service: MultiCarrierShippingService = Depends(shipping_service),
):
    try:
        shipment = await service.get_shipment(shipment_id)
        label_url = await service.generate_label(shipment)
    except ShippingError as e:
        raise http_error(e)
    return {"shipment_id": shipment_id, "stored": label_url is not None, "label_url": shipment.label_url}


# ==================== Webhooks ====================


@router.post("/webhooks/{carrier_code}")
async def carrier_webhook(
    carrier_code: str,
    request: Request,
    x_webhook_signature: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
):
    raw_body = await request.body()
    processor = WebhookProcessor(db)
    try:
        result = await processor.process(carrier_code, raw_body, x_webhook_signature)
    except ShippingError as e:
        raise http_error(e)
    return result.model_dump()
