"""
Carrier Webhook Ingestion

Carriers push tracking updates; each push is verified, parsed, matched to a
shipment by tracking number and applied through the same status mapping as
polling.

Verification: when a secret is configured for the carrier, the
X-Webhook-Signature header must be the hex HMAC-SHA256 of the raw body.
Carriers without a secret accept unsigned payloads.

Anything malformed, unverifiable or unknown raises WebhookRejectedError and
leaves shipment state untouched.
"""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from multicarrier.core.config import Settings, settings as default_settings
from multicarrier.core.exceptions import WebhookRejectedError
from multicarrier.models.carrier import CarrierCode
from multicarrier.models.shipment import Shipment
from multicarrier.modules.shipping.carriers.base import parse_datetime
from multicarrier.modules.shipping.carriers.delhivery import DELHIVERY_STATUS_MAP
from multicarrier.modules.shipping.carriers.xpressbees import XPRESSBEES_STATUS_MAP
from multicarrier.schemas.shipping import DelhiveryWebhookPayload, XpressbeesWebhookPayload
from multicarrier.services.shipment_lifecycle import ShipmentLifecycleManager

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"


@dataclass
class WebhookUpdate:
    tracking_number: str
    carrier_status: str
    status: str
    location: Optional[str] = None
    message: Optional[str] = None
    occurred_at: Optional[Any] = None
    payload: Optional[Dict[str, Any]] = None


def _delhivery_update(data: Dict[str, Any]) -> WebhookUpdate:
    # Delhivery nests the scan under "Shipment" in some push formats
    body = data.get("Shipment", data)
    if not isinstance(body, dict):
        raise WebhookRejectedError("Delhivery webhook 'Shipment' must be a JSON object")
    if isinstance(body.get("Status"), dict):
        status_block = body["Status"]
        body = {
            "waybill": body.get("AWB") or body.get("waybill"),
            "Status": status_block.get("Status"),
            "StatusLocation": status_block.get("StatusLocation"),
            "Instructions": status_block.get("Instructions"),
            "StatusDateTime": status_block.get("StatusDateTime"),
        }
    payload = DelhiveryWebhookPayload.model_validate(body)
    key = payload.status.strip().lower()
    return WebhookUpdate(
        tracking_number=payload.waybill,
        carrier_status=payload.status,
        status=DELHIVERY_STATUS_MAP.get(key, key.replace(" ", "_")),
        location=payload.location,
        message=payload.instructions,
        occurred_at=parse_datetime(payload.status_date_time),
        payload=data,
    )


def _xpressbees_update(data: Dict[str, Any]) -> WebhookUpdate:
    payload = XpressbeesWebhookPayload.model_validate(data)
    key = payload.status.strip().lower().replace(" ", "_")
    return WebhookUpdate(
        tracking_number=payload.awb_number,
        carrier_status=payload.status,
        status=XPRESSBEES_STATUS_MAP.get(key, key),
        location=payload.location,
        message=payload.remarks,
        occurred_at=parse_datetime(payload.event_time),
        payload=data,
    )


PARSERS = {
    CarrierCode.DELHIVERY.value: _delhivery_update,
    CarrierCode.XPRESSBEES.value: _xpressbees_update,
}


class WebhookResult(BaseModel):
    tracking_number: str
    status: str
    status_changed: bool


class WebhookProcessor:
    """Verifies and applies carrier tracking pushes."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        lifecycle: Optional[ShipmentLifecycleManager] = None,
    ):
        self.db = db
        self.settings = settings or default_settings
        self.lifecycle = lifecycle or ShipmentLifecycleManager(db, settings=self.settings)

    def verify_signature(self, carrier_code: str, raw_body: bytes, signature: Optional[str]) -> None:
        secret = self.settings.webhook_secrets().get(carrier_code)
        if not secret:
            return
        if not signature:
            raise WebhookRejectedError(
                f"Missing {SIGNATURE_HEADER} for {carrier_code} webhook",
                code="WEBHOOK_SIGNATURE_MISSING",
            )
        expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
        provided = signature.strip()
        if provided.lower().startswith("sha256="):
            provided = provided[len("sha256="):]
        if not hmac.compare_digest(expected, provided.lower()):
            raise WebhookRejectedError(
                f"Invalid {carrier_code} webhook signature",
                code="WEBHOOK_SIGNATURE_INVALID",
            )

    def parse(self, carrier_code: str, raw_body: bytes) -> WebhookUpdate:
        parser = PARSERS.get(carrier_code)
        if parser is None:
            raise WebhookRejectedError(
                f"No webhook parser for carrier {carrier_code}",
                details={"carrier_code": carrier_code},
            )
        try:
            data = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise WebhookRejectedError(f"Malformed {carrier_code} webhook body: {e}") from e
        if not isinstance(data, dict):
            raise WebhookRejectedError(f"{carrier_code} webhook body must be a JSON object")
        try:
            return parser(data)
        except PydanticValidationError as e:
            raise WebhookRejectedError(
                f"Malformed {carrier_code} webhook payload",
                details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
            ) from e
        except (AttributeError, TypeError) as e:
            raise WebhookRejectedError(f"Malformed {carrier_code} webhook payload: {e}") from e

    async def process(
        self,
        carrier_code: str,
        raw_body: bytes,
        signature: Optional[str] = None,
    ) -> WebhookResult:
        """
        Raises:
            WebhookRejectedError: unverifiable, malformed, or unknown shipment
        """
        carrier_code = (carrier_code or "").lower()
        try:
            self.verify_signature(carrier_code, raw_body, signature)
            update = self.parse(carrier_code, raw_body)
        except WebhookRejectedError as e:
            logger.warning(f"Webhook rejected: {e.message}")
            raise

        result = await self.db.execute(
            select(Shipment).where(Shipment.tracking_number == update.tracking_number)
        )
        shipment = result.scalar_one_or_none()
        if shipment is None:
            logger.warning(f"Webhook rejected: no shipment with tracking {update.tracking_number}")
            raise WebhookRejectedError(
                f"Unknown tracking number {update.tracking_number}",
                code="WEBHOOK_UNKNOWN_SHIPMENT",
                details={"tracking_number": update.tracking_number},
            )

        lock = await self.lifecycle.locks.get_lock(shipment.id)
        async with lock:
            changed = self.lifecycle.apply_status_update(
                shipment,
                update.status,
                location=update.location,
                message=update.carrier_status,
                delivered_at=update.occurred_at if update.status == "delivered" else None,
            )
            self.lifecycle.add_event(
                shipment,
                update.carrier_status,
                event_type="webhook_update",
                location=update.location,
                message=update.message,
                payload=update.payload,
                occurred_at=update.occurred_at,
            )
            await self.lifecycle.flush_shipment(shipment)

        logger.info(f"Webhook applied for {update.tracking_number}: {shipment.status.value}")
        return WebhookResult(
            tracking_number=update.tracking_number,
            status=shipment.status.value,
            status_changed=changed,
        )
