"""
Tests for carrier webhook verification and application.
"""
import hashlib
import hmac
import json

import pytest

from multicarrier.core.exceptions import WebhookRejectedError
from multicarrier.models.carrier import Carrier
from multicarrier.models.shipment import Shipment, ShipmentEvent, ShipmentStatus
from multicarrier.services.shipment_lifecycle import ShipmentLifecycleManager, ShipmentLockManager
from multicarrier.services.webhooks import WebhookProcessor

SECRET = "whsec-delhivery"


def sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def delhivery_body(waybill="WB1001", status="In Transit", location="Nagpur_Hub"):
    return json.dumps({
        "waybill": waybill,
        "Status": status,
        "StatusLocation": location,
        "StatusDateTime": "2024-05-01T18:00:00",
    }).encode()


@pytest.fixture
def webhook_settings(test_settings):
    return test_settings.model_copy(update={"WEBHOOK_SECRETS": f"delhivery:{SECRET}"})


@pytest.fixture
def processor(route_db, make_carrier, make_shipment, carrier_factory, webhook_settings):
    def build(shipments=None):
        shipments = [make_shipment(status=ShipmentStatus.PICKED)] if shipments is None else shipments
        db = route_db({Shipment: shipments, Carrier: [make_carrier(code="delhivery")]})
        lifecycle = ShipmentLifecycleManager(
            db, settings=webhook_settings, factory=carrier_factory(), locks=ShipmentLockManager()
        )
        return WebhookProcessor(db, settings=webhook_settings, lifecycle=lifecycle), db
    return build


class TestSignature:

    def test_valid_signature(self, processor):
        webhooks, _ = processor()
        body = delhivery_body()

        webhooks.verify_signature("delhivery", body, sign(body))
        webhooks.verify_signature("delhivery", body, f"sha256={sign(body)}")

    def test_missing_signature(self, processor):
        webhooks, _ = processor()

        with pytest.raises(WebhookRejectedError) as exc_info:
            webhooks.verify_signature("delhivery", delhivery_body(), None)

        assert exc_info.value.code == "WEBHOOK_SIGNATURE_MISSING"

    def test_invalid_signature(self, processor):
        webhooks, _ = processor()
        body = delhivery_body()

        with pytest.raises(WebhookRejectedError) as exc_info:
            webhooks.verify_signature("delhivery", body, sign(body, "wrong-secret"))

        assert exc_info.value.code == "WEBHOOK_SIGNATURE_INVALID"

    def test_carrier_without_secret_accepts_unsigned(self, processor):
        webhooks, _ = processor()

        webhooks.verify_signature("xpressbees", b"{}", None)


class TestParse:

    def test_delhivery_flat_payload(self, processor):
        webhooks, _ = processor()

        update = webhooks.parse("delhivery", delhivery_body(status="Dispatched"))

        assert update.tracking_number == "WB1001"
        assert update.status == "out_for_delivery"
        assert update.location == "Nagpur_Hub"
        assert update.occurred_at is not None

    def test_delhivery_nested_payload(self, processor):
        webhooks, _ = processor()
        body = json.dumps({"Shipment": {
            "AWB": "WB1001",
            "Status": {"Status": "Delivered", "StatusLocation": "Mumbai"},
        }}).encode()

        update = webhooks.parse("delhivery", body)

        assert update.tracking_number == "WB1001"
        assert update.status == "delivered"

    def test_xpressbees_payload(self, processor):
        webhooks, _ = processor()
        body = json.dumps({"awb_number": "141234", "status": "Return To Origin", "location": "Pune"}).encode()

        update = webhooks.parse("xpressbees", body)

        assert update.status == "rto"

    def test_malformed_json(self, processor):
        webhooks, _ = processor()

        with pytest.raises(WebhookRejectedError):
            webhooks.parse("delhivery", b"{not json")

    @pytest.mark.parametrize("shipment_block", ['"garbage"', "[1, 2]", "null"])
    def test_non_object_shipment_block(self, processor, shipment_block):
        webhooks, _ = processor()

        with pytest.raises(WebhookRejectedError):
            webhooks.parse("delhivery", f'{{"Shipment": {shipment_block}}}'.encode())

    @pytest.mark.asyncio
    async def test_non_object_shipment_block_rejected_without_changes(self, processor):
        webhooks, db = processor()

        with pytest.raises(WebhookRejectedError):
            await webhooks.process("delhivery", b'{"Shipment": "garbage"}', sign(b'{"Shipment": "garbage"}'))

        db.add.assert_not_called()

    def test_missing_fields(self, processor):
        webhooks, _ = processor()

        with pytest.raises(WebhookRejectedError):
            webhooks.parse("delhivery", json.dumps({"Status": "Delivered"}).encode())

    def test_unknown_carrier(self, processor):
        webhooks, _ = processor()

        with pytest.raises(WebhookRejectedError):
            webhooks.parse("bluedart", b"{}")


class TestProcess:

    @pytest.mark.asyncio
    async def test_applies_status_update(self, processor):
        webhooks, db = processor()
        body = delhivery_body(status="In Transit")

        result = await webhooks.process("delhivery", body, sign(body))

        assert result.status == "in_transit"
        assert result.status_changed is True
        events = [c.args[0] for c in db.add.call_args_list if isinstance(c.args[0], ShipmentEvent)]
        assert [e.event_type for e in events] == ["webhook_update"]
        db.flush.assert_awaited()

    @pytest.mark.asyncio
    async def test_bad_signature_leaves_shipment_untouched(self, processor, make_shipment):
        shipment = make_shipment(status=ShipmentStatus.PICKED)
        webhooks, db = processor([shipment])
        body = delhivery_body(status="Delivered")

        with pytest.raises(WebhookRejectedError):
            await webhooks.process("delhivery", body, "deadbeef")

        assert shipment.status == ShipmentStatus.PICKED
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_tracking_number(self, processor):
        webhooks, db = processor(shipments=[])
        body = delhivery_body(waybill="NOPE")

        with pytest.raises(WebhookRejectedError) as exc_info:
            await webhooks.process("delhivery", body, sign(body))

        assert exc_info.value.code == "WEBHOOK_UNKNOWN_SHIPMENT"

    @pytest.mark.asyncio
    async def test_terminal_shipment_not_moved(self, processor, make_shipment):
        shipment = make_shipment(status=ShipmentStatus.CANCELLED)
        webhooks, db = processor([shipment])
        body = delhivery_body(status="In Transit")

        result = await webhooks.process("delhivery", body, sign(body))

        assert result.status_changed is False
        assert shipment.status == ShipmentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_carrier_code_is_case_insensitive(self, processor):
        webhooks, _ = processor()
        body = delhivery_body(status="Delivered")

        result = await webhooks.process("Delhivery", body, sign(body))

        assert result.status == "delivered"
