"""
Tests for the Xpressbees adapter: token auth, rates, booking and tracking.
"""
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from multicarrier.core.exceptions import BookingError, GatewayError, NotFoundError
from multicarrier.modules.shipping.carriers.base import BookingRequest, PackageDetails, ShipmentRequest
from multicarrier.modules.shipping.carriers import xpressbees
from multicarrier.modules.shipping.carriers.xpressbees import XpressbeesCarrier


class FakeXpressbees:
    """Answers (status, json) per path; counts logins."""

    def __init__(self, routes, reject_first_token=False):
        self.routes = routes
        self.logins = 0
        self.reject_first_token = reject_first_token
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        status_code, body = self.answer(request)
        return httpx.Response(status_code, json=body)

    def answer(self, request: httpx.Request):
        self.requests.append(request)
        path = request.url.path.replace("/api", "", 1)
        if path == "/users/login":
            self.logins += 1
            return 200, {"status": True, "data": f"token-{self.logins}"}
        if self.reject_first_token and request.headers.get("Authorization") == "Bearer token-1":
            return 401, {"message": "Token expired"}
        return self.routes.get(path, (404, {"message": "not found"}))


def make_adapter(carrier, settings, transport):
    adapter = XpressbeesCarrier(carrier, settings=settings)
    adapter._client = httpx.AsyncClient(transport=httpx.MockTransport(transport))
    return adapter


def shipment(payment_mode="prepaid"):
    return ShipmentRequest(
        pickup_pincode="110001",
        delivery_pincode="560001",
        weight=2.2,
        volumetric_weight=0.0,
        billable_weight=2.2,
        payment_mode=payment_mode,
        order_value=1200,
        cod_amount=1200 if payment_mode == "cod" else 0,
    )


class TestXpressbeesAuth:

    @pytest.mark.asyncio
    async def test_logs_in_once_and_reuses_token(self, make_carrier, test_settings):
        transport = FakeXpressbees({"/shipments/charges": (200, {"data": {"standard_charge": 90}})})
        adapter = make_adapter(make_carrier(code="xpressbees"), test_settings, transport)

        await adapter.get_rates(shipment())
        await adapter.get_rates(shipment())

        assert transport.logins == 1
        assert transport.requests[-1].headers["Authorization"] == "Bearer token-1"

    @pytest.mark.asyncio
    async def test_token_shared_across_adapter_instances(self, make_carrier, test_settings):
        transport = FakeXpressbees({"/shipments/charges": (200, {"data": {"standard_charge": 90}})})
        carrier = make_carrier(code="xpressbees")

        for _ in range(3):
            adapter = make_adapter(carrier, test_settings, transport)
            await adapter.get_rates(shipment())
            await adapter.close()

        assert transport.logins == 1

    @pytest.mark.asyncio
    async def test_token_not_shared_between_accounts(self, make_carrier, test_settings):
        transport = FakeXpressbees({"/shipments/charges": (200, {"data": {"standard_charge": 90}})})

        await make_adapter(make_carrier(id=1, code="xpressbees"), test_settings, transport).get_rates(shipment())
        await make_adapter(make_carrier(id=2, code="xpressbees", api_key="other@example.com"),
                           test_settings, transport).get_rates(shipment())

        assert transport.logins == 2

    @pytest.mark.asyncio
    async def test_expired_cached_token_is_replaced(self, make_carrier, test_settings):
        transport = FakeXpressbees({"/shipments/charges": (200, {"data": {"standard_charge": 90}})})
        carrier = make_carrier(code="xpressbees")
        await make_adapter(carrier, test_settings, transport).get_rates(shipment())

        key = (carrier.id, carrier.api_key)
        token, _ = xpressbees._token_cache[key]
        xpressbees._token_cache[key] = (token, datetime.now(timezone.utc) + timedelta(minutes=1))
        await make_adapter(carrier, test_settings, transport).get_rates(shipment())

        assert transport.logins == 2

    @pytest.mark.asyncio
    async def test_expired_token_triggers_one_relogin(self, make_carrier, test_settings):
        transport = FakeXpressbees(
            {"/shipments/charges": (200, {"data": {"standard_charge": 90}})},
            reject_first_token=True,
        )
        adapter = make_adapter(make_carrier(code="xpressbees"), test_settings, transport)

        quotes = await adapter.get_rates(shipment())

        assert transport.logins == 2
        assert quotes[0].total_charge == 90

    @pytest.mark.asyncio
    async def test_bad_credentials(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="xpressbees"), test_settings,
                               lambda r: httpx.Response(401, json={"message": "Invalid credentials"}))

        with pytest.raises(GatewayError) as exc_info:
            await adapter.get_rates(shipment())

        assert exc_info.value.code == "CARRIER_AUTH_FAILED"

    @pytest.mark.asyncio
    async def test_probe_reports_login_failure(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="xpressbees"), test_settings,
                               lambda r: httpx.Response(200, json={"status": False}))

        result = await adapter.probe_connection()

        assert result["success"] is False
        assert result["message"] == "Xpressbees login returned no token"


class TestXpressbeesRates:

    @pytest.mark.asyncio
    async def test_standard_and_express(self, make_carrier, test_settings):
        transport = FakeXpressbees({"/shipments/charges": (200, {"data": {
            "standard_charge": 100,
            "express_charge": 160,
            "cod_charges": 30,
        }})})
        adapter = make_adapter(make_carrier(code="xpressbees"), test_settings, transport)

        quotes = await adapter.get_rates(shipment(payment_mode="cod"))

        assert [q.service_code for q in quotes] == ["STANDARD", "EXPRESS"]
        standard = quotes[0]
        assert standard.base_charge == 75
        assert standard.fuel_surcharge == 12
        assert standard.gst == 13
        assert standard.cod_charge == 30
        assert standard.delivery_days == 4
        assert quotes[1].delivery_days == 2

    @pytest.mark.asyncio
    async def test_standard_only_without_express_quote(self, make_carrier, test_settings):
        transport = FakeXpressbees({"/shipments/charges": (200, {"data": {"standard_charge": 100}})})
        adapter = make_adapter(make_carrier(code="xpressbees"), test_settings, transport)

        quotes = await adapter.get_rates(shipment())

        assert [q.service_code for q in quotes] == ["STANDARD"]

    @pytest.mark.asyncio
    async def test_no_data_means_no_quotes(self, make_carrier, test_settings):
        transport = FakeXpressbees({"/shipments/charges": (200, {"data": None})})
        adapter = make_adapter(make_carrier(code="xpressbees"), test_settings, transport)

        assert await adapter.get_rates(shipment()) == []


class TestXpressbeesShipments:

    @pytest.fixture
    def booking(self):
        return BookingRequest(
            order_id=7,
            order_number="ORD-7",
            service_code="EXPRESS",
            service_name="Express Delivery",
            pickup_address={"name": "Main Warehouse", "pincode": "110001"},
            delivery_address={"name": "Ravi", "address_1": "5 Lake Rd", "city": "Bengaluru", "pincode": "560001"},
            package=PackageDetails(weight=1.0, length=30, width=20, height=10, value=499),
            payment_mode="cod",
            cod_amount=499,
        )

    @pytest.mark.asyncio
    async def test_create_shipment(self, make_carrier, test_settings, booking):
        transport = FakeXpressbees({"/shipments": (200, {"status": True, "data": {
            "awb_number": 14123400001,
            "shipment_id": 998,
            "total_charges": 160,
        }})})
        adapter = make_adapter(make_carrier(code="xpressbees"), test_settings, transport)

        result = await adapter.create_shipment(booking)

        assert result.tracking_number == "14123400001"
        assert result.carrier_reference == "998"
        assert result.charges["total"] == 160
        assert result.label_url.endswith("/shipments/label/14123400001")

    @pytest.mark.asyncio
    async def test_rejected_booking(self, make_carrier, test_settings, booking):
        transport = FakeXpressbees({"/shipments": (422, {"status": False, "message": "Bad pincode"})})
        adapter = make_adapter(make_carrier(code="xpressbees"), test_settings, transport)

        with pytest.raises(BookingError, match="Bad pincode"):
            await adapter.create_shipment(booking)

    @pytest.mark.asyncio
    async def test_cancel_already_cancelled(self, make_carrier, test_settings):
        transport = FakeXpressbees({"/shipments/cancel": (400, {"message": "AWB already cancelled"})})
        adapter = make_adapter(make_carrier(code="xpressbees"), test_settings, transport)

        assert await adapter.cancel_shipment("141234") is True

    @pytest.mark.asyncio
    async def test_cancel_refused(self, make_carrier, test_settings):
        transport = FakeXpressbees({"/shipments/cancel": (400, {"message": "Already picked"})})
        adapter = make_adapter(make_carrier(code="xpressbees"), test_settings, transport)

        assert await adapter.cancel_shipment("141234") is False

    @pytest.mark.asyncio
    async def test_track(self, make_carrier, test_settings):
        transport = FakeXpressbees({"/shipments/track/141234": (200, {"data": {
            "current_status": "Out For Delivery",
            "current_location": "Bengaluru Hub",
            "tracking_details": [
                {"status": "picked", "date": "2024-05-01T09:00:00", "location": "Delhi"},
                {"status": "out_for_delivery", "date": "2024-05-03T08:00:00", "location": "Bengaluru Hub"},
            ],
        }})})
        adapter = make_adapter(make_carrier(code="xpressbees"), test_settings, transport)

        info = await adapter.track_shipment("141234")

        assert info.status == "out_for_delivery"
        assert info.current_location == "Bengaluru Hub"
        assert len(info.events) == 2

    @pytest.mark.asyncio
    async def test_track_unknown_awb(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="xpressbees"), test_settings, FakeXpressbees({}))

        with pytest.raises(NotFoundError):
            await adapter.track_shipment("000")

    @pytest.mark.asyncio
    async def test_serviceability(self, make_carrier, test_settings):
        transport = FakeXpressbees({"/serviceability": (200, {"data": {"serviceable": True}})})
        adapter = make_adapter(make_carrier(code="xpressbees"), test_settings, transport)

        assert await adapter.check_serviceability("110001", "560001", "cod") is True

    def test_status_mapping(self, make_carrier, test_settings):
        adapter = XpressbeesCarrier(make_carrier(code="xpressbees"), settings=test_settings)

        assert adapter.map_status("Return To Origin") == "rto"
        assert adapter.map_status("Pending Pickup") == "created"
        assert adapter.map_status("Undelivered") == "failed"
