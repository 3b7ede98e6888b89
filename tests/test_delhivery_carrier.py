"""
Tests for the Delhivery adapter against a mocked HTTP transport.
"""
import json
from datetime import date
from urllib.parse import parse_qs

import httpx
import pytest

from multicarrier.core.exceptions import BookingError, CircuitOpenError, GatewayError, NotFoundError
from multicarrier.modules.shipping.carriers.base import (
    BookingRequest,
    PackageDetails,
    PickupRequest,
    ShipmentRequest,
    WarehouseRequirement,
)
from multicarrier.modules.shipping.carriers.delhivery import DelhiveryCarrier, estimate_delivery_days


def make_adapter(carrier, settings, handler):
    adapter = DelhiveryCarrier(carrier, settings=settings)
    adapter._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return adapter


def shipment(billable_weight=1.1, payment_mode="prepaid"):
    return ShipmentRequest(
        pickup_pincode="110001",
        delivery_pincode="400001",
        weight=billable_weight,
        volumetric_weight=0.0,
        billable_weight=billable_weight,
        payment_mode=payment_mode,
    )


def booking_request(service_code="SURFACE"):
    return BookingRequest(
        order_id=42,
        order_number="ORD-42",
        service_code=service_code,
        service_name="Surface Delivery",
        pickup_address={"name": "Main Warehouse", "address_1": "1 Dock Rd", "city": "New Delhi", "pincode": "110001"},
        delivery_address={"name": "Asha", "address_1": "22 Hill St", "city": "Mumbai", "pincode": "400001",
                          "phone": "9999999999"},
        package=PackageDetails(weight=1.2, length=30, width=20, height=10, value=899),
    )


class TestDelhiveryRates:

    @pytest.mark.asyncio
    async def test_surface_and_express_quotes(self, make_carrier, test_settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=[{
                "total_amount": 100,
                "cod_charges": 0,
                "fuel_surcharge": 8,
                "gst_amount": 15,
                "docket_charge": 2,
            }])

        adapter = make_adapter(make_carrier(code="delhivery"), test_settings, handler)
        quotes = await adapter.get_rates(shipment())
        await adapter.close()

        assert seen["auth"] == "Token test-key"
        assert seen["params"]["cgm"] == "1100"
        assert seen["params"]["pt"] == "Pre-paid"
        assert [q.service_code for q in quotes] == ["SURFACE", "EXPRESS"]
        assert quotes[0].total_charge == 100
        assert quotes[1].total_charge == 125
        # Delhi -> Mumbai is metro to metro
        assert quotes[0].delivery_days == 3
        assert quotes[1].delivery_days == 2

    @pytest.mark.asyncio
    async def test_heavy_parcels_get_surface_only(self, make_carrier, test_settings):
        def handler(request):
            return httpx.Response(200, json=[{"total_amount": 400}])

        adapter = make_adapter(make_carrier(code="delhivery"), test_settings, handler)
        quotes = await adapter.get_rates(shipment(billable_weight=12))

        assert [q.service_code for q in quotes] == ["SURFACE"]

    @pytest.mark.asyncio
    async def test_empty_response_means_no_quotes(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="delhivery"), test_settings, lambda r: httpx.Response(200, json=[]))

        assert await adapter.get_rates(shipment()) == []

    @pytest.mark.asyncio
    async def test_server_error_raises_gateway_error(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="delhivery"), test_settings, lambda r: httpx.Response(503))

        with pytest.raises(GatewayError) as exc_info:
            await adapter.get_rates(shipment())

        assert exc_info.value.details["status_code"] == 503

    @pytest.mark.asyncio
    async def test_malformed_body_raises_gateway_error(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="delhivery"), test_settings,
                               lambda r: httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(GatewayError):
            await adapter.get_rates(shipment())

    @pytest.mark.asyncio
    async def test_repeated_failures_open_the_circuit(self, make_carrier, test_settings):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502)

        adapter = make_adapter(make_carrier(code="delhivery"), test_settings, handler)
        for _ in range(5):
            with pytest.raises(GatewayError):
                await adapter.get_rates(shipment())

        with pytest.raises(CircuitOpenError):
            await adapter.get_rates(shipment())
        assert len(calls) == 5

    @pytest.mark.asyncio
    async def test_carrier_config_tightens_the_circuit(self, make_carrier, test_settings):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502)

        carrier = make_carrier(code="delhivery", config={"breaker_failure_threshold": 2})
        adapter = make_adapter(carrier, test_settings, handler)
        for _ in range(2):
            with pytest.raises(GatewayError):
                await adapter.get_rates(shipment())

        with pytest.raises(CircuitOpenError):
            await adapter.get_rates(shipment())
        assert len(calls) == 2


class TestDelhiveryBooking:

    @pytest.mark.asyncio
    async def test_create_shipment(self, make_carrier, test_settings):
        seen = {}

        def handler(request):
            form = parse_qs(request.content.decode())
            seen["document"] = json.loads(form["data"][0])
            return httpx.Response(200, json={
                "packages": [{"waybill": "WB777", "status": "Success", "refnum": "ORD-42"}],
            })

        adapter = make_adapter(make_carrier(code="delhivery"), test_settings, handler)
        result = await adapter.create_shipment(booking_request())

        assert result.tracking_number == "WB777"
        assert result.carrier_reference == "ORD-42"
        assert "wbns=WB777" in result.label_url
        assert seen["document"]["shipments"][0]["weight"] == 1200
        assert seen["document"]["shipments"][0]["payment_mode"] == "Prepaid"

    @pytest.mark.asyncio
    async def test_failed_package_raises_booking_error(self, make_carrier, test_settings):
        def handler(request):
            return httpx.Response(200, json={"packages": [{"status": "Fail", "remarks": ["Pincode not serviceable"]}]})

        adapter = make_adapter(make_carrier(code="delhivery"), test_settings, handler)

        with pytest.raises(BookingError, match="Pincode not serviceable"):
            await adapter.create_shipment(booking_request())

    @pytest.mark.asyncio
    async def test_client_error_raises_booking_error(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="delhivery"), test_settings,
                               lambda r: httpx.Response(400, json={"rmk": "Invalid data"}))

        with pytest.raises(BookingError, match="Invalid data"):
            await adapter.create_shipment(booking_request())


class TestDelhiveryCancel:

    @pytest.mark.asyncio
    async def test_cancel(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="delhivery"), test_settings,
                               lambda r: httpx.Response(200, json={"status": True}))

        assert await adapter.cancel_shipment("WB1") is True

    @pytest.mark.asyncio
    async def test_already_cancelled_is_success(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="delhivery"), test_settings,
                               lambda r: httpx.Response(400, json={"error": "Shipment already cancelled"}))

        assert await adapter.cancel_shipment("WB1") is True

    @pytest.mark.asyncio
    async def test_refusal_returns_false(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="delhivery"), test_settings,
                               lambda r: httpx.Response(400, json={"error": "Shipment dispatched"}))

        assert await adapter.cancel_shipment("WB1") is False


class TestDelhiveryTracking:

    @pytest.mark.asyncio
    async def test_track(self, make_carrier, test_settings):
        def handler(request):
            return httpx.Response(200, json={"ShipmentData": [{"Shipment": {
                "Status": {
                    "Status": "Delivered",
                    "StatusLocation": "Mumbai_Andheri",
                    "StatusDateTime": "2024-05-02T14:30:00",
                },
                "Scans": [
                    {"ScanDetail": {"Scan": "Manifested", "ScanDateTime": "2024-04-30T10:00:00",
                                    "ScannedLocation": "Delhi"}},
                    {"ScanDetail": {"Scan": "Delivered", "ScanDateTime": "2024-05-02T14:30:00",
                                    "ScannedLocation": "Mumbai_Andheri", "Instructions": "Delivered to consignee"}},
                ],
            }}]})

        adapter = make_adapter(make_carrier(code="delhivery"), test_settings, handler)
        info = await adapter.track_shipment("WB1")

        assert info.status == "delivered"
        assert info.carrier_status == "Delivered"
        assert info.current_location == "Mumbai_Andheri"
        assert info.delivered_at.year == 2024
        assert [e.status for e in info.events] == ["Manifested", "Delivered"]

    @pytest.mark.asyncio
    async def test_unknown_waybill(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="delhivery"), test_settings,
                               lambda r: httpx.Response(200, json={"ShipmentData": []}))

        with pytest.raises(NotFoundError):
            await adapter.track_shipment("NOPE")

    def test_status_mapping(self, make_carrier, test_settings):
        adapter = DelhiveryCarrier(make_carrier(code="delhivery"), settings=test_settings)

        assert adapter.map_status("In Transit") == "in_transit"
        assert adapter.map_status("RTO Initiated") == "rto"
        assert adapter.map_status("Not Picked") == "pickup_scheduled"
        assert adapter.map_status("Something New") == "something_new"


class TestDelhiveryServiceability:

    @pytest.mark.asyncio
    async def test_cod_requires_cash_flag(self, make_carrier, test_settings):
        def handler(request):
            return httpx.Response(200, json={"delivery_codes": [{"postal_code": {"cash": "N", "is_oda": "N"}}]})

        adapter = make_adapter(make_carrier(code="delhivery"), test_settings, handler)

        assert await adapter.check_serviceability("110001", "400001", "prepaid") is True
        assert await adapter.check_serviceability("110001", "400001", "cod") is False

    @pytest.mark.asyncio
    async def test_unknown_pincode(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="delhivery"), test_settings,
                               lambda r: httpx.Response(200, json={"delivery_codes": []}))

        assert await adapter.check_serviceability("110001", "999999", "prepaid") is False


class TestDelhiveryWarehouses:

    def test_requires_registered_alias(self, make_carrier, test_settings):
        adapter = DelhiveryCarrier(make_carrier(code="delhivery"), settings=test_settings)

        assert adapter.WAREHOUSE_REQUIREMENT == WarehouseRequirement.REGISTERED_ALIAS

    @pytest.mark.asyncio
    async def test_registered_location(self, make_carrier, test_settings):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={
                "alias": "OKHLA-DL",
                "client_name": "BOOKSHOP SURFACE",
                "registered_name": "Bookshop Pvt Ltd",
                "registered_phone": "9822222222",
            })

        adapter = make_adapter(make_carrier(code="delhivery"), test_settings, handler)
        locations = await adapter.get_registered_pickup_locations()

        assert seen["path"] == "/api/backend/clientwarehouse/fetch/"
        assert seen["params"] == {"format": "json"}
        assert locations == [{
            "id": "OKHLA-DL",
            "name": "OKHLA-DL",
            "carrier_warehouse_name": "OKHLA-DL",
            "address": "Bookshop Pvt Ltd",
            "phone": "9822222222",
            "email": "",
        }]

    @pytest.mark.asyncio
    async def test_client_name_when_no_alias(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="delhivery"), test_settings,
                               lambda r: httpx.Response(200, json={"data": [{"client_name": "BOOKSHOP SURFACE"}, {}]}))

        locations = await adapter.get_registered_pickup_locations()

        assert [loc["name"] for loc in locations] == ["BOOKSHOP SURFACE"]

    @pytest.mark.asyncio
    async def test_lookup_failure_raises(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="delhivery"), test_settings, lambda r: httpx.Response(500))

        with pytest.raises(GatewayError):
            await adapter.get_registered_pickup_locations()

    @pytest.mark.asyncio
    async def test_booking_names_registered_alias(self, make_carrier, test_settings):
        seen = {}

        def handler(request):
            seen["document"] = json.loads(parse_qs(request.content.decode())["data"][0])
            return httpx.Response(200, json={"packages": [{"waybill": "WB778", "status": "Success"}]})

        request = booking_request()
        request.pickup_address = dict(request.pickup_address, carrier_warehouse_name="OKHLA-DL")
        adapter = make_adapter(make_carrier(code="delhivery"), test_settings, handler)

        await adapter.create_shipment(request)

        assert seen["document"]["pickup_location"]["name"] == "OKHLA-DL"
        assert seen["document"]["shipments"][0]["seller_name"] == "Main Warehouse"

    @pytest.mark.asyncio
    async def test_pickup_names_registered_alias(self, make_carrier, test_settings):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"pickup_id": 551, "pickup_time": "10:00:00"})

        adapter = make_adapter(
            make_carrier(code="delhivery", config={"pickup_location": "Configured Dock"}), test_settings, handler
        )

        await adapter.schedule_pickup(PickupRequest(
            pickup_date=date(2024, 5, 2), pickup_time="10:00:00", address={"carrier_warehouse_name": "OKHLA-DL"},
        ))
        result = await adapter.schedule_pickup(PickupRequest(pickup_date=date(2024, 5, 2), pickup_time="10:00:00"))

        assert [body["pickup_location"] for body in seen] == ["OKHLA-DL", "Configured Dock"]
        assert result.pickup_id == "551"


class TestDelhiveryProbe:

    @pytest.mark.asyncio
    async def test_probe_success(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="delhivery"), test_settings,
                               lambda r: httpx.Response(200, json={"delivery_codes": [{}]}))

        result = await adapter.probe_connection()

        assert result["success"] is True
        assert result["details"]["pincodes_returned"] == 1

    @pytest.mark.asyncio
    async def test_probe_rejected_token(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="delhivery"), test_settings, lambda r: httpx.Response(401))

        result = await adapter.probe_connection()

        assert result["success"] is False
        assert result["message"] == "Invalid Delhivery API token"

    @pytest.mark.asyncio
    async def test_probe_without_credentials(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="delhivery", api_key=None), test_settings,
                               lambda r: httpx.Response(200, json={}))

        result = await adapter.probe_connection()

        assert result["success"] is False
        assert result["details"]["missing"] == ["api_key"]

    @pytest.mark.asyncio
    async def test_probe_unexpected_body_is_reported(self, make_carrier, test_settings):
        adapter = make_adapter(make_carrier(code="delhivery"), test_settings,
                               lambda r: httpx.Response(200, json={"delivery_codes": 5}))

        result = await adapter.probe_connection()

        assert result["success"] is False
        assert result["message"] == "Unexpected response from Delhivery"

    @pytest.mark.asyncio
    async def test_probe_reports_any_shipping_error(self, make_carrier, test_settings, monkeypatch):
        adapter = make_adapter(make_carrier(code="delhivery"), test_settings,
                               lambda r: httpx.Response(200, json={}))

        async def not_found():
            raise NotFoundError("pincode lookup unavailable", details={"pincode": "110001"})

        monkeypatch.setattr(adapter, "_probe", not_found)

        result = await adapter.probe_connection()

        assert result["success"] is False
        assert result["message"] == "pincode lookup unavailable"
        assert result["details"] == {"pincode": "110001"}


def test_zone_estimates():
    assert estimate_delivery_days("110001", "110020", "SURFACE") == 2
    assert estimate_delivery_days("110001", "110020", "EXPRESS") == 1
    assert estimate_delivery_days("110001", "400001", "SURFACE") == 3
    assert estimate_delivery_days("110001", "781001", "SURFACE") == 5
