"""
Shipment Lifecycle Manager

Booking, cancellation, tracking, pickup and label handling for a single
shipment, plus the canonical status state machine.

States:
    created -> pickup_scheduled -> picked -> in_transit -> out_for_delivery -> delivered
    failed / cancelled / rto reachable from any non-terminal state

Terminal states (delivered, cancelled, rto, failed) accept no transitions;
re-tracking a terminal shipment is a no-op.

Concurrency:
- Operations on one shipment are serialised by a per-shipment asyncio.Lock
- Writers in other processes are caught by the version column; a stale
  write raises ShipmentConflictError
"""
import asyncio
import logging
import weakref
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from multicarrier.core.config import Settings, settings as default_settings
from multicarrier.core.exceptions import (
    BookingError,
    NotFoundError,
    ShipmentConflictError,
    ShippingError,
)
from multicarrier.models.carrier import Carrier, CarrierService, virtual_service_name
from multicarrier.models.shipment import (
    CarrierApiLog,
    Shipment,
    ShipmentEvent,
    ShipmentStatus,
)
from multicarrier.modules.shipping.carriers import CarrierFactory
from multicarrier.modules.shipping.carriers.base import (
    BaseCarrier,
    BookingRequest,
    BookingResult,
    PackageDetails,
    PickupRequest,
    TrackingInfo,
)
from multicarrier.schemas.shipping import BookingOptions, OrderDetails
from multicarrier.services.label_storage import LabelStorage
from multicarrier.services.pickup_address import PickupAddressResolver

logger = logging.getLogger(__name__)


# Carrier status (already normalised by the adapter) -> canonical state
CANONICAL_STATUS_MAP: Dict[str, ShipmentStatus] = {
    "pending": ShipmentStatus.CREATED,
    "created": ShipmentStatus.CREATED,
    "pickup_scheduled": ShipmentStatus.PICKUP_SCHEDULED,
    "picked": ShipmentStatus.PICKED,
    "in_transit": ShipmentStatus.IN_TRANSIT,
    "out_for_delivery": ShipmentStatus.OUT_FOR_DELIVERY,
    "delivered": ShipmentStatus.DELIVERED,
    "failed": ShipmentStatus.FAILED,
    "cancelled": ShipmentStatus.CANCELLED,
    "rto": ShipmentStatus.RTO,
}

FORWARD_CHAIN = [
    ShipmentStatus.CREATED,
    ShipmentStatus.PICKUP_SCHEDULED,
    ShipmentStatus.PICKED,
    ShipmentStatus.IN_TRANSIT,
    ShipmentStatus.OUT_FOR_DELIVERY,
    ShipmentStatus.DELIVERED,
]


def map_canonical_status(carrier_status: Optional[str]) -> ShipmentStatus:
    """Case-insensitive lookup; unknown statuses count as in transit."""
    key = (carrier_status or "").strip().lower()
    status = CANONICAL_STATUS_MAP.get(key)
    if status is None:
        logger.warning(f"Unmapped carrier status '{carrier_status}', defaulting to in_transit")
        return ShipmentStatus.IN_TRANSIT
    return status


def is_regression(current: ShipmentStatus, new: ShipmentStatus) -> bool:
    """True when `new` is earlier than `current` on the forward chain."""
    if current in FORWARD_CHAIN and new in FORWARD_CHAIN:
        return FORWARD_CHAIN.index(new) < FORWARD_CHAIN.index(current)
    return False


def normalize_address(address: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten an order address into the shape adapters expect."""
    address = address or {}
    name = address.get("name") or " ".join(
        part for part in (address.get("first_name"), address.get("last_name")) if part
    )
    return {
        "name": (name or "").strip(),
        "phone": address.get("phone") or address.get("whatsapp") or address.get("whatsapp_number") or "",
        "address_1": (
            address.get("address_1") or address.get("address_line_1")
            or address.get("address") or address.get("house_number") or ""
        ),
        "address_2": address.get("address_2") or address.get("address_line_2") or address.get("landmark") or "",
        "city": address.get("city") or "",
        "state": address.get("state") or "",
        "pincode": str(address.get("pincode") or address.get("postal_code") or ""),
        "country": address.get("country") or "India",
    }


class ShipmentLockManager:
    """
    Per-shipment locks serialising lifecycle operations in this process.

    Locks are held weakly and disappear once no operation holds them.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[Any, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._lock = asyncio.Lock()

    async def get_lock(self, key: Any) -> asyncio.Lock:
        async with self._lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock


_shipment_locks = ShipmentLockManager()


class ShipmentLifecycleManager:
    """Drives adapter calls through a shipment's life and persists the results."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        factory=CarrierFactory,
        label_storage: Optional[LabelStorage] = None,
        locks: Optional[ShipmentLockManager] = None,
    ):
        self.db = db
        self.settings = settings or default_settings
        self.factory = factory
        self.label_storage = label_storage or LabelStorage(self.settings)
        self.locks = locks or _shipment_locks
        self.pickups = PickupAddressResolver(db, self.settings)

    # ==================== Helpers ====================

    async def _get_carrier(self, carrier_id: int) -> Carrier:
        carrier = await self.db.get(Carrier, carrier_id)
        if carrier is None:
            raise NotFoundError(f"Carrier {carrier_id} not found", details={"carrier_id": carrier_id})
        return carrier

    async def _get_service(self, carrier_id: int, service_code: str) -> Optional[CarrierService]:
        result = await self.db.execute(
            select(CarrierService).where(
                CarrierService.carrier_id == carrier_id,
                CarrierService.service_code == service_code,
            )
        )
        return result.scalar_one_or_none()

    async def flush_shipment(self, shipment: Shipment) -> None:
        try:
            await self.db.flush()
        except StaleDataError as e:
            raise ShipmentConflictError(
                f"Shipment {shipment.tracking_number} was modified concurrently",
                details={"shipment_id": shipment.id, "tracking_number": shipment.tracking_number},
            ) from e

    def _log_api_call(
        self,
        carrier: Carrier,
        adapter: BaseCarrier,
        operation: str,
        shipment: Optional[Shipment] = None,
        request: Any = None,
        response: Any = None,
        error: Optional[ShippingError] = None,
    ) -> None:
        """Record an outbound carrier call. Best-effort."""
        call = adapter.last_call or {}
        try:
            self.db.add(CarrierApiLog(
                carrier_id=carrier.id,
                shipment_id=shipment.id if shipment is not None else None,
                operation=operation,
                endpoint=call.get("endpoint"),
                http_method=call.get("method"),
                status_code=call.get("status_code"),
                request_payload=jsonable_encoder(request),
                response_payload=jsonable_encoder(response),
                success=error is None,
                error_message=error.message if error is not None else None,
                duration_ms=call.get("duration_ms"),
            ))
        except (SQLAlchemyError, TypeError, ValueError) as e:
            logger.warning(f"Could not record {operation} API call for {carrier.code}: {e}")

    def add_event(
        self,
        shipment: Shipment,
        status: str,
        event_type: str = "status_update",
        location: Optional[str] = None,
        message: Optional[str] = None,
        payload: Any = None,
        occurred_at: Optional[datetime] = None,
    ) -> ShipmentEvent:
        event = ShipmentEvent(
            shipment_id=shipment.id,
            event_type=event_type,
            status=status,
            location=location,
            message=message,
            payload=jsonable_encoder(payload),
            occurred_at=occurred_at or datetime.now(timezone.utc),
        )
        self.db.add(event)
        return event

    def build_booking_request(
        self,
        order: OrderDetails,
        service_code: str,
        service_name: str,
        options: BookingOptions,
        pickup_address: Optional[Dict[str, Any]] = None,
    ) -> BookingRequest:
        delivery = normalize_address(order.shipping_address)
        package = PackageDetails(
            weight=order.total_weight or 1.0,
            length=options.length or self.settings.DEFAULT_PACKAGE_LENGTH,
            width=options.width or self.settings.DEFAULT_PACKAGE_WIDTH,
            height=options.height or self.settings.DEFAULT_PACKAGE_HEIGHT,
            value=order.total_amount,
            description=options.description or self.settings.DEFAULT_PACKAGE_DESCRIPTION,
            quantity=max(1, len(order.items)),
        )
        return BookingRequest(
            order_id=order.id,
            order_number=order.order_number,
            service_code=service_code,
            service_name=service_name,
            pickup_address=pickup_address or self.settings.pickup_address(),
            delivery_address=delivery,
            package=package,
            payment_mode="cod" if order.is_cod else "prepaid",
            cod_amount=order.total_amount if order.is_cod else 0.0,
            customer_email=order.customer_email,
            customer_phone=order.customer_phone or delivery["phone"],
        )

    # ==================== Create ====================

    async def create(
        self,
        order: OrderDetails,
        carrier_id: int,
        service_code: str,
        options: Optional[BookingOptions] = None,
    ) -> Shipment:
        """
        Book a shipment with the chosen carrier service.

        Pickup scheduling and label storage run afterwards as best-effort
        side effects; their failures never fail the booking.

        Raises:
            NotFoundError: carrier unknown or inactive
            BookingError: carrier rejected the booking or returned no tracking number
            GatewayError: carrier unreachable
        """
        options = options or BookingOptions()
        carrier = await self._get_carrier(carrier_id)
        if not carrier.is_active:
            raise NotFoundError(f"Carrier {carrier.code} is not active", details={"carrier_id": carrier_id})

        service = await self._get_service(carrier_id, service_code)
        service_name = service.name if service is not None else virtual_service_name(service_code)

        adapter = self.factory.make(carrier, settings=self.settings)
        try:
            pickup_address = await self.pickups.resolve(carrier, adapter, options.warehouse_id)
            booking_request = self.build_booking_request(order, service_code, service_name, options, pickup_address)
            try:
                booking = await adapter.create_shipment(booking_request)
            except ShippingError as e:
                logger.error(f"Booking failed for order {order.order_number} with {carrier.code}/{service_code}: {e.message}")
                self._log_api_call(carrier, adapter, "create", request=booking_request, error=e)
                raise

            if not booking.tracking_number:
                error = BookingError(
                    f"{carrier.display_name or carrier.name} returned no tracking number",
                    carrier_code=carrier.code,
                    service_code=service_code,
                )
                self._log_api_call(carrier, adapter, "create", request=booking_request, response=booking.raw, error=error)
                raise error

            shipment = self._new_shipment(order, carrier, service, service_code, service_name, booking, options)
            self.db.add(shipment)
            try:
                await self.db.flush()
            except IntegrityError as e:
                raise ShipmentConflictError(
                    f"Tracking number {booking.tracking_number} already belongs to a shipment",
                    details={"tracking_number": booking.tracking_number},
                ) from e

            self._log_api_call(carrier, adapter, "create", shipment, request=booking_request, response=booking.raw)
            self.add_event(shipment, ShipmentStatus.CREATED.value, event_type="created", message="Shipment booked")
            logger.info(
                f"Shipment created: {shipment.id} order={order.order_number} "
                f"carrier={carrier.code} tracking={shipment.tracking_number}"
            )

            if options.schedule_pickup:
                await self._schedule_pickup(shipment, carrier, adapter)

            generate_label = options.generate_label
            if generate_label is None:
                generate_label = carrier.auto_generate_labels
            if generate_label and booking.label_url:
                await self._store_label(shipment, carrier, adapter, booking.label_url)

            await self.flush_shipment(shipment)
            return shipment
        finally:
            await adapter.close()

    def _new_shipment(
        self,
        order: OrderDetails,
        carrier: Carrier,
        service: Optional[CarrierService],
        service_code: str,
        service_name: str,
        booking: BookingResult,
        options: BookingOptions,
    ) -> Shipment:
        return Shipment(
            order_id=order.id,
            order_number=order.order_number,
            carrier_id=carrier.id,
            carrier_service_id=service.id if service is not None else None,
            service_code=service_code,
            service_name=service_name,
            tracking_number=booking.tracking_number,
            carrier_tracking_id=booking.carrier_reference,
            status=ShipmentStatus.CREATED,
            weight=order.total_weight,
            payment_mode="cod" if order.is_cod else "prepaid",
            cod_amount=order.total_amount if order.is_cod else 0.0,
            shipping_cost=options.shipping_cost if options.shipping_cost is not None else booking.charges.get("total"),
            carrier_response=jsonable_encoder(booking.raw),
            label_url=booking.label_url,
            pickup_scheduled_at=booking.pickup_date.isoformat() if booking.pickup_date else None,
            warehouse_id=options.warehouse_id,
            expected_delivery_date=booking.expected_delivery,
        )

    # ==================== Cancel ====================

    async def cancel(self, shipment: Shipment) -> bool:
        """
        Cancel with the carrier.

        Cancelling an already-cancelled shipment returns True without calling
        the carrier. Carrier refusal or failure returns False and leaves the
        shipment unchanged.
        """
        lock = await self.locks.get_lock(shipment.id)
        async with lock:
            if shipment.status == ShipmentStatus.CANCELLED:
                logger.info(f"Shipment {shipment.tracking_number} already cancelled")
                return True
            if shipment.is_terminal:
                logger.warning(f"Cannot cancel shipment {shipment.tracking_number} in state {shipment.status.value}")
                return False

            carrier = await self._get_carrier(shipment.carrier_id)
            adapter = self.factory.make(carrier, settings=self.settings)
            try:
                try:
                    cancelled = await adapter.cancel_shipment(shipment.tracking_number)
                except ShippingError as e:
                    logger.error(f"Failed to cancel shipment {shipment.id}: {e.message}")
                    self._log_api_call(carrier, adapter, "cancel", shipment,
                                       request={"tracking_number": shipment.tracking_number}, error=e)
                    return False

                self._log_api_call(carrier, adapter, "cancel", shipment,
                                   request={"tracking_number": shipment.tracking_number},
                                   response={"cancelled": cancelled})
                if not cancelled:
                    logger.warning(f"{carrier.code} refused to cancel shipment {shipment.tracking_number}")
                    return False

                shipment.status = ShipmentStatus.CANCELLED
                shipment.cancelled_at = datetime.now(timezone.utc)
                self.add_event(shipment, ShipmentStatus.CANCELLED.value, event_type="cancelled",
                                message="Shipment cancelled")
                await self.flush_shipment(shipment)
                logger.info(f"Shipment {shipment.tracking_number} cancelled")
                return True
            finally:
                await adapter.close()

    # ==================== Track ====================

    def apply_status_update(
        self,
        shipment: Shipment,
        carrier_status: str,
        location: Optional[str] = None,
        message: Optional[str] = None,
        delivered_at: Optional[datetime] = None,
    ) -> bool:
        """
        Move the shipment to the canonical state for `carrier_status`.

        Terminal shipments and backward moves along the forward chain are
        ignored. Returns True if the status changed.
        """
        if shipment.is_terminal:
            return False

        new_status = map_canonical_status(carrier_status)
        if location:
            shipment.current_location = location
        if message:
            shipment.status_message = message[:255]
        if delivered_at:
            shipment.delivered_at = delivered_at

        if new_status == shipment.status:
            return False
        if is_regression(shipment.status, new_status):
            logger.info(
                f"Ignoring status regression for {shipment.tracking_number}: "
                f"{shipment.status.value} -> {new_status.value}"
            )
            return False

        shipment.status = new_status
        if new_status == ShipmentStatus.DELIVERED and shipment.delivered_at is None:
            shipment.delivered_at = datetime.now(timezone.utc)
        if new_status == ShipmentStatus.CANCELLED and shipment.cancelled_at is None:
            shipment.cancelled_at = datetime.now(timezone.utc)
        return True

    async def track(self, shipment: Shipment) -> Optional[TrackingInfo]:
        """
        Refresh status and events from the carrier.

        Returns None for terminal shipments (nothing is fetched).

        Raises:
            NotFoundError: carrier does not know the tracking number
            GatewayError: carrier unreachable
            ShipmentConflictError: shipment changed underneath us
        """
        lock = await self.locks.get_lock(shipment.id)
        async with lock:
            if shipment.is_terminal:
                logger.info(f"Shipment {shipment.tracking_number} is {shipment.status.value}; not tracking")
                return None

            carrier = await self._get_carrier(shipment.carrier_id)
            adapter = self.factory.make(carrier, settings=self.settings)
            try:
                try:
                    tracking = await adapter.track_shipment(shipment.tracking_number)
                except ShippingError as e:
                    logger.error(f"Failed to track shipment {shipment.id}: {e.message}")
                    self._log_api_call(carrier, adapter, "track", shipment,
                                       request={"tracking_number": shipment.tracking_number}, error=e)
                    raise

                self._log_api_call(carrier, adapter, "track", shipment,
                                   request={"tracking_number": shipment.tracking_number}, response=tracking.raw)

                changed = self.apply_status_update(
                    shipment,
                    tracking.status,
                    location=tracking.current_location,
                    message=tracking.carrier_status,
                    delivered_at=tracking.delivered_at,
                )
                for event in tracking.events:
                    self.add_event(
                        shipment,
                        event.status,
                        event_type=event.event_type,
                        location=event.location,
                        message=event.message,
                        payload=event.raw,
                        occurred_at=event.timestamp,
                    )
                shipment.last_tracked_at = datetime.now(timezone.utc)
                await self.flush_shipment(shipment)

                if changed:
                    logger.info(f"Shipment {shipment.tracking_number} is now {shipment.status.value}")
                return tracking
            finally:
                await adapter.close()

    # ==================== Pickup ====================

    async def schedule_pickup(self, shipment: Shipment) -> bool:
        """Best-effort pickup request; failures are logged and return False."""
        lock = await self.locks.get_lock(shipment.id)
        async with lock:
            carrier = await self._get_carrier(shipment.carrier_id)
            adapter = self.factory.make(carrier, settings=self.settings)
            try:
                scheduled = await self._schedule_pickup(shipment, carrier, adapter)
                if scheduled:
                    await self.flush_shipment(shipment)
                return scheduled
            finally:
                await adapter.close()

    async def _schedule_pickup(self, shipment: Shipment, carrier: Carrier, adapter: BaseCarrier) -> bool:
        pickup_address = await self.pickups.resolve(carrier, adapter, shipment.warehouse_id)
        request = PickupRequest(
            pickup_date=date.today() + timedelta(days=1),
            pickup_time=self.settings.DEFAULT_PICKUP_WINDOW,
            packages_count=1,
            contact_person=pickup_address.get("contact_person"),
            phone=pickup_address.get("phone"),
            address=pickup_address,
        )
        try:
            pickup = await adapter.schedule_pickup(request)
        except Exception as e:
            logger.error(f"Failed to schedule pickup for shipment {shipment.id}: {e}")
            if isinstance(e, ShippingError):
                self._log_api_call(carrier, adapter, "pickup", shipment, request=request, error=e)
            return False

        self._log_api_call(carrier, adapter, "pickup", shipment, request=request, response=pickup)
        shipment.pickup_token = pickup.pickup_id
        shipment.pickup_scheduled_at = pickup.scheduled_time
        if shipment.status == ShipmentStatus.CREATED:
            shipment.status = ShipmentStatus.PICKUP_SCHEDULED
            self.add_event(shipment, ShipmentStatus.PICKUP_SCHEDULED.value, event_type="pickup_scheduled",
                            message=f"Pickup {pickup.pickup_id} at {pickup.scheduled_time}")
        logger.info(f"Pickup {pickup.pickup_id} scheduled for shipment {shipment.tracking_number}")
        return True

    # ==================== Label ====================

    async def generate_label(self, shipment: Shipment) -> Optional[str]:
        """Download the carrier label and store it. Returns the stored URL or None."""
        lock = await self.locks.get_lock(shipment.id)
        async with lock:
            carrier = await self._get_carrier(shipment.carrier_id)
            adapter = self.factory.make(carrier, settings=self.settings)
            try:
                url = await self._store_label(shipment, carrier, adapter)
                if url:
                    await self.flush_shipment(shipment)
                return url
            finally:
                await adapter.close()

    async def _store_label(
        self,
        shipment: Shipment,
        carrier: Carrier,
        adapter: BaseCarrier,
        label_url: Optional[str] = None,
    ) -> Optional[str]:
        try:
            content = await adapter.download_label(shipment.tracking_number, label_url)
        except Exception as e:
            logger.error(f"Failed to generate label for shipment {shipment.id}: {e}")
            if isinstance(e, ShippingError):
                self._log_api_call(carrier, adapter, "label", shipment,
                                   request={"label_url": label_url}, error=e)
            return None

        self._log_api_call(carrier, adapter, "label", shipment,
                           request={"label_url": label_url}, response={"size_bytes": len(content)})
        result = await self.label_storage.store_label(shipment.tracking_number, content)
        if not result.success:
            logger.error(f"Failed to store label for shipment {shipment.id}: {result.error}")
            return None

        shipment.label_url = result.url
        return result.url
