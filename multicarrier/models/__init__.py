from multicarrier.models.carrier import Carrier, CarrierService, CarrierCode, PaymentMode
from multicarrier.models.serviceability import ServiceabilityRecord
from multicarrier.models.shipping_rule import ShippingRule
from multicarrier.models.shipment import (
    Shipment,
    ShipmentEvent,
    ShipmentStatus,
    CarrierApiLog,
    TERMINAL_STATUSES,
)
from multicarrier.models.warehouse import Warehouse
