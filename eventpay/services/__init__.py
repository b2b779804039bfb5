from eventpay.services.orders import OrderStore
from eventpay.services.catalog import EventCatalog
from eventpay.services.inventory import InventoryService
from eventpay.services.payment import PaymentService
from eventpay.services.email import EmailService
from eventpay.services.fulfillment import FulfillmentService
from eventpay.services.refunds import RefundService
from eventpay.services.dispatcher import WebhookDispatcher

__all__ = [
    "OrderStore",
    "EventCatalog",
    "InventoryService",
    "PaymentService",
    "EmailService",
    "FulfillmentService",
    "RefundService",
    "WebhookDispatcher"
]
