from eventpay.routers.webhooks import router as webhooks_router
from eventpay.routers.refunds import router as refunds_router
from eventpay.routers.events import router as events_router
from eventpay.routers.admin import router as admin_router

__all__ = [
    "webhooks_router",
    "refunds_router",
    "events_router",
    "admin_router"
]
