import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from eventpay.database import get_db
from eventpay.schemas.order import OrderSummary
from eventpay.services.catalog import EventCatalog, get_catalog
from eventpay.services.identity import Caller, get_current_staff
from eventpay.services.orders import OrderStore
from eventpay.routers.events import load_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/events/{event_ref}/cancel")
async def cancel_event(
    event_ref: str,
    staff: Caller = Depends(get_current_staff),
    db: Session = Depends(get_db),
    catalog: EventCatalog = Depends(get_catalog)
):
    event = load_event(db, catalog, event_ref)
    event = catalog.mark_cancelled(db, event)
    logger.info(f"Event {event.id} cancelled by {staff.describe()}")
    return {"event_id": event.id, "slug": event.slug, "cancelled": event.cancelled}


@router.get("/orders/needs-attention", response_model=list[OrderSummary])
async def orders_needing_attention(
    limit: int = Query(100, ge=1, le=500),
    staff: Caller = Depends(get_current_staff),
    db: Session = Depends(get_db)
):
    """Paid orders that have no tickets: capacity overruns and failed ticket inserts."""
    return OrderStore.orders_needing_attention(db, limit=limit)
