from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from eventpay.database import get_db
from eventpay.errors import UnresolvableEvent
from eventpay.schemas.availability import AvailabilityCheck, EventAvailability
from eventpay.services.catalog import EventCatalog, get_catalog
from eventpay.services.inventory import InventoryService
from eventpay.time_utils import utcnow

router = APIRouter(prefix="/events", tags=["events"])


def load_event(db: Session, catalog: EventCatalog, event_ref: str):
    event = catalog.get_event(db, catalog.resolve_event_id(db, event_ref))
    if not event:
        raise UnresolvableEvent(event_ref)
    return event


@router.get("/{event_ref}/availability", response_model=EventAvailability)
async def get_availability(
    event_ref: str,
    db: Session = Depends(get_db),
    catalog: EventCatalog = Depends(get_catalog)
):
    event = load_event(db, catalog, event_ref)
    return InventoryService.get_availability(db, event, utcnow())


@router.post("/{event_ref}/availability")
async def check_availability(
    event_ref: str,
    check: AvailabilityCheck,
    db: Session = Depends(get_db),
    catalog: EventCatalog = Depends(get_catalog)
):
    event = load_event(db, catalog, event_ref)
    InventoryService.check_availability(
        db,
        event,
        [(item.ticket_type_id, item.quantity) for item in check.items],
        utcnow()
    )
    return {"available": True, "event_id": event.id}
