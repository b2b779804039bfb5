import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from eventpay.config import get_settings
from eventpay.errors import UnresolvableEvent
from eventpay.models.event import Event, TicketType, legacy_event_id
from eventpay.services.cache import TTLCache
from eventpay.services.identifiers import is_legacy_id, is_uuid
from eventpay.services.orders import translate_error

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventSummary:
    """Display data for notifications. Never used for policy decisions."""

    id: str
    slug: str
    title: str
    start_time: datetime
    end_time: Optional[datetime]
    location: Optional[str]


class EventCatalog:
    """Read access to events and ticket types, with an advisory cache."""

    def __init__(self, cache: TTLCache):
        self.cache = cache

    def resolve_event_id(self, db: Session, event_ref: str) -> str:
        """
        Resolve a raw id, a legacy numeric id or a slug to the canonical event id.
        Raises UnresolvableEvent when nothing matches.
        """
        event_ref = (event_ref or "").strip()
        if not event_ref:
            raise UnresolvableEvent(event_ref)

        if is_uuid(event_ref) or is_legacy_id(event_ref):
            candidate = event_ref.lower() if is_uuid(event_ref) else legacy_event_id(int(event_ref))
            if self._exists(db, candidate):
                return candidate
            logger.error(f"Event id {event_ref} did not match any event")
            raise UnresolvableEvent(event_ref)

        event_id = self.cache.get_or_load(
            ("slug", event_ref),
            lambda: self._id_for_slug(db, event_ref)
        )
        if event_id is None:
            logger.error(f"Could not resolve event slug {event_ref}")
            raise UnresolvableEvent(event_ref)

        logger.info(f"Resolved event slug {event_ref} -> {event_id}")
        return event_id

    def get_event(self, db: Session, event_id: str) -> Optional[Event]:
        """Authoritative read, bypassing the cache."""
        try:
            return db.query(Event).filter(Event.id == event_id).first()
        except SQLAlchemyError as e:
            raise translate_error(db, e, "load event")

    def get_summary(self, db: Session, event_id: str) -> Optional[EventSummary]:
        return self.cache.get_or_load(("summary", event_id), lambda: self._load_summary(db, event_id))

    def get_ticket_types_by_id(self, db: Session, ticket_type_ids: list[str]) -> dict[str, TicketType]:
        if not ticket_type_ids:
            return {}
        try:
            rows = db.query(TicketType).filter(TicketType.id.in_(set(ticket_type_ids))).all()
        except SQLAlchemyError as e:
            raise translate_error(db, e, "load ticket types")
        return {row.id: row for row in rows}

    def mark_cancelled(self, db: Session, event: Event) -> Event:
        if not event.cancelled:
            event.cancelled = True
            try:
                db.commit()
            except SQLAlchemyError as e:
                raise translate_error(db, e, "cancel event")
            db.refresh(event)
            logger.info(f"Event {event.id} marked cancelled")
        self.invalidate(event)
        return event

    def invalidate(self, event: Event) -> None:
        self.cache.invalidate(("summary", event.id))
        self.cache.invalidate(("slug", event.slug))

    @staticmethod
    def _exists(db: Session, event_id: str) -> bool:
        try:
            return db.query(Event.id).filter(Event.id == event_id).first() is not None
        except SQLAlchemyError as e:
            raise translate_error(db, e, "look up event")

    @staticmethod
    def _id_for_slug(db: Session, slug: str) -> Optional[str]:
        try:
            row = db.query(Event.id).filter(Event.slug == slug).first()
        except SQLAlchemyError as e:
            raise translate_error(db, e, "look up event by slug")
        return row[0] if row else None

    @staticmethod
    def _load_summary(db: Session, event_id: str) -> Optional[EventSummary]:
        event = db.query(Event).filter(Event.id == event_id).first()
        if not event:
            return None
        return EventSummary(
            id=event.id,
            slug=event.slug,
            title=event.title,
            start_time=event.start_time,
            end_time=event.end_time,
            location=event.location
        )


catalog = EventCatalog(
    TTLCache(
        ttl_seconds=settings.catalog_cache_ttl_seconds,
        max_entries=settings.catalog_cache_max_entries
    )
)


def get_catalog() -> EventCatalog:
    return catalog
