from collections import Counter
from datetime import datetime
from typing import Iterable
from sqlalchemy import or_
from sqlalchemy.orm import Session

from eventpay.errors import CapacityExceeded, EventCancelled, InvalidMetadata, SaleWindowClosed
from eventpay.models.event import Event, TicketType
from eventpay.schemas.availability import EventAvailability, TicketTypeAvailability


class InventoryService:
    """
    Sold counts per ticket type and per event, checked against capacity.

    Counts only go up: a refund keeps its tickets counted as sold.
    """

    @staticmethod
    def get_availability(db: Session, event: Event, now: datetime) -> EventAvailability:
        ticket_types = db.query(TicketType).filter(
            TicketType.event_id == event.id
        ).order_by(TicketType.price.asc()).all()

        tickets_sold = event.tickets_sold or 0
        return EventAvailability(
            event_id=event.id,
            cancelled=bool(event.cancelled),
            capacity=event.capacity,
            tickets_sold=tickets_sold,
            remaining=None if event.capacity is None else max(0, event.capacity - tickets_sold),
            ticket_types=[
                TicketTypeAvailability(
                    ticket_type_id=tt.id,
                    name=tt.name,
                    price=tt.price,
                    capacity=tt.capacity,
                    sold_count=tt.sold_count or 0,
                    remaining=tt.remaining,
                    on_sale=tt.is_on_sale(now)
                )
                for tt in ticket_types
            ]
        )

    @staticmethod
    def check_availability(
        db: Session,
        event: Event,
        requested: Iterable[tuple[str, int]],
        now: datetime
    ) -> None:
        """Pre-purchase check. Raises on the first rule the request breaks."""
        if event.cancelled:
            raise EventCancelled()

        quantities = InventoryService._totals(requested)
        ticket_types = {
            tt.id: tt for tt in db.query(TicketType).filter(
                TicketType.id.in_(list(quantities))
            ).all()
        }

        unknown = [tt_id for tt_id in quantities if tt_id not in ticket_types
                   or ticket_types[tt_id].event_id != event.id]
        if unknown:
            raise InvalidMetadata("Unknown ticket type for this event", errors=unknown)

        for tt_id, quantity in quantities.items():
            ticket_type = ticket_types[tt_id]
            if not ticket_type.is_on_sale(now):
                raise SaleWindowClosed(tt_id)
            if quantity > ticket_type.remaining:
                raise CapacityExceeded(
                    f"Only {ticket_type.remaining} tickets available",
                    ticket_type_id=tt_id,
                    available=ticket_type.remaining
                )

        if event.capacity is not None:
            event_remaining = max(0, event.capacity - (event.tickets_sold or 0))
            if sum(quantities.values()) > event_remaining:
                raise CapacityExceeded(
                    f"Only {event_remaining} tickets remaining for this event",
                    available=event_remaining
                )

    @staticmethod
    def reserve(db: Session, event_id: str, requested: Iterable[tuple[str, int]], order_id: str) -> None:
        """
        Increment sold counts inside the caller's transaction. Each UPDATE only
        matches while the new count stays within capacity, so concurrent
        fulfillments cannot oversell. The caller commits or rolls back.
        """
        quantities = InventoryService._totals(requested)

        for tt_id, quantity in sorted(quantities.items()):
            updated = db.query(TicketType).filter(
                TicketType.id == tt_id,
                TicketType.sold_count + quantity <= TicketType.capacity
            ).update(
                {TicketType.sold_count: TicketType.sold_count + quantity},
                synchronize_session=False
            )
            if not updated:
                raise CapacityExceeded(
                    "Ticket type capacity exceeded",
                    order_id=order_id,
                    ticket_type_id=tt_id
                )

        total = sum(quantities.values())
        updated = db.query(Event).filter(
            Event.id == event_id,
            or_(Event.capacity.is_(None), Event.tickets_sold + total <= Event.capacity)
        ).update(
            {Event.tickets_sold: Event.tickets_sold + total},
            synchronize_session=False
        )
        if not updated:
            raise CapacityExceeded("Event capacity exceeded", order_id=order_id)

    @staticmethod
    def _totals(requested: Iterable[tuple[str, int]]) -> dict[str, int]:
        totals: Counter = Counter()
        for tt_id, quantity in requested:
            totals[tt_id] += quantity
        return dict(totals)
