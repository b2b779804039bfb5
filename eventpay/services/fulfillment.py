"""
Turn a successful Stripe payment into one Order and its Tickets.

Stripe delivers at least once and may deliver payment_intent.succeeded and
charge.succeeded for the same payment concurrently. The unique constraint on
orders.stripe_payment_intent_id decides which delivery creates the order;
every other delivery resolves to that order.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from eventpay.errors import CapacityExceeded, ConstraintViolation, DatastoreUnavailable, InvalidMetadata, PartialFulfillment
from eventpay.models.event import TicketType
from eventpay.models.order import Order, OrderStatus
from eventpay.models.ticket import Ticket, TicketStatus
from eventpay.schemas.webhook import FulfillmentMetadata, PaymentIntentObject, parse_fulfillment_metadata
from eventpay.services.catalog import EventCatalog
from eventpay.services.identifiers import generate_confirmation_code
from eventpay.services.inventory import InventoryService
from eventpay.services.notifications import TicketConfirmation, TicketLine
from eventpay.services.orders import OrderStore

logger = logging.getLogger(__name__)

PAYMENT_REFERENCE_FIELD = "stripe_payment_intent_id"


@dataclass(frozen=True)
class FulfillmentResult:
    order_id: str
    ticket_count: int
    duplicate: bool
    message: str
    notification: Optional[TicketConfirmation] = None


class FulfillmentService:
    def __init__(self, db: Session, catalog: EventCatalog):
        self.db = db
        self.catalog = catalog

    def fulfill(self, intent: PaymentIntentObject) -> FulfillmentResult:
        """
        Create the order and tickets for a succeeded PaymentIntent.

        Raises:
            MissingMetadata / InvalidMetadata: bad metadata, nothing written.
            UnresolvableEvent: event_id matches no event, nothing written.
            CapacityExceeded: order recorded, no tickets issued.
            PartialFulfillment: order recorded, ticket insert failed.
        """
        metadata = parse_fulfillment_metadata(intent.metadata)

        if metadata.items_total > intent.amount:
            raise InvalidMetadata(
                "Ticket prices exceed the payment amount",
                errors=[f"ticket_items total {metadata.items_total} > amount {intent.amount}"]
            )

        event_id = self.catalog.resolve_event_id(self.db, metadata.event_id)
        ticket_types = self._validate_ticket_types(metadata, event_id)

        existing = OrderStore.find_by_payment_reference(self.db, intent.id)
        if existing:
            logger.info(f"Order {existing.id} already exists for payment intent {intent.id}")
            return FulfillmentResult(
                order_id=existing.id,
                ticket_count=OrderStore.ticket_count(self.db, existing.id),
                duplicate=True,
                message="Order already processed"
            )

        order = Order(
            event_id=event_id,
            user_id=metadata.buyer_user_id,
            guest_email=metadata.customer_email if metadata.is_guest else None,
            guest_name=metadata.customer_name if metadata.is_guest else None,
            total_amount=intent.amount,
            currency=intent.currency,
            stripe_payment_intent_id=intent.id,
            status=OrderStatus.COMPLETED,
            refund_amount=0
        )
        try:
            order = OrderStore.insert_order(self.db, order)
        except ConstraintViolation as e:
            if e.field != PAYMENT_REFERENCE_FIELD:
                raise
            winner = OrderStore.find_by_payment_reference(self.db, intent.id)
            if not winner:
                raise DatastoreUnavailable("Order insert conflicted but no order was found")
            logger.info(f"Order {winner.id} created by concurrent webhook for {intent.id}")
            return FulfillmentResult(
                order_id=winner.id,
                ticket_count=OrderStore.ticket_count(self.db, winner.id),
                duplicate=True,
                message="Order created by concurrent webhook"
            )

        logger.info(f"Created order {order.id} for payment intent {intent.id}")

        tickets = self._issue_tickets(order, metadata)
        logger.info(f"Created {len(tickets)} tickets for order {order.id}")

        return FulfillmentResult(
            order_id=order.id,
            ticket_count=len(tickets),
            duplicate=False,
            message="Order fulfilled",
            notification=self._confirmation(order, metadata, tickets, ticket_types)
        )

    def _validate_ticket_types(self, metadata: FulfillmentMetadata, event_id: str) -> dict[str, TicketType]:
        ids = [item.ticket_type_id for item in metadata.ticket_items]
        ticket_types = self.catalog.get_ticket_types_by_id(self.db, ids)
        invalid = sorted({
            tt_id for tt_id in ids
            if tt_id not in ticket_types or ticket_types[tt_id].event_id != event_id
        })
        if invalid:
            raise InvalidMetadata(
                "ticket_items reference unknown ticket types",
                errors=[f"ticket_type_id {tt_id} does not belong to event {event_id}" for tt_id in invalid]
            )
        return ticket_types

    def _issue_tickets(self, order: Order, metadata: FulfillmentMetadata) -> list[Ticket]:
        """One row per seat, written together with the sold-count increments."""
        try:
            InventoryService.reserve(
                self.db,
                order.event_id,
                [(item.ticket_type_id, item.quantity) for item in metadata.ticket_items],
                order.id
            )
            tickets = []
            for item in metadata.ticket_items:
                for _ in range(item.quantity):
                    tickets.append(Ticket(
                        order_id=order.id,
                        ticket_type_id=item.ticket_type_id,
                        event_id=order.event_id,
                        user_id=metadata.buyer_user_id,
                        unit_price=item.unit_price,
                        quantity=1,
                        status=TicketStatus.ACTIVE,
                        confirmation_code=generate_confirmation_code(),
                        customer_email=metadata.customer_email,
                        customer_name=metadata.customer_name,
                        attendee_email=metadata.customer_email,
                        attendee_name=metadata.customer_name
                    ))
            self.db.add_all(tickets)
            self.db.commit()
        except CapacityExceeded:
            self.db.rollback()
            logger.error(
                f"STAFF ACTION REQUIRED: capacity exceeded for paid order {order.id} "
                f"({order.stripe_payment_intent_id}); no tickets issued"
            )
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"STAFF ACTION REQUIRED: failed to create tickets for order {order.id} "
                f"({order.stripe_payment_intent_id}): {e}"
            )
            raise PartialFulfillment(order.id)

        return tickets

    def _confirmation(
        self,
        order: Order,
        metadata: FulfillmentMetadata,
        tickets: list[Ticket],
        ticket_types: dict[str, TicketType]
    ) -> TicketConfirmation:
        groups: "OrderedDict[str, list[Ticket]]" = OrderedDict()
        for ticket in tickets:
            groups.setdefault(ticket.ticket_type_id, []).append(ticket)

        summary = self.catalog.get_summary(self.db, order.event_id)
        return TicketConfirmation(
            to=metadata.customer_email,
            customer_name=metadata.customer_name,
            order_id=order.id,
            payment_intent_id=order.stripe_payment_intent_id,
            event_title=summary.title if summary else "your event",
            event_start=summary.start_time if summary else None,
            event_end=summary.end_time if summary else None,
            event_location=summary.location if summary else None,
            total_paid=order.total_amount,
            currency=order.currency,
            tickets=tuple(
                TicketLine(
                    ticket_type=ticket_types[tt_id].name,
                    quantity=len(group),
                    total_paid=sum(t.unit_price for t in group)
                )
                for tt_id, group in groups.items()
            ),
            confirmation_codes=tuple(t.confirmation_code for t in tickets)
        )
