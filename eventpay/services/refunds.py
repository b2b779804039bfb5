import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from eventpay.config import get_settings
from eventpay.errors import (
    AlreadyRefunded, DeadlinePassed, InvalidOrderState, NotOnlineRefundable, NotOrderOwner,
    NothingToRefund, OrderNotFound, PaymentsError, PolicyMismatch, ReconciliationRequired
)
from eventpay.models.event import Event
from eventpay.models.order import Order, OrderStatus
from eventpay.schemas.refund import (
    OrderRefundTotals, RefundInfo, RefundRequest, RefundResponse, RefundType
)
from eventpay.schemas.webhook import ChargeObject
from eventpay.services.catalog import EventCatalog
from eventpay.services.identity import Caller
from eventpay.services.notifications import RefundConfirmation, RefundedLine
from eventpay.services.orders import OrderStore
from eventpay.services.payment import PaymentService
from eventpay.time_utils import utcnow

settings = get_settings()
logger = logging.getLogger(__name__)

PROCESSING_TIMEFRAME = "5-10 business days"
REFUNDABLE_STATUSES = (OrderStatus.COMPLETED, OrderStatus.PARTIALLY_REFUNDED, OrderStatus.REFUNDED)


@dataclass(frozen=True)
class RefundCalculation:
    fee: int
    net_refund: int


def calculate_refund(
    amount: int,
    refund_type: RefundType,
    processing_fee: Optional[int] = None
) -> RefundCalculation:
    """
    Split a refundable amount into fee and net refund.
    Cancelled events are refunded in full; customer requests pay a flat fee.
    """
    if refund_type == RefundType.FULL_CANCELLATION:
        return RefundCalculation(fee=0, net_refund=amount)

    fee = settings.refund_processing_fee_cents if processing_fee is None else processing_fee
    return RefundCalculation(fee=fee, net_refund=max(0, amount - fee))


def refund_deadline(event: Event) -> datetime:
    return event.start_time - timedelta(hours=settings.refund_cutoff_hours)


@dataclass(frozen=True)
class RefundOutcome:
    response: RefundResponse
    notification: Optional[RefundConfirmation]


@dataclass(frozen=True)
class ChargeRefundOutcome:
    order_id: str
    refund_amount: int
    status: OrderStatus
    notification: Optional[RefundConfirmation]


class RefundService:
    def __init__(self, db: Session, catalog: EventCatalog, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.catalog = catalog
        self.clock = clock

    def request_refund(self, caller: Caller, request: RefundRequest) -> RefundOutcome:
        """
        Refund the remaining balance of an order on the caller's behalf.

        Checks run in a fixed order and each failure has its own error.
        Once Stripe has refunded, a failure to record it raises
        ReconciliationRequired instead of retrying.
        """
        order = OrderStore.find_by_reference(self.db, request.order_id)

        if not caller.owns(order):
            logger.warning(f"Caller {caller.describe()} is not the owner of order {order.id}")
            raise NotOrderOwner()

        if order.status not in REFUNDABLE_STATUSES:
            raise InvalidOrderState(order.status.value)

        if order.status == OrderStatus.REFUNDED or order.refund_amount >= order.total_amount:
            raise AlreadyRefunded()

        event = self.catalog.get_event(self.db, order.event_id)
        if not event:
            raise OrderNotFound("Event for this order no longer exists")

        self._check_policy(event, request.refund_type)

        if not order.stripe_payment_intent_id:
            logger.error(f"Order {order.id} has no Stripe payment intent")
            raise NotOnlineRefundable()

        previous_refund = order.refund_amount
        remaining = order.remaining_amount
        calculation = calculate_refund(remaining, request.refund_type)
        if calculation.net_refund <= 0:
            raise NothingToRefund()

        refund = PaymentService.create_refund(
            order.stripe_payment_intent_id,
            calculation.net_refund,
            metadata={
                "order_id": order.id,
                "refund_type": request.refund_type.value,
                "reason": request.reason,
                "event_id": event.id
            },
            idempotency_key=f"refund-{order.id}-{previous_refund}"
        )
        logger.info(
            f"Stripe refund {refund.id} created for order {order.id}: "
            f"{calculation.net_refund} (fee {calculation.fee})"
        )

        new_refund = previous_refund + calculation.net_refund
        self._record(order, previous_refund, new_refund, refund.id)

        response = RefundResponse(
            refund=RefundInfo(
                id=refund.id,
                amount=calculation.net_refund,
                status=refund.status,
                order_id=order.id,
                refund_type=request.refund_type,
                reason=request.reason,
                processing_time=PROCESSING_TIMEFRAME
            ),
            order=OrderRefundTotals(
                total_amount=order.total_amount,
                previous_refund_amount=previous_refund,
                new_refund_amount=new_refund,
                remaining_amount=order.total_amount - new_refund
            )
        )

        notification = self._confirmation(
            order,
            event,
            recipient=order.guest_email or caller.email,
            refund_id=refund.id,
            refund_type=request.refund_type,
            reason=request.reason,
            refund_amount=calculation.net_refund,
            remaining_after=order.total_amount - new_refund
        )
        return RefundOutcome(response=response, notification=notification)

    def reconcile_charge_refunded(self, charge: ChargeObject) -> ChargeRefundOutcome:
        """
        Align an order with Stripe's cumulative refunded amount for a charge.
        Stripe's figure is authoritative; ours only moves forward.
        """
        order = None
        if charge.payment_intent:
            order = OrderStore.find_by_payment_reference(self.db, charge.payment_intent)
        if not order:
            logger.error(f"Order not found for refunded charge {charge.id} ({charge.payment_intent})")
            raise OrderNotFound("Order not found for refunded charge")

        previous_refund = order.refund_amount
        reported = min(charge.amount_refunded, order.total_amount)

        if reported <= previous_refund:
            logger.info(
                f"Order {order.id} already reflects refund total {previous_refund} "
                f"(Stripe reports {charge.amount_refunded})"
            )
            return ChargeRefundOutcome(order.id, previous_refund, order.status, None)

        if not OrderStore.apply_refund_total(self.db, order, previous_refund, reported, self.clock()):
            # Another writer moved refund_amount; their write is at least as fresh.
            self.db.refresh(order)
            logger.info(f"Order {order.id} refund total changed concurrently to {order.refund_amount}")
            return ChargeRefundOutcome(order.id, order.refund_amount, order.status, None)

        logger.info(f"Updated order {order.id} with refund amount {reported} ({order.status.value})")

        event = self.catalog.get_event(self.db, order.event_id)
        refund_type = RefundType.FULL_CANCELLATION if event and event.cancelled else RefundType.CUSTOMER_REQUEST
        notification = None
        if event:
            notification = self._confirmation(
                order,
                event,
                recipient=order.guest_email,
                refund_id=charge.id,
                refund_type=refund_type,
                reason="Processed via Stripe",
                refund_amount=reported - previous_refund,
                remaining_after=order.total_amount - reported
            )
        return ChargeRefundOutcome(order.id, reported, order.status, notification)

    def _check_policy(self, event: Event, refund_type: RefundType) -> None:
        if refund_type == RefundType.FULL_CANCELLATION:
            if not event.cancelled:
                raise PolicyMismatch("Event cancellation refunds are only allowed for cancelled events")
            return

        if event.cancelled:
            raise PolicyMismatch("Use full_cancellation type for cancelled events")
        if self.clock() >= refund_deadline(event):
            raise DeadlinePassed(settings.refund_cutoff_hours)

    def _record(self, order: Order, previous_refund: int, new_refund: int, stripe_refund_id: str) -> None:
        try:
            applied = OrderStore.apply_refund_total(self.db, order, previous_refund, new_refund, self.clock())
        except PaymentsError as e:
            logger.critical(
                f"RECONCILIATION REQUIRED: Stripe refund {stripe_refund_id} for order {order.id} "
                f"succeeded but the database update failed: {e}"
            )
            raise ReconciliationRequired(order.id, stripe_refund_id) from e

        if applied:
            return

        self.db.refresh(order)
        if order.refund_amount >= new_refund:
            # charge.refunded already recorded this refund
            logger.info(f"Order {order.id} refund total already at {order.refund_amount}")
            return

        logger.critical(
            f"RECONCILIATION REQUIRED: Stripe refund {stripe_refund_id} for order {order.id} "
            f"could not be recorded; refund_amount changed from {previous_refund} "
            f"to {order.refund_amount} concurrently"
        )
        raise ReconciliationRequired(order.id, stripe_refund_id)

    def _confirmation(
        self,
        order: Order,
        event: Event,
        recipient: Optional[str],
        refund_id: str,
        refund_type: RefundType,
        reason: str,
        refund_amount: int,
        remaining_after: int
    ) -> Optional[RefundConfirmation]:
        contact = next((t for t in order.tickets if t.customer_email), None)
        recipient = recipient or (contact.customer_email if contact else None)
        if not recipient:
            logger.warning(f"No customer email found for refund confirmation: {order.id}")
            return None

        groups: "OrderedDict[str, list]" = OrderedDict()
        for ticket in order.tickets:
            name = ticket.ticket_type.name if ticket.ticket_type else "Ticket"
            groups.setdefault(name, []).append(ticket)

        # Each ticket type's share of this refund, in proportion to what it cost
        lines = []
        for name, tickets in groups.items():
            original = sum(t.unit_price * t.quantity for t in tickets)
            share = round(original * refund_amount / order.total_amount) if order.total_amount else 0
            lines.append(RefundedLine(
                ticket_type=name,
                quantity=sum(t.quantity for t in tickets),
                original_price=original,
                refund_amount=min(share, original)
            ))

        return RefundConfirmation(
            to=recipient,
            customer_name=order.guest_name or (contact.customer_name if contact else None) or "Customer",
            order_id=order.id,
            stripe_refund_id=refund_id,
            refund_type=refund_type.value,
            refund_reason=reason,
            total_refund_amount=refund_amount,
            original_order_amount=order.total_amount,
            remaining_amount=remaining_after,
            currency=order.currency,
            event_title=event.title,
            event_start=event.start_time,
            event_location=event.location,
            event_slug=event.slug,
            refunded_tickets=tuple(lines),
            processing_timeframe=PROCESSING_TIMEFRAME
        )
