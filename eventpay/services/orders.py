"""
Datastore access for orders and tickets.

Write failures leave this module as typed errors: IntegrityError becomes
ConstraintViolation naming the offending field, every other SQLAlchemyError
becomes DatastoreUnavailable. Callers branch on those types, never on driver
error codes or messages.
"""

import logging
import re
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from eventpay.errors import (
    AmbiguousOrderReference, ConstraintViolation, DatastoreUnavailable, OrderNotFound
)
from eventpay.models.order import Order, OrderStatus, PAYMENT_REFERENCE_CONSTRAINT
from eventpay.models.ticket import Ticket, TicketStatus
from eventpay.services.identifiers import is_uuid

logger = logging.getLogger(__name__)

HEX_PATTERN = re.compile(r"^[0-9a-fA-F]+$")

CONSTRAINT_FIELDS = {
    PAYMENT_REFERENCE_CONSTRAINT: "stripe_payment_intent_id",
    "ck_orders_refund_within_total": "refund_amount",
    "ck_orders_refund_non_negative": "refund_amount",
    "ck_ticket_types_sold_within_capacity": "sold_count",
    "ck_events_tickets_sold_within_capacity": "tickets_sold",
    "tickets_confirmation_code_key": "confirmation_code",
}


def violated_field(error: IntegrityError) -> Optional[str]:
    """Name the column behind a constraint violation, across drivers."""
    orig = getattr(error, "orig", None)

    # psycopg exposes the constraint name directly
    diag = getattr(orig, "diag", None)
    constraint = getattr(diag, "constraint_name", None)
    if constraint:
        return CONSTRAINT_FIELDS.get(constraint, constraint)

    # sqlite: "UNIQUE constraint failed: orders.stripe_payment_intent_id"
    #         "CHECK constraint failed: ck_orders_refund_within_total"
    message = str(orig) if orig is not None else str(error)
    if "constraint failed:" in message:
        target = message.split("constraint failed:", 1)[1].strip().split(",")[0].strip()
        if target in CONSTRAINT_FIELDS:
            return CONSTRAINT_FIELDS[target]
        return target.rsplit(".", 1)[-1]
    return None


def translate_error(db: Session, error: SQLAlchemyError, action: str):
    """Roll back and convert a SQLAlchemy error into a typed error."""
    db.rollback()
    if isinstance(error, IntegrityError):
        field = violated_field(error)
        logger.warning(f"Constraint violation while trying to {action}: field={field}")
        return ConstraintViolation(field, f"Constraint violation while trying to {action}")
    logger.error(f"Datastore failure while trying to {action}: {error}")
    return DatastoreUnavailable(f"Failed to {action}")


class OrderStore:
    @staticmethod
    def find_by_payment_reference(db: Session, payment_intent_id: str) -> Optional[Order]:
        try:
            return db.query(Order).filter(
                Order.stripe_payment_intent_id == payment_intent_id
            ).first()
        except SQLAlchemyError as e:
            raise translate_error(db, e, "check for an existing order")

    @staticmethod
    def insert_order(db: Session, order: Order) -> Order:
        """Insert and commit. Raises ConstraintViolation on a duplicate payment reference."""
        db.add(order)
        try:
            db.commit()
        except SQLAlchemyError as e:
            raise translate_error(db, e, "create order record")
        db.refresh(order)
        return order

    @staticmethod
    def find_by_reference(db: Session, order_ref: str) -> Order:
        """
        Look up an order by full id or by its display id (the last eight
        characters of the id). A display id shared by several orders is an error.
        """
        order_ref = order_ref.strip()
        if is_uuid(order_ref):
            order = db.query(Order).filter(Order.id == order_ref.lower()).first()
            if not order:
                raise OrderNotFound()
            return order

        if not HEX_PATTERN.match(order_ref):
            raise OrderNotFound()

        matches = db.query(Order).filter(
            Order.id.like(f"%{order_ref.lower()}")
        ).limit(2).all()

        if not matches:
            raise OrderNotFound()
        if len(matches) > 1:
            logger.error(f"Multiple orders found with display id {order_ref}")
            raise AmbiguousOrderReference(order_ref)
        return matches[0]

    @staticmethod
    def mark_payment_failed(db: Session, payment_intent_id: str) -> Optional[Order]:
        """Move a pending order to failed. Settled orders are left untouched."""
        order = OrderStore.find_by_payment_reference(db, payment_intent_id)
        if not order:
            return None
        if order.status != OrderStatus.PENDING:
            logger.warning(
                f"Ignoring payment failure for order {order.id} in status {order.status.value}"
            )
            return order

        order.status = OrderStatus.FAILED
        try:
            db.commit()
        except SQLAlchemyError as e:
            raise translate_error(db, e, "mark order failed")
        return order

    @staticmethod
    def apply_refund_total(
        db: Session,
        order: Order,
        expected_refund_amount: int,
        new_refund_amount: int,
        refunded_at: datetime
    ) -> bool:
        """
        Compare-and-set the cumulative refund. Returns False when another writer
        changed refund_amount first. The amount never decreases and never
        exceeds the order total.
        """
        new_refund_amount = min(new_refund_amount, order.total_amount)
        if new_refund_amount < expected_refund_amount:
            return False

        status = (
            OrderStatus.REFUNDED if new_refund_amount >= order.total_amount
            else OrderStatus.PARTIALLY_REFUNDED
        )
        try:
            updated = db.query(Order).filter(
                Order.id == order.id,
                Order.refund_amount == expected_refund_amount
            ).update(
                {
                    Order.refund_amount: new_refund_amount,
                    Order.refunded_at: refunded_at,
                    Order.status: status,
                    Order.updated_at: refunded_at,
                },
                synchronize_session=False
            )
            if updated and status == OrderStatus.REFUNDED:
                db.query(Ticket).filter(Ticket.order_id == order.id).update(
                    {Ticket.status: TicketStatus.CANCELLED},
                    synchronize_session=False
                )
            db.commit()
        except SQLAlchemyError as e:
            raise translate_error(db, e, "update order with refund information")

        db.refresh(order)
        return bool(updated)

    @staticmethod
    def ticket_count(db: Session, order_id: str) -> int:
        return db.query(func.count(Ticket.id)).filter(Ticket.order_id == order_id).scalar() or 0

    @staticmethod
    def orders_needing_attention(db: Session, limit: int = 100) -> list[Order]:
        """Completed orders with no tickets: partial fulfillments awaiting an operator."""
        has_tickets = db.query(Ticket.id).filter(Ticket.order_id == Order.id).exists()
        return db.query(Order).filter(
            Order.status == OrderStatus.COMPLETED,
            ~has_tickets
        ).order_by(Order.created_at.desc()).limit(limit).all()
