"""
Route verified Stripe notifications to their handlers.

The dispatcher owns the transport-level answer to Stripe: a status code, a
JSON body and the notifications to deliver once the response is sent. It
never touches the datastore directly.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy.orm import Session

from eventpay.errors import PaymentsError
from eventpay.schemas.webhook import (
    ChargeObject, PaymentIntentObject, RefundObject, WebhookEnvelope, parse_envelope, parse_object
)
from eventpay.services.catalog import EventCatalog
from eventpay.services.fulfillment import FulfillmentService
from eventpay.services.identifiers import generate_webhook_id
from eventpay.services.notifications import Notification
from eventpay.services.orders import OrderStore
from eventpay.services.payment import PaymentService
from eventpay.services.refunds import RefundService

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    status_code: int
    body: dict
    notifications: list[Notification] = field(default_factory=list)


@dataclass
class HandlerOutcome:
    body: dict = field(default_factory=dict)
    notification: Optional[Notification] = None


class WebhookDispatcher:
    def __init__(self, db: Session, catalog: EventCatalog):
        self.db = db
        self.catalog = catalog
        self.handlers: dict[str, Callable[[WebhookEnvelope, str], HandlerOutcome]] = {
            "payment_intent.succeeded": self._payment_intent_succeeded,
            "charge.succeeded": self._charge_succeeded,
            "payment_intent.payment_failed": self._payment_failed,
            "charge.refunded": self._charge_refunded,
            "refund.created": self._refund_created,
            "refund.failed": self._refund_failed,
        }

    def handle(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """Verify, parse and dispatch one delivery. Domain errors become error responses."""
        webhook_id = generate_webhook_id()
        started = time.monotonic()

        try:
            PaymentService.verify_webhook_signature(payload, signature)
            envelope = parse_envelope(payload)
            logger.info(f"[{webhook_id}] Webhook received: {envelope.type} ({envelope.id})")

            handler = self.handlers.get(envelope.type)
            if handler is None:
                logger.info(f"[{webhook_id}] Unhandled event type: {envelope.type}")
                outcome = HandlerOutcome()
            else:
                outcome = handler(envelope, webhook_id)
        except PaymentsError as e:
            elapsed = self._elapsed_ms(started)
            log = logger.error if e.status_code >= 500 else logger.warning
            log(f"[{webhook_id}] Webhook rejected after {elapsed}ms: {e}")
            body = e.to_dict()
            body["webhook_id"] = webhook_id
            return WebhookResult(status_code=e.status_code, body=body)

        elapsed = self._elapsed_ms(started)
        logger.info(f"[{webhook_id}] Processing completed in {elapsed}ms")
        body = {"received": True, **outcome.body, "webhook_id": webhook_id, "processing_time_ms": elapsed}
        notifications = [outcome.notification] if outcome.notification else []
        return WebhookResult(status_code=200, body=body, notifications=notifications)

    def _payment_intent_succeeded(self, envelope: WebhookEnvelope, webhook_id: str) -> HandlerOutcome:
        intent = parse_object(PaymentIntentObject, envelope)
        logger.info(f"[{webhook_id}] Payment succeeded: {intent.id}")
        return self._fulfill(intent)

    def _charge_succeeded(self, envelope: WebhookEnvelope, webhook_id: str) -> HandlerOutcome:
        charge = parse_object(ChargeObject, envelope)
        if not charge.payment_intent:
            logger.info(f"[{webhook_id}] Charge {charge.id} has no payment intent, ignoring")
            return HandlerOutcome(body={"message": "Charge has no payment intent"})

        logger.info(f"[{webhook_id}] Charge succeeded: {charge.id} for PaymentIntent {charge.payment_intent}")
        intent = PaymentService.retrieve_payment_intent(charge.payment_intent)
        return self._fulfill(intent)

    def _fulfill(self, intent: PaymentIntentObject) -> HandlerOutcome:
        result = FulfillmentService(self.db, self.catalog).fulfill(intent)
        body = {
            "message": result.message,
            "order_id": result.order_id,
            "tickets_created": result.ticket_count,
        }
        if result.duplicate:
            body["duplicate"] = True
        return HandlerOutcome(body=body, notification=result.notification)

    def _payment_failed(self, envelope: WebhookEnvelope, webhook_id: str) -> HandlerOutcome:
        intent = parse_object(PaymentIntentObject, envelope)
        logger.info(f"[{webhook_id}] Payment failed: {intent.id}")
        order = OrderStore.mark_payment_failed(self.db, intent.id)
        if not order:
            return HandlerOutcome(body={"message": "No order for payment"})
        return HandlerOutcome(body={"order_id": order.id, "status": order.status.value})

    def _charge_refunded(self, envelope: WebhookEnvelope, webhook_id: str) -> HandlerOutcome:
        charge = parse_object(ChargeObject, envelope)
        logger.info(f"[{webhook_id}] Charge refunded: {charge.id} ({charge.amount_refunded} refunded)")
        outcome = RefundService(self.db, self.catalog).reconcile_charge_refunded(charge)
        return HandlerOutcome(
            body={
                "order_id": outcome.order_id,
                "refund_amount": outcome.refund_amount,
                "status": outcome.status.value,
            },
            notification=outcome.notification
        )

    def _refund_created(self, envelope: WebhookEnvelope, webhook_id: str) -> HandlerOutcome:
        refund = parse_object(RefundObject, envelope)
        logger.info(
            f"[{webhook_id}] Refund created: {refund.id} for {refund.amount} "
            f"(payment intent {refund.payment_intent}, status {refund.status})"
        )
        return HandlerOutcome()

    def _refund_failed(self, envelope: WebhookEnvelope, webhook_id: str) -> HandlerOutcome:
        refund = parse_object(RefundObject, envelope)
        logger.error(
            f"[{webhook_id}] STAFF ACTION REQUIRED: refund {refund.id} failed for payment intent "
            f"{refund.payment_intent}: {refund.failure_reason or 'unknown reason'}"
        )
        return HandlerOutcome()

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
