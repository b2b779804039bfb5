import logging
from dataclasses import dataclass
from typing import Optional

import stripe

from eventpay.config import get_settings
from eventpay.errors import (
    AlreadyRefunded, InvalidSignature, ProcessorError, ProcessorOutcomeUnknown, WebhookNotConfigured
)
from eventpay.schemas.webhook import PaymentIntentObject

settings = get_settings()
logger = logging.getLogger(__name__)

stripe.api_key = settings.stripe_secret_key
stripe.max_network_retries = settings.stripe_max_network_retries
stripe.default_http_client = stripe.RequestsClient(timeout=settings.stripe_timeout_seconds)


@dataclass(frozen=True)
class RefundResult:
    id: str
    status: str
    amount: int


class PaymentService:
    @staticmethod
    def verify_webhook_signature(payload: bytes, signature: Optional[str]) -> None:
        """
        Verify the Stripe-Signature header against the raw request bytes.
        The payload must be exactly what arrived on the wire.
        """
        if not signature:
            raise InvalidSignature("Missing stripe-signature header")

        if not settings.stripe_webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured")
            raise WebhookNotConfigured()

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                settings.stripe_webhook_secret,
                tolerance=settings.stripe_webhook_tolerance
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            raise InvalidSignature()

    @staticmethod
    def retrieve_payment_intent(payment_intent_id: str) -> PaymentIntentObject:
        """Fetch a PaymentIntent; charge notifications carry no purchase metadata."""
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as e:
            logger.error(f"Failed to retrieve PaymentIntent {payment_intent_id}: {e}")
            raise ProcessorError("Failed to retrieve payment intent")

        return PaymentIntentObject(
            id=intent.id,
            amount=intent.amount,
            currency=intent.currency,
            metadata={key: str(value) for key, value in (intent.metadata or {}).items()}
        )

    @staticmethod
    def create_refund(
        payment_intent_id: str,
        amount: int,
        metadata: dict[str, str],
        idempotency_key: str
    ) -> RefundResult:
        """
        Refund part or all of a payment. A dropped connection or timeout is
        reported as ProcessorOutcomeUnknown: Stripe may have refunded anyway.
        """
        try:
            refund = stripe.Refund.create(
                payment_intent=payment_intent_id,
                amount=amount,
                reason="requested_by_customer",
                metadata=metadata,
                idempotency_key=idempotency_key
            )
        except stripe.APIConnectionError as e:
            logger.error(f"Stripe refund outcome unknown for {payment_intent_id}: {e}")
            raise ProcessorOutcomeUnknown()
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "charge_already_refunded":
                raise AlreadyRefunded("This payment has already been refunded")
            logger.error(f"Stripe rejected refund for {payment_intent_id}: {e}")
            raise ProcessorError()
        except stripe.StripeError as e:
            logger.error(f"Stripe refund error for {payment_intent_id}: {e}")
            raise ProcessorError()

        return RefundResult(id=refund.id, status=refund.status, amount=refund.amount)
