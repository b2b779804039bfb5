"""
Fire-and-forget delivery of confirmation and refund messages.

Delivery runs after the HTTP response (FastAPI BackgroundTasks). A failed send
is retried on the scheduler with exponential backoff, up to a fixed number of
attempts; a message that still fails is logged and dropped. Nothing here ever
raises into the request that queued the message.
"""

import logging
import secrets

from fastapi import BackgroundTasks

from eventpay.config import get_settings
from eventpay.services.email import EmailService
from eventpay.services.notifications import Notification, RefundConfirmation, TicketConfirmation
from eventpay.services.scheduler import schedule_retry

settings = get_settings()
logger = logging.getLogger(__name__)


def retry_delay(attempt: int) -> float:
    """Seconds to wait before attempt ``attempt + 1``."""
    return settings.notification_retry_base_seconds * (2 ** (attempt - 1))


async def deliver_notification(message: Notification, attempt: int = 1) -> bool:
    kind = type(message).__name__

    if not EmailService.is_configured():
        logger.warning(f"SMTP not configured, dropping {kind} for order {message.order_id}")
        return False

    try:
        if isinstance(message, TicketConfirmation):
            sent = await EmailService.send_ticket_confirmation(message)
        elif isinstance(message, RefundConfirmation):
            sent = await EmailService.send_refund_confirmation(message)
        else:
            logger.error(f"Unknown notification type {kind}")
            return False
    except Exception as e:
        logger.error(f"Failed to send {kind} for order {message.order_id}: {e}")
        sent = False

    if sent:
        logger.info(f"{kind} sent for order {message.order_id} (attempt {attempt})")
        return True

    if attempt >= settings.notification_max_attempts:
        logger.error(
            f"Giving up on {kind} for order {message.order_id} after {attempt} attempts"
        )
        return False

    schedule_retry(
        deliver_notification,
        job_key=f"{message.order_id}_{secrets.token_hex(4)}",
        delay_seconds=retry_delay(attempt),
        args=[message, attempt + 1]
    )
    return False


class Notifier:
    """Hands messages to background delivery; never blocks or fails the caller."""

    def __init__(self, background_tasks: BackgroundTasks):
        self.background_tasks = background_tasks

    def send(self, message: Notification) -> None:
        if not message.to:
            logger.warning(f"No recipient for {type(message).__name__}, order {message.order_id}")
            return
        self.background_tasks.add_task(deliver_notification, message)

    def send_all(self, messages: list[Notification]) -> None:
        for message in messages:
            self.send(message)
