import aiosmtplib
from markupsafe import escape
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from datetime import datetime
from typing import Optional
import logging

from eventpay.config import get_settings
from eventpay.services.notifications import RefundConfirmation, TicketConfirmation

settings = get_settings()
logger = logging.getLogger(__name__)


def format_amount(cents: int, currency: str = "usd") -> str:
    symbol = "$" if currency.lower() == "usd" else f"{currency.upper()} "
    return f"{symbol}{cents / 100:.2f}"


def format_event_date(value: Optional[datetime]) -> str:
    if not value:
        return "TBA"
    return value.strftime("%A, %B %d, %Y at %I:%M %p").replace(" 0", " ")


class EmailService:
    @staticmethod
    def is_configured() -> bool:
        return bool(settings.smtp_user and settings.smtp_password)

    @staticmethod
    async def send_email(to_email: str, subject: str, html_content: str) -> bool:
        """Send an email using SMTP."""
        if not EmailService.is_configured():
            logger.warning("SMTP not configured, skipping email send")
            return False

        message = MIMEMultipart("alternative")
        message["From"] = settings.smtp_user
        message["To"] = to_email
        message["Subject"] = subject

        html_part = MIMEText(html_content, "html")
        message.attach(html_part)

        try:
            await aiosmtplib.send(
                message,
                hostname=settings.smtp_host,
                port=settings.smtp_port,
                username=settings.smtp_user,
                password=settings.smtp_password,
                start_tls=True,
                timeout=settings.smtp_timeout_seconds
            )
            return True
        except aiosmtplib.SMTPException as e:
            logger.error(f"Failed to send email: {e}")
            return False
        except OSError as e:
            logger.error(f"Failed to reach SMTP server: {e}")
            return False

    @staticmethod
    async def send_ticket_confirmation(message: TicketConfirmation) -> bool:
        """Send ticket purchase confirmation."""
        ticket_rows = "".join(
            f"<p style=\"margin: 5px 0;\"><strong>{escape(line.ticket_type)}:</strong> "
            f"{line.quantity} ticket(s), {format_amount(line.total_paid, message.currency)}</p>"
            for line in message.tickets
        )
        codes = "".join(f"<li>{code}</li>" for code in message.confirmation_codes)

        html_content = f"""
        <html>
        <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <h1 style="color: #4F46E5;">You're going to {escape(message.event_title)}!</h1>
            <p>Hi {escape(message.customer_name)},</p>
            <p>Your payment was successful and your tickets are confirmed.</p>
            <div style="background-color: #F3F4F6; padding: 20px; border-radius: 8px; margin: 20px 0;">
                <p style="margin: 5px 0;"><strong>When:</strong> {format_event_date(message.event_start)}</p>
                <p style="margin: 5px 0;"><strong>Where:</strong> {escape(message.event_location or "TBA")}</p>
                {ticket_rows}
                <p style="margin: 5px 0;"><strong>Total:</strong> {format_amount(message.total_paid, message.currency)}</p>
            </div>
            <p>Your confirmation codes:</p>
            <ul>{codes}</ul>
            <p style="color: #666;">Order reference: {message.order_id[-8:].upper()}</p>
            <p>Best,<br>The Events Team</p>
        </body>
        </html>
        """

        return await EmailService.send_email(message.to, message.subject, html_content)

    @staticmethod
    async def send_refund_confirmation(message: RefundConfirmation) -> bool:
        """Send refund confirmation."""
        refund_rows = "".join(
            f"<p style=\"margin: 5px 0;\"><strong>{escape(line.ticket_type)}</strong> &times; {line.quantity}: "
            f"{format_amount(line.refund_amount, message.currency)} of "
            f"{format_amount(line.original_price, message.currency)}</p>"
            for line in message.refunded_tickets
        )
        event_url = f"{settings.frontend_url}/events/{message.event_slug}" if message.event_slug else settings.frontend_url

        html_content = f"""
        <html>
        <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <h1 style="color: #4F46E5;">Refund Confirmed</h1>
            <p>Hi {escape(message.customer_name)},</p>
            <p>We've processed a refund for your order for
               <a href="{escape(event_url)}">{escape(message.event_title)}</a>
               ({format_event_date(message.event_start)}).</p>
            <div style="background-color: #F3F4F6; padding: 20px; border-radius: 8px; margin: 20px 0;">
                {refund_rows}
                <p style="margin: 5px 0;"><strong>Refunded:</strong> {format_amount(message.total_refund_amount, message.currency)}</p>
                <p style="margin: 5px 0;"><strong>Original order:</strong> {format_amount(message.original_order_amount, message.currency)}</p>
                <p style="margin: 5px 0;"><strong>Remaining balance:</strong> {format_amount(message.remaining_amount, message.currency)}</p>
                <p style="margin: 5px 0;"><strong>Reason:</strong> {escape(message.refund_reason)}</p>
            </div>
            <p>Refunds usually reach your account within {message.processing_timeframe}.</p>
            <p style="color: #666;">Refund reference: {message.stripe_refund_id}</p>
            <p>Best,<br>The Events Team</p>
        </body>
        </html>
        """

        return await EmailService.send_email(message.to, message.subject, html_content)
