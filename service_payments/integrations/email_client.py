"""
SMTP notification client for payment links.

smtplib is blocking, so each delivery attempt runs in the default executor.
Attempts are retried with exponential backoff.
"""
import asyncio
import html
import smtplib
from datetime import datetime
from decimal import Decimal
from email.message import EmailMessage
from typing import Optional

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from service_payments.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class EmailError(Exception):
    """Raised when a notification cannot be delivered."""

    pass


class EmailClient:
    """Sends payment link notifications to customers."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def build_payment_link_message(
        self,
        to_email: str,
        customer_name: str,
        service_name: str,
        amount: Decimal,
        currency: str,
        payment_url: str,
        expires_at: datetime,
        milestone_name: Optional[str] = None,
    ) -> EmailMessage:
        what = f'milestone "{milestone_name}" of {service_name}' if milestone_name else service_name
        expiry = expires_at.strftime("%d %b %Y %H:%M UTC")

        message = EmailMessage()
        message["Subject"] = f"Payment link for {service_name}"
        message["From"] = self.settings.email_from
        message["To"] = to_email
        message.set_content(
            f"Hello {customer_name},\n\n"
            f"Please complete the payment of {currency} {amount:.2f} for {what}.\n\n"
            f"Pay here: {payment_url}\n\n"
            f"This link expires on {expiry}.\n"
        )
        message.add_alternative(
            f"<p>Hello {html.escape(customer_name)},</p>"
            f"<p>Please complete the payment of <strong>{currency} {amount:.2f}</strong> "
            f"for {html.escape(what)}.</p>"
            f'<p><a href="{html.escape(payment_url, quote=True)}">Pay now</a></p>'
            f"<p>This link expires on {expiry}.</p>",
            subtype="html",
        )
        return message

    def _deliver(self, message: EmailMessage) -> None:
        settings = self.settings
        with smtplib.SMTP(
            settings.smtp_host, settings.smtp_port, timeout=settings.smtp_timeout_seconds
        ) as smtp:
            if settings.smtp_use_tls:
                smtp.starttls()
            if settings.smtp_username and settings.smtp_password:
                smtp.login(settings.smtp_username, settings.smtp_password.get_secret_value())
            smtp.send_message(message)

    async def send(self, message: EmailMessage) -> None:
        """
        Deliver a message over SMTP.

        Raises:
            EmailError: If SMTP is not configured or every attempt failed
        """
        if not self.settings.email_enabled:
            raise EmailError("Email delivery is not configured")

        loop = asyncio.get_running_loop()
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((smtplib.SMTPException, OSError)),
                stop=stop_after_attempt(self.settings.email_max_attempts),
                wait=wait_exponential(multiplier=1, min=1, max=8),
                reraise=True,
            ):
                with attempt:
                    await loop.run_in_executor(None, self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("email_delivery_failed", to=message["To"], error=str(e))
            raise EmailError(f"Failed to send email: {e}")

        logger.info("email_sent", to=message["To"], subject=message["Subject"])

    async def send_payment_link_email(
        self,
        to_email: str,
        customer_name: str,
        service_name: str,
        amount: Decimal,
        currency: str,
        payment_url: str,
        expires_at: datetime,
        milestone_name: Optional[str] = None,
    ) -> None:
        """Render and send the payment link notification."""
        message = self.build_payment_link_message(
            to_email,
            customer_name,
            service_name,
            amount,
            currency,
            payment_url,
            expires_at,
            milestone_name=milestone_name,
        )
        await self.send(message)
