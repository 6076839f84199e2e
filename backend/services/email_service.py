"""
Email transport — one HTML message per call over SMTP (aiosmtplib).

Callers treat EmailDeliveryError as non-fatal: they log it and carry on.
"""
import logging
from email.message import EmailMessage

import aiosmtplib

from config import settings
from domain.errors import EmailDeliveryError

logger = logging.getLogger(__name__)


def build_message(to: str, subject: str, html: str) -> EmailMessage:
    message = EmailMessage()
    message["From"] = settings.smtp_from or settings.smtp_username
    message["To"] = to
    message["Subject"] = subject
    message.set_content("This message requires an HTML-capable email client.")
    message.add_alternative(html, subtype="html")
    return message


async def send_email(to: str, subject: str, html: str) -> None:
    """
    Send one HTML email.

    Raises:
        EmailDeliveryError: SMTP not configured, or the server refused/failed
    """
    if not settings.smtp_host:
        raise EmailDeliveryError("SMTP is not configured (SMTP_HOST missing)")

    message = build_message(to, subject, html)
    try:
        await aiosmtplib.send(
            message,
            hostname=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username or None,
            password=settings.smtp_password or None,
            start_tls=settings.smtp_start_tls,
            timeout=30,
        )
    except (aiosmtplib.SMTPException, OSError) as e:
        logger.error(f"SMTP send to {to} failed: {e}")
        raise EmailDeliveryError(f"Failed to send email to {to}: {e}") from e

    logger.info(f"📧 Email sent to {to}: {subject}")
