"""
Newsletter Service — subscriptions and bulk sends.

Mail goes through an injected `mailer` coroutine (email_service.send_email in
production) so sends can be observed in tests.
"""
import logging
import secrets
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Subscriber
from domain.errors import ConflictError, EmailDeliveryError, ValidationError
from utils.validators import validate_email

logger = logging.getLogger(__name__)


def unsubscribe_url(token: str) -> str:
    return f"{settings.frontend_url.rstrip('/')}/unsubscribe?token={token}"


def welcome_html(token: str) -> str:
    brand = settings.brand_name
    return f"""
<div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 20px auto; padding: 20px;">
  <h1 style="color: #2a52be; font-size: 28px; text-align: center;">Welcome to {brand}!</h1>
  <p>Hi there,</p>
  <p>Thank you for subscribing to the {brand} newsletter! Expect new releases, events,
     special promotions and hand-picked recommendations in your inbox.</p>
  <p style="text-align: center;">
    <a href="{settings.frontend_url}" style="padding: 12px 25px; background-color: #2a52be; color: #fff; text-decoration: none; border-radius: 5px;">Explore {brand} Now!</a>
  </p>
  <p style="font-size: 12px; color: #777; text-align: center;">
    You received this email because you subscribed to {brand}'s newsletter.
    If you no longer wish to receive these emails, you can <a href="{unsubscribe_url(token)}">unsubscribe here</a>.
  </p>
  <p style="font-size: 12px; color: #777; text-align: center;">&copy; {datetime.utcnow().year} {brand}. All rights reserved.</p>
</div>
"""


def with_unsubscribe_footer(html: str, token: str) -> str:
    return (
        f"{html}\n<br><br>\n"
        f'<hr style="border: none; border-top: 1px solid #eee; margin: 20px 0;">\n'
        f'<p style="font-size: 0.8em; color: #888;">If you no longer wish to receive these emails, '
        f'you can <a href="{unsubscribe_url(token)}">unsubscribe here</a>.</p>'
    )


async def send_welcome(email: str, token: str, mailer) -> None:
    """Welcome mail; a failure is logged and never reaches the subscriber."""
    try:
        await mailer(email, f"Welcome to {settings.brand_name}! Your Reading Adventure Awaits!", welcome_html(token))
    except EmailDeliveryError as e:
        logger.warning(f"⚠️  Welcome mail to {email} not sent: {e}")


async def subscribe(db: AsyncSession, email: str, mailer, schedule=None) -> dict:
    """
    Add a subscriber and send the welcome mail.

    With `schedule` (e.g. BackgroundTasks.add_task) the welcome mail is handed
    off and sent after the response; without it the mail is sent inline.
    A failed welcome mail is logged; the subscription is kept.

    Raises:
        ValidationError: malformed email
        ConflictError: already subscribed
    """
    email = validate_email(email)

    existing = await db.execute(select(Subscriber.id).where(Subscriber.email == email))
    if existing.scalar_one_or_none() is not None:
        raise ConflictError("Already subscribed")

    token = secrets.token_hex(32)
    db.add(Subscriber(email=email, unsubscribe_token=token))
    try:
        await db.flush()
    except IntegrityError:
        raise ConflictError("Already subscribed")

    if schedule is not None:
        schedule(send_welcome, email, token, mailer)
    else:
        await send_welcome(email, token, mailer)

    logger.info(f"📧 New newsletter subscriber: {email}")
    return {"email": email, "message": f"Subscribed with {email}"}


async def unsubscribe(db: AsyncSession, token: str) -> dict:
    if not token:
        raise ValidationError("Missing token", field="token")
    res = await db.execute(delete(Subscriber).where(Subscriber.unsubscribe_token == token))
    if getattr(res, "rowcount", 0) == 0:
        raise ValidationError("Invalid or expired token", field="token")
    logger.info("Subscriber removed via unsubscribe link")
    return {"message": "Unsubscribed successfully"}


async def send_newsletter(db: AsyncSession, subject: str, html: str, mailer) -> dict:
    """
    Send one newsletter to every subscriber, each with their own unsubscribe link.

    Failures are collected per recipient; nothing is retried.
    """
    if not subject or not html:
        raise ValidationError("Missing subject or HTML content")

    result = await db.execute(select(Subscriber).order_by(Subscriber.id))
    subscribers = list(result.scalars().all())
    if not subscribers:
        return {
            "message": "No subscribers found to send emails.",
            "totalSubscribers": 0,
            "emailsSent": 0,
            "errors": 0,
            "failedEmails": [],
        }

    sent = 0
    failed: list[str] = []
    for subscriber in subscribers:
        try:
            await mailer(subscriber.email, subject, with_unsubscribe_footer(html, subscriber.unsubscribe_token))
            sent += 1
        except EmailDeliveryError as e:
            failed.append(subscriber.email)
            logger.error(f"Newsletter to {subscriber.email} failed: {e}")

    logger.info(f"📧 Newsletter '{subject}': {sent}/{len(subscribers)} sent, {len(failed)} failed")
    return {
        "message": f"Newsletter sending completed. Sent to {sent} subscribers.",
        "totalSubscribers": len(subscribers),
        "emailsSent": sent,
        "errors": len(failed),
        "failedEmails": failed,
    }
