"""
Newsletter endpoints.

Endpoints:
    POST /newsletter/subscribe     — add subscriber + welcome mail
    GET  /newsletter/unsubscribe   — one-click removal (?token=...)
    POST /newsletter/send          — admin bulk send
"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import get_mailer, require_admin
from domain.responses import success_response
from middleware.auth import Principal
from middleware.rate_limit import rate_limit
from models import NewsletterSendRequest, SubscribeRequest
from services import newsletter_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/newsletter", tags=["newsletter"])


@router.post("/subscribe", dependencies=[Depends(rate_limit(5, 60))])
async def subscribe(
    body: SubscribeRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    mailer=Depends(get_mailer),
):
    # Welcome mail goes out after the response so a slow SMTP server never blocks it
    result = await newsletter_service.subscribe(db, body.email, mailer, schedule=background_tasks.add_task)
    await db.commit()
    return success_response(result)


@router.get("/unsubscribe")
async def unsubscribe(
    token: str = Query("", max_length=128),
    db: AsyncSession = Depends(get_db),
):
    result = await newsletter_service.unsubscribe(db, token)
    await db.commit()
    return success_response(result)


@router.post("/send")
async def send_newsletter(
    body: NewsletterSendRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_admin),
    mailer=Depends(get_mailer),
):
    logger.info(f"Newsletter send requested by {principal['email']}")
    return success_response(
        await newsletter_service.send_newsletter(db, body.subject, body.html_content, mailer)
    )
