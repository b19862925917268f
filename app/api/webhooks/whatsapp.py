"""
WhatsApp Cloud API Webhook - אימות רישום מול Meta, הודעות נכנסות ועדכוני סטטוס.

Meta שולח ל-POST את כל האירועים של מספר הטלפון:
- value.messages[]: הודעות מלקוחות (נרשמות, ומילות מפתח מקבלות מענה)
- value.statuses[]: sent / delivered / read / failed להודעות שלנו
"""
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.webhook_auth import require_signature
from app.api.routes.schemas import ok
from app.api.webhooks.common import read_payload
from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.webhook_log import WebhookSource
from app.domain.services.webhook_service import WebhookService

logger = get_logger(__name__)

router = APIRouter()


@router.get(
    "/whatsapp",
    summary="WhatsApp Webhook Verification",
    description="אימות webhook מול Meta - מחזיר hub.challenge כטקסט.",
    response_class=PlainTextResponse,
)
async def verify_whatsapp_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
) -> PlainTextResponse:
    if (
        hub_mode == "subscribe"
        and hub_challenge
        and settings.WHATSAPP_VERIFY_TOKEN
        and hub_verify_token == settings.WHATSAPP_VERIFY_TOKEN
    ):
        logger.info("WhatsApp webhook verified successfully")
        return PlainTextResponse(hub_challenge)
    logger.warning(
        "WhatsApp webhook verification failed",
        extra_data={"hub_mode": hub_mode},
    )
    raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/whatsapp", summary="WhatsApp Cloud API events")
async def whatsapp_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    inbound = await read_payload(request)
    service = WebhookService(db)
    log = await service.log_received(WebhookSource.WHATSAPP, "message_received", inbound.data)

    async def handler():
        require_signature(
            inbound.raw,
            request.headers.get("X-Hub-Signature-256"),
            settings.WHATSAPP_APP_SECRET,
            source=WebhookSource.WHATSAPP.value,
        )
        return await service.handle_whatsapp(inbound.as_object())

    outcome = await service.process(log, handler)
    return ok(outcome.extra)
