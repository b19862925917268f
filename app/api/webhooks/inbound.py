"""
Inbound Webhooks - מייל נכנס, עדכוני סטטוס ממערכת התשלומים ואירועי CRM.

סדר העיבוד בכל נקודה:
1. רישום הבקשה ב-webhook_logs (pending)
2. אימות חתימה (אם הוגדר סוד) - 401
3. ולידציה של השדות - 400
4. עיבוד וסימון הרשומה processed / ignored / failed
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.webhook_auth import require_signature
from app.api.routes.schemas import ok, transaction_out
from app.api.webhooks.common import read_payload
from app.core.config import settings
from app.db.database import get_db
from app.db.models.webhook_log import WebhookSource
from app.domain.services.webhook_service import WebhookService

router = APIRouter()


@router.post("/email", summary="מייל נכנס (ספק מייל)")
async def email_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    inbound = await read_payload(request)
    service = WebhookService(db)
    log = await service.log_received(WebhookSource.EMAIL, "email_received", inbound.data)

    outcome = await service.process(
        log,
        lambda: service.handle_email(inbound.as_object()),
    )
    return ok(outcome.data, outcome.message)


@router.post("/transaction", summary="עדכון סטטוס עסקה ממערכת התשלומים")
async def transaction_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    inbound = await read_payload(request)
    service = WebhookService(db)
    log = await service.log_received(WebhookSource.TRANSACTION, "status_update", inbound.data)

    async def handler():
        require_signature(
            inbound.raw,
            request.headers.get("X-Signature"),
            settings.TRANSACTION_WEBHOOK_SECRET,
            source=WebhookSource.TRANSACTION.value,
        )
        return await service.handle_transaction(inbound.as_object())

    outcome = await service.process(log, handler)
    return ok(transaction_out(outcome.data), outcome.message)


@router.post("/crm", summary="אירועי CRM")
async def crm_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    inbound = await read_payload(request)
    service = WebhookService(db)
    event_type = inbound.data.get("event_type") if isinstance(inbound.data, dict) else None
    if not isinstance(event_type, str):
        event_type = None
    log = await service.log_received(WebhookSource.CRM, event_type or "unknown", inbound.data)

    async def handler():
        require_signature(
            inbound.raw,
            request.headers.get("X-CRM-Signature"),
            settings.CRM_WEBHOOK_SECRET,
            source=WebhookSource.CRM.value,
        )
        return await service.handle_crm(inbound.as_object())

    outcome = await service.process(log, handler)
    return ok(None, outcome.message)
