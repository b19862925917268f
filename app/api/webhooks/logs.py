"""
Webhook Logs - צפייה בקריאות webhook שהתקבלו
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.routes.schemas import WebhookLogResponse, ok, paginated, parse_date_param
from app.db.database import get_db
from app.db.models.webhook_log import WebhookSource, WebhookStatus
from app.domain.services.webhook_service import WebhookService

router = APIRouter()


@router.get("/logs", summary="לוג webhooks")
async def webhook_logs(
    source: Optional[WebhookSource] = Query(None),
    event_type: Optional[str] = Query(None),
    status_filter: Optional[WebhookStatus] = Query(None, alias="status"),
    date_from: Optional[str] = Query(None),
    date_to: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows, total = await WebhookService(db).list_logs(
        source=source.value if source else None,
        event_type=event_type,
        status=status_filter,
        date_from=parse_date_param(date_from, "date_from"),
        date_to=parse_date_param(date_to, "date_to", end_of_day=True),
        page=page,
        limit=limit,
    )
    logs = [WebhookLogResponse.model_validate(row).model_dump(mode="json") for row in rows]
    return ok(paginated("logs", logs, page, limit, total))
