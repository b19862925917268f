"""
Dashboard API Routes - מדדים, התראות, הפעלת משימות ועדכונים חיים
"""
import asyncio
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.routes.schemas import ok
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import get_db
from app.domain.services.dashboard_service import DEFAULT_TIME_RANGE, DashboardService
from app.domain.services.event_service import EVENTS_CHANNEL, get_event_history
from app.domain.services.scheduler_service import get_job_statuses, run_job

logger = get_logger(__name__)

router = APIRouter()

_SSE_HEARTBEAT_INTERVAL = 15.0


@router.get("/overview", summary="סקירה כללית")
async def overview(db: AsyncSession = Depends(get_db)) -> dict:
    return ok(await DashboardService(db).get_overview())


@router.get("/stats", summary="מגמות והתפלגויות לפי טווח זמן")
async def stats(
    time_range: str = Query(DEFAULT_TIME_RANGE, alias="range", description="24h | 7d | 30d | 90d"),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return ok(await DashboardService(db).get_stats(time_range))


@router.get("/recent-activity", summary="פיד פעילות אחרונה")
async def recent_activity(
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return ok(await DashboardService(db).get_recent_activity(limit))


@router.get("/performance", summary="מדדי ביצועים")
async def performance(db: AsyncSession = Depends(get_db)) -> dict:
    return ok(await DashboardService(db).get_performance())


@router.get("/alerts", summary="התראות מערכת")
async def alerts(db: AsyncSession = Depends(get_db)) -> dict:
    return ok(await DashboardService(db).get_alerts())


# ==================== Scheduler ====================


@router.get("/cron/status", summary="סטטוס משימות מתוזמנות")
async def cron_status() -> dict:
    return ok(await get_job_statuses())


@router.post("/cron/{job_name}", summary="הפעלה ידנית של משימה")
async def trigger_cron_job(job_name: str, db: AsyncSession = Depends(get_db)) -> dict:
    """מריץ את המשימה בתוך הבקשה ומחזיר את תוצאתה"""
    triggered_at = datetime.now(timezone.utc)
    result = await run_job(db, job_name, trigger="manual")
    return ok(
        {
            "job": job_name,
            "triggered_at": triggered_at.isoformat(),
            "result": result,
        },
        f"Cron job '{job_name}' triggered successfully",
    )


# ==================== Live events ====================


@router.get("/events", summary="היסטוריית עדכונים חיים")
async def events_history(limit: int = Query(50, ge=1, le=200)) -> dict:
    return ok(await get_event_history(limit))


async def _sse_event_generator(request: Request) -> AsyncGenerator[str, None]:
    """מחולל אירועי SSE - מאזין לערוץ העדכונים ב-Redis ומשדר ללקוח.

    שולח heartbeat כל _SSE_HEARTBEAT_INTERVAL שניות לשמירת החיבור.
    מפסיק כשהלקוח מתנתק.
    """
    redis = await get_redis()
    pubsub = redis.pubsub()

    try:
        await pubsub.subscribe(EVENTS_CHANNEL)
        logger.info("SSE לקוח התחבר", extra_data={"channel": EVENTS_CHANNEL})

        while True:
            if await request.is_disconnected():
                logger.info("SSE לקוח התנתק")
                break

            message = await pubsub.get_message(
                ignore_subscribe_messages=True,
                timeout=_SSE_HEARTBEAT_INTERVAL,
            )

            if message and message["type"] == "message":
                data = message["data"]
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                yield f"data: {data}\n\n"
            else:
                yield ": heartbeat\n\n"

    except asyncio.CancelledError:
        logger.info("SSE חיבור בוטל")
    except Exception as e:
        logger.error(
            "SSE שגיאה בשידור",
            extra_data={"error": str(e)},
            exc_info=True,
        )
    finally:
        try:
            await pubsub.unsubscribe(EVENTS_CHANNEL)
            await pubsub.aclose()
        except Exception as e:
            logger.debug("SSE שחרור pubsub נכשל", extra_data={"error": str(e)})


@router.get(
    "/events/stream",
    summary="שידור עדכונים חיים (SSE)",
    description=(
        "חיבור SSE לקבלת אירועי ticket_created / ticket_updated / "
        "transaction_created / transaction_updated בזמן אמת.\n\n"
        "```js\n"
        "const es = new EventSource('/api/dashboard/events/stream');\n"
        "es.onmessage = (e) => console.log(JSON.parse(e.data));\n"
        "```"
    ),
    responses={200: {"content": {"text/event-stream": {}}}},
)
async def events_stream(request: Request) -> StreamingResponse:
    return StreamingResponse(
        _sse_event_generator(request),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
