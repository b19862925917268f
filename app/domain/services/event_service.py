"""
Live Event Service - עדכונים חיים לדשבורד

כל שינוי בפנייה או בעסקה מתפרסם לערוץ Redis Pub/Sub אחד ונשמר
ברשימת היסטוריה מוגבלת. ה-SSE endpoint בדשבורד מאזין לערוץ.

סוגי אירועים:
- ticket_created / ticket_updated
- transaction_created / transaction_updated
"""
import enum
import json
from datetime import datetime, timezone
from typing import Any

from app.core.logging import get_logger
from app.core.redis_client import get_redis

logger = get_logger(__name__)

EVENTS_CHANNEL = "live_updates"
_HISTORY_KEY = "live_updates:history"
_MAX_HISTORY_SIZE = 200


class EventType(str, enum.Enum):
    TICKET_CREATED = "ticket_created"
    TICKET_UPDATED = "ticket_updated"
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_UPDATED = "transaction_updated"


async def publish_event(event_type: EventType, data: dict[str, Any]) -> None:
    """פרסום אירוע לערוץ + שמירה בהיסטוריה.

    כשלון ב-Redis נרשם ללוג ולא עוצר את הפעולה העסקית שכבר נשמרה.
    """
    try:
        payload = {
            "type": event_type.value,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        message = json.dumps(payload, ensure_ascii=False, default=str)

        redis = await get_redis()
        await redis.publish(EVENTS_CHANNEL, message)
        await redis.lpush(_HISTORY_KEY, message)
        await redis.ltrim(_HISTORY_KEY, 0, _MAX_HISTORY_SIZE - 1)

        logger.debug(
            "אירוע פורסם",
            extra_data={"event_type": event_type.value},
        )
    except Exception as e:
        logger.error(
            "כשלון בפרסום אירוע",
            extra_data={"event_type": event_type.value, "error": str(e)},
            exc_info=True,
        )


async def get_event_history(limit: int = 50) -> list[dict[str, Any]]:
    """אירועים אחרונים, מהחדש לישן"""
    try:
        redis = await get_redis()
        raw_items = await redis.lrange(_HISTORY_KEY, 0, limit - 1)
        return [json.loads(item) for item in raw_items]
    except Exception as e:
        logger.error(
            "כשלון בשליפת היסטוריית אירועים",
            extra_data={"error": str(e)},
            exc_info=True,
        )
        return []


def ticket_event_data(ticket, **extra: Any) -> dict[str, Any]:
    data = {
        "id": ticket.id,
        "ticket_number": ticket.ticket_number,
        "customer_email": ticket.customer_email,
        "subject": ticket.subject,
        "status": ticket.status.value,
        "priority": ticket.priority.value,
    }
    data.update(extra)
    return data


def transaction_event_data(transaction, **extra: Any) -> dict[str, Any]:
    data = {
        "id": transaction.id,
        "transaction_id": transaction.transaction_id,
        "merchant_email": transaction.merchant_email,
        "amount": float(transaction.amount) if transaction.amount is not None else None,
        "currency": transaction.currency,
        "status": transaction.status.value,
    }
    data.update(extra)
    return data
