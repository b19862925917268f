"""
שירות בדיקת בריאות - מצב הגדרות ובדיקת תלויות (DB, Redis).

מספק שתי רמות בדיקה:
- liveness: האם התהליך חי + אילו שירותים חיצוניים מוגדרים
- readiness: בדיקה אקטיבית של DB ו-Redis
"""
from typing import Any

from sqlalchemy import text

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal
from app.domain.services.whatsapp.provider_factory import is_whatsapp_configured

logger = get_logger(__name__)

# סטטוסים אפשריים לתשובת readiness
_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# הודעות שגיאה מסוננות - ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"

_CONFIGURED = "configured"
_NOT_CONFIGURED = "not_configured"


def _flag(value: bool) -> str:
    return _CONFIGURED if value else _NOT_CONFIGURED


def get_liveness() -> dict[str, Any]:
    """liveness - ללא בדיקות רשת, רק מצב הגדרות"""
    return {
        "status": "OK",
        "service": settings.APP_NAME,
        "services": {
            "database": _flag(bool(settings.DATABASE_URL)),
            "email": _flag(bool(settings.RESEND_API_KEY)),
            "whatsapp": _flag(is_whatsapp_configured()),
            "transaction_api": _flag(bool(settings.TRANSACTION_API_URL and settings.TRANSACTION_API_KEY)),
        },
    }


async def _check_db() -> str:
    """בדיקת חיבור למסד הנתונים באמצעות שאילתה קלה."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות DB נכשלה", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    """בדיקת חיבור ל-Redis באמצעות PING."""
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות Redis נכשלה", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def check_readiness() -> dict[str, Any]:
    """
    בדיקת מוכנות - DB ו-Redis.

    מחזיר dict עם סטטוס כללי ופירוט לכל תלות:
    - status: "healthy" אם הכל תקין, "degraded" אם יש בעיה באחת התלויות
    - db / redis: "ok" או "error: ..."
    - circuit_breakers: מצב המעגלים של השירותים החיצוניים (מידע בלבד)
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning(
            "בדיקת מוכנות - המערכת במצב degraded",
            extra_data=checks,
        )

    return {"status": overall_status, **checks, "circuit_breakers": CircuitBreaker.snapshot()}
