"""
פונקציות עזר משותפות ל-webhooks נכנסים
"""
import json
from dataclasses import dataclass
from typing import Any

from fastapi import Request

from app.core.exceptions import ValidationException


@dataclass
class InboundPayload:
    raw: bytes        # לאימות חתימה - בדיוק הבתים שנחתמו
    data: Any         # מה שנשמר ב-webhook_logs.payload
    is_json: bool

    def as_object(self) -> dict[str, Any]:
        """ה-handlers מצפים לאובייקט JSON"""
        if not self.is_json or not isinstance(self.data, dict):
            raise ValidationException("Invalid JSON payload")
        return self.data


async def read_payload(request: Request) -> InboundPayload:
    """
    גוף הבקשה הגולמי + ה-JSON המפוענח.

    JSON לא תקין לא נזרק כאן - הוא נשמר כ-{"raw": ...} כדי שגם בקשה
    פגומה תירשם ב-webhook_logs לפני הוולידציה.
    """
    raw = await request.body()
    if not raw:
        return InboundPayload(raw=raw, data={}, is_json=True)
    try:
        return InboundPayload(raw=raw, data=json.loads(raw), is_json=True)
    except ValueError:
        return InboundPayload(
            raw=raw,
            data={"raw": raw.decode("utf-8", errors="replace")[:2000]},
            is_json=False,
        )
