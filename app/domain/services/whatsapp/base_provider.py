"""
ממשק בסיסי לספק WhatsApp.

שכבת ההתראות תלויה רק בממשק: Cloud API (pywa) בפרודקשן,
ספק מדומה כשאין פרטי גישה מוגדרים.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class InboundMessage:
    """הודעה נכנסת מלקוח (value.messages[])"""
    from_phone: str
    text: str = ""
    message_id: Optional[str] = None
    message_type: Optional[str] = None
    timestamp: Optional[str] = None


@dataclass
class DeliveryStatus:
    """עדכון סטטוס להודעה שיצאה מאיתנו (value.statuses[])"""
    message_id: str
    status: str
    timestamp: Optional[str] = None
    error_title: Optional[str] = None


@dataclass
class WebhookEvents:
    messages: list[InboundMessage] = field(default_factory=list)
    statuses: list[DeliveryStatus] = field(default_factory=list)
    skipped: int = 0


def _dicts(value: Any, events: WebhookEvents) -> list[dict[str, Any]]:
    """רק פריטים שהם אובייקטים; כל השאר נספרים ב-skipped"""
    if value is None:
        return []
    if not isinstance(value, list):
        events.skipped += 1
        return []
    items = [item for item in value if isinstance(item, dict)]
    events.skipped += len(value) - len(items)
    return items


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


class BaseWhatsAppProvider(ABC):
    """
    ממשק אחיד לשליחת הודעות WhatsApp.

    כל מימוש אחראי על:
    - שליחה בפועל (SDK / HTTP)
    - המרת פורמט (HTML -> WhatsApp markdown)
    - retry + circuit breaker
    - נרמול טלפון לפורמט הנדרש ע"י הספק
    """

    # ספק מדומה - השליחה נרשמת אך לא יוצאת
    simulated: bool = False

    @abstractmethod
    async def send_text(
        self,
        to: str,
        text: str,
        buttons: Optional[list[str]] = None,
    ) -> Optional[str]:
        """
        שליחת הודעת טקסט.

        הטקסט נשלח כמו שהוא. אם הקלט מכיל HTML, הקורא אחראי
        לקרוא ל-format_text() לפני השליחה.

        Args:
            to: מספר טלפון.
            text: טקסט ההודעה.
            buttons: עד 3 כפתורי תשובה מהירה (אופציונלי).

        Returns:
            מזהה ההודעה אצל הספק (wamid), או None.

        Raises:
            WhatsAppError: בכשלון שליחה.
        """

    @abstractmethod
    def format_text(self, html_text: str) -> str:
        """המרת טקסט HTML לפורמט הנתמך ע"י הספק."""

    @abstractmethod
    def normalize_phone(self, phone: str) -> str:
        """נרמול מספר טלפון לפורמט הנדרש ע"י הספק."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """שם הספק לשימוש בלוגים ודיאגנוסטיקה."""

    def parse_webhook(self, payload: dict[str, Any]) -> WebhookEvents:
        """
        פירוק אירוע Cloud API: entry[] -> changes[] -> value.

        פריטים שאינם אובייקט, או בלי השדות שמזהים אותם (from / id + status),
        לא מפילים את העיבוד - הם מדולגים ונספרים.
        """
        events = WebhookEvents()
        for entry in _dicts(payload.get("entry"), events):
            for change in _dicts(entry.get("changes"), events):
                value = change.get("value")
                if not isinstance(value, dict):
                    events.skipped += 1
                    continue
                for msg in _dicts(value.get("messages"), events):
                    from_phone = _text(msg.get("from"))
                    if not from_phone:
                        events.skipped += 1
                        continue
                    body = msg.get("text")
                    events.messages.append(InboundMessage(
                        from_phone=from_phone,
                        text=_text(body.get("body")) if isinstance(body, dict) else "",
                        message_id=_text(msg.get("id")) or None,
                        message_type=_text(msg.get("type")) or None,
                        timestamp=_text(msg.get("timestamp")) or None,
                    ))
                for status in _dicts(value.get("statuses"), events):
                    message_id = _text(status.get("id"))
                    if not message_id or not _text(status.get("status")):
                        events.skipped += 1
                        continue
                    errors = _dicts(status.get("errors"), events)
                    events.statuses.append(DeliveryStatus(
                        message_id=message_id,
                        status=status["status"],
                        timestamp=str(status.get("timestamp") or "") or None,
                        error_title=(_text(errors[0].get("title")) or None) if errors else None,
                    ))
        return events
