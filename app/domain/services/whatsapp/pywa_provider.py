"""
PyWa Provider - מימוש BaseWhatsAppProvider מעל Cloud API (Meta).

משתמש בספריית pywa לשליחת הודעות דרך WhatsApp Cloud API,
עם retry ו-circuit breaker.
"""
from __future__ import annotations

import asyncio
from typing import Optional

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import WhatsAppError
from app.core.logging import get_logger, mask_phone
from app.core.validation import PhoneNumberValidator, convert_html_to_whatsapp
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)

# מספר כפתורי reply מקסימלי ב-Cloud API
_MAX_REPLY_BUTTONS = 3


class PyWaProvider(BaseWhatsAppProvider):
    """ספק WhatsApp מעל Cloud API (Meta) באמצעות ספריית pywa."""

    def __init__(self, circuit_breaker: CircuitBreaker) -> None:
        self._circuit_breaker = circuit_breaker
        self._max_retries = settings.WHATSAPP_MAX_RETRIES

        # אתחול עצלן - נטען רק כשנדרש
        self._client = None

    def _get_client(self):
        """אתחול עצלן של pywa client."""
        if self._client is None:
            from pywa_async import WhatsApp as PyWaClient

            self._client = PyWaClient(
                phone_id=settings.WHATSAPP_CLOUD_API_PHONE_ID,
                token=settings.WHATSAPP_CLOUD_API_TOKEN,
            )
        return self._client

    @property
    def provider_name(self) -> str:
        return "pywa"

    def normalize_phone(self, phone: str) -> str:
        """Cloud API רוצה 972501234567 ולא +972501234567"""
        if PhoneNumberValidator.validate(phone):
            return PhoneNumberValidator.normalize(phone).lstrip("+")
        return phone

    def format_text(self, html_text: str) -> str:
        return convert_html_to_whatsapp(html_text)

    async def _execute_with_retry(self, operation: str, phone_masked: str, func):
        """הרצה עם retry ו-exponential backoff. זורק WhatsAppError אם כל הניסיונות נכשלו."""
        last_error: Exception | None = None

        for attempt in range(self._max_retries):
            try:
                return await func()
            except Exception as exc:
                last_error = exc
                if attempt < self._max_retries - 1:
                    backoff = 2 ** attempt
                    logger.warning(
                        f"שגיאה ב-{operation}, מנסה שוב",
                        extra_data={
                            "phone": phone_masked,
                            "error": str(exc),
                            "attempt": attempt + 1,
                            "max_retries": self._max_retries,
                            "backoff_seconds": backoff,
                        },
                    )
                    await asyncio.sleep(backoff)

        raise WhatsAppError(
            message=f"Cloud API {operation} נכשל אחרי {self._max_retries} ניסיונות",
            details={
                "phone": phone_masked,
                "error": str(last_error),
                "attempts": self._max_retries,
            },
        )

    @staticmethod
    def _build_buttons(labels: list[str] | None):
        """כפתורי reply של pywa - Cloud API מגביל ל-3, מעבר לזה נשלח בלי כפתורים"""
        if not labels or len(labels) > _MAX_REPLY_BUTTONS:
            return None

        from pywa import types as pywa_types

        # title עד 20 תווים, callback_data עד 256
        return [
            pywa_types.Button(title=label[:20], callback_data=label[:256])
            for label in labels
        ]

    async def send_text(
        self,
        to: str,
        text: str,
        buttons: Optional[list[str]] = None,
    ) -> Optional[str]:
        to = self.normalize_phone(to)
        phone_masked = mask_phone(to)
        pywa_buttons = self._build_buttons(buttons)
        client = self._get_client()

        async def _send_single() -> Optional[str]:
            sent = await client.send_message(to=to, text=text, buttons=pywa_buttons)
            return getattr(sent, "id", None)

        async def _send_with_retry() -> Optional[str]:
            return await self._execute_with_retry("send_text", phone_masked, _send_single)

        message_id = await self._circuit_breaker.execute(_send_with_retry)
        logger.info(
            "הודעת WhatsApp נשלחה",
            extra_data={"phone": phone_masked, "message_id": message_id},
        )
        return message_id
