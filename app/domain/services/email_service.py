"""
Email Service - שליחת מיילים דרך Resend API.

כל שליחה עוברת דרך circuit breaker, עם retry על שגיאות זמניות.
כשאין RESEND_API_KEY השירות במצב סימולציה: לא נשלח דבר, והקורא
רושם את הניסיון כמוצלח עם סימון simulated.
"""
import asyncio

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import EmailDeliveryError
from app.core.logging import get_logger, mask_email
from app.core.validation import html_to_text

logger = get_logger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"
_MAX_ATTEMPTS = 3
_RETRY_BASE_DELAY = 0.5
_TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class EmailService:
    """שולח מיילים דרך Resend"""

    def __init__(
        self,
        api_key: str | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ) -> None:
        self._api_key = settings.RESEND_API_KEY if api_key is None else api_key
        self._circuit_breaker = circuit_breaker or CircuitBreaker.for_service("email")

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    @property
    def from_address(self) -> str:
        if settings.EMAIL_FROM_NAME:
            return f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>"
        return settings.EMAIL_FROM

    async def send(self, to: str, subject: str, html: str) -> str | None:
        """שליחת מייל. מחזיר מזהה הודעה של Resend (None בסימולציה).

        Raises:
            EmailDeliveryError: הספק דחה את ההודעה או שכל הניסיונות נכשלו
            CircuitBreakerOpenError: הספק מסומן כלא זמין
        """
        if not self.is_configured:
            logger.info(
                "שירות מייל לא מוגדר - סימולציית שליחה",
                extra_data={"to": mask_email(to), "subject": subject},
            )
            return None

        payload: dict[str, object] = {
            "from": self.from_address,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        text = html_to_text(html)
        if text:
            payload["text"] = text

        return await self._circuit_breaker.execute(self._post_with_retry, to, payload)

    async def _post_with_retry(self, to: str, payload: dict[str, object]) -> str | None:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        last_error: str = ""

        async with httpx.AsyncClient(timeout=settings.EMAIL_TIMEOUT_SECONDS) as client:
            for attempt in range(_MAX_ATTEMPTS):
                try:
                    response = await client.post(RESEND_SEND_URL, headers=headers, json=payload)
                except httpx.TransportError as exc:
                    last_error = f"Connection error: {exc.__class__.__name__}"
                else:
                    if 200 <= response.status_code < 300:
                        message_id = response.json().get("id")
                        logger.info(
                            "מייל נשלח",
                            extra_data={"to": mask_email(to), "message_id": message_id},
                        )
                        return message_id
                    if response.status_code not in _TRANSIENT_STATUS_CODES:
                        raise EmailDeliveryError.from_response("send", response)
                    last_error = f"status {response.status_code}"

                if attempt < _MAX_ATTEMPTS - 1:
                    backoff = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "שגיאה זמנית בשליחת מייל, מנסה שוב",
                        extra_data={
                            "to": mask_email(to),
                            "error": last_error,
                            "attempt": attempt + 1,
                            "backoff_seconds": backoff,
                        },
                    )
                    await asyncio.sleep(backoff)

        raise EmailDeliveryError(
            f"send failed after {_MAX_ATTEMPTS} attempts",
            details={"error": last_error, "attempts": _MAX_ATTEMPTS},
        )


_email_service: EmailService | None = None


def get_email_service() -> EmailService:
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service
