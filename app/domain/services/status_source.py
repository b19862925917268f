"""
External Status Source - שליפת סטטוס עסקה מ-API התשלומים החיצוני.

GET {TRANSACTION_API_URL}/transactions/{id}/status עם Bearer key ו-timeout
קשיח. כשל מכל סוג מחזיר None (כשל רך) - הסנכרון ממשיך לעסקה הבאה.
כשה-API לא מוגדר מוחזרים נתונים מדומים, לפיתוח מקומי.
"""
import random
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import AppException, StatusSourceError
from app.core.logging import get_logger
from app.db.models.transaction import TransactionStatus

logger = get_logger(__name__)

_MOCK_STATUSES = (
    TransactionStatus.INITIATED,
    TransactionStatus.PENDING,
    TransactionStatus.PROCESSING,
    TransactionStatus.SUCCESS,
    TransactionStatus.FAILED,
)


@dataclass(frozen=True)
class ExternalStatus:
    """תמונת מצב של עסקה כפי שהוחזרה מה-API"""

    transaction_id: str
    status: TransactionStatus
    amount: Decimal | None = None
    currency: str = "USD"
    payment_method: str | None = None
    gateway_response: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def payer_email(self) -> str | None:
        return self.metadata.get("payer_email")

    @property
    def merchant_email(self) -> str | None:
        return self.metadata.get("merchant_email")


def parse_status_payload(transaction_id: str, data: dict[str, Any]) -> ExternalStatus:
    """
    המרת תשובת JSON ל-ExternalStatus.

    Raises:
        StatusSourceError: סטטוס חסר/לא מוכר או סכום לא תקין
    """
    try:
        status = TransactionStatus(str(data.get("status", "")).lower())
    except ValueError:
        raise StatusSourceError(
            "unknown status in response",
            details={"transaction_id": transaction_id, "status": data.get("status")},
        )

    amount = data.get("amount")
    if amount is not None:
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            raise StatusSourceError(
                "invalid amount in response",
                details={"transaction_id": transaction_id, "amount": str(amount)},
            )

    return ExternalStatus(
        transaction_id=data.get("transaction_id") or transaction_id,
        status=status,
        amount=amount,
        currency=(data.get("currency") or "USD").upper(),
        payment_method=data.get("payment_method"),
        gateway_response=data.get("gateway_response") or {},
        metadata=data.get("metadata") or {},
    )


class TransactionStatusSource:
    """Client for the third-party transaction status API"""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ):
        self.base_url = (settings.TRANSACTION_API_URL if base_url is None else base_url).rstrip("/")
        self.api_key = settings.TRANSACTION_API_KEY if api_key is None else api_key
        self.timeout_seconds = timeout_seconds or settings.TRANSACTION_API_TIMEOUT_SECONDS
        self._circuit_breaker = circuit_breaker or CircuitBreaker.for_service("transaction_api")

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def fetch_status(self, transaction_id: str) -> ExternalStatus | None:
        """סטטוס עדכני של עסקה, או None בכל כשל"""
        if not self.is_configured:
            return self._mock_status(transaction_id)

        try:
            return await self._circuit_breaker.execute(self._fetch, transaction_id)
        except AppException as e:
            logger.warning(
                "שליפת סטטוס עסקה נכשלה",
                extra_data={"transaction_id": transaction_id, "error": e.message},
            )
            return None
        except Exception as e:
            logger.error(
                "שגיאה לא צפויה בשליפת סטטוס עסקה",
                extra_data={"transaction_id": transaction_id, "error": str(e)},
                exc_info=True,
            )
            return None

    async def _fetch(self, transaction_id: str) -> ExternalStatus:
        url = f"{self.base_url}/transactions/{transaction_id}/status"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.get(url, headers=headers)
        except httpx.TimeoutException:
            raise StatusSourceError(
                f"request timed out after {self.timeout_seconds}s",
                details={"transaction_id": transaction_id},
            )
        except httpx.HTTPError as e:
            raise StatusSourceError(
                f"connection error: {e.__class__.__name__}",
                details={"transaction_id": transaction_id},
            )

        if response.status_code != 200:
            raise StatusSourceError.from_response("fetch-status", response)

        try:
            data = response.json()
        except ValueError:
            raise StatusSourceError("response is not valid JSON", details={"transaction_id": transaction_id})

        return parse_status_payload(transaction_id, data)

    @staticmethod
    def _mock_status(transaction_id: str) -> ExternalStatus:
        status = random.choice(_MOCK_STATUSES)
        logger.debug(
            "API סטטוס עסקאות לא מוגדר - מחזיר נתונים מדומים",
            extra_data={"transaction_id": transaction_id, "status": status.value},
        )
        succeeded = status == TransactionStatus.SUCCESS
        return ExternalStatus(
            transaction_id=transaction_id,
            status=status,
            amount=Decimal(random.randint(10, 1009)),
            currency="USD",
            payment_method="credit_card",
            gateway_response={
                "gateway_id": f"gw_{random.randint(100000, 999999)}",
                "response_code": "00" if succeeded else "99",
                "response_message": "Approved" if succeeded else "Processing",
            },
            metadata={
                "payer_email": "customer@example.com",
                "merchant_email": "merchant@example.com",
            },
        )


_status_source: TransactionStatusSource | None = None


def get_status_source() -> TransactionStatusSource:
    global _status_source
    if _status_source is None:
        _status_source = TransactionStatusSource()
    return _status_source
