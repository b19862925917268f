"""
Custom Exception Hierarchy

היררכיית חריגות אחידה: כל חריגה נושאת קוד שגיאה וסטטוס HTTP,
וה-handlers ב-middleware ממפים אותה למעטפת התשובה {success: false, ...}.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    INVALID_SIGNATURE = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Ticket errors (2xxx)
    TICKET_NOT_FOUND = "ERR_2001"
    TICKET_NUMBER_EXHAUSTED = "ERR_2002"

    # Transaction errors (3xxx)
    TRANSACTION_NOT_FOUND = "ERR_3001"
    TRANSACTION_ALREADY_EXISTS = "ERR_3002"
    TRANSACTION_SYNC_FAILED = "ERR_3003"

    # Scheduler errors (4xxx)
    UNKNOWN_JOB = "ERR_4001"

    # External service errors (5xxx)
    EMAIL_ERROR = "ERR_5001"
    WHATSAPP_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    STATUS_SOURCE_ERROR = "ERR_5005"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """מעטפת כישלון לתשובת API"""
        body: dict[str, Any] = {
            "success": False,
            "message": self.message,
            "error": {"code": self.error_code.value},
        }
        if self.details:
            body["error"]["details"] = self.details
        return body


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class SignatureException(AppException):
    """Raised when a webhook signature is missing or does not match"""

    def __init__(self, source: str):
        super().__init__(
            message="Invalid signature",
            error_code=ErrorCode.INVALID_SIGNATURE,
            status_code=401,
            details={"source": source}
        )


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class TicketNotFoundError(NotFoundException):
    def __init__(self, identifier: Any):
        super().__init__("Ticket", identifier, ErrorCode.TICKET_NOT_FOUND)


class TransactionNotFoundError(NotFoundException):
    def __init__(self, identifier: Any):
        super().__init__("Transaction", identifier, ErrorCode.TRANSACTION_NOT_FOUND)


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ):
        """
        יצירת חריגה מתוך HTTP response בצורה עקבית.

        Args:
            operation: שם הפעולה (לדוגמה: send, fetch-status)
            response: אובייקט response (למשל httpx.Response)
            message: הודעת שגיאה מותאמת (אם לא סופק - נבנית אוטומטית)
            max_response_chars: אורך מקסימלי לשמירת response_text (מניעת לוגים גדולים)
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class EmailDeliveryError(ExternalServiceException):
    """Raised when the email provider rejects or fails a send"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="email",
            message=f"Email API error: {message}",
            error_code=ErrorCode.EMAIL_ERROR,
            details=details
        )


class WhatsAppError(ExternalServiceException):
    """Raised when WhatsApp API fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="whatsapp",
            message=f"WhatsApp API error: {message}",
            error_code=ErrorCode.WHATSAPP_ERROR,
            details=details
        )


class StatusSourceError(ExternalServiceException):
    """Raised when the external transaction status API fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="transaction_api",
            message=f"Transaction API error: {message}",
            error_code=ErrorCode.STATUS_SOURCE_ERROR,
            details=details
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
