"""
סכמות ו-helpers משותפים ל-API - מודלי בקשה/תגובה ומעטפת התשובה
"""
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

from app.core.exceptions import ValidationException
from app.core.validation import TextSanitizer, currency_validator, email_validator
from app.db.models.status_update import EntityType
from app.db.models.ticket import TicketPriority, TicketStatus
from app.db.models.transaction import TransactionStatus
from app.db.models.webhook_log import WebhookStatus
from app.db.queries import pagination_meta


# ==================== Envelope ====================


def ok(data: Any = None, message: Optional[str] = None) -> dict[str, Any]:
    """מעטפת הצלחה {success: true, message?, data}"""
    body: dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    body["data"] = data
    return body


def paginated(key: str, rows: list[Any], page: int, limit: int, total: int) -> dict[str, Any]:
    return {key: rows, "pagination": pagination_meta(page, limit, total)}


# ==================== Helpers ====================


def parse_date_param(value: Optional[str], param_name: str, end_of_day: bool = False) -> Optional[datetime]:
    """פרסור פרמטר תאריך מ-query string (YYYY-MM-DD או ISO מלא), זורק 400 על פורמט שגוי"""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationException(
            f"Invalid date format for {param_name}. Use YYYY-MM-DD or ISO 8601",
            field=param_name,
        )
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    if end_of_day and len(value) == 10:
        dt = dt.replace(hour=23, minute=59, second=59, microsecond=999999)
    return dt


# ==================== Tickets ====================


class TicketCreate(BaseModel):
    """Schema for creating a ticket. שדות חובה נבדקים בשירות"""
    customer_email: Optional[str] = None
    subject: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[TicketPriority] = None
    transaction_id: Optional[str] = None
    merchant_email: Optional[str] = None
    tags: Optional[list[str]] = None
    metadata: Optional[dict[str, Any]] = None

    @field_validator("customer_email", "merchant_email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return v
        return email_validator(v)

    @field_validator("subject")
    @classmethod
    def sanitize_subject(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return TextSanitizer.sanitize(v, max_length=500)

    @field_validator("description")
    @classmethod
    def sanitize_description(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return TextSanitizer.sanitize(v, max_length=10000)


class TicketUpdate(BaseModel):
    status: Optional[TicketStatus] = None
    priority: Optional[TicketPriority] = None
    assigned_to: Optional[str] = None
    tags: Optional[list[str]] = None
    metadata: Optional[dict[str, Any]] = None
    resolution: Optional[str] = None
    updated_by: Optional[str] = None


class TicketResponse(BaseModel):
    id: int
    ticket_number: str
    customer_email: str
    merchant_email: Optional[str] = None
    subject: str
    description: Optional[str] = None
    status: TicketStatus
    priority: TicketPriority
    transaction_id: Optional[str] = None
    assigned_to: Optional[str] = None
    tags: Optional[list[str]] = None
    metadata: Optional[dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("metadata_", "metadata"),
    )
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ==================== Transactions ====================


class TransactionCreate(BaseModel):
    transaction_id: Optional[str] = None
    payer_email: Optional[str] = None
    amount: Optional[float] = None
    merchant_email: Optional[str] = None
    currency: Optional[str] = None
    status: Optional[TransactionStatus] = None
    payment_method: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @field_validator("payer_email", "merchant_email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return v
        return email_validator(v)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError("Amount must not be negative")
        return v

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        return currency_validator(v)


class TransactionStatusUpdate(BaseModel):
    # status נשאר מחרוזת - ההודעה "Status is required" / "Invalid status" נבנית בשירות
    status: Optional[str] = None
    reason: Optional[str] = None
    updated_by: Optional[str] = None


class BatchSyncRequest(BaseModel):
    transaction_ids: Optional[list[str]] = None


class TransactionResponse(BaseModel):
    id: int
    transaction_id: str
    payer_email: str
    merchant_email: str
    amount: float
    currency: str
    status: TransactionStatus
    payment_method: Optional[str] = None
    gateway_response: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("metadata_", "metadata"),
    )
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ==================== Audit / logs ====================


class StatusUpdateResponse(BaseModel):
    id: int
    entity_type: EntityType
    entity_id: int
    old_status: Optional[str] = None
    new_status: str
    updated_by: Optional[str] = None
    update_reason: Optional[str] = None
    notifications: Optional[dict[str, str]] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class WebhookLogResponse(BaseModel):
    id: int
    source: str
    event_type: Optional[str] = None
    payload: Any = None
    status: WebhookStatus
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


def ticket_out(ticket) -> Optional[dict[str, Any]]:
    if ticket is None:
        return None
    return TicketResponse.model_validate(ticket).model_dump(mode="json")


def transaction_out(transaction) -> Optional[dict[str, Any]]:
    if transaction is None:
        return None
    return TransactionResponse.model_validate(transaction).model_dump(mode="json")


def history_out(rows) -> list[dict[str, Any]]:
    return [StatusUpdateResponse.model_validate(row).model_dump(mode="json") for row in rows]
