"""
Webhook Log Model - כל קריאת webhook נכנסת נרשמת לפני העיבוד.

pending -> processed / failed / ignored. תקופת שמירה קצרה מהלוגים האחרים.
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Text, Index
from sqlalchemy.types import JSON

from app.db.database import Base, utcnow


class WebhookSource(str, enum.Enum):
    WHATSAPP = "whatsapp"
    EMAIL = "email"
    TRANSACTION = "transaction"
    CRM = "crm"


class WebhookStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    IGNORED = "ignored"


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True, index=True)
    source = Column(String(50), nullable=False, index=True)
    event_type = Column(String(100), nullable=True, index=True)
    payload = Column(JSON, nullable=True)
    status = Column(SQLEnum(WebhookStatus), default=WebhookStatus.PENDING, nullable=False, index=True)
    processed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_webhook_logs_source_created", "source", "created_at"),
    )
