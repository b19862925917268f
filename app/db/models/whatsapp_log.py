"""
WhatsApp Log Model - הודעות יוצאות ונכנסות + עדכוני סטטוס מ-Meta
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Text
from sqlalchemy.types import JSON

from app.db.database import Base, utcnow


class WhatsAppStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DELIVERED = "delivered"
    READ = "read"
    RECEIVED = "received"  # הודעה נכנסת מלקוח


class WhatsAppLog(Base):
    __tablename__ = "whatsapp_logs"

    id = Column(Integer, primary_key=True, index=True)
    ticket_id = Column(Integer, nullable=True, index=True)
    transaction_id = Column(String(100), nullable=True, index=True)
    phone_number = Column(String(30), nullable=False)
    message_type = Column(String(50), nullable=False)
    message_content = Column(Text, nullable=True)
    status = Column(SQLEnum(WhatsAppStatus), default=WhatsAppStatus.PENDING, nullable=False, index=True)
    # wamid - עדכוני סטטוס מה-webhook מאותרים לפיו
    whatsapp_message_id = Column(String(200), nullable=True, index=True)
    sent_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=utcnow, index=True)
