"""
Email Log Model - רשומה לכל ניסיון שליחת מייל
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Text
from sqlalchemy.types import JSON

from app.db.database import Base, utcnow


class EmailStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    BOUNCED = "bounced"


class EmailLog(Base):
    __tablename__ = "email_logs"

    id = Column(Integer, primary_key=True, index=True)
    ticket_id = Column(Integer, nullable=True, index=True)
    transaction_id = Column(String(100), nullable=True, index=True)
    recipient_email = Column(String(255), nullable=False)
    email_type = Column(String(50), nullable=False)
    subject = Column(String(500), nullable=True)
    body = Column(Text, nullable=True)
    status = Column(SQLEnum(EmailStatus), default=EmailStatus.PENDING, nullable=False, index=True)
    sent_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    # provider message id, simulated וכו'
    metadata_ = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=utcnow, index=True)
