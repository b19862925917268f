"""
Ticket Model - פניות תמיכה של לקוחות
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Text, Index
from sqlalchemy.types import JSON

from app.db.database import Base, utcnow


class TicketStatus(str, enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TicketPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Ticket(Base):
    """Customer complaint ticket"""

    __tablename__ = "tickets"

    id = Column(Integer, primary_key=True, index=True)
    # מספר פנייה קריא (TK<ms><rand>) - ייחודי ולא משתנה אחרי היצירה
    ticket_number = Column(String(50), unique=True, nullable=False, index=True)

    customer_email = Column(String(255), nullable=False, index=True)
    merchant_email = Column(String(255), nullable=True, index=True)
    subject = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)

    status = Column(SQLEnum(TicketStatus), default=TicketStatus.OPEN, nullable=False, index=True)
    priority = Column(SQLEnum(TicketPriority), default=TicketPriority.MEDIUM, nullable=False, index=True)

    # מזהה עסקה חיצוני (transactions.transaction_id), לא FK - הפנייה יכולה להגיע לפני העסקה
    transaction_id = Column(String(100), nullable=True, index=True)
    assigned_to = Column(String(255), nullable=True)
    tags = Column(JSON, default=list)
    # phone -> שליחת WhatsApp; source/original_email_id -> פנייה שנוצרה ממייל
    metadata_ = Column("metadata", JSON, default=dict)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_tickets_status_resolved_at", "status", "resolved_at"),
    )

    @property
    def phone(self) -> str | None:
        return (self.metadata_ or {}).get("phone")
