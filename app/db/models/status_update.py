"""
Status Update Model - לוג ביקורת למעברי סטטוס

רישום בלתי-הפיך של כל מעבר סטטוס של פנייה או עסקה, כולל מעבר
היצירה (old_status=None). לאחר שליחת ההתראות נשמרת גם תוצאת כל ערוץ.
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Text, Index
from sqlalchemy.types import JSON

from app.db.database import Base, utcnow


class EntityType(str, enum.Enum):
    TICKET = "ticket"
    TRANSACTION = "transaction"


class StatusUpdate(Base):
    """רישום מעבר סטטוס"""

    __tablename__ = "status_updates"

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(SQLEnum(EntityType), nullable=False)
    entity_id = Column(Integer, nullable=False)
    old_status = Column(String(50), nullable=True)
    new_status = Column(String(50), nullable=False)
    updated_by = Column(String(255), default="system", nullable=False)
    update_reason = Column(Text, nullable=True)
    # {"email": "delivered", "whatsapp": "skipped"}
    notifications = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_status_updates_entity", "entity_type", "entity_id"),
    )
