"""
Transaction Model - עסקאות תשלום שסטטוס שלהן מסונכרן מ-API חיצוני
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, Index
from sqlalchemy.types import JSON

from app.db.database import Base, utcnow


class TransactionStatus(str, enum.Enum):
    INITIATED = "initiated"
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


# כניסה ראשונה לאחד מהסטטוסים האלה קובעת completed_at
TERMINAL_STATUSES = frozenset({
    TransactionStatus.SUCCESS,
    TransactionStatus.FAILED,
    TransactionStatus.REFUNDED,
    TransactionStatus.CANCELLED,
})

# תור הסנכרון של המתזמן
NON_TERMINAL_STATUSES = frozenset(set(TransactionStatus) - TERMINAL_STATUSES)


class Transaction(Base):
    """Payment transaction"""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(String(100), unique=True, nullable=False, index=True)

    payer_email = Column(String(255), nullable=False, index=True)
    merchant_email = Column(String(255), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)

    status = Column(
        SQLEnum(TransactionStatus),
        default=TransactionStatus.INITIATED,
        nullable=False,
        index=True,
    )
    payment_method = Column(String(50), nullable=True)
    gateway_response = Column(JSON, default=dict)
    metadata_ = Column("metadata", JSON, default=dict)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_transactions_status_updated_at", "status", "updated_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
