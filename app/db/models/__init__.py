"""
Database Models
"""
from app.db.models.ticket import Ticket, TicketStatus, TicketPriority
from app.db.models.transaction import (
    Transaction,
    TransactionStatus,
    TERMINAL_STATUSES,
    NON_TERMINAL_STATUSES,
)
from app.db.models.status_update import StatusUpdate, EntityType
from app.db.models.email_log import EmailLog, EmailStatus
from app.db.models.whatsapp_log import WhatsAppLog, WhatsAppStatus
from app.db.models.webhook_log import WebhookLog, WebhookSource, WebhookStatus

__all__ = [
    "Ticket",
    "TicketStatus",
    "TicketPriority",
    "Transaction",
    "TransactionStatus",
    "TERMINAL_STATUSES",
    "NON_TERMINAL_STATUSES",
    "StatusUpdate",
    "EntityType",
    "EmailLog",
    "EmailStatus",
    "WhatsAppLog",
    "WhatsAppStatus",
    "WebhookLog",
    "WebhookSource",
    "WebhookStatus",
]
