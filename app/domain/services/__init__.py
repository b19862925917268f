"""
Domain Services
"""
from app.domain.services.notification_service import NotificationService
from app.domain.services.ticket_service import TicketService
from app.domain.services.transaction_service import TransactionService
from app.domain.services.webhook_service import WebhookService
from app.domain.services.dashboard_service import DashboardService

__all__ = [
    "NotificationService",
    "TicketService",
    "TransactionService",
    "WebhookService",
    "DashboardService",
]
