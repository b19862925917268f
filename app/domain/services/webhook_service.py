"""
Webhook Service - עיבוד קריאות webhook נכנסות.

כל קריאה נרשמת קודם ב-webhook_logs (pending, commit נפרד) ורק אז
מעובדת; בסיום הרשומה מסומנת processed / ignored / failed.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import AppException, ErrorCode, ValidationException
from app.core.logging import get_logger, mask_email, mask_phone
from app.core.validation import email_validator
from app.db.database import utcnow
from app.db.models.webhook_log import WebhookLog, WebhookSource, WebhookStatus
from app.db.models.whatsapp_log import WhatsAppLog, WhatsAppStatus
from app.db.queries import apply_date_range, paginate
from app.domain.services.notification_service import NotificationService
from app.domain.services.ticket_service import TicketService
from app.domain.services.transaction_service import TransactionService
from app.domain.services.whatsapp import messages
from app.domain.services.whatsapp.base_provider import DeliveryStatus, InboundMessage

logger = get_logger(__name__)

# מילות מפתח בהודעה נכנסת שמקבלות הסבר על מעקב פנייה
_TRACKING_KEYWORDS = ("track", "status")

# סטטוסים שמגיעים מ-Meta ב-statuses[]
_DELIVERY_STATUSES = {
    "sent": WhatsAppStatus.SENT,
    "delivered": WhatsAppStatus.DELIVERED,
    "read": WhatsAppStatus.READ,
    "failed": WhatsAppStatus.FAILED,
}


@dataclass
class WebhookOutcome:
    status: WebhookStatus = WebhookStatus.PROCESSED
    message: str = "Webhook processed"
    data: Any = None
    error: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


def is_support_recipient(to: str | None) -> bool:
    """האם אחת מכתובות התמיכה מופיעה בשדה to (ללא תלות ברישיות)"""
    if not to:
        return False
    to_lower = str(to).lower()
    return any(address in to_lower for address in settings.support_email_list)


class WebhookService:
    """Service for inbound webhook processing"""

    def __init__(
        self,
        db: AsyncSession,
        notifications: NotificationService | None = None,
        ticket_service: TicketService | None = None,
        transaction_service: TransactionService | None = None,
    ):
        self.db = db
        self.notifications = notifications or NotificationService(db)
        self.tickets = ticket_service or TicketService(db, self.notifications)
        self.transactions = transaction_service or TransactionService(db, self.notifications)

    # ------------------------------------------------------------------
    # Log lifecycle
    # ------------------------------------------------------------------

    async def log_received(
        self,
        source: WebhookSource,
        event_type: str,
        payload: Any,
    ) -> WebhookLog:
        log = WebhookLog(
            source=source.value,
            event_type=event_type,
            payload=payload,
            status=WebhookStatus.PENDING,
        )
        self.db.add(log)
        await self.db.commit()
        logger.info(
            "webhook התקבל",
            extra_data={"webhook_log_id": log.id, "source": source.value, "event_type": event_type},
        )
        return log

    async def finish(
        self,
        log_id: int,
        status: WebhookStatus,
        error: Optional[str] = None,
    ) -> None:
        """עדכון סטטוס רשומת ה-webhook (נטענת מחדש - ה-session אולי עבר rollback)"""
        log = await self.db.get(WebhookLog, log_id, populate_existing=True)
        if log is None:
            return
        log.status = status
        log.error_message = error
        if status == WebhookStatus.PROCESSED:
            log.processed_at = utcnow()
        await self.db.commit()

    async def process(
        self,
        log: WebhookLog,
        handler: Callable[[], Awaitable[WebhookOutcome]],
    ) -> WebhookOutcome:
        """הרצת handler וסימון הרשומה לפי התוצאה. חריגה מסומנת failed ונזרקת הלאה"""
        log_id = log.id
        try:
            outcome = await handler()
        except Exception as e:
            await self.db.rollback()
            error = e.message if isinstance(e, AppException) else str(e)
            await self.finish(log_id, WebhookStatus.FAILED, error)
            logger.warning(
                "עיבוד webhook נכשל",
                extra_data={"webhook_log_id": log_id, "error": error},
            )
            raise
        await self.finish(log_id, outcome.status, outcome.error)
        return outcome

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_email(self, payload: dict[str, Any]) -> WebhookOutcome:
        sender = payload.get("from")
        subject = payload.get("subject")
        if not isinstance(sender, str) or not isinstance(subject, str) or not sender.strip() or not subject.strip():
            raise ValidationException("Invalid email data - missing from or subject")
        try:
            sender = email_validator(sender)
        except ValueError:
            raise ValidationException("Invalid email data - invalid from address", field="from")

        if not is_support_recipient(payload.get("to")):
            logger.info(
                "מייל נכנס לא לכתובת תמיכה - לא מעובד",
                extra_data={"from": mask_email(sender)},
            )
            return WebhookOutcome(
                status=WebhookStatus.IGNORED,
                message="Email received but not processed",
                error="Not a support email",
            )

        ticket = await self.tickets.process_incoming_email({**payload, "from": sender, "subject": subject})
        return WebhookOutcome(
            message="Email processed as ticket",
            data={"ticketId": ticket.id, "ticketNumber": ticket.ticket_number},
        )

    async def handle_transaction(self, payload: dict[str, Any]) -> WebhookOutcome:
        transaction_id = payload.get("transaction_id")
        if (
            not isinstance(transaction_id, (str, int))
            or isinstance(transaction_id, bool)
            or not str(transaction_id).strip()
            or not isinstance(payload.get("status"), str)
            or not payload["status"]
        ):
            raise ValidationException("Invalid transaction data - missing transaction_id or status")

        result = await self.transactions.refresh_and_notify(str(transaction_id))
        if result is None:
            raise AppException(
                "Failed to update transaction status",
                error_code=ErrorCode.TRANSACTION_SYNC_FAILED,
                status_code=500,
                details={"transaction_id": str(transaction_id)},
            )
        return WebhookOutcome(message="Transaction status updated", data=result.transaction)

    async def handle_crm(self, payload: dict[str, Any]) -> WebhookOutcome:
        event_type = payload.get("event_type")
        if not isinstance(event_type, str) or not event_type:
            event_type = "unknown"
        if event_type == "ticket_created":
            logger.info("CRM: פנייה נוצרה", extra_data={"crm_ticket_id": payload.get("ticket_id")})
        elif event_type == "ticket_updated":
            logger.info("CRM: פנייה עודכנה", extra_data={"crm_ticket_id": payload.get("ticket_id")})
        elif event_type == "customer_created":
            logger.info("CRM: לקוח נוצר", extra_data={"crm_customer_id": payload.get("customer_id")})
        else:
            logger.info("CRM: סוג אירוע לא מטופל", extra_data={"event_type": event_type})
        return WebhookOutcome(message="CRM webhook processed")

    async def handle_whatsapp(self, payload: dict[str, Any]) -> WebhookOutcome:
        """הודעות נכנסות ועדכוני סטטוס משלוח; הפירוק עצמו אצל ספק ה-WhatsApp"""
        events = self.notifications.whatsapp.parse_webhook(payload)
        if events.skipped:
            logger.warning(
                "WhatsApp webhook: פריטים לא תקינים דולגו",
                extra_data={"skipped": events.skipped},
            )

        for msg in events.messages:
            await self._handle_incoming_message(msg)
        status_updates = 0
        for status in events.statuses:
            if await self._handle_status_callback(status):
                status_updates += 1
        return WebhookOutcome(extra={"messages": len(events.messages), "statuses": status_updates})

    async def _handle_incoming_message(self, msg: InboundMessage) -> None:
        self.db.add(WhatsAppLog(
            phone_number=msg.from_phone,
            message_type="incoming",
            message_content=msg.text,
            status=WhatsAppStatus.RECEIVED,
            whatsapp_message_id=msg.message_id,
            metadata_={"type": msg.message_type, "timestamp": msg.timestamp},
        ))
        await self.db.commit()

        logger.info(
            "הודעת WhatsApp נכנסת",
            extra_data={"from": mask_phone(msg.from_phone), "type": msg.message_type},
        )

        lowered = msg.text.lower()
        if any(keyword in lowered for keyword in _TRACKING_KEYWORDS):
            await self.notifications.send_whatsapp(msg.from_phone, messages.tracking_help(), "tracking_help")

    async def _handle_status_callback(self, status: DeliveryStatus) -> bool:
        new_status = _DELIVERY_STATUSES.get(status.status)
        if new_status is None:
            return False

        log = await self.db.scalar(
            select(WhatsAppLog)
            .where(WhatsAppLog.whatsapp_message_id == status.message_id)
            .order_by(WhatsAppLog.id.desc())
            .limit(1)
        )
        if log is None:
            logger.debug("עדכון סטטוס להודעה לא מוכרת", extra_data={"message_id": status.message_id})
            return False

        log.status = new_status
        if status.timestamp and status.timestamp.isdigit():
            log.sent_at = datetime.fromtimestamp(int(status.timestamp), tz=timezone.utc).replace(tzinfo=None)
        else:
            log.sent_at = utcnow()
        if new_status == WhatsAppStatus.FAILED:
            log.error_message = status.error_title or "Delivery failed"
        await self.db.commit()
        return True

    # ------------------------------------------------------------------
    # Logs listing
    # ------------------------------------------------------------------

    async def list_logs(
        self,
        *,
        source: Optional[str] = None,
        event_type: Optional[str] = None,
        status: WebhookStatus | str | None = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[WebhookLog], int]:
        stmt = select(WebhookLog)
        if source:
            stmt = stmt.where(WebhookLog.source == source)
        if event_type:
            stmt = stmt.where(WebhookLog.event_type == event_type)
        if status:
            try:
                stmt = stmt.where(WebhookLog.status == WebhookStatus(status))
            except ValueError:
                raise ValidationException(f"Invalid status: {status}", field="status")
        stmt = apply_date_range(stmt, WebhookLog.created_at, date_from, date_to)
        stmt = stmt.order_by(WebhookLog.created_at.desc(), WebhookLog.id.desc())
        return await paginate(self.db, stmt, page, limit)
