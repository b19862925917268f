"""
Notification Service - שליחת התראות ללקוחות ולסוחרים ורישום כל ניסיון.

כל ניסיון שליחה נרשם ב-email_logs / whatsapp_logs. כשלון שליחה לא
זורק חריגה הלאה: הוא נרשם כ-failed ומוחזר כתוצאה, כדי שהפעולה העסקית
(שכבר נשמרה) לא תיכשל בגלל ספק חיצוני.
"""
import enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AppException
from app.core.logging import get_logger, mask_email, mask_phone
from app.db.database import utcnow
from app.db.models.email_log import EmailLog, EmailStatus
from app.db.models.status_update import StatusUpdate
from app.db.models.ticket import Ticket, TicketStatus
from app.db.models.transaction import Transaction
from app.db.models.whatsapp_log import WhatsAppLog, WhatsAppStatus
from app.domain.services import email_templates
from app.domain.services.email_service import EmailService, get_email_service
from app.domain.services.email_templates import EmailTemplate
from app.domain.services.whatsapp import messages
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider
from app.domain.services.whatsapp.provider_factory import get_whatsapp_provider

logger = get_logger(__name__)


class NotificationOutcome(str, enum.Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


class NotificationService:
    """Dispatches customer/merchant notifications over email and WhatsApp"""

    def __init__(
        self,
        db: AsyncSession,
        email_service: EmailService | None = None,
        whatsapp_provider: BaseWhatsAppProvider | None = None,
    ):
        self.db = db
        self.email_service = email_service or get_email_service()
        self.whatsapp = whatsapp_provider or get_whatsapp_provider()

    async def _save_log(self, row: EmailLog | WhatsAppLog) -> None:
        try:
            self.db.add(row)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "כשלון בשמירת לוג התראה",
                extra_data={"table": row.__tablename__, "error": str(e)},
                exc_info=True,
            )

    async def send_email(
        self,
        to: str,
        template: EmailTemplate,
        email_type: str,
        *,
        ticket_id: int | None = None,
        transaction_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> NotificationOutcome:
        """שליחת מייל + רישום ב-email_logs. לא זורק חריגות מהספק."""
        if not to:
            return NotificationOutcome.SKIPPED

        log = EmailLog(
            ticket_id=ticket_id,
            transaction_id=transaction_id,
            recipient_email=to,
            email_type=email_type,
            subject=template.subject,
            body=template.html,
            metadata_=dict(metadata or {}),
        )

        try:
            message_id = await self.email_service.send(to, template.subject, template.html)
        except AppException as e:
            log.status = EmailStatus.FAILED
            log.error_message = e.message
            outcome = NotificationOutcome.FAILED
            logger.warning(
                "שליחת מייל נכשלה",
                extra_data={"to": mask_email(to), "email_type": email_type, "error": e.message},
            )
        except Exception as e:
            log.status = EmailStatus.FAILED
            log.error_message = str(e)
            outcome = NotificationOutcome.FAILED
            logger.error(
                "שגיאה לא צפויה בשליחת מייל",
                extra_data={"to": mask_email(to), "email_type": email_type, "error": str(e)},
                exc_info=True,
            )
        else:
            log.status = EmailStatus.SENT
            log.sent_at = utcnow()
            if message_id:
                log.metadata_ = {**log.metadata_, "message_id": message_id}
            if not self.email_service.is_configured:
                log.metadata_ = {**log.metadata_, "simulated": True}
            outcome = NotificationOutcome.DELIVERED

        await self._save_log(log)
        return outcome

    async def send_whatsapp(
        self,
        phone: str | None,
        html_text: str,
        message_type: str,
        *,
        ticket_id: int | None = None,
        transaction_id: str | None = None,
        buttons: list[str] | None = None,
    ) -> NotificationOutcome:
        """שליחת הודעת WhatsApp + רישום ב-whatsapp_logs. לא זורק חריגות מהספק."""
        if not phone:
            return NotificationOutcome.SKIPPED

        text = self.whatsapp.format_text(html_text)
        log = WhatsAppLog(
            ticket_id=ticket_id,
            transaction_id=transaction_id,
            phone_number=phone,
            message_type=message_type,
            message_content=text,
            metadata_={"provider": self.whatsapp.provider_name},
        )

        try:
            message_id = await self.whatsapp.send_text(phone, text, buttons=buttons)
        except AppException as e:
            log.status = WhatsAppStatus.FAILED
            log.error_message = e.message
            outcome = NotificationOutcome.FAILED
            logger.warning(
                "שליחת WhatsApp נכשלה",
                extra_data={"phone": mask_phone(phone), "message_type": message_type, "error": e.message},
            )
        except Exception as e:
            log.status = WhatsAppStatus.FAILED
            log.error_message = str(e)
            outcome = NotificationOutcome.FAILED
            logger.error(
                "שגיאה לא צפויה בשליחת WhatsApp",
                extra_data={"phone": mask_phone(phone), "message_type": message_type, "error": str(e)},
                exc_info=True,
            )
        else:
            log.status = WhatsAppStatus.SENT
            log.sent_at = utcnow()
            log.whatsapp_message_id = message_id
            if self.whatsapp.simulated:
                log.metadata_ = {**log.metadata_, "simulated": True}
            outcome = NotificationOutcome.DELIVERED

        await self._save_log(log)
        return outcome

    # ------------------------------------------------------------------
    # התראות לפי אירוע
    # ------------------------------------------------------------------

    async def notify_ticket_created(self, ticket: Ticket) -> dict[str, str]:
        """אישור קבלת פנייה במייל (תמיד) + קישור מעקב ב-WhatsApp אם יש טלפון"""
        template = email_templates.ticket_acknowledgment(ticket.ticket_number, ticket.customer_email)
        email = await self.send_email(
            ticket.customer_email,
            template,
            "ticket_acknowledgment",
            ticket_id=ticket.id,
            metadata={"ticket_number": ticket.ticket_number},
        )
        whatsapp = await self.send_whatsapp(
            ticket.phone,
            messages.tracking_link(
                ticket.ticket_number,
                email_templates.tracking_url(ticket.ticket_number),
            ),
            "tracking_link",
            ticket_id=ticket.id,
        )
        return {"email": email.value, "whatsapp": whatsapp.value}

    async def notify_ticket_status_change(
        self,
        ticket: Ticket,
        resolution: str | None = None,
    ) -> dict[str, str]:
        """מייל סגירה כשהפנייה נפתרה עם פירוט פתרון, עדכון WhatsApp כשיש טלפון"""
        email = NotificationOutcome.SKIPPED
        if ticket.status == TicketStatus.RESOLVED and resolution:
            email = await self.send_email(
                ticket.customer_email,
                email_templates.ticket_closure(ticket.ticket_number, ticket.customer_email, resolution),
                "ticket_closure",
                ticket_id=ticket.id,
                metadata={"ticket_number": ticket.ticket_number},
            )
        whatsapp = await self.send_whatsapp(
            ticket.phone,
            messages.ticket_status_update(ticket.ticket_number, ticket.status.value, resolution),
            "status_update",
            ticket_id=ticket.id,
        )
        return {"email": email.value, "whatsapp": whatsapp.value}

    async def notify_transaction_update(self, transaction: Transaction) -> dict[str, str]:
        """עדכון סטטוס עסקה למשלם - מייל, ו-WhatsApp אם יש טלפון ב-metadata"""
        amount = float(transaction.amount) if transaction.amount is not None else 0.0
        status = transaction.status.value
        email = await self.send_email(
            transaction.payer_email,
            email_templates.transaction_status_update(
                transaction.transaction_id,
                status,
                amount,
                transaction.currency,
                transaction.updated_at,
            ),
            "transaction_status_update",
            transaction_id=transaction.transaction_id,
            metadata={"status": status},
        )
        whatsapp = await self.send_whatsapp(
            (transaction.metadata_ or {}).get("phone"),
            messages.transaction_update(transaction.transaction_id, status, amount, transaction.currency),
            "transaction_update",
            transaction_id=transaction.transaction_id,
        )
        return {"email": email.value, "whatsapp": whatsapp.value}

    async def record_outcomes(self, audit: StatusUpdate | None, outcomes: dict[str, str]) -> None:
        """שמירת תוצאת ההתראות על רשומת הביקורת של המעבר"""
        if audit is None:
            return
        try:
            audit.notifications = outcomes
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "כשלון בשמירת תוצאות התראה",
                extra_data={"status_update_id": audit.id, "error": str(e)},
                exc_info=True,
            )
