"""
Ticket Service - מחזור החיים של פניות תמיכה.

כל שינוי סטטוס נשמר יחד עם רשומת ביקורת (status_updates) באותו commit.
ההתראות נשלחות אחרי ה-commit; כשלון בהן לא מבטל את השינוי.
"""
import random
import time
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AppException,
    ErrorCode,
    TicketNotFoundError,
    ValidationException,
)
from app.core.logging import get_logger, mask_email
from app.db.database import utcnow
from app.db.models.status_update import EntityType, StatusUpdate
from app.db.models.ticket import Ticket, TicketPriority, TicketStatus
from app.db.models.transaction import Transaction
from app.db.queries import apply_date_range, contains_ci, paginate
from app.domain.services.event_service import EventType, publish_event, ticket_event_data
from app.domain.services.notification_service import NotificationService

logger = get_logger(__name__)

TICKET_NUMBER_PREFIX = "TK"
_MAX_NUMBER_ATTEMPTS = 5


def generate_ticket_number() -> str:
    """TK + זמן במילישניות + מספר אקראי 0-999"""
    return f"{TICKET_NUMBER_PREFIX}{int(time.time() * 1000)}{random.randint(0, 999)}"


def _coerce_enum(enum_cls, value, field: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationException(f"Invalid {field}: {value}. Allowed: {allowed}", field=field)


class TicketService:
    """Service for managing support tickets"""

    def __init__(
        self,
        db: AsyncSession,
        notifications: NotificationService | None = None,
    ):
        self.db = db
        self.notifications = notifications or NotificationService(db)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_ticket(
        self,
        customer_email: str,
        subject: str,
        description: Optional[str] = None,
        priority: TicketPriority | str = TicketPriority.MEDIUM,
        transaction_id: Optional[str] = None,
        merchant_email: Optional[str] = None,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Ticket:
        """
        יצירת פנייה חדשה.

        מספר הפנייה ייחודי ברמת ה-DB; בהתנגשות נוצר מספר חדש (עד 5 ניסיונות).
        הפנייה ורשומת הביקורת הראשונית נשמרות יחד.
        """
        if not customer_email or not subject:
            raise ValidationException("Customer email and subject are required")
        priority = _coerce_enum(TicketPriority, priority or TicketPriority.MEDIUM, "priority")

        ticket: Ticket | None = None
        for attempt in range(_MAX_NUMBER_ATTEMPTS):
            ticket = Ticket(
                ticket_number=generate_ticket_number(),
                customer_email=customer_email,
                merchant_email=merchant_email,
                subject=subject,
                description=description,
                status=TicketStatus.OPEN,
                priority=priority,
                transaction_id=transaction_id,
                tags=list(tags or []),
                metadata_=dict(metadata or {}),
            )
            self.db.add(ticket)
            try:
                await self.db.flush()
            except IntegrityError:
                await self.db.rollback()
                logger.warning(
                    "התנגשות במספר פנייה, מנסה שוב",
                    extra_data={"attempt": attempt + 1},
                )
                ticket = None
                continue
            break

        if ticket is None:
            raise AppException(
                "Could not allocate a unique ticket number",
                error_code=ErrorCode.TICKET_NUMBER_EXHAUSTED,
                status_code=500,
            )

        audit = StatusUpdate(
            entity_type=EntityType.TICKET,
            entity_id=ticket.id,
            old_status=None,
            new_status=TicketStatus.OPEN.value,
            updated_by="system",
            update_reason="Ticket created",
        )
        self.db.add(audit)
        await self.db.commit()
        await self.db.refresh(ticket)

        logger.info(
            "פנייה נוצרה",
            extra_data={
                "ticket_id": ticket.id,
                "ticket_number": ticket.ticket_number,
                "customer": mask_email(customer_email),
                "priority": ticket.priority.value,
            },
        )

        event_data = ticket_event_data(ticket)
        outcomes = await self.notifications.notify_ticket_created(ticket)
        await self.notifications.record_outcomes(audit, outcomes)
        await publish_event(EventType.TICKET_CREATED, event_data)
        return ticket

    async def process_incoming_email(self, payload: dict[str, Any]) -> Ticket:
        """פנייה ממייל נכנס לכתובת תמיכה"""
        return await self.create_ticket(
            customer_email=payload.get("from"),
            subject=payload.get("subject"),
            description=next(
                (payload[key] for key in ("text", "body", "html") if isinstance(payload.get(key), str) and payload[key]),
                None,
            ),
            priority=TicketPriority.MEDIUM,
            metadata={
                "source": "email",
                "original_email_id": payload.get("message_id"),
                "email_thread_id": payload.get("thread_id"),
                "received_at": utcnow().isoformat(),
                "email_to": payload.get("to"),
            },
        )

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def list_tickets(
        self,
        *,
        status: TicketStatus | str | None = None,
        priority: TicketPriority | str | None = None,
        customer_email: Optional[str] = None,
        merchant_email: Optional[str] = None,
        assigned_to: Optional[str] = None,
        transaction_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Ticket], int]:
        stmt = select(Ticket)
        if status is not None:
            stmt = stmt.where(Ticket.status == _coerce_enum(TicketStatus, status, "status"))
        if priority is not None:
            stmt = stmt.where(Ticket.priority == _coerce_enum(TicketPriority, priority, "priority"))
        if customer_email:
            stmt = stmt.where(contains_ci(Ticket.customer_email, customer_email))
        if merchant_email:
            stmt = stmt.where(contains_ci(Ticket.merchant_email, merchant_email))
        if assigned_to:
            stmt = stmt.where(contains_ci(Ticket.assigned_to, assigned_to))
        if transaction_id:
            stmt = stmt.where(Ticket.transaction_id == transaction_id)
        stmt = apply_date_range(stmt, Ticket.created_at, date_from, date_to)
        if search:
            stmt = stmt.where(
                or_(
                    contains_ci(Ticket.subject, search),
                    contains_ci(Ticket.description, search),
                    contains_ci(Ticket.ticket_number, search),
                )
            )

        stmt = stmt.order_by(Ticket.created_at.desc(), Ticket.id.desc())
        return await paginate(self.db, stmt, page, limit)

    async def _find(self, id_or_number: int | str, lock: bool = False) -> Ticket:
        key = str(id_or_number).strip()
        if key.upper().startswith(TICKET_NUMBER_PREFIX):
            stmt = select(Ticket).where(Ticket.ticket_number == key.upper())
        elif key.isdigit():
            stmt = select(Ticket).where(Ticket.id == int(key))
        else:
            raise TicketNotFoundError(id_or_number)

        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        ticket = (await self.db.execute(stmt)).scalar_one_or_none()
        if ticket is None:
            raise TicketNotFoundError(id_or_number)
        return ticket

    async def get_ticket(self, id_or_number: int | str) -> dict[str, Any]:
        """פנייה + היסטוריית סטטוסים (מהחדש לישן) + העסקה המקושרת"""
        ticket = await self._find(id_or_number)

        history = await self.db.execute(
            select(StatusUpdate)
            .where(
                StatusUpdate.entity_type == EntityType.TICKET,
                StatusUpdate.entity_id == ticket.id,
            )
            .order_by(StatusUpdate.created_at.desc(), StatusUpdate.id.desc())
        )

        transaction = None
        if ticket.transaction_id:
            transaction = await self.db.scalar(
                select(Transaction).where(Transaction.transaction_id == ticket.transaction_id)
            )

        return {
            "ticket": ticket,
            "status_history": list(history.scalars().all()),
            "transaction": transaction,
        }

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update_ticket(
        self,
        id_or_number: int | str,
        *,
        status: TicketStatus | str | None = None,
        priority: TicketPriority | str | None = None,
        assigned_to: Optional[str] = None,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
        resolution: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> Ticket:
        """
        עדכון חלקי - רק שדות שסופקו משתנים, updated_at מתעדכן תמיד.

        בשינוי סטטוס: רשומת ביקורת, מייל סגירה (resolved + resolution),
        עדכון WhatsApp אם יש טלפון, ואירוע ticket_updated.
        """
        new_status = _coerce_enum(TicketStatus, status, "status")
        new_priority = _coerce_enum(TicketPriority, priority, "priority")

        ticket = await self._find(id_or_number, lock=True)
        old_status = ticket.status
        now = utcnow()

        if new_status is not None:
            ticket.status = new_status
            if new_status == TicketStatus.RESOLVED and old_status != TicketStatus.RESOLVED:
                ticket.resolved_at = now
        if new_priority is not None:
            ticket.priority = new_priority
        if assigned_to is not None:
            ticket.assigned_to = assigned_to
        if tags is not None:
            ticket.tags = list(tags)
        if metadata is not None:
            ticket.metadata_ = dict(metadata)
        ticket.updated_at = now

        status_changed = new_status is not None and new_status != old_status
        audit = None
        if status_changed:
            audit = StatusUpdate(
                entity_type=EntityType.TICKET,
                entity_id=ticket.id,
                old_status=old_status.value,
                new_status=new_status.value,
                updated_by=updated_by or "system",
                update_reason=resolution or "Status updated",
            )
            self.db.add(audit)

        await self.db.commit()
        await self.db.refresh(ticket)

        logger.info(
            "פנייה עודכנה",
            extra_data={
                "ticket_id": ticket.id,
                "old_status": old_status.value,
                "new_status": ticket.status.value,
                "status_changed": status_changed,
            },
        )

        event_data = ticket_event_data(
            ticket,
            old_status=old_status.value,
            new_status=ticket.status.value,
        )
        if status_changed:
            outcomes = await self.notifications.notify_ticket_status_change(ticket, resolution)
            await self.notifications.record_outcomes(audit, outcomes)
        await publish_event(EventType.TICKET_UPDATED, event_data)
        return ticket

    async def close_ticket(self, id_or_number: int | str, updated_by: str = "system") -> Ticket:
        """סגירה רכה - הרשומה נשארת, הסטטוס הופך ל-closed"""
        ticket = await self._find(id_or_number, lock=True)
        old_status = ticket.status
        ticket.status = TicketStatus.CLOSED
        ticket.updated_at = utcnow()

        if old_status != TicketStatus.CLOSED:
            self.db.add(StatusUpdate(
                entity_type=EntityType.TICKET,
                entity_id=ticket.id,
                old_status=old_status.value,
                new_status=TicketStatus.CLOSED.value,
                updated_by=updated_by,
                update_reason="Ticket closed",
            ))

        await self.db.commit()
        await self.db.refresh(ticket)

        await publish_event(
            EventType.TICKET_UPDATED,
            ticket_event_data(ticket, old_status=old_status.value, new_status=TicketStatus.CLOSED.value),
        )
        return ticket

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_stats(self) -> dict[str, Any]:
        status_rows = await self.db.execute(
            select(Ticket.status, func.count(Ticket.id)).group_by(Ticket.status)
        )
        by_status = {s.value: 0 for s in TicketStatus}
        for status, count in status_rows.all():
            by_status[status.value] = count

        priority_rows = await self.db.execute(
            select(Ticket.priority, func.count(Ticket.id)).group_by(Ticket.priority)
        )
        by_priority = {p.value: 0 for p in TicketPriority}
        for priority, count in priority_rows.all():
            by_priority[priority.value] = count

        total = sum(by_status.values())
        done = by_status[TicketStatus.RESOLVED.value] + by_status[TicketStatus.CLOSED.value]

        # ממוצע בפייתון - אריתמטיקת תאריכים שונה בין PostgreSQL ל-SQLite
        resolved_rows = await self.db.execute(
            select(Ticket.created_at, Ticket.resolved_at).where(Ticket.resolved_at.is_not(None))
        )
        durations = [
            (resolved_at - created_at).total_seconds() / 3600
            for created_at, resolved_at in resolved_rows.all()
            if created_at and resolved_at
        ]
        avg_resolution_hours = round(sum(durations) / len(durations), 2) if durations else 0

        return {
            "total": total,
            "by_status": by_status,
            "by_priority": by_priority,
            "avg_resolution_hours": avg_resolution_hours,
            "resolution_rate": resolution_rate(done, total),
        }


def resolution_rate(done: int, total: int) -> float:
    """אחוז פניות שנפתרו/נסגרו, מעוגל לשתי ספרות. 0 כשאין פניות"""
    if not total:
        return 0
    return round(done / total * 100, 2)
