"""
Transaction Service - עסקאות תשלום וסנכרון סטטוס מה-API החיצוני.

זרימה:
- sync_status: שליפת סטטוס, יצירה/עדכון + רשומת ביקורת, ללא התראות
- refresh_and_notify: sync_status + התראות + אירוע חי כשמשהו השתנה
- manual_status_update: עדכון ידני ע"י מנהל
- batch_sync: refresh_and_notify לרשימת מזהים, כשלונות נרשמים ומדולגים
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AppException,
    ErrorCode,
    TransactionNotFoundError,
    ValidationException,
)
from app.core.logging import get_logger, log_async_operation, mask_email
from app.core.validation import currency_validator
from app.db.database import utcnow
from app.db.models.status_update import EntityType, StatusUpdate
from app.db.models.ticket import Ticket
from app.db.models.transaction import (
    NON_TERMINAL_STATUSES,
    TERMINAL_STATUSES,
    Transaction,
    TransactionStatus,
)
from app.db.queries import apply_date_range, contains_ci, paginate
from app.domain.services.event_service import EventType, publish_event, transaction_event_data
from app.domain.services.notification_service import NotificationService
from app.domain.services.status_source import TransactionStatusSource, get_status_source

logger = get_logger(__name__)

DEFAULT_PAYER_EMAIL = "unknown@example.com"
DEFAULT_MERCHANT_EMAIL = "merchant@example.com"


@dataclass
class SyncResult:
    """תוצאת סנכרון אחת - created/changed קובעים אם נשלחות התראות"""

    transaction: Transaction
    created: bool = False
    changed: bool = False
    old_status: Optional[str] = None
    audit: Optional[StatusUpdate] = None

    @property
    def modified(self) -> bool:
        return self.created or self.changed


def parse_transaction_status(value, field: str = "status") -> TransactionStatus:
    if isinstance(value, TransactionStatus):
        return value
    if not value:
        raise ValidationException("Status is required", field=field)
    try:
        return TransactionStatus(str(value).lower())
    except ValueError:
        allowed = ", ".join(s.value for s in TransactionStatus)
        raise ValidationException(f"Invalid status: {value}. Allowed: {allowed}", field=field)


def _mark_completed(transaction: Transaction, now: datetime) -> None:
    """completed_at נקבע פעם אחת בלבד - בכניסה הראשונה לסטטוס סופי"""
    if transaction.status in TERMINAL_STATUSES and transaction.completed_at is None:
        transaction.completed_at = now


class TransactionService:
    """Service for payment transactions"""

    def __init__(
        self,
        db: AsyncSession,
        notifications: NotificationService | None = None,
        status_source: TransactionStatusSource | None = None,
    ):
        self.db = db
        self.notifications = notifications or NotificationService(db)
        self.status_source = status_source or get_status_source()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def _by_transaction_id(self, transaction_id: str, lock: bool = False) -> Transaction | None:
        stmt = select(Transaction).where(Transaction.transaction_id == transaction_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def _find(self, id_or_transaction_id: int | str, lock: bool = False) -> Transaction:
        """לפי מזהה חיצוני, ואם אין - לפי מזהה פנימי מספרי"""
        key = str(id_or_transaction_id).strip()
        transaction = await self._by_transaction_id(key, lock=lock)
        if transaction is None and key.isdigit():
            stmt = select(Transaction).where(Transaction.id == int(key))
            if lock:
                stmt = stmt.with_for_update().execution_options(populate_existing=True)
            transaction = (await self.db.execute(stmt)).scalar_one_or_none()
        if transaction is None:
            raise TransactionNotFoundError(id_or_transaction_id)
        return transaction

    # ------------------------------------------------------------------
    # List / Get / Create
    # ------------------------------------------------------------------

    async def list_transactions(
        self,
        *,
        status: TransactionStatus | str | None = None,
        payer_email: Optional[str] = None,
        merchant_email: Optional[str] = None,
        currency: Optional[str] = None,
        min_amount: Optional[Decimal] = None,
        max_amount: Optional[Decimal] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Transaction], int]:
        stmt = select(Transaction)
        if status is not None:
            stmt = stmt.where(Transaction.status == parse_transaction_status(status))
        if payer_email:
            stmt = stmt.where(contains_ci(Transaction.payer_email, payer_email))
        if merchant_email:
            stmt = stmt.where(contains_ci(Transaction.merchant_email, merchant_email))
        if currency:
            stmt = stmt.where(Transaction.currency == currency.upper())
        if min_amount is not None:
            stmt = stmt.where(Transaction.amount >= min_amount)
        if max_amount is not None:
            stmt = stmt.where(Transaction.amount <= max_amount)
        stmt = apply_date_range(stmt, Transaction.created_at, date_from, date_to)

        stmt = stmt.order_by(Transaction.created_at.desc(), Transaction.id.desc())
        return await paginate(self.db, stmt, page, limit)

    async def get_transaction(self, id_or_transaction_id: int | str) -> dict[str, Any]:
        """עסקה + היסטוריית סטטוסים (מהחדש לישן) + פנייה מקושרת"""
        transaction = await self._find(id_or_transaction_id)

        history = await self.db.execute(
            select(StatusUpdate)
            .where(
                StatusUpdate.entity_type == EntityType.TRANSACTION,
                StatusUpdate.entity_id == transaction.id,
            )
            .order_by(StatusUpdate.created_at.desc(), StatusUpdate.id.desc())
        )
        ticket = await self.db.scalar(
            select(Ticket)
            .where(Ticket.transaction_id == transaction.transaction_id)
            .order_by(Ticket.created_at.desc())
            .limit(1)
        )
        return {
            "transaction": transaction,
            "status_history": list(history.scalars().all()),
            "ticket": ticket,
        }

    async def create_transaction(
        self,
        transaction_id: str,
        payer_email: str,
        amount: Decimal | float | str | None,
        merchant_email: Optional[str] = None,
        currency: Optional[str] = None,
        status: TransactionStatus | str | None = None,
        payment_method: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Transaction:
        if not transaction_id or not payer_email or amount is None:
            raise ValidationException("Transaction ID, payer email, and amount are required")
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            raise ValidationException(f"Invalid amount: {amount}", field="amount")
        initial_status = parse_transaction_status(status) if status else TransactionStatus.INITIATED
        try:
            currency = currency_validator(currency) or "USD"
        except ValueError as e:
            raise ValidationException(str(e), field="currency")

        if await self._by_transaction_id(transaction_id) is not None:
            raise ValidationException(
                f"Transaction already exists: {transaction_id}",
                field="transaction_id",
                error_code=ErrorCode.TRANSACTION_ALREADY_EXISTS,
            )

        now = utcnow()
        transaction = Transaction(
            transaction_id=transaction_id,
            payer_email=payer_email,
            merchant_email=merchant_email or DEFAULT_MERCHANT_EMAIL,
            amount=amount,
            currency=currency,
            status=initial_status,
            payment_method=payment_method,
            gateway_response={},
            metadata_=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        _mark_completed(transaction, now)
        self.db.add(transaction)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise ValidationException(
                f"Transaction already exists: {transaction_id}",
                field="transaction_id",
                error_code=ErrorCode.TRANSACTION_ALREADY_EXISTS,
            )

        self.db.add(StatusUpdate(
            entity_type=EntityType.TRANSACTION,
            entity_id=transaction.id,
            old_status=None,
            new_status=initial_status.value,
            updated_by="system",
            update_reason="Transaction created",
        ))
        await self.db.commit()
        await self.db.refresh(transaction)

        logger.info(
            "עסקה נוצרה",
            extra_data={
                "transaction_id": transaction_id,
                "payer": mask_email(payer_email),
                "status": initial_status.value,
            },
        )
        await publish_event(EventType.TRANSACTION_CREATED, transaction_event_data(transaction))
        return transaction

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def _sync(self, transaction_id: str) -> SyncResult | None:
        external = await self.status_source.fetch_status(transaction_id)
        if external is None:
            return None

        now = utcnow()
        transaction = await self._by_transaction_id(transaction_id, lock=True)

        if transaction is None:
            transaction = Transaction(
                transaction_id=transaction_id,
                payer_email=external.payer_email or DEFAULT_PAYER_EMAIL,
                merchant_email=external.merchant_email or DEFAULT_MERCHANT_EMAIL,
                amount=external.amount if external.amount is not None else Decimal("0"),
                currency=external.currency,
                status=external.status,
                payment_method=external.payment_method,
                gateway_response=dict(external.gateway_response),
                metadata_=dict(external.metadata),
                created_at=now,
                updated_at=now,
            )
            _mark_completed(transaction, now)
            self.db.add(transaction)
            try:
                await self.db.flush()
            except IntegrityError:
                # סנכרון מקביל יצר את העסקה בינתיים - ממשיכים כעדכון
                await self.db.rollback()
                transaction = await self._by_transaction_id(transaction_id, lock=True)
                if transaction is None:
                    raise
            else:
                audit = StatusUpdate(
                    entity_type=EntityType.TRANSACTION,
                    entity_id=transaction.id,
                    old_status=None,
                    new_status=external.status.value,
                    updated_by="system",
                    update_reason="External API sync",
                )
                self.db.add(audit)
                await self.db.commit()
                await self.db.refresh(transaction)
                logger.info(
                    "עסקה נוצרה מסנכרון",
                    extra_data={"transaction_id": transaction_id, "status": external.status.value},
                )
                return SyncResult(transaction=transaction, created=True, audit=audit)

        if transaction.status == external.status:
            # commit משחרר את הנעילה בלי לפוג את האובייקט
            await self.db.commit()
            return SyncResult(transaction=transaction)

        old_status = transaction.status
        transaction.status = external.status
        transaction.gateway_response = dict(external.gateway_response)
        transaction.updated_at = now
        _mark_completed(transaction, now)

        audit = StatusUpdate(
            entity_type=EntityType.TRANSACTION,
            entity_id=transaction.id,
            old_status=old_status.value,
            new_status=external.status.value,
            updated_by="system",
            update_reason="External API update",
        )
        self.db.add(audit)
        await self.db.commit()
        await self.db.refresh(transaction)

        logger.info(
            "סטטוס עסקה סונכרן",
            extra_data={
                "transaction_id": transaction_id,
                "old_status": old_status.value,
                "new_status": external.status.value,
            },
        )
        return SyncResult(
            transaction=transaction,
            changed=True,
            old_status=old_status.value,
            audit=audit,
        )

    async def sync_status(self, transaction_id: str) -> Transaction | None:
        """סנכרון סטטוס מה-API. None כשהשליפה נכשלה"""
        result = await self._sync(transaction_id)
        return result.transaction if result else None

    async def refresh_and_notify(self, transaction_id: str) -> SyncResult | None:
        """סנכרון + התראות למשלם + אירוע חי, רק כשהעסקה נוצרה או השתנתה"""
        result = await self._sync(transaction_id)
        if result is None or not result.modified:
            return result

        transaction = result.transaction
        if result.created:
            event_type = EventType.TRANSACTION_CREATED
            event_data = transaction_event_data(transaction)
        else:
            event_type = EventType.TRANSACTION_UPDATED
            event_data = transaction_event_data(
                transaction,
                old_status=result.old_status,
                new_status=transaction.status.value,
            )

        outcomes = await self.notifications.notify_transaction_update(transaction)
        await self.notifications.record_outcomes(result.audit, outcomes)
        await publish_event(event_type, event_data)
        return result

    async def refresh(self, id_or_transaction_id: int | str) -> Transaction:
        """רענון עסקה קיימת מה-API (כפתור "רענן" בדשבורד)"""
        transaction = await self._find(id_or_transaction_id)
        result = await self.refresh_and_notify(transaction.transaction_id)
        if result is None:
            raise AppException(
                "Failed to refresh transaction status",
                error_code=ErrorCode.TRANSACTION_SYNC_FAILED,
                status_code=500,
                details={"transaction_id": transaction.transaction_id},
            )
        return result.transaction

    @log_async_operation("transaction_batch_sync")
    async def batch_sync(self, transaction_ids: list[str]) -> list[Transaction]:
        """סנכרון מרובה - מחזיר רק עסקאות שנוצרו או השתנו"""
        modified: list[Transaction] = []
        rolled_back = False
        for transaction_id in transaction_ids:
            try:
                result = await self.refresh_and_notify(transaction_id)
            except Exception as e:
                await self.db.rollback()
                rolled_back = True
                logger.error(
                    "סנכרון עסקה נכשל",
                    extra_data={"transaction_id": transaction_id, "error": str(e)},
                    exc_info=True,
                )
                continue
            if result is not None and result.modified:
                modified.append(result.transaction)

        # rollback מפיג אובייקטים שכבר נטענו
        if rolled_back:
            for transaction in modified:
                await self.db.refresh(transaction)
        return modified

    # ------------------------------------------------------------------
    # Manual update
    # ------------------------------------------------------------------

    async def manual_status_update(
        self,
        id_or_transaction_id: int | str,
        status: TransactionStatus | str | None,
        reason: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> Transaction:
        new_status = parse_transaction_status(status)
        transaction = await self._find(id_or_transaction_id, lock=True)

        now = utcnow()
        old_status = transaction.status
        transaction.status = new_status
        transaction.updated_at = now
        _mark_completed(transaction, now)

        audit = None
        if new_status != old_status:
            audit = StatusUpdate(
                entity_type=EntityType.TRANSACTION,
                entity_id=transaction.id,
                old_status=old_status.value,
                new_status=new_status.value,
                updated_by=updated_by or "admin",
                update_reason=reason or "Manual status update",
            )
            self.db.add(audit)

        await self.db.commit()
        await self.db.refresh(transaction)

        logger.info(
            "סטטוס עסקה עודכן ידנית",
            extra_data={
                "transaction_id": transaction.transaction_id,
                "old_status": old_status.value,
                "new_status": new_status.value,
                "updated_by": updated_by or "admin",
            },
        )

        event_data = transaction_event_data(
            transaction,
            old_status=old_status.value,
            new_status=new_status.value,
        )
        if audit is not None:
            outcomes = await self.notifications.notify_transaction_update(transaction)
            await self.notifications.record_outcomes(audit, outcomes)
        await publish_event(EventType.TRANSACTION_UPDATED, event_data)
        return transaction

    # ------------------------------------------------------------------
    # Stats / scheduler queue
    # ------------------------------------------------------------------

    async def get_stats(self) -> dict[str, Any]:
        rows = await self.db.execute(
            select(Transaction.status, func.count(Transaction.id)).group_by(Transaction.status)
        )
        by_status = {s.value: 0 for s in TransactionStatus}
        for status, count in rows.all():
            by_status[status.value] = count
        total = sum(by_status.values())
        successful = by_status[TransactionStatus.SUCCESS.value]

        amount_row = (await self.db.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0), func.avg(Transaction.amount))
            .where(Transaction.status == TransactionStatus.SUCCESS)
        )).one()
        total_amount, avg_amount = amount_row

        completed = await self.db.execute(
            select(Transaction.created_at, Transaction.completed_at)
            .where(Transaction.completed_at.is_not(None))
        )
        durations = [
            (completed_at - created_at).total_seconds() / 3600
            for created_at, completed_at in completed.all()
            if created_at and completed_at
        ]

        return {
            "total": total,
            "by_status": by_status,
            "total_amount": round(float(total_amount or 0), 2),
            "avg_amount": round(float(avg_amount), 2) if avg_amount is not None else 0,
            "success_rate": round(successful / total * 100, 2) if total else 0,
            "avg_completion_hours": round(sum(durations) / len(durations), 2) if durations else 0,
        }

    async def pending_ids(self) -> list[str]:
        """עסקאות לא-סופיות שלא עודכנו מעל 5 דקות, מהישנה לחדשה"""
        cutoff = utcnow() - timedelta(minutes=settings.PENDING_TRANSACTION_STALE_MINUTES)
        result = await self.db.execute(
            select(Transaction.transaction_id)
            .where(
                Transaction.status.in_(NON_TERMINAL_STATUSES),
                Transaction.updated_at < cutoff,
            )
            .order_by(Transaction.updated_at.asc())
            .limit(settings.PENDING_TRANSACTION_BATCH_LIMIT)
        )
        return list(result.scalars().all())
