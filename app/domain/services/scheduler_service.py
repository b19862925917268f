"""
Scheduler Service - משימות מתוזמנות.

כל משימה היא פונקציה async שמקבלת JobContext ומחזירה סיכום (dict).
Celery beat מריץ אותן לפי JOBS (app.workers.celery_app), והדשבורד
יכול להריץ משימה ידנית לפי שם. המשימות אידמפוטנטיות ועמידות
להרצות חופפות.
"""
import json
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from celery.schedules import crontab
from sqlalchemy import case, delete as sa_delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ErrorCode, ValidationException
from app.core.logging import get_logger, mask_email
from app.core.redis_client import get_redis
from app.db.database import utcnow
from app.db.models.email_log import EmailLog
from app.db.models.status_update import EntityType, StatusUpdate
from app.db.models.ticket import Ticket, TicketStatus
from app.db.models.transaction import Transaction, TransactionStatus
from app.db.models.webhook_log import WebhookLog
from app.db.models.whatsapp_log import WhatsAppLog
from app.domain.services import email_templates
from app.domain.services.event_service import EventType, publish_event, ticket_event_data
from app.domain.services.notification_service import NotificationOutcome, NotificationService
from app.domain.services.status_source import TransactionStatusSource
from app.domain.services.transaction_service import TransactionService

logger = get_logger(__name__)

_LAST_RUN_KEY = "scheduler:last_run:{name}"


@dataclass
class JobContext:
    db: AsyncSession
    notifications: NotificationService
    status_source: TransactionStatusSource | None = None


@dataclass(frozen=True)
class JobDefinition:
    name: str
    description: str
    cron: str
    schedule: crontab
    run: Callable[[JobContext], Awaitable[dict[str, Any]]] = field(compare=False)


# ----------------------------------------------------------------------
# Jobs
# ----------------------------------------------------------------------


async def update_transactions(ctx: JobContext) -> dict[str, Any]:
    """סנכרון עסקאות תקועות מה-API החיצוני, בקבוצות של 10"""
    service = TransactionService(ctx.db, ctx.notifications, ctx.status_source)
    pending = await service.pending_ids()
    if not pending:
        logger.info("אין עסקאות ממתינות לסנכרון")
        return {"checked": 0, "updated": 0}

    chunk_size = settings.TRANSACTION_SYNC_CHUNK_SIZE
    updated = 0
    for start in range(0, len(pending), chunk_size):
        chunk = pending[start:start + chunk_size]
        updated += len(await service.batch_sync(chunk))

    logger.info(
        "סנכרון עסקאות הושלם",
        extra_data={"checked": len(pending), "updated": updated},
    )
    return {"checked": len(pending), "updated": updated}


async def send_merchant_updates(ctx: JobContext) -> dict[str, Any]:
    """מייל מרוכז לכל סוחר עם פניות/עסקאות שעודכנו בשעה האחרונה"""
    since = utcnow() - timedelta(hours=1)
    updates: dict[str, list[dict[str, Any]]] = defaultdict(list)

    tickets = await ctx.db.execute(
        select(Ticket.merchant_email, Ticket.ticket_number, Ticket.status, Ticket.updated_at)
        .where(Ticket.merchant_email.is_not(None), Ticket.updated_at > since)
    )
    for merchant, number, status, updated_at in tickets.all():
        updates[merchant].append({"type": "ticket", "id": number, "status": status.value, "updated_at": updated_at})

    transactions = await ctx.db.execute(
        select(Transaction.merchant_email, Transaction.transaction_id, Transaction.status, Transaction.updated_at)
        .where(Transaction.merchant_email.is_not(None), Transaction.updated_at > since)
    )
    for merchant, txn_id, status, updated_at in transactions.all():
        updates[merchant].append({"type": "transaction", "id": txn_id, "status": status.value, "updated_at": updated_at})

    sent = 0
    for merchant, items in updates.items():
        items.sort(key=lambda u: u["updated_at"], reverse=True)
        formatted = [
            {**item, "updated_at": item["updated_at"].strftime("%Y-%m-%d %H:%M UTC")}
            for item in items
        ]
        outcome = await ctx.notifications.send_email(
            merchant,
            email_templates.merchant_digest(merchant, formatted),
            "merchant_update",
            metadata={"updateCount": len(items)},
        )
        if outcome == NotificationOutcome.DELIVERED:
            sent += 1
        logger.info(
            "עדכון מרוכז לסוחר",
            extra_data={"merchant": mask_email(merchant), "updates": len(items), "outcome": outcome.value},
        )

    return {"merchants": len(updates), "emails_sent": sent}


async def auto_close_tickets(ctx: JobContext) -> dict[str, Any]:
    """סגירת פניות שנפתרו לפני יותר מ-24 שעות"""
    cutoff = utcnow() - timedelta(hours=settings.AUTO_CLOSE_AFTER_HOURS)
    result = await ctx.db.execute(
        select(Ticket)
        .where(Ticket.status == TicketStatus.RESOLVED, Ticket.resolved_at < cutoff)
        .with_for_update(skip_locked=True)
    )
    tickets = list(result.scalars().all())
    if not tickets:
        await ctx.db.commit()
        logger.info("אין פניות לסגירה אוטומטית")
        return {"closed": 0}

    now = utcnow()
    for ticket in tickets:
        ticket.status = TicketStatus.CLOSED
        ticket.updated_at = now
        ctx.db.add(StatusUpdate(
            entity_type=EntityType.TICKET,
            entity_id=ticket.id,
            old_status=TicketStatus.RESOLVED.value,
            new_status=TicketStatus.CLOSED.value,
            updated_by="system",
            update_reason="Auto-closed after 24 hours",
        ))
    await ctx.db.commit()

    for ticket in tickets:
        await publish_event(
            EventType.TICKET_UPDATED,
            ticket_event_data(
                ticket,
                old_status=TicketStatus.RESOLVED.value,
                new_status=TicketStatus.CLOSED.value,
            ),
        )

    logger.info(
        "פניות נסגרו אוטומטית",
        extra_data={"closed": len(tickets), "ticket_numbers": [t.ticket_number for t in tickets]},
    )
    return {"closed": len(tickets)}


async def cleanup(ctx: JobContext) -> dict[str, Any]:
    """מחיקת לוגים ישנים לפי תקופות השמירה"""
    now = utcnow()
    targets = (
        ("email_logs", EmailLog, settings.EMAIL_LOG_RETENTION_DAYS),
        ("whatsapp_logs", WhatsAppLog, settings.WHATSAPP_LOG_RETENTION_DAYS),
        ("webhook_logs", WebhookLog, settings.WEBHOOK_LOG_RETENTION_DAYS),
        ("status_updates", StatusUpdate, settings.STATUS_UPDATE_RETENTION_DAYS),
    )
    deleted: dict[str, int] = {}
    for table, model, days in targets:
        result = await ctx.db.execute(
            sa_delete(model).where(model.created_at < now - timedelta(days=days))
        )
        deleted[table] = result.rowcount or 0
    await ctx.db.commit()

    logger.info("ניקוי לוגים הושלם", extra_data={"deleted": deleted})
    return {"deleted": deleted}


async def build_daily_report(db: AsyncSession, day: datetime | None = None) -> dict[str, Any]:
    """נתוני היום הקודם (UTC) - פניות ועסקאות שנוצרו בו"""
    today = (day or utcnow()).replace(hour=0, minute=0, second=0, microsecond=0)
    start = today - timedelta(days=1)

    def _between(column):
        return (column >= start) & (column < today)

    def _count_where(condition):
        return func.count(case((condition, 1)))

    tickets = (await db.execute(
        select(
            func.count(Ticket.id),
            _count_where(Ticket.status == TicketStatus.RESOLVED),
            _count_where(Ticket.status == TicketStatus.CLOSED),
        ).where(_between(Ticket.created_at))
    )).one()
    resolved_yesterday = await db.scalar(
        select(func.count(Ticket.id)).where(_between(Ticket.resolved_at))
    )

    transactions = (await db.execute(
        select(
            func.count(Transaction.id),
            _count_where(Transaction.status == TransactionStatus.SUCCESS),
            _count_where(Transaction.status == TransactionStatus.FAILED),
            func.coalesce(
                func.sum(case((Transaction.status == TransactionStatus.SUCCESS, Transaction.amount), else_=0)),
                0,
            ),
        ).where(_between(Transaction.created_at))
    )).one()

    return {
        "date": start.date().isoformat(),
        "tickets": {
            "new_tickets": tickets[0],
            "resolved_tickets": tickets[1],
            "closed_tickets": tickets[2],
            "resolved_during_day": int(resolved_yesterday or 0),
        },
        "transactions": {
            "total_transactions": transactions[0],
            "successful_transactions": transactions[1],
            "failed_transactions": transactions[2],
            "total_amount": round(float(transactions[3] or 0), 2),
        },
    }


async def daily_reports(ctx: JobContext) -> dict[str, Any]:
    """דוח יומי במייל לכתובות ADMIN_EMAILS"""
    report = await build_daily_report(ctx.db)
    recipients = settings.admin_email_list
    if not recipients:
        logger.info("ADMIN_EMAILS ריק - הדוח היומי לא נשלח", extra_data={"date": report["date"]})
        return {"date": report["date"], "recipients": 0, "emails_sent": 0}

    template = email_templates.daily_report(report)
    sent = 0
    for recipient in recipients:
        outcome = await ctx.notifications.send_email(
            recipient, template, "daily_report", metadata={"date": report["date"]}
        )
        if outcome == NotificationOutcome.DELIVERED:
            sent += 1
    return {"date": report["date"], "recipients": len(recipients), "emails_sent": sent}


JOBS: dict[str, JobDefinition] = {
    job.name: job
    for job in (
        JobDefinition(
            name="updateTransactions",
            description="Update transaction statuses from external API",
            cron="*/5 * * * *",
            schedule=crontab(minute="*/5"),
            run=update_transactions,
        ),
        JobDefinition(
            name="sendMerchantUpdates",
            description="Send consolidated updates to merchants",
            cron="0 * * * *",
            schedule=crontab(minute="0"),
            run=send_merchant_updates,
        ),
        JobDefinition(
            name="autoCloseTickets",
            description="Auto-close resolved tickets after 24 hours",
            cron="0 */6 * * *",
            schedule=crontab(minute="0", hour="*/6"),
            run=auto_close_tickets,
        ),
        JobDefinition(
            name="cleanup",
            description="Delete old email, WhatsApp, webhook and status logs",
            cron="0 2 * * *",
            schedule=crontab(minute="0", hour="2"),
            run=cleanup,
        ),
        JobDefinition(
            name="dailyReports",
            description="Email yesterday's summary to administrators",
            cron="0 9 * * *",
            schedule=crontab(minute="0", hour="9"),
            run=daily_reports,
        ),
    )
}


# ----------------------------------------------------------------------
# Runner + status
# ----------------------------------------------------------------------


def get_job(name: str) -> JobDefinition:
    job = JOBS.get(name)
    if job is None:
        raise ValidationException(
            f"Invalid job name. Valid jobs: {', '.join(JOBS)}",
            field="job_name",
            error_code=ErrorCode.UNKNOWN_JOB,
        )
    return job


async def _record_run(name: str, record: dict[str, Any]) -> None:
    try:
        redis = await get_redis()
        await redis.set(_LAST_RUN_KEY.format(name=name), json.dumps(record, default=str))
    except Exception as e:
        logger.warning(
            "כשלון בשמירת סטטוס משימה ב-Redis",
            extra_data={"job": name, "error": str(e)},
        )


async def run_job(
    db: AsyncSession,
    name: str,
    *,
    trigger: str = "schedule",
    notifications: NotificationService | None = None,
    status_source: TransactionStatusSource | None = None,
) -> dict[str, Any]:
    """
    הרצת משימה לפי שם.

    Raises:
        ValidationException: שם משימה לא מוכר
    """
    job = get_job(name)
    ctx = JobContext(
        db=db,
        notifications=notifications or NotificationService(db),
        status_source=status_source,
    )

    started_at = datetime.now(timezone.utc)
    start = time.perf_counter()
    logger.info("משימה מתוזמנת התחילה", extra_data={"job": name, "trigger": trigger})

    try:
        result = await job.run(ctx)
    except Exception as e:
        duration = round(time.perf_counter() - start, 3)
        logger.error(
            "משימה מתוזמנת נכשלה",
            extra_data={"job": name, "trigger": trigger, "duration_seconds": duration, "error": str(e)},
            exc_info=True,
        )
        await _record_run(name, {
            "last_run": started_at.isoformat(),
            "duration_seconds": duration,
            "outcome": "failed",
            "trigger": trigger,
            "error": str(e),
        })
        raise

    duration = round(time.perf_counter() - start, 3)
    await _record_run(name, {
        "last_run": started_at.isoformat(),
        "duration_seconds": duration,
        "outcome": "success",
        "trigger": trigger,
        "result": result,
    })
    logger.info(
        "משימה מתוזמנת הסתיימה",
        extra_data={"job": name, "trigger": trigger, "duration_seconds": duration, "result": result},
    )
    return result


async def get_job_statuses() -> list[dict[str, Any]]:
    """כל המשימות עם לוח זמנים, הרצה אחרונה והרצה הבאה"""
    now = datetime.now(timezone.utc)
    try:
        redis = await get_redis()
        raw = {name: await redis.get(_LAST_RUN_KEY.format(name=name)) for name in JOBS}
    except Exception as e:
        logger.warning("כשלון בקריאת סטטוס משימות מ-Redis", extra_data={"error": str(e)})
        raw = {}

    statuses = []
    for name, job in JOBS.items():
        last = json.loads(raw[name]) if raw.get(name) else None
        statuses.append({
            "name": name,
            "description": job.description,
            "schedule": job.cron,
            "last_run": last.get("last_run") if last else None,
            "last_duration_seconds": last.get("duration_seconds") if last else None,
            "last_outcome": last.get("outcome") if last else None,
            "next_run": (now + job.schedule.remaining_estimate(now)).isoformat(),
        })
    return statuses
