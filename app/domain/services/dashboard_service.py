"""
Dashboard Service - שאילתות אגרגציה לדשבורד (קריאה בלבד).
"""
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.compat import day_bucket
from app.db.database import utcnow
from app.db.models.email_log import EmailLog, EmailStatus
from app.db.models.status_update import EntityType, StatusUpdate
from app.db.models.ticket import Ticket, TicketPriority, TicketStatus
from app.db.models.transaction import NON_TERMINAL_STATUSES, Transaction, TransactionStatus
from app.db.models.webhook_log import WebhookLog, WebhookStatus
from app.db.models.whatsapp_log import WhatsAppLog, WhatsAppStatus

# טווחי זמן לגרפי מגמות; טווח לא מוכר -> 7d
TIME_RANGES = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}
DEFAULT_TIME_RANGE = "7d"
_MAX_TREND_BUCKETS = 30

_OUTSTANDING = (TicketStatus.OPEN, TicketStatus.IN_PROGRESS)
_WHATSAPP_DELIVERED = (WhatsAppStatus.SENT, WhatsAppStatus.DELIVERED, WhatsAppStatus.READ)

# ספים להתראות
FAILED_TRANSACTIONS_ALERT_THRESHOLD = 5
EMAIL_FAILURES_ALERT_THRESHOLD = 10
_ALERT_LEVELS = {"high": 3, "medium": 2, "low": 1}

# מעל הסף הזה (24 שעות) מצב המערכת מדווח degraded
_HEALTH_FAILURE_THRESHOLD = 10


def _count_where(condition):
    return func.count(case((condition, 1)))


def _avg(values: list[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0


def _rate(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0


class DashboardService:
    """Read-only aggregates for the dashboard"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _count(self, model, *conditions) -> int:
        return int(await self.db.scalar(select(func.count(model.id)).where(*conditions)) or 0)

    # ------------------------------------------------------------------
    # Overview
    # ------------------------------------------------------------------

    async def get_overview(self) -> dict[str, Any]:
        now = utcnow()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        hour_ago = now - timedelta(hours=1)
        day_ago = now - timedelta(hours=24)

        tickets = (await self.db.execute(
            select(
                func.count(Ticket.id),
                _count_where(Ticket.status == TicketStatus.OPEN),
                _count_where(Ticket.status == TicketStatus.IN_PROGRESS),
                _count_where(Ticket.status == TicketStatus.RESOLVED),
                _count_where(Ticket.created_at >= today),
                _count_where(
                    (Ticket.priority == TicketPriority.URGENT)
                    & Ticket.status.in_(_OUTSTANDING)
                ),
            )
        )).one()

        transactions = (await self.db.execute(
            select(
                func.count(Transaction.id),
                _count_where(Transaction.status == TransactionStatus.SUCCESS),
                _count_where(Transaction.status == TransactionStatus.FAILED),
                _count_where(Transaction.status.in_(NON_TERMINAL_STATUSES)),
                func.coalesce(
                    func.sum(case((Transaction.status == TransactionStatus.SUCCESS, Transaction.amount), else_=0)),
                    0,
                ),
                _count_where(Transaction.created_at >= today),
            )
        )).one()

        recent = (
            await self._count(Ticket, Ticket.created_at >= hour_ago)
            + await self._count(Transaction, Transaction.created_at >= hour_ago)
            + await self._count(StatusUpdate, StatusUpdate.created_at >= hour_ago)
        )

        email_failures = await self._count(
            EmailLog, EmailLog.status == EmailStatus.FAILED, EmailLog.created_at >= day_ago
        )
        whatsapp_failures = await self._count(
            WhatsAppLog, WhatsAppLog.status == WhatsAppStatus.FAILED, WhatsAppLog.created_at >= day_ago
        )
        overall = (
            "degraded"
            if email_failures + whatsapp_failures > _HEALTH_FAILURE_THRESHOLD
            else "healthy"
        )

        return {
            "tickets": {
                "total": tickets[0],
                "open": tickets[1],
                "in_progress": tickets[2],
                "resolved": tickets[3],
                "today": tickets[4],
                "urgent": tickets[5],
            },
            "transactions": {
                "total": transactions[0],
                "successful": transactions[1],
                "failed": transactions[2],
                "pending": transactions[3],
                "revenue": round(float(transactions[4] or 0), 2),
                "today": transactions[5],
            },
            "activity": {"recent": recent},
            "health": {
                "email_failures": email_failures,
                "whatsapp_failures": whatsapp_failures,
                "overall_status": overall,
            },
        }

    # ------------------------------------------------------------------
    # Detailed stats
    # ------------------------------------------------------------------

    async def get_stats(self, time_range: str | None = None) -> dict[str, Any]:
        if time_range not in TIME_RANGES:
            time_range = DEFAULT_TIME_RANGE
        now = utcnow()
        since = now - TIME_RANGES[time_range]

        ticket_day = day_bucket(Ticket.created_at).label("date")
        ticket_trends = await self.db.execute(
            select(
                ticket_day,
                func.count(Ticket.id),
                _count_where(Ticket.status == TicketStatus.RESOLVED),
                _count_where(Ticket.priority == TicketPriority.URGENT),
            )
            .where(Ticket.created_at >= since)
            .group_by(ticket_day)
            .order_by(ticket_day.desc())
            .limit(_MAX_TREND_BUCKETS)
        )

        txn_day = day_bucket(Transaction.created_at).label("date")
        transaction_trends = await self.db.execute(
            select(
                txn_day,
                func.count(Transaction.id),
                _count_where(Transaction.status == TransactionStatus.SUCCESS),
                func.coalesce(
                    func.sum(case((Transaction.status == TransactionStatus.SUCCESS, Transaction.amount), else_=0)),
                    0,
                ),
                func.avg(Transaction.amount),
            )
            .where(Transaction.created_at >= since)
            .group_by(txn_day)
            .order_by(txn_day.desc())
            .limit(_MAX_TREND_BUCKETS)
        )

        ticket_dist = await self.db.execute(
            select(Ticket.status, func.count(Ticket.id))
            .where(Ticket.created_at >= since)
            .group_by(Ticket.status)
        )
        transaction_dist = await self.db.execute(
            select(Transaction.status, func.count(Transaction.id))
            .where(Transaction.created_at >= since)
            .group_by(Transaction.status)
        )

        return {
            "time_range": time_range,
            "trends": {
                "tickets": [
                    {"date": date, "total": total, "resolved": resolved, "urgent": urgent}
                    for date, total, resolved, urgent in ticket_trends.all()
                ],
                "transactions": [
                    {
                        "date": date,
                        "total": total,
                        "successful": successful,
                        "revenue": round(float(revenue or 0), 2),
                        "avg_amount": round(float(avg_amount), 2) if avg_amount is not None else 0,
                    }
                    for date, total, successful, revenue, avg_amount in transaction_trends.all()
                ],
            },
            "distribution": {
                "ticket_status": [
                    {"status": status.value, "count": count} for status, count in ticket_dist.all()
                ],
                "transaction_status": [
                    {"status": status.value, "count": count} for status, count in transaction_dist.all()
                ],
            },
            "performance": await self._performance_summary(now - timedelta(days=30)),
        }

    async def _performance_summary(self, since: datetime) -> dict[str, Any]:
        """ממוצעי זמן פתרון/השלמה ושיעור פתרון ל-30 הימים האחרונים"""
        ticket_rows = (await self.db.execute(
            select(Ticket.created_at, Ticket.resolved_at).where(Ticket.created_at >= since)
        )).all()
        resolution_hours = [
            (resolved_at - created_at).total_seconds() / 3600
            for created_at, resolved_at in ticket_rows
            if resolved_at and created_at
        ]

        transaction_rows = (await self.db.execute(
            select(Transaction.created_at, Transaction.completed_at)
            .where(Transaction.created_at >= since, Transaction.completed_at.is_not(None))
        )).all()
        completion_hours = [
            (completed_at - created_at).total_seconds() / 3600
            for created_at, completed_at in transaction_rows
            if created_at
        ]

        return {
            "avg_resolution_hours": _avg(resolution_hours),
            "avg_transaction_hours": _avg(completion_hours),
            "resolution_rate": _rate(len(resolution_hours), len(ticket_rows)),
        }

    # ------------------------------------------------------------------
    # Activity feed
    # ------------------------------------------------------------------

    async def get_recent_activity(self, limit: int = 20) -> list[dict[str, Any]]:
        """יצירות ושינויי סטטוס של 24 השעות האחרונות, מהחדש לישן"""
        since = utcnow() - timedelta(hours=24)
        activities: list[dict[str, Any]] = []

        tickets = await self.db.execute(
            select(Ticket.ticket_number, Ticket.customer_email, Ticket.subject, Ticket.created_at)
            .where(Ticket.created_at >= since)
            .order_by(Ticket.created_at.desc())
            .limit(limit)
        )
        for number, email, subject, created_at in tickets.all():
            activities.append(_activity("ticket", "created", number, email, subject, created_at))

        transactions = await self.db.execute(
            select(
                Transaction.transaction_id,
                Transaction.payer_email,
                Transaction.currency,
                Transaction.amount,
                Transaction.created_at,
            )
            .where(Transaction.created_at >= since)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
        )
        for txn_id, email, currency, amount, created_at in transactions.all():
            activities.append(_activity(
                "transaction", "created", txn_id, email,
                f"Transaction of {currency} {amount}", created_at,
            ))

        # רשומות יצירה (old_status ריק) כבר מיוצגות כ-created
        ticket_changes = await self.db.execute(
            select(StatusUpdate, Ticket.ticket_number)
            .join(Ticket, Ticket.id == StatusUpdate.entity_id)
            .where(
                StatusUpdate.entity_type == EntityType.TICKET,
                StatusUpdate.old_status.is_not(None),
                StatusUpdate.created_at >= since,
            )
            .order_by(StatusUpdate.created_at.desc())
            .limit(limit)
        )
        for update, number in ticket_changes.all():
            activities.append(_status_activity("ticket", update, number))

        transaction_changes = await self.db.execute(
            select(StatusUpdate, Transaction.transaction_id)
            .join(Transaction, Transaction.id == StatusUpdate.entity_id)
            .where(
                StatusUpdate.entity_type == EntityType.TRANSACTION,
                StatusUpdate.old_status.is_not(None),
                StatusUpdate.created_at >= since,
            )
            .order_by(StatusUpdate.created_at.desc())
            .limit(limit)
        )
        for update, txn_id in transaction_changes.all():
            activities.append(_status_activity("transaction", update, txn_id))

        activities.sort(key=lambda a: a["timestamp"], reverse=True)
        return activities[:limit]

    # ------------------------------------------------------------------
    # Performance
    # ------------------------------------------------------------------

    async def get_performance(self) -> dict[str, Any]:
        now = utcnow()
        day_ago = now - timedelta(hours=24)
        hour_ago = now - timedelta(hours=1)

        emails = (await self.db.execute(
            select(EmailLog.status, EmailLog.created_at, EmailLog.sent_at)
            .where(EmailLog.created_at >= day_ago)
        )).all()
        email_latency = [
            (sent_at - created_at).total_seconds()
            for _, created_at, sent_at in emails
            if sent_at and created_at
        ]
        email_sent = sum(1 for status, _, _ in emails if status == EmailStatus.SENT)

        # הודעות נכנסות לא נספרות בביצועי שליחה
        whatsapp = (await self.db.execute(
            select(WhatsAppLog.status, WhatsAppLog.created_at, WhatsAppLog.sent_at)
            .where(WhatsAppLog.created_at >= day_ago, WhatsAppLog.status != WhatsAppStatus.RECEIVED)
        )).all()
        whatsapp_latency = [
            (sent_at - created_at).total_seconds()
            for _, created_at, sent_at in whatsapp
            if sent_at and created_at
        ]
        whatsapp_sent = sum(1 for status, _, _ in whatsapp if status in _WHATSAPP_DELIVERED)

        load = (await self.db.execute(
            select(
                func.count(WebhookLog.id),
                _count_where(WebhookLog.status == WebhookStatus.PROCESSED),
                _count_where(WebhookLog.status == WebhookStatus.FAILED),
            ).where(WebhookLog.created_at >= hour_ago)
        )).one()
        total_requests, successful_requests, failed_requests = load

        return {
            "response_times": {
                "email_avg_seconds": _avg(email_latency),
                "whatsapp_avg_seconds": _avg(whatsapp_latency),
            },
            "delivery_rates": {
                "email_percentage": _rate(email_sent, len(emails)),
                "whatsapp_percentage": _rate(whatsapp_sent, len(whatsapp)),
            },
            "system_load": {
                "total_requests": total_requests,
                "successful_requests": successful_requests,
                "failed_requests": failed_requests,
                "success_rate": _rate(successful_requests, total_requests) if total_requests else 100,
            },
        }

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def get_alerts(self) -> dict[str, Any]:
        now = utcnow()
        hour_ago = now - timedelta(hours=1)
        timestamp = now.isoformat()
        alerts: list[dict[str, Any]] = []

        urgent = await self._count(
            Ticket, Ticket.priority == TicketPriority.URGENT, Ticket.status.in_(_OUTSTANDING)
        )
        if urgent > 0:
            alerts.append({
                "type": "urgent",
                "level": "high",
                "message": f"{urgent} urgent tickets require attention",
                "count": urgent,
                "timestamp": timestamp,
            })

        failed = await self._count(
            Transaction, Transaction.status == TransactionStatus.FAILED, Transaction.created_at >= hour_ago
        )
        if failed > FAILED_TRANSACTIONS_ALERT_THRESHOLD:
            alerts.append({
                "type": "transactions",
                "level": "medium",
                "message": f"High number of failed transactions in the last hour: {failed}",
                "count": failed,
                "timestamp": timestamp,
            })

        email_failures = await self._count(
            EmailLog, EmailLog.status == EmailStatus.FAILED, EmailLog.created_at >= hour_ago
        )
        if email_failures > EMAIL_FAILURES_ALERT_THRESHOLD:
            alerts.append({
                "type": "email",
                "level": "medium",
                "message": f"High number of email delivery failures: {email_failures}",
                "count": email_failures,
                "timestamp": timestamp,
            })

        stale = await self._count(
            Ticket,
            Ticket.status.in_(_OUTSTANDING),
            Ticket.created_at <= now - timedelta(hours=settings.UNRESOLVED_ALERT_HOURS),
        )
        if stale > 0:
            alerts.append({
                "type": "tickets",
                "level": "low",
                "message": f"{stale} tickets older than {settings.UNRESOLVED_ALERT_HOURS} hours are still unresolved",
                "count": stale,
                "timestamp": timestamp,
            })

        return {
            "alerts": alerts,
            "total_alerts": len(alerts),
            "highest_level": max((_ALERT_LEVELS[a["level"]] for a in alerts), default=0),
        }


def _activity(
    entity: str,
    action: str,
    reference: str | None,
    actor: str | None,
    description: str,
    timestamp: datetime,
) -> dict[str, Any]:
    return {
        "type": entity,
        "action": action,
        "reference": reference,
        "actor": actor,
        "description": description,
        "timestamp": timestamp.isoformat() if timestamp else None,
    }


def _status_activity(entity: str, update: StatusUpdate, reference: str | None) -> dict[str, Any]:
    return _activity(
        entity,
        "status_changed",
        reference,
        update.updated_by,
        f"Status changed from {update.old_status} to {update.new_status}",
        update.created_at,
    )
