"""
בדיקות ל-Celery Workers - app/workers/tasks.py ו-celery_app.

מכסה:
- run_scheduled_job - אותו מסלול כמו הפעלה ידנית, כולל רישום ב-Redis
- sync_transactions - סנכרון ברקע
- לוח הזמנים של beat שנבנה מ-JOBS
- ניהול event loop ב-Celery
"""
from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from celery.schedules import crontab
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.database import utcnow
from app.db.models.ticket import TicketStatus
from app.db.models.transaction import TransactionStatus
from app.domain.services.scheduler_service import JOBS


@contextmanager
def _task_session(db_session: AsyncSession):
    """
    הטאסקים של Celery הם sync ומשתמשים ב-run_async() שיוצר event loop חדש.
    בבדיקות async כבר רץ event loop - לכן run_async מחזיר את ה-coroutine
    כמו שהוא, והבדיקה עושה לו await. ה-session של הטאסק הוא session הבדיקה.
    """
    with patch("app.workers.tasks.run_async", side_effect=lambda coro: coro), \
         patch("app.workers.tasks.get_task_session") as mock_session_ctx:
        mock_session_ctx.return_value.__aenter__ = AsyncMock(return_value=db_session)
        mock_session_ctx.return_value.__aexit__ = AsyncMock(return_value=None)
        yield mock_session_ctx


# ============================================================================
# run_scheduled_job
# ============================================================================


class TestRunScheduledJob:

    @pytest.mark.asyncio
    async def test_runs_job_by_name(self, db_session: AsyncSession, ticket_factory, fake_redis) -> None:
        ticket = await ticket_factory(
            status=TicketStatus.RESOLVED, resolved_at=utcnow() - timedelta(hours=30)
        )
        from app.workers.tasks import run_scheduled_job

        with _task_session(db_session) as mock_session_ctx:
            result = await run_scheduled_job("autoCloseTickets")

        assert result == {"closed": 1}
        mock_session_ctx.assert_called_once()
        await db_session.refresh(ticket)
        assert ticket.status == TicketStatus.CLOSED
        assert await fake_redis.get("scheduler:last_run:autoCloseTickets") is not None

    @pytest.mark.asyncio
    async def test_unknown_job_propagates(self, db_session: AsyncSession) -> None:
        from app.core.exceptions import ValidationException
        from app.workers.tasks import run_scheduled_job

        with _task_session(db_session):
            with pytest.raises(ValidationException):
                await run_scheduled_job("noSuchJob")


class TestSyncTransactionsTask:

    @pytest.mark.asyncio
    async def test_returns_updated_ids(
        self, db_session: AsyncSession, status_source, transaction_factory
    ) -> None:
        await transaction_factory(transaction_id="txn_1")
        await transaction_factory(transaction_id="txn_2")
        status_source.set_status("txn_1", TransactionStatus.SUCCESS)
        status_source.set_status("txn_2", TransactionStatus.PENDING)
        from app.workers.tasks import sync_transactions

        with _task_session(db_session):
            result = await sync_transactions(["txn_1", "txn_2"])

        assert result == {"requested": 2, "updated": ["txn_1"]}


# ============================================================================
# Beat schedule
# ============================================================================


class TestBeatSchedule:

    def test_entry_per_job(self) -> None:
        from app.workers.celery_app import build_beat_schedule

        schedule = build_beat_schedule()

        assert set(schedule) == {f"scheduler-{name}" for name in JOBS}
        entry = schedule["scheduler-updateTransactions"]
        assert entry["task"] == "app.workers.tasks.run_scheduled_job"
        assert entry["args"] == ("updateTransactions",)
        assert isinstance(entry["schedule"], crontab)

    def test_celery_app_uses_schedule(self) -> None:
        from app.workers.celery_app import celery_app

        assert "scheduler-cleanup" in celery_app.conf.beat_schedule
        assert celery_app.conf.timezone == "UTC"


# ============================================================================
# Event loop
# ============================================================================


class TestEventLoopManagement:
    """בדיקות ל-get_event_loop ו-run_async"""

    def test_get_event_loop_creates_and_closes(self) -> None:
        """get_event_loop יוצר loop חדש וסוגר אותו"""
        from app.workers.tasks import get_event_loop

        with get_event_loop() as loop:
            assert loop is not None
            assert loop.is_running() is False

        # אחרי היציאה, ה-loop צריך להיות סגור
        assert loop.is_closed()

    def test_run_async_executes_coroutine(self) -> None:
        """run_async מבצע coroutine ומחזיר תוצאה"""
        from app.workers.tasks import run_async

        async def _coro():
            return 42

        result = run_async(_coro())
        assert result == 42
