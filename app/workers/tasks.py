"""
Celery Tasks - הרצת המשימות המתוזמנות והפעלות ברקע.

כל task רץ ב-event loop חדש משלו, עם session ו-engine טריים
(get_task_session), ומריץ את המשימה דרך scheduler_service.run_job -
אותו מסלול כמו הפעלה ידנית מהדשבורד.
"""
import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.domain.services.scheduler_service import run_job
from app.domain.services.transaction_service import TransactionService
from app.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop - מונע שימוש חוזר
            # ב-client שמחובר ל-event loop סגור בהרצה הבאה
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "כשלון בסגירת Redis בסיום task",
                extra_data={"error": str(e)},
            )
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="app.workers.tasks.run_scheduled_job")
def run_scheduled_job(job_name: str, trigger: str = "schedule"):
    """
    הרצת משימה מתוזמנת לפי שם (updateTransactions, cleanup וכו').

    חריגה מהמשימה נזרקת הלאה כדי ש-Celery יסמן את ה-task כנכשל.
    """

    async def _run():
        async with get_task_session() as db:
            return await run_job(db, job_name, trigger=trigger)

    return run_async(_run())


@celery_app.task(name="app.workers.tasks.sync_transactions")
def sync_transactions(transaction_ids: list[str]):
    """סנכרון רשימת עסקאות ברקע - מחזיר את המזהים שנוצרו או השתנו"""

    async def _sync():
        async with get_task_session() as db:
            updated = await TransactionService(db).batch_sync(transaction_ids)
            result = {
                "requested": len(transaction_ids),
                "updated": [t.transaction_id for t in updated],
            }
            logger.info("סנכרון עסקאות ברקע הסתיים", extra_data=result)
            return result

    return run_async(_sync())
