"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings
from app.domain.services.scheduler_service import JOBS

celery_app = Celery(
    "support_desk",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # לוחות הזמנים של המשימות מוגדרים ב-UTC
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)


def build_beat_schedule() -> dict:
    """רשומת beat לכל משימה מתוזמנת - לוח הזמנים מוגדר ליד המשימה עצמה"""
    return {
        f"scheduler-{name}": {
            "task": "app.workers.tasks.run_scheduled_job",
            "schedule": job.schedule,
            "args": (name,),
        }
        for name, job in JOBS.items()
    }


# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = build_beat_schedule()
