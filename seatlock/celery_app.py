from celery import Celery

from seatlock.config import settings


celery_app = Celery(
    "seatlock_tasks",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["seatlock.housekeeping.tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    beat_schedule={
        "sweep-expired-seat-locks": {
            "task": "seatlock.housekeeping.tasks.sweep_expired_locks",
            "schedule": float(settings.SWEEP_INTERVAL_SECONDS),
        },
    },
)
