import asyncio

from celery.utils.log import get_task_logger
from redis import exceptions as redis_exceptions

from seatlock.celery_app import celery_app
from seatlock.config import settings
from seatlock.metrics import SWEEP_FAILURES
from seatlock.redis_client import create_redis_client
from seatlock.services.seat_lock import build_lock_store
from seatlock.services.sweeper import ExpirySweeper

logger = get_task_logger(__name__)


@celery_app.task(bind=True, autoretry_for=(redis_exceptions.ConnectionError,), retry_backoff=True, retry_backoff_max=300, max_retries=3)
def sweep_expired_locks(self):
    """Reclaim expired seat lock records. Scheduled by celery beat."""
    if settings.LOCK_STORE_BACKEND == "memory":
        logger.info("Memory lock store lives in the API process; nothing to sweep here")
        return 0

    async def _do():
        # each run gets its own event loop, so the redis client cannot be shared
        redis = create_redis_client() if settings.LOCK_STORE_BACKEND == "redis" else None
        store = build_lock_store(settings, redis=redis)
        try:
            return await ExpirySweeper(store, batch_size=settings.SWEEP_BATCH_SIZE).sweep_once()
        finally:
            if redis is not None:
                await store.close()
            elif settings.LOCK_STORE_BACKEND == "sql":
                from seatlock.db.session import engine

                # pooled connections are bound to this run's loop
                await engine.dispose()

    try:
        removed = asyncio.run(_do())
    except Exception as exc:
        SWEEP_FAILURES.inc()
        logger.exception("Error sweeping expired seat locks: %s", exc)
        raise
    logger.info("Swept %d expired seat lock(s)", removed)
    return removed
