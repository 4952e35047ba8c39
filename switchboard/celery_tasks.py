"""
Async job processing with Celery.
Ring timeouts and the parked-call sweep run here, so both happen whether or
not any agent client is connected.
"""

from celery import Celery
from switchboard.config import config

# Initialize Celery with Redis broker
celery_app = Celery(
    'switchboard',
    broker=config.REDIS_URL,
    backend=config.REDIS_URL
)

# Celery configuration
celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    beat_schedule={
        'sweep-stale-calls': {
            'task': 'sweep_stale_calls',
            'schedule': float(config.SWEEP_INTERVAL_SECONDS),
        },
    },
)


@celery_app.task(name='expire_ring')
def expire_ring_task(call_id: int):
    """
    Ring timeout for one call, queued with a countdown when the ring starts.

    Args:
        call_id: ID of the ringing call

    Returns:
        dict: whether this run marked the call missed
    """
    from switchboard.database import SessionLocal
    from switchboard.ringing import RingBroadcaster
    from switchboard.logging_config import bind_context, clear_context, logger

    clear_context()
    bind_context(task="expire_ring", call_id=call_id)
    db = SessionLocal()
    try:
        expired = RingBroadcaster.expire_ring(db, call_id)
        logger.info("ring_timeout_task_ran", call_id=call_id, expired=expired)
        return {"call_id": call_id, "expired": expired}
    finally:
        db.close()


@celery_app.task(name='sweep_stale_calls')
def sweep_stale_calls_task():
    """
    Periodic cleanup: lost ring timeouts, aged parked calls, parked calls
    whose caller already hung up.

    Returns:
        dict: counts of expired rings and abandoned parked calls
    """
    from switchboard.database import SessionLocal
    from switchboard.parking import ParkCoordinator
    from switchboard.telephony import get_provider
    from switchboard.logging_config import bind_context, clear_context

    clear_context()
    bind_context(task="sweep_stale_calls")
    db = SessionLocal()
    try:
        result = ParkCoordinator.sweep(db, get_provider())
        return result.model_dump()
    finally:
        db.close()
