"""
Job Queue Management
====================

Redis Queue (RQ) integration for background jobs.
When Redis is unreachable, jobs run synchronously in the calling process.
"""

import os
import logging
from typing import Optional, Dict, Any, Callable
from datetime import timedelta

from redis import Redis
from rq import Queue
from rq.job import Job, JobStatus

from ..config import get_settings

logger = logging.getLogger(__name__)

# Redis configuration
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

# Queue names
QUEUE_DEFAULT = "default"
QUEUE_LOW = "low"

# Fixed ids so at most one sweep chain exists across workers and restarts
SWEEP_JOB_IDS = ("conflict-expiry-sweep", "conflict-expiry-sweep-next")
PENDING_STATUSES = {JobStatus.QUEUED, JobStatus.SCHEDULED, JobStatus.DEFERRED, JobStatus.STARTED}


def get_redis_connection() -> Redis:
    """Get Redis connection"""
    return Redis.from_url(REDIS_URL)


def get_queue(queue_name: str = QUEUE_DEFAULT) -> Queue:
    """Get RQ queue by name"""
    return Queue(queue_name, connection=get_redis_connection())


def _run_sync(func: Callable, reason: str) -> Dict[str, Any]:
    logger.warning(f"Running job {getattr(func, '__name__', func)} synchronously ({reason})")
    try:
        result = func()
        return {
            "job_id": "sync",
            "status": "done",
            "result": result
        }
    except Exception as e:
        logger.error(f"Synchronous job failed: {e}", exc_info=True)
        return {
            "job_id": "sync",
            "status": "failed",
            "error": str(e)
        }


def _pending_sweep(queue: Queue, current_job_id: Optional[str] = None) -> Optional[Job]:
    for job_id in SWEEP_JOB_IDS:
        if job_id == current_job_id:
            continue
        job = queue.fetch_job(job_id)
        if job is not None and job.get_status() in PENDING_STATUSES:
            return job
    return None


def schedule_expiry_sweep(
    interval_hours: Optional[int] = None,
    queue_name: str = QUEUE_LOW,
    current_job_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Schedule the next stale-conflict sweep unless one is already pending.

    The sweep alternates between the two ids in SWEEP_JOB_IDS so the running
    job can queue its successor without overwriting itself. `current_job_id`
    is the running sweep, which does not count as pending.

    Runs the sweep immediately (synchronously) if Redis is unreachable.
    """
    from .tasks import task_expire_conflicts

    hours = interval_hours if interval_hours is not None else max(1, get_settings().conflict_expiry_hours // 24)
    try:
        queue = get_queue(queue_name)
        pending = _pending_sweep(queue, current_job_id)
        if pending is not None:
            logger.info(f"Expiry sweep {pending.id} already pending on '{queue_name}', not scheduling another")
            return {
                "job_id": pending.id,
                "status": "already_scheduled",
                "queue": queue_name,
            }
        next_id = SWEEP_JOB_IDS[1] if current_job_id == SWEEP_JOB_IDS[0] else SWEEP_JOB_IDS[0]
        job = queue.enqueue_in(timedelta(hours=hours), task_expire_conflicts, reschedule=True, job_id=next_id)
    except Exception as e:
        return _run_sync(task_expire_conflicts, f"RQ schedule failed: {e}")

    logger.info(f"Expiry sweep {job.id} scheduled in {hours}h on '{queue_name}'")
    return {
        "job_id": job.id,
        "status": "scheduled",
        "queue": queue_name,
        "run_in_hours": hours,
    }
