"""
Job Tasks
=========

Background task implementations: the stale-conflict expiry sweep.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Any, Optional

from ..config import get_settings
from ..db.models import EventKind
from ..errors import ConflictNotFound, PersistenceConflict, PersistenceFailure
from ..lifecycle import is_ruled
from ..models import ConflictStatus
from ..repository import ConflictRepository

logger = logging.getLogger(__name__)

# Only conflicts still waiting on someone can go stale
EXPIRABLE_STATUSES = (ConflictStatus.PENDING, ConflictStatus.ACTIVE)


def expire_stale_conflicts(
    max_age_hours: Optional[int] = None,
    repository: Optional[ConflictRepository] = None,
    notifier=None,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Mark idle pending/active conflicts as abandoned.

    Each write is conditional on the version that was listed, so a conflict
    that moved on in the meantime is skipped rather than overwritten.

    Returns:
        Dict with total, successful, skipped, errors
    """
    hours = max_age_hours if max_age_hours is not None else get_settings().conflict_expiry_hours
    now = now or datetime.utcnow()
    cutoff = now - timedelta(hours=hours)
    repository = repository or ConflictRepository()

    stale = repository.list_stale(EXPIRABLE_STATUSES, cutoff)
    summary: Dict[str, Any] = {"total": len(stale), "successful": 0, "skipped": 0, "errors": []}
    logger.info(f"Expiry sweep: {len(stale)} conflict(s) idle since before {cutoff.isoformat()}")

    for record in stale:
        if is_ruled(record) or record.status not in EXPIRABLE_STATUSES:
            summary["skipped"] += 1
            continue

        try:
            repository.update(
                record.id,
                {"status": ConflictStatus.ABANDONED, "abandoned_at": now},
                expected_version=record.version,
                expected_statuses=EXPIRABLE_STATUSES,
            )
        except (PersistenceConflict, ConflictNotFound):
            logger.info(f"Conflict {record.id} changed during sweep, skipping")
            summary["skipped"] += 1
            continue
        except PersistenceFailure as e:
            summary["errors"].append({"conflict_id": record.id, "error": e.message})
            continue

        summary["successful"] += 1
        if notifier is not None:
            for user_id in (record.user1_id, record.user2_id):
                if user_id:
                    notifier.notify(user_id, EventKind.CONFLICT_ABANDONED, {"conflict_id": record.id})

    logger.info(
        f"Expiry sweep done: {summary['successful']} abandoned, "
        f"{summary['skipped']} skipped, {len(summary['errors'])} error(s)"
    )
    return summary


def task_expire_conflicts(max_age_hours: Optional[int] = None, reschedule: bool = False) -> Dict[str, Any]:
    """RQ entry point for the expiry sweep; `reschedule` queues the next run."""
    from rq import get_current_job

    from ..db.session import init_db
    from ..rewards import RewardNotifier
    from .queue import schedule_expiry_sweep

    init_db()
    summary = expire_stale_conflicts(max_age_hours=max_age_hours, notifier=RewardNotifier())
    if reschedule:
        job = get_current_job()
        schedule_expiry_sweep(current_job_id=job.id if job else None)
    return summary
