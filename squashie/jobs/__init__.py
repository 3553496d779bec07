"""
Job Queue Package
=================

Background jobs with Redis Queue (RQ): the stale-conflict expiry sweep.
"""

from .queue import SWEEP_JOB_IDS, schedule_expiry_sweep
from .tasks import expire_stale_conflicts, task_expire_conflicts

__all__ = [
    # Queue management
    "SWEEP_JOB_IDS", "schedule_expiry_sweep",
    # Tasks
    "expire_stale_conflicts", "task_expire_conflicts",
]
