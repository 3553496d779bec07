"""
RQ Worker
=========

Worker process for background jobs.

Usage:
    python -m squashie.jobs.worker --queues default low
    python -m squashie.jobs.worker --sweep-now
"""

import logging

from redis import Redis
from rq import Worker

from .queue import REDIS_URL, QUEUE_DEFAULT, QUEUE_LOW, schedule_expiry_sweep

logger = logging.getLogger(__name__)


def start_worker(
    queues: list = None,
    burst: bool = False,
    logging_level: str = "INFO",
    schedule_sweep: bool = True
):
    """
    Start an RQ worker.

    Args:
        queues: List of queue names to listen to
        burst: Run in burst mode (exit when queues are empty)
        logging_level: Logging level
        schedule_sweep: Queue the first expiry sweep before working
    """
    # Configure logging
    logging.basicConfig(
        level=getattr(logging, logging_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if queues is None:
        queues = [QUEUE_DEFAULT, QUEUE_LOW]

    conn = Redis.from_url(REDIS_URL)

    if schedule_sweep:
        schedule_expiry_sweep()

    worker = Worker(
        queues,
        connection=conn,
        worker_ttl=420,  # 7 minutes
        job_monitoring_interval=5,
    )

    logger.info(f"Starting worker on queues: {queues}")
    worker.work(burst=burst, with_scheduler=True)


def run_worker_cli():
    """CLI entry point for worker"""
    import argparse

    parser = argparse.ArgumentParser(description="RQ Worker for Squashie")
    parser.add_argument(
        "--queues", "-q",
        nargs="+",
        default=[QUEUE_DEFAULT, QUEUE_LOW],
        help="Queues to listen to"
    )
    parser.add_argument(
        "--burst", "-b",
        action="store_true",
        help="Run in burst mode"
    )
    parser.add_argument(
        "--log-level", "-l",
        default="INFO",
        help="Logging level"
    )
    parser.add_argument(
        "--no-sweep",
        action="store_true",
        help="Do not schedule the stale-conflict expiry sweep"
    )
    parser.add_argument(
        "--sweep-now",
        action="store_true",
        help="Run one expiry sweep in this process and exit"
    )

    args = parser.parse_args()

    if args.sweep_now:
        from .tasks import task_expire_conflicts

        logging.basicConfig(level=getattr(logging, args.log_level.upper()))
        summary = task_expire_conflicts()
        print(summary)
        return

    start_worker(
        queues=args.queues,
        burst=args.burst,
        logging_level=args.log_level,
        schedule_sweep=not args.no_sweep
    )


if __name__ == "__main__":
    run_worker_cli()
