"""
Newsdesk - Redis Queue Worker
Main entry point for background job processing

Usage:
    # Run worker only
    python -m newsdesk.worker

    # Run scheduler (for cron jobs, separate process)
    python -m newsdesk.worker --with-scheduler

Schedule (UTC):
    Feed ingestion       - every hour at :00
    Stuck issue monitor  - every 5 minutes
"""

import os
import sys
import logging
from datetime import datetime, timezone
from dotenv import load_dotenv
from redis import Redis
from rq import Worker, Queue
from rq_scheduler import Scheduler

# Load environment variables
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Redis connection
REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379')

QUEUE_NAMES = ['high', 'default', 'low']

# Longest phase budget plus headroom; individual jobs pass their own job_timeout
DEFAULT_JOB_TIMEOUT = 3600


def get_redis_connection():
    """Get Redis connection from URL"""
    return Redis.from_url(REDIS_URL)


def setup_scheduled_jobs(scheduler: Scheduler):
    """Configure all scheduled jobs for the Newsdesk pipeline. All times in UTC."""
    from .jobs.ingest import ingest_feeds
    from .jobs.monitor import recover_stuck_issues

    # Clear existing scheduled jobs
    for job in scheduler.get_jobs():
        scheduler.cancel(job)

    logger.info("[Scheduler] Setting up scheduled jobs...")

    scheduler.cron(
        '0 * * * *',  # minute hour day month day_of_week
        func=ingest_feeds,
        kwargs={'publication_id': os.environ.get('PUBLICATION_ID')},
        queue_name='default',
        id='pool_ingest',
        timeout=1800,
        description='Fetch feeds into the content pool'
    )
    logger.info("[Scheduler] Feed ingestion scheduled: hourly")

    scheduler.cron(
        '*/5 * * * *',
        func=recover_stuck_issues,
        queue_name='high',
        id='stuck_issue_monitor',
        timeout=300,
        description='Fail issues whose phase lease expired'
    )
    logger.info("[Scheduler] Stuck issue monitor scheduled: every 5 minutes")

    logger.info("[Scheduler] All jobs scheduled successfully")


def run_scheduler():
    """Run the RQ scheduler for cron jobs"""
    conn = get_redis_connection()
    scheduler = Scheduler(connection=conn)

    setup_scheduled_jobs(scheduler)

    logger.info(f"[Scheduler] Starting scheduler at {datetime.now(timezone.utc).isoformat()}")
    scheduler.run()


def warmup_database():
    """
    Warm up database connection on startup.
    A cold PostgreSQL instance is woken before the first job runs.
    """
    try:
        from .utils.db import get_db
        get_db().ping()
        logger.info("[Worker] Database connection warm-up successful")
        return True
    except Exception as e:
        logger.warning(f"[Worker] Database warm-up failed (will retry on first job): {e}")
        return False


def run_worker():
    """Run the RQ worker"""
    conn = get_redis_connection()

    # Define queues to listen to (in priority order)
    queues = [Queue(name, connection=conn, default_timeout=DEFAULT_JOB_TIMEOUT) for name in QUEUE_NAMES]

    logger.info(f"[Worker] Starting worker at {datetime.now(timezone.utc).isoformat()}")
    logger.info(f"[Worker] Listening on queues: {', '.join(QUEUE_NAMES)}")

    warmup_database()

    from .utils.prompts import preload_all_prompts
    preload_all_prompts()

    worker = Worker(queues, connection=conn)
    worker.work()


def enqueue_job(job_func, queue_name: str = 'default', **kwargs):
    """
    Manually enqueue a job.

    Args:
        job_func: The function to run
        queue_name: Queue to add job to ('high', 'default', 'low')
        **kwargs: Arguments to pass to the job function (job_timeout is passed to RQ)

    Returns:
        RQ Job object
    """
    conn = get_redis_connection()
    queue = Queue(queue_name, connection=conn)
    return queue.enqueue(job_func, **kwargs)


def main():
    if '--with-scheduler' in sys.argv or '--scheduler' in sys.argv:
        run_scheduler()
    else:
        run_worker()


if __name__ == '__main__':
    main()
