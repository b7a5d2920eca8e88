"""
Background worker using RQ (Redis Queue).
"""
from redis import Redis
from rq import Worker, Queue

from fleetdesk.core.config import settings
from fleetdesk.core.logging import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)


def run_worker(with_scheduler: bool = True):
    """Start the RQ worker, registering the recurring jobs first."""
    redis_conn = Redis.from_url(settings.REDIS_URL)

    if with_scheduler:
        from fleetdesk.workers.jobs import setup_scheduled_jobs
        setup_scheduled_jobs()

    worker = Worker(
        queues=[
            Queue("high", connection=redis_conn),
            Queue("default", connection=redis_conn),
            Queue("low", connection=redis_conn),
        ],
        connection=redis_conn,
        name="fleetdesk-worker",
    )
    logger.info("Starting FleetDesk worker...")
    worker.work()


if __name__ == "__main__":
    run_worker()
