import logging
import threading

import sentry_sdk
from sentry_sdk.integrations.rq import RqIntegration
from redis import Redis
from rq.worker_pool import WorkerPool

from labgrade.core.config import settings
from labgrade.jobs.queue import GradeQueue

logger = logging.getLogger(__name__)


def log_queue_health(grade_queue: GradeQueue, stop: threading.Event, interval: int) -> None:
    while not stop.wait(interval):
        try:
            counts = grade_queue.health()
        except Exception as e:
            logger.error("Could not fetch queue health: %s", e)
            continue
        logger.info("Queue health: %s", ", ".join(f"{k}={v}" for k, v in counts.items()))


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if settings.SENTRY_DSN:
        sentry_sdk.init(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT, integrations=[RqIntegration()])

    redis = Redis.from_url(settings.REDIS_URL)
    grade_queue = GradeQueue.from_settings(redis)
    logger.info("Grade passback worker starting: queue=%s concurrency=%s", settings.RQ_QUEUE, settings.RQ_WORKER_CONCURRENCY)

    stop = threading.Event()
    monitor = threading.Thread(
        target=log_queue_health, args=(grade_queue, stop, settings.QUEUE_HEALTH_INTERVAL), daemon=True
    )
    monitor.start()
    try:
        # Pool workers run with the scheduler so retry backoff intervals are honoured
        pool = WorkerPool([settings.RQ_QUEUE], connection=redis, num_workers=settings.RQ_WORKER_CONCURRENCY)
        pool.start()
    finally:
        stop.set()
        logger.info("Grade passback worker stopped")


if __name__ == "__main__":
    main()
