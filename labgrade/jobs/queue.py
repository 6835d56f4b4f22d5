import logging
from typing import Dict, Iterable, Tuple

from fastapi import Request
from prometheus_client import Gauge
from redis import Redis
from rq import Queue, Retry

from labgrade.core.config import settings
from labgrade.jobs.passback import grade_passback_job

logger = logging.getLogger(__name__)

PASSBACK_JOBS = Gauge("labgrade_passback_jobs", "Grade passback jobs by queue state", ["state"])


class GradeQueue:
    """Producer side of the grade-passback queue.

    Built once per process and handed to whoever enqueues; the worker reads
    from the same Redis queue by name.
    """

    def __init__(self, queue: Queue, max_attempts: int, backoff: list, result_ttl: int, failure_ttl: int, job_timeout: int):
        self.queue = queue
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.result_ttl = result_ttl
        self.failure_ttl = failure_ttl
        self.job_timeout = job_timeout

    @classmethod
    def from_settings(cls, connection: Redis | None = None) -> "GradeQueue":
        redis = connection or Redis.from_url(settings.REDIS_URL)
        return cls(
            Queue(settings.RQ_QUEUE, connection=redis),
            max_attempts=settings.PASSBACK_MAX_ATTEMPTS,
            backoff=settings.passback_backoff_intervals(),
            result_ttl=settings.RQ_RESULT_TTL,
            failure_ttl=settings.RQ_FAILURE_TTL,
            job_timeout=settings.RQ_JOB_TIMEOUT,
        )

    @property
    def connection(self) -> Redis:
        return self.queue.connection

    def retry_policy(self) -> Retry | None:
        retries = self.max_attempts - 1
        return Retry(max=retries, interval=self.backoff) if retries > 0 else None

    def enqueue_attempt(self, attempt_id: str) -> str:
        job = self.queue.enqueue(
            grade_passback_job,
            kwargs={"attempt_id": attempt_id},
            retry=self.retry_policy(),
            job_timeout=self.job_timeout,
            result_ttl=self.result_ttl,
            failure_ttl=self.failure_ttl,
            description="grade-passback",
            meta={"attemptId": attempt_id},
        )
        logger.info("Enqueued grade passback for attempt %s (job %s)", attempt_id, job.get_id())
        return job.get_id()

    def enqueue_many(self, attempt_ids: Iterable[str]) -> Tuple[int, int]:
        """Enqueue one job per attempt. Returns (enqueued, total)."""
        enqueued = total = 0
        for attempt_id in attempt_ids:
            total += 1
            try:
                self.enqueue_attempt(attempt_id)
                enqueued += 1
            except Exception as e:
                logger.warning("Failed to enqueue passback for attempt %s: %s", attempt_id, e)
        return enqueued, total

    def health(self) -> Dict[str, int]:
        q = self.queue
        counts = {
            "waiting": q.count,
            "started": q.started_job_registry.count,
            "finished": q.finished_job_registry.count,
            "failed": q.failed_job_registry.count,
            "deferred": q.deferred_job_registry.count,
            "scheduled": q.scheduled_job_registry.count,
        }
        for state, n in counts.items():
            PASSBACK_JOBS.labels(state=state).set(n)
        return counts

    def close(self) -> None:
        self.connection.close()


def get_grade_queue(request: Request) -> GradeQueue:
    return request.app.state.grade_queue
