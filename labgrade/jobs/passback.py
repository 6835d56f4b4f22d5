import logging
from rq import get_current_job
from labgrade.core import errors
from labgrade.core.database import SessionLocal
from labgrade.services.gradebook import GradeBookClient
from labgrade.services.grade_sync import deliver_grade

logger = logging.getLogger(__name__)

def grade_passback_job(attempt_id: str, client: GradeBookClient | None = None) -> dict:
    """Deliver one attempt's score. Raises only when the queue should retry."""
    job = get_current_job()
    if job:
        job.meta.update({"state": "running", "attemptId": attempt_id}); job.save_meta()
        logger.info("Processing grade passback for attempt %s (job %s, retries left %s)", attempt_id, job.id, job.retries_left)
    db = SessionLocal()
    try:
        result = deliver_grade(db, attempt_id, client or GradeBookClient.from_settings())
    except (errors.NotFound, errors.PermanentSyncFailure) as e:
        logger.error("Grade passback for attempt %s abandoned: %s", attempt_id, e.message)
        if job:
            job.meta.update({"state": "abandoned"}); job.save_meta()
        return {"attemptId": attempt_id, "success": False, "message": e.message}
    finally:
        db.close()

    if job:
        job.meta.update({"state": result.log_status}); job.save_meta()
    if result.retryable:
        raise errors.TransientSyncFailure(result.message, attempt_id)
    if not result.success:
        logger.warning("Grade passback for attempt %s ended without sync: %s", attempt_id, result.message)
    return result.to_dict()
