import logging
from datetime import datetime
from typing import Dict, List, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session
from labgrade.core import errors
from labgrade.core.database import get_db
from labgrade.core.auth import staff_only
from labgrade.jobs.queue import GradeQueue, get_grade_queue
from labgrade.models.orm import Lab
from labgrade.services import attempts as attempts_svc
from labgrade.services.gradebook import GradeBookClient
from labgrade.services.grade_sync import deliver_grade, graded_attempt_ids, lab_grade_rows, list_sync_logs
from labgrade.api.attempts import SyncLogOut

logger = logging.getLogger(__name__)

router = APIRouter()

class BulkSyncResult(BaseModel):
    message: str; enqueued_count: int; total_graded: int

class SingleSyncResult(BaseModel):
    attemptId: str; success: bool; status: int; syncStatus: str; retryable: bool; message: str

class SyncLogList(BaseModel):
    attempt_id: str; logs: List[SyncLogOut]; total: int

class LabSummary(BaseModel):
    id: str; title: str; max_points: float

class GradeRowOut(BaseModel):
    attempt_id: str; student_id: str; student_name: str; student_email: Optional[str] = None
    attempt_number: int; status: str; score: Optional[float] = None; percentage: Optional[float] = None
    max_points: float; submitted_at: Optional[datetime] = None; graded_at: Optional[datetime] = None
    canvas_sync_status: str; last_sync_at: Optional[datetime] = None

class LabGrades(BaseModel):
    lab: LabSummary; grades: List[GradeRowOut]; total: int

def get_gradebook_client() -> GradeBookClient:
    return GradeBookClient.from_settings()

@router.get("/labs/{lab_id}/grades", response_model=LabGrades, dependencies=[Depends(staff_only)])
def lab_grades(lab_id: str, db: Session = Depends(get_db)):
    lab = db.get(Lab, lab_id)
    if not lab: raise errors.NotFound(f"Lab with ID {lab_id} does not exist.")
    grades = [GradeRowOut(
        attempt_id=row.attempt.id, student_id=row.attempt.student.id, student_name=row.attempt.student.name,
        student_email=row.attempt.student.email, attempt_number=row.attempt.attempt_number, status=row.attempt.status,
        score=row.attempt.score, percentage=row.attempt.percentage, max_points=lab.max_points,
        submitted_at=row.attempt.submitted_at, graded_at=row.attempt.graded_at,
        canvas_sync_status=row.sync_status, last_sync_at=row.last_sync.synced_at if row.last_sync else None,
    ) for row in lab_grade_rows(db, lab_id)]
    return LabGrades(lab=LabSummary(id=lab.id, title=lab.title, max_points=lab.max_points), grades=grades, total=len(grades))

@router.post("/labs/{lab_id}/grades/sync", response_model=BulkSyncResult, dependencies=[Depends(staff_only)])
def bulk_sync(lab_id: str, db: Session = Depends(get_db), grade_queue: GradeQueue = Depends(get_grade_queue)):
    lab = db.get(Lab, lab_id)
    if not lab: raise errors.NotFound(f"Lab with ID {lab_id} does not exist.")
    ids = graded_attempt_ids(db, lab_id)
    if not ids:
        return BulkSyncResult(message="No graded attempts to sync.", enqueued_count=0, total_graded=0)
    enqueued, total = grade_queue.enqueue_many(ids)
    logger.info("Bulk sync: enqueued %s/%s attempts for lab %s", enqueued, total, lab_id)
    return BulkSyncResult(message=f'Enqueued {enqueued} grade passback jobs for "{lab.title}".', enqueued_count=enqueued, total_graded=total)

@router.get("/grades/queue/health", response_model=Dict[str, int], dependencies=[Depends(staff_only)])
def queue_health(grade_queue: GradeQueue = Depends(get_grade_queue)):
    return grade_queue.health()

@router.post("/grades/{attempt_id}/sync", response_model=SingleSyncResult, dependencies=[Depends(staff_only)])
def sync_one(attempt_id: str, db: Session = Depends(get_db), client: GradeBookClient = Depends(get_gradebook_client)):
    attempt = attempts_svc.get_attempt(db, attempt_id)
    if attempt.status != "graded":
        raise errors.ValidationError(f'Cannot sync an attempt with status "{attempt.status}". Grade it first.')
    result = deliver_grade(db, attempt_id, client)
    logger.info("Single sync for attempt %s: %s", attempt_id, result.log_status)
    return SingleSyncResult(**result.to_dict())

@router.get("/grades/{attempt_id}/sync-logs", response_model=SyncLogList, dependencies=[Depends(staff_only)])
def sync_logs(attempt_id: str, db: Session = Depends(get_db)):
    logs = [SyncLogOut.model_validate(r) for r in list_sync_logs(db, attempt_id)]
    return SyncLogList(attempt_id=attempt_id, logs=logs, total=len(logs))
