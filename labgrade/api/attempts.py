import logging
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session
from labgrade.core.database import get_db
from labgrade.core.auth import any_role, staff_only, TokenData
from labgrade.jobs.queue import GradeQueue, get_grade_queue
from labgrade.services import attempts as svc

logger = logging.getLogger(__name__)

router = APIRouter()

class ResponseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str; attempt_id: str; structure_id: str
    student_answer: Optional[str] = None; confidence_level: Optional[int] = None
    hints_used: int; time_spent_seconds: Optional[int] = None
    is_correct: Optional[bool] = None; match_type: str; points_earned: float
    auto_graded: bool; instructor_override: Optional[float] = None

class SyncLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str; attempt_id: str; canvas_status: str; canvas_response: Optional[dict] = None; synced_at: datetime

class AttemptOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str; lab_id: str; student_id: str; attempt_number: int; status: str
    started_at: Optional[datetime] = None; submitted_at: Optional[datetime] = None; graded_at: Optional[datetime] = None
    time_spent_seconds: Optional[int] = None; score: Optional[float] = None; percentage: Optional[float] = None
    instructor_feedback: Optional[str] = None
    responses: List[ResponseOut] = []

class AttemptDetail(AttemptOut):
    sync_logs: List[SyncLogOut] = []

class StructureGradeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    response_id: str; structure_id: str; structure_name: Optional[str] = None
    student_answer: Optional[str] = None; match_type: str; is_correct: bool
    points_earned: float; points_possible: float; hints_used: int

class GradeReportOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    attempt_id: str; score: float; max_points: float; percentage: float
    structures: List[StructureGradeOut]

class SubmitResult(BaseModel):
    attempt: AttemptOut
    grade_result: GradeReportOut
    passback_job_id: Optional[str] = None

class ResponseIn(BaseModel):
    structure_id: str
    student_answer: Optional[str] = None
    confidence_level: Optional[int] = Field(default=None, ge=1, le=5)
    hints_used: int = Field(default=0, ge=0)
    time_spent_seconds: Optional[int] = Field(default=None, ge=0)

class ResponsesIn(BaseModel):
    responses: List[ResponseIn]

class ResponsesSaved(BaseModel):
    message: str
    responses: List[ResponseOut]

class ResponseList(BaseModel):
    attempt_id: str; responses: List[ResponseOut]; total: int

class GradeOverride(BaseModel):
    response_id: str
    override_points: float
    feedback: Optional[str] = None

class GradeOverrideResult(BaseModel):
    message: str; attempt_id: str; response_id: str
    override_points: float; new_total_score: float; new_percentage: float

@router.get("/labs/{lab_id}/attempt", response_model=AttemptOut)
def get_or_create_attempt(lab_id: str, user: TokenData = Depends(any_role), db: Session = Depends(get_db)):
    return svc.get_or_create_attempt(db, lab_id, user)

@router.post("/labs/{lab_id}/attempt/start", response_model=AttemptOut)
def start_attempt(lab_id: str, user: TokenData = Depends(any_role), db: Session = Depends(get_db)):
    return svc.start_attempt(db, lab_id, user.sub)

@router.post("/labs/{lab_id}/attempt/submit", response_model=SubmitResult)
def submit_attempt(lab_id: str, user: TokenData = Depends(any_role), db: Session = Depends(get_db),
                   grade_queue: GradeQueue = Depends(get_grade_queue)):
    report = svc.submit_attempt(db, lab_id, user.sub)
    job_id = None
    try:
        job_id = grade_queue.enqueue_attempt(report.attempt_id)
    except Exception as e:
        # the attempt is graded either way; bulk resync can pick it up later
        logger.warning("Could not enqueue grade passback for attempt %s: %s", report.attempt_id, e)
    attempt = svc.get_attempt(db, report.attempt_id)
    return SubmitResult(attempt=AttemptOut.model_validate(attempt), grade_result=GradeReportOut.model_validate(report), passback_job_id=job_id)

@router.get("/attempts/{attempt_id}", response_model=AttemptDetail)
def attempt_detail(attempt_id: str, user: TokenData = Depends(any_role), db: Session = Depends(get_db)):
    attempt = svc.get_attempt_for_user(db, attempt_id, user)
    detail = AttemptDetail.model_validate(attempt)
    detail.sync_logs = detail.sync_logs[:5]
    return detail

@router.post("/attempts/{attempt_id}/responses", response_model=ResponsesSaved)
def save_responses(attempt_id: str, payload: ResponsesIn, user: TokenData = Depends(any_role), db: Session = Depends(get_db)):
    rows = svc.upsert_responses(db, attempt_id, user, payload.responses)
    return ResponsesSaved(message=f"{len(rows)} responses saved.", responses=[ResponseOut.model_validate(r) for r in rows])

@router.get("/attempts/{attempt_id}/responses", response_model=ResponseList)
def list_responses(attempt_id: str, user: TokenData = Depends(any_role), db: Session = Depends(get_db)):
    attempt = svc.get_attempt_for_user(db, attempt_id, user)
    rows = [ResponseOut.model_validate(r) for r in attempt.responses]
    return ResponseList(attempt_id=attempt_id, responses=rows, total=len(rows))

@router.put("/attempts/{attempt_id}/grade", response_model=GradeOverrideResult)
def override_grade(attempt_id: str, payload: GradeOverride, user: TokenData = Depends(staff_only), db: Session = Depends(get_db)):
    attempt = svc.override_response_grade(db, attempt_id, payload.response_id, payload.override_points, payload.feedback)
    return GradeOverrideResult(
        message="Grade override applied.", attempt_id=attempt_id, response_id=payload.response_id,
        override_points=payload.override_points, new_total_score=attempt.score or 0.0, new_percentage=attempt.percentage or 0.0,
    )
