import uuid
from datetime import datetime, timezone
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Text, Boolean, ForeignKey, JSON, Float, DateTime, UniqueConstraint

ATTEMPT_STATUSES = ("not_started", "in_progress", "submitted", "graded")
ACTIVE_STATUSES = ("not_started", "in_progress")
MATCH_TYPES = ("ungraded", "exact", "fuzzy", "incorrect")
SYNC_STATUSES = ("skipped", "success", "failed", "error")

def _uuid() -> str: return str(uuid.uuid4())
def _utcnow() -> datetime: return datetime.now(timezone.utc)

class Base(DeclarativeBase): pass

# Catalog tables: mapped for reads only, managed by the catalog service.

class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    canvas_user_id: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String)

class AnatomicalStructure(Base):
    __tablename__ = "anatomical_structures"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String)
    latin_name: Mapped[str | None] = mapped_column(String, nullable=True)
    hint: Mapped[str | None] = mapped_column(Text, nullable=True)

class Lab(Base):
    __tablename__ = "labs"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    title: Mapped[str] = mapped_column(String)
    is_published: Mapped[bool] = mapped_column(Boolean, default=False)
    max_points: Mapped[float] = mapped_column(Float, default=100.0)
    rubric: Mapped[dict] = mapped_column(JSON, default=dict)
    structures: Mapped[list["LabStructure"]] = relationship(back_populates="lab")

class LabStructure(Base):
    __tablename__ = "lab_structures"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    lab_id: Mapped[str] = mapped_column(String, ForeignKey("labs.id"))
    structure_id: Mapped[str] = mapped_column(String, ForeignKey("anatomical_structures.id"))
    points_possible: Mapped[float] = mapped_column(Float, default=1.0)
    lab: Mapped[Lab] = relationship(back_populates="structures")
    structure: Mapped[AnatomicalStructure] = relationship()

# Attempt lifecycle tables.

class LabAttempt(Base):
    __tablename__ = "lab_attempts"
    __table_args__ = (UniqueConstraint("lab_id", "student_id", "attempt_number", name="lab_attempts_number_key"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    lab_id: Mapped[str] = mapped_column(String, ForeignKey("labs.id"), index=True)
    student_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    attempt_number: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(String, default="not_started")
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    graded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    time_spent_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    instructor_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    lti_outcome_url: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    lab: Mapped[Lab] = relationship()
    student: Mapped[User] = relationship()
    responses: Mapped[list["StructureResponse"]] = relationship(back_populates="attempt", order_by="StructureResponse.created_at")
    sync_logs: Mapped[list["GradeSyncLog"]] = relationship(back_populates="attempt", order_by="GradeSyncLog.synced_at.desc()")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

class StructureResponse(Base):
    __tablename__ = "structure_responses"
    __table_args__ = (UniqueConstraint("attempt_id", "structure_id", name="structure_responses_attempt_structure_key"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    attempt_id: Mapped[str] = mapped_column(String, ForeignKey("lab_attempts.id"), index=True)
    structure_id: Mapped[str] = mapped_column(String, ForeignKey("anatomical_structures.id"))
    student_answer: Mapped[str | None] = mapped_column(Text, nullable=True)
    confidence_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    hints_used: Mapped[int] = mapped_column(Integer, default=0)
    time_spent_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_correct: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    match_type: Mapped[str] = mapped_column(String, default="ungraded")
    points_earned: Mapped[float] = mapped_column(Float, default=0.0)
    auto_graded: Mapped[bool] = mapped_column(Boolean, default=True)
    instructor_override: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    attempt: Mapped[LabAttempt] = relationship(back_populates="responses")
    structure: Mapped[AnatomicalStructure] = relationship()

    @property
    def effective_points(self) -> float:
        return self.instructor_override if self.instructor_override is not None else (self.points_earned or 0.0)

class GradeSyncLog(Base):
    """Append-only: one row per delivery attempt, never updated."""
    __tablename__ = "grade_sync_logs"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    attempt_id: Mapped[str] = mapped_column(String, ForeignKey("lab_attempts.id"), index=True)
    canvas_status: Mapped[str] = mapped_column(String)
    canvas_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    attempt: Mapped[LabAttempt] = relationship(back_populates="sync_logs")
