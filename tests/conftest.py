"""
Pytest configuration and fixtures
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("APP_SECRET", "test-secret")

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from labgrade.core.auth import TokenData, create_token
from labgrade.core.database import get_db
from labgrade.jobs.queue import GradeQueue, get_grade_queue
from labgrade.main import app
from labgrade.models.orm import AnatomicalStructure, Base, Lab, LabStructure, User

STUDENT_ID = "student-1"
OTHER_STUDENT_ID = "student-2"
INSTRUCTOR_ID = "instructor-1"


def auth(user_id: str, *roles: str) -> dict:
    return {"Authorization": f"Bearer {create_token(user_id, list(roles))}"}


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool, future=True)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed(db):
    """A published heart lab with three one-point structures and an unpublished lab."""
    db.add_all([
        User(id=STUDENT_ID, canvas_user_id="canvas-101", name="Sam Student", role="student"),
        User(id=OTHER_STUDENT_ID, canvas_user_id="canvas-102", name="Alex Student", role="student"),
        User(id=INSTRUCTOR_ID, canvas_user_id="canvas-900", name="Dr. Rivera", role="instructor"),
        AnatomicalStructure(id="s-heart", name="Heart", latin_name="Cor"),
        AnatomicalStructure(id="s-vena", name="Vena Cava", latin_name=None),
        AnatomicalStructure(id="s-aorta", name="Aorta", latin_name=None),
    ])
    lab = Lab(
        id="lab-heart", title="Heart Anatomy", is_published=True, max_points=100.0,
        rubric={"hintPenaltyPercent": 10, "acceptedAliases": {"s-aorta": ["aortic trunk"]}},
    )
    draft = Lab(id="lab-draft", title="Draft Lab", is_published=False, max_points=50.0, rubric={})
    db.add_all([lab, draft])
    db.flush()
    db.add_all([
        LabStructure(lab_id=lab.id, structure_id="s-heart", points_possible=1.0),
        LabStructure(lab_id=lab.id, structure_id="s-vena", points_possible=1.0),
        LabStructure(lab_id=lab.id, structure_id="s-aorta", points_possible=1.0),
        LabStructure(lab_id=draft.id, structure_id="s-heart", points_possible=2.0),
    ])
    db.commit()
    return SimpleNamespace(lab_id=lab.id, draft_lab_id=draft.id)


@pytest.fixture
def student():
    return TokenData(sub=STUDENT_ID, roles=["student"])


@pytest.fixture
def instructor():
    return TokenData(sub=INSTRUCTOR_ID, roles=["instructor"])


@pytest.fixture
def fake_queue():
    q = MagicMock(spec=GradeQueue)
    q.enqueue_attempt.return_value = "job-1"
    q.enqueue_many.side_effect = lambda ids: (len(ids), len(ids))
    q.health.return_value = {"waiting": 0, "started": 0, "finished": 2, "failed": 1, "deferred": 0, "scheduled": 1}
    return q


@pytest.fixture
def client(session_factory, seed, fake_queue):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_grade_queue] = lambda: fake_queue
    yield TestClient(app)
    app.dependency_overrides.clear()
