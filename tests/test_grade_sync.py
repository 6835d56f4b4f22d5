from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import httpx
import pytest

from labgrade.core import errors
from labgrade.core.config import settings
from labgrade.jobs.passback import grade_passback_job
from labgrade.jobs.queue import GradeQueue
from labgrade.jobs.worker import log_queue_health
from labgrade.models.orm import GradeSyncLog, LabAttempt
from labgrade.services.gradebook import DeliveryResponse, GradeBookClient, ScorePayload
from labgrade.services.grade_sync import SyncKind, deliver_grade, list_sync_logs

OUTCOME_URL = "https://canvas.example.edu/api/lti/courses/7/line_items/42"


@pytest.fixture
def graded_attempt(db, seed):
    attempt = LabAttempt(
        lab_id=seed.lab_id, student_id="student-1", attempt_number=1, status="graded",
        score=90.0, percentage=90.0, graded_at=datetime.now(timezone.utc), lti_outcome_url=OUTCOME_URL,
    )
    db.add(attempt)
    db.commit()
    return attempt


def _client(status=200, body=None, error=None):
    client = MagicMock(spec=GradeBookClient)
    if error:
        client.publish_score.side_effect = error
    else:
        client.publish_score.return_value = DeliveryResponse(status=status, body=body or {})
    return client


def _statuses(db, attempt_id):
    return [row.canvas_status for row in list_sync_logs(db, attempt_id)]


class TestDeliverGrade:
    def test_success_logs_and_sends_score(self, db, graded_attempt):
        client = _client(200, {"resultUrl": "r/1"})
        result = deliver_grade(db, graded_attempt.id, client)

        assert result.success and result.kind is SyncKind.SUCCESS
        assert _statuses(db, graded_attempt.id) == ["success"]
        url, payload = client.publish_score.call_args.args
        assert url == OUTCOME_URL
        body = payload.to_json()
        assert body["userId"] == "canvas-101"
        assert body["scoreGiven"] == 90.0
        assert body["scoreMaximum"] == 100.0
        assert body["gradingProgress"] == "FullyGraded"

    def test_missing_outcome_reference_is_skipped(self, db, graded_attempt):
        graded_attempt.lti_outcome_url = None
        db.commit()
        client = _client()

        result = deliver_grade(db, graded_attempt.id, client)

        assert result.success is False
        assert result.retryable is False
        assert result.log_status == "skipped"
        client.publish_score.assert_not_called()
        assert _statuses(db, graded_attempt.id) == ["skipped"]

    def test_rejection_is_terminal(self, db, graded_attempt):
        result = deliver_grade(db, graded_attempt.id, _client(422, {"error": "bad score"}))
        assert result.kind is SyncKind.TERMINAL
        assert result.http_status == 422
        assert _statuses(db, graded_attempt.id) == ["failed"]

    def test_transport_error_is_retryable(self, db, graded_attempt):
        result = deliver_grade(db, graded_attempt.id, _client(error=httpx.ConnectError("connection refused")))
        assert result.retryable
        [row] = list_sync_logs(db, graded_attempt.id)
        assert row.canvas_status == "error"
        assert row.canvas_response["type"] == "ConnectError"

    def test_unscored_attempt(self, db, graded_attempt):
        graded_attempt.score = None
        db.commit()
        with pytest.raises(errors.PermanentSyncFailure):
            deliver_grade(db, graded_attempt.id, _client())

    def test_missing_attempt(self, db, seed):
        with pytest.raises(errors.NotFound):
            deliver_grade(db, "missing", _client())

    def test_every_delivery_appends_a_row(self, db, graded_attempt):
        deliver_grade(db, graded_attempt.id, _client(error=httpx.ReadTimeout("slow")))
        deliver_grade(db, graded_attempt.id, _client(500))
        deliver_grade(db, graded_attempt.id, _client(201))
        assert sorted(_statuses(db, graded_attempt.id)) == ["error", "failed", "success"]
        assert db.query(GradeSyncLog).count() == 3


class TestPassbackJob:
    def test_transport_error_raises_for_retry(self, session_factory, db, graded_attempt):
        client = _client(error=httpx.ConnectError("down"))
        with patch("labgrade.jobs.passback.SessionLocal", session_factory):
            with pytest.raises(errors.TransientSyncFailure):
                grade_passback_job(graded_attempt.id, client=client)
        assert _statuses(db, graded_attempt.id) == ["error"]

    def test_each_retry_is_audited(self, session_factory, db, graded_attempt):
        client = _client(error=httpx.ConnectError("down"))
        with patch("labgrade.jobs.passback.SessionLocal", session_factory):
            for _ in range(settings.PASSBACK_MAX_ATTEMPTS):
                with pytest.raises(errors.TransientSyncFailure):
                    grade_passback_job(graded_attempt.id, client=client)
        assert _statuses(db, graded_attempt.id) == ["error"] * 3

    def test_skipped_attempt_does_not_raise(self, session_factory, db, graded_attempt):
        graded_attempt.lti_outcome_url = None
        db.commit()
        with patch("labgrade.jobs.passback.SessionLocal", session_factory):
            result = grade_passback_job(graded_attempt.id, client=_client())
        assert result["success"] is False
        assert result["syncStatus"] == "skipped"

    def test_rejection_does_not_raise(self, session_factory, graded_attempt):
        with patch("labgrade.jobs.passback.SessionLocal", session_factory):
            result = grade_passback_job(graded_attempt.id, client=_client(403))
        assert result["syncStatus"] == "failed"
        assert result["retryable"] is False

    def test_vanished_attempt_is_abandoned(self, session_factory, seed):
        with patch("labgrade.jobs.passback.SessionLocal", session_factory):
            result = grade_passback_job("missing", client=_client())
        assert result["success"] is False


class TestGradeQueue:
    def _queue(self):
        rq_queue = MagicMock()
        rq_queue.enqueue.return_value.get_id.return_value = "job-9"
        return GradeQueue(rq_queue, max_attempts=3, backoff=settings.passback_backoff_intervals(),
                          result_ttl=3600, failure_ttl=604800, job_timeout=120)

    def test_backoff_doubles_from_two_seconds(self):
        assert settings.passback_backoff_intervals() == [2, 4]

    def test_enqueue_uses_three_attempts(self):
        gq = self._queue()
        assert gq.enqueue_attempt("attempt-1") == "job-9"
        call = gq.queue.enqueue.call_args
        assert call.args[0] is grade_passback_job
        assert call.kwargs["kwargs"] == {"attempt_id": "attempt-1"}
        retry = call.kwargs["retry"]
        assert retry.max == 2
        assert retry.intervals == [2, 4]
        assert call.kwargs["result_ttl"] == 3600
        assert call.kwargs["failure_ttl"] == 604800

    def test_enqueue_many_counts_failures(self):
        gq = self._queue()
        gq.queue.enqueue.side_effect = [MagicMock(), ConnectionError("redis down"), MagicMock()]
        assert gq.enqueue_many(["a", "b", "c"]) == (2, 3)

    def test_health_reports_registry_counts(self):
        gq = self._queue()
        q = gq.queue
        q.count = 4
        q.started_job_registry.count = 1
        q.finished_job_registry.count = 10
        q.failed_job_registry.count = 2
        q.deferred_job_registry.count = 0
        q.scheduled_job_registry.count = 3
        assert gq.health() == {"waiting": 4, "started": 1, "finished": 10, "failed": 2, "deferred": 0, "scheduled": 3}


class TestGradeBookClient:
    def test_posts_score_to_line_item(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["type"] = request.headers.get("Content-Type")
            return httpx.Response(200, json={"ok": True})

        client = GradeBookClient(access_token="tok", transport=httpx.MockTransport(handler))
        payload = ScorePayload(user_id="canvas-101", score_given=9.0, score_maximum=10.0, timestamp="2026-01-01T00:00:00+00:00")
        response = client.publish_score(OUTCOME_URL + "/", payload)

        assert response.ok
        assert response.body == {"ok": True}
        assert seen["url"] == OUTCOME_URL + "/scores"
        assert seen["auth"] == "Bearer tok"
        assert seen["type"] == "application/vnd.ims.lis.v1.score+json"

    def test_non_json_error_body(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503, text="maintenance"))
        client = GradeBookClient(transport=transport)
        payload = ScorePayload(user_id="u", score_given=1.0, score_maximum=1.0, timestamp="t")
        response = client.publish_score(OUTCOME_URL, payload)
        assert not response.ok
        assert response.body == {"text": "maintenance"}


def test_health_monitor_keeps_going_after_redis_errors(caplog):
    grade_queue = MagicMock(spec=GradeQueue)
    grade_queue.health.side_effect = [ConnectionError("redis down"), {"waiting": 1, "failed": 0}]
    stop = MagicMock()
    stop.wait.side_effect = [False, False, True]

    with caplog.at_level("INFO", logger="labgrade.jobs.worker"):
        log_queue_health(grade_queue, stop, interval=1)

    assert grade_queue.health.call_count == 2
    assert "waiting=1, failed=0" in caplog.text
