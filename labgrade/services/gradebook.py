"""
Grade book delivery over the LTI Assignment and Grade Services score endpoint.

The outcome reference stored on an attempt is the line item URL captured at
launch time; scores are POSTed to ``<line item>/scores``. Transport errors
propagate as ``httpx.HTTPError``; HTTP rejections come back as a
``DeliveryResponse`` so the caller decides what is terminal.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from labgrade.core.config import settings

SCORE_CONTENT_TYPE = "application/vnd.ims.lis.v1.score+json"


@dataclass(frozen=True)
class ScorePayload:
    user_id: str
    score_given: float
    score_maximum: float
    timestamp: str

    @classmethod
    def for_attempt(cls, attempt, now: Optional[datetime] = None) -> "ScorePayload":
        now = now or datetime.now(timezone.utc)
        return cls(
            user_id=attempt.student.canvas_user_id,
            score_given=float(attempt.score),
            score_maximum=float(attempt.lab.max_points),
            timestamp=now.isoformat(),
        )

    def to_json(self) -> dict:
        return {
            "userId": self.user_id,
            "scoreGiven": self.score_given,
            "scoreMaximum": self.score_maximum,
            "activityProgress": "Completed",
            "gradingProgress": "FullyGraded",
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class DeliveryResponse:
    status: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class GradeBookClient:
    def __init__(self, access_token: Optional[str] = None, timeout: float = 10.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.access_token = access_token
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "GradeBookClient":
        token = settings.GRADEBOOK_ACCESS_TOKEN.get_secret_value() if settings.GRADEBOOK_ACCESS_TOKEN else None
        return cls(access_token=token, timeout=settings.GRADEBOOK_TIMEOUT)

    def publish_score(self, outcome_url: str, payload: ScorePayload) -> DeliveryResponse:
        headers = {"Content-Type": SCORE_CONTENT_TYPE}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            r = client.post(f"{outcome_url.rstrip('/')}/scores", json=payload.to_json(), headers=headers)
        try:
            body = r.json()
        except ValueError:
            body = {"text": r.text[:2000]}
        return DeliveryResponse(status=r.status_code, body=body)
