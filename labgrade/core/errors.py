"""
Domain error taxonomy.

Route-facing errors carry the HTTP status they translate to; the exception
handler registered in ``labgrade.main`` turns them into JSON responses.
Sync failures never reach a route: the passback job raises
``TransientSyncFailure`` so the queue retries it, and reports terminal
outcomes through ``SyncResult`` instead.
"""


class LabGradeError(Exception):
    status_code = 500
    error = "Internal Server Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(LabGradeError):
    status_code = 404
    error = "Not Found"


class ValidationError(LabGradeError):
    status_code = 400
    error = "Validation Error"


class Forbidden(LabGradeError):
    status_code = 403
    error = "Forbidden"


class SyncFailure(LabGradeError):
    status_code = 502
    error = "Grade Sync Failure"

    def __init__(self, message: str, attempt_id: str):
        super().__init__(message)
        self.attempt_id = attempt_id


class TransientSyncFailure(SyncFailure):
    """Network or remote outage. Retried by the queue."""


class PermanentSyncFailure(SyncFailure):
    """Explicit rejection or missing outcome link. Never retried."""
