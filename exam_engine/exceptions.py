"""Domain errors raised by the assessment services.

Routers never build error responses by hand: services raise one of these and
the handler registered in ``exam_engine.main`` turns it into JSON. The classes
are grouped by how a caller is expected to recover:

- ``EligibilityError``: rejected before anything was written; retry later.
- ``StateError``: the attempt is not in a state that allows the request;
  fetch the current attempt and act on it.
- ``ValidationFailed``: malformed input; nothing was written.
- ``NotFound``: unknown assessment, attempt or question.
"""

from datetime import datetime
from typing import Any, Optional


class ExamEngineError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.data = data or {}

    def to_dict(self) -> dict[str, Any]:
        payload = {}
        for key, value in self.data.items():
            payload[key] = value.isoformat() if isinstance(value, datetime) else value
        return {"detail": self.message, "code": self.code, "data": payload}


# ===================== ELIGIBILITY =====================


class EligibilityError(ExamEngineError):
    status_code = 403


class NotYetOpen(EligibilityError):
    code = "not_yet_open"


class WindowClosed(EligibilityError):
    code = "window_closed"


class NotAuthorized(EligibilityError):
    code = "not_authorized"


class AttemptsExhausted(EligibilityError):
    status_code = 409
    code = "attempts_exhausted"


class AttemptCooldown(EligibilityError):
    status_code = 409
    code = "attempt_cooldown"


# ===================== STATE =====================


class StateError(ExamEngineError):
    status_code = 409


class AttemptExpired(StateError):
    code = "attempt_expired"


class NotActive(StateError):
    code = "not_active"


class AlreadySubmitted(StateError):
    code = "already_submitted"


class InvalidState(StateError):
    code = "invalid_state"


class NotAvailableYet(StateError):
    status_code = 403
    code = "not_available_yet"


# ===================== VALIDATION / LOOKUP =====================


class ValidationFailed(ExamEngineError):
    status_code = 422
    code = "validation_failed"


class NotFound(ExamEngineError):
    status_code = 404
    code = "not_found"
