# errors.py
"""Exam engine error taxonomy. Each error knows the HTTP status it maps to."""

from typing import Any, Dict, Optional


class ExamError(Exception):
    status_code = 400
    code = "exam_error"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": False, "error": self.message, "code": self.code}
        if self.details:
            out.update(self.details)
        return out


class Locked(ExamError):
    """Attempt is submitted and read-only."""
    status_code = 409
    code = "locked"


class AlreadySubmitted(ExamError):
    """Exam already submitted."""
    status_code = 409
    code = "already_submitted"


class NotFound(ExamError):
    """Not found."""
    status_code = 404
    code = "not_found"


class ExamInactive(ExamError):
    """This exam is not open for attempts."""
    status_code = 403
    code = "exam_inactive"


class ValidationFailed(ExamError):
    """Invalid answer payload."""
    status_code = 400
    code = "validation_failed"

    def __init__(self, message: str = "", field: Optional[str] = None, **details: Any):
        if field is not None:
            details["field"] = field
        super().__init__(message, **details)
        self.field = field


__all__ = ["ExamError", "Locked", "AlreadySubmitted", "NotFound", "ExamInactive", "ValidationFailed"]
