"""
Error taxonomy for exam scope resolution and marks entry.

Every error carries a stable ``code`` so batch callers and the HTTP layer can
report it per row without parsing messages.
"""
from typing import Any, Dict, Optional


class ExamError(Exception):
    code = "exam_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code, "detail": self.message}
        if self.context:
            data["context"] = self.context
        return data


class InvalidScope(ExamError):
    code = "invalid_scope"


class OutOfRangeMarks(ExamError):
    code = "out_of_range_marks"


class DivisionCountMismatch(ExamError):
    code = "division_count_mismatch"


class UnknownSubject(ExamError):
    code = "unknown_subject"


class StudentNotEligible(ExamError):
    code = "student_not_eligible"


class ExamLocked(ExamError):
    code = "exam_locked"


class ConcurrentModification(ExamError):
    code = "concurrent_modification"

    def __init__(self, message: str, expected_version: Optional[int] = None, **context: Any):
        super().__init__(message, expected_version=expected_version, **context)
        self.expected_version = expected_version


class InvalidTransition(ExamError):
    code = "invalid_transition"


class NotFound(ExamError):
    code = "not_found"
