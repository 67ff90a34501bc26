"""
Exam status model.

draft -> scheduled -> ongoing -> completed, with scheduled -> completed allowed
and cancelled reachable from every non-terminal state. Transitions are caller
invoked; this module only checks legality and returns the updated exam.
"""
from typing import Dict, FrozenSet, List, Optional

from errors import ExamLocked, InvalidTransition
from logger import get_logger
from schemas import Exam, ExamStatus, SubjectConfig
from scope import resolve_scope

log = get_logger("lifecycle")

TRANSITIONS: Dict[ExamStatus, FrozenSet[ExamStatus]] = {
    ExamStatus.draft: frozenset({ExamStatus.scheduled, ExamStatus.cancelled}),
    ExamStatus.scheduled: frozenset({ExamStatus.ongoing, ExamStatus.completed, ExamStatus.cancelled}),
    ExamStatus.ongoing: frozenset({ExamStatus.completed, ExamStatus.cancelled}),
    ExamStatus.completed: frozenset(),
    ExamStatus.cancelled: frozenset(),
}

CONFIGURABLE = frozenset({ExamStatus.draft, ExamStatus.scheduled})


def is_locked(exam: Exam) -> bool:
    """True once no more marks may be written: cancelled, or completed and verified."""
    if exam.status == ExamStatus.cancelled:
        return True
    return exam.status == ExamStatus.completed and exam.verified


def ensure_writable(exam: Exam) -> None:
    if is_locked(exam):
        raise ExamLocked(
            f"exam {exam.id} is {exam.status.value}{' and verified' if exam.verified else ''}; marks are locked",
            exam_id=exam.id,
        )


def ensure_configurable(exam: Exam) -> None:
    if exam.status not in CONFIGURABLE:
        raise ExamLocked(
            f"exam {exam.id} is {exam.status.value}; scope and subjects can no longer change",
            exam_id=exam.id,
        )


def can_transition(current: ExamStatus, target: ExamStatus) -> bool:
    return target in TRANSITIONS[current]


def transition(exam: Exam, target: ExamStatus, *, directory=None) -> Exam:
    target = ExamStatus(target)
    if not can_transition(exam.status, target):
        raise InvalidTransition(
            f"cannot move exam {exam.id} from {exam.status.value} to {target.value}",
            exam_id=exam.id,
            current=exam.status.value,
            target=target.value,
        )

    if exam.status == ExamStatus.draft and target == ExamStatus.scheduled:
        if not exam.subjects:
            raise InvalidTransition(f"exam {exam.id} has no subjects", exam_id=exam.id)
        if directory is None:
            raise InvalidTransition("a student directory is required to schedule an exam", exam_id=exam.id)
        if len(resolve_scope(exam.scope, directory)) == 0:
            raise InvalidTransition(f"exam {exam.id} scope resolves to no students", exam_id=exam.id)

    log.info("Exam %s: %s -> %s", exam.id, exam.status.value, target.value)
    return exam.model_copy(update={"status": target})


def update_exam_config(
    exam: Exam,
    *,
    name: Optional[str] = None,
    scope=None,
    subjects: Optional[List[SubjectConfig]] = None,
) -> Exam:
    """Apply a configuration edit, legal only while the exam is draft or scheduled."""
    ensure_configurable(exam)
    data = exam.model_dump()
    if name is not None:
        data["name"] = name
    if scope is not None:
        data["scope"] = scope
    if subjects is not None:
        data["subjects"] = subjects
    # re-validate so scope coercion and the subject invariants run again
    return Exam.model_validate(data)
