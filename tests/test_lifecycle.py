import pytest
from pydantic import ValidationError

from errors import ExamLocked, InvalidTransition
from lifecycle import ensure_writable, is_locked, transition, update_exam_config
from schemas import AllDepartments, ExamStatus, Standards, SubjectConfig


def test_happy_path(make_exam, directory):
    exam = make_exam()
    exam = transition(exam, ExamStatus.scheduled, directory=directory)
    exam = transition(exam, ExamStatus.ongoing)
    exam = transition(exam, ExamStatus.completed)
    assert exam.status == ExamStatus.completed


def test_scheduled_can_complete_directly(make_exam):
    exam = make_exam(status=ExamStatus.scheduled)
    assert transition(exam, "completed").status == ExamStatus.completed


@pytest.mark.parametrize("status", [ExamStatus.draft, ExamStatus.scheduled, ExamStatus.ongoing])
def test_cancel_from_any_open_state(make_exam, status):
    assert transition(make_exam(status=status), ExamStatus.cancelled).status == ExamStatus.cancelled


@pytest.mark.parametrize(
    "current,target",
    [
        (ExamStatus.draft, ExamStatus.ongoing),
        (ExamStatus.draft, ExamStatus.completed),
        (ExamStatus.ongoing, ExamStatus.scheduled),
        (ExamStatus.completed, ExamStatus.cancelled),
        (ExamStatus.cancelled, ExamStatus.draft),
    ],
)
def test_illegal_transitions(make_exam, current, target):
    with pytest.raises(InvalidTransition):
        transition(make_exam(status=current), target)


def test_scheduling_needs_subjects(make_exam, directory):
    with pytest.raises(InvalidTransition):
        transition(make_exam(subjects=[]), ExamStatus.scheduled, directory=directory)


def test_scheduling_needs_students(make_exam, directory):
    exam = make_exam(scope=Standards(values={"Nobody's Standard"}))
    with pytest.raises(InvalidTransition):
        transition(exam, ExamStatus.scheduled, directory=directory)


def test_transition_returns_copy(make_exam, directory):
    exam = make_exam()
    scheduled = transition(exam, ExamStatus.scheduled, directory=directory)
    assert exam.status == ExamStatus.draft
    assert scheduled.status == ExamStatus.scheduled


def test_lock_predicate(make_exam):
    assert not is_locked(make_exam(status=ExamStatus.ongoing))
    assert not is_locked(make_exam(status=ExamStatus.completed))
    assert is_locked(make_exam(status=ExamStatus.completed, verified=True))
    assert is_locked(make_exam(status=ExamStatus.cancelled))
    with pytest.raises(ExamLocked):
        ensure_writable(make_exam(status=ExamStatus.completed, verified=True))


def test_config_edits_only_before_exam_starts(make_exam):
    scheduled = make_exam(status=ExamStatus.scheduled)
    edited = update_exam_config(scheduled, subjects=[SubjectConfig(subject_id="HIST")])
    assert [s.subject_id for s in edited.subjects] == ["HIST"]

    with pytest.raises(ExamLocked):
        update_exam_config(make_exam(status=ExamStatus.ongoing), name="Renamed")


def test_config_edit_runs_scope_precedence(make_exam):
    edited = update_exam_config(make_exam(), scope={"kind": "departments", "ids": ["__all__", "D1"]})
    assert isinstance(edited.scope, AllDepartments)


def test_scheduled_exam_cannot_drop_all_subjects(make_exam):
    with pytest.raises(ValidationError):
        update_exam_config(make_exam(status=ExamStatus.scheduled), subjects=[])
