import mongomock
import pytest

from database import StudentDirectory
from errors import InvalidScope
from schemas import (
    AllDepartments,
    Batches,
    CustomStudents,
    Departments,
    Exam,
    Standards,
    SubDepartments,
)
from scope import resolve_scope


def test_all_departments_admits_every_active_student(directory):
    result = resolve_scope(AllDepartments(), directory)
    assert [s.student_id for s in result.students] == ["s1", "s2", "s3"]
    assert result.reason_for("s1") == "all-departments"
    assert "s4" not in result


def test_resolution_is_idempotent(directory):
    scope = Batches(department_id="D1", ids={"B1", "B3"})
    first = resolve_scope(scope, directory)
    second = resolve_scope(scope, directory)
    assert first == second
    assert first.student_ids == {"s1"}


def test_departments_union(directory):
    result = resolve_scope(Departments(ids={"D1", "D2"}), directory)
    assert result.student_ids == {"s1", "s2", "s3"}
    assert result.reason_for("s3") == "department:D2"


def test_departments_rejects_dissolved_department(directory):
    with pytest.raises(InvalidScope):
        resolve_scope(Departments(ids={"D1", "D3"}), directory)


def test_departments_rejects_missing_department(directory):
    with pytest.raises(InvalidScope):
        resolve_scope(Departments(ids={"NOPE"}), directory)


def test_sub_departments_constrained_to_department(directory):
    result = resolve_scope(SubDepartments(department_id="D1", ids={"SD2"}), directory)
    assert result.student_ids == {"s1", "s2"}


def test_sub_department_reason_is_smallest_matching_id(directory):
    result = resolve_scope(SubDepartments(department_id="D1", ids={"SD1", "SD2"}), directory)
    assert result.reason_for("s1") == "sub-department:SD1"
    assert result.reason_for("s2") == "sub-department:SD2"


def test_sub_departments_with_dissolved_parent_is_invalid(directory):
    with pytest.raises(InvalidScope):
        resolve_scope(SubDepartments(department_id="D3", ids={"SD1"}), directory)


def test_sub_department_from_other_department_is_invalid(directory):
    with pytest.raises(InvalidScope):
        resolve_scope(SubDepartments(department_id="D1", ids={"SD3"}), directory)


def test_batches(directory):
    result = resolve_scope(Batches(department_id="D2", ids={"B2"}), directory)
    assert result.student_ids == {"s3"}
    assert result.reason_for("s3") == "batch:B2"


def test_unknown_batch_is_invalid(directory):
    with pytest.raises(InvalidScope):
        resolve_scope(Batches(department_id="D1", ids={"B9"}), directory)


def test_standards_ignore_departments(directory):
    result = resolve_scope(Standards(values={"B.A. 1st Year"}), directory)
    assert result.student_ids == {"s1", "s3"}
    assert result.reason_for("s1") == "standard:B.A. 1st Year"


def test_standards_scenario_one_match_one_miss():
    db = mongomock.MongoClient().db
    db["student"].insert_many([
        {"_id": "a", "department": "D1", "current_standard": "B.A. 1st Year"},
        {"_id": "b", "department": "D1", "current_standard": "B.Sc. 1st Year"},
    ])
    result = resolve_scope(Standards(values={"B.A. 1st Year"}), StudentDirectory(db))
    assert result.student_ids == {"a"}


def test_custom_students_keep_listed_inactive_and_drop_unknown(directory):
    result = resolve_scope(CustomStudents(ids={"s2", "s4", "gone"}), directory)
    assert result.student_ids == {"s2", "s4"}
    assert result.reason_for("s4") == "custom"
    assert "gone" not in result


def test_empty_custom_scope_resolves_to_nobody(directory):
    assert len(resolve_scope(CustomStudents(ids=set()), directory)) == 0


def test_all_marker_in_department_ids_takes_precedence(directory):
    mixed = resolve_scope(Departments(ids={"__all__", "X"}), directory)
    assert mixed == resolve_scope(AllDepartments(), directory)


def test_legacy_payload_with_all_and_concrete_ids_is_all_departments(directory):
    exam = Exam(
        id="E1",
        name="Unit test",
        scope={"selectionType": "department", "targetDepartments": ["__all__", "X"]},
    )
    assert isinstance(exam.scope, AllDepartments)
    assert resolve_scope(exam.scope, directory) == resolve_scope(AllDepartments(), directory)


def test_scope_list_with_all_departments_collapses(directory):
    exam = Exam(
        id="E1",
        name="Unit test",
        scope=[{"kind": "all_departments"}, {"kind": "departments", "ids": ["X"]}],
    )
    assert isinstance(exam.scope, AllDepartments)
