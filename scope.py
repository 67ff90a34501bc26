"""
Exam scope resolution.

Turns an exam's scope declaration into the concrete, de-duplicated audience of
active students, each tagged with the single rule that admitted it. Resolution
only reads through the directory, so concurrent callers are safe.
"""
from typing import Callable, Dict, Iterable, Optional

from errors import InvalidScope
from logger import get_logger
from schemas import (
    ALL_DEPARTMENTS_MARKER,
    AllDepartments,
    Batches,
    CustomStudents,
    Departments,
    EligibleSet,
    EligibleStudent,
    Standards,
    Student,
    SubDepartments,
)

log = get_logger("scope")


def _first_match(values: Iterable[str], wanted: Iterable[str]) -> Optional[str]:
    hits = sorted(set(values) & set(wanted))
    return hits[0] if hits else None


def _require_department(directory, department_id: Optional[str]) -> None:
    if not department_id:
        raise InvalidScope("scope does not name a department")
    dept = directory.get_department(department_id)
    if dept is None:
        raise InvalidScope(f"department {department_id} does not exist", department_id=department_id)
    if not dept.active:
        raise InvalidScope(f"department {department_id} is inactive", department_id=department_id)


def _require_children(lookup: Callable, label: str, department_id: str, ids: Iterable[str]) -> None:
    for unit_id in sorted(ids):
        unit = lookup(unit_id)
        if unit is None or not unit.active:
            raise InvalidScope(f"{label} {unit_id} does not exist or is inactive", **{f"{label}_id": unit_id})
        if unit.department_id != department_id:
            raise InvalidScope(
                f"{label} {unit_id} belongs to department {unit.department_id}, not {department_id}",
                department_id=department_id,
            )


def _build(
    students: Iterable[Student],
    reason_of: Callable[[Student], Optional[str]],
    include_inactive: bool = False,
) -> EligibleSet:
    admitted: Dict[str, str] = {}
    for student in students:
        if student.id in admitted or not (student.active or include_inactive):
            continue
        reason = reason_of(student)
        if reason is not None:
            admitted[student.id] = reason
    return EligibleSet(
        students=[EligibleStudent(student_id=sid, reason=admitted[sid]) for sid in sorted(admitted)]
    )


def resolve_scope(scope, directory) -> EligibleSet:
    """Resolve ``scope`` against ``directory`` into the exam's eligible students.

    ``directory`` needs ``list_students(filter)``, ``get_department``,
    ``get_sub_department`` and ``get_batch`` (see ``database.StudentDirectory``).
    Raises ``InvalidScope`` when the scope points at a missing or inactive unit.
    """
    if isinstance(scope, Departments) and ALL_DEPARTMENTS_MARKER in scope.ids:
        scope = AllDepartments()

    if isinstance(scope, AllDepartments):
        result = _build(directory.list_students({}), lambda s: "all-departments")

    elif isinstance(scope, Departments):
        for department_id in sorted(scope.ids):
            _require_department(directory, department_id)
        result = _build(
            directory.list_students({"departments": scope.ids}),
            lambda s: f"department:{s.department}" if s.department in scope.ids else None,
        )

    elif isinstance(scope, SubDepartments):
        _require_department(directory, scope.department_id)
        _require_children(directory.get_sub_department, "sub_department", scope.department_id, scope.ids)

        def reason_of(s: Student) -> Optional[str]:
            if s.department != scope.department_id:
                return None
            hit = _first_match(s.sub_departments, scope.ids)
            return f"sub-department:{hit}" if hit else None

        result = _build(
            directory.list_students({"department": scope.department_id, "sub_departments": scope.ids}),
            reason_of,
        )

    elif isinstance(scope, Batches):
        _require_department(directory, scope.department_id)
        _require_children(directory.get_batch, "batch", scope.department_id, scope.ids)

        def reason_of(s: Student) -> Optional[str]:
            if s.department != scope.department_id:
                return None
            hit = _first_match(s.batches, scope.ids)
            return f"batch:{hit}" if hit else None

        result = _build(
            directory.list_students({"department": scope.department_id, "batches": scope.ids}),
            reason_of,
        )

    elif isinstance(scope, Standards):
        result = _build(
            directory.list_students({"standards": scope.values}),
            lambda s: f"standard:{s.current_standard}" if s.current_standard in scope.values else None,
        )

    elif isinstance(scope, CustomStudents):
        # listed ids are taken as given, inactive included; ids missing from the directory are dropped
        if not scope.ids:
            result = EligibleSet()
        else:
            result = _build(
                directory.list_students({"ids": scope.ids, "active": None}),
                lambda s: "custom" if s.id in scope.ids else None,
                include_inactive=True,
            )

    else:
        raise InvalidScope(f"unsupported scope {type(scope).__name__}")

    log.debug("Resolved %s scope to %d student(s)", scope.kind, len(result))
    return result
