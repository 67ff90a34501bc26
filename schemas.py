"""
Schemas for the exam scope and marks core

Each Pydantic model mirrors either a collaborator document (students, academic units),
an exam configuration, the inbound marks submission or the stored exam-mark record.
"""
import math
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, BeforeValidator, Field, PrivateAttr, model_validator

DIVISION_COUNT = 10
ALL_DEPARTMENTS_MARKER = "__all__"


class ExamType(str, Enum):
    unit = "unit"
    midterm = "midterm"
    final = "final"
    assignment = "assignment"
    project = "project"
    practical = "practical"


class ExamStatus(str, Enum):
    draft = "draft"
    scheduled = "scheduled"
    ongoing = "ongoing"
    completed = "completed"
    cancelled = "cancelled"


class MarkStatus(str, Enum):
    draft = "draft"
    submitted = "submitted"
    verified = "verified"


class Department(BaseModel):
    id: str
    name: str = ""
    active: bool = True


class SubDepartment(BaseModel):
    id: str
    department_id: str
    name: str = ""
    active: bool = True


class Batch(BaseModel):
    id: str
    department_id: str
    name: str = ""
    active: bool = True


class Student(BaseModel):
    id: str
    full_name: str = Field("", description="Student display name")
    department: str = Field(..., description="Owning department id")
    sub_departments: List[str] = Field(default_factory=list)
    batches: List[str] = Field(default_factory=list)
    current_standard: Optional[str] = Field(None, description="Standard label, e.g. 'B.A. 1st Year'")
    active: bool = True


class AllDepartments(BaseModel):
    kind: Literal["all_departments"] = "all_departments"


class Departments(BaseModel):
    kind: Literal["departments"] = "departments"
    ids: FrozenSet[str] = Field(..., description="Department ids")


class SubDepartments(BaseModel):
    kind: Literal["sub_departments"] = "sub_departments"
    department_id: str
    ids: FrozenSet[str] = Field(..., description="Sub-department ids inside department_id")


class Batches(BaseModel):
    kind: Literal["batches"] = "batches"
    department_id: str
    ids: FrozenSet[str] = Field(..., description="Batch ids inside department_id")


class Standards(BaseModel):
    kind: Literal["standards"] = "standards"
    values: FrozenSet[str] = Field(..., description="Standard labels, department independent")


class CustomStudents(BaseModel):
    kind: Literal["custom_students"] = "custom_students"
    ids: FrozenSet[str] = Field(..., description="Explicit student ids")


ScopeVariant = Union[AllDepartments, Departments, SubDepartments, Batches, Standards, CustomStudents]

# keys used by older clients that stored scope as selectionType + optional arrays
_LEGACY_KINDS = {
    "all": "all_departments",
    "department": "departments",
    "by-department": "departments",
    "subDepartment": "sub_departments",
    "by-subdepartment": "sub_departments",
    "batch": "batches",
    "by-batch": "batches",
    "standard": "standards",
    "by-standard": "standards",
    "custom": "custom_students",
    "manual": "custom_students",
}


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)):
        return [value]
    return [v for v in value if v not in (None, "")]


def _from_legacy(data: Dict[str, Any]) -> Dict[str, Any]:
    selection = data.get("selectionType") or data.get("examScope")
    kind = _LEGACY_KINDS.get(selection)
    if kind is None:
        raise ValueError(f"unknown selectionType: {selection!r}")

    department = data.get("department") or data.get("targetDepartment")
    if kind == "departments":
        ids = _as_list(data.get("targetDepartments")) or _as_list(department)
        return {"kind": kind, "ids": ids}
    if kind == "sub_departments":
        ids = _as_list(data.get("subDepartments")) or _as_list(data.get("targetSubDepartments"))
        return {"kind": kind, "department_id": department, "ids": ids}
    if kind == "batches":
        ids = _as_list(data.get("batches")) or _as_list(data.get("targetBatches"))
        return {"kind": kind, "department_id": department, "ids": ids}
    if kind == "standards":
        return {"kind": kind, "values": _as_list(data.get("targetStandards"))}
    if kind == "custom_students":
        return {"kind": kind, "ids": _as_list(data.get("customStudents"))}
    return {"kind": kind}


def _is_all(value: Any) -> bool:
    if isinstance(value, AllDepartments):
        return True
    if isinstance(value, Departments):
        return ALL_DEPARTMENTS_MARKER in value.ids
    if isinstance(value, dict):
        if value.get("kind") == "all_departments":
            return True
        if value.get("kind") == "departments":
            return ALL_DEPARTMENTS_MARKER in _as_list(value.get("ids"))
    return False


def coerce_scope(value: Any) -> Any:
    """Normalise any accepted scope payload before the tagged union validates it.

    ``AllDepartments`` takes precedence: a department collection carrying the
    ``__all__`` marker, or a list that contains an all-departments entry,
    collapses to a plain ``AllDepartments`` and every concrete id is dropped.
    """
    if isinstance(value, (list, tuple)):
        parts = [coerce_scope(v) for v in value]
        if not parts:
            raise ValueError("scope list is empty")
        if any(_is_all(p) for p in parts):
            return AllDepartments()
        if len(parts) == 1:
            return parts[0]
        kinds = {p.kind if isinstance(p, BaseModel) else p.get("kind") for p in parts}
        if kinds == {"departments"}:
            ids: List[str] = []
            for p in parts:
                ids.extend(p.ids if isinstance(p, BaseModel) else _as_list(p.get("ids")))
            return {"kind": "departments", "ids": ids}
        raise ValueError(f"cannot combine scope kinds {sorted(k for k in kinds if k)}")

    if isinstance(value, dict) and "kind" not in value and ("selectionType" in value or "examScope" in value):
        value = _from_legacy(value)

    if _is_all(value):
        return AllDepartments()
    return value


Scope = Annotated[ScopeVariant, Field(discriminator="kind"), BeforeValidator(coerce_scope)]


class EligibleStudent(BaseModel):
    student_id: str
    reason: str = Field(..., description="Rule that admitted the student, e.g. 'batch:B1'")


class EligibleSet(BaseModel):
    """Resolved exam audience, ordered by student id."""
    students: List[EligibleStudent] = Field(default_factory=list)
    _ids: FrozenSet[str] = PrivateAttr(default=frozenset())

    def model_post_init(self, __context: Any) -> None:
        self._ids = frozenset(s.student_id for s in self.students)

    @property
    def student_ids(self) -> FrozenSet[str]:
        return self._ids

    def reason_for(self, student_id: str) -> Optional[str]:
        for s in self.students:
            if s.student_id == student_id:
                return s.reason
        return None

    def __contains__(self, student_id: object) -> bool:
        return student_id in self._ids

    def __len__(self) -> int:
        return len(self.students)


class DivisionConfig(BaseModel):
    name: str = ""
    max_marks: float = Field(..., gt=0)


class SubjectConfig(BaseModel):
    subject_id: str
    max_marks: float = Field(100, gt=0)
    passing_marks: float = Field(40, ge=0)
    weightage: float = Field(1, gt=0, description="Stored only; totals are never weighted")
    use_divisions: bool = False
    divisions: List[DivisionConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_marks(self) -> "SubjectConfig":
        if self.passing_marks > self.max_marks:
            raise ValueError(
                f"passing_marks ({self.passing_marks}) exceeds max_marks ({self.max_marks})"
            )
        if not self.use_divisions:
            self.divisions = []
            return self
        if not self.divisions:
            each = self.max_marks / DIVISION_COUNT
            self.divisions = [
                DivisionConfig(name=f"Division {i + 1}", max_marks=each) for i in range(DIVISION_COUNT)
            ]
        if len(self.divisions) != DIVISION_COUNT:
            raise ValueError(f"expected {DIVISION_COUNT} divisions, got {len(self.divisions)}")
        total = sum(d.max_marks for d in self.divisions)
        if not math.isclose(total, self.max_marks, abs_tol=1e-6):
            raise ValueError(f"division max marks sum to {total}, subject max_marks is {self.max_marks}")
        return self


class Exam(BaseModel):
    id: Optional[str] = None
    name: str
    exam_type: ExamType = ExamType.unit
    status: ExamStatus = ExamStatus.draft
    scope: Scope
    subjects: List[SubjectConfig] = Field(default_factory=list, description="Canonical report order")
    verified: bool = Field(False, description="Set by the external verification authority")

    @model_validator(mode="after")
    def _check_subjects(self) -> "Exam":
        seen = set()
        for s in self.subjects:
            if s.subject_id in seen:
                raise ValueError(f"subject {s.subject_id} configured twice")
            seen.add(s.subject_id)
        if self.status != ExamStatus.draft and not self.subjects:
            raise ValueError(f"exam in status {self.status.value} must have subjects")
        return self

    def subject(self, subject_id: str) -> Optional[SubjectConfig]:
        for s in self.subjects:
            if s.subject_id == subject_id:
                return s
        return None


class DivisionMarkInput(BaseModel):
    name: Optional[str] = None
    marks_obtained: float = 0


class SubjectMarkInput(BaseModel):
    subject_id: str
    marks_obtained: Optional[float] = Field(None, description="Ignored when the subject uses divisions")
    division_marks: Optional[List[DivisionMarkInput]] = None


class MarksSubmission(BaseModel):
    exam_id: Optional[str] = None
    student_id: str
    is_present: bool = True
    absent_reason: Optional[str] = None
    subject_marks: List[SubjectMarkInput] = Field(default_factory=list)
    remarks: Optional[str] = None
    teacher_remarks: Optional[str] = None


class DivisionMarkEntry(BaseModel):
    name: str
    marks_obtained: float = Field(..., ge=0)
    max_marks: float = Field(..., gt=0)


class SubjectMarkEntry(BaseModel):
    subject_id: str
    max_marks: float
    passing_marks: float
    weightage: float = 1
    use_divisions: bool = False
    marks_obtained: float = 0
    division_marks: Optional[List[DivisionMarkEntry]] = None
    passed: bool = False


class ExamMarkRecord(BaseModel):
    exam_id: str
    student_id: str
    is_present: bool = True
    absent_reason: Optional[str] = None
    subject_marks: List[SubjectMarkEntry] = Field(default_factory=list)
    total_marks_obtained: float = 0
    total_max_marks: float = 0
    overall_percentage: float = 0
    overall_grade: str = "F"
    overall_passed: bool = False
    remarks: Optional[str] = None
    teacher_remarks: Optional[str] = None
    entered_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    status: MarkStatus = MarkStatus.draft
    version: int = Field(0, ge=0, description="Bumped on every stored write")

    @property
    def key(self) -> Tuple[str, str]:
        return (self.exam_id, self.student_id)


class BulkRowResult(BaseModel):
    student_id: str
    ok: bool
    record: Optional[ExamMarkRecord] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


class SubjectStatistics(BaseModel):
    subject_id: str
    average_marks: float = 0
    highest_marks: float = 0
    lowest_marks: float = 0
    students_passed: int = 0


class ExamStatistics(BaseModel):
    exam_id: str
    total_students: int = 0
    students_present: int = 0
    students_absent: int = 0
    students_passed: int = 0
    pass_percentage: float = 0
    average_percentage: float = 0
    highest_percentage: float = 0
    lowest_percentage: float = 0
    subjects: List[SubjectStatistics] = Field(default_factory=list)
