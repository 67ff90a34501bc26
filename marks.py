"""
Marks validation and aggregation.

A submission is checked against the exam's subject configuration and folded
into the canonical ``ExamMarkRecord``: per-subject marks (division sums are
always recomputed here, never trusted from input), pass/fail, totals,
percentage and grade. Records are keyed by (exam_id, student_id) and written
through ``MarkStore.upsert`` with compare-and-set on ``version``.
"""
import math
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from errors import (
    DivisionCountMismatch,
    ExamError,
    ExamLocked,
    NotFound,
    OutOfRangeMarks,
    StudentNotEligible,
    UnknownSubject,
)
from lifecycle import ensure_writable
from logger import get_logger
from schemas import (
    BulkRowResult,
    DivisionMarkEntry,
    EligibleSet,
    Exam,
    ExamMarkRecord,
    ExamStatistics,
    ExamStatus,
    MarkStatus,
    MarksSubmission,
    SubjectConfig,
    SubjectMarkEntry,
    SubjectMarkInput,
    SubjectStatistics,
)
from scope import resolve_scope

log = get_logger("marks")

# (lowest percentage, grade), highest band first; anything below the last band is F
GRADE_BANDS = (
    (90, "A+"),
    (80, "A"),
    (70, "B+"),
    (60, "B"),
    (50, "C+"),
    (40, "C"),
    (33, "D"),
)
FAIL_GRADE = "F"


def grade_for(percentage: float) -> str:
    for floor, grade in GRADE_BANDS:
        if percentage >= floor:
            return grade
    return FAIL_GRADE


def percentage_of(obtained: float, maximum: float) -> float:
    if maximum == 0:
        return 0.0
    return obtained / maximum * 100


def _check_range(value: Optional[float], maximum: float, what: str, **context) -> float:
    if value is None:
        return 0.0
    if math.isnan(value) or value < 0 or value > maximum:
        raise OutOfRangeMarks(f"{what}: {value} is outside 0..{maximum}", value=value, max_marks=maximum, **context)
    return float(value)


def _index_submission(exam: Exam, submission: MarksSubmission) -> Dict[str, SubjectMarkInput]:
    by_subject: Dict[str, SubjectMarkInput] = {}
    for item in submission.subject_marks:
        if exam.subject(item.subject_id) is None:
            raise UnknownSubject(
                f"subject {item.subject_id} is not part of exam {exam.id}",
                subject_id=item.subject_id,
            )
        if item.subject_id in by_subject:
            raise UnknownSubject(
                f"subject {item.subject_id} appears more than once in the submission",
                subject_id=item.subject_id,
            )
        by_subject[item.subject_id] = item
    return by_subject


def _check_division_counts(exam: Exam, by_subject: Dict[str, SubjectMarkInput]) -> None:
    for config in exam.subjects:
        given = by_subject.get(config.subject_id)
        if not config.use_divisions or given is None:
            continue
        count = len(given.division_marks or [])
        if count != len(config.divisions):
            raise DivisionCountMismatch(
                f"subject {config.subject_id} expects {len(config.divisions)} division marks, got {count}",
                subject_id=config.subject_id,
                expected=len(config.divisions),
                actual=count,
            )


def _subject_entry(config: SubjectConfig, given: Optional[SubjectMarkInput]) -> SubjectMarkEntry:
    division_marks = None
    if config.use_divisions:
        division_marks = []
        for i, division in enumerate(config.divisions):
            submitted = given.division_marks[i] if given is not None else None
            value = _check_range(
                submitted.marks_obtained if submitted is not None else 0,
                division.max_marks,
                f"subject {config.subject_id} division {i + 1}",
                subject_id=config.subject_id,
                division=i + 1,
            )
            name = division.name or (submitted.name if submitted is not None else None) or f"Division {i + 1}"
            division_marks.append(DivisionMarkEntry(name=name, marks_obtained=value, max_marks=division.max_marks))
        # derived from the divisions; a submitted top-level value is ignored
        obtained = sum(d.marks_obtained for d in division_marks)
    else:
        obtained = _check_range(
            given.marks_obtained if given is not None else 0,
            config.max_marks,
            f"subject {config.subject_id}",
            subject_id=config.subject_id,
        )

    return SubjectMarkEntry(
        subject_id=config.subject_id,
        max_marks=config.max_marks,
        passing_marks=config.passing_marks,
        weightage=config.weightage,
        use_divisions=config.use_divisions,
        marks_obtained=obtained,
        division_marks=division_marks,
        passed=obtained >= config.passing_marks,
    )


def build_record(
    exam: Exam,
    submission: MarksSubmission,
    *,
    existing: Optional[ExamMarkRecord] = None,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ExamMarkRecord:
    """Validate ``submission`` and compute the full record without touching storage."""
    now = now or datetime.now(timezone.utc)

    entries: List[SubjectMarkEntry] = []
    zero_filled = False
    if submission.is_present:
        by_subject = _index_submission(exam, submission)
        _check_division_counts(exam, by_subject)
        for config in exam.subjects:
            given = by_subject.get(config.subject_id)
            if given is None or (not config.use_divisions and given.marks_obtained is None):
                zero_filled = True
            entries.append(_subject_entry(config, given))

    total_obtained = sum(e.marks_obtained for e in entries)
    total_max = sum(e.max_marks for e in entries)
    percentage = percentage_of(total_obtained, total_max)

    absent_reason = None if submission.is_present else submission.absent_reason
    incomplete = zero_filled or (not submission.is_present and not (absent_reason or "").strip())

    return ExamMarkRecord(
        exam_id=exam.id,
        student_id=submission.student_id,
        is_present=submission.is_present,
        absent_reason=absent_reason,
        subject_marks=entries,
        total_marks_obtained=total_obtained,
        total_max_marks=total_max,
        overall_percentage=percentage,
        overall_grade=grade_for(percentage),
        overall_passed=submission.is_present and bool(entries) and all(e.passed for e in entries),
        remarks=submission.remarks,
        teacher_remarks=submission.teacher_remarks,
        entered_by=existing.entered_by if existing else actor,
        created_at=existing.created_at if existing else now,
        updated_by=actor,
        updated_at=now,
        status=MarkStatus.draft if incomplete else MarkStatus.submitted,
        version=existing.version if existing else 0,
    )


def record_marks(
    exam: Exam,
    submission: MarksSubmission,
    *,
    directory,
    store,
    entered_by: Optional[str] = None,
    expected_version: Optional[int] = None,
    eligible: Optional[EligibleSet] = None,
    now: Optional[datetime] = None,
) -> ExamMarkRecord:
    """Validate one student's marks and upsert the exam-mark record.

    Eligibility is re-resolved here unless ``eligible`` is passed, so scope
    edits made after the caller loaded its student list are honoured.
    Without ``expected_version`` the stored version read just before the
    write is used; either way a concurrent write surfaces as
    ``ConcurrentModification`` instead of being overwritten.
    """
    ensure_writable(exam)
    if submission.exam_id is not None and submission.exam_id != exam.id:
        raise NotFound(
            f"submission targets exam {submission.exam_id}, not {exam.id}",
            exam_id=submission.exam_id,
        )

    if eligible is None:
        eligible = resolve_scope(exam.scope, directory)
    if submission.student_id not in eligible:
        log.warning("Rejected marks for %s: not eligible for exam %s", submission.student_id, exam.id)
        raise StudentNotEligible(
            f"student {submission.student_id} is not eligible for exam {exam.id}",
            student_id=submission.student_id,
            exam_id=exam.id,
        )

    existing = store.get(exam.id, submission.student_id)
    record = build_record(exam, submission, existing=existing, actor=entered_by, now=now)
    if existing is not None and existing.status == MarkStatus.verified:
        raise ExamLocked(
            f"marks for student {submission.student_id} in exam {exam.id} are verified",
            student_id=submission.student_id,
            exam_id=exam.id,
        )
    if expected_version is None and existing is not None:
        expected_version = existing.version

    saved = store.upsert(record, expected_version)
    log.info(
        "Saved marks for %s in exam %s: %s/%s (%s) v%d",
        saved.student_id,
        saved.exam_id,
        saved.total_marks_obtained,
        saved.total_max_marks,
        saved.overall_grade,
        saved.version,
    )
    return saved


def bulk_record_marks(
    exam: Exam,
    submissions: Iterable[MarksSubmission],
    *,
    directory,
    store,
    entered_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[BulkRowResult]:
    """Record many submissions; each row reports its own outcome and a bad row never stops the batch."""
    submissions = list(submissions)
    try:
        ensure_writable(exam)
        eligible = resolve_scope(exam.scope, directory)
    except ExamError as exc:
        return [
            BulkRowResult(student_id=s.student_id, ok=False, error_code=exc.code, error=exc.message)
            for s in submissions
        ]

    results: List[BulkRowResult] = []
    for submission in submissions:
        try:
            record = record_marks(
                exam,
                submission,
                directory=directory,
                store=store,
                entered_by=entered_by,
                eligible=eligible,
                now=now,
            )
        except ExamError as exc:
            results.append(
                BulkRowResult(student_id=submission.student_id, ok=False, error_code=exc.code, error=exc.message)
            )
        else:
            results.append(BulkRowResult(student_id=submission.student_id, ok=True, record=record))

    failed = sum(1 for r in results if not r.ok)
    log.info("Bulk marks for exam %s: %d saved, %d rejected", exam.id, len(results) - failed, failed)
    return results


def verify_marks(
    exam: Exam,
    student_id: str,
    *,
    store,
    verified_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ExamMarkRecord:
    if exam.status == ExamStatus.cancelled:
        raise ExamLocked(f"exam {exam.id} is cancelled", exam_id=exam.id)
    existing = store.get(exam.id, student_id)
    if existing is None:
        raise NotFound(f"no marks for student {student_id} in exam {exam.id}", student_id=student_id)
    if existing.status == MarkStatus.verified:
        return existing

    now = now or datetime.now(timezone.utc)
    verified = existing.model_copy(
        update={
            "status": MarkStatus.verified,
            "verified_by": verified_by,
            "updated_by": verified_by,
            "updated_at": now,
        }
    )
    saved = store.upsert(verified, existing.version)
    log.info("Verified marks for %s in exam %s", student_id, exam.id)
    return saved


def exam_statistics(exam: Exam, *, directory, store) -> ExamStatistics:
    """Summarise stored records of currently eligible students.

    Pass percentage and the percentage figures are taken over present students.
    """
    eligible = resolve_scope(exam.scope, directory)
    records = [r for r in store.list_by_exam(exam.id) if r.student_id in eligible]
    present = [r for r in records if r.is_present]
    passed = [r for r in present if r.overall_passed]
    percentages = [r.overall_percentage for r in present]

    subjects = []
    for config in exam.subjects:
        marks = [
            e.marks_obtained
            for r in present
            for e in r.subject_marks
            if e.subject_id == config.subject_id
        ]
        subjects.append(
            SubjectStatistics(
                subject_id=config.subject_id,
                average_marks=round(sum(marks) / len(marks), 2) if marks else 0,
                highest_marks=max(marks) if marks else 0,
                lowest_marks=min(marks) if marks else 0,
                students_passed=sum(1 for m in marks if m >= config.passing_marks),
            )
        )

    return ExamStatistics(
        exam_id=exam.id,
        total_students=len(eligible),
        students_present=len(present),
        students_absent=len(records) - len(present),
        students_passed=len(passed),
        pass_percentage=round(percentage_of(len(passed), len(present)), 2),
        average_percentage=round(sum(percentages) / len(percentages), 2) if percentages else 0,
        highest_percentage=round(max(percentages), 2) if percentages else 0,
        lowest_percentage=round(min(percentages), 2) if percentages else 0,
        subjects=subjects,
    )
