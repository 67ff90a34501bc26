import os
from typing import List, Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from database import ExamStore, MarkStore, StudentDirectory
from errors import ExamError
from lifecycle import transition, update_exam_config
from logger import get_logger
from marks import bulk_record_marks, exam_statistics, record_marks, verify_marks
from schemas import (
    BulkRowResult,
    EligibleSet,
    Exam,
    ExamMarkRecord,
    ExamStatistics,
    ExamStatus,
    ExamType,
    MarksSubmission,
    Scope,
    SubjectConfig,
)
from scope import resolve_scope

log = get_logger("api")

app = FastAPI(title="Exam Scope & Marks API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

HTTP_STATUS = {
    "not_found": 404,
    "student_not_eligible": 403,
    "exam_locked": 409,
    "concurrent_modification": 409,
    "invalid_transition": 409,
}


@app.exception_handler(ExamError)
def exam_error_handler(request, exc: ExamError):
    status = HTTP_STATUS.get(exc.code, 422)
    log.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=status, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(ValidationError)
def validation_error_handler(request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc), "code": "invalid_exam"})


# Collaborators, overridable in tests
def get_directory() -> StudentDirectory:
    return StudentDirectory()


def get_mark_store() -> MarkStore:
    return MarkStore()


def get_exam_store() -> ExamStore:
    return ExamStore()


class ExamIn(BaseModel):
    name: str
    exam_type: ExamType = ExamType.unit
    scope: Scope
    subjects: List[SubjectConfig] = Field(default_factory=list)


class ExamConfigIn(BaseModel):
    name: Optional[str] = None
    scope: Optional[Scope] = None
    subjects: Optional[List[SubjectConfig]] = None


class TransitionIn(BaseModel):
    status: ExamStatus


@app.get("/")
def root():
    return {"message": "Exam Scope & Marks API"}


@app.post("/exams", response_model=Exam)
def create_exam(payload: ExamIn, exams: ExamStore = Depends(get_exam_store)):
    exam = Exam(**payload.model_dump())
    return exams.create(exam)


@app.get("/exams/{exam_id}", response_model=Exam)
def get_exam(exam_id: str, exams: ExamStore = Depends(get_exam_store)):
    return exams.get(exam_id)


@app.put("/exams/{exam_id}", response_model=Exam)
def update_exam(exam_id: str, payload: ExamConfigIn, exams: ExamStore = Depends(get_exam_store)):
    exam = exams.get(exam_id)
    updated = update_exam_config(exam, name=payload.name, scope=payload.scope, subjects=payload.subjects)
    return exams.save(updated)


@app.post("/exams/{exam_id}/transition", response_model=Exam)
def change_status(
    exam_id: str,
    payload: TransitionIn,
    exams: ExamStore = Depends(get_exam_store),
    directory: StudentDirectory = Depends(get_directory),
):
    exam = exams.get(exam_id)
    return exams.save(transition(exam, payload.status, directory=directory))


@app.get("/exams/{exam_id}/eligible", response_model=EligibleSet)
def eligible_students(
    exam_id: str,
    exams: ExamStore = Depends(get_exam_store),
    directory: StudentDirectory = Depends(get_directory),
):
    return resolve_scope(exams.get(exam_id).scope, directory)


@app.post("/exams/{exam_id}/marks", response_model=ExamMarkRecord)
def save_marks(
    exam_id: str,
    payload: MarksSubmission,
    entered_by: Optional[str] = None,
    expected_version: Optional[int] = None,
    exams: ExamStore = Depends(get_exam_store),
    directory: StudentDirectory = Depends(get_directory),
    marks: MarkStore = Depends(get_mark_store),
):
    exam = exams.get(exam_id)
    return record_marks(
        exam,
        payload,
        directory=directory,
        store=marks,
        entered_by=entered_by,
        expected_version=expected_version,
    )


@app.post("/exams/{exam_id}/marks/bulk", response_model=List[BulkRowResult])
def save_marks_bulk(
    exam_id: str,
    payload: List[MarksSubmission],
    entered_by: Optional[str] = None,
    exams: ExamStore = Depends(get_exam_store),
    directory: StudentDirectory = Depends(get_directory),
    marks: MarkStore = Depends(get_mark_store),
):
    exam = exams.get(exam_id)
    return bulk_record_marks(exam, payload, directory=directory, store=marks, entered_by=entered_by)


@app.get("/exams/{exam_id}/marks", response_model=List[ExamMarkRecord])
def list_marks(exam_id: str, marks: MarkStore = Depends(get_mark_store)):
    return marks.list_by_exam(exam_id)


@app.put("/exams/{exam_id}/marks/{student_id}/verify", response_model=ExamMarkRecord)
def verify_student_marks(
    exam_id: str,
    student_id: str,
    verified_by: Optional[str] = None,
    exams: ExamStore = Depends(get_exam_store),
    marks: MarkStore = Depends(get_mark_store),
):
    exam = exams.get(exam_id)
    return verify_marks(exam, student_id, store=marks, verified_by=verified_by)


@app.get("/exams/{exam_id}/stats", response_model=ExamStatistics)
def exam_stats(
    exam_id: str,
    exams: ExamStore = Depends(get_exam_store),
    directory: StudentDirectory = Depends(get_directory),
    marks: MarkStore = Depends(get_mark_store),
):
    return exam_statistics(exams.get(exam_id), directory=directory, store=marks)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
