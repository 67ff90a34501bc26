import mongomock
import pytest

from database import ExamStore, MarkStore, StudentDirectory
from schemas import AllDepartments, Exam, SubjectConfig


def seed_hierarchy(db):
    db["department"].insert_many([
        {"_id": "D1", "name": "Arts", "active": True},
        {"_id": "D2", "name": "Science", "active": True},
        {"_id": "D3", "name": "Dissolved", "active": False},
    ])
    db["sub_department"].insert_many([
        {"_id": "SD1", "department_id": "D1", "name": "History"},
        {"_id": "SD2", "department_id": "D1", "name": "Economics"},
        {"_id": "SD3", "department_id": "D2", "name": "Physics"},
    ])
    db["batch"].insert_many([
        {"_id": "B1", "department_id": "D1", "name": "Morning"},
        {"_id": "B2", "department_id": "D2", "name": "Evening"},
        {"_id": "B3", "department_id": "D1", "name": "Weekend"},
    ])
    db["student"].insert_many([
        {
            "_id": "s1",
            "full_name": "Asha Patil",
            "department": "D1",
            "sub_departments": ["SD1", "SD2"],
            "batches": ["B1", "B3"],
            "current_standard": "B.A. 1st Year",
        },
        {
            "_id": "s2",
            "full_name": "Ravi Kumar",
            "department": "D1",
            "sub_departments": ["SD2"],
            "batches": [],
            "current_standard": "B.A. 2nd Year",
            "active": True,
        },
        {
            "_id": "s3",
            "full_name": "Meera Shah",
            "department": "D2",
            "sub_departments": ["SD3"],
            "batches": ["B2"],
            "current_standard": "B.A. 1st Year",
        },
        {
            "_id": "s4",
            "full_name": "Left Student",
            "department": "D1",
            "sub_departments": ["SD1"],
            "batches": ["B1"],
            "current_standard": "B.A. 1st Year",
            "active": False,
        },
    ])


@pytest.fixture
def db():
    return mongomock.MongoClient().db


@pytest.fixture
def directory(db):
    seed_hierarchy(db)
    return StudentDirectory(db)


@pytest.fixture
def store(db):
    return MarkStore(db)


@pytest.fixture
def exam_store(db):
    return ExamStore(db)


@pytest.fixture
def make_exam():
    def _make(scope=None, subjects=None, **kwargs):
        if subjects is None:
            subjects = [
                SubjectConfig(subject_id="MATH", max_marks=100, passing_marks=40),
                SubjectConfig(subject_id="ENG", max_marks=50, passing_marks=20),
            ]
        kwargs.setdefault("id", "E1")
        kwargs.setdefault("name", "Midterm")
        return Exam(scope=scope if scope is not None else AllDepartments(), subjects=subjects, **kwargs)

    return _make
