import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from pymongo import ASCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import ConcurrentModification, NotFound
from logger import get_logger
from schemas import Batch, Department, Exam, ExamMarkRecord, Student, SubDepartment

# Load environment variables if present
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "appdb")

log = get_logger("database")

client = None
_db = None

try:
    client = MongoClient(DATABASE_URL)
    _db = client[DATABASE_NAME]
except PyMongoError as exc:
    log.warning("MongoDB client unavailable: %s", exc)
    client = None
    _db = None

# Expose db for other modules
db = _db


def _require_db(database=None):
    database = database if database is not None else db
    if database is None:
        raise RuntimeError("Database not initialized")
    return database


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_str_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    if doc.get("_id"):
        doc["id"] = str(doc["_id"])
        del doc["_id"]
    return doc


def _id_candidates(ids: Iterable[str]) -> List[Any]:
    """Match ids stored either as plain strings or as ObjectIds."""
    out: List[Any] = []
    for i in ids:
        out.append(i)
        if ObjectId.is_valid(i):
            out.append(ObjectId(i))
    return out


def create_document(collection_name: str, data: Dict[str, Any], database=None) -> str:
    database = _require_db(database)
    data = dict(data)
    now = _utcnow()
    if "created_at" not in data:
        data["created_at"] = now
    data["updated_at"] = now
    result = database[collection_name].insert_one(data)
    return str(result.inserted_id)


def get_document_by_id(collection_name: str, doc_id: str, database=None) -> Optional[Dict[str, Any]]:
    database = _require_db(database)
    try:
        doc = database[collection_name].find_one({"_id": ObjectId(doc_id)})
    except (InvalidId, TypeError):
        return None
    return _to_str_id(doc) if doc else None


def update_document(collection_name: str, doc_id: str, updates: Dict[str, Any], database=None) -> bool:
    database = _require_db(database)
    updates = dict(updates)
    updates["updated_at"] = _utcnow()
    try:
        result = database[collection_name].update_one({"_id": ObjectId(doc_id)}, {"$set": updates})
    except (InvalidId, TypeError):
        return False
    return result.matched_count > 0


class StudentDirectory:
    """Read-only view over students and the department / sub-department / batch hierarchy."""

    def __init__(self, database=None):
        self.db = _require_db(database)

    @staticmethod
    def _student_query(filter_dict: Dict[str, Any]) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        active = filter_dict.get("active", True)
        if active is True:
            # documents without the flag count as active
            query["active"] = {"$ne": False}
        elif active is False:
            query["active"] = False
        if filter_dict.get("department"):
            query["department"] = filter_dict["department"]
        if filter_dict.get("departments") is not None:
            query["department"] = {"$in": list(filter_dict["departments"])}
        if filter_dict.get("sub_departments") is not None:
            query["sub_departments"] = {"$in": list(filter_dict["sub_departments"])}
        if filter_dict.get("batches") is not None:
            query["batches"] = {"$in": list(filter_dict["batches"])}
        if filter_dict.get("standards") is not None:
            query["current_standard"] = {"$in": list(filter_dict["standards"])}
        if filter_dict.get("ids") is not None:
            query["_id"] = {"$in": _id_candidates(filter_dict["ids"])}
        return query

    def list_students(self, filter_dict: Optional[Dict[str, Any]] = None) -> List[Student]:
        query = self._student_query(filter_dict or {})
        cursor = self.db["student"].find(query).sort("_id", ASCENDING)
        return [Student(**_to_str_id(doc)) for doc in cursor]

    def _find_unit(self, collection_name: str, unit_id: str) -> Optional[Dict[str, Any]]:
        doc = self.db[collection_name].find_one({"_id": {"$in": _id_candidates([unit_id])}})
        return _to_str_id(doc) if doc else None

    def get_department(self, department_id: str) -> Optional[Department]:
        doc = self._find_unit("department", department_id)
        return Department(**doc) if doc else None

    def get_sub_department(self, sub_department_id: str) -> Optional[SubDepartment]:
        doc = self._find_unit("sub_department", sub_department_id)
        return SubDepartment(**doc) if doc else None

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        doc = self._find_unit("batch", batch_id)
        return Batch(**doc) if doc else None


class MarkStore:
    """One exam-mark document per (exam_id, student_id), written with compare-and-set on ``version``."""

    collection_name = "exam_mark"

    def __init__(self, database=None):
        self.db = _require_db(database)
        self.collection = self.db[self.collection_name]
        self.collection.create_index(
            [("exam_id", ASCENDING), ("student_id", ASCENDING)], unique=True
        )

    @staticmethod
    def _to_record(doc: Dict[str, Any]) -> ExamMarkRecord:
        doc = dict(doc)
        doc.pop("_id", None)
        return ExamMarkRecord(**doc)

    def get(self, exam_id: str, student_id: str) -> Optional[ExamMarkRecord]:
        doc = self.collection.find_one({"exam_id": exam_id, "student_id": student_id})
        return self._to_record(doc) if doc else None

    def upsert(self, record: ExamMarkRecord, expected_version: Optional[int] = None) -> ExamMarkRecord:
        """Insert when ``expected_version`` is None, otherwise update only if the stored version still matches."""
        exam_id, student_id = record.key
        data = record.model_dump()
        data["status"] = record.status.value

        if expected_version is None:
            data["version"] = 1
            try:
                self.collection.insert_one(data)
            except DuplicateKeyError:
                raise ConcurrentModification(
                    f"marks for student {student_id} in exam {exam_id} were created concurrently",
                    exam_id=exam_id,
                    student_id=student_id,
                )
            return record.model_copy(update={"version": 1})

        data["version"] = expected_version + 1
        result = self.collection.update_one(
            {"exam_id": exam_id, "student_id": student_id, "version": expected_version},
            {"$set": data},
        )
        if result.matched_count == 0:
            raise ConcurrentModification(
                f"marks for student {student_id} in exam {exam_id} changed since version {expected_version}",
                expected_version=expected_version,
                exam_id=exam_id,
                student_id=student_id,
            )
        return record.model_copy(update={"version": expected_version + 1})

    def list_by_exam(self, exam_id: str) -> List[ExamMarkRecord]:
        cursor = self.collection.find({"exam_id": exam_id}).sort("student_id", ASCENDING)
        return [self._to_record(doc) for doc in cursor]

    def delete(self, exam_id: str, student_id: str) -> bool:
        result = self.collection.delete_one({"exam_id": exam_id, "student_id": student_id})
        return result.deleted_count > 0


class ExamStore:
    collection_name = "exam"

    def __init__(self, database=None):
        self.db = _require_db(database)

    def create(self, exam: Exam) -> Exam:
        data = exam.model_dump(mode="json", exclude={"id"})
        exam_id = create_document(self.collection_name, data, database=self.db)
        return exam.model_copy(update={"id": exam_id})

    def get(self, exam_id: str) -> Exam:
        doc = get_document_by_id(self.collection_name, exam_id, database=self.db)
        if not doc:
            raise NotFound(f"exam {exam_id} not found", exam_id=exam_id)
        return Exam(**doc)

    def save(self, exam: Exam) -> Exam:
        data = exam.model_dump(mode="json", exclude={"id"})
        if not update_document(self.collection_name, exam.id, data, database=self.db):
            raise NotFound(f"exam {exam.id} not found", exam_id=exam.id)
        return exam
