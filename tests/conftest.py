import os
import shutil
import tempfile

TEST_DB_FILE = "test_gradeimport.db"
TEST_DB_URL = f"sqlite:///./{TEST_DB_FILE}"
TEST_UPLOAD_DIR = tempfile.mkdtemp(prefix="gradeimport-uploads-")

# the app reads its config at import time
os.environ["GRADEIMPORT_DATABASE_URL"] = TEST_DB_URL
os.environ["GRADEIMPORT_UPLOAD_DIR"] = TEST_UPLOAD_DIR

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from gradeimport.core.deps import get_blob_store, get_db  # noqa: E402
from gradeimport.db.base import Base  # noqa: E402
from gradeimport.main import app  # noqa: E402
from gradeimport.models.draft import CommitMarker, ImportDraft  # noqa: E402
from gradeimport.models.enrollment import Enrollment  # noqa: E402
from gradeimport.models.evaluation import Evaluation  # noqa: E402
from gradeimport.models.grade import Grade  # noqa: E402
from gradeimport.models.student import Student  # noqa: E402
from gradeimport.services.blobs import FileBlobStore  # noqa: E402
from gradeimport.services.roster import SqlRoster  # noqa: E402

engine = create_engine(
    TEST_DB_URL,
    connect_args={"check_same_thread": False},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# seeded scope
PERIOD_ID = 1
SUBJECT_ID = 5
COURSE_ID = 10
PARALLEL_ID = 2
EXAM_1 = 101
EXAM_2 = 102

SCOPE_FORM = {"period_id": PERIOD_ID, "subject_id": SUBJECT_ID, "course_id": COURSE_ID}


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


def csv_file(*lines: str) -> bytes:
    return ("\n".join(lines) + "\n").encode("utf-8")


@pytest.fixture(scope="session", autouse=True)
def setup_test_db():
    """Create a fresh schema once for the whole test session."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    if os.path.exists(TEST_DB_FILE):
        os.remove(TEST_DB_FILE)
    shutil.rmtree(TEST_UPLOAD_DIR, ignore_errors=True)


@pytest.fixture(autouse=True)
def seed_data():
    """Seed a clean roster and evaluation set for each test."""
    db = TestingSessionLocal()
    try:
        # Clear tables (child -> parent)
        db.query(CommitMarker).delete()
        db.query(ImportDraft).delete()
        db.query(Grade).delete()
        db.query(Enrollment).delete()
        db.query(Evaluation).delete()
        db.query(Student).delete()
        db.commit()

        # Students
        db.add_all(
            [
                Student(id=1, code="S001", first_names="Ana", last_names="Alvarez"),
                Student(id=2, code="S002", first_names="Bruno", last_names="Benitez"),
                Student(id=3, code="S003", first_names="Carla", last_names="Castro"),
                Student(id=4, code="S004", first_names="Diego", last_names="Duran"),
            ]
        )
        db.commit()

        # Enrollments: 1-3 in the seeded course, 3 only in parallel 2, 4 elsewhere
        db.add_all(
            [
                Enrollment(student_id=1, period_id=PERIOD_ID, course_id=COURSE_ID),
                Enrollment(student_id=2, period_id=PERIOD_ID, course_id=COURSE_ID),
                Enrollment(student_id=3, period_id=PERIOD_ID, course_id=COURSE_ID, parallel_id=PARALLEL_ID),
                Enrollment(student_id=4, period_id=PERIOD_ID, course_id=99),
            ]
        )

        # Evaluations
        db.add_all(
            [
                Evaluation(id=EXAM_1, period_id=PERIOD_ID, subject_id=SUBJECT_ID, course_id=COURSE_ID,
                           name="Exam 1", weight=0.4, position=1),
                Evaluation(id=EXAM_2, period_id=PERIOD_ID, subject_id=SUBJECT_ID, course_id=COURSE_ID,
                           name="Exam 2", weight=0.6, position=2),
            ]
        )
        db.commit()

        yield
    finally:
        db.close()


@pytest.fixture()
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def blobs(tmp_path):
    return FileBlobStore(tmp_path / "uploads")


@pytest.fixture()
def roster(db):
    return SqlRoster(db)


@pytest.fixture()
def client(blobs):
    """Test client that uses the test DB session and blob dir via dependency override."""
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_blob_store] = lambda: blobs
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def upload(client):
    """Upload a CSV for the seeded scope and return the new draft id."""

    def _upload(content: bytes, filename: str = "grades.csv", **scope) -> str:
        data = {**SCOPE_FORM, **scope}
        r = client.post(
            "/grades/imports",
            data=data,
            files={"file": (filename, content, "text/csv")},
        )
        assert r.status_code == 201, r.text
        return r.json()["draft_id"]

    return _upload


def standard_mapping() -> dict:
    return {
        "columns": [
            {"column": "code", "field": "student"},
            {"column": "exam1", "field": f"evaluation:{EXAM_1}"},
            {"column": "exam2", "field": f"evaluation:{EXAM_2}"},
            {"column": "notes", "field": "observation"},
        ]
    }
