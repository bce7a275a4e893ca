from datetime import timedelta

from conftest import COURSE_ID, EXAM_1, EXAM_2, TestingSessionLocal, csv_file, standard_mapping

from gradeimport.core.clock import utcnow
from gradeimport.models.draft import CommitMarker, ImportDraft
from gradeimport.models.grade import Grade
from gradeimport.services.drafts import expire_stale_drafts
from gradeimport.services.uploads import submit

SCENARIO_A = csv_file(
    "code,exam1,exam2,notes",
    "S001,85,,",
    "S002,92.5,70,",
    "S003,abc,60,",
)


def grades_by_cell() -> dict:
    db = TestingSessionLocal()
    try:
        return {(g.student_id, g.evaluation_id): g.value for g in db.query(Grade).all()}
    finally:
        db.close()


def draft_row(draft_id: str) -> ImportDraft:
    db = TestingSessionLocal()
    try:
        return db.query(ImportDraft).filter(ImportDraft.id == draft_id).one()
    finally:
        db.close()


# ---------------------------------------------------------------------------
# upload
# ---------------------------------------------------------------------------

def test_upload_creates_received_draft(client, upload):
    draft_id = upload(SCENARIO_A)

    r = client.get(f"/grades/imports/{draft_id}")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "RECEIVED"
    assert body["filename"] == "grades.csv"
    assert body["columns"] == ["code", "exam1", "exam2", "notes"]
    assert [e["id"] for e in body["evaluations"]] == [EXAM_1, EXAM_2]
    assert body["evaluations"][0]["name"] == "Exam 1"
    assert body["last_mapping"] is None


def test_upload_without_course_is_scope_incomplete(client):
    r = client.post(
        "/grades/imports",
        data={"period_id": 1, "subject_id": 5},
        files={"file": ("grades.csv", SCENARIO_A, "text/csv")},
    )
    assert r.status_code == 422
    body = r.json()
    assert body["code"] == "ScopeIncomplete"
    assert body["missing"] == ["course_id"]


def test_upload_rejects_empty_file(client):
    r = client.post(
        "/grades/imports",
        data={"period_id": 1, "subject_id": 5, "course_id": COURSE_ID},
        files={"file": ("grades.csv", b"", "text/csv")},
    )
    assert r.status_code == 422
    assert r.json()["code"] == "UploadRejected"


def test_unknown_draft_is_not_found(client):
    r = client.get("/grades/imports/doesnotexist")
    assert r.status_code == 404
    assert r.json()["code"] == "DraftNotFound"


# ---------------------------------------------------------------------------
# preview
# ---------------------------------------------------------------------------

def test_preview_reports_invalid_format(client, upload):
    draft_id = upload(SCENARIO_A)

    r = client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping())
    assert r.status_code == 200, r.text
    body = r.json()

    assert body["valid_count"] == 2
    assert body["invalid_count"] == 1
    assert body["errors"] == []

    rows = body["rows"]
    assert [row["row_index"] for row in rows] == [0, 1, 2]
    assert rows[0]["student_id"] == 1
    assert rows[0]["display_name"] == "Alvarez Ana"
    assert rows[1]["values"][0] == {"evaluation_id": EXAM_1, "value": 92.5, "error": None}
    assert rows[2]["status"] == "invalid"
    assert rows[2]["row_errors"] == ["InvalidFormat"]

    assert draft_row(draft_id).status == "PREVIEWED"


def test_preview_is_idempotent(client, upload):
    draft_id = upload(SCENARIO_A)

    first = client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping())
    second = client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping())

    assert first.status_code == second.status_code == 200
    assert first.content == second.content


def test_out_of_range_rejected_and_blank_accepted_as_null(client, upload):
    draft_id = upload(
        csv_file(
            "code,exam1,exam2,notes",
            "S001,150,40,",
            "S002,,55,",
        )
    )

    body = client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping()).json()
    over, blank = body["rows"]

    assert over["row_errors"] == ["InvalidRange"]
    assert over["values"][0]["error"] == "InvalidRange"
    assert blank["status"] == "valid"
    assert blank["row_errors"] == []
    assert blank["values"][0]["value"] is None
    assert blank["observation"] == "1 blank value(s) will be stored as empty"


def test_unknown_and_duplicate_students(client, upload):
    draft_id = upload(
        csv_file(
            "code,exam1,exam2,notes",
            "S001,80,80,",
            "S999,70,70,",
            "S004,60,60,",
            "s001,50,50,second copy",
        )
    )

    body = client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping()).json()
    rows = body["rows"]

    assert rows[0]["status"] == "valid"
    assert rows[1]["row_errors"] == ["UnknownStudent"]
    # enrolled in a different course
    assert rows[2]["row_errors"] == ["UnknownStudent"]
    assert rows[3]["row_errors"] == ["DuplicateStudent"]
    assert rows[3]["student_id"] is None
    assert rows[3]["observation"] == "second copy"
    assert body["valid_count"] == 1
    assert "2 student(s) on the roster have no row in the file" in body["observations"]


def test_student_identifier_can_be_the_id(client, upload):
    draft_id = upload(csv_file("code,exam1,exam2,notes", "2,75,80,"))

    body = client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping()).json()
    assert body["rows"][0]["student_id"] == 2


def test_structural_error_leaves_draft_untouched(client, upload):
    draft_id = upload(SCENARIO_A)

    mapping = {"columns": [{"column": "exam1", "field": f"evaluation:{EXAM_1}"}]}
    r = client.post(f"/grades/imports/{draft_id}/preview", json=mapping)
    assert r.status_code == 200
    body = r.json()
    assert body["rows"] == []
    assert body["errors"] == [{"row_index": None, "message": "No column is mapped to the student identifier"}]

    assert draft_row(draft_id).status == "RECEIVED"
    r = client.post(f"/grades/imports/{draft_id}/confirm")
    assert r.status_code == 409
    assert r.json()["code"] == "MappingNotSet"


def test_mapping_to_missing_column_is_structural(client, upload):
    draft_id = upload(SCENARIO_A)

    mapping = standard_mapping()
    mapping["columns"][1]["column"] = "exam_one"
    body = client.post(f"/grades/imports/{draft_id}/preview", json=mapping).json()

    assert {"row_index": None, "message": "Column 'exam_one' is not in the file"} in body["errors"]


def test_unrecognized_mapping_shape_is_structural(client, upload):
    draft_id = upload(SCENARIO_A)

    body = client.post(f"/grades/imports/{draft_id}/preview", json={"foo": "bar"}).json()
    assert body["errors"][0]["message"] == "Unrecognized mapping payload shape"
    assert draft_row(draft_id).status == "RECEIVED"


def test_legacy_mapping_shape(client, upload):
    draft_id = upload(SCENARIO_A)

    legacy = {
        "identificador_estudiante": "code",
        "evaluaciones": {str(EXAM_1): "exam1", str(EXAM_2): "exam2"},
    }
    legacy_body = client.post(f"/grades/imports/{draft_id}/preview", json=legacy).json()

    assert legacy_body["valid_count"] == 2
    assert legacy_body["invalid_count"] == 1

    stored = client.get(f"/grades/imports/{draft_id}").json()["last_mapping"]
    assert {"column": "code", "field": "student"} in stored["columns"]
    assert {"column": "exam1", "field": f"evaluation:{EXAM_1}"} in stored["columns"]


def test_unmapped_and_foreign_evaluations_are_observations(client, upload):
    draft_id = upload(SCENARIO_A)

    mapping = {
        "columns": [
            {"column": "code", "field": "student"},
            {"column": "exam1", "field": f"evaluation:{EXAM_1}"},
            {"column": "exam2", "field": "evaluation:999"},
        ]
    }
    body = client.post(f"/grades/imports/{draft_id}/preview", json=mapping).json()

    assert body["errors"] == []
    assert any("evaluation 999" in o for o in body["observations"])
    assert "Evaluation 'Exam 2' has no column mapped; its grades are left unchanged" in body["observations"]


def test_semicolon_separated_file(client, upload):
    draft_id = upload(csv_file("code;exam1;exam2;notes", "S001;85;90;ok"))

    body = client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping()).json()
    assert body["valid_count"] == 1
    assert body["rows"][0]["observation"] == "ok"


def test_preview_blocked_while_confirm_holds_lease(client, upload):
    draft_id = upload(SCENARIO_A)
    client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping())

    db = TestingSessionLocal()
    try:
        draft = db.query(ImportDraft).filter(ImportDraft.id == draft_id).one()
        draft.lease_token = "held"
        draft.lease_expires_at = utcnow() + timedelta(minutes=5)
        db.commit()
    finally:
        db.close()

    r = client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping())
    assert r.status_code == 409
    assert r.json()["code"] == "Conflict"


# ---------------------------------------------------------------------------
# confirm
# ---------------------------------------------------------------------------

def test_confirm_commits_accepted_rows(client, upload):
    draft_id = upload(SCENARIO_A)
    client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping())

    r = client.post(f"/grades/imports/{draft_id}/confirm")
    assert r.status_code == 200, r.text
    body = r.json()

    assert body["committed_count"] == 2
    assert body["rejected_count"] == 1
    assert body["resumed_count"] == 0
    assert body["errors"] == [{"row_index": 2, "message": "InvalidFormat"}]

    assert grades_by_cell() == {
        (1, EXAM_1): 85.0,
        (1, EXAM_2): None,
        (2, EXAM_1): 92.5,
        (2, EXAM_2): 70.0,
    }
    draft = draft_row(draft_id)
    assert draft.status == "CONFIRMED"
    assert draft.lease_token is None


def test_confirm_before_preview_is_mapping_not_set(client, upload):
    draft_id = upload(SCENARIO_A)

    r = client.post(f"/grades/imports/{draft_id}/confirm")
    assert r.status_code == 409
    assert r.json()["code"] == "MappingNotSet"
    assert grades_by_cell() == {}


def test_second_confirm_is_already_confirmed(client, upload):
    draft_id = upload(SCENARIO_A)
    client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping())
    assert client.post(f"/grades/imports/{draft_id}/confirm").status_code == 200
    before = grades_by_cell()

    r = client.post(f"/grades/imports/{draft_id}/confirm")
    assert r.status_code == 409
    assert r.json()["code"] == "AlreadyConfirmed"
    assert grades_by_cell() == before

    r = client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping())
    assert r.status_code == 409
    assert r.json()["code"] == "AlreadyConfirmed"


def test_confirm_uses_latest_preview_mapping(client, upload):
    draft_id = upload(SCENARIO_A)
    client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping())

    only_exam_2 = {
        "columns": [
            {"column": "code", "field": "student"},
            {"column": "exam2", "field": f"evaluation:{EXAM_2}"},
        ]
    }
    client.post(f"/grades/imports/{draft_id}/preview", json=only_exam_2)

    body = client.post(f"/grades/imports/{draft_id}/confirm").json()
    assert body["committed_count"] == 3
    assert grades_by_cell() == {(1, EXAM_2): None, (2, EXAM_2): 70.0, (3, EXAM_2): 60.0}


def test_confirm_overwrites_existing_grade(client, upload):
    client.put(
        "/grades/unitary",
        json={
            "period_id": 1, "subject_id": 5, "course_id": COURSE_ID,
            "grades": [{"student_id": 1, "evaluation_id": EXAM_1, "value": 10}],
        },
    )
    draft_id = upload(SCENARIO_A)
    client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping())
    client.post(f"/grades/imports/{draft_id}/confirm")

    db = TestingSessionLocal()
    try:
        rows = db.query(Grade).filter(Grade.student_id == 1, Grade.evaluation_id == EXAM_1).all()
        assert len(rows) == 1
        assert rows[0].value == 85.0
        assert rows[0].source_draft_id == draft_id
        assert db.query(CommitMarker).filter(CommitMarker.draft_id == draft_id).count() == 4
    finally:
        db.close()


def test_stale_lease_does_not_block_confirm(client, upload):
    draft_id = upload(SCENARIO_A)
    client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping())

    db = TestingSessionLocal()
    try:
        draft = db.query(ImportDraft).filter(ImportDraft.id == draft_id).one()
        draft.lease_token = "crashed"
        draft.lease_expires_at = utcnow() - timedelta(seconds=1)
        db.commit()
    finally:
        db.close()

    r = client.post(f"/grades/imports/{draft_id}/confirm")
    assert r.status_code == 200, r.text
    assert r.json()["committed_count"] == 2


# ---------------------------------------------------------------------------
# retention
# ---------------------------------------------------------------------------

def test_draft_past_retention_is_expired(client, db, blobs):
    draft = submit(
        db,
        blobs,
        period_id=1,
        subject_id=5,
        course_id=COURSE_ID,
        filename="old.csv",
        data=SCENARIO_A,
        now=utcnow() - timedelta(days=2),
    )

    r = client.get(f"/grades/imports/{draft.id}")
    assert r.status_code == 410
    assert r.json()["code"] == "DraftExpired"

    r = client.post(f"/grades/imports/{draft.id}/preview", json=standard_mapping())
    assert r.status_code == 410
    assert not (blobs.root / draft.blob_key).exists()


def test_expire_stale_drafts_sweeps_only_old_open_drafts(db, blobs):
    old = submit(db, blobs, period_id=1, subject_id=5, course_id=COURSE_ID,
                 filename="old.csv", data=SCENARIO_A, now=utcnow() - timedelta(days=2))
    fresh = submit(db, blobs, period_id=1, subject_id=5, course_id=COURSE_ID,
                   filename="new.csv", data=SCENARIO_A)

    assert expire_stale_drafts(db, blobs) == 1
    assert draft_row(old.id).status == "EXPIRED"
    assert draft_row(fresh.id).status == "RECEIVED"
    assert expire_stale_drafts(db, blobs) == 0


# ---------------------------------------------------------------------------
# malformed input and file lifecycle
# ---------------------------------------------------------------------------

def test_superscript_evaluation_tag_is_a_structural_error(client, upload):
    draft_id = upload(csv_file("code,exam1", "S001,85"))

    mapping = {
        "columns": [
            {"column": "code", "field": "student"},
            {"column": "exam1", "field": "evaluation:²"},
        ]
    }
    r = client.post(f"/grades/imports/{draft_id}/preview", json=mapping)

    assert r.status_code == 200, r.text
    assert {"row_index": None, "message": "Column 'exam1' has unknown field 'evaluation:²'"} in r.json()["errors"]
    assert draft_row(draft_id).status == "RECEIVED"


def test_oversized_upload_is_rejected_without_storing(client, blobs, monkeypatch):
    monkeypatch.setattr("gradeimport.routers.imports.MAX_UPLOAD_BYTES", 16)
    monkeypatch.setattr("gradeimport.services.uploads.MAX_UPLOAD_BYTES", 16)

    r = client.post(
        "/grades/imports",
        data={"period_id": 1, "subject_id": 5, "course_id": COURSE_ID},
        files={"file": ("grades.csv", SCENARIO_A, "text/csv")},
    )

    assert r.status_code == 422
    assert r.json()["code"] == "UploadRejected"
    assert not blobs.root.exists() or not any(blobs.root.iterdir())


def test_confirm_releases_raw_file(client, upload, blobs):
    draft_id = upload(SCENARIO_A)
    client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping())
    blob_path = blobs.root / draft_row(draft_id).blob_key
    assert blob_path.exists()

    assert client.post(f"/grades/imports/{draft_id}/confirm").status_code == 200
    assert not blob_path.exists()

    r = client.get(f"/grades/imports/{draft_id}")
    assert r.status_code == 200
    assert r.json()["status"] == "CONFIRMED"
    assert r.json()["columns"] == []


def test_later_valid_row_is_committed_after_invalid_one(client, upload):
    draft_id = upload(
        csv_file(
            "code,exam1,exam2,notes",
            "S001,abc,80,",
            "S001,85,80,",
        )
    )
    body = client.post(f"/grades/imports/{draft_id}/preview", json=standard_mapping()).json()
    assert [r["status"] for r in body["rows"]] == ["invalid", "valid"]

    result = client.post(f"/grades/imports/{draft_id}/confirm").json()
    assert result["committed_count"] == 1
    assert grades_by_cell() == {(1, EXAM_1): 85.0, (1, EXAM_2): 80.0}
