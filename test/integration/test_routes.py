"""
Integration tests for the HTTP surface: open an edit session, stage changes,
save or discard, and delete a patient, all through FastAPI's TestClient.
"""
import pytest
from fastapi.testclient import TestClient
from backend.app.main import create_app

CLINIC_ID = "clinic-1"
PATIENT_ID = "patient-1"


@pytest.fixture
def client(patient_store, object_store, stored_patient):
    return TestClient(create_app(patient_store=patient_store, object_store=object_store))


def open_session(client):
    response = client.post(f"/patients/{PATIENT_ID}/sessions", params={"clinic_id": CLINIC_ID})
    assert response.status_code == 200
    return response.json()["session_id"]


def refs(view):
    return [[att["ref"] for att in record["attachments"]] for record in view["patient"]["history"]]


class TestEditSessionRoutes:
    def test_open_session_returns_sorted_history(self, client):
        response = client.post(f"/patients/{PATIENT_ID}/sessions", params={"clinic_id": CLINIC_ID})

        body = response.json()
        assert refs(body) == [["a", "b"], ["c"]]
        assert body["has_unsaved_changes"] is False
        assert body["pending_operations"] == []

    def test_open_unknown_patient(self, client):
        response = client.post("/patients/nobody/sessions", params={"clinic_id": CLINIC_ID})

        assert response.status_code == 404

    def test_save_flow(self, client, object_store, patient_store):
        sid = open_session(client)

        client.delete(f"/sessions/{sid}/records/0/attachments/b")
        marked = client.delete(f"/sessions/{sid}/records/1").json()
        assert [r["marked_for_deletion"] for r in marked["patient"]["history"]] == [False, True]

        ops = client.get(f"/sessions/{sid}/operations").json()["operations"]
        assert [op["kind"] for op in ops] == ["detach", "delete_record"]

        summary = client.post(f"/sessions/{sid}/commit").json()

        assert summary["saved"] is True
        assert summary["records_removed"] == 1
        assert object_store.delete_calls == ["b", "c"]
        saved = patient_store.load_patient(CLINIC_ID, PATIENT_ID)
        assert [[a["ref"] for a in r["attachments"]] for r in saved["history"]] == [["a"]]
        assert client.get(f"/sessions/{sid}").status_code == 404

    def test_discard_flow(self, client, object_store):
        sid = open_session(client)
        upload = client.post(
            f"/sessions/{sid}/records/1/attachments",
            files={"file": ("scan.pdf", b"%PDF-1.4 test", "application/pdf")},
        )
        assert upload.status_code == 200
        assert len(refs(upload.json())[1]) == 2

        summary = client.post(f"/sessions/{sid}/rollback").json()

        assert summary["attach"]["succeeded"] == 1
        assert object_store.delete_calls == [f"{CLINIC_ID}/{PATIENT_ID}/upload-1"]

    def test_field_edit_and_validation(self, client):
        sid = open_session(client)

        ok = client.patch(f"/sessions/{sid}/fields", json={"changes": {"name": "Somchai J."}})
        read_only = client.patch(f"/sessions/{sid}/fields", json={"changes": {"hn_code": "HN-9"}})

        assert ok.json()["patient"]["name"] == "Somchai J."
        assert read_only.status_code == 422
        assert read_only.json()["details"] == {"field": "hn_code"}

    def test_add_and_move_record(self, client):
        sid = open_session(client)

        added = client.post(f"/sessions/{sid}/records", json={"timestamp": "2024-02-01T10:00:00Z", "notes": "X-ray"})
        moved = client.put(f"/sessions/{sid}/records/2/timestamp", json={"timestamp": "2025-01-01T00:00:00Z"})

        assert added.json()["record_index"] == 1
        assert moved.json()["record_index"] == 0
        assert moved.json()["patient"]["history"][0]["notes"] == "First visit"

    def test_locked_record(self, client):
        sid = open_session(client)
        client.delete(f"/sessions/{sid}/records/1")

        response = client.put(f"/sessions/{sid}/records/1", json={"notes": "too late"})

        assert response.status_code == 409

    def test_stale_undo(self, client):
        sid = open_session(client)
        client.delete(f"/sessions/{sid}/records/0/attachments/a")

        response = client.delete(f"/sessions/{sid}/operations/0", params={"op_id": "not-it"})
        undone = client.delete(f"/sessions/{sid}/operations/0")

        assert response.status_code == 409
        assert refs(undone.json()) == [["a", "b"], ["c"]]

    def test_rejects_unsupported_upload(self, client, object_store):
        sid = open_session(client)

        response = client.post(
            f"/sessions/{sid}/records/0/attachments",
            files={"file": ("tool.exe", b"MZ", "application/octet-stream")},
        )

        assert response.status_code == 400
        assert object_store.upload_count == 0

    def test_failed_upload_returns_bad_gateway(self, client, object_store):
        sid = open_session(client)
        object_store.fail_uploads = True

        response = client.post(
            f"/sessions/{sid}/records/0/attachments",
            files={"file": ("scan.pdf", b"%PDF-1.4 test", "application/pdf")},
        )

        assert response.status_code == 502
        assert response.json()["detail"] == "simulated upload failure"
        view = client.get(f"/sessions/{sid}").json()
        assert refs(view) == [["a", "b"], ["c"]]
        assert view["pending_operations"] == []

    def test_storage_unavailable(self, client, object_store):
        sid = open_session(client)
        client.delete(f"/sessions/{sid}/records/0/attachments/a")
        object_store.available = False

        response = client.post(f"/sessions/{sid}/commit")

        assert response.status_code == 503
        assert len(client.get(f"/sessions/{sid}/operations").json()["operations"]) == 1


class TestPatientRoutes:
    def test_delete_patient(self, client, object_store, patient_store):
        response = client.delete(f"/patients/{PATIENT_ID}", params={"clinic_id": CLINIC_ID})

        body = response.json()
        assert body["success"] is True
        assert body["files_deleted"] == 3
        assert patient_store.load_patient(CLINIC_ID, PATIENT_ID) is None

    def test_delete_patient_with_failures_and_force(self, client, object_store, patient_store):
        object_store.fail_refs.add("c")

        refused = client.delete(f"/patients/{PATIENT_ID}", params={"clinic_id": CLINIC_ID}).json()
        forced = client.delete(f"/patients/{PATIENT_ID}", params={"clinic_id": CLINIC_ID, "force": True}).json()

        assert refused["success"] is False
        assert refused["files_not_deleted"] == 1
        assert forced["success"] is True
        assert patient_store.load_patient(CLINIC_ID, PATIENT_ID) is None

    def test_expire_sessions(self, client):
        open_session(client)

        response = client.post("/maintenance/sessions/expire", params={"max_idle_seconds": 3600})

        assert response.json() == {"expired": {}}

    def test_orphan_sweep(self, client, object_store):
        object_store.put(f"{CLINIC_ID}/{PATIENT_ID}/stray", uploaded_at=0)

        report = client.post("/maintenance/orphans/sweep", params={"clinic_id": CLINIC_ID, "grace_seconds": 60}).json()

        assert report["deleted"] == 1
        assert object_store.delete_calls == [f"{CLINIC_ID}/{PATIENT_ID}/stray"]
