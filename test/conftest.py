"""
Pytest configuration and shared fixtures for all tests.

This module provides an in-memory object store with failure injection, a
temp-dir patient store and the two-record sample patient used across the
unit and integration tests.
"""
import pytest
import os
import time
from datetime import datetime, timezone
from typing import Dict, List, Set

from backend.app.models.schemas import AttachmentRef, HistoryRecord, Patient
from backend.app.services.exceptions import RemoteCallFailure
from backend.app.services.session import EditSession
from storage.local_store import PatientStore
from storage.object_store import StoredObject

CLINIC_ID = "clinic-1"
PATIENT_ID = "patient-1"


class FakeObjectStore:
    """In-memory ObjectStorage; refs in `fail_refs` raise on delete, `fail_uploads` fails every upload."""

    def __init__(self, refs=()):
        self.objects: Dict[str, StoredObject] = {}
        self.fail_refs: Set[str] = set()
        self.available = True
        self.delete_calls: List[str] = []
        self.upload_count = 0
        self.fail_uploads = False
        for ref in refs:
            self.put(ref)

    def put(self, ref: str, uploaded_at: int | None = None) -> StoredObject:
        obj = StoredObject(
            ref=ref,
            url=f"https://files.test/{ref}",
            uploaded_at=int(time.time() * 1000) if uploaded_at is None else uploaded_at,
        )
        self.objects[ref] = obj
        return obj

    async def upload(self, data: bytes, metadata: Dict) -> StoredObject:
        if self.fail_uploads:
            raise RemoteCallFailure(None, "simulated upload failure")
        self.upload_count += 1
        ref = f"{metadata.get('clinic_id')}/{metadata.get('patient_id')}/upload-{self.upload_count}"
        obj = self.put(ref)
        obj.filename = metadata.get("filename")
        obj.size = len(data)
        return obj

    async def delete(self, ref: str) -> bool:
        self.delete_calls.append(ref)
        if ref in self.fail_refs:
            raise RemoteCallFailure(ref, "simulated storage failure")
        self.objects.pop(ref, None)
        return True

    async def ping(self) -> bool:
        return self.available

    async def list_objects(self, prefix: str = "") -> List[StoredObject]:
        return [obj for ref, obj in self.objects.items() if ref.startswith(prefix)]


def attachment(ref: str) -> AttachmentRef:
    return AttachmentRef(ref=ref, url=f"https://files.test/{ref}", filename=f"{ref}.pdf")


@pytest.fixture
def object_store():
    """Object store already holding the sample patient's files a, b and c."""
    return FakeObjectStore(refs=["a", "b", "c"])


@pytest.fixture
def patient_store(tmp_path):
    return PatientStore(str(tmp_path / "data"))


@pytest.fixture
def sample_patient():
    """Two history records, newest first: [a, b] and [c]."""
    return Patient(
        id=PATIENT_ID,
        clinic_id=CLINIC_ID,
        name="Somchai Jaidee",
        hn_code="HN-0001",
        id_code="1100700000001",
        history=[
            HistoryRecord(
                key="rec-new",
                timestamp=datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc),
                notes="Follow-up visit",
                attachments=[attachment("a"), attachment("b")],
            ),
            HistoryRecord(
                key="rec-old",
                timestamp=datetime(2024, 1, 15, 14, 0, tzinfo=timezone.utc),
                notes="First visit",
                attachments=[attachment("c")],
            ),
        ],
    )


@pytest.fixture
def stored_patient(patient_store, sample_patient):
    patient_store.put_patient(CLINIC_ID, PATIENT_ID, sample_patient.model_dump(mode="json"))
    return sample_patient


@pytest.fixture
def session(patient_store, object_store, stored_patient):
    return EditSession.open(patient_store, object_store, CLINIC_ID, PATIENT_ID, delete_concurrency=2)


@pytest.fixture(autouse=True)
def setup_test_environment():
    """Set up test environment before each test."""
    os.environ["APP_ENV"] = "test"
    os.environ["LANGSMITH_TRACING"] = "0"  # Disable tracing in tests
    yield


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")


def pytest_collection_modifyitems(config, items):
    """Mark tests by the directory they live in, so `-m unit` selects test/unit/."""
    for item in items:
        parts = item.path.parts
        if "unit" in parts:
            item.add_marker(pytest.mark.unit)
        elif "integration" in parts:
            item.add_marker(pytest.mark.integration)


@pytest.fixture
def make_attachment():
    return attachment
