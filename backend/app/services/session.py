"""
Edit sessions: one buffer + one pending operation log per open edit screen.

Sessions are explicit objects handed to whichever controller drives them;
the registry only keeps them addressable between HTTP requests.
"""
from __future__ import annotations
import logging
import time
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from backend.app.models.schemas import (
    AttachmentRef,
    CleanupSummary,
    CommitSummary,
    HistoryRecord,
    Patient,
    PendingOperationView,
    RollbackSummary,
)
from backend.app.services.edit_buffer import EditBuffer
from backend.app.services.engine import CommitRollbackEngine
from backend.app.services.exceptions import NotFoundError
from backend.app.services.pending_log import (
    DeleteRecordOperation,
    DetachOperation,
    PendingOperation,
    PendingOperationLog,
)
from backend.app.services.validators import require_identifiers
from storage.local_store import PatientStore
from storage.object_store import ObjectStorage

logger = logging.getLogger(__name__)


class EditSession:
    def __init__(
        self,
        patient_store: PatientStore,
        storage: ObjectStorage,
        delete_concurrency: int = 1,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or uuid4().hex
        self.buffer = EditBuffer()
        self.log = PendingOperationLog(self.buffer)
        self.engine = CommitRollbackEngine(
            self.buffer, self.log, storage, patient_store, delete_concurrency
        )
        self.touched_at = time.monotonic()

    @classmethod
    def open(
        cls,
        patient_store: PatientStore,
        storage: ObjectStorage,
        clinic_id: str,
        patient_id: str,
        delete_concurrency: int = 1,
    ) -> "EditSession":
        require_identifiers(patient_id, clinic_id)
        data = patient_store.load_patient(clinic_id, patient_id)
        if data is None:
            raise NotFoundError(f"Patient {patient_id} not found in clinic {clinic_id}")
        session = cls(patient_store, storage, delete_concurrency)
        session.load(Patient.model_validate(data))
        return session

    def load(self, patient: Patient) -> None:
        self.buffer.load(patient)
        self.log.clear()
        self._touch()

    def _touch(self) -> None:
        self.touched_at = time.monotonic()

    @property
    def patient(self) -> Patient:
        return self.buffer.patient

    # -- buffer edits --------------------------------------------------------

    def mutate_field(self, name: str, value: Any) -> None:
        self._touch()
        self.buffer.mutate_field(name, value)

    def add_record(self, record: HistoryRecord) -> int:
        self._touch()
        return self.buffer.add_record(record)

    def update_record(self, index: int, notes: Optional[str] = None, timestamp=None) -> int:
        self._touch()
        return self.buffer.update_record(index, notes=notes, timestamp=timestamp)

    def update_record_timestamp(self, index: int, timestamp) -> int:
        self._touch()
        return self.buffer.update_record_timestamp(index, timestamp)

    def mark_record_deleted(self, index: int) -> DeleteRecordOperation:
        self._touch()
        return self.log.record_record_deletion(index)

    def is_record_marked_for_deletion(self, index: int) -> bool:
        return self.buffer.is_record_marked_for_deletion(index)

    def has_unsaved_changes(self) -> bool:
        return self.buffer.is_dirty() or len(self.log) > 0

    # -- attachments -----------------------------------------------------------

    def record_attach(self, record_index: int, attachment: AttachmentRef) -> Optional[PendingOperation]:
        self._touch()
        return self.log.record_attach(record_index, attachment)

    def record_detach(self, record_index: int, ref: str) -> DetachOperation:
        self._touch()
        return self.log.record_detach(record_index, ref)

    def undo(self, operation_index: int, op_id: Optional[str] = None) -> PendingOperation:
        self._touch()
        return self.log.undo(operation_index, op_id)

    def pending_operations(self) -> List[PendingOperationView]:
        return [
            PendingOperationView(
                index=i,
                op_id=op.op_id,
                kind=op.kind,
                record_index=self.buffer.index_of(op.record_key),
                refs=list(op.refs),
                description=op.describe(),
                reversal=op.describe_reversal(),
            )
            for i, op in enumerate(self.log)
        ]

    # -- sweeps ----------------------------------------------------------------

    async def commit(self) -> CommitSummary:
        self._touch()
        return await self.engine.commit()

    async def rollback(self) -> RollbackSummary:
        self._touch()
        return await self.engine.rollback()

    async def cleanup_orphaned_files(self) -> CleanupSummary:
        return await self.engine.cleanup_orphaned_files()

    def to_view(self) -> Dict[str, Any]:
        patient = self.patient.model_dump(mode="json")
        for record, data in zip(self.patient.history, patient["history"]):
            data["marked_for_deletion"] = record.marked_for_deletion
        return {
            "session_id": self.session_id,
            "patient": patient,
            "pending_operations": [v.model_dump() for v in self.pending_operations()],
            "has_unsaved_changes": self.has_unsaved_changes(),
        }


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: Dict[str, EditSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def add(self, session: EditSession) -> EditSession:
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> EditSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Edit session {session_id} not found")
        return session

    def close(self, session_id: str) -> Optional[EditSession]:
        return self._sessions.pop(session_id, None)

    def for_patient(self, clinic_id: str, patient_id: str) -> List[EditSession]:
        return [
            s for s in self._sessions.values()
            if s.patient.id == patient_id and s.patient.clinic_id == clinic_id
        ]

    def pending_upload_refs(self) -> Set[str]:
        return {att.ref for s in self._sessions.values() for att in s.log.pending_uploads()}

    async def expire_idle(self, max_idle_seconds: float) -> Dict[str, CleanupSummary]:
        """Clean up and drop sessions untouched for longer than `max_idle_seconds`."""
        now = time.monotonic()
        expired = [s for s in self._sessions.values() if now - s.touched_at > max_idle_seconds]
        results: Dict[str, CleanupSummary] = {}
        for session in expired:
            results[session.session_id] = await session.cleanup_orphaned_files()
            self.close(session.session_id)
            logger.info(f"Expired idle edit session {session.session_id} (patient={session.patient.id})")
        return results
