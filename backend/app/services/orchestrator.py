"""
Top-level document lifecycle flows used by the HTTP routes.

Each flow is traced (when LangSmith tracing is enabled) and keeps session
bookkeeping in the registry: sessions close once their changes are saved or
discarded, and sessions of a deleted patient are cleaned up and dropped.
"""
import logging
from typing import Dict, Optional

from backend.app.models.schemas import (
    AttachmentRef,
    CleanupSummary,
    CommitSummary,
    DeletionOutcome,
    RollbackSummary,
    SweepReport,
)
from backend.app.services.cascade import CascadingDeletionCoordinator, sweep_unreferenced_objects
from backend.app.services.exceptions import LifecycleError
from backend.app.services.langsmith_logger import traceable
from backend.app.services.pending_log import PendingOperation
from backend.app.services.remote_calls import delete_object
from backend.app.services.session import EditSession, SessionRegistry
from storage.local_store import PatientStore
from storage.object_store import ObjectStorage

logger = logging.getLogger(__name__)


@traceable("open_edit_session")
def open_edit_session(
    registry: SessionRegistry,
    patient_store: PatientStore,
    storage: ObjectStorage,
    clinic_id: str,
    patient_id: str,
    delete_concurrency: int = 1,
) -> EditSession:
    session = EditSession.open(patient_store, storage, clinic_id, patient_id, delete_concurrency)
    registry.add(session)
    logger.info(f"Opened edit session {session.session_id} for patient={patient_id} clinic={clinic_id}")
    return session


@traceable("attach_upload")
async def attach_upload(
    session: EditSession,
    storage: ObjectStorage,
    record_index: int,
    data: bytes,
    filename: str,
    content_type: Optional[str] = None,
) -> Optional[PendingOperation]:
    """
    Upload a file and link it into a record as a pending attach.
    If linking is refused after the upload, the uploaded object is deleted again.
    """
    # Refuse before uploading when the record is unknown or locked
    session.buffer.editable_record(record_index)

    obj = await storage.upload(
        data,
        {
            "filename": filename,
            "content_type": content_type,
            "clinic_id": session.patient.clinic_id,
            "patient_id": session.patient.id,
        },
    )
    attachment = AttachmentRef(ref=obj.ref, url=obj.url, filename=filename)
    try:
        return session.record_attach(record_index, attachment)
    except LifecycleError:
        result = await delete_object(storage, obj.ref)
        if not result.ok:
            logger.warning(f"Upload {obj.ref} could not be linked or removed; it is orphaned")
        raise


@traceable("save_edit_session")
async def save_edit_session(registry: SessionRegistry, session_id: str) -> CommitSummary:
    session = registry.get(session_id)
    summary = await session.commit()
    if not session.has_unsaved_changes():
        registry.close(session_id)
    return summary


@traceable("discard_edit_session")
async def discard_edit_session(registry: SessionRegistry, session_id: str) -> RollbackSummary:
    session = registry.get(session_id)
    summary = await session.rollback()
    registry.close(session_id)
    return summary


@traceable("delete_patient")
async def delete_patient(
    registry: SessionRegistry,
    patient_store: PatientStore,
    storage: ObjectStorage,
    clinic_id: str,
    patient_id: str,
    force_delete: bool = False,
    delete_concurrency: int = 1,
) -> DeletionOutcome:
    coordinator = CascadingDeletionCoordinator(patient_store, storage, delete_concurrency)
    outcome = await coordinator.delete_patient(patient_id, clinic_id, force_delete=force_delete)
    if outcome.success:
        for session in registry.for_patient(clinic_id, patient_id):
            await session.cleanup_orphaned_files()
            registry.close(session.session_id)
    return outcome


@traceable("expire_idle_sessions")
async def expire_idle_sessions(registry: SessionRegistry, max_idle_seconds: float) -> Dict[str, CleanupSummary]:
    return await registry.expire_idle(max_idle_seconds)


@traceable("sweep_orphans")
async def sweep_orphans(
    registry: SessionRegistry,
    patient_store: PatientStore,
    storage: ObjectStorage,
    clinic_id: str,
    grace_seconds: int,
) -> SweepReport:
    return await sweep_unreferenced_objects(
        patient_store, storage, clinic_id, grace_seconds, protected_refs=registry.pending_upload_refs()
    )
