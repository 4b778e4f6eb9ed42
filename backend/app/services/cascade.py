"""
Cascading patient deletion and the unreferenced-object sweep.

Deleting a patient removes every attachment across every history record from
remote storage before the database record goes. Storage failures are counted,
not raised; without `force_delete` any failure keeps the patient intact so the
operator can retry or escalate.
"""
from __future__ import annotations
import logging
import time
from typing import Set

from backend.app.models.schemas import DeletionOutcome, Patient, SweepReport
from backend.app.services.exceptions import NotFoundError, ValidationError
from backend.app.services.remote_calls import delete_objects, ensure_storage_available
from backend.app.services.validators import require_identifiers
from storage.local_store import PatientStore
from storage.object_store import ObjectStorage

logger = logging.getLogger(__name__)


class CascadingDeletionCoordinator:
    def __init__(self, patient_store: PatientStore, storage: ObjectStorage, delete_concurrency: int = 1):
        self._patient_store = patient_store
        self._storage = storage
        self._concurrency = delete_concurrency

    async def delete_patient(self, patient_id: str, clinic_id: str, force_delete: bool = False) -> DeletionOutcome:
        require_identifiers(patient_id, clinic_id)
        data = self._patient_store.load_patient(clinic_id, patient_id)
        if data is None:
            raise NotFoundError(f"Patient {patient_id} not found in clinic {clinic_id}")
        patient = Patient.model_validate(data)

        refs = [att.ref for att in patient.all_attachments()]
        outcome = DeletionOutcome()
        if refs:
            # forced deletion removes the record whatever storage does
            if not force_delete:
                await ensure_storage_available(self._storage)
            results = await delete_objects(self._storage, refs, self._concurrency)
            deleted = {r.ref: r.ok for r in results}
            # counts are per attachment; a ref linked from two records counts twice
            outcome.files_deleted = sum(1 for ref in refs if deleted[ref])
            outcome.files_not_deleted = len(refs) - outcome.files_deleted
            outcome.failed_refs = [r.ref for r in results if not r.ok]

        if outcome.files_not_deleted and not force_delete:
            outcome.error = (
                f"{outcome.files_not_deleted} file(s) could not be removed from storage; "
                "patient record kept"
            )
            logger.warning(
                f"Patient deletion aborted: patient={patient_id} deleted={outcome.files_deleted} "
                f"failed={outcome.files_not_deleted}"
            )
            return outcome

        outcome.success = self._patient_store.delete_patient(clinic_id, patient_id)
        if not outcome.success:
            outcome.error = "Patient record could not be deleted from the database"
            logger.error(f"Database deletion failed for patient {patient_id}")
        else:
            if outcome.failed_refs:
                logger.warning(f"Force-deleted patient {patient_id}; orphaned refs: {outcome.failed_refs}")
            logger.info(
                f"Deleted patient={patient_id} files_deleted={outcome.files_deleted} "
                f"files_not_deleted={outcome.files_not_deleted}"
            )
        return outcome


def referenced_refs(patient_store: PatientStore, clinic_id: str) -> Set[str]:
    refs: Set[str] = set()
    for data in patient_store.list_patients(clinic_id).values():
        refs.update(att.ref for att in Patient.model_validate(data).all_attachments())
    return refs


async def sweep_unreferenced_objects(
    patient_store: PatientStore,
    storage: ObjectStorage,
    clinic_id: str,
    grace_seconds: int,
    protected_refs: Set[str] | None = None,
) -> SweepReport:
    """
    Delete stored objects under the clinic that no saved patient references.

    Objects younger than `grace_seconds` are skipped, as are `protected_refs`
    (uploads still pending in open edit sessions).
    """
    if not (clinic_id or "").strip():
        raise ValidationError("clinic_id is required for an orphan sweep")
    report = SweepReport()
    keep = referenced_refs(patient_store, clinic_id) | (protected_refs or set())
    cutoff = int((time.time() - grace_seconds) * 1000)

    candidates = []
    for obj in await storage.list_objects(prefix=f"{clinic_id}/"):
        report.scanned += 1
        if obj.ref in keep:
            report.referenced += 1
        elif obj.uploaded_at > cutoff:
            report.skipped_recent += 1
        else:
            candidates.append(obj.ref)

    for result in await delete_objects(storage, candidates):
        if result.ok:
            report.deleted += 1
        else:
            report.failed += 1
    logger.info(f"Orphan sweep clinic={clinic_id}: {report.model_dump()}")
    return report
