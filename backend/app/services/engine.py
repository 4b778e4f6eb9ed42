"""
Commit/rollback engine: turns the pending operation log into remote storage
mutations on save, or into compensating actions on discard.

Both sweeps process entries strictly one after another (log order for commit,
reverse order for rollback). A failed remote call is counted, reported and
skipped; it never aborts the rest of the sweep.
"""
from __future__ import annotations
import logging
from typing import Optional

from backend.app.models.schemas import (
    AttachmentRef,
    CleanupSummary,
    CommitSummary,
    HistoryRecord,
    Patient,
    RemoteFailure,
    RollbackSummary,
    SweepSummary,
)
from backend.app.services.edit_buffer import EditBuffer
from backend.app.services.pending_log import (
    AttachOperation,
    DetachOperation,
    PendingOperation,
    PendingOperationLog,
)
from backend.app.services.remote_calls import (
    DeleteResult,
    delete_object,
    delete_objects,
    ensure_storage_available,
)
from backend.app.services.validators import require_valid_patient
from storage.local_store import PatientStore
from storage.object_store import ObjectStorage

logger = logging.getLogger(__name__)


def _record_failure(summary: SweepSummary, result: DeleteResult, operation: str) -> None:
    summary.failures.append(
        RemoteFailure(ref=result.ref, operation=operation, error=result.error or "unknown error")
    )


def _find_record(patient: Patient, key: str) -> Optional[HistoryRecord]:
    return next((r for r in patient.history if r.key == key), None)


def _relink(record: HistoryRecord, attachment: AttachmentRef, position: int) -> None:
    if record.attachment(attachment.ref) is None:
        record.attachments.insert(min(position, len(record.attachments)), attachment)


class CommitRollbackEngine:
    def __init__(
        self,
        buffer: EditBuffer,
        log: PendingOperationLog,
        storage: ObjectStorage,
        patient_store: PatientStore,
        delete_concurrency: int = 1,
    ):
        self._buffer = buffer
        self._log = log
        self._storage = storage
        self._patient_store = patient_store
        self._concurrency = delete_concurrency

    # ------------------------------------------------------------------ commit

    async def commit(self) -> CommitSummary:
        summary = CommitSummary()
        entries = self._log.list()
        if not entries and not self._buffer.is_dirty():
            return summary

        persisted = self._buffer.persisted_copy()
        require_valid_patient(persisted)
        if any(op.refs for op in entries if not isinstance(op, AttachOperation)):
            await ensure_storage_available(self._storage)

        for op in entries:
            if isinstance(op, AttachOperation):
                # object already uploaded; the link is already in the persisted copy
                summary.attach.succeeded += 1
            elif isinstance(op, DetachOperation):
                await self._commit_detach(op, persisted, summary)
            else:
                results = await delete_objects(self._storage, op.refs, self._concurrency)
                failed = [r for r in results if not r.ok]
                summary.delete_record.succeeded += len(results) - len(failed)
                summary.delete_record.failed += len(failed)
                summary.records_removed += 1
                for result in failed:
                    _record_failure(summary, result, op.kind)
                    summary.orphaned_refs.append(result.ref)
                if failed:
                    refs = ", ".join(r.ref for r in failed)
                    summary.warnings.append(
                        f"Record removed but {len(failed)} file(s) remain orphaned in storage: {refs}"
                    )
                    logger.warning(f"Orphaned after record deletion: record={op.record_key} refs={refs}")

        # Remote effects are irreversible from here on.
        self._log.clear()
        self._buffer.replace(persisted)

        summary.saved = self._patient_store.save_patient(
            persisted.clinic_id, persisted.id, persisted.model_dump(mode="json")
        )
        if summary.saved:
            self._buffer.rebase(persisted)
            logger.info(
                f"Committed patient={persisted.id} attach={summary.attach.succeeded} "
                f"detach={summary.detach.succeeded}/{summary.detach.failed} "
                f"delete_record={summary.delete_record.succeeded}/{summary.delete_record.failed}"
            )
        else:
            summary.warnings.append("Patient record could not be saved; changes are still pending")
            logger.error(f"Saving patient {persisted.id} failed after the storage sweep")
        return summary

    async def _commit_detach(self, op: DetachOperation, persisted: Patient, summary: CommitSummary) -> None:
        result = await delete_object(self._storage, op.attachment.ref)
        if result.ok:
            summary.detach.succeeded += 1
            return
        summary.detach.failed += 1
        _record_failure(summary, result, op.kind)
        record = _find_record(persisted, op.record_key)
        if record is not None:
            # storage still holds the data, so the saved record keeps its reference
            _relink(record, op.attachment, op.position)
            summary.warnings.append(f"Could not delete {op.attachment.ref}; the attachment was kept")
        else:
            summary.orphaned_refs.append(op.attachment.ref)
            summary.warnings.append(f"Could not delete {op.attachment.ref}; it remains orphaned in storage")

    # ---------------------------------------------------------------- rollback

    async def rollback(self) -> RollbackSummary:
        summary = RollbackSummary()
        entries = self._log.list()
        if not entries:
            self._buffer.restore_baseline()
            return summary

        if self._log.pending_uploads():
            await ensure_storage_available(self._storage)
        for op in reversed(entries):
            await self._reverse(op, summary)

        self._log.clear()
        # Whatever the individual reversals did, the buffer goes back to the known-good state.
        self._buffer.restore_baseline()
        logger.info(
            f"Rolled back {len(entries)} pending operation(s); "
            f"uploads deleted={summary.attach.succeeded} failed={summary.attach.failed}"
        )
        return summary

    async def _reverse(self, op: PendingOperation, summary: RollbackSummary) -> None:
        self._log.reverse_in_buffer(op)
        if isinstance(op, AttachOperation):
            result = await delete_object(self._storage, op.attachment.ref)
            if result.ok:
                summary.attach.succeeded += 1
            else:
                summary.attach.failed += 1
                _record_failure(summary, result, op.kind)
                summary.orphaned_refs.append(op.attachment.ref)
                summary.warnings.append(f"Could not delete discarded upload {op.attachment.ref}")
        elif isinstance(op, DetachOperation):
            summary.detach.succeeded += 1
        else:
            summary.delete_record.succeeded += 1
        for inner in reversed(op.supersedes):
            await self._reverse(inner, summary)

    # ----------------------------------------------------------------- orphans

    async def cleanup_orphaned_files(self) -> CleanupSummary:
        """Best-effort delete of every object uploaded by a still-pending attach."""
        summary = CleanupSummary()
        refs = [att.ref for att in self._log.pending_uploads()]
        for result in await delete_objects(self._storage, refs, self._concurrency):
            if result.ok:
                summary.files_deleted += 1
            else:
                summary.files_not_deleted += 1
                summary.failures.append(
                    RemoteFailure(ref=result.ref, operation="attach", error=result.error or "unknown error")
                )
        if refs:
            logger.info(
                f"Orphan cleanup: deleted={summary.files_deleted} failed={summary.files_not_deleted}"
            )
        return summary
