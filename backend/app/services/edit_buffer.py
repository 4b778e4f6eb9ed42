"""
In-memory edit buffer for a single patient's record tree.

All user edits land here first. The buffer keeps a snapshot of the last
loaded/committed state so a discard can restore it exactly, and it never
performs remote I/O: storage-affecting intents are tracked by the pending
operation log, which calls back into `link`, `unlink` and the deletion flags.
"""
from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, List, Optional

from pydantic import ValidationError as PydanticValidationError

from backend.app.models.schemas import AttachmentRef, HistoryRecord, Patient
from backend.app.services.exceptions import (
    LifecycleError,
    NotFoundError,
    RecordLockedError,
    ValidationError,
)
from backend.app.services.rollback import (
    BufferSnapshot,
    differs_from_snapshot,
    restore_from_snapshot,
    take_buffer_snapshot,
)

logger = logging.getLogger(__name__)

# hn_code is assigned by the clinic and read-only while editing
EDITABLE_FIELDS = ("name", "id_code", "last_visit")


def sort_history(patient: Patient) -> None:
    """Newest first; stable, so equal timestamps keep their current order."""
    patient.history.sort(key=lambda r: r.timestamp, reverse=True)


def _invalid(message: str, err: PydanticValidationError, **details: Any) -> ValidationError:
    details["errors"] = [e.get("msg", "") for e in err.errors()]
    return ValidationError(message, details)


class EditBuffer:
    def __init__(self) -> None:
        self._patient: Optional[Patient] = None
        self._baseline: Optional[BufferSnapshot] = None

    # -- lifecycle ---------------------------------------------------------

    def load(self, patient: Patient) -> None:
        working = patient.model_copy(deep=True)
        for record in working.history:
            record.marked_for_deletion = False
        sort_history(working)
        self._patient = working
        self._baseline = take_buffer_snapshot(working)
        logger.info(f"Edit buffer loaded: patient={working.id} records={len(working.history)}")

    @property
    def loaded(self) -> bool:
        return self._patient is not None

    @property
    def patient(self) -> Patient:
        if self._patient is None:
            raise LifecycleError("No patient loaded into the edit buffer")
        return self._patient

    @property
    def baseline(self) -> BufferSnapshot:
        if self._baseline is None:
            raise LifecycleError("No patient loaded into the edit buffer")
        return self._baseline

    @property
    def records(self) -> List[HistoryRecord]:
        return self.patient.history

    def is_dirty(self) -> bool:
        return differs_from_snapshot(self.patient, self.baseline)

    def restore_baseline(self) -> None:
        self._patient = restore_from_snapshot(self.baseline)

    def replace(self, patient: Patient) -> None:
        """Swap the working copy without moving the baseline."""
        self._patient = patient.model_copy(deep=True)
        sort_history(self._patient)

    def rebase(self, patient: Patient) -> None:
        """Make `patient` both the working copy and the new baseline."""
        self.replace(patient)
        self._baseline = take_buffer_snapshot(self.patient)

    def persisted_copy(self) -> Patient:
        copy = self.patient.model_copy(deep=True)
        copy.history = [r for r in copy.history if not r.marked_for_deletion]
        return copy

    # -- record lookup -----------------------------------------------------

    def record_at(self, index: int) -> HistoryRecord:
        if not 0 <= index < len(self.records):
            raise NotFoundError(f"No history record at index {index}")
        return self.records[index]

    def editable_record(self, index: int) -> HistoryRecord:
        record = self.record_at(index)
        if record.marked_for_deletion:
            raise RecordLockedError(
                f"History record {index} is marked for deletion", {"record_index": index}
            )
        return record

    def index_of(self, key: str) -> Optional[int]:
        for i, record in enumerate(self.records):
            if record.key == key:
                return i
        return None

    def record_by_key(self, key: str) -> Optional[HistoryRecord]:
        index = self.index_of(key)
        return None if index is None else self.records[index]

    # -- edits -------------------------------------------------------------

    def mutate_field(self, name: str, value: Any) -> None:
        if name not in EDITABLE_FIELDS:
            raise ValidationError(f"Field '{name}' cannot be edited", {"field": name})
        try:
            setattr(self.patient, name, value)
        except PydanticValidationError as err:
            raise _invalid(f"Invalid value for '{name}'", err, field=name) from err

    def add_record(self, record: HistoryRecord) -> int:
        if record.attachments:
            raise ValidationError("New records must be added without attachments")
        if self.index_of(record.key) is not None:
            raise ValidationError("Duplicate history record key", {"key": record.key})
        record = record.model_copy(deep=True)
        record.marked_for_deletion = False
        self.records.append(record)
        sort_history(self.patient)
        return self.index_of(record.key)  # type: ignore[return-value]

    def update_record(
        self, index: int, notes: Optional[str] = None, timestamp: Optional[datetime] = None
    ) -> int:
        record = self.editable_record(index)
        # timestamp first: a rejected value must leave the notes untouched
        if timestamp is not None:
            index = self.update_record_timestamp(index, timestamp)
        if notes is not None:
            record.notes = notes
        return index

    def update_record_timestamp(self, index: int, timestamp: datetime) -> int:
        record = self.editable_record(index)
        try:
            record.timestamp = timestamp
        except PydanticValidationError as err:
            raise _invalid("Invalid record timestamp", err, record_index=index) from err
        sort_history(self.patient)
        return self.index_of(record.key)  # type: ignore[return-value]

    # -- deletion flags ----------------------------------------------------

    def mark_record_deleted(self, index: int) -> HistoryRecord:
        record = self.record_at(index)
        record.marked_for_deletion = True
        return record

    def unmark_record_deleted(self, key: str) -> None:
        record = self.record_by_key(key)
        if record is not None:
            record.marked_for_deletion = False

    def is_record_marked_for_deletion(self, index: int) -> bool:
        return self.record_at(index).marked_for_deletion

    # -- attachment links (driven by the pending operation log) ------------

    def link(self, key: str, attachment: AttachmentRef, position: Optional[int] = None) -> None:
        record = self.record_by_key(key)
        if record is None or record.attachment(attachment.ref) is not None:
            return
        if position is None or position > len(record.attachments):
            record.attachments.append(attachment)
        else:
            record.attachments.insert(position, attachment)

    def unlink(self, key: str, ref: str) -> Optional[int]:
        record = self.record_by_key(key)
        if record is None:
            return None
        for i, att in enumerate(record.attachments):
            if att.ref == ref:
                del record.attachments[i]
                return i
        return None
