"""
Pending operation log for an edit session.

Every storage-affecting intent (attach, detach, delete-record) is recorded here
as the user edits the buffer. Entries hold exactly what is needed to commit or
reverse them; nothing touches remote storage until the engine sweeps the log.

Entries touching the same (record, ref) pair never stack. A newer intent either
cancels the older one or absorbs it into `supersedes`, and undoing the newer
entry puts the absorbed ones back.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import ClassVar, Iterator, List, Optional, Tuple, Union
from uuid import uuid4

from backend.app.models.schemas import AttachmentRef
from backend.app.services.edit_buffer import EditBuffer
from backend.app.services.exceptions import (
    NotFoundError,
    RecordLockedError,
    StaleOperationReference,
    ValidationError,
)

logger = logging.getLogger(__name__)


def _op_id() -> str:
    return uuid4().hex[:10]


def _label(att: AttachmentRef) -> str:
    return att.filename or att.url.rsplit("/", 1)[-1] or att.ref


@dataclass
class AttachOperation:
    """A file already uploaded and provisionally linked into a record."""
    kind: ClassVar[str] = "attach"

    record_key: str
    attachment: AttachmentRef
    supersedes: List["PendingOperation"] = field(default_factory=list)
    op_id: str = field(default_factory=_op_id)

    @property
    def refs(self) -> List[str]:
        return [self.attachment.ref]

    def describe(self) -> str:
        return f"Added {_label(self.attachment)}"

    def describe_reversal(self) -> str:
        return f"Delete newly added file {_label(self.attachment)}"


@dataclass
class DetachOperation:
    """A link removed from the buffer; the remote object is deleted only on commit."""
    kind: ClassVar[str] = "detach"

    record_key: str
    attachment: AttachmentRef
    position: int = 0
    supersedes: List["PendingOperation"] = field(default_factory=list)
    op_id: str = field(default_factory=_op_id)

    @property
    def refs(self) -> List[str]:
        return [self.attachment.ref]

    def describe(self) -> str:
        return f"Marked for deletion: {_label(self.attachment)}"

    def describe_reversal(self) -> str:
        return f"Restore removed file {_label(self.attachment)}"


@dataclass
class DeleteRecordOperation:
    """A whole history record marked for removal, with the attachments it carried."""
    kind: ClassVar[str] = "delete_record"

    record_key: str
    attachments: List[AttachmentRef] = field(default_factory=list)
    supersedes: List["PendingOperation"] = field(default_factory=list)
    op_id: str = field(default_factory=_op_id)

    @property
    def refs(self) -> List[str]:
        return [att.ref for att in self.attachments]

    def describe(self) -> str:
        count = len(self.attachments)
        return f"Record marked for deletion with {count} document{'s' if count != 1 else ''}"

    def describe_reversal(self) -> str:
        return "Restore deleted record"


PendingOperation = Union[AttachOperation, DetachOperation, DeleteRecordOperation]


def uploaded_attachments(op: PendingOperation) -> List[AttachmentRef]:
    """Objects uploaded during the session by `op` or anything it absorbed."""
    found: List[AttachmentRef] = []
    if isinstance(op, AttachOperation):
        found.append(op.attachment)
    for inner in op.supersedes:
        found.extend(uploaded_attachments(inner))
    return found


class PendingOperationLog:
    def __init__(self, buffer: EditBuffer) -> None:
        self._buffer = buffer
        self._entries: List[PendingOperation] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PendingOperation]:
        return iter(tuple(self._entries))

    def list(self) -> Tuple[PendingOperation, ...]:
        return tuple(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def find(self, record_key: str, ref: str) -> Optional[int]:
        for i, op in enumerate(self._entries):
            if op.record_key == record_key and ref in op.refs:
                return i
        return None

    def record_deletion_for(self, record_key: str) -> Optional[DeleteRecordOperation]:
        for op in self._entries:
            if isinstance(op, DeleteRecordOperation) and op.record_key == record_key:
                return op
        return None

    def pending_uploads(self) -> List[AttachmentRef]:
        uploads: List[AttachmentRef] = []
        for op in self._entries:
            uploads.extend(uploaded_attachments(op))
        return uploads

    # -- recording -----------------------------------------------------------

    def record_attach(self, record_index: int, attachment: AttachmentRef) -> Optional[PendingOperation]:
        """
        Link an already-uploaded object into a record and log it.

        Returns the entry now pending for this ref, or None when the attach
        cancelled a pending detach of a file that predates the session (or the
        ref was already linked and committed).
        """
        record = self._buffer.editable_record(record_index)
        existing = self.find(record.key, attachment.ref)
        if existing is not None:
            if isinstance(self._entries[existing], DetachOperation):
                self.undo(existing)
                live = self.find(record.key, attachment.ref)
                return None if live is None else self._entries[live]
            return self._entries[existing]
        if record.attachment(attachment.ref) is not None:
            return None

        self._buffer.link(record.key, attachment)
        op = AttachOperation(record_key=record.key, attachment=attachment)
        self._entries.append(op)
        logger.info(f"Pending attach: record={record.key} ref={attachment.ref}")
        return op

    def record_detach(self, record_index: int, ref: str) -> DetachOperation:
        record = self._buffer.editable_record(record_index)
        attachment = record.attachment(ref)
        if attachment is None:
            raise NotFoundError(f"Attachment {ref} is not linked to record {record_index}")

        absorbed: List[PendingOperation] = []
        existing = self.find(record.key, ref)
        if existing is not None:
            absorbed.append(self._entries.pop(existing))

        position = self._buffer.unlink(record.key, ref)
        op = DetachOperation(
            record_key=record.key,
            attachment=attachment,
            position=position or 0,
            supersedes=absorbed,
        )
        self._entries.append(op)
        logger.info(f"Pending detach: record={record.key} ref={ref} absorbed={len(absorbed)}")
        return op

    def record_record_deletion(
        self, record_index: int, attachments: Optional[List[AttachmentRef]] = None
    ) -> DeleteRecordOperation:
        record = self._buffer.record_at(record_index)
        if record.marked_for_deletion:
            current = self.record_deletion_for(record.key)
            if current is not None:
                return current

        linked = [att.model_copy() for att in record.attachments]
        if attachments is not None and {a.ref for a in attachments} != {a.ref for a in linked}:
            raise ValidationError(
                "Attachment list does not match the record",
                {"record_index": record_index, "linked": [a.ref for a in linked]},
            )

        refs = {att.ref for att in linked}
        absorbed = [
            op for op in self._entries
            if op.record_key == record.key and refs.intersection(op.refs)
        ]
        absorbed_ids = {id(op) for op in absorbed}
        self._entries = [op for op in self._entries if id(op) not in absorbed_ids]

        self._buffer.mark_record_deleted(record_index)
        op = DeleteRecordOperation(record_key=record.key, attachments=linked, supersedes=absorbed)
        self._entries.append(op)
        logger.info(f"Pending record deletion: record={record.key} attachments={len(linked)}")
        return op

    # -- reversal ------------------------------------------------------------

    def undo(self, operation_index: int, op_id: Optional[str] = None) -> PendingOperation:
        if not 0 <= operation_index < len(self._entries):
            raise StaleOperationReference(f"No pending operation at index {operation_index}")
        op = self._entries[operation_index]
        if op_id is not None and op.op_id != op_id:
            raise StaleOperationReference(
                f"Pending operation at index {operation_index} is no longer {op_id}"
            )
        if not isinstance(op, DeleteRecordOperation):
            record = self._buffer.record_by_key(op.record_key)
            if record is not None and record.marked_for_deletion:
                # the deletion entry captured this record's links; undo it first
                raise RecordLockedError(
                    f"Pending {op.kind} at index {operation_index} belongs to a record marked for deletion",
                    {"operation_index": operation_index, "record_index": self._buffer.index_of(op.record_key)},
                )
        del self._entries[operation_index]
        self.reverse_in_buffer(op)
        self._entries[operation_index:operation_index] = op.supersedes
        logger.info(f"Undid pending {op.kind}: record={op.record_key} refs={op.refs}")
        return op

    def reverse_in_buffer(self, op: PendingOperation) -> None:
        if isinstance(op, AttachOperation):
            self._buffer.unlink(op.record_key, op.attachment.ref)
        elif isinstance(op, DetachOperation):
            self._buffer.link(op.record_key, op.attachment, op.position)
        else:
            self._buffer.unmark_record_deleted(op.record_key)
