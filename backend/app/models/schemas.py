from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional
from uuid import uuid4
from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def _record_key() -> str:
    return uuid4().hex[:12]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Naive datetimes are read as UTC so history sorting never compares naive with aware.
UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


# ---------------------------------------------------------------------------
# Patient record tree
# ---------------------------------------------------------------------------

class AttachmentRef(BaseModel):
    ref: str                          # object identifier in remote storage
    url: str
    filename: Optional[str] = None

class HistoryRecord(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    key: str = Field(default_factory=_record_key)
    timestamp: UtcDatetime
    notes: str = ""
    attachments: List[AttachmentRef] = Field(default_factory=list)
    # Buffer-only state; never written by model_dump().
    marked_for_deletion: bool = Field(default=False, exclude=True)

    def attachment(self, ref: str) -> Optional[AttachmentRef]:
        for att in self.attachments:
            if att.ref == ref:
                return att
        return None

class Patient(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str
    clinic_id: str
    name: str = ""
    hn_code: str = ""
    id_code: Optional[str] = None
    last_visit: Optional[UtcDatetime] = None
    history: List[HistoryRecord] = Field(default_factory=list)

    def all_attachments(self) -> List[AttachmentRef]:
        return [att for record in self.history for att in record.attachments]


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class FieldUpdate(BaseModel):
    changes: Dict[str, Any]

class NewRecord(BaseModel):
    timestamp: datetime
    notes: str = ""

class RecordUpdate(BaseModel):
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None

class TimestampUpdate(BaseModel):
    timestamp: datetime


# ---------------------------------------------------------------------------
# Outcomes returned to the caller
# ---------------------------------------------------------------------------

class PendingOperationView(BaseModel):
    index: int
    op_id: str
    kind: str                         # attach | detach | delete_record
    record_index: Optional[int]
    refs: List[str]
    description: str                  # what saving will do
    reversal: str                     # what discarding will do

class OperationCounts(BaseModel):
    succeeded: int = 0
    failed: int = 0

class RemoteFailure(BaseModel):
    ref: str
    operation: str
    error: str

class SweepSummary(BaseModel):
    attach: OperationCounts = Field(default_factory=OperationCounts)
    detach: OperationCounts = Field(default_factory=OperationCounts)
    delete_record: OperationCounts = Field(default_factory=OperationCounts)
    failures: List[RemoteFailure] = Field(default_factory=list)
    orphaned_refs: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def failed(self) -> int:
        return self.attach.failed + self.detach.failed + self.delete_record.failed

class CommitSummary(SweepSummary):
    records_removed: int = 0
    saved: bool = False

class RollbackSummary(SweepSummary):
    pass

class CleanupSummary(BaseModel):
    files_deleted: int = 0
    files_not_deleted: int = 0
    failures: List[RemoteFailure] = Field(default_factory=list)

class DeletionOutcome(BaseModel):
    # per attachment, so a ref shared by two records counts twice; failed_refs is unique
    files_deleted: int = 0
    files_not_deleted: int = 0
    success: bool = False
    failed_refs: List[str] = Field(default_factory=list)
    error: Optional[str] = None

class SweepReport(BaseModel):
    scanned: int = 0
    referenced: int = 0
    deleted: int = 0
    failed: int = 0
    skipped_recent: int = 0
