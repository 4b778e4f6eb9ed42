"""
Lightweight snapshot helper for the edit buffer.
We snapshot the patient tree when it is loaded or committed, and restore it on discard.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict
from backend.app.models.schemas import Patient

@dataclass(frozen=True)
class BufferSnapshot:
    patient: Patient

    def as_dict(self) -> Dict[str, Any]:
        return self.patient.model_dump(mode="json")

def take_buffer_snapshot(patient: Patient) -> BufferSnapshot:
    frozen = patient.model_copy(deep=True)
    for record in frozen.history:
        record.marked_for_deletion = False
    return BufferSnapshot(patient=frozen)

def restore_from_snapshot(snapshot: BufferSnapshot) -> Patient:
    return snapshot.patient.model_copy(deep=True)

def differs_from_snapshot(patient: Patient, snapshot: BufferSnapshot) -> bool:
    # Deletion flags are excluded from dumps; the pending log accounts for them.
    return patient.model_dump(mode="json") != snapshot.as_dict()
