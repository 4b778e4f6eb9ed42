import os
from typing import Optional
from fastapi import APIRouter, HTTPException, Request, UploadFile
from backend.app.models.schemas import (
    FieldUpdate,
    HistoryRecord,
    NewRecord,
    RecordUpdate,
    TimestampUpdate,
)
from backend.app.services.orchestrator import (
    attach_upload,
    discard_edit_session,
    open_edit_session,
    save_edit_session,
)
from shared.config import settings

router = APIRouter()


def _state(request: Request):
    return request.app.state


@router.post("/patients/{patient_id}/sessions")
async def open_session(patient_id: str, clinic_id: str, request: Request):
    state = _state(request)
    session = open_edit_session(
        state.sessions, state.patient_store, state.object_store,
        clinic_id, patient_id, settings.delete_concurrency,
    )
    return session.to_view()

@router.get("/sessions/{session_id}")
async def get_session(session_id: str, request: Request):
    return _state(request).sessions.get(session_id).to_view()

@router.patch("/sessions/{session_id}/fields")
async def update_fields(session_id: str, payload: FieldUpdate, request: Request):
    session = _state(request).sessions.get(session_id)
    for name, value in payload.changes.items():
        session.mutate_field(name, value)
    return session.to_view()

@router.post("/sessions/{session_id}/records")
async def add_record(session_id: str, payload: NewRecord, request: Request):
    session = _state(request).sessions.get(session_id)
    index = session.add_record(HistoryRecord(timestamp=payload.timestamp, notes=payload.notes))
    return {"record_index": index, **session.to_view()}

@router.put("/sessions/{session_id}/records/{record_index}")
async def update_record(session_id: str, record_index: int, payload: RecordUpdate, request: Request):
    session = _state(request).sessions.get(session_id)
    index = session.update_record(record_index, notes=payload.notes, timestamp=payload.timestamp)
    return {"record_index": index, **session.to_view()}

@router.put("/sessions/{session_id}/records/{record_index}/timestamp")
async def update_record_timestamp(session_id: str, record_index: int, payload: TimestampUpdate, request: Request):
    session = _state(request).sessions.get(session_id)
    index = session.update_record_timestamp(record_index, payload.timestamp)
    return {"record_index": index, **session.to_view()}

@router.delete("/sessions/{session_id}/records/{record_index}")
async def mark_record_deleted(session_id: str, record_index: int, request: Request):
    session = _state(request).sessions.get(session_id)
    session.mark_record_deleted(record_index)
    return session.to_view()

@router.post("/sessions/{session_id}/records/{record_index}/attachments")
async def upload_attachment(session_id: str, record_index: int, file: UploadFile, request: Request):
    state = _state(request)
    session = state.sessions.get(session_id)
    filename = file.filename or "document"
    suffix = os.path.splitext(filename)[1].lower()
    if suffix not in settings.allowed_upload_extensions:
        raise HTTPException(400, f"Unsupported file format. Use one of: {', '.join(settings.allowed_upload_extensions)}")
    content = await file.read()
    if not content:
        raise HTTPException(400, "No file content provided")
    if len(content) > settings.max_upload_bytes:
        raise HTTPException(413, "File too large")
    await attach_upload(session, state.object_store, record_index, content, filename, file.content_type)
    return session.to_view()

@router.delete("/sessions/{session_id}/records/{record_index}/attachments/{ref:path}")
async def detach_attachment(session_id: str, record_index: int, ref: str, request: Request):
    session = _state(request).sessions.get(session_id)
    session.record_detach(record_index, ref)
    return session.to_view()

@router.get("/sessions/{session_id}/operations")
async def list_operations(session_id: str, request: Request):
    session = _state(request).sessions.get(session_id)
    return {"operations": [v.model_dump() for v in session.pending_operations()]}

@router.delete("/sessions/{session_id}/operations/{operation_index}")
async def undo_operation(session_id: str, operation_index: int, request: Request, op_id: Optional[str] = None):
    session = _state(request).sessions.get(session_id)
    session.undo(operation_index, op_id)
    return session.to_view()

@router.post("/sessions/{session_id}/commit")
async def commit(session_id: str, request: Request):
    summary = await save_edit_session(_state(request).sessions, session_id)
    return summary.model_dump()

@router.post("/sessions/{session_id}/rollback")
async def rollback(session_id: str, request: Request):
    summary = await discard_edit_session(_state(request).sessions, session_id)
    return summary.model_dump()

@router.post("/sessions/{session_id}/cleanup")
async def cleanup(session_id: str, request: Request):
    summary = await _state(request).sessions.get(session_id).cleanup_orphaned_files()
    return summary.model_dump()
