from typing import Optional
from fastapi import APIRouter, Request
from backend.app.services.orchestrator import delete_patient, expire_idle_sessions, sweep_orphans
from shared.config import settings

router = APIRouter()

@router.delete("/patients/{patient_id}")
async def delete(patient_id: str, clinic_id: str, request: Request, force: bool = False):
    state = request.app.state
    outcome = await delete_patient(
        state.sessions, state.patient_store, state.object_store,
        clinic_id, patient_id, force_delete=force,
        delete_concurrency=settings.delete_concurrency,
    )
    return outcome.model_dump()

@router.post("/maintenance/sessions/expire")
async def expire_sessions(request: Request, max_idle_seconds: Optional[int] = None):
    idle = settings.session_idle_seconds if max_idle_seconds is None else max_idle_seconds
    results = await expire_idle_sessions(request.app.state.sessions, idle)
    return {"expired": {sid: summary.model_dump() for sid, summary in results.items()}}

@router.post("/maintenance/orphans/sweep")
async def sweep(clinic_id: str, request: Request, grace_seconds: Optional[int] = None):
    state = request.app.state
    grace = settings.orphan_grace_seconds if grace_seconds is None else grace_seconds
    report = await sweep_orphans(state.sessions, state.patient_store, state.object_store, clinic_id, grace)
    return report.model_dump()
