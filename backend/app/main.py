import logging
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from backend.app.routes import patients, sessions
from backend.app.services.exceptions import (
    NotFoundError,
    RecordLockedError,
    RemoteCallFailure,
    StaleOperationReference,
    StorageUnavailableError,
    ValidationError,
)
from backend.app.services.session import SessionRegistry
from shared.config import settings
from storage.local_store import PatientStore
from storage.object_store import LocalObjectStore, ObjectStorage

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _error(status: int, exc: Exception, **extra) -> JSONResponse:
    return JSONResponse(status_code=status, content={"detail": str(exc), **extra})


def create_app(
    patient_store: Optional[PatientStore] = None,
    object_store: Optional[ObjectStorage] = None,
) -> FastAPI:
    app = FastAPI(title="Clinic Records Document Lifecycle")
    app.state.patient_store = patient_store or PatientStore(settings.data_dir)
    app.state.object_store = object_store or LocalObjectStore(settings.object_store_dir, settings.object_base_url)
    app.state.sessions = SessionRegistry()

    @app.exception_handler(StaleOperationReference)
    async def _stale(request: Request, exc: StaleOperationReference):
        return _error(409, exc)

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return _error(404, exc)

    @app.exception_handler(RecordLockedError)
    async def _locked(request: Request, exc: RecordLockedError):
        return _error(409, exc, details=exc.details)

    @app.exception_handler(ValidationError)
    async def _invalid(request: Request, exc: ValidationError):
        return _error(422, exc, details=exc.details)

    @app.exception_handler(StorageUnavailableError)
    async def _unavailable(request: Request, exc: StorageUnavailableError):
        logger.error(f"Request failed, storage unavailable: {exc}")
        return _error(503, exc)

    @app.exception_handler(RemoteCallFailure)
    async def _remote_failed(request: Request, exc: RemoteCallFailure):
        logger.error(f"Request failed, storage call failed: {exc}")
        return _error(502, exc, ref=exc.ref)

    app.include_router(sessions.router)
    app.include_router(patients.router)
    return app


app = create_app()
