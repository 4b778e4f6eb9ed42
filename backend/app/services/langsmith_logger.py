"""
Flow tracing for the lifecycle orchestrator.

With LANGSMITH_TRACING=1 every decorated flow is sent to LangSmith. Otherwise
flows are only timed and logged at DEBUG, so save/discard/delete latency is
still visible in the application log.
"""
import functools
import inspect
import logging
import time
from typing import Callable
from shared.config import settings

logger = logging.getLogger(__name__)


def _timed(name: str, func: Callable) -> Callable:
    if inspect.iscoroutinefunction(func):
        @functools.wraps(func)
        async def _async_flow(*args, **kwargs):
            started = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                logger.debug(f"flow={name} took {time.perf_counter() - started:.3f}s")
        return _async_flow

    @functools.wraps(func)
    def _flow(*args, **kwargs):
        started = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            logger.debug(f"flow={name} took {time.perf_counter() - started:.3f}s")
    return _flow


def traceable(name: str) -> Callable:
    if not settings.langsmith_tracing:
        return lambda func: _timed(name, func)

    # langsmith is an optional extra; only needed once tracing is on
    from langsmith import traceable as _traceable  # type: ignore
    return _traceable(
        name=name,
        project_name=settings.langsmith_project,
        tags=["document-lifecycle"],
        metadata={"app_env": settings.app_env},
    )
