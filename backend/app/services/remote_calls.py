"""
Per-item wrappers around remote storage deletes.

A single failed delete is never raised out of a sweep: it is returned as a
failed DeleteResult so callers can count it and move on to the next item.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from backend.app.services.exceptions import RemoteCallFailure, StorageUnavailableError
from storage.object_store import ObjectStorage

logger = logging.getLogger(__name__)


@dataclass
class DeleteResult:
    ref: str
    ok: bool
    error: Optional[str] = None


async def ensure_storage_available(storage: ObjectStorage) -> None:
    try:
        reachable = await storage.ping()
    except Exception as e:
        logger.error(f"Object storage unreachable: {e}")
        raise StorageUnavailableError(f"Object storage unreachable: {e}") from e
    if not reachable:
        logger.error("Object storage unreachable")
        raise StorageUnavailableError("Object storage unreachable")


async def delete_object(storage: ObjectStorage, ref: str) -> DeleteResult:
    try:
        ok = await storage.delete(ref)
    except RemoteCallFailure as e:
        logger.warning(f"Remote delete failed: ref={ref} error={e}")
        return DeleteResult(ref=ref, ok=False, error=str(e))
    except Exception as e:
        logger.warning(f"Remote delete raised: ref={ref} error={e!r}")
        return DeleteResult(ref=ref, ok=False, error=repr(e))
    if not ok:
        logger.warning(f"Remote delete reported failure: ref={ref}")
        return DeleteResult(ref=ref, ok=False, error="storage reported failure")
    return DeleteResult(ref=ref, ok=True)


async def delete_objects(
    storage: ObjectStorage, refs: Iterable[str], concurrency: int = 1
) -> List[DeleteResult]:
    """
    Delete independent refs, at most `concurrency` in flight.
    Duplicate refs are collapsed so one object never sees two racing deletes.
    Results come back in first-seen order regardless of completion order.
    """
    unique = list(dict.fromkeys(refs))
    if not unique:
        return []
    gate = asyncio.Semaphore(max(1, concurrency))

    async def _one(ref: str) -> DeleteResult:
        async with gate:
            return await delete_object(storage, ref)

    return list(await asyncio.gather(*(_one(ref) for ref in unique)))
