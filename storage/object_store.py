"""
Remote object storage for patient attachments.

`ObjectStorage` is the contract the lifecycle core consumes. `LocalObjectStore`
implements it on a directory, with a JSON index of upload metadata (clinic,
patient, original filename, upload time) used by the orphan sweep.
"""
import asyncio, json, os, threading, time, unicodedata, uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Protocol

from backend.app.services.exceptions import RemoteCallFailure


@dataclass
class StoredObject:
    ref: str
    url: str
    filename: Optional[str] = None
    clinic_id: Optional[str] = None
    patient_id: Optional[str] = None
    content_type: Optional[str] = None
    size: int = 0
    uploaded_at: int = 0      # epoch millis


class ObjectStorage(Protocol):
    async def upload(self, data: bytes, metadata: Dict[str, Any]) -> StoredObject: ...

    async def delete(self, ref: str) -> bool:
        """Delete one object. Deleting an already-deleted ref succeeds."""
        ...

    async def ping(self) -> bool: ...

    async def list_objects(self, prefix: str = "") -> List[StoredObject]: ...


def _safe(part: str) -> str:
    # Thai vowel and tone marks are category M, not alnum
    return "".join(
        c for c in part if c.isalnum() or c in "._-" or unicodedata.category(c).startswith("M")
    )


def generate_object_key(prefix: str, filename: str) -> str:
    """Unique key under `prefix`; unicode letters (e.g. Thai filenames) are kept."""
    unique_id = uuid.uuid4().hex[:12]
    safe_filename = _safe(filename) or "file"
    return f"{prefix}/{unique_id}_{safe_filename}" if prefix else f"{unique_id}_{safe_filename}"


class LocalObjectStore:
    """
    Directory-backed object store.

    File and index I/O runs in worker threads so the event loop is never
    blocked; the index lock serialises read-modify-write of the JSON index
    across concurrent deletes.
    """

    def __init__(self, root_dir: str, base_url: str):
        self.root_dir = os.path.abspath(root_dir)
        self.base_url = base_url.rstrip("/")
        self._index_file = os.path.join(self.root_dir, "objects_index.json")
        self._index_lock = threading.Lock()

    def _load_index(self) -> Dict[str, Any]:
        if not os.path.exists(self._index_file):
            return {}
        with open(self._index_file, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save_index(self, idx: Dict[str, Any]) -> None:
        os.makedirs(self.root_dir, exist_ok=True)
        tmp = self._index_file + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(idx, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self._index_file)

    def _path(self, ref: str) -> str:
        path = os.path.abspath(os.path.join(self.root_dir, ref))
        if not path.startswith(self.root_dir + os.sep):
            raise RemoteCallFailure(ref, "ref resolves outside the storage root")
        return path

    # -- blocking work, run via asyncio.to_thread ----------------------------

    def _write_object(self, obj: StoredObject, data: bytes) -> None:
        path = self._path(obj.ref)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise RemoteCallFailure(obj.ref, f"upload failed: {e}") from e
        with self._index_lock:
            idx = self._load_index()
            idx[obj.ref] = asdict(obj)
            self._save_index(idx)

    def _remove_object(self, ref: str) -> None:
        path = self._path(ref)
        try:
            os.remove(path)
        except FileNotFoundError:
            pass  # already gone: idempotent success
        except OSError as e:
            raise RemoteCallFailure(ref, f"delete failed: {e}") from e
        with self._index_lock:
            idx = self._load_index()
            if idx.pop(ref, None) is not None:
                self._save_index(idx)

    def _writable(self) -> bool:
        os.makedirs(self.root_dir, exist_ok=True)
        return os.access(self.root_dir, os.W_OK)

    def _read_index(self) -> Dict[str, Any]:
        with self._index_lock:
            return self._load_index()

    # -- ObjectStorage -------------------------------------------------------

    async def upload(self, data: bytes, metadata: Dict[str, Any]) -> StoredObject:
        filename = metadata.get("filename") or "file"
        prefix = "/".join(
            _safe(str(metadata[k])) for k in ("clinic_id", "patient_id") if metadata.get(k)
        )
        ref = generate_object_key(prefix, filename)
        obj = StoredObject(
            ref=ref,
            url=f"{self.base_url}/{ref}",
            filename=filename,
            clinic_id=metadata.get("clinic_id"),
            patient_id=metadata.get("patient_id"),
            content_type=metadata.get("content_type"),
            size=len(data),
            uploaded_at=int(time.time() * 1000),
        )
        await asyncio.to_thread(self._write_object, obj, data)
        return obj

    async def delete(self, ref: str) -> bool:
        await asyncio.to_thread(self._remove_object, ref)
        return True

    async def ping(self) -> bool:
        return await asyncio.to_thread(self._writable)

    async def list_objects(self, prefix: str = "") -> List[StoredObject]:
        idx = await asyncio.to_thread(self._read_index)
        return [StoredObject(**meta) for ref, meta in idx.items() if ref.startswith(prefix)]
