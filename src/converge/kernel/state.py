"""Persisted last-known state of managed resources.

A record exists for a resource if and only if it was successfully created
and has not been deleted since. Every mutation goes through ``put`` or
``delete``, each of which writes the whole document atomically.
"""

import json
import logging
import os
import socket
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import StateCorruptError, StateLockError
from .._internal.canonical_json import canonical_dumps

logger = logging.getLogger(__name__)

STATE_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateRecord(BaseModel):
    """Last-applied state of one resource."""
    model_config = ConfigDict(extra="forbid")

    address: str
    type: str
    name: str
    provider: str
    attributes: Dict[str, Any] = Field(default_factory=dict)  # Resolved values sent to the provider
    identifiers: Dict[str, Any] = Field(default_factory=dict)  # Provider-assigned, e.g. {"id": "..."}
    outputs: Dict[str, Any] = Field(default_factory=dict)  # Provider-computed attributes
    dependencies: List[str] = Field(default_factory=list)  # Addresses depended on at last apply
    tainted: bool = False  # Created partway; must be replaced
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def values(self) -> Dict[str, Any]:
        """Everything a reference can read: attributes overlaid with outputs."""
        merged = dict(self.attributes)
        merged.update(self.outputs)
        return merged


class StateDocument(BaseModel):
    """The whole persisted state: a mapping of address to record."""
    model_config = ConfigDict(extra="forbid")

    state_version: int = STATE_VERSION
    serial: int = 0  # Incremented on every write
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    resources: Dict[str, StateRecord] = Field(default_factory=dict)


class StateStore:
    """Interface of a state store.

    Implementations must make ``put`` and ``delete`` atomic and safe to call
    from several worker threads, and ``lock`` exclusive across runs.
    """

    def get(self, address: str) -> Optional[StateRecord]:
        raise NotImplementedError

    def put(self, address: str, record: StateRecord) -> None:
        raise NotImplementedError

    def delete(self, address: str) -> None:
        raise NotImplementedError

    def list(self) -> Dict[str, StateRecord]:
        """Snapshot of all records, keyed by address."""
        raise NotImplementedError

    def lock(self):
        """Context manager holding the whole-run exclusive lock."""
        raise NotImplementedError


class MemoryStateStore(StateStore):
    """In-process state store."""

    def __init__(self, document: Optional[StateDocument] = None):
        self.document = document or StateDocument()
        self._mutex = threading.Lock()
        self._run_lock = threading.Lock()

    def get(self, address: str) -> Optional[StateRecord]:
        with self._mutex:
            record = self.document.resources.get(address)
            return record.model_copy(deep=True) if record else None

    def put(self, address: str, record: StateRecord) -> None:
        with self._mutex:
            self.document.resources[address] = record.model_copy(deep=True)
            self.document.serial += 1
            self._persist()

    def delete(self, address: str) -> None:
        with self._mutex:
            if self.document.resources.pop(address, None) is not None:
                self.document.serial += 1
                self._persist()

    def list(self) -> Dict[str, StateRecord]:
        with self._mutex:
            return {a: r.model_copy(deep=True) for a, r in self.document.resources.items()}

    def _persist(self) -> None:
        """Hook for durable subclasses; called with the write mutex held."""
        pass

    @contextmanager
    def lock(self) -> Iterator[None]:
        if not self._run_lock.acquire(blocking=False):
            raise StateLockError(":memory:")
        try:
            yield
        finally:
            self._run_lock.release()


class FileStateStore(MemoryStateStore):
    """State store backed by a JSON file.

    Writes go to a temporary file in the same directory which is then moved
    over the state file with ``os.replace``, so readers only ever see a
    complete document. The run lock is a sibling ``.lock`` file created with
    ``O_CREAT | O_EXCL``.
    """

    def __init__(self, path: Union[str, os.PathLike], lock_timeout: float = 0.0):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = lock_timeout
        super().__init__(self._load())

    def _load(self) -> StateDocument:
        if not self.path.exists():
            return StateDocument()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            document = StateDocument.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            raise StateCorruptError(f"Cannot read state file {self.path}: {e}") from e
        if document.state_version > STATE_VERSION:
            raise StateCorruptError(
                f"State file {self.path} has version {document.state_version}; "
                f"this release reads version {STATE_VERSION}"
            )
        return document

    def reload(self) -> None:
        """Re-read the state file, discarding the in-memory copy."""
        with self._mutex:
            self.document = self._load()

    def _persist(self) -> None:
        payload = canonical_dumps(self.document.model_dump(mode="json"), indent=2) + "\n"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug("Wrote state serial %d to %s", self.document.serial, self.path)

    @contextmanager
    def lock(self) -> Iterator[None]:
        deadline = time.monotonic() + self.lock_timeout
        info = canonical_dumps({
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "created_at": _utcnow().isoformat(),
        })
        while True:
            try:
                self.lock_path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
                break
            except FileExistsError:
                if time.monotonic() >= deadline:
                    raise StateLockError(str(self.lock_path), self._lock_holder())
                time.sleep(0.1)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(info + "\n")
        logger.debug("Acquired state lock %s", self.lock_path)
        try:
            # Another run may have written since this store was opened
            self.reload()
            yield
        finally:
            try:
                os.unlink(self.lock_path)
            except FileNotFoundError:
                logger.warning("State lock %s disappeared while held", self.lock_path)
            logger.debug("Released state lock %s", self.lock_path)

    def _lock_holder(self) -> Optional[str]:
        try:
            data = json.loads(self.lock_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        return f"pid {data.get('pid')} on {data.get('host')} since {data.get('created_at')}"

    def force_unlock(self) -> bool:
        """Remove a lock file left behind by a crashed run."""
        try:
            os.unlink(self.lock_path)
        except FileNotFoundError:
            return False
        return True


def open_state_store(location: str, lock_timeout: float = 0.0) -> StateStore:
    """Open a state store: ``:memory:`` or a path to a JSON state file."""
    if location == ":memory:":
        return MemoryStateStore()
    return FileStateStore(location, lock_timeout=lock_timeout)
