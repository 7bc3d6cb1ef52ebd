"""Shared fixtures: in-memory remote endpoints and mongomock collections."""

from __future__ import annotations

import io
import posixpath
import threading
from typing import Dict, List

import mongomock
import pytest

from filereorg.errors import TransportError
from filereorg.models import FileRecord
from filereorg.remote.pool import SessionPool
from filereorg.store.audit import MongoAuditStore
from filereorg.store.locks import MongoLeaseStore
from filereorg.store.records import MongoRecordStore
from filereorg.utils.paths import compute_identity


class MemoryRemote:
    """A fake SFTP server keeping files in a dict."""

    def __init__(self) -> None:
        self.files: Dict[str, bytes] = {}
        self.dirs: set[str] = set()
        self.read_failures: Dict[str, int] = {}
        self.remove_errors: Dict[str, Exception] = {}
        self.sessions: List["MemorySession"] = []
        self._lock = threading.Lock()

    def factory(self) -> "MemorySession":
        session = MemorySession(self)
        with self._lock:
            self.sessions.append(session)
        return session

    def take_read_failure(self, path: str) -> bool:
        with self._lock:
            remaining = self.read_failures.get(path, 0)
            if remaining <= 0:
                return False
            self.read_failures[path] = remaining - 1
            return True


class MemorySession:
    def __init__(self, remote: MemoryRemote) -> None:
        self.remote = remote
        self.broken = False
        self.closed = False
        self._raw: io.BytesIO | None = None

    def is_active(self) -> bool:
        return not self.closed

    def exists(self, path: str) -> bool:
        return path in self.remote.files or path in self.remote.dirs

    def mkdir(self, path: str) -> None:
        self.remote.dirs.add(path)

    def open_raw(self, path: str) -> io.BytesIO:
        if self.remote.take_read_failure(path):
            raise TransportError(f"connection reset while opening {path}")
        if path not in self.remote.files:
            raise FileNotFoundError(path)
        self._raw = io.BytesIO(self.remote.files[path])
        return self._raw

    def read_raw(self, path: str, size: int) -> bytes:
        assert self._raw is not None
        return self._raw.read(size)

    def finalize_raw(self) -> None:
        self._raw = None

    def write(self, stream, path: str) -> int:
        data = stream.read()
        self.remote.files[path] = data
        return len(data)

    def remove(self, path: str) -> None:
        if path in self.remote.remove_errors:
            raise self.remote.remove_errors[path]
        if path not in self.remote.files:
            raise FileNotFoundError(path)
        del self.remote.files[path]

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def origin_remote() -> MemoryRemote:
    return MemoryRemote()


@pytest.fixture
def destination_remote() -> MemoryRemote:
    return MemoryRemote()


@pytest.fixture
def origin_pool(origin_remote: MemoryRemote):
    pool = SessionPool("origin", origin_remote.factory, size=4, acquire_timeout=1.0)
    yield pool
    pool.close()


@pytest.fixture
def destination_pool(destination_remote: MemoryRemote):
    pool = SessionPool("destination", destination_remote.factory, size=4, acquire_timeout=1.0)
    yield pool
    pool.close()


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient()["filereorg_test"]


@pytest.fixture
def record_store(mongo_db) -> MongoRecordStore:
    store = MongoRecordStore(mongo_db["files_index"])
    store.ensure_indexes()
    return store


@pytest.fixture
def audit_store(mongo_db) -> MongoAuditStore:
    store = MongoAuditStore(mongo_db["job_executions_audit"])
    store.ensure_indexes()
    return store


@pytest.fixture
def lease_store(mongo_db) -> MongoLeaseStore:
    return MongoLeaseStore(mongo_db["shedlock"])


@pytest.fixture
def seed(record_store: MongoRecordStore, origin_remote: MemoryRemote):
    """Index origin files as PENDING records and return their identities."""

    def _seed(*paths: str) -> List[str]:
        identities = []
        for path in paths:
            identity = compute_identity(path)
            origin_remote.files[path] = f"contents of {path}".encode()
            record_store.save(
                FileRecord(
                    file_id=identity,
                    source_path=path,
                    file_name=posixpath.basename(path),
                    extension=posixpath.splitext(path)[1].lstrip(".") or None,
                    file_size=len(origin_remote.files[path]),
                )
            )
            identities.append(identity)
        return identities

    return _seed
