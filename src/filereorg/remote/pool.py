"""Bounded pool of remote file sessions with scoped read and write operations."""

from __future__ import annotations

import functools
import io
import logging
import threading
from contextlib import contextmanager
from typing import BinaryIO, Callable, Iterator, List, Protocol

from filereorg.config import SftpEndpointConfig
from filereorg.errors import PoolExhaustedError, ReorgError, TransportError
from filereorg.remote.sftp import BUFFER_SIZE, SftpSession
from filereorg.utils.paths import parent_dirs

LOGGER = logging.getLogger(__name__)


class RemoteSession(Protocol):
    broken: bool

    def is_active(self) -> bool: ...

    def exists(self, path: str) -> bool: ...

    def mkdir(self, path: str) -> None: ...

    def open_raw(self, path: str) -> object: ...

    def read_raw(self, path: str, size: int) -> bytes: ...

    def finalize_raw(self) -> None: ...

    def write(self, stream: BinaryIO, path: str) -> int: ...

    def remove(self, path: str) -> None: ...

    def close(self) -> None: ...


class SessionAwareStream(io.RawIOBase):
    """Raw stream over a remote file that hands its session back on close.

    Closing runs, in order: close the remote handle, finalize raw read mode,
    release the session. A second close does nothing. Streams that are never
    closed explicitly are closed when garbage collected.
    """

    def __init__(
        self,
        handle: object,
        session: RemoteSession,
        path: str,
        release: Callable[[RemoteSession], None],
    ) -> None:
        super().__init__()
        self._handle = handle
        self._session = session
        self._path = path
        self._release = release

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        data = self._session.read_raw(self._path, len(buffer))
        size = len(data)
        buffer[:size] = data
        return size

    def close(self) -> None:
        if self.closed:
            return
        try:
            try:
                self._handle.close()
            finally:
                self._session.finalize_raw()
        except Exception as exc:
            LOGGER.warning("Error closing stream for %s: %s", self._path, exc)
            raise
        finally:
            try:
                self._release(self._session)
            finally:
                super().close()
        LOGGER.debug("Stream closed and session released for %s", self._path)


class SessionPool:
    """Fixed-size pool of sessions to one remote endpoint.

    At most ``size`` sessions are leased at once; ``acquire`` blocks for up to
    ``acquire_timeout`` seconds before raising ``PoolExhaustedError``. Sessions
    are created lazily and replaced when they break.
    """

    def __init__(
        self,
        name: str,
        factory: Callable[[], RemoteSession],
        *,
        size: int = 10,
        acquire_timeout: float = 60.0,
    ) -> None:
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        self.name = name
        self.size = size
        self.acquire_timeout = acquire_timeout
        self._factory = factory
        self._slots = threading.BoundedSemaphore(size)
        self._lock = threading.Lock()
        self._idle: List[RemoteSession] = []
        self._leased: set[int] = set()
        self._closed = False

    @classmethod
    def for_endpoint(cls, name: str, config: SftpEndpointConfig) -> "SessionPool":
        return cls(
            name,
            functools.partial(SftpSession.connect, config),
            size=config.pool_size,
            acquire_timeout=config.acquire_timeout,
        )

    @property
    def available(self) -> int:
        """Number of sessions that could be leased right now without blocking."""
        with self._lock:
            return self.size - len(self._leased)

    @property
    def idle(self) -> int:
        with self._lock:
            return len(self._idle)

    def acquire(self, timeout: float | None = None) -> RemoteSession:
        if self._closed:
            raise ReorgError(f"Session pool {self.name} is closed")
        wait = self.acquire_timeout if timeout is None else timeout
        if not self._slots.acquire(timeout=wait):
            raise PoolExhaustedError(
                f"No {self.name} session available after {wait:.1f}s (pool size {self.size})"
            )
        try:
            session = self._take_idle() or self._create()
        except BaseException:
            self._slots.release()
            raise
        with self._lock:
            self._leased.add(id(session))
        return session

    def release(self, session: RemoteSession) -> None:
        """Return a leased session; broken or disconnected sessions are discarded."""
        with self._lock:
            if id(session) not in self._leased:
                LOGGER.warning("Ignoring release of a session not leased from %s", self.name)
                return
            self._leased.discard(id(session))
            keep = not self._closed and not session.broken and session.is_active()
            if keep:
                self._idle.append(session)
        if not keep:
            self._discard(session)
        self._slots.release()

    def _take_idle(self) -> RemoteSession | None:
        while True:
            with self._lock:
                if not self._idle:
                    return None
                session = self._idle.pop()
            if not session.broken and session.is_active():
                return session
            self._discard(session)

    def _create(self) -> RemoteSession:
        try:
            return self._factory()
        except TransportError:
            raise
        except Exception as exc:
            raise TransportError(f"Unable to create {self.name} session: {exc}") from exc

    def _discard(self, session: RemoteSession) -> None:
        LOGGER.info("Discarding %s session", self.name)
        try:
            session.close()
        except Exception as exc:
            LOGGER.debug("Ignoring error while closing %s session: %s", self.name, exc)

    @contextmanager
    def session(self) -> Iterator[RemoteSession]:
        session = self.acquire()
        try:
            yield session
        finally:
            self.release(session)

    def open_read(self, path: str) -> io.BufferedReader:
        """Open ``path`` for streaming; closing the stream returns the session."""
        session = self.acquire()
        try:
            handle = session.open_raw(path)
        except BaseException:
            self.release(session)
            raise
        raw = SessionAwareStream(handle, session, path, self.release)
        return io.BufferedReader(raw, buffer_size=BUFFER_SIZE)

    @contextmanager
    def read_session(self, path: str) -> Iterator[io.BufferedReader]:
        stream = self.open_read(path)
        try:
            yield stream
        finally:
            stream.close()

    def write(self, path: str, stream: BinaryIO) -> int:
        """Stream ``stream`` into ``path``, creating parent directories first."""
        with self.session() as session:
            self._make_parents(session, path)
            written = session.write(stream, path)
        LOGGER.debug("Wrote %d bytes to %s:%s", written, self.name, path)
        return written

    def ensure_directories(self, path: str) -> None:
        with self.session() as session:
            self._make_parents(session, path)

    def delete(self, path: str) -> None:
        with self.session() as session:
            session.remove(path)

    def exists(self, path: str) -> bool:
        with self.session() as session:
            return session.exists(path)

    def _make_parents(self, session: RemoteSession, path: str) -> None:
        for directory in parent_dirs(path):
            if not session.exists(directory):
                session.mkdir(directory)
                LOGGER.debug("Created directory %s:%s", self.name, directory)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            idle, self._idle = self._idle, []
        for session in idle:
            self._discard(session)
