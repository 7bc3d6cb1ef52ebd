"""Single-flight execution lock shared by every service instance."""

from __future__ import annotations

import logging
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, TypeVar

from filereorg.errors import JobAlreadyRunningError
from filereorg.store.locks import MongoLeaseStore
from filereorg.utils.timing import utc_now

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Lease:
    name: str
    holder: str
    locked_at: datetime
    min_hold: timedelta
    max_hold: timedelta


def _holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class ExecutionLock:
    """Lease based mutual exclusion for a named job.

    ``max_hold`` bounds how long a crashed holder can keep the lease;
    ``min_hold`` keeps the lease taken for at least that long after acquisition
    even when the body finishes early.
    """

    def __init__(self, store: MongoLeaseStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._clock = clock

    def acquire(self, name: str, min_hold: timedelta, max_hold: timedelta) -> Lease | None:
        if min_hold > max_hold:
            raise ValueError("min_hold cannot exceed max_hold")
        now = self._clock()
        holder = _holder_id()
        if not self._store.try_lock(name, now=now, lock_until=now + max_hold, holder=holder):
            return None
        LOGGER.info("Acquired lease %s as %s (expires in %s)", name, holder, max_hold)
        return Lease(name, holder, now, min_hold, max_hold)

    def release(self, lease: Lease) -> None:
        lock_until = max(self._clock(), lease.locked_at + lease.min_hold)
        if self._store.unlock(lease.name, holder=lease.holder, lock_until=lock_until):
            LOGGER.info("Released lease %s (held until %s)", lease.name, lock_until.isoformat())
        else:
            LOGGER.warning("Lease %s was taken over before release by %s", lease.name, lease.holder)

    def try_acquire_and_run(
        self,
        lock_name: str,
        min_hold: timedelta,
        max_hold: timedelta,
        body: Callable[[], T],
    ) -> T:
        """Run ``body`` while holding the lease, or raise JobAlreadyRunningError."""
        lease = self.acquire(lock_name, min_hold, max_hold)
        if lease is None:
            raise JobAlreadyRunningError(f"Job lock '{lock_name}' is already held")
        try:
            return body()
        finally:
            self.release(lease)
