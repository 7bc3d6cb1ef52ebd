"""Exception types shared across the reorganization service."""

from __future__ import annotations


class ReorgError(Exception):
    """Base error for the project."""


class TransportError(ReorgError):
    """A remote endpoint could not be reached or dropped the connection."""


class PoolExhaustedError(TransportError):
    """No session became available within the acquisition timeout."""


class PermanentItemError(ReorgError):
    """A record cannot be processed no matter how often it is retried."""


class MalformedRecordError(PermanentItemError):
    pass


class SkipLimitExceededError(ReorgError):
    def __init__(self, skip_count: int, skip_limit: int) -> None:
        super().__init__(f"Skip limit exceeded: {skip_count} skipped items (limit {skip_limit})")
        self.skip_count = skip_count
        self.skip_limit = skip_limit


class JobAlreadyRunningError(ReorgError):
    """Another holder owns the execution lease for this job."""


class AuditRecordNotFoundError(ReorgError):
    pass
