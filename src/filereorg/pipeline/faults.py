"""Skip and retry policy for per-item pipeline failures."""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from enum import Enum

import paramiko
from pymongo.errors import PyMongoError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_none,
)

from filereorg.errors import PermanentItemError, SkipLimitExceededError, TransportError

LOGGER = logging.getLogger(__name__)


class Fault(str, Enum):
    RETRYABLE = "retryable"
    PERMANENT = "permanent"
    FATAL = "fatal"


_FATAL = (SkipLimitExceededError, PyMongoError, MemoryError)
_PERMANENT = (
    PermanentItemError,
    FileNotFoundError,
    PermissionError,
    IsADirectoryError,
    NotADirectoryError,
)
_RETRYABLE = (
    TransportError,
    TimeoutError,
    socket.timeout,
    ConnectionError,
    EOFError,
    paramiko.SSHException,
    OSError,
)


def classify(error: BaseException) -> Fault:
    """Decide how the pipeline treats an error raised while handling one item.

    Record store failures are fatal for the run, transport trouble is retried,
    everything else is a permanent failure of that item only.
    """
    if isinstance(error, _FATAL):
        return Fault.FATAL
    if isinstance(error, _PERMANENT):
        return Fault.PERMANENT
    if isinstance(error, _RETRYABLE):
        return Fault.RETRYABLE
    return Fault.PERMANENT


def _is_retryable(error: BaseException) -> bool:
    return classify(error) is Fault.RETRYABLE


def _log_retry(state: RetryCallState) -> None:
    error = state.outcome.exception() if state.outcome else None
    LOGGER.warning("Attempt %d failed with %r, retrying", state.attempt_number, error)


@dataclass(frozen=True, slots=True)
class FaultPolicy:
    retry_limit: int = 3
    skip_limit: int = 5
    backoff_seconds: float = 0.5

    def retrying(self) -> Retrying:
        """A tenacity controller: ``retry_limit`` retries of retryable errors."""
        wait = (
            wait_exponential(multiplier=self.backoff_seconds, max=30)
            if self.backoff_seconds > 0
            else wait_none()
        )
        return Retrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.retry_limit + 1),
            wait=wait,
            before_sleep=_log_retry,
            reraise=True,
        )

    def exceeded(self, skip_count: int) -> bool:
        return skip_count > self.skip_limit
