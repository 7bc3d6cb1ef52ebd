"""Chunked reorganization pipeline: read pending records, copy files, record status."""

from __future__ import annotations

import itertools
import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Any, Iterable, Iterator, List, Mapping

from filereorg.errors import SkipLimitExceededError
from filereorg.models import FileRecord, RunStatus, StageReport
from filereorg.pipeline.faults import Fault, FaultPolicy, classify
from filereorg.remote.pool import SessionPool
from filereorg.store.records import MongoRecordStore, record_from_document
from filereorg.utils.paths import PathResolver
from filereorg.utils.text import describe_error

LOGGER = logging.getLogger(__name__)

STAGE_NAME = "reorganizeStep"


@dataclass(slots=True)
class ItemOutcome:
    file_id: str
    status: str
    attempts: int
    duration_ms: int
    error: str | None = None


@dataclass(slots=True)
class ReorganizeStats:
    read: int = 0
    written: int = 0
    skipped: int = 0
    failed: int = 0
    filtered: int = 0
    retries: int = 0

    def increment(self, outcome: ItemOutcome) -> None:
        if outcome.status == "written":
            self.written += 1
        elif outcome.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
        self.retries += max(outcome.attempts - 1, 0)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def iter_chunks(items: Iterable[Any], size: int) -> Iterator[List[Any]]:
    """Group an iterable into lists of ``size`` without reading ahead further."""
    iterator = iter(items)
    while True:
        chunk = list(itertools.islice(iterator, size))
        if not chunk:
            return
        yield chunk


class ReorganizationPipeline:
    """Moves every PENDING file from the origin to its partitioned destination.

    Records are streamed from the files index in insertion order and handled in
    chunks. Inside a chunk each file is copied by a bounded worker pool and its
    outcome persisted on its own, so one bad file never fails its neighbours.
    Transport errors are retried per ``FaultPolicy``; files that still fail are
    counted as skips and the run aborts once the skip budget is spent.
    """

    def __init__(
        self,
        store: MongoRecordStore,
        origin: SessionPool,
        destination: SessionPool,
        resolver: PathResolver,
        *,
        destination_base_dir: str,
        chunk_size: int = 100,
        thread_pool_size: int = 20,
        cursor_batch_size: int = 100,
        policy: FaultPolicy | None = None,
    ) -> None:
        self.store = store
        self.origin = origin
        self.destination = destination
        self.resolver = resolver
        self.destination_base_dir = destination_base_dir
        self.chunk_size = chunk_size
        self.thread_pool_size = thread_pool_size
        self.cursor_batch_size = cursor_batch_size
        self.policy = policy or FaultPolicy()
        self.state = "INIT"

    def run(self, run_id: str) -> StageReport:
        """Process all pending records and report the stage result.

        Errors that end the run early are returned in the report rather than
        raised, so the caller can still record the counts reached so far.
        """
        self.state = "RUNNING"
        started = time.monotonic()
        stats = ReorganizeStats()
        error: BaseException | None = None

        records = self.store.stream_pending(batch_size=self.cursor_batch_size)
        try:
            with ThreadPoolExecutor(
                max_workers=self.thread_pool_size, thread_name_prefix="reorg-worker"
            ) as executor:
                for index, chunk in enumerate(iter_chunks(records, self.chunk_size)):
                    self._process_chunk(chunk, executor, run_id, stats)
                    LOGGER.info(
                        "Chunk %d done: read=%d written=%d skipped=%d failed=%d",
                        index + 1,
                        stats.read,
                        stats.written,
                        stats.skipped,
                        stats.failed,
                    )
                    if self.policy.exceeded(stats.skipped):
                        raise SkipLimitExceededError(stats.skipped, self.policy.skip_limit)
        except Exception as exc:
            LOGGER.exception("Reorganization stage failed: %s", exc)
            error = exc
        finally:
            records.close()

        if error is not None:
            status = RunStatus.FAILED
        elif stats.skipped or stats.failed:
            status = RunStatus.COMPLETED_WITH_SKIPS
        else:
            status = RunStatus.COMPLETED
        self.state = status.value

        LOGGER.warning(
            "Step finished - Read: %d, Written: %d, Skipped: %d, Failed: %d, Filtered: %d, Retries: %d",
            stats.read,
            stats.written,
            stats.skipped,
            stats.failed,
            stats.filtered,
            stats.retries,
        )
        return StageReport(
            stage_name=STAGE_NAME,
            status=status,
            read_count=stats.read,
            write_count=stats.written,
            skip_count=stats.skipped,
            failed_count=stats.failed,
            duration_ms=_elapsed_ms(started),
            error=error,
        )

    def _process_chunk(
        self,
        chunk: List[Mapping[str, Any] | None],
        executor: Executor,
        run_id: str,
        stats: ReorganizeStats,
    ) -> None:
        records: List[FileRecord] = []
        for raw in chunk:
            stats.read += 1
            try:
                record = self.transform(raw)
            except Exception as exc:
                if classify(exc) is Fault.FATAL:
                    raise
                self._reject(raw, exc, run_id)
                stats.failed += 1
                continue
            if record is None:
                stats.filtered += 1
                continue
            records.append(record)

        for outcome in executor.map(partial(self.transfer, run_id=run_id), records):
            stats.increment(outcome)

    def transform(self, raw: Mapping[str, Any] | None) -> FileRecord | None:
        """Map a raw document to a FileRecord with its destination path resolved."""
        record = record_from_document(raw)
        if record is None:
            return None
        record.destination_path = self.resolver.resolve(
            record.file_id, self.destination_base_dir, record.file_name
        )
        LOGGER.debug("Calculated destination: %s -> %s", record.source_path, record.destination_path)
        return record

    def _reject(self, raw: Mapping[str, Any] | None, error: Exception, run_id: str) -> None:
        raw = raw or {}
        file_id = raw.get("file_id")
        LOGGER.error("Rejected malformed record %s: %s", file_id or raw.get("_id"), error)
        if file_id:
            self.store.mark_failed(str(file_id), error=describe_error(error), run_id=run_id)
        elif raw.get("_id") is not None:
            self.store.mark_failed(raw["_id"], error=describe_error(error), run_id=run_id, key="_id")

    def transfer(self, record: FileRecord, *, run_id: str) -> ItemOutcome:
        """Copy one file with retries and persist its outcome."""
        started = time.monotonic()
        attempts = 0
        try:
            for attempt in self.policy.retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    self._copy(record)
        except Exception as exc:
            fault = classify(exc)
            if fault is Fault.FATAL:
                raise
            duration_ms = _elapsed_ms(started)
            message = describe_error(exc)
            LOGGER.error(
                "Failed to process %s after %d attempt(s): %s", record.source_path, attempts, message
            )
            self.store.mark_failed(
                record.file_id,
                error=message,
                run_id=run_id,
                duration_ms=duration_ms,
                attempts=attempts,
            )
            status = "skipped" if fault is Fault.RETRYABLE else "failed"
            return ItemOutcome(record.file_id, status, attempts, duration_ms, message)

        duration_ms = _elapsed_ms(started)
        self.store.mark_success(
            record.file_id,
            destination_path=record.destination_path or "",
            duration_ms=duration_ms,
            run_id=run_id,
            attempts=attempts,
        )
        LOGGER.debug(
            "Processed %s -> %s (%dms)", record.source_path, record.destination_path, duration_ms
        )
        return ItemOutcome(record.file_id, "written", attempts, duration_ms)

    def _copy(self, record: FileRecord) -> None:
        with self.origin.read_session(record.source_path) as stream:
            self.destination.write(record.destination_path or "", stream)
