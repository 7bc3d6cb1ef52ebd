"""Deletes origin copies of files that were reorganized successfully."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Mapping, Sequence, Tuple

from filereorg.models import CleanupCandidate, CleanupResult, ReorgStatus, RunStatus, StageReport
from filereorg.pipeline.reorganize import iter_chunks
from filereorg.remote.pool import SessionPool
from filereorg.store.records import MongoRecordStore
from filereorg.utils.text import describe_error, truncate
from filereorg.utils.timing import utc_now

LOGGER = logging.getLogger(__name__)

STAGE_NAME = "cleanupStep"

CANDIDATE_FIELDS = (
    "file_id",
    "source_path",
    "reorg_destination_path",
    "reorg_completed_at",
    "file_size",
    "last_modified",
)


def candidate_filter(now: datetime, safety_window_days: int) -> Dict[str, Any]:
    """Selection query for origin deletion.

    Only records completed at or after ``now - safety_window_days`` qualify;
    older completions are left alone.
    """
    cutoff = now - timedelta(days=safety_window_days)
    return {
        "reorg_status": ReorgStatus.SUCCESS.value,
        "deleted_from_source": False,
        "reorg_completed_at": {"$gte": cutoff},
        "reorg_destination_path": {"$exists": True, "$ne": None},
    }


def candidate_from_document(document: Mapping[str, Any]) -> CleanupCandidate:
    return CleanupCandidate(
        file_id=str(document.get("file_id")),
        source_path=document.get("source_path"),
        destination_path=document.get("reorg_destination_path"),
        completed_at=document.get("reorg_completed_at"),
        file_size=document.get("file_size"),
        last_modified=document.get("last_modified"),
    )


def validate(candidate: CleanupCandidate) -> CleanupCandidate | None:
    """Return the candidate if it is safe to delete, otherwise None."""
    if candidate.completed_at is None:
        LOGGER.warning("Missing reorg completion date, skipping: %s", candidate.file_id)
        return None
    if not candidate.destination_path:
        LOGGER.warning("Missing destination path, skipping: %s", candidate.file_id)
        return None
    if not candidate.source_path:
        LOGGER.warning("Missing source path, skipping: %s", candidate.file_id)
        return None
    return candidate


@dataclass(slots=True)
class CleanupStats:
    read: int = 0
    rejected: int = 0
    deleted: int = 0
    failed: int = 0


class CleanupPipeline:
    """Second stage of a run: removes origin files already copied to the destination.

    A failed deletion only records an error on the record; ``deleted_from_source``
    stays false so the file is selected again by the next run.
    """

    def __init__(
        self,
        store: MongoRecordStore,
        origin: SessionPool,
        *,
        chunk_size: int = 100,
        thread_pool_size: int = 10,
        safety_window_days: int = 90,
        deleted_by: str = "cleanup-step-pipelined",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.origin = origin
        self.chunk_size = chunk_size
        self.thread_pool_size = thread_pool_size
        self.safety_window_days = safety_window_days
        self.deleted_by = deleted_by
        self._clock = clock

    def find_candidates(self) -> Iterator[CleanupCandidate]:
        """Stream the records eligible for origin deletion, one cursor batch at a time."""
        query = candidate_filter(self._clock(), self.safety_window_days)
        for document in self.store.find_candidates(
            query, CANDIDATE_FIELDS, batch_size=self.chunk_size
        ):
            yield candidate_from_document(document)

    def run(self, run_id: str) -> StageReport:
        started = time.monotonic()
        stats = CleanupStats()
        error: BaseException | None = None
        LOGGER.info("Cleaning up origin files (window %d days)", self.safety_window_days)
        try:
            with ThreadPoolExecutor(
                max_workers=self.thread_pool_size, thread_name_prefix="cleanup-worker"
            ) as executor:
                for chunk in iter_chunks(self.find_candidates(), self.chunk_size):
                    stats.read += len(chunk)
                    valid = [candidate for candidate in chunk if validate(candidate) is not None]
                    stats.rejected += len(chunk) - len(valid)
                    if not valid:
                        continue
                    results = list(executor.map(self.delete, valid))
                    self._persist(results, run_id)
                    deleted = sum(1 for result in results if result.deleted)
                    stats.deleted += deleted
                    stats.failed += len(results) - deleted
                    LOGGER.info(
                        "Cleanup chunk completed: %d deleted, %d failed",
                        deleted,
                        len(results) - deleted,
                    )
        except Exception as exc:
            LOGGER.exception("Cleanup stage failed for run %s: %s", run_id, exc)
            error = exc

        if error is not None:
            status = RunStatus.FAILED
        elif stats.rejected:
            status = RunStatus.COMPLETED_WITH_SKIPS
        else:
            status = RunStatus.COMPLETED
        return StageReport(
            stage_name=STAGE_NAME,
            status=status,
            read_count=stats.read,
            write_count=stats.deleted,
            skip_count=stats.rejected,
            failed_count=stats.failed,
            duration_ms=int((time.monotonic() - started) * 1000),
            error=error,
        )

    def delete(self, candidate: CleanupCandidate) -> CleanupResult:
        result = CleanupResult.pending(candidate)
        try:
            self.origin.delete(result.source_path)
        except FileNotFoundError:
            LOGGER.warning("Origin file already gone, marking deleted: %s", result.source_path)
            result.deleted = True
        except Exception as exc:
            result.error_message = describe_error(exc)
            LOGGER.error("Failed to delete %s: %s", result.source_path, result.error_message)
        else:
            result.deleted = True
            LOGGER.debug("Deleted %s", result.source_path)
        return result

    def _persist(self, results: Sequence[CleanupResult], run_id: str) -> None:
        now = self._clock()
        updates: List[Tuple[Dict[str, Any], Dict[str, Any]]] = []
        for result in results:
            query = {"file_id": result.file_id}
            if result.deleted:
                fields = {
                    "deleted_from_source": True,
                    "source_deleted_at": now,
                    "deleted_by": self.deleted_by,
                    "deleted_by_run_id": run_id,
                }
            else:
                fields = {
                    "reorg_error": truncate(f"Cleanup failed: {result.error_message}"),
                    "reorg_last_attempt_at": now,
                }
            updates.append((query, fields))
        self.store.bulk_update(updates)
