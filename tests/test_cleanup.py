"""Tests for the origin cleanup pipeline."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterator
from unittest.mock import patch

import pytest

from filereorg.models import CleanupCandidate, RunStatus
from filereorg.pipeline.cleanup import CleanupPipeline, candidate_filter, validate

NOW = datetime(2024, 6, 1, 12, 0, 0)


@pytest.fixture
def pipeline(record_store, origin_pool) -> CleanupPipeline:
    return CleanupPipeline(
        record_store,
        origin_pool,
        chunk_size=2,
        thread_pool_size=2,
        safety_window_days=90,
        clock=lambda: NOW,
    )


@pytest.fixture
def reorganized(record_store, seed):
    """Seed a file and mark it reorganized the given number of days ago."""

    def _reorganized(path: str, *, days_ago: float, destination: str | None = "/organized/x") -> str:
        (identity,) = seed(path)
        record_store.collection.update_one(
            {"file_id": identity},
            {
                "$set": {
                    "reorg_status": "SUCCESS",
                    "reorg_destination_path": destination,
                    "reorg_completed_at": NOW - timedelta(days=days_ago),
                }
            },
        )
        return identity

    return _reorganized


def _document(record_store, file_id):
    return record_store.collection.find_one({"file_id": file_id})


class TestValidate:
    """The validator is pure and only drops incomplete candidates."""

    def _candidate(self, **overrides) -> CleanupCandidate:
        values = dict(
            file_id="abc",
            source_path="/in/a.txt",
            destination_path="/organized/ab/c/a.txt",
            completed_at=NOW,
        )
        values.update(overrides)
        return CleanupCandidate(**values)

    def test_complete_candidate_passes(self) -> None:
        candidate = self._candidate()
        assert validate(candidate) is candidate

    @pytest.mark.parametrize(
        "overrides",
        [{"destination_path": None}, {"destination_path": ""}, {"completed_at": None}, {"source_path": None}],
    )
    def test_incomplete_candidate_rejected(self, overrides) -> None:
        assert validate(self._candidate(**overrides)) is None


class TestCandidateFilter:
    def test_cutoff(self) -> None:
        query = candidate_filter(NOW, 90)

        assert query["reorg_completed_at"] == {"$gte": NOW - timedelta(days=90)}
        assert query["reorg_status"] == "SUCCESS"
        assert query["deleted_from_source"] is False


class TestCleanupRun:
    """Tests for CleanupPipeline.run."""

    def test_safety_window(self, pipeline, record_store, reorganized, origin_remote) -> None:
        """A completion 89 days ago qualifies, one 91 days ago does not."""
        recent = reorganized("/in/recent.txt", days_ago=89)
        old = reorganized("/in/old.txt", days_ago=91)

        report = pipeline.run("run-9")

        assert report.status is RunStatus.COMPLETED
        assert (report.read_count, report.write_count, report.failed_count) == (1, 1, 0)
        assert "/in/recent.txt" not in origin_remote.files
        assert "/in/old.txt" in origin_remote.files
        deleted = _document(record_store, recent)
        assert deleted["deleted_from_source"] is True
        assert deleted["source_deleted_at"] == NOW
        assert deleted["deleted_by"] == "cleanup-step-pipelined"
        assert deleted["deleted_by_run_id"] == "run-9"
        assert _document(record_store, old)["deleted_from_source"] is False

    def test_pending_and_already_deleted_ignored(
        self, pipeline, record_store, seed, reorganized, origin_remote
    ) -> None:
        seed("/in/pending.txt")
        done = reorganized("/in/done.txt", days_ago=1)
        record_store.collection.update_one({"file_id": done}, {"$set": {"deleted_from_source": True}})

        report = pipeline.run("run-1")

        assert report.read_count == 0
        assert "/in/pending.txt" in origin_remote.files
        assert "/in/done.txt" in origin_remote.files

    def test_empty_destination_never_deleted(self, pipeline, reorganized, origin_remote) -> None:
        reorganized("/in/a.txt", days_ago=1, destination="")

        report = pipeline.run("run-1")

        assert report.status is RunStatus.COMPLETED_WITH_SKIPS
        assert report.skip_count == 1
        assert report.write_count == 0
        assert "/in/a.txt" in origin_remote.files

    def test_failed_delete_keeps_record_selectable(
        self, pipeline, record_store, reorganized, origin_remote
    ) -> None:
        """A failed deletion records the error and leaves the flag false."""
        identity = reorganized("/in/locked.txt", days_ago=1)
        other = reorganized("/in/free.txt", days_ago=1)
        origin_remote.remove_errors["/in/locked.txt"] = PermissionError("denied")

        report = pipeline.run("run-1")

        assert (report.write_count, report.failed_count) == (1, 1)
        document = _document(record_store, identity)
        assert document["deleted_from_source"] is False
        assert document["reorg_error"] == "Cleanup failed: denied"
        assert document["reorg_last_attempt_at"] == NOW
        assert document["reorg_status"] == "SUCCESS"
        assert _document(record_store, other)["deleted_from_source"] is True
        assert [c.file_id for c in pipeline.find_candidates()] == [identity]

    def test_missing_origin_treated_as_deleted(
        self, pipeline, record_store, reorganized, origin_remote
    ) -> None:
        identity = reorganized("/in/vanished.txt", days_ago=1)
        del origin_remote.files["/in/vanished.txt"]

        report = pipeline.run("run-1")

        assert report.write_count == 1
        assert _document(record_store, identity)["deleted_from_source"] is True

    def test_candidates_streamed_in_chunks(
        self, pipeline, record_store, reorganized, origin_remote
    ) -> None:
        """Five candidates at chunk size 2 are read in three chunks; a chunk of rejects writes nothing."""
        for name in ["a", "b", "c", "d"]:
            reorganized(f"/in/{name}.txt", days_ago=1)
        reorganized("/in/e.txt", days_ago=1, destination="")

        with patch.object(record_store, "bulk_update", wraps=record_store.bulk_update) as spy:
            report = pipeline.run("run-1")

        assert (report.read_count, report.write_count, report.skip_count) == (5, 4, 1)
        assert [len(call.args[0]) for call in spy.call_args_list] == [2, 2]
        assert "/in/e.txt" in origin_remote.files
        assert isinstance(pipeline.find_candidates(), Iterator)

    def test_store_failure_reported(self, pipeline, record_store, reorganized) -> None:
        reorganized("/in/a.txt", days_ago=1)
        with patch.object(record_store, "find_candidates", side_effect=RuntimeError("mongo down")):
            report = pipeline.run("run-1")

        assert report.status is RunStatus.FAILED
        assert str(report.error) == "mongo down"
