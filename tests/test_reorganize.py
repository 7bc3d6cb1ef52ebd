"""Tests for the reorganization pipeline."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from pymongo.errors import AutoReconnect

from filereorg.errors import SkipLimitExceededError
from filereorg.models import RunStatus
from filereorg.pipeline.faults import FaultPolicy
from filereorg.pipeline.reorganize import ReorganizationPipeline, iter_chunks
from filereorg.utils.paths import PathResolver

BASE_DIR = "/organized"


@pytest.fixture
def make_pipeline(record_store, origin_pool, destination_pool):
    def _make(*, chunk_size: int = 2, retry_limit: int = 2, skip_limit: int = 5):
        return ReorganizationPipeline(
            record_store,
            origin_pool,
            destination_pool,
            PathResolver(depth=3, width=2),
            destination_base_dir=BASE_DIR,
            chunk_size=chunk_size,
            thread_pool_size=4,
            cursor_batch_size=2,
            policy=FaultPolicy(retry_limit=retry_limit, skip_limit=skip_limit, backoff_seconds=0),
        )

    return _make


def _document(record_store, file_id):
    return record_store.collection.find_one({"file_id": file_id})


class TestIterChunks:
    def test_groups_and_keeps_remainder(self) -> None:
        assert list(iter_chunks(range(5), 2)) == [[0, 1], [2, 3], [4]]

    def test_empty(self) -> None:
        assert list(iter_chunks([], 3)) == []


class TestEndToEnd:
    """Full stage runs against in-memory endpoints."""

    def test_flaky_read_recovers(
        self, make_pipeline, record_store, seed, origin_remote, destination_remote, origin_pool
    ) -> None:
        """Three files, chunk size 2, one read failing twice before succeeding."""
        paths = ["/in/a/report.pdf", "/in/b/invoice.pdf", "/in/c/photo.jpg"]
        identities = seed(*paths)
        origin_remote.read_failures[paths[1]] = 2
        pipeline = make_pipeline(chunk_size=2, retry_limit=2)

        report = pipeline.run("run-1")

        assert report.status is RunStatus.COMPLETED
        assert report.error is None
        assert (report.read_count, report.write_count, report.skip_count) == (3, 3, 0)
        assert pipeline.state == "COMPLETED"
        resolver = PathResolver(depth=3, width=2)
        for path, identity in zip(paths, identities):
            document = _document(record_store, identity)
            expected = resolver.resolve(identity, BASE_DIR, path.rsplit("/", 1)[-1])
            assert document["reorg_status"] == "SUCCESS"
            assert document["reorg_destination_path"] == expected
            assert document["reorg_run_id"] == "run-1"
            assert destination_remote.files[expected] == origin_remote.files[path]
        assert _document(record_store, identities[0])["reorg_attempts"] == 1
        assert _document(record_store, identities[1])["reorg_attempts"] == 3
        assert origin_pool.available == origin_pool.size

    def test_rerun_is_idempotent(self, make_pipeline, record_store, seed, destination_remote) -> None:
        """A second run finds nothing pending and changes nothing."""
        identities = seed("/in/1.txt", "/in/2.txt", "/in/3.txt")
        make_pipeline().run("run-1")
        files_after_first = dict(destination_remote.files)

        report = make_pipeline().run("run-2")

        assert report.read_count == 0
        assert report.status is RunStatus.COMPLETED
        assert destination_remote.files == files_after_first
        for identity in identities:
            document = _document(record_store, identity)
            assert document["reorg_run_id"] == "run-1"
            assert document["reorg_attempts"] == 1

    def test_rerun_after_partial_run_takes_only_pending(
        self, make_pipeline, record_store, seed, origin_remote
    ) -> None:
        """A run stopped by the skip limit leaves the rest PENDING for the next run."""
        a, b, c, d, e = seed("/in/a.txt", "/in/b.txt", "/in/c.txt", "/in/d.txt", "/in/e.txt")
        origin_remote.read_failures["/in/b.txt"] = 1

        first = make_pipeline(chunk_size=2, retry_limit=0, skip_limit=0).run("run-1")

        assert first.status is RunStatus.FAILED
        assert first.read_count == 2
        statuses = {i: _document(record_store, i)["reorg_status"] for i in (a, b, c, d, e)}
        assert statuses == {a: "SUCCESS", b: "FAILED", c: "PENDING", d: "PENDING", e: "PENDING"}

        del origin_remote.files["/in/d.txt"]
        second = make_pipeline(chunk_size=2).run("run-2")

        assert second.read_count == 3
        assert (second.write_count, second.failed_count) == (2, 1)
        assert record_store.count_by_status() == {"SUCCESS": 3, "FAILED": 2}
        assert _document(record_store, a)["reorg_run_id"] == "run-1"
        assert _document(record_store, a)["reorg_attempts"] == 1
        assert _document(record_store, b)["reorg_run_id"] == "run-1"
        for identity in (c, e):
            assert _document(record_store, identity)["reorg_run_id"] == "run-2"
        assert _document(record_store, d)["reorg_status"] == "FAILED"

    def test_no_pending_records(self, make_pipeline) -> None:
        report = make_pipeline().run("run-1")

        assert report.status is RunStatus.COMPLETED
        assert report.read_count == 0


class TestItemFailures:
    """Per-item failures never fail neighbouring items."""

    def test_exhausted_retries_count_as_skip(
        self, make_pipeline, record_store, seed, origin_remote
    ) -> None:
        good, bad = seed("/in/good.txt", "/in/bad.txt")
        origin_remote.read_failures["/in/bad.txt"] = 10

        report = make_pipeline(retry_limit=2).run("run-1")

        assert report.status is RunStatus.COMPLETED_WITH_SKIPS
        assert (report.write_count, report.skip_count, report.failed_count) == (1, 1, 0)
        failed = _document(record_store, bad)
        assert failed["reorg_status"] == "FAILED"
        assert failed["reorg_attempts"] == 3
        assert "connection reset" in failed["reorg_error"]
        assert _document(record_store, good)["reorg_status"] == "SUCCESS"

    def test_missing_origin_file_fails_without_retry(
        self, make_pipeline, record_store, seed, origin_remote
    ) -> None:
        (identity,) = seed("/in/gone.txt")
        del origin_remote.files["/in/gone.txt"]

        report = make_pipeline(retry_limit=3).run("run-1")

        assert (report.write_count, report.skip_count, report.failed_count) == (0, 0, 1)
        document = _document(record_store, identity)
        assert document["reorg_status"] == "FAILED"
        assert document["reorg_attempts"] == 1

    def test_malformed_record_rejected(self, make_pipeline, record_store, seed) -> None:
        (identity,) = seed("/in/ok.txt")
        record_store.collection.insert_one(
            {"file_id": "broken", "file_name": "x.txt", "reorg_status": "PENDING"}
        )

        report = make_pipeline().run("run-1")

        assert report.read_count == 2
        assert report.write_count == 1
        assert report.failed_count == 1
        assert _document(record_store, "broken")["reorg_status"] == "FAILED"
        assert _document(record_store, identity)["reorg_status"] == "SUCCESS"

    def test_record_without_identity_failed_by_key(self, make_pipeline, record_store) -> None:
        """A record lacking file_id is marked failed through its document key."""
        key = record_store.collection.insert_one(
            {"source_path": "/in/x.txt", "file_name": "x.txt", "reorg_status": "PENDING"}
        ).inserted_id

        report = make_pipeline().run("run-1")

        assert report.failed_count == 1
        document = record_store.collection.find_one({"_id": key})
        assert document["reorg_status"] == "FAILED"
        assert document["reorg_attempts"] == 1
        assert "lacks file_id" in document["reorg_error"]
        assert document["reorg_run_id"] == "run-1"

        rerun = make_pipeline().run("run-2")

        assert rerun.read_count == 0


class TestRunAborts:
    """Conditions that end the stage as FAILED."""

    def test_skip_limit_stops_after_chunk(
        self, make_pipeline, record_store, seed, origin_remote
    ) -> None:
        identities = seed("/in/1.txt", "/in/2.txt", "/in/3.txt", "/in/4.txt")
        for path in list(origin_remote.files):
            origin_remote.read_failures[path] = 10

        report = make_pipeline(chunk_size=2, retry_limit=0, skip_limit=1).run("run-1")

        assert report.status is RunStatus.FAILED
        assert isinstance(report.error, SkipLimitExceededError)
        assert report.read_count == 2
        assert report.skip_count == 2
        assert [_document(record_store, i)["reorg_status"] for i in identities[2:]] == [
            "PENDING",
            "PENDING",
        ]

    def test_record_store_failure_is_fatal(
        self, make_pipeline, record_store, seed, origin_pool, destination_pool
    ) -> None:
        seed("/in/1.txt")

        with patch.object(record_store, "mark_success", side_effect=AutoReconnect("primary lost")):
            report = make_pipeline().run("run-1")

        assert report.status is RunStatus.FAILED
        assert isinstance(report.error, AutoReconnect)
        assert origin_pool.available == origin_pool.size
        assert destination_pool.available == destination_pool.size
