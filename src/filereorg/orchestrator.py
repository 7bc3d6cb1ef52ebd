"""Runs the reorganization job: lease, audit, migration stage, cleanup stage."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Mapping

from pymongo import MongoClient

from filereorg.audit import AuditLedger
from filereorg.config import AppConfig
from filereorg.errors import JobAlreadyRunningError
from filereorg.locking import ExecutionLock, Lease
from filereorg.models import RunOutcome, RunStatus, StageReport
from filereorg.pipeline.cleanup import STAGE_NAME as CLEANUP_STAGE
from filereorg.pipeline.cleanup import CleanupPipeline
from filereorg.pipeline.faults import FaultPolicy
from filereorg.pipeline.reorganize import ReorganizationPipeline
from filereorg.remote.pool import SessionPool
from filereorg.store import mongo
from filereorg.store.audit import MongoAuditStore
from filereorg.store.locks import MongoLeaseStore
from filereorg.store.records import MongoRecordStore
from filereorg.utils.paths import PathResolver
from filereorg.utils.timing import utc_now

LOGGER = logging.getLogger(__name__)

SKIP_CLEANUP_PARAM = "skipCleanup"
FINISHED_RUNS_KEPT = 50


@dataclass(slots=True)
class Services:
    """Long lived collaborators shared by every run of the job."""

    config: AppConfig
    records: MongoRecordStore
    audits: MongoAuditStore
    lock: ExecutionLock
    origin: SessionPool
    destination: SessionPool
    client: MongoClient | None = None

    @classmethod
    def from_config(cls, config: AppConfig) -> "Services":
        client = mongo.connect(config.mongo)
        collections = mongo.Collections.from_database(client[config.mongo.database], config.mongo)
        records = MongoRecordStore(collections.files)
        audits = MongoAuditStore(collections.audit)
        records.ensure_indexes()
        audits.ensure_indexes()
        return cls(
            config=config,
            records=records,
            audits=audits,
            lock=ExecutionLock(MongoLeaseStore(collections.locks)),
            origin=SessionPool.for_endpoint("origin", config.origin),
            destination=SessionPool.for_endpoint("destination", config.destination),
            client=client,
        )

    def close(self) -> None:
        self.origin.close()
        self.destination.close()
        if self.client is not None:
            self.client.close()


@dataclass(frozen=True, slots=True)
class LaunchResult:
    run_id: str
    audit_id: str
    job_name: str
    status: str = "ACCEPTED"


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def combine_status(reports: list[StageReport]) -> RunStatus:
    statuses = {report.status for report in reports}
    if RunStatus.FAILED in statuses:
        return RunStatus.FAILED
    if RunStatus.COMPLETED_WITH_SKIPS in statuses:
        return RunStatus.COMPLETED_WITH_SKIPS
    return RunStatus.COMPLETED


class Orchestrator:
    """Single entry point for starting reorganization runs.

    ``launch`` takes the lease and opens the audit record before returning,
    then runs the stages on a dedicated launcher thread. ``run`` does the same
    work on the calling thread.
    """

    def __init__(self, services: Services) -> None:
        self.services = services
        self.config = services.config
        self.ledger = AuditLedger(services.audits, service_name=self.config.service_name)
        self._launcher = ThreadPoolExecutor(max_workers=1, thread_name_prefix="job-launcher")
        self._runs_lock = threading.Lock()
        self._runs: Dict[str, Future] = {}
        self._finished: OrderedDict[str, RunStatus] = OrderedDict()

    @property
    def _min_hold(self) -> timedelta:
        return timedelta(seconds=self.config.lock.min_hold_seconds)

    @property
    def _max_hold(self) -> timedelta:
        return timedelta(seconds=self.config.lock.max_hold_seconds)

    def _prepare(
        self, job_name: str | None, parameters: Mapping[str, Any] | None
    ) -> tuple[str, str, Dict[str, Any]]:
        run_id = uuid.uuid4().hex
        name = job_name or self.config.job_name
        params = dict(parameters or {})
        params.setdefault("timestamp", int(time.time() * 1000))
        return run_id, name, params

    def launch(
        self, job_name: str | None = None, parameters: Mapping[str, Any] | None = None
    ) -> LaunchResult:
        """Start a run in the background and return its identifiers.

        Raises JobAlreadyRunningError when another run holds the lease.
        """
        run_id, name, params = self._prepare(job_name, parameters)
        lease = self.services.lock.acquire(self.config.lock.name, self._min_hold, self._max_hold)
        if lease is None:
            raise JobAlreadyRunningError(f"Job lock '{self.config.lock.name}' is already held")
        try:
            audit_id = self.ledger.begin(run_id, name, params)
        except Exception:
            self.services.lock.release(lease)
            raise
        try:
            with self._runs_lock:
                future = self._launcher.submit(self._run_leased, lease, run_id, params)
                self._runs[run_id] = future
        except Exception as exc:
            LOGGER.error("Could not start run %s: %s", run_id, exc)
            self.services.lock.release(lease)
            self._finalize(run_id, RunOutcome(status=RunStatus.FAILED, error=exc, end_time=utc_now()))
            raise
        future.add_done_callback(lambda done: self._retire(run_id, done))
        LOGGER.info("Launched %s run %s (audit %s)", name, run_id, audit_id)
        return LaunchResult(run_id=run_id, audit_id=audit_id, job_name=name)

    def _retire(self, run_id: str, future: Future) -> None:
        status = RunStatus.FAILED if future.cancelled() or future.exception() else future.result().status
        with self._runs_lock:
            self._runs.pop(run_id, None)
            self._finished[run_id] = status
            while len(self._finished) > FINISHED_RUNS_KEPT:
                self._finished.popitem(last=False)

    def run(
        self, job_name: str | None = None, parameters: Mapping[str, Any] | None = None
    ) -> RunOutcome:
        """Run the job on the calling thread and return its outcome."""
        run_id, name, params = self._prepare(job_name, parameters)

        def body() -> RunOutcome:
            self.ledger.begin(run_id, name, params)
            return self.execute(run_id, params)

        return self.services.lock.try_acquire_and_run(
            self.config.lock.name, self._min_hold, self._max_hold, body
        )

    def wait(self, run_id: str, timeout: float | None = None) -> RunStatus:
        """Block until a launched run ends and return its final status.

        Finished runs are only remembered for the last ``FINISHED_RUNS_KEPT``
        launches; older or unknown ids raise KeyError. The audit record stays
        the durable source of a run's result.
        """
        with self._runs_lock:
            future = self._runs.get(run_id)
            if future is None:
                if run_id in self._finished:
                    return self._finished[run_id]
                raise KeyError(f"Unknown run {run_id}")
        return future.result(timeout=timeout).status

    def _run_leased(self, lease: Lease, run_id: str, params: Dict[str, Any]) -> RunOutcome:
        try:
            return self.execute(run_id, params)
        finally:
            self.services.lock.release(lease)

    def execute(self, run_id: str, params: Mapping[str, Any]) -> RunOutcome:
        """Run both stages for an already audited run and finalize its audit."""
        outcome = RunOutcome(status=RunStatus.FAILED)
        try:
            report = self.build_reorganization().run(run_id)
            outcome.reports.append(report)
            if report.status is RunStatus.FAILED:
                LOGGER.error("Reorganization failed, cleanup will not run")
                outcome.error = report.error
            elif not self.config.cleanup.enabled or _flag(params.get(SKIP_CLEANUP_PARAM)):
                LOGGER.info("Cleanup disabled for run %s", run_id)
                outcome.reports.append(StageReport(CLEANUP_STAGE, RunStatus.SKIPPED))
            else:
                cleanup = self.build_cleanup().run(run_id)
                outcome.reports.append(cleanup)
                outcome.error = cleanup.error
            outcome.status = combine_status(outcome.reports)
        except Exception as exc:
            LOGGER.exception("Run %s failed: %s", run_id, exc)
            outcome.status = RunStatus.FAILED
            outcome.error = exc
        finally:
            outcome.end_time = utc_now()
            self._finalize(run_id, outcome)
        return outcome

    def _finalize(self, run_id: str, outcome: RunOutcome) -> None:
        try:
            self.ledger.finalize(run_id, outcome)
        except Exception as exc:
            LOGGER.error("Failed to finalize audit for run %s: %s", run_id, exc)

    def build_reorganization(self) -> ReorganizationPipeline:
        batch = self.config.batch
        return ReorganizationPipeline(
            self.services.records,
            self.services.origin,
            self.services.destination,
            PathResolver(depth=self.config.partition.depth, width=self.config.partition.width),
            destination_base_dir=self.config.destination.base_dir,
            chunk_size=batch.chunk_size,
            thread_pool_size=batch.thread_pool_size,
            cursor_batch_size=batch.cursor_batch_size,
            policy=FaultPolicy(
                retry_limit=batch.retry_limit,
                skip_limit=batch.skip_limit,
                backoff_seconds=batch.retry_backoff_seconds,
            ),
        )

    def build_cleanup(self) -> CleanupPipeline:
        cleanup = self.config.cleanup
        return CleanupPipeline(
            self.services.records,
            self.services.origin,
            chunk_size=self.config.batch.chunk_size,
            thread_pool_size=cleanup.thread_pool_size,
            safety_window_days=cleanup.safety_window_days,
            deleted_by=cleanup.deleted_by,
        )

    def shutdown(self, wait: bool = True) -> None:
        self._launcher.shutdown(wait=wait)
        self.services.close()
