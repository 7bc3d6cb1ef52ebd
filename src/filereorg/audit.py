"""Per-run execution audit: opened before the stages run, closed once at the end."""

from __future__ import annotations

import logging
import os
import socket
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping

from filereorg.errors import AuditRecordNotFoundError
from filereorg.models import ExecutionAudit, RunOutcome, RunStatus, StageReport
from filereorg.pipeline.cleanup import STAGE_NAME as CLEANUP_STAGE
from filereorg.pipeline.reorganize import STAGE_NAME as REORGANIZE_STAGE
from filereorg.store.audit import MongoAuditStore, audit_from_document
from filereorg.utils.text import describe_error, format_stack_trace, truncate
from filereorg.utils.timing import format_duration, utc_now

LOGGER = logging.getLogger(__name__)


def get_hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "unknown"


def get_instance_id() -> str:
    """Kubernetes pod name when available, otherwise the hostname."""
    return os.environ.get("HOSTNAME") or get_hostname()


def generate_audit_id(job_name: str, run_id: str) -> str:
    return f"{job_name}-{run_id[:8]}-{uuid.uuid4().hex[:8]}"


def merge_reports(reports: List[StageReport]) -> Dict[str, StageReport]:
    """Combine reports per stage name, keeping different stages apart."""
    merged: Dict[str, StageReport] = {}
    for report in reports:
        current = merged.get(report.stage_name)
        if current is None:
            merged[report.stage_name] = StageReport(
                stage_name=report.stage_name,
                status=report.status,
                read_count=report.read_count,
                write_count=report.write_count,
                skip_count=report.skip_count,
                failed_count=report.failed_count,
                duration_ms=report.duration_ms,
                error=report.error,
            )
            continue
        current.read_count += report.read_count
        current.write_count += report.write_count
        current.skip_count += report.skip_count
        current.failed_count += report.failed_count
        current.duration_ms += report.duration_ms
        if report.status is RunStatus.FAILED:
            current.status = RunStatus.FAILED
        current.error = current.error or report.error
    return merged


class AuditLedger:
    """Creates and finalizes the ``job_executions_audit`` record of each run."""

    def __init__(
        self,
        store: MongoAuditStore,
        *,
        service_name: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.service_name = service_name
        self._clock = clock

    def begin(self, run_id: str, job_name: str, parameters: Mapping[str, Any] | None = None) -> str:
        now = self._clock()
        audit = ExecutionAudit(
            audit_id=generate_audit_id(job_name, run_id),
            run_id=run_id,
            job_name=job_name,
            service_name=self.service_name,
            start_time=now,
            status=RunStatus.STARTED.value,
            job_parameters=dict(parameters or {}),
            hostname=get_hostname(),
            instance_id=get_instance_id(),
            created_at=now,
            updated_at=now,
        )
        self.store.insert(audit)
        LOGGER.info("Audit record created: audit_id=%s, run_id=%s", audit.audit_id, run_id)
        return audit.audit_id

    def finalize(self, run_id: str, outcome: RunOutcome) -> ExecutionAudit:
        """Write the final state of a run onto its existing audit record."""
        document = self.store.find_by_run_id(run_id)
        if document is None:
            raise AuditRecordNotFoundError(f"Audit record not found for run {run_id}")

        audit = audit_from_document(document)
        self._apply(audit, outcome)
        self.store.replace(document["_id"], audit)
        LOGGER.info(
            "Audit record updated: audit_id=%s, status=%s, reorganized=%d, deleted=%d, duration=%s",
            audit.audit_id,
            audit.status,
            audit.total_files_reorganized,
            audit.total_files_deleted,
            audit.duration_formatted,
        )
        return audit

    def _apply(self, audit: ExecutionAudit, outcome: RunOutcome) -> None:
        merged = merge_reports(outcome.reports)
        reorganize = merged.get(REORGANIZE_STAGE) or StageReport(REORGANIZE_STAGE, RunStatus.SKIPPED)
        cleanup = merged.get(CLEANUP_STAGE) or StageReport(CLEANUP_STAGE, RunStatus.SKIPPED)

        end_time = outcome.end_time or self._clock()
        duration_ms = max(int((end_time - audit.start_time).total_seconds() * 1000), 0)
        elapsed_seconds = max(duration_ms / 1000.0, 0.001)

        audit.end_time = end_time
        audit.duration_ms = duration_ms
        audit.duration_formatted = format_duration(duration_ms)
        audit.status = outcome.status.value
        audit.exit_code = outcome.status.value
        audit.stage_summaries = [report.summary() for report in merged.values()]

        audit.total_files_reorganized = reorganize.write_count
        audit.total_files_processed = reorganize.read_count
        audit.total_files_skipped = reorganize.skip_count
        audit.total_files_failed = reorganize.failed_count
        audit.total_files_deleted = cleanup.write_count
        audit.total_files_deletion_failed = cleanup.failed_count
        audit.files_per_second = reorganize.write_count / elapsed_seconds

        errors = [report.error for report in merged.values() if report.error is not None]
        if outcome.error is not None and all(outcome.error is not error for error in errors):
            errors.insert(0, outcome.error)
        if errors:
            first = errors[0]
            audit.error_description = truncate(describe_error(first))
            audit.error_stack_trace = format_stack_trace(first)
            audit.failure_count = len(errors)
            audit.exit_description = audit.error_description
        else:
            audit.exit_description = (
                f"Reorganized {audit.total_files_reorganized}, "
                f"deleted {audit.total_files_deleted} from origin"
            )
        audit.updated_at = self._clock()
