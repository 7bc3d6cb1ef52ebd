"""Core data models for file reorganization runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from filereorg.utils.timing import format_duration


class ReorgStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class RunStatus(str, Enum):
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    COMPLETED_WITH_SKIPS = "COMPLETED_WITH_SKIPS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass(slots=True)
class FileRecord:
    """One physical file tracked in the files index.

    ``destination_path`` is filled in by the pipeline transform stage; the
    remaining reorganization fields mirror what is persisted.
    """

    file_id: str
    source_path: str
    file_name: str
    extension: str | None = None
    file_size: int | None = None
    last_modified: datetime | None = None
    business: Dict[str, Any] = field(default_factory=dict)
    reorg_status: ReorgStatus = ReorgStatus.PENDING
    reorg_attempts: int = 0
    destination_path: str | None = None
    deleted_from_source: bool = False


@dataclass(slots=True)
class CleanupCandidate:
    """A reorganized file whose origin copy may be deleted."""

    file_id: str
    source_path: str | None
    destination_path: str | None
    completed_at: datetime | None
    file_size: int | None = None
    last_modified: datetime | None = None


@dataclass(slots=True)
class CleanupResult:
    file_id: str
    source_path: str
    deleted: bool = False
    error_message: str | None = None

    @classmethod
    def pending(cls, candidate: CleanupCandidate) -> "CleanupResult":
        return cls(file_id=candidate.file_id, source_path=candidate.source_path or "")


@dataclass(frozen=True, slots=True)
class StageSummary:
    """Metrics for one stage of a run, immutable once built."""

    stage_name: str
    status: str
    read_count: int
    write_count: int
    skip_count: int
    duration: str


@dataclass(slots=True)
class RunOutcome:
    """Everything a run reports back to the audit ledger."""

    status: RunStatus
    reports: List["StageReport"] = field(default_factory=list)
    error: Optional[BaseException] = None
    end_time: datetime | None = None


@dataclass(slots=True)
class ExecutionAudit:
    """Audit record for a single run."""

    audit_id: str
    run_id: str
    job_name: str
    service_name: str
    start_time: datetime
    status: str = RunStatus.STARTED.value
    end_time: datetime | None = None
    duration_ms: int | None = None
    duration_formatted: str | None = None
    exit_code: str | None = None
    exit_description: str | None = None
    stage_summaries: List[StageSummary] = field(default_factory=list)
    total_files_reorganized: int = 0
    total_files_processed: int = 0
    total_files_skipped: int = 0
    total_files_failed: int = 0
    total_files_deleted: int = 0
    total_files_deletion_failed: int = 0
    files_per_second: float | None = None
    error_description: str | None = None
    error_stack_trace: str | None = None
    failure_count: int = 0
    job_parameters: Dict[str, Any] = field(default_factory=dict)
    hostname: str | None = None
    instance_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class StageReport:
    """What a pipeline stage hands back to the orchestrator when it ends."""

    stage_name: str
    status: RunStatus
    read_count: int = 0
    write_count: int = 0
    skip_count: int = 0
    failed_count: int = 0
    duration_ms: int = 0
    error: Optional[BaseException] = None

    def summary(self) -> StageSummary:
        return StageSummary(
            stage_name=self.stage_name,
            status=self.status.value,
            read_count=self.read_count,
            write_count=self.write_count,
            skip_count=self.skip_count,
            duration=format_duration(self.duration_ms),
        )
