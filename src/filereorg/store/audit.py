"""MongoDB persistence for execution audit records."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping

from pymongo import ASCENDING, DESCENDING
from pymongo.collection import Collection

from filereorg.models import ExecutionAudit, StageSummary

_SCALAR_FIELDS = (
    "audit_id",
    "run_id",
    "job_name",
    "service_name",
    "start_time",
    "status",
    "end_time",
    "duration_ms",
    "duration_formatted",
    "exit_code",
    "exit_description",
    "total_files_reorganized",
    "total_files_processed",
    "total_files_skipped",
    "total_files_failed",
    "total_files_deleted",
    "total_files_deletion_failed",
    "files_per_second",
    "error_description",
    "error_stack_trace",
    "failure_count",
    "hostname",
    "instance_id",
    "created_at",
    "updated_at",
)


def audit_to_document(audit: ExecutionAudit) -> Dict[str, Any]:
    document = {name: getattr(audit, name) for name in _SCALAR_FIELDS}
    document["job_parameters"] = dict(audit.job_parameters)
    document["stage_summaries"] = [
        {
            "stage_name": stage.stage_name,
            "status": stage.status,
            "read_count": stage.read_count,
            "write_count": stage.write_count,
            "skip_count": stage.skip_count,
            "duration": stage.duration,
        }
        for stage in audit.stage_summaries
    ]
    return document


def audit_from_document(document: Mapping[str, Any]) -> ExecutionAudit:
    values = {name: document.get(name) for name in _SCALAR_FIELDS if document.get(name) is not None}
    return ExecutionAudit(
        **values,
        job_parameters=dict(document.get("job_parameters") or {}),
        stage_summaries=[
            StageSummary(
                stage_name=item["stage_name"],
                status=item["status"],
                read_count=int(item.get("read_count", 0)),
                write_count=int(item.get("write_count", 0)),
                skip_count=int(item.get("skip_count", 0)),
                duration=item.get("duration", ""),
            )
            for item in document.get("stage_summaries") or []
        ],
    )


def serialize_document(document: Mapping[str, Any]) -> Dict[str, Any]:
    """Make a stored audit document JSON friendly for the query API."""
    result: Dict[str, Any] = {}
    for key, value in document.items():
        if key == "_id":
            result["id"] = str(value)
        elif isinstance(value, datetime):
            result[key] = value.isoformat() + "Z"
        else:
            result[key] = value
    return result


class MongoAuditStore:
    """Read and write access to the job execution audit collection."""

    def __init__(self, collection: Collection) -> None:
        self._collection = collection

    @property
    def collection(self) -> Collection:
        return self._collection

    def ensure_indexes(self) -> None:
        self._collection.create_index("audit_id", unique=True, name="idx_audit_id")
        self._collection.create_index("run_id", name="idx_run_id")
        self._collection.create_index(
            [("job_name", ASCENDING), ("start_time", DESCENDING)], name="idx_job_start"
        )
        self._collection.create_index("status", name="idx_status")

    def insert(self, audit: ExecutionAudit) -> Any:
        return self._collection.insert_one(audit_to_document(audit)).inserted_id

    def find_by_run_id(self, run_id: str) -> Dict[str, Any] | None:
        return self._collection.find_one({"run_id": run_id})

    def replace(self, document_id: Any, audit: ExecutionAudit) -> bool:
        """Overwrite the stored audit in place, keeping its ``_id``."""
        result = self._collection.replace_one({"_id": document_id}, audit_to_document(audit))
        return result.matched_count == 1

    def find_by_job_name(self, job_name: str) -> List[Dict[str, Any]]:
        return list(self._collection.find({"job_name": job_name}, sort=[("start_time", DESCENDING)]))

    def find_by_status(self, status: str) -> List[Dict[str, Any]]:
        return list(self._collection.find({"status": status}, sort=[("start_time", DESCENDING)]))

    def find_by_range(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        return list(
            self._collection.find(
                {"start_time": {"$gte": start, "$lte": end}},
                sort=[("start_time", DESCENDING)],
            )
        )

    def latest(self, limit: int = 10, job_name: str | None = None) -> List[Dict[str, Any]]:
        query = {"job_name": job_name} if job_name else {}
        cursor = self._collection.find(query, sort=[("start_time", DESCENDING)]).limit(limit)
        return list(cursor)

    def count(self, job_name: str | None = None) -> int:
        return self._collection.count_documents({"job_name": job_name} if job_name else {})

    def count_by_status(self, job_name: str | None = None) -> Dict[str, int]:
        pipeline: List[Dict[str, Any]] = []
        if job_name:
            pipeline.append({"$match": {"job_name": job_name}})
        pipeline.append({"$group": {"_id": "$status", "count": {"$sum": 1}}})
        return {row["_id"]: row["count"] for row in self._collection.aggregate(pipeline)}
