"""MongoDB persistence for per-file reorganization state."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Mapping, Sequence, Tuple

from pymongo import ASCENDING, UpdateOne
from pymongo.collection import Collection
from pymongo.errors import BulkWriteError

from filereorg.errors import MalformedRecordError
from filereorg.models import FileRecord, ReorgStatus
from filereorg.utils.text import truncate
from filereorg.utils.timing import utc_now

LOGGER = logging.getLogger(__name__)

PENDING_FILTER: Dict[str, Any] = {"reorg_status": ReorgStatus.PENDING.value}
INSERTION_ORDER: List[Tuple[str, int]] = [("_id", ASCENDING)]
BUSINESS_PREFIX = "business_"


def record_from_document(document: Mapping[str, Any] | None) -> FileRecord | None:
    """Map a ``files_index`` document to a FileRecord.

    Returns None for a missing document; raises MalformedRecordError when the
    fields needed to move the file are absent.
    """
    if document is None:
        return None
    file_id = document.get("file_id")
    source_path = document.get("source_path")
    file_name = document.get("file_name")
    if not file_id or not source_path or not file_name:
        raise MalformedRecordError(
            f"Record {document.get('_id')} lacks file_id, source_path or file_name"
        )
    return FileRecord(
        file_id=str(file_id),
        source_path=str(source_path),
        file_name=str(file_name),
        extension=document.get("extension"),
        file_size=document.get("file_size"),
        last_modified=document.get("last_modified"),
        business={
            key[len(BUSINESS_PREFIX) :]: value
            for key, value in document.items()
            if key.startswith(BUSINESS_PREFIX)
        },
        reorg_status=ReorgStatus(document.get("reorg_status") or ReorgStatus.PENDING.value),
        reorg_attempts=int(document.get("reorg_attempts") or 0),
        destination_path=document.get("reorg_destination_path"),
        deleted_from_source=bool(document.get("deleted_from_source", False)),
    )


def document_from_record(record: FileRecord) -> Dict[str, Any]:
    document: Dict[str, Any] = {
        "file_id": record.file_id,
        "source_path": record.source_path,
        "file_name": record.file_name,
        "extension": record.extension,
        "file_size": record.file_size,
        "last_modified": record.last_modified,
        "reorg_status": record.reorg_status.value,
        "reorg_attempts": record.reorg_attempts,
        "deleted_from_source": record.deleted_from_source,
    }
    if record.destination_path is not None:
        document["reorg_destination_path"] = record.destination_path
    for key, value in record.business.items():
        document[BUSINESS_PREFIX + key] = value
    return document


class MongoRecordStore:
    """Persistence layer for the files index collection."""

    def __init__(self, collection: Collection) -> None:
        self._collection = collection

    @property
    def collection(self) -> Collection:
        return self._collection

    def ensure_indexes(self) -> None:
        self._collection.create_index("file_id", unique=True, name="idx_file_id")
        self._collection.create_index(
            [("reorg_status", ASCENDING), ("_id", ASCENDING)], name="idx_reorg_pending"
        )
        self._collection.create_index(
            [
                ("reorg_status", ASCENDING),
                ("deleted_from_source", ASCENDING),
                ("reorg_completed_at", ASCENDING),
            ],
            name="idx_cleanup_candidates",
        )

    def save(self, record: FileRecord) -> None:
        """Upsert a record by identity. Used by tooling that seeds the index."""
        self._collection.update_one(
            {"file_id": record.file_id},
            {"$set": document_from_record(record)},
            upsert=True,
        )

    def stream_pending(
        self,
        filter: Mapping[str, Any] | None = None,
        sort: Sequence[Tuple[str, int]] | None = None,
        batch_size: int = 100,
    ) -> Iterator[Dict[str, Any]]:
        """Lazily yield raw documents still waiting for reorganization.

        The cursor fetches ``batch_size`` documents per round trip; nothing
        beyond the current batch is held in memory.
        """
        cursor = self._collection.find(
            dict(filter if filter is not None else PENDING_FILTER),
            sort=list(sort if sort is not None else INSERTION_ORDER),
            batch_size=batch_size,
        )
        try:
            yield from cursor
        finally:
            cursor.close()

    def update_status(
        self,
        file_id: Any,
        fields: Mapping[str, Any],
        *,
        increment: Mapping[str, int] | None = None,
        key: str = "file_id",
    ) -> bool:
        """Update one record matched on ``key`` (``_id`` for records lacking an identity)."""
        update: Dict[str, Any] = {"$set": dict(fields)}
        if increment:
            update["$inc"] = dict(increment)
        result = self._collection.update_one({key: file_id}, update)
        if result.matched_count == 0:
            LOGGER.warning("No record found to update for %s=%s", key, file_id)
        return result.matched_count > 0

    def mark_success(
        self,
        file_id: str,
        *,
        destination_path: str,
        duration_ms: int,
        run_id: str,
        attempts: int = 1,
    ) -> bool:
        now = utc_now()
        return self.update_status(
            file_id,
            {
                "reorg_status": ReorgStatus.SUCCESS.value,
                "reorg_destination_path": destination_path,
                "reorg_completed_at": now,
                "reorg_duration_ms": duration_ms,
                "reorg_run_id": run_id,
                "reorg_last_attempt_at": now,
                "reorg_error": None,
                "deleted_from_source": False,
            },
            increment={"reorg_attempts": attempts},
        )

    def mark_failed(
        self,
        file_id: Any,
        *,
        error: str,
        run_id: str,
        duration_ms: int | None = None,
        attempts: int = 1,
        key: str = "file_id",
    ) -> bool:
        return self.update_status(
            file_id,
            {
                "reorg_status": ReorgStatus.FAILED.value,
                "reorg_error": truncate(error),
                "reorg_run_id": run_id,
                "reorg_duration_ms": duration_ms,
                "reorg_last_attempt_at": utc_now(),
            },
            increment={"reorg_attempts": attempts},
            key=key,
        )

    def bulk_update(self, updates: Sequence[Tuple[Mapping[str, Any], Mapping[str, Any]]]) -> int:
        """Apply ``$set`` updates unordered; each pair is (filter, fields).

        Items that succeed stay applied even if others in the batch fail.
        """
        operations = [UpdateOne(dict(query), {"$set": dict(fields)}) for query, fields in updates]
        if not operations:
            return 0
        try:
            result = self._collection.bulk_write(operations, ordered=False)
        except BulkWriteError as exc:
            LOGGER.error(
                "Bulk update partially failed: %d errors, %d modified",
                len(exc.details.get("writeErrors", [])),
                exc.details.get("nModified", 0),
            )
            raise
        return result.modified_count

    def find_candidates(
        self,
        filter: Mapping[str, Any],
        projection: Sequence[str] | None = None,
        batch_size: int = 100,
    ) -> Iterator[Dict[str, Any]]:
        """Lazily yield documents matching a cleanup selection query."""
        cursor = self._collection.find(
            dict(filter),
            projection=list(projection) if projection else None,
            sort=INSERTION_ORDER,
            batch_size=batch_size,
        )
        try:
            yield from cursor
        finally:
            cursor.close()

    def count_by_status(self) -> Dict[str, int]:
        pipeline = [{"$group": {"_id": "$reorg_status", "count": {"$sum": 1}}}]
        return {row["_id"]: row["count"] for row in self._collection.aggregate(pipeline)}
