"""FastAPI application: job trigger and audit query endpoints."""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from filereorg import __version__
from filereorg.config import AppConfig
from filereorg.errors import JobAlreadyRunningError
from filereorg.models import RunStatus
from filereorg.orchestrator import Orchestrator, Services
from filereorg.store.audit import MongoAuditStore, serialize_document

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="File Reorganization Service", version=__version__)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_orchestrator: Orchestrator | None = None
_orchestrator_lock = threading.Lock()


class ReorganizeRequest(BaseModel):
    jobName: str | None = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


def _get_orchestrator() -> Orchestrator:
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = Orchestrator(Services.from_config(AppConfig.from_env()))
        return _orchestrator


def _get_audit_store() -> MongoAuditStore:
    return _get_orchestrator().services.audits


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _serialize_all(documents: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [serialize_document(document) for document in documents]


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    global _orchestrator
    with _orchestrator_lock:
        orchestrator, _orchestrator = _orchestrator, None
    if orchestrator is not None:
        await asyncio.to_thread(orchestrator.shutdown)


@app.exception_handler(JobAlreadyRunningError)
async def job_running_handler(request: Request, exc: JobAlreadyRunningError) -> JSONResponse:
    LOGGER.warning("Rejected trigger: %s", exc)
    return JSONResponse(
        status_code=409,
        content={
            "message": "Job is already running",
            "detail": "Please wait for the current job to complete before starting a new one",
        },
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.post("/api/batch/reorganize/full", status_code=202)
async def reorganize_full(payload: ReorganizeRequest | None = None) -> dict[str, Any]:
    """Start a full reorganization run in the background."""
    request = payload or ReorganizeRequest()
    orchestrator = _get_orchestrator()
    try:
        launched = await asyncio.to_thread(
            orchestrator.launch, request.jobName, request.parameters
        )
    except (JobAlreadyRunningError, ValueError):
        raise
    except Exception as exc:
        LOGGER.exception("Failed to start batch job: %s", exc)
        raise HTTPException(status_code=500, detail=f"Failed to start batch job: {exc}")
    return {
        "message": "Batch job started successfully",
        "jobName": launched.job_name,
        "runId": launched.run_id,
        "auditId": launched.audit_id,
        "status": launched.status,
    }


@app.get("/api/monitoring/audit/jobs/{job_name}")
async def audits_by_job(job_name: str) -> List[Dict[str, Any]]:
    return _serialize_all(await asyncio.to_thread(_get_audit_store().find_by_job_name, job_name))


@app.get("/api/monitoring/audit/status/{status}")
async def audits_by_status(status: str) -> List[Dict[str, Any]]:
    normalized = status.upper()
    if normalized not in {item.value for item in RunStatus}:
        raise ValueError(f"Unknown status: {status}")
    return _serialize_all(await asyncio.to_thread(_get_audit_store().find_by_status, normalized))


@app.get("/api/monitoring/audit/execution/{run_id}")
async def audit_by_run(run_id: str) -> Dict[str, Any]:
    document = await asyncio.to_thread(_get_audit_store().find_by_run_id, run_id)
    if document is None:
        raise HTTPException(status_code=404, detail=f"No audit record for run {run_id}")
    return serialize_document(document)


@app.get("/api/monitoring/audit/range")
async def audits_in_range(start: datetime, end: datetime) -> List[Dict[str, Any]]:
    start, end = _as_utc(start), _as_utc(end)
    if start > end:
        raise ValueError("start must not be after end")
    return _serialize_all(await asyncio.to_thread(_get_audit_store().find_by_range, start, end))


@app.get("/api/monitoring/audit/stats")
async def audit_stats(job_name: str | None = None) -> Dict[str, Any]:
    """Execution counts overall and per status."""
    store = _get_audit_store()
    total = await asyncio.to_thread(store.count, job_name)
    by_status = await asyncio.to_thread(store.count_by_status, job_name)
    return {
        "totalExecutions": total,
        "completedExecutions": by_status.get(RunStatus.COMPLETED.value, 0),
        "completedWithSkipsExecutions": by_status.get(RunStatus.COMPLETED_WITH_SKIPS.value, 0),
        "failedExecutions": by_status.get(RunStatus.FAILED.value, 0),
        "startedExecutions": by_status.get(RunStatus.STARTED.value, 0),
        "byStatus": by_status,
    }


@app.get("/api/monitoring/audit/latest")
async def latest_audits(
    limit: int = Query(10, ge=1, le=100), job_name: str | None = None
) -> List[Dict[str, Any]]:
    return _serialize_all(await asyncio.to_thread(_get_audit_store().latest, limit, job_name))
