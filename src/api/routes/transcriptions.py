"""Transcription API routes for job submission, status, cancellation and retry.

Endpoints:
    POST   /v1/transcriptions/jobs                  Upload audio and start a job
    GET    /v1/transcriptions/jobs                  List live jobs
    GET    /v1/transcriptions/jobs/{job_id}         Poll status + progress (+ result once completed)
    POST   /v1/transcriptions/jobs/{job_id}/cancel  Cancel a running job
    POST   /v1/transcriptions/jobs/{job_id}/retry   Retry a failed or cancelled job
    DELETE /v1/transcriptions/jobs/{job_id}         Dismiss a finished job
    GET    /v1/transcriptions/stats                 Counts by status
    POST   /v1/transcriptions/validate              Check a provider config for missing fields
    POST   /v1/transcriptions/test-connection       Probe a provider with the given credentials
    GET    /v1/transcriptions/profiles              List configured provider profiles
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Body, File, Form, HTTPException, Request, UploadFile

from src.transcription.errors import ConfigurationError, RetryRejected
from src.transcription.orchestrator import TranscriptionOrchestrator
from src.transcription.schemas import (
    CancelResult,
    ConfigValidation,
    ConnectionTestResult,
    Operation,
    OperationStatistics,
    StartJobResponse,
    TranscriptionConfig,
)
from src.transcription.settings import ProfileRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/transcriptions", tags=["transcriptions"])


def _orchestrator(request: Request) -> TranscriptionOrchestrator:
    return request.app.state.orchestrator


def _profiles(request: Request) -> ProfileRegistry:
    return request.app.state.profiles


def _resolve_config(
    request: Request,
    config: Optional[str],
    profile: Optional[str],
) -> TranscriptionConfig:
    """Config from the form field, a named profile, or the default profile."""
    orchestrator = _orchestrator(request)
    if config:
        try:
            raw = json.loads(config)
        except json.JSONDecodeError as e:
            raise HTTPException(status_code=422, detail=f"config is not valid JSON: {e}")
        try:
            return orchestrator.parse_config(raw)
        except ConfigurationError as e:
            raise HTTPException(status_code=422, detail={"message": e.message, "errors": e.errors})

    profiles = _profiles(request)
    if profile:
        resolved = profiles.get(profile)
        if resolved is None:
            raise HTTPException(status_code=404, detail=f"Profile not found: {profile}")
        return resolved

    resolved = profiles.get_default()
    if resolved is None:
        raise HTTPException(
            status_code=422,
            detail="No config provided and no default profile configured",
        )
    return resolved


# --- Job endpoints ---


@router.post("/jobs", response_model=StartJobResponse)
async def start_job(
    request: Request,
    file: UploadFile = File(...),
    config: Optional[str] = Form(None),
    profile: Optional[str] = Form(None),
):
    """Start transcribing an uploaded audio file.

    Registers the job, runs it in the background and returns the job id
    for polling.
    """
    transcription_config = _resolve_config(request, config, profile)
    payload = await file.read()
    if not payload:
        raise HTTPException(status_code=422, detail="Uploaded audio is empty")

    job_id = _orchestrator(request).start(payload, transcription_config)
    logger.info(
        f"[{job_id}] Accepted {file.filename or 'upload'} ({len(payload)} bytes) "
        f"for {transcription_config.provider.value}"
    )
    return StartJobResponse(job_id=job_id)


@router.get("/jobs", response_model=list[Operation])
async def list_jobs(request: Request, type: Optional[str] = None):
    """List live operations, optionally filtered by type."""
    orchestrator = _orchestrator(request)
    if type:
        return orchestrator.tracker.list_by_type(type)
    return orchestrator.get_active_jobs()


@router.get("/jobs/{job_id}", response_model=Operation)
async def get_job_status(request: Request, job_id: str):
    """Get job status and progress.

    This is the primary polling endpoint. Once completed, the normalized
    transcript is under ``metadata.result`` until the job is cleaned up.
    """
    op = _orchestrator(request).get_status(job_id)
    if op is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return op


@router.post("/jobs/{job_id}/cancel", response_model=CancelResult)
async def cancel_job(request: Request, job_id: str):
    """Cancel a running job."""
    result = await _orchestrator(request).cancel(job_id)
    if not result.success:
        if _orchestrator(request).get_status(job_id) is None:
            raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
        raise HTTPException(status_code=400, detail=result.message)
    return result


@router.post("/jobs/{job_id}/retry", response_model=StartJobResponse)
async def retry_job(request: Request, job_id: str):
    """Retry a failed or cancelled job in the background."""
    orchestrator = _orchestrator(request)
    if orchestrator.get_status(job_id) is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    try:
        orchestrator.start_retry(job_id)
    except RetryRejected as e:
        raise HTTPException(status_code=409, detail=e.message)
    op = orchestrator.get_status(job_id)
    return StartJobResponse(job_id=job_id, status=op.status)


@router.delete("/jobs/{job_id}")
async def remove_job(request: Request, job_id: str):
    """Dismiss a completed/failed/cancelled job."""
    orchestrator = _orchestrator(request)
    if not orchestrator.dismiss(job_id):
        op = orchestrator.get_status(job_id)
        if op is None:
            raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
        raise HTTPException(
            status_code=400,
            detail=f"Cannot dismiss job in status: {op.status.value}",
        )
    return {"job_id": job_id, "deleted": True}


@router.post("/jobs/clear-completed")
async def clear_completed(request: Request):
    """Dismiss every finished job."""
    removed = _orchestrator(request).clear_completed()
    return {"removed": removed}


# --- Stats and configuration ---


@router.get("/stats", response_model=OperationStatistics)
async def get_stats(request: Request):
    return _orchestrator(request).get_statistics()


@router.post("/validate", response_model=ConfigValidation)
async def validate_config(request: Request, config: dict = Body(...)):
    """Report every missing required field for the selected provider."""
    return _orchestrator(request).validate_config(config)


@router.post("/test-connection", response_model=ConnectionTestResult)
async def test_connection(request: Request, config: dict = Body(...)):
    """Probe the selected provider. Failures are reported, not raised."""
    return await _orchestrator(request).test_connection(config)


@router.get("/profiles")
async def list_profiles(request: Request):
    profiles = _profiles(request)
    keys = profiles.get_keys()
    return {"profiles": keys, "default": profiles.default_profile or None, "count": len(keys)}
