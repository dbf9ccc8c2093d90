"""Batch job API endpoints.

This module implements REST endpoints for batch generation jobs:
- POST /api/batch-jobs - Start a batch job
- POST /api/batch-jobs/{job_id}/pause - Pause a running job
- POST /api/batch-jobs/{job_id}/resume - Resume a paused job
- POST /api/batch-jobs/{job_id}/cancel - Cancel a job
- GET /api/batch-jobs - Owner's most recent jobs
- GET /api/batch-jobs/active - Owner's pending, processing and paused jobs
- GET /api/batch-jobs/{job_id} - Job status snapshot
- GET /api/batch-jobs/{job_id}/artifacts - Artifacts produced by a job

The caller's identity comes from the X-Owner-Id header set by the auth gateway.
"""

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from pixelstream.api.dependencies import get_job_control, get_owner_id
from pixelstream.models.artifact import GeneratedArtifact
from pixelstream.models.batch_job import BatchJob
from pixelstream.models.generation_params import GenerationParams
from pixelstream.services.batch.job_control import BatchJobControl
from pixelstream.services.exceptions import (
    AccessDenied,
    BatchJobError,
    InvalidCount,
    InvalidState,
    JobNotFound,
    NotOwner,
)

logger = structlog.get_logger()
router = APIRouter(prefix="/api/batch-jobs", tags=["batch-jobs"])

ERROR_STATUS_CODES: dict[type[BatchJobError], int] = {
    InvalidCount: status.HTTP_400_BAD_REQUEST,
    AccessDenied: status.HTTP_403_FORBIDDEN,
    NotOwner: status.HTTP_403_FORBIDDEN,
    JobNotFound: status.HTTP_404_NOT_FOUND,
    InvalidState: status.HTTP_409_CONFLICT,
}


def to_http_exception(error: BatchJobError) -> HTTPException:
    """Map a job control error to its HTTP status code."""
    status_code = ERROR_STATUS_CODES.get(type(error), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=status_code, detail=str(error))


# Request/Response Models


class StartBatchJobRequest(BaseModel):
    """Request model for starting a batch job."""

    total_count: int = Field(
        ...,
        description="Number of artifacts to generate (1-1000)",
    )
    generation_params: GenerationParams = Field(
        ...,
        description="Generation template shared by every item (kind: image or video)",
    )


class StartBatchJobResponse(BaseModel):
    """Response model for a started batch job."""

    job_id: UUID = Field(..., description="Identifier of the new batch job")


class ItemErrorDTO(BaseModel):
    """Failure recorded for one item."""

    index: int = Field(..., description="Item index within the job")
    message: str = Field(..., description="User-facing failure reason")
    attempts: int = Field(..., description="Upstream attempts made for the item")


class BatchJobDTO(BaseModel):
    """Data Transfer Object for batch job snapshots."""

    id: UUID = Field(..., description="Batch job identifier")
    status: str = Field(
        ...,
        description="Lifecycle status (pending, processing, paused, cancelled, completed)",
    )
    total_count: int = Field(..., description="Requested number of artifacts")
    current_index: int = Field(..., description="Next item index to hand out")
    completed_count: int = Field(..., description="Items that produced an artifact")
    failed_count: int = Field(..., description="Items that failed")
    in_flight_count: int = Field(..., description="Items queued or executing")
    current_item_retry_count: int = Field(
        ..., description="Retries consumed by the most recently recorded item"
    )
    generation_params: dict = Field(..., description="Generation template")
    artifact_ids: list[UUID] = Field(..., description="Produced artifacts in completion order")
    item_errors: list[ItemErrorDTO] = Field(..., description="Failures per item")
    created_at: datetime = Field(..., description="Creation time (UTC)")
    updated_at: datetime = Field(..., description="Last mutation time (UTC)")

    @classmethod
    def from_job(cls, job: BatchJob) -> "BatchJobDTO":
        return cls(
            id=job.id,
            status=job.status.value,
            total_count=job.total_count,
            current_index=job.current_index,
            completed_count=job.completed_count,
            failed_count=job.failed_count,
            in_flight_count=job.in_flight_count,
            current_item_retry_count=job.current_item_retry_count,
            generation_params=job.generation_params,
            artifact_ids=[UUID(value) for value in job.artifact_ids],
            item_errors=[ItemErrorDTO(**error) for error in job.item_errors],
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class ArtifactDTO(BaseModel):
    """Data Transfer Object for generated artifacts."""

    id: UUID = Field(..., description="Artifact identifier")
    url: str = Field(..., description="Public media URL")
    thumbnail_url: str | None = Field(default=None, description="Thumbnail URL, if derived")
    content_type: str = Field(..., description="Media content type")
    size_bytes: int = Field(..., description="Media size in bytes")
    width: int | None = Field(default=None, description="Requested width in pixels")
    height: int | None = Field(default=None, description="Requested height in pixels")
    model: str = Field(..., description="Generation model")
    seed: int | None = Field(default=None, description="Seed actually used")
    visibility: str = Field(..., description="public or unlisted")
    item_index: int | None = Field(default=None, description="Item index within the job")
    created_at: datetime = Field(..., description="Creation time (UTC)")

    @classmethod
    def from_artifact(cls, artifact: GeneratedArtifact) -> "ArtifactDTO":
        return cls(
            id=artifact.id,
            url=artifact.url,
            thumbnail_url=artifact.thumbnail_url,
            content_type=artifact.content_type,
            size_bytes=artifact.size_bytes,
            width=artifact.width,
            height=artifact.height,
            model=artifact.model,
            seed=artifact.seed,
            visibility=artifact.visibility.value,
            item_index=artifact.item_index,
            created_at=artifact.created_at,
        )


# API Endpoints


@router.post("", response_model=StartBatchJobResponse, status_code=status.HTTP_201_CREATED)
async def start_batch_job(
    request: StartBatchJobRequest,
    owner_id: str = Depends(get_owner_id),
    control: BatchJobControl = Depends(get_job_control),
) -> StartBatchJobResponse:
    """Start a batch job generating total_count artifacts from one template.

    Raises:
        HTTPException 400: total_count outside [1, 1000]
        HTTPException 403: Trial expired and no active subscription
    """
    try:
        job_id = await control.start_job(owner_id, request.total_count, request.generation_params)
    except BatchJobError as e:
        logger.warning("batch_job_start_rejected", owner_id=owner_id, error=str(e))
        raise to_http_exception(e)

    return StartBatchJobResponse(job_id=job_id)


@router.get("", response_model=list[BatchJobDTO])
async def list_batch_jobs(
    limit: int = Query(default=10, ge=1, le=100, description="Maximum number of jobs"),
    owner_id: str = Depends(get_owner_id),
    control: BatchJobControl = Depends(get_job_control),
) -> list[BatchJobDTO]:
    """Owner's most recent batch jobs (newest first)."""
    jobs = await control.list_jobs(owner_id, limit=limit)
    return [BatchJobDTO.from_job(job) for job in jobs]


@router.get("/active", response_model=list[BatchJobDTO])
async def list_active_batch_jobs(
    owner_id: str = Depends(get_owner_id),
    control: BatchJobControl = Depends(get_job_control),
) -> list[BatchJobDTO]:
    """Owner's pending, processing and paused jobs."""
    jobs = await control.list_active_jobs(owner_id)
    return [BatchJobDTO.from_job(job) for job in jobs]


@router.get("/{job_id}", response_model=BatchJobDTO)
async def get_batch_job(
    job_id: UUID,
    owner_id: str = Depends(get_owner_id),
    control: BatchJobControl = Depends(get_job_control),
) -> BatchJobDTO:
    """Job status snapshot.

    Raises:
        HTTPException 403: Job belongs to another owner
        HTTPException 404: Job not found
    """
    try:
        job = await control.get_job_status(job_id, owner_id)
    except BatchJobError as e:
        raise to_http_exception(e)
    return BatchJobDTO.from_job(job)


@router.get("/{job_id}/artifacts", response_model=list[ArtifactDTO])
async def get_batch_job_artifacts(
    job_id: UUID,
    owner_id: str = Depends(get_owner_id),
    control: BatchJobControl = Depends(get_job_control),
) -> list[ArtifactDTO]:
    """Artifacts produced by a job, in completion order."""
    try:
        artifacts = await control.get_job_artifacts(job_id, owner_id)
    except BatchJobError as e:
        raise to_http_exception(e)
    return [ArtifactDTO.from_artifact(artifact) for artifact in artifacts]


@router.post("/{job_id}/pause", response_model=BatchJobDTO)
async def pause_batch_job(
    job_id: UUID,
    owner_id: str = Depends(get_owner_id),
    control: BatchJobControl = Depends(get_job_control),
) -> BatchJobDTO:
    """Pause a pending or processing job.

    Raises:
        HTTPException 403/404: Not the owner / not found
        HTTPException 409: Job is not pending or processing
    """
    try:
        job = await control.pause_job(job_id, owner_id)
    except BatchJobError as e:
        raise to_http_exception(e)
    return BatchJobDTO.from_job(job)


@router.post("/{job_id}/resume", response_model=BatchJobDTO)
async def resume_batch_job(
    job_id: UUID,
    owner_id: str = Depends(get_owner_id),
    control: BatchJobControl = Depends(get_job_control),
) -> BatchJobDTO:
    """Resume a paused job.

    Raises:
        HTTPException 403/404: Not the owner / not found
        HTTPException 409: Job is not paused
    """
    try:
        job = await control.resume_job(job_id, owner_id)
    except BatchJobError as e:
        raise to_http_exception(e)
    return BatchJobDTO.from_job(job)


@router.post("/{job_id}/cancel", response_model=BatchJobDTO)
async def cancel_batch_job(
    job_id: UUID,
    owner_id: str = Depends(get_owner_id),
    control: BatchJobControl = Depends(get_job_control),
) -> BatchJobDTO:
    """Cancel a job. Cancelling an already cancelled job returns it unchanged.

    Raises:
        HTTPException 403/404: Not the owner / not found
        HTTPException 409: Job already completed
    """
    try:
        job = await control.cancel_job(job_id, owner_id)
    except BatchJobError as e:
        raise to_http_exception(e)
    return BatchJobDTO.from_job(job)
