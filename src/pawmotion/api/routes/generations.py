"""Video generation API endpoints.

This module implements REST endpoints for the owner's video generations:
- POST /api/generations - Spend one credit and start generating a video from a photo
- GET /api/generations - Paginated list of the owner's generations
- GET /api/generations/events - Server-sent stream of the owner's job changes
- GET /api/generations/{job_id} - Current state of one generation
- POST /api/generations/{job_id}/cancel - Request cancellation

The owner is identified by the X-Owner-Id header.
"""

import asyncio
import json
from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from pawmotion.api.dependencies import get_notifier, get_orchestrator, get_owner_id
from pawmotion.models.generation_job import GenerationJob, JobStatus
from pawmotion.services.exceptions import InsufficientBalance, JobNotFound, SourceImageForbidden

logger = structlog.get_logger()
router = APIRouter(prefix="/api/generations", tags=["generations"])

KEEPALIVE_SECONDS = 15.0


# Request/Response Models


class CreateGenerationRequest(BaseModel):
    """Request model for starting a generation."""

    source_image_ref: str = Field(
        ...,
        description="Path (or file:// URL) of the photo in the owner's staging directory",
        min_length=1,
        max_length=1024,
    )
    prompt: str = Field(
        ...,
        description="Description of the motion to generate",
        min_length=1,
        max_length=2000,
    )
    style: str | None = Field(default=None, max_length=100)
    pet_id: str | None = Field(default=None, max_length=128)


class GenerationDTO(BaseModel):
    """Data Transfer Object for generation jobs in API responses."""

    id: UUID
    status: JobStatus = Field(
        ...,
        description="Job lifecycle status (pending, uploading, processing, completed, failed)",
    )
    progress: int = Field(..., description="Progress percentage (0-100, never decreases)")
    prompt: str
    style: str | None = None
    pet_id: str | None = None
    result_video_url: str | None = Field(
        default=None,
        description="Video URL once completed (null otherwise)",
    )
    error_code: str | None = Field(
        default=None,
        description="Failure cause (upload_error, submission_error, provider_failure, "
        "timeout, cancelled, interrupted)",
    )
    error_reason: str | None = Field(default=None, description="Message to show the user")
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: GenerationJob) -> "GenerationDTO":
        return cls(
            id=job.id,
            status=job.status,
            progress=job.progress,
            prompt=job.prompt,
            style=job.style,
            pet_id=job.pet_id,
            result_video_url=job.result_video_url,
            error_code=job.error_code.value if job.error_code else None,
            error_reason=job.error_reason,
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
        )


class GenerationsResponse(BaseModel):
    """Response model for paginated generations list."""

    generations: list[GenerationDTO]
    total: int = Field(..., description="Total number of generations matching query")
    offset: int
    limit: int


# API Endpoints


@router.post("", response_model=GenerationDTO, status_code=status.HTTP_202_ACCEPTED)
async def create_generation(
    request: CreateGenerationRequest,
    owner_id: str = Depends(get_owner_id),
    orchestrator=Depends(get_orchestrator),
) -> GenerationDTO:
    """Debit one credit and start the upload/submit pipeline.

    Returns:
        GenerationDTO in uploading state (progress is reported via polling or events)

    Raises:
        HTTPException 402: Insufficient credits (no job is created)
        HTTPException 400: Photo reference outside the owner's staging directory
    """
    try:
        job = await orchestrator.request_generation(
            owner_id=owner_id,
            source_image_ref=request.source_image_ref,
            prompt=request.prompt,
            style=request.style,
            pet_id=request.pet_id,
        )
    except InsufficientBalance as e:
        logger.info("generation.rejected", owner_id=owner_id, balance=e.balance)
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=e.user_message)
    except SourceImageForbidden as e:
        logger.warning("generation.source_forbidden", owner_id=owner_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.user_message)

    return GenerationDTO.from_job(job)


@router.get("", response_model=GenerationsResponse, status_code=status.HTTP_200_OK)
async def list_generations(
    owner_id: str = Depends(get_owner_id),
    orchestrator=Depends(get_orchestrator),
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
) -> GenerationsResponse:
    """List the owner's generations, newest first."""
    jobs, total = await orchestrator.list_jobs(
        owner_id, status=status_filter, offset=offset, limit=limit
    )
    return GenerationsResponse(
        generations=[GenerationDTO.from_job(job) for job in jobs],
        total=total,
        offset=offset,
        limit=limit,
    )


@router.get("/events")
async def stream_generation_events(
    request: Request,
    owner_id: str = Depends(get_owner_id),
    notifier=Depends(get_notifier),
) -> StreamingResponse:
    """Server-sent events for the owner's job changes.

    Each event is `event: job` with the JobStateChange as JSON data. A comment
    line is sent every 15 seconds to keep idle connections open. Events
    published while disconnected are not replayed; clients re-read the job.
    A client too slow to keep up receives `event: lagged` and the stream ends.
    """
    subscription = notifier.subscribe(owner_id)

    async def event_stream():
        try:
            while not await request.is_disconnected():
                if subscription.exhausted:
                    yield "event: lagged\ndata: {}\n\n"
                    break
                try:
                    change = await asyncio.wait_for(
                        subscription.queue.get(), timeout=KEEPALIVE_SECONDS
                    )
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: job\ndata: {json.dumps(change.to_dict())}\n\n"
        finally:
            notifier.unsubscribe(subscription)

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@router.get("/{job_id}", response_model=GenerationDTO, status_code=status.HTTP_200_OK)
async def get_generation(
    job_id: UUID,
    owner_id: str = Depends(get_owner_id),
    orchestrator=Depends(get_orchestrator),
) -> GenerationDTO:
    """Get one of the owner's generations.

    Raises:
        HTTPException 404: Unknown job or job owned by someone else
    """
    try:
        job = await orchestrator.get_job(owner_id, job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.user_message)
    return GenerationDTO.from_job(job)


@router.post("/{job_id}/cancel", response_model=GenerationDTO, status_code=status.HTTP_200_OK)
async def cancel_generation(
    job_id: UUID,
    owner_id: str = Depends(get_owner_id),
    orchestrator=Depends(get_orchestrator),
) -> GenerationDTO:
    """Request cancellation; a cancelled generation refunds its credit.

    Jobs still uploading fail immediately. Processing jobs fail before their
    next poll. Terminal jobs are returned unchanged.

    Raises:
        HTTPException 404: Unknown job or job owned by someone else
    """
    try:
        job = await orchestrator.cancel(owner_id, job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.user_message)
    return GenerationDTO.from_job(job)
