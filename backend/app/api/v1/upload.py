"""Archive upload and extraction endpoints."""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Union

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Request, Response, UploadFile, status

from app.api.deps import get_extraction_service, get_upload_lock
from app.rate_limit import limiter
from app.schemas.upload import (
    ArchiveKind,
    UploadAcceptedResponse,
    UploadResponse,
    UploadStatus,
)
from app.services.archive import SUPPORTED_SUFFIXES, classify_archive
from app.schemas.common import ErrorResponse
from app.services.errors import PipelineError, UnsupportedFormatError, ValidationError
from app.services.extraction import ExtractionService
from app.services.pipeline_lock import PipelineLock
from app.services.status_store import get_upload_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/upload", tags=["upload"])


def process_upload_sync(
    service: ExtractionService,
    lock: PipelineLock,
    job_id: str,
    staged: Path,
    kind: ArchiveKind,
) -> None:
    """
    Extract in a background thread and release the pipeline lock afterwards.
    Failures are already recorded on the job by the service.
    """
    try:
        service.extract(job_id, staged, kind)
    except PipelineError as e:
        logger.warning(f"Background upload {job_id} failed: {e.message}")
    finally:
        lock.release()


@router.post(
    "",
    response_model=Union[UploadResponse, UploadAcceptedResponse],
    status_code=status.HTTP_200_OK,
    responses={
        400: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
@limiter.limit("5/minute")
async def upload_archive(
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    file: Optional[UploadFile] = File(None),
    async_mode: bool = False,
    service: ExtractionService = Depends(get_extraction_service),
    lock: PipelineLock = Depends(get_upload_lock),
):
    """
    Upload a .tar, .tar.gz/.tgz, .zip or .rar archive and extract it.

    Any previous extraction is replaced. The extracted tree is listed in the
    response (capped) and becomes the source for the next deploy.

    Query params:
    - async_mode: If true, returns immediately with job_id for polling (default: false)
    """
    if file is None or not file.filename:
        raise ValidationError("No file found in form data")

    kind = classify_archive(file.filename)
    if kind == ArchiveKind.UNKNOWN:
        raise UnsupportedFormatError(
            f"Unsupported file type '{file.filename}'. Supported: {', '.join(SUPPORTED_SUFFIXES)}"
        )

    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit():
        logger.info(f"Incoming upload {file.filename}: {int(content_length) / (1024 * 1024):.2f} MB")

    lock.acquire()
    background = False
    try:
        job = service.start_job(file.filename, kind)
        try:
            staged = await service.stage(job.job_id, file, kind)
        except PipelineError as e:
            service.fail(job.job_id, e.message)
            raise

        if async_mode:
            background_tasks.add_task(process_upload_sync, service, lock, job.job_id, staged, kind)
            background = True
            response.status_code = status.HTTP_202_ACCEPTED
            return UploadAcceptedResponse(
                job_id=job.job_id,
                message="Upload started, poll /upload/status for progress",
            )

        final = await asyncio.to_thread(service.extract, job.job_id, staged, kind)
    finally:
        if not background:
            lock.release()

    return UploadResponse(
        message="System files extracted successfully",
        files=final.discovered_entries,
        total_files=final.total_file_count,
        file_type=kind,
        extracted_path=str(service.destination),
        job_id=job.job_id,
        warnings=final.warnings,
    )


@router.get("/status", response_model=UploadStatus)
async def get_current_upload_status() -> UploadStatus:
    """Status of the most recent upload (idle if there is none)."""
    return get_upload_store().current_or_idle()


@router.get("/status/{job_id}", response_model=UploadStatus)
async def get_upload_job_status(job_id: str) -> UploadStatus:
    """Get the current status of an upload job."""
    upload_status = get_upload_store().get(job_id)

    if upload_status is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Upload job {job_id} not found",
        )

    return upload_status
