"""Deployment endpoints."""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.deps import get_deploy_lock, get_orchestrator
from app.rate_limit import limiter
from app.schemas.common import ErrorResponse
from app.schemas.deploy import DeployResponse, DeployStatus
from app.services.deployer import DeploymentOrchestrator
from app.services.pipeline_lock import PipelineLock
from app.services.status_store import get_deploy_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deploy", tags=["deploy"])


@router.post(
    "",
    response_model=DeployResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
@limiter.limit("5/minute")
async def deploy_extracted_system(
    request: Request,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
    lock: PipelineLock = Depends(get_deploy_lock),
) -> DeployResponse:
    """
    Deploy the last extracted archive over the live application.

    Copies the tree, installs dependencies, regenerates the database client,
    copies the bundled database file and writes the restart sentinel.
    Dependency install, client generation and database copy are best-effort:
    their failures show up as warnings and the deploy still succeeds.
    """
    with lock:
        job = orchestrator.start_job()
        final = await asyncio.to_thread(orchestrator.run, job.job_id, lock)

    return DeployResponse(
        message="System deployed successfully!",
        progress=final.progress_percent,
        steps=final.steps,
        job_id=job.job_id,
        warnings=final.warnings,
        backup_path=final.backup_path,
    )


@router.get("", response_model=DeployStatus)
async def get_current_deploy_status() -> DeployStatus:
    """Status of the most recent deploy (idle if there is none)."""
    return get_deploy_store().current_or_idle()


@router.get("/{job_id}", response_model=DeployStatus)
async def get_deploy_job_status(job_id: str) -> DeployStatus:
    deploy_status = get_deploy_store().get(job_id)

    if deploy_status is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Deploy job {job_id} not found",
        )

    return deploy_status
