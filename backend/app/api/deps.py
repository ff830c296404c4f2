"""FastAPI dependencies shared by the pipeline routers."""

from fastapi import Depends

from app.config import Settings, get_settings
from app.services.deployer import DeploymentOrchestrator
from app.services.extraction import ExtractionService
from app.services.pipeline_lock import PipelineLock


def get_extraction_service(settings: Settings = Depends(get_settings)) -> ExtractionService:
    return ExtractionService(settings)


def get_orchestrator(settings: Settings = Depends(get_settings)) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(settings)


def get_upload_lock(settings: Settings = Depends(get_settings)) -> PipelineLock:
    return PipelineLock("upload", ttl=settings.pipeline_lock_ttl_seconds)


def get_deploy_lock(settings: Settings = Depends(get_settings)) -> PipelineLock:
    return PipelineLock("deploy", ttl=settings.pipeline_lock_ttl_seconds)
