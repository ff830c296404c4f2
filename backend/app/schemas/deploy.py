"""Deploy job schemas."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import Field

from app.schemas.common import ApiModel


class DeployPhase(str, Enum):
    """Coarse phases of a deploy, in the order they are entered."""
    IDLE = "idle"
    DEPLOYING = "deploying"
    INSTALLING = "installing"
    MIGRATING = "migrating"
    SUCCESS = "success"
    ERROR = "error"


# Rank used to keep a deploy's phase from moving backwards
PHASE_ORDER = {
    DeployPhase.IDLE: 0,
    DeployPhase.DEPLOYING: 1,
    DeployPhase.INSTALLING: 2,
    DeployPhase.MIGRATING: 3,
    DeployPhase.SUCCESS: 4,
}


class DeployStep(str, Enum):
    INIT = "init"
    BACKUP = "backup"
    COPY = "copy"
    INSTALL = "install"
    PRISMA = "prisma"
    DATACOPY = "datacopy"
    RESTART = "restart"


class StepState(str, Enum):
    DONE = "done"
    WARNING = "warning"  # failed, but the step is not essential
    SKIPPED = "skipped"  # nothing to do (e.g. no schema file)
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


class StepOutcome(ApiModel):
    step: DeployStep
    status: StepState
    message: str = ""


class DeployStatus(ApiModel):
    """Current status of a deploy job."""
    job_id: Optional[str] = None
    phase: DeployPhase = DeployPhase.IDLE
    message: str = ""
    progress_percent: int = Field(0, ge=0, le=100)
    current_step: DeployStep = DeployStep.INIT
    last_error: Optional[str] = None
    steps: List[StepOutcome] = []
    warnings: List[str] = []
    backup_path: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class DeployResponse(ApiModel):
    status: str = "success"
    message: str
    progress: int
    steps: List[StepOutcome]
    job_id: str
    warnings: List[str] = []
    backup_path: Optional[str] = None
