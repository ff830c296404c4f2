"""
Deployment of an extracted tree over the live application.

The deploy is a fixed sequence of typed steps. Each step declares whether it is
essential: an essential step that raises aborts the deploy, any other step that
raises is recorded as a warning and the pipeline moves on.

    init -> backup -> copy -> install -> prisma -> datacopy -> restart

The deploy succeeds when init, backup, copy and restart all succeed; restart
writes the sentinel file an external supervisor watches.
"""

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from app.config import Settings, get_settings
from app.schemas.deploy import (
    DeployPhase,
    DeployStatus,
    DeployStep,
    StepOutcome,
    StepState,
)
from app.services.command_runner import run_command
from app.services.errors import (
    CopyFailedError,
    FilesystemError,
    NoExtractionFoundError,
    PipelineError,
    ToolExecutionError,
)
from app.services.pipeline_lock import PipelineLock
from app.services.status_store import StatusStore, get_deploy_store

logger = logging.getLogger(__name__)

SNAPSHOT_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"


class StepSkipped(Exception):
    """Raised by a step that had nothing to do."""


@dataclass
class StepResult:
    message: str


@dataclass(frozen=True)
class PipelineStep:
    step: DeployStep
    phase: DeployPhase
    progress: int  # progress reported when the step starts
    essential: bool
    start_message: str
    action: Callable[["DeployContext"], StepResult]


@dataclass
class DeployContext:
    settings: Settings
    job_id: str
    warnings: List[str] = field(default_factory=list)
    backup_path: Optional[Path] = None

    @property
    def app_root(self) -> Path:
        return self.settings.app_root_path

    @property
    def source(self) -> Path:
        return self.settings.extraction_dir


# ─── Copy helpers ────────────────────────────────────────────────────────────


def _top_level_entries(ctx: DeployContext) -> List[str]:
    """Top-level names of the extracted tree that a copy may write."""
    excludes = set(ctx.settings.effective_copy_excludes)
    return sorted(p.name for p in ctx.source.iterdir() if p.name not in excludes)


def _fallback_entries(ctx: DeployContext) -> List[str]:
    configured = ctx.settings.copy_fallback_paths
    if not configured:
        return _top_level_entries(ctx)
    excludes = set(ctx.settings.effective_copy_excludes)
    return [
        name for name in configured
        if name not in excludes and ((ctx.source / name).exists() or (ctx.source / name).is_symlink())
    ]


def _copy_path(src: Path, dest: Path, excludes: List[str]) -> None:
    if src.is_dir() and not src.is_symlink():
        shutil.copytree(
            src,
            dest,
            symlinks=True,
            ignore=shutil.ignore_patterns(*excludes),
            dirs_exist_ok=True,
        )
    else:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dest, follow_symlinks=False)


def copy_with_rsync(ctx: DeployContext) -> None:
    settings = ctx.settings
    cmd = [settings.copy_tool, "-a"]
    cmd += [f"--exclude={name}" for name in settings.effective_copy_excludes]
    cmd += [f"{ctx.source}/", f"{ctx.app_root}/"]
    run_command(
        cmd,
        timeout=settings.copy_timeout_seconds,
        max_output_bytes=settings.max_tool_output_mb * 1024 * 1024,
    )


def copy_fallback(ctx: DeployContext) -> int:
    """Copy the configured top-level paths one by one.

    Directories are replaced wholesale; files are overwritten. Returns the
    number of top-level paths copied.
    """
    excludes = ctx.settings.effective_copy_excludes
    copied = 0
    for name in _fallback_entries(ctx):
        src = ctx.source / name
        dest = ctx.app_root / name
        if src.is_dir() and not src.is_symlink():
            if dest.is_dir() and not dest.is_symlink():
                shutil.rmtree(dest)
            elif dest.exists() or dest.is_symlink():
                dest.unlink()
        _copy_path(src, dest, excludes)
        copied += 1
    return copied


# ─── Steps ───────────────────────────────────────────────────────────────────


def step_init(ctx: DeployContext) -> StepResult:
    if not ctx.source.is_dir() or not any(ctx.source.iterdir()):
        raise NoExtractionFoundError(
            "No extracted files found. Upload an archive first."
        )
    return StepResult(f"Found extracted tree at {ctx.source}")


def step_backup(ctx: DeployContext) -> StepResult:
    settings = ctx.settings
    backup_root = settings.backup_dir
    try:
        backup_root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError(f"Could not create backup directory {backup_root}: {e}") from e

    if not settings.backup_snapshot:
        return StepResult(f"Backup directory ready at {backup_root}")

    snapshot = backup_root / datetime.now(timezone.utc).strftime(SNAPSHOT_TIMESTAMP_FORMAT)
    saved = 0
    try:
        snapshot.mkdir()
        for name in _top_level_entries(ctx):
            live = ctx.app_root / name
            if not (live.exists() or live.is_symlink()):
                continue
            _copy_path(live, snapshot / name, settings.effective_copy_excludes)
            saved += 1
    except OSError as e:
        raise FilesystemError(f"Could not snapshot live files into {snapshot}: {e}") from e

    ctx.backup_path = snapshot
    pruned = prune_snapshots(backup_root, settings.backup_keep)
    message = f"Saved {saved} live paths to {snapshot.name}"
    if pruned:
        message += f", removed {pruned} old snapshots"
    return StepResult(message)


def prune_snapshots(backup_root: Path, keep: int) -> int:
    """Delete all but the newest ``keep`` snapshot directories."""
    snapshots = sorted(p for p in backup_root.iterdir() if p.is_dir())
    stale = snapshots[:-keep] if keep > 0 else snapshots
    for path in stale:
        try:
            shutil.rmtree(path)
        except OSError as e:
            logger.warning(f"Could not remove old snapshot {path}: {e}")
    return len(stale)


def step_copy(ctx: DeployContext) -> StepResult:
    settings = ctx.settings
    if shutil.which(settings.copy_tool):
        try:
            copy_with_rsync(ctx)
            return StepResult("System files copied")
        except ToolExecutionError as e:
            logger.warning(f"{settings.copy_tool} failed, falling back to direct copy: {e.message}")
    else:
        logger.info(f"{settings.copy_tool} not available, using direct copy")

    try:
        copied = copy_fallback(ctx)
    except OSError as e:
        raise CopyFailedError(f"Copying system files failed: {e}") from e
    return StepResult(f"System files copied ({copied} top-level paths)")


def step_install(ctx: DeployContext) -> StepResult:
    settings = ctx.settings
    result = run_command(
        settings.install_command,
        cwd=ctx.app_root,
        timeout=settings.install_timeout_seconds,
        max_output_bytes=settings.max_tool_output_mb * 1024 * 1024,
    )
    logger.info(f"Install output: {result.tail(500)}")
    return StepResult("Dependencies installed")


def step_prisma(ctx: DeployContext) -> StepResult:
    settings = ctx.settings
    schema = ctx.app_root / settings.codegen_schema_path
    if not schema.exists():
        raise StepSkipped(f"No {settings.codegen_schema_path}, client generation skipped")
    run_command(
        settings.codegen_command,
        cwd=ctx.app_root,
        timeout=settings.codegen_timeout_seconds,
        max_output_bytes=settings.max_tool_output_mb * 1024 * 1024,
    )
    return StepResult("Database client generated")


def step_datacopy(ctx: DeployContext) -> StepResult:
    settings = ctx.settings
    source = ctx.source / settings.data_file_source
    if not source.is_file():
        raise StepSkipped(f"No {settings.data_file_source} in upload, database copy skipped")
    target = ctx.app_root / settings.data_file_target
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, target)
    return StepResult(f"Database copied to {settings.data_file_target}")


def step_restart(ctx: DeployContext) -> StepResult:
    sentinel = ctx.settings.restart_sentinel
    try:
        sentinel.write_text(datetime.now(timezone.utc).isoformat())
    except OSError as e:
        raise FilesystemError(f"Could not write restart sentinel {sentinel}: {e}") from e
    return StepResult("Restart requested")


PIPELINE: List[PipelineStep] = [
    PipelineStep(DeployStep.INIT, DeployPhase.DEPLOYING, 5, True,
                 "Starting deployment...", step_init),
    PipelineStep(DeployStep.BACKUP, DeployPhase.DEPLOYING, 10, True,
                 "Backing up current files...", step_backup),
    PipelineStep(DeployStep.COPY, DeployPhase.DEPLOYING, 20, True,
                 "Copying system files...", step_copy),
    PipelineStep(DeployStep.INSTALL, DeployPhase.INSTALLING, 60, False,
                 "Installing dependencies...", step_install),
    PipelineStep(DeployStep.PRISMA, DeployPhase.MIGRATING, 85, False,
                 "Preparing database client...", step_prisma),
    PipelineStep(DeployStep.DATACOPY, DeployPhase.MIGRATING, 90, False,
                 "Copying database file...", step_datacopy),
    PipelineStep(DeployStep.RESTART, DeployPhase.MIGRATING, 95, True,
                 "Requesting restart...", step_restart),
]

WARNING_MESSAGES = {
    DeployStep.INSTALL: "Warning: dependencies may need to be installed manually",
    DeployStep.PRISMA: "Warning: database client generation failed",
    DeployStep.DATACOPY: "Warning: database file could not be copied",
}


# ─── Orchestrator ────────────────────────────────────────────────────────────


class DeploymentOrchestrator:
    """Runs ``PIPELINE`` against the live application root."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[StatusStore[DeployStatus]] = None,
        pipeline: Optional[List[PipelineStep]] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or get_deploy_store()
        self.pipeline = pipeline if pipeline is not None else PIPELINE

    def start_job(self) -> DeployStatus:
        return self.store.create(
            phase=DeployPhase.DEPLOYING,
            current_step=DeployStep.INIT,
            message="Starting deployment...",
            progress_percent=5,
            steps=[
                StepOutcome(step=s.step, status=StepState.NOT_ATTEMPTED)
                for s in self.pipeline
            ],
        )

    def run(self, job_id: str, lock: Optional[PipelineLock] = None) -> DeployStatus:
        """Execute every step in order (blocking).

        When ``lock`` is given its TTL is renewed before each step.

        Returns the final status on success. Raises the failing step's
        PipelineError (with ``payload["steps"]`` attached) when an essential
        step fails.
        """
        ctx = DeployContext(settings=self.settings, job_id=job_id)
        outcomes = {s.step: StepOutcome(step=s.step, status=StepState.NOT_ATTEMPTED) for s in self.pipeline}

        def _outcomes() -> List[StepOutcome]:
            return [outcomes[s.step] for s in self.pipeline]

        for step in self.pipeline:
            logger.info(f"Deploy {job_id}: step {step.step.value}")
            if lock is not None:
                lock.extend()
            self.store.update(
                job_id,
                phase=step.phase,
                current_step=step.step,
                progress_percent=step.progress,
                message=step.start_message,
            )

            try:
                result = step.action(ctx)
                outcomes[step.step] = StepOutcome(step=step.step, status=StepState.DONE, message=result.message)
                message = result.message
            except StepSkipped as e:
                outcomes[step.step] = StepOutcome(step=step.step, status=StepState.SKIPPED, message=str(e))
                message = str(e)
            except Exception as e:
                error = e if isinstance(e, PipelineError) else None
                detail = error.message if error else str(e)

                if step.essential:
                    if error is None:
                        logger.exception(f"Deploy {job_id}: step {step.step.value} crashed")
                        error = (
                            CopyFailedError(f"Copying system files failed: {detail}")
                            if step.step == DeployStep.COPY
                            else FilesystemError(detail)
                        )
                    logger.error(f"Deploy {job_id} failed at {step.step.value}: {detail}")
                    outcomes[step.step] = StepOutcome(step=step.step, status=StepState.FAILED, message=detail)
                    self.store.update(
                        job_id,
                        phase=DeployPhase.ERROR,
                        last_error=error.message,
                        message=f"Deployment failed: {error.message[:200]}",
                        steps=_outcomes(),
                        warnings=ctx.warnings,
                    )
                    error.payload["steps"] = [o.model_dump(mode="json") for o in _outcomes()]
                    if error is e:
                        raise
                    raise error from e

                logger.warning(f"Deploy {job_id}: non-essential step {step.step.value} failed: {detail}")
                message = WARNING_MESSAGES.get(step.step, f"Warning: {step.step.value} failed")
                ctx.warnings.append(f"{message} ({detail[:200]})")
                outcomes[step.step] = StepOutcome(step=step.step, status=StepState.WARNING, message=detail[:500])

            self.store.update(
                job_id,
                message=message,
                steps=_outcomes(),
                warnings=ctx.warnings,
                backup_path=str(ctx.backup_path) if ctx.backup_path else None,
            )

        final = self.store.update(
            job_id,
            phase=DeployPhase.SUCCESS,
            current_step=DeployStep.RESTART,
            message="Deployment complete, restarting...",
            steps=_outcomes(),
            warnings=ctx.warnings,
        )
        logger.info(f"Deploy {job_id} finished with {len(ctx.warnings)} warnings")
        if final is None:
            # Status expired mid-run; report from local state
            final = DeployStatus(
                job_id=job_id,
                phase=DeployPhase.SUCCESS,
                progress_percent=100,
                current_step=DeployStep.RESTART,
                message="Deployment complete, restarting...",
                steps=_outcomes(),
                warnings=ctx.warnings,
                backup_path=str(ctx.backup_path) if ctx.backup_path else None,
            )
        return final
