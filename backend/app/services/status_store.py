"""Job status tracking in Redis.

Each upload or deploy gets its own record keyed by job id, plus a per-kind
pointer to the most recent job so polling clients can ask for "the current
status" without knowing the id.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Generic, Optional, Type, TypeVar
from uuid import uuid4

import redis

from app.config import get_settings
from app.schemas.deploy import PHASE_ORDER, DeployPhase, DeployStatus
from app.schemas.upload import UploadStatus
from app.services.redis_manager import get_sync_client

logger = logging.getLogger(__name__)

JOB_KEY_PREFIX = "job"

StatusT = TypeVar("StatusT", UploadStatus, DeployStatus)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatusStore(Generic[StatusT]):
    """Read/update interface over one kind of job status record.

    Updates enforce the record invariants:
    - progress never decreases within a job, stays below 100 until success and
      is exactly 100 on success;
    - ``last_error`` only survives while the phase is ``error``;
    - a deploy's phase never moves backwards (``error`` is always allowed).
    """

    def __init__(
        self,
        kind: str,
        model: Type[StatusT],
        client_factory: Optional[Callable[[], redis.Redis]] = None,
        ttl: Optional[int] = None,
    ):
        self.kind = kind
        self.model = model
        self._client_factory = client_factory
        self._ttl = ttl

    @property
    def ttl(self) -> int:
        return self._ttl if self._ttl is not None else get_settings().status_ttl_seconds

    def _client(self) -> redis.Redis:
        if self._client_factory is not None:
            return self._client_factory()
        return get_sync_client()

    def _key(self, job_id: str) -> str:
        return f"{JOB_KEY_PREFIX}:{self.kind}:{job_id}"

    @property
    def _current_key(self) -> str:
        return f"{JOB_KEY_PREFIX}:{self.kind}:current"

    def _save(self, status: StatusT) -> None:
        self._client().setex(self._key(status.job_id), self.ttl, status.model_dump_json())

    def create(self, **fields: Any) -> StatusT:
        """Create a fresh record, make it current and return it."""
        job_id = str(uuid4())
        status = self.model(job_id=job_id, started_at=utcnow(), **fields)
        status = self._normalize(None, status)

        r = self._client()
        pipe = r.pipeline()
        pipe.setex(self._key(job_id), self.ttl, status.model_dump_json())
        pipe.setex(self._current_key, self.ttl, job_id)
        pipe.execute()

        logger.debug(f"Created {self.kind} job {job_id}")
        return status

    def get(self, job_id: str) -> Optional[StatusT]:
        data = self._client().get(self._key(job_id))
        if not data:
            return None
        return self.model.model_validate_json(data)

    def current(self) -> Optional[StatusT]:
        """Most recently created job of this kind, if it has not expired."""
        job_id = self._client().get(self._current_key)
        if not job_id:
            return None
        return self.get(job_id)

    def current_or_idle(self) -> StatusT:
        return self.current() or self.model()

    def update(self, job_id: str, **fields: Any) -> Optional[StatusT]:
        """Apply ``fields`` to a job record. Returns None if the job expired."""
        previous = self.get(job_id)
        if previous is None:
            logger.warning(f"Ignoring update for unknown {self.kind} job {job_id}")
            return None

        candidate = previous.model_copy(update=fields)
        status = self._normalize(previous, candidate)
        self._save(status)
        return status

    def _normalize(self, previous: Optional[StatusT], status: StatusT) -> StatusT:
        phase = status.phase.value
        progress = status.progress_percent
        if previous is not None:
            progress = max(progress, previous.progress_percent)

        if phase == "success":
            progress = 100
            if status.finished_at is None:
                status.finished_at = utcnow()
        else:
            progress = min(progress, 99)

        if phase == "error":
            if status.finished_at is None:
                status.finished_at = utcnow()
        else:
            status.last_error = None

        if (
            isinstance(status, DeployStatus)
            and previous is not None
            and status.phase != DeployPhase.ERROR
            and previous.phase != DeployPhase.ERROR
            and PHASE_ORDER[status.phase] < PHASE_ORDER[previous.phase]
        ):
            status.phase = previous.phase

        status.progress_percent = progress
        return status


def get_upload_store() -> StatusStore[UploadStatus]:
    return StatusStore("upload", UploadStatus)


def get_deploy_store() -> StatusStore[DeployStatus]:
    return StatusStore("deploy", DeployStatus)
