"""Upload job schemas for tracking archive extraction progress."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import ConfigDict, Field

from app.schemas.common import ApiModel


class ArchiveKind(str, Enum):
    """Archive formats the extraction service recognises."""
    TAR = "tar"
    TAR_GZ = "tar.gz"
    ZIP = "zip"
    RAR = "rar"
    UNKNOWN = "unknown"


class UploadPhase(str, Enum):
    """Phases of an upload job."""
    IDLE = "idle"
    EXTRACTING = "extracting"
    SUCCESS = "success"
    ERROR = "error"


class EntryKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"


class ExtractedEntry(ApiModel):
    """One file or directory found in the extracted tree."""

    model_config = ConfigDict(frozen=True)

    path: str  # relative to the extraction directory, forward slashes
    size: int = Field(0, ge=0)
    type: EntryKind


class UploadStatus(ApiModel):
    """Current status of an upload job."""
    job_id: Optional[str] = None
    filename: Optional[str] = None
    phase: UploadPhase = UploadPhase.IDLE
    message: str = ""
    progress_percent: int = Field(0, ge=0, le=100)
    discovered_entries: List[ExtractedEntry] = []
    total_file_count: int = 0
    archive_kind: ArchiveKind = ArchiveKind.UNKNOWN
    extracted_path: Optional[str] = None
    last_error: Optional[str] = None
    warnings: List[str] = []
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class UploadResponse(ApiModel):
    """Body returned by a completed synchronous upload."""
    status: str = "success"
    message: str
    files: List[ExtractedEntry]
    total_files: int
    file_type: ArchiveKind
    extracted_path: str
    job_id: str
    warnings: List[str] = []


class UploadAcceptedResponse(ApiModel):
    """Body returned when the upload continues in the background."""
    status: str = "accepted"
    job_id: str
    message: str
