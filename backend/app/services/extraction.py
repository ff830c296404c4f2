"""Upload staging and extraction pipeline.

The request handler streams the upload to a staging directory, then the
blocking part (tool run, directory listing) runs in a worker thread. Progress
is written to the upload status store at each milestone.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from fastapi import UploadFile

from app.config import Settings, get_settings
from app.schemas.upload import ArchiveKind, UploadPhase, UploadStatus
from app.services.archive import get_extractor
from app.services.errors import (
    FilesystemError,
    PayloadTooLargeError,
    PipelineError,
    ValidationError,
)
from app.services.file_listing import list_extracted_tree
from app.services.status_store import StatusStore, get_upload_store

logger = logging.getLogger(__name__)


class ExtractionService:
    """Stages, extracts and lists one uploaded archive at a time."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[StatusStore[UploadStatus]] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or get_upload_store()

    @property
    def destination(self) -> Path:
        return self.settings.extraction_dir

    def start_job(self, filename: str, kind: ArchiveKind) -> UploadStatus:
        return self.store.create(
            filename=filename,
            archive_kind=kind,
            phase=UploadPhase.EXTRACTING,
            message="Reading uploaded file...",
            progress_percent=5,
            extracted_path=str(self.destination),
        )

    async def stage(self, job_id: str, upload: UploadFile, kind: ArchiveKind) -> Path:
        """
        Stream ``upload`` into a new temporary directory.

        Returns the staged file path, named ``upload<ext>`` for the archive kind.
        The caller owns the parent directory and must pass the path to
        ``extract`` (which removes it) or ``discard_staging``.
        """
        extractor = get_extractor(kind)
        max_bytes = self.settings.max_upload_size_mb * 1024 * 1024

        self.store.update(job_id, message="Saving uploaded file...", progress_percent=10)
        try:
            staging_dir = Path(
                tempfile.mkdtemp(prefix="upload-", dir=self.settings.staging_root or None)
            )
        except OSError as e:
            raise FilesystemError(f"Could not create staging directory: {e}") from e

        staged = staging_dir / f"upload{extractor.extension}"
        written = 0
        self.store.update(job_id, message="Writing file to disk...", progress_percent=15)
        try:
            with open(staged, "wb") as out:
                while True:
                    chunk = await upload.read(self.settings.upload_chunk_size)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > max_bytes:
                        raise PayloadTooLargeError(
                            f"File exceeds maximum upload size ({self.settings.max_upload_size_mb} MB)"
                        )
                    out.write(chunk)
        except PipelineError:
            discard_staging(staged)
            raise
        except OSError as e:
            discard_staging(staged)
            raise FilesystemError(f"Could not write uploaded file: {e}") from e

        if written == 0:
            discard_staging(staged)
            raise ValidationError("Uploaded file is empty")

        logger.info(f"Staged {written / (1024 * 1024):.2f} MB to {staged}")
        return staged

    def prepare_destination(self) -> None:
        """Replace any previous extraction with an empty directory."""
        dest = self.destination
        try:
            if dest.exists():
                logger.info(f"Removing previous extraction at {dest}")
                shutil.rmtree(dest)
            dest.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"Could not prepare extraction directory {dest}: {e}") from e

    def discard_destination(self) -> None:
        """Remove a partial extraction so it can never be deployed."""
        dest = self.destination
        if not dest.exists():
            return
        try:
            shutil.rmtree(dest)
            logger.info(f"Removed incomplete extraction at {dest}")
        except OSError as e:
            logger.error(f"Could not remove incomplete extraction at {dest}: {e}")

    def extract(self, job_id: str, staged: Path, kind: ArchiveKind) -> UploadStatus:
        """Extract a staged archive and list the result (blocking).

        The staging directory is always removed. On failure the extraction
        directory is removed too, the failure is recorded on the job and
        re-raised.
        """
        settings = self.settings
        try:
            self.store.update(job_id, message="Preparing extraction directory...", progress_percent=25)
            self.prepare_destination()

            self.store.update(job_id, message=f"Extracting {kind.value} archive...", progress_percent=35)
            result = get_extractor(kind).extract(
                staged,
                self.destination,
                timeout=settings.extraction_timeout_seconds,
                max_output_bytes=settings.max_tool_output_mb * 1024 * 1024,
            )
            self.store.update(
                job_id,
                message=f"Found {len(result.members)} items",
                progress_percent=55,
            )

            self.store.update(job_id, message="Reading file list...", progress_percent=65)
            listing = list_extracted_tree(
                self.destination,
                max_files=settings.max_listed_files,
                max_dirs=settings.max_listed_dirs,
            )
            warnings = []
            if listing.errors:
                warnings.append(
                    f"File listing is incomplete: {len(listing.errors)} entries could not be read"
                )
            logger.info(
                f"Found {listing.total_file_count} files and {listing.total_dir_count} directories"
            )

            fields = dict(
                phase=UploadPhase.SUCCESS,
                message="System files extracted successfully",
                discovered_entries=listing.entries,
                total_file_count=listing.total_file_count,
                warnings=warnings,
            )
            status = self.store.update(job_id, **fields)
            if status is None:
                # Record expired mid-run; report from local state
                status = UploadStatus(
                    job_id=job_id,
                    archive_kind=kind,
                    extracted_path=str(self.destination),
                    progress_percent=100,
                    **fields,
                )
            return status
        except PipelineError as e:
            self.discard_destination()
            self.fail(job_id, e.message)
            raise
        except Exception as e:
            logger.exception(f"Unexpected extraction failure for job {job_id}")
            self.discard_destination()
            self.fail(job_id, str(e))
            raise
        finally:
            discard_staging(staged)

    def fail(self, job_id: str, error: str) -> None:
        self.store.update(
            job_id,
            phase=UploadPhase.ERROR,
            last_error=error,
            message=f"Extraction failed: {error[:200]}",
        )


def discard_staging(staged: Path) -> None:
    """Remove a staging directory; failures are only logged."""
    try:
        shutil.rmtree(staged.parent)
        logger.debug(f"Removed staging directory {staged.parent}")
    except OSError as e:
        logger.warning(f"Could not remove staging directory {staged.parent}: {e}")
