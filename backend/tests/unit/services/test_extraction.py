"""Tests for the upload staging and extraction pipeline."""

import io
from pathlib import Path

import pytest
from fastapi import UploadFile

from conftest import tar_bytes

from app.config import Settings
from app.schemas.upload import ArchiveKind, EntryKind, UploadPhase
from app.services.errors import (
    EmptyResultError,
    PayloadTooLargeError,
    ToolExecutionError,
    ValidationError,
)
from app.services.extraction import ExtractionService


@pytest.fixture
def service(test_settings: Settings, upload_store) -> ExtractionService:
    return ExtractionService(test_settings, upload_store)


def _upload(data: bytes, filename: str = "site.tar") -> UploadFile:
    return UploadFile(file=io.BytesIO(data), filename=filename)


def _staging_root(settings: Settings) -> Path:
    return Path(settings.staging_root)


class TestStage:
    """Streaming an upload to the staging directory."""

    @pytest.mark.asyncio
    async def test_stage_writes_file(self, service: ExtractionService, test_settings, sample_files):
        data = tar_bytes(sample_files)
        job = service.start_job("site.tar", ArchiveKind.TAR)

        staged = await service.stage(job.job_id, _upload(data), ArchiveKind.TAR)

        assert staged.name == "upload.tar"
        assert staged.parent.parent == _staging_root(test_settings)
        assert staged.read_bytes() == data
        assert service.store.get(job.job_id).progress_percent == 15

    @pytest.mark.asyncio
    async def test_stage_uses_kind_extension(self, service: ExtractionService, sample_files):
        job = service.start_job("site.tgz", ArchiveKind.TAR_GZ)

        staged = await service.stage(job.job_id, _upload(tar_bytes(sample_files, gzip=True), "site.tgz"),
                                     ArchiveKind.TAR_GZ)

        assert staged.name == "upload.tar.gz"

    @pytest.mark.asyncio
    async def test_empty_upload_rejected(self, service: ExtractionService, test_settings):
        job = service.start_job("site.tar", ArchiveKind.TAR)

        with pytest.raises(ValidationError, match="empty"):
            await service.stage(job.job_id, _upload(b""), ArchiveKind.TAR)

        assert list(_staging_root(test_settings).iterdir()) == []

    @pytest.mark.asyncio
    async def test_oversized_upload_rejected(self, upload_store, test_settings):
        settings = test_settings.model_copy(update={"max_upload_size_mb": 1, "upload_chunk_size": 256 * 1024})
        service = ExtractionService(settings, upload_store)
        job = service.start_job("site.tar", ArchiveKind.TAR)

        with pytest.raises(PayloadTooLargeError) as exc_info:
            await service.stage(job.job_id, _upload(b"x" * (1024 * 1024 + 1)), ArchiveKind.TAR)

        assert exc_info.value.status_code == 413
        assert list(_staging_root(test_settings).iterdir()) == []


class TestExtract:
    """Extraction through the real tar binary."""

    async def _staged(self, service: ExtractionService, files, filename="site.tar"):
        job = service.start_job(filename, ArchiveKind.TAR)
        staged = await service.stage(job.job_id, _upload(tar_bytes(files), filename), ArchiveKind.TAR)
        return job, staged

    @pytest.mark.asyncio
    async def test_extract_success(self, service: ExtractionService, test_settings, sample_files):
        job, staged = await self._staged(service, sample_files)

        status = service.extract(job.job_id, staged, ArchiveKind.TAR)

        assert status.phase == UploadPhase.SUCCESS
        assert status.progress_percent == 100
        assert status.total_file_count == len(sample_files)
        assert status.last_error is None
        files = {e.path for e in status.discovered_entries if e.type == EntryKind.FILE}
        assert files == set(sample_files)
        assert (test_settings.extraction_dir / "package.json").read_bytes() == sample_files["package.json"]

    @pytest.mark.asyncio
    async def test_staging_removed_after_extract(self, service: ExtractionService, test_settings, sample_files):
        job, staged = await self._staged(service, sample_files)

        service.extract(job.job_id, staged, ArchiveKind.TAR)

        assert not staged.parent.exists()
        assert list(_staging_root(test_settings).iterdir()) == []

    @pytest.mark.asyncio
    async def test_total_counts_beyond_listing_cap(self, upload_store, test_settings):
        settings = test_settings.model_copy(update={"max_listed_files": 10})
        service = ExtractionService(settings, upload_store)
        files = {f"data/file{i:03d}.txt": b"x" for i in range(25)}
        job, staged = await self._staged(service, files)

        status = service.extract(job.job_id, staged, ArchiveKind.TAR)

        listed = [e for e in status.discovered_entries if e.type == EntryKind.FILE]
        assert len(listed) == 10
        assert status.total_file_count == 25

    @pytest.mark.asyncio
    async def test_reupload_replaces_previous_extraction(self, service: ExtractionService, test_settings):
        job, staged = await self._staged(service, {"old.txt": b"old"})
        service.extract(job.job_id, staged, ArchiveKind.TAR)

        job, staged = await self._staged(service, {"new.txt": b"new"})
        status = service.extract(job.job_id, staged, ArchiveKind.TAR)

        assert not (test_settings.extraction_dir / "old.txt").exists()
        assert (test_settings.extraction_dir / "new.txt").exists()
        assert [e.path for e in status.discovered_entries] == ["new.txt"]

    @pytest.mark.asyncio
    async def test_empty_archive_records_error(self, service: ExtractionService, test_settings):
        job, staged = await self._staged(service, {})

        with pytest.raises(EmptyResultError):
            service.extract(job.job_id, staged, ArchiveKind.TAR)

        status = service.store.get(job.job_id)
        assert status.phase == UploadPhase.ERROR
        assert status.last_error
        assert status.progress_percent < 100
        assert not staged.parent.exists()
        assert not test_settings.extraction_dir.exists()

    @pytest.mark.asyncio
    async def test_truncated_archive_leaves_nothing_to_deploy(self, service: ExtractionService, test_settings,
                                                             sample_files):
        job, staged = await self._staged(service, sample_files)
        service.extract(job.job_id, staged, ArchiveKind.TAR)
        truncated = {"src/new.ts": b"x" * 8192, "src/other.ts": b"y" * 8192}
        job = service.start_job("site.tar", ArchiveKind.TAR)
        staged = await service.stage(job.job_id, _upload(tar_bytes(truncated)[:2048]), ArchiveKind.TAR)

        with pytest.raises(ToolExecutionError):
            service.extract(job.job_id, staged, ArchiveKind.TAR)

        assert not test_settings.extraction_dir.exists()
        assert service.store.get(job.job_id).phase == UploadPhase.ERROR

    @pytest.mark.asyncio
    async def test_expired_record_still_reports(self, service: ExtractionService, fake_redis, sample_files):
        job, staged = await self._staged(service, sample_files)
        fake_redis.delete(f"job:upload:{job.job_id}")

        status = service.extract(job.job_id, staged, ArchiveKind.TAR)

        assert status.phase == UploadPhase.SUCCESS
        assert status.total_file_count == len(sample_files)
