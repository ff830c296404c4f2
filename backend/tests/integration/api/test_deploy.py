"""Integration tests for the deploy endpoints."""

import asyncio

import pytest
from httpx import AsyncClient

from conftest import make_tree, tar_bytes

from app.services.pipeline_lock import LOCK_KEY


@pytest.fixture
def direct_copy(test_settings):
    """Use the direct-copy fallback so tests do not depend on rsync."""
    test_settings.copy_tool = "no-such-copy-tool"
    return test_settings


class TestDeploy:

    @pytest.mark.asyncio
    async def test_deploy_after_upload(self, test_client: AsyncClient, direct_copy, fake_redis, sample_files):
        upload = await test_client.post(
            "/api/upload",
            files={"file": ("site.tar", tar_bytes(sample_files), "application/x-tar")},
        )
        assert upload.status_code == 200

        response = await test_client.post("/api/deploy")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["progress"] == 100
        assert body["jobId"]
        assert [s["step"] for s in body["steps"]] == [
            "init", "backup", "copy", "install", "prisma", "datacopy", "restart",
        ]
        assert body["backupPath"]
        root = direct_copy.app_root_path
        assert (root / "src" / "app" / "page.tsx").read_bytes() == sample_files["src/app/page.tsx"]
        assert direct_copy.restart_sentinel.exists()
        assert fake_redis.get(LOCK_KEY) is None

    @pytest.mark.asyncio
    async def test_deploy_without_extraction(self, test_client: AsyncClient, direct_copy, fake_redis):
        response = await test_client.post("/api/deploy")

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert "Upload an archive first" in body["error"]
        assert body["steps"][0]["status"] == "failed"
        assert not direct_copy.restart_sentinel.exists()
        assert fake_redis.get(LOCK_KEY) is None

    @pytest.mark.asyncio
    async def test_failed_upload_cannot_be_deployed(self, test_client: AsyncClient, direct_copy, sample_files):
        good = await test_client.post(
            "/api/upload",
            files={"file": ("site.tar", tar_bytes(sample_files), "application/x-tar")},
        )
        assert good.status_code == 200
        truncated = tar_bytes({"src/new.ts": b"x" * 8192, "src/other.ts": b"y" * 8192})[:2048]
        failed = await test_client.post(
            "/api/upload",
            files={"file": ("site.tar", truncated, "application/x-tar")},
        )
        assert failed.status_code == 500

        response = await test_client.post("/api/deploy")

        assert response.status_code == 400
        assert response.json()["status"] == "error"
        assert not direct_copy.restart_sentinel.exists()
        assert not (direct_copy.app_root_path / "src" / "new.ts").exists()

    @pytest.mark.asyncio
    async def test_deploy_with_warnings(self, test_client: AsyncClient, direct_copy, sample_files):
        direct_copy.install_command = ["false"]
        make_tree(direct_copy.extraction_dir, sample_files)

        response = await test_client.post("/api/deploy")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert len(body["warnings"]) == 1
        install = next(s for s in body["steps"] if s["step"] == "install")
        assert install["status"] == "warning"

    @pytest.mark.asyncio
    async def test_busy_pipeline(self, test_client: AsyncClient, direct_copy, fake_redis, sample_files):
        make_tree(direct_copy.extraction_dir, sample_files)
        fake_redis.set(LOCK_KEY, "upload:other")

        response = await test_client.post("/api/deploy")

        assert response.status_code == 409
        assert not direct_copy.restart_sentinel.exists()
        assert fake_redis.get(LOCK_KEY) == "upload:other"

    @pytest.mark.asyncio
    async def test_requests_during_running_deploy(self, test_client: AsyncClient, direct_copy, fake_redis,
                                                 sample_files):
        direct_copy.install_command = ["sleep", "2"]
        make_tree(direct_copy.extraction_dir, sample_files)

        running = asyncio.create_task(test_client.post("/api/deploy"))
        for _ in range(100):
            if fake_redis.exists(LOCK_KEY):
                break
            await asyncio.sleep(0.05)
        assert fake_redis.get(LOCK_KEY).startswith("deploy:")

        upload = await test_client.post(
            "/api/upload",
            files={"file": ("site.tar", tar_bytes({"src/new.ts": b"x"}), "application/x-tar")},
        )
        second = await test_client.post("/api/deploy")
        response = await running

        assert upload.status_code == 409
        assert second.status_code == 409
        assert response.status_code == 200
        assert response.json()["status"] == "success"
        assert not (direct_copy.app_root_path / "src" / "new.ts").exists()
        assert fake_redis.get(LOCK_KEY) is None


class TestDeployStatus:

    @pytest.mark.asyncio
    async def test_idle(self, test_client: AsyncClient):
        response = await test_client.get("/api/deploy")

        assert response.status_code == 200
        data = response.json()
        assert data["phase"] == "idle"
        assert data["progressPercent"] == 0

    @pytest.mark.asyncio
    async def test_status_after_deploy(self, test_client: AsyncClient, direct_copy, sample_files):
        make_tree(direct_copy.extraction_dir, sample_files)
        deploy = await test_client.post("/api/deploy")
        job_id = deploy.json()["jobId"]

        current = await test_client.get("/api/deploy")
        by_id = await test_client.get(f"/api/deploy/{job_id}")

        for response in (current, by_id):
            data = response.json()
            assert data["jobId"] == job_id
            assert data["phase"] == "success"
            assert data["progressPercent"] == 100
            assert data["currentStep"] == "restart"

    @pytest.mark.asyncio
    async def test_status_after_failure(self, test_client: AsyncClient, direct_copy):
        await test_client.post("/api/deploy")

        data = (await test_client.get("/api/deploy")).json()

        assert data["phase"] == "error"
        assert data["lastError"]
        assert data["progressPercent"] < 100

    @pytest.mark.asyncio
    async def test_unknown_job(self, test_client: AsyncClient):
        response = await test_client.get("/api/deploy/nonexistent")

        assert response.status_code == 404
