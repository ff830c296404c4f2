"""
Shared pytest fixtures for the archive deploy service tests.

Provides:
- FakeRedis wired into the status store and pipeline lock
- Settings pointing at a throwaway application root
- FastAPI test client with dependency overrides
- Archive and tree builders
"""

import io
import os
import tarfile
import zipfile
from pathlib import Path
from typing import AsyncGenerator, Dict
from unittest.mock import patch

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test environment variables BEFORE importing app modules
os.environ.setdefault("REDIS_HOST", "localhost")
os.environ.setdefault("REDIS_PORT", "6379")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("DEBUG", "false")

from app.config import Settings, get_settings
from app.services.status_store import StatusStore
from app.schemas.deploy import DeployStatus
from app.schemas.upload import UploadStatus


# ─── Redis ───────────────────────────────────────────────────────────────────


@pytest.fixture
def fake_redis():
    """Provide a FakeRedis instance for testing."""
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture(autouse=True)
def redis_client(fake_redis):
    """Route every sync Redis client in the app to FakeRedis."""
    with patch("app.services.status_store.get_sync_client", return_value=fake_redis):
        with patch("app.services.pipeline_lock.get_sync_client", return_value=fake_redis):
            yield fake_redis


@pytest.fixture
def upload_store(fake_redis) -> StatusStore[UploadStatus]:
    return StatusStore("upload", UploadStatus, client_factory=lambda: fake_redis, ttl=600)


@pytest.fixture
def deploy_store(fake_redis) -> StatusStore[DeployStatus]:
    return StatusStore("deploy", DeployStatus, client_factory=lambda: fake_redis, ttl=600)


# ─── Test Settings ───────────────────────────────────────────────────────────


@pytest.fixture
def app_root(tmp_path: Path) -> Path:
    root = tmp_path / "app"
    root.mkdir()
    return root


@pytest.fixture
def test_settings(tmp_path: Path, app_root: Path) -> Settings:
    """Settings with a temporary app root and harmless install/codegen commands."""
    staging = tmp_path / "staging"
    staging.mkdir()
    return Settings(
        app_root=app_root,
        staging_root=str(staging),
        install_command=["true"],
        codegen_command=["true"],
        rate_limit_enabled=False,
        backup_keep=3,
    )


# ─── FastAPI Test Client ─────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def test_client(test_settings: Settings) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with dependency overrides."""
    from app.main import app

    app.dependency_overrides[get_settings] = lambda: test_settings

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


# ─── Archive builders ────────────────────────────────────────────────────────


def make_tree(root: Path, files: Dict[str, bytes]) -> Path:
    """Create ``files`` (relative path -> content) under ``root``."""
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return root


def tar_bytes(files: Dict[str, bytes], gzip: bool = False) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz" if gzip else "w") as tar:
        for rel, content in files.items():
            info = tarfile.TarInfo(rel)
            info.size = len(content)
            tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def zip_bytes(files: Dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for rel, content in files.items():
            zf.writestr(rel, content)
    return buf.getvalue()


@pytest.fixture
def sample_files() -> Dict[str, bytes]:
    return {
        "package.json": b'{"name": "site"}',
        "src/app/page.tsx": b"export default function Page() {}",
        "src/lib/db.ts": b"export const db = {}",
        "public/logo.svg": b"<svg/>",
    }
