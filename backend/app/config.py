"""Application configuration using pydantic-settings."""

from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "Archive Deploy Service"
    app_version: str = "0.1.0"
    debug: bool = False
    api_prefix: str = "/api"

    # Environment mode
    environment: str = "development"

    # CORS
    cors_origins: str = ""

    # Rate limiting
    rate_limit_enabled: bool = True

    # Redis (status store and pipeline lock)
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str = ""

    @property
    def redis_url(self) -> str:
        """Construct Redis URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    status_ttl_seconds: int = 3600
    pipeline_lock_ttl_seconds: int = 1800

    # Live application layout
    app_root: Path = Path(".")
    extraction_dir_name: str = "extracted-system"
    backup_dir_name: str = ".backup"
    restart_sentinel_name: str = ".restart"

    @property
    def app_root_path(self) -> Path:
        return self.app_root.expanduser().resolve()

    @property
    def extraction_dir(self) -> Path:
        return self.app_root_path / self.extraction_dir_name

    @property
    def backup_dir(self) -> Path:
        return self.app_root_path / self.backup_dir_name

    @property
    def restart_sentinel(self) -> Path:
        return self.app_root_path / self.restart_sentinel_name

    # Upload staging
    staging_root: str = ""  # empty means the system temp directory
    max_upload_size_mb: int = 2048
    upload_chunk_size: int = 1024 * 1024

    # Extraction
    extraction_timeout_seconds: int = 300
    max_tool_output_mb: int = 100
    max_listed_files: int = 500
    max_listed_dirs: int = 100

    # Copy step
    copy_tool: str = "rsync"
    copy_timeout_seconds: int = 600
    copy_excludes: List[str] = [
        "node_modules",
        ".next",
        ".git",
        "dev.log",
        "server.log",
    ]
    # Top-level paths copied individually when the copy tool is unavailable.
    # Empty means every non-excluded top-level entry of the extracted tree.
    copy_fallback_paths: List[str] = []

    @property
    def effective_copy_excludes(self) -> List[str]:
        """Configured excludes plus the service's own working directories."""
        excludes = list(self.copy_excludes)
        for name in (self.extraction_dir_name, self.backup_dir_name):
            if name not in excludes:
                excludes.append(name)
        return excludes

    # Backup step
    backup_snapshot: bool = True
    backup_keep: int = 3

    # Dependency install step
    install_command: List[str] = ["bun", "install"]
    install_timeout_seconds: int = 300

    # Data-access client generation step
    codegen_command: List[str] = ["bun", "run", "db:generate"]
    codegen_schema_path: str = "prisma/schema.prisma"
    codegen_timeout_seconds: int = 60

    # Embedded database file copy step
    data_file_source: str = "mushaf_source.db"
    data_file_target: str = "prisma/dev.db"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()

    # In production the live tree must be addressed explicitly, never via cwd
    if settings.environment == "production" and not settings.app_root.is_absolute():
        raise ValueError(
            "FATAL: APP_ROOT must be an absolute path in production "
            f"(got '{settings.app_root}')."
        )

    return settings
