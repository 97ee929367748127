"""Configuration management for the Release Orchestrator service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigurationError


@dataclass(slots=True)
class Settings:
    """Application configuration loaded from environment variables."""

    environment_name: str
    stub_mode: bool
    github_repo: str
    github_token: Optional[str]
    tracked_branch: str
    webhook_secret: Optional[str]
    poll_interval_seconds: int
    docker_host: Optional[str]
    database_path: Path
    artifact_repository: str
    bootstrap_image: str
    allowed_source_cidrs: tuple[str, ...]
    task_family: str
    task_cpu: int
    task_memory_mib: int
    desired_count: int
    container_name: str
    container_port: int
    health_check_path: str
    health_check_timeout_seconds: int
    health_check_interval_seconds: int
    build_timeout_seconds: int
    log_level: str
    web_host: str
    web_port: int

    @property
    def stack_name(self) -> str:
        """Prefix for compute platform resources owned by this service."""
        return f"release-{self.environment_name}"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """Create settings from environment variables (optionally loading a .env file)."""
        if env_file:
            load_dotenv(env_file, override=True)
        else:
            load_dotenv(override=False)

        environment_name = _determine_environment_name(os.environ.get("ENVIRONMENT_NAME", "prod"))
        stub_mode = _to_bool(os.environ.get("STUB_MODE", "false"))
        github_repo = os.environ.get("GITHUB_REPO", "arluxmore/sample-container-app")
        if not github_repo:
            raise ConfigurationError("GITHUB_REPO environment variable must be set")

        allowed_source_cidrs = _split_list(os.environ.get("ALLOWED_SOURCE_CIDRS"))
        if not allowed_source_cidrs:
            raise ConfigurationError(
                "ALLOWED_SOURCE_CIDRS must list at least one address for the staging listener"
            )

        database_path = _resolve_database_path(
            os.environ.get("DATABASE_PATH", "./data/release-orchestrator.db"),
            environment_name,
        )
        database_path.parent.mkdir(parents=True, exist_ok=True)

        return cls(
            environment_name=environment_name,
            stub_mode=stub_mode,
            github_repo=github_repo,
            github_token=os.environ.get("GITHUB_TOKEN"),
            tracked_branch=os.environ.get("TRACKED_BRANCH", "main").strip() or "main",
            webhook_secret=os.environ.get("WEBHOOK_SECRET") or None,
            poll_interval_seconds=int(os.environ.get("POLL_INTERVAL_SECONDS", "60")),
            docker_host=os.environ.get("DOCKER_HOST"),
            database_path=database_path,
            artifact_repository=os.environ.get(
                "ARTIFACT_REPOSITORY", "ghcr.io/arluxmore/sample-container-app"
            ),
            bootstrap_image=os.environ.get("BOOTSTRAP_IMAGE", "nginx:alpine"),
            allowed_source_cidrs=allowed_source_cidrs,
            task_family=os.environ.get("TASK_FAMILY", "sample-container-app"),
            task_cpu=int(os.environ.get("TASK_CPU", "256")),
            task_memory_mib=int(os.environ.get("TASK_MEMORY_MIB", "512")),
            desired_count=int(os.environ.get("DESIRED_COUNT", "1")),
            container_name=os.environ.get("CONTAINER_NAME", "web"),
            container_port=int(os.environ.get("CONTAINER_PORT", "80")),
            health_check_path=os.environ.get("HEALTH_CHECK_PATH", "/"),
            health_check_timeout_seconds=int(
                os.environ.get("HEALTH_CHECK_TIMEOUT_SECONDS", "300")
            ),
            health_check_interval_seconds=int(
                os.environ.get("HEALTH_CHECK_INTERVAL_SECONDS", "5")
            ),
            build_timeout_seconds=int(os.environ.get("BUILD_TIMEOUT_SECONDS", "900")),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            web_host=os.environ.get("WEB_HOST", "0.0.0.0"),
            web_port=int(os.environ.get("WEB_PORT", "8080")),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings.from_env()


def _to_bool(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _split_list(value: Optional[str]) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _determine_environment_name(raw: str) -> str:
    return "-".join(raw.strip().lower().split()) or "prod"


def _resolve_database_path(raw: str, environment_name: str) -> Path:
    """Give every environment its own database file.

    A trailing slash or a suffix-less path names a directory that receives
    ``release-orchestrator-<env>.db``; a file path gets ``-<env>`` appended to
    its stem unless it already ends with it.
    """
    path = Path(raw).expanduser().resolve()
    if raw.endswith("/") or not path.suffix:
        path.mkdir(parents=True, exist_ok=True)
        return path / f"release-orchestrator-{environment_name}.db"

    path.parent.mkdir(parents=True, exist_ok=True)
    if path.stem == environment_name or path.stem.endswith(f"-{environment_name}"):
        return path
    return path.with_name(f"{path.stem}-{environment_name}{path.suffix}")
