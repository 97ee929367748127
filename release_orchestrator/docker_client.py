"""Docker Swarm integrations acting as compute platform, builder and artifact store."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.types import Healthcheck, Resources, ServiceMode

from .errors import ArtifactNotFoundError, BuildError, DeployLaunchError
from .models import TaskSetStatusType, TaskSetSummary

logger = logging.getLogger(__name__)

LABEL_ENVIRONMENT = "release-orchestrator.environment"
LABEL_TARGET_GROUP = "release-orchestrator.target-group"
_NANO_CPUS_PER_UNIT = 1_000_000_000 // 1024


@dataclass(slots=True)
class TaskSetSpec:
    """Desired state of one swarm service bound to a target group."""

    environment: str
    target_group: str
    image: str
    replicas: int
    cpu: int
    memory_mib: int
    health_command: str
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ServiceCounts:
    desired: int
    registered: int
    healthy: int
    message: Optional[str] = None


class ContainerPlatform(ABC):
    """Common interface for Docker-backed compute, builds and image storage."""

    def __init__(self, *, stack_name: str):
        self.stack_name = stack_name

    def service_name(self, target_group: str) -> str:
        return f"{self.stack_name}_{target_group}"

    def close(self) -> None:
        """Release any resources associated with the platform."""

    @abstractmethod
    def build_image(self, *, context: str, image: str) -> None:
        """Build ``image`` from a build context and push it."""

    @abstractmethod
    def pull_image(self, *, repository: str, tag: str) -> None:
        """Fetch an image, raising ArtifactNotFoundError when the tag is absent."""

    @abstractmethod
    def push_image(self, *, repository: str, tag: str) -> None:
        """Push a locally present image to its repository."""

    @abstractmethod
    def apply_task_set(self, spec: TaskSetSpec) -> None:
        """Create or update the service behind a target group."""

    @abstractmethod
    def scale_task_set(self, *, target_group: str, replicas: int) -> None:
        """Change the replica count of a target group's service."""

    @abstractmethod
    def service_counts(self, *, target_group: str) -> ServiceCounts:
        """Desired, registered and healthy task counts for a target group."""

    @abstractmethod
    def list_task_sets(self) -> list[TaskSetSummary]:
        """Enumerate services owned by this stack."""


class SwarmContainerPlatform(ContainerPlatform):
    """Real Docker Swarm implementation."""

    def __init__(
        self,
        *,
        stack_name: str,
        base_url: Optional[str] = None,
        client: Optional[docker.DockerClient] = None,
    ):
        super().__init__(stack_name=stack_name)
        if client is not None:
            self._client = client
            return
        try:
            if base_url:
                self._client = docker.DockerClient(base_url=base_url)
            else:
                self._client = docker.from_env()
            self._client.ping()
            logger.debug("Connected to Docker daemon")
        except DockerException as exc:
            logger.warning("Docker connection failed: %s", exc)
            self._client = None

    def close(self) -> None:
        if self._client:
            self._client.close()

    def _require_client(self, error: type[Exception]) -> docker.DockerClient:
        if not self._client:
            raise error("Docker client unavailable")
        return self._client

    def build_image(self, *, context: str, image: str) -> None:
        client = self._require_client(BuildError)
        logger.info("Building %s from %s", image, context)
        try:
            _, build_log = client.images.build(path=context, tag=image, rm=True, pull=True)
            for chunk in build_log:
                if "stream" in chunk:
                    logger.debug("build: %s", chunk["stream"].rstrip())
            repository, _, tag = image.rpartition(":")
            self.push_image(repository=repository, tag=tag)
        except DockerException as exc:
            logger.error("Image build failed for %s: %s", image, exc)
            raise BuildError(str(exc)) from exc

    def pull_image(self, *, repository: str, tag: str) -> None:
        client = self._require_client(ArtifactNotFoundError)
        try:
            client.images.pull(repository, tag=tag)
        except (ImageNotFound, NotFound) as exc:
            raise ArtifactNotFoundError(f"{repository}:{tag} not found in artifact store") from exc
        except APIError as exc:
            if exc.status_code == 404 or "not found" in str(exc).lower():
                raise ArtifactNotFoundError(
                    f"{repository}:{tag} not found in artifact store"
                ) from exc
            raise ArtifactNotFoundError(f"Unable to pull {repository}:{tag}: {exc}") from exc
        except DockerException as exc:
            raise ArtifactNotFoundError(f"Unable to pull {repository}:{tag}: {exc}") from exc

    def push_image(self, *, repository: str, tag: str) -> None:
        client = self._require_client(BuildError)
        try:
            for line in client.images.push(repository, tag=tag, stream=True, decode=True):
                if "error" in line:
                    raise BuildError(f"Push of {repository}:{tag} failed: {line['error']}")
        except DockerException as exc:
            logger.error("Push of %s:%s failed: %s", repository, tag, exc)
            raise BuildError(f"Push of {repository}:{tag} failed: {exc}") from exc

    def apply_task_set(self, spec: TaskSetSpec) -> None:
        client = self._require_client(DeployLaunchError)
        name = self.service_name(spec.target_group)
        labels = {
            LABEL_ENVIRONMENT: spec.environment,
            LABEL_TARGET_GROUP: spec.target_group,
            **spec.labels,
        }
        options: dict[str, Any] = {
            "image": spec.image,
            "name": name,
            "labels": labels,
            "mode": ServiceMode("replicated", replicas=spec.replicas),
            "resources": Resources(
                cpu_limit=spec.cpu * _NANO_CPUS_PER_UNIT,
                mem_limit=spec.memory_mib * 1024 * 1024,
            ),
            "healthcheck": Healthcheck(
                test=["CMD-SHELL", spec.health_command],
                interval=5_000_000_000,
                timeout=3_000_000_000,
                retries=3,
            ),
        }
        logger.info("Applying task set %s with image %s", name, spec.image)
        try:
            try:
                service = client.services.get(name)
            except NotFound:
                client.services.create(**options)
                return
            service.update(**options)
        except DockerException as exc:
            logger.error("Failed to apply task set %s: %s", name, exc)
            raise DeployLaunchError(str(exc)) from exc

    def scale_task_set(self, *, target_group: str, replicas: int) -> None:
        client = self._require_client(DeployLaunchError)
        name = self.service_name(target_group)
        try:
            client.services.get(name).scale(replicas)
        except NotFound:
            logger.debug("Task set %s absent; nothing to scale", name)
        except DockerException as exc:
            raise DeployLaunchError(str(exc)) from exc

    def service_counts(self, *, target_group: str) -> ServiceCounts:
        if not self._client:
            return ServiceCounts(0, 0, 0, "Docker client unavailable")
        name = self.service_name(target_group)
        try:
            service = self._client.services.get(name)
            tasks = service.tasks(filters={"desired-state": "running"})
        except NotFound:
            return ServiceCounts(0, 0, 0, "Service not found")
        except DockerException as exc:
            logger.error("Failed to fetch health for %s: %s", name, exc)
            return ServiceCounts(0, 0, 0, str(exc))
        desired = service.attrs["Spec"]["Mode"].get("Replicated", {}).get("Replicas", 0)
        states = [task.get("Status", {}).get("State") for task in tasks]
        # Swarm keeps tasks in "starting" until their container healthcheck passes.
        registered = sum(1 for state in states if state in {"starting", "running"})
        healthy = sum(1 for state in states if state == "running")
        return ServiceCounts(desired, registered, healthy)

    def list_task_sets(self) -> list[TaskSetSummary]:
        if not self._client:
            return []
        try:
            services = self._client.services.list(filters={"label": LABEL_TARGET_GROUP})
        except DockerException as exc:  # pragma: no cover - docker errors depend on host state
            logger.error("Failed to list docker services: %s", exc)
            return []

        summaries: list[TaskSetSummary] = []
        for service in services:
            attrs = service.attrs or {}
            spec = attrs.get("Spec", {})
            labels = spec.get("Labels", {})
            desired = spec.get("Mode", {}).get("Replicated", {}).get("Replicas")
            try:
                tasks = service.tasks(filters={"desired-state": "running"})
            except DockerException:  # pragma: no cover - depends on docker state
                tasks = []
            running = sum(1 for task in tasks if task.get("Status", {}).get("State") == "running")
            summaries.append(
                TaskSetSummary(
                    service=service.name,
                    environment=labels.get(LABEL_ENVIRONMENT),
                    target_group=labels.get(LABEL_TARGET_GROUP),
                    image=spec.get("TaskTemplate", {}).get("ContainerSpec", {}).get("Image"),
                    replicas_desired=desired,
                    replicas_running=running,
                    status=_summarize(desired, running),
                    updated_at=_parse_timestamp(attrs.get("UpdatedAt")),
                )
            )
        return sorted(summaries, key=lambda summary: summary.service)


@dataclass(slots=True)
class _StubService:
    spec: TaskSetSpec
    replicas: int
    updated_at: datetime


class StubbedContainerPlatform(ContainerPlatform):
    """Deterministic in-memory platform for development and testing."""

    def __init__(self, *, stack_name: str, images: Optional[set[str]] = None):
        super().__init__(stack_name=stack_name)
        self.images: set[str] = set(images or ())
        self.services: dict[str, _StubService] = {}
        self.failing_builds: set[str] = set()
        self.unhealthy_images: set[str] = set()
        self.failing_launches: set[str] = set()

    def build_image(self, *, context: str, image: str) -> None:
        logger.debug("Stubbed build of %s from %s", image, context)
        if image in self.failing_builds:
            raise BuildError(f"Stubbed build failure for {image}")
        self.images.add(image)

    def pull_image(self, *, repository: str, tag: str) -> None:
        if f"{repository}:{tag}" not in self.images:
            raise ArtifactNotFoundError(f"{repository}:{tag} not found in artifact store")

    def push_image(self, *, repository: str, tag: str) -> None:
        self.images.add(f"{repository}:{tag}")

    def apply_task_set(self, spec: TaskSetSpec) -> None:
        if spec.image in self.failing_launches:
            raise DeployLaunchError(f"Stubbed launch failure for {spec.image}")
        self.services[spec.target_group] = _StubService(
            spec=spec, replicas=spec.replicas, updated_at=datetime.now(timezone.utc)
        )

    def scale_task_set(self, *, target_group: str, replicas: int) -> None:
        service = self.services.get(target_group)
        if service:
            service.replicas = replicas
            service.updated_at = datetime.now(timezone.utc)

    def service_counts(self, *, target_group: str) -> ServiceCounts:
        service = self.services.get(target_group)
        if not service:
            return ServiceCounts(0, 0, 0, "Service not found in stub data")
        healthy = 0 if service.spec.image in self.unhealthy_images else service.replicas
        return ServiceCounts(service.replicas, service.replicas, healthy)

    def list_task_sets(self) -> list[TaskSetSummary]:
        summaries = []
        for target_group, service in sorted(self.services.items()):
            counts = self.service_counts(target_group=target_group)
            summaries.append(
                TaskSetSummary(
                    service=self.service_name(target_group),
                    environment=service.spec.environment,
                    target_group=target_group,
                    image=service.spec.image,
                    replicas_desired=counts.desired,
                    replicas_running=counts.healthy,
                    status=_summarize(counts.desired, counts.healthy),
                    updated_at=service.updated_at,
                )
            )
        return summaries


def _summarize(desired: Optional[int], running: int) -> TaskSetStatusType:
    if desired is None:
        return "unknown"
    if desired == 0 or running == 0:
        return "stopped"
    if running < desired:
        return "degraded"
    return "healthy"


def _parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    cleaned = raw.replace("Z", "+00:00")
    head, dot, tail = cleaned.partition(".")
    if dot:
        # Docker reports nanoseconds; fromisoformat accepts at most six digits.
        digits = "".join(ch for ch in tail if ch.isdigit())
        offset = tail[len(digits):]
        cleaned = f"{head}.{digits[:6]}{offset}"
    try:
        return datetime.fromisoformat(cleaned)
    except ValueError:
        logger.debug("Unable to parse docker timestamp: %s", raw)
        return None


__all__ = [
    "ContainerPlatform",
    "ServiceCounts",
    "StubbedContainerPlatform",
    "SwarmContainerPlatform",
    "TaskSetSpec",
]
