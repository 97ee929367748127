"""Port definitions for Hexagonal architecture."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Tuple

from release_orchestrator.models import (
    ArtifactReference,
    BuildResult,
    DeploymentDescriptors,
    Environment,
    EnvironmentState,
    PipelineRun,
    PromotionRecord,
    SourceRevision,
    TargetHealth,
    TaskSetSummary,
    TrafficShift,
)
from release_orchestrator.routing import ListenerConfig


class Clock(Protocol):
    """Provides wall-clock timestamps."""

    def now(self) -> datetime:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class Logger(Protocol):
    """Light-weight logging port."""

    def info(self, msg: str, *args: object, **kwargs: object) -> None:
        ...

    def warning(self, msg: str, *args: object, **kwargs: object) -> None:
        ...

    def debug(self, msg: str, *args: object, **kwargs: object) -> None:
        ...

    def error(self, msg: str, *args: object, **kwargs: object) -> None:
        ...


class SourceRepository(Protocol):
    """Resolves revisions of the tracked source repository."""

    async def resolve(self, *, branch: str, revision: Optional[str] = None) -> SourceRevision:
        ...


class BuildCollaborator(Protocol):
    """Builds and pushes an image for a source revision."""

    async def build(self, *, revision: str, artifact: ArtifactReference) -> BuildResult:
        ...


class ArtifactStore(Protocol):
    """Container image storage addressed by tag."""

    async def push(self, artifact: ArtifactReference) -> None:
        ...

    async def pull(self, artifact: ArtifactReference) -> None:
        ...


class ComputePlatform(Protocol):
    """Runs task sets bound to target groups."""

    async def update_in_place(
        self, *, environment: Environment, target_group: str, descriptors: DeploymentDescriptors
    ) -> None:
        ...

    async def launch_task_set(
        self, *, environment: Environment, target_group: str, descriptors: DeploymentDescriptors
    ) -> None:
        ...

    async def target_health(self, *, target_group: str) -> TargetHealth:
        ...

    async def deregister_task_set(self, *, target_group: str) -> None:
        ...

    async def list_task_sets(self) -> list[TaskSetSummary]:
        ...


class LoadBalancer(Protocol):
    """Routing-rule configuration surface of the load balancer."""

    def get_listener(self, name: str) -> Optional[ListenerConfig]:
        ...

    def list_listeners(self) -> list[ListenerConfig]:
        ...

    def register_listener(self, config: ListenerConfig) -> bool:
        """Store ``config`` unless a listener with that name already exists."""
        ...

    def save_listener(self, config: ListenerConfig) -> None:
        ...

    def repoint_default(self, name: str, *, expected: str, target: str) -> bool:
        ...


class PromotionStore(Protocol):
    """The named, versioned promotion hand-off channel."""

    def ensure(self, name: str) -> None:
        ...

    def get(self, name: str) -> Optional[PromotionRecord]:
        ...

    def put(self, name: str, *, value: str, updated_by: str, updated_at: datetime) -> PromotionRecord:
        ...


class PipelineRunRepository(Protocol):
    """Durable pipeline run state."""

    def create(
        self, *, pipeline: str, trigger: str, revision: Optional[str], started_at: datetime
    ) -> int:
        ...

    def update(self, run_id: int, **fields: object) -> None:
        ...

    def fetch(self, run_id: int) -> Optional[PipelineRun]:
        ...

    def active(self, pipeline: str) -> Optional[PipelineRun]:
        ...

    def latest_revision(self, pipeline: str) -> Optional[str]:
        ...

    def fail_interrupted(self, completed_at: datetime) -> int:
        ...

    def list(
        self, *, pipeline: Optional[str], limit: int, offset: int
    ) -> Tuple[list[PipelineRun], int]:
        ...


class TrafficShiftRepository(Protocol):
    """Durable traffic shift state."""

    def create(
        self,
        *,
        environment: str,
        deployment_group: str,
        run_id: Optional[int],
        from_target_group: str,
        to_target_group: str,
        image: str,
        started_at: datetime,
    ) -> int:
        ...

    def update(self, shift_id: int, **fields: object) -> None:
        ...

    def fetch(self, shift_id: int) -> Optional[TrafficShift]:
        ...

    def active(self, environment: str) -> Optional[TrafficShift]:
        ...

    def fail_interrupted(self, completed_at: datetime) -> int:
        ...

    def list(self, *, environment: Optional[str], limit: int) -> list[TrafficShift]:
        ...


class EnvironmentStateRepository(Protocol):
    """What is currently running per environment."""

    def get(self, environment: str) -> Optional[EnvironmentState]:
        ...

    def list(self) -> dict[str, EnvironmentState]:
        ...

    def seed(self, state: EnvironmentState) -> None:
        ...

    def record(self, state: EnvironmentState) -> None:
        ...
