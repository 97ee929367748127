"""Pydantic models representing release orchestration domain objects."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

EnvironmentName = Literal["blue", "green"]
PipelineName = Literal["staging", "production"]
TriggerType = Literal["push", "manual"]
RunStateType = Literal["pending", "sourcing", "building", "deploying", "succeeded", "failed"]
StageName = Literal["sourcing", "building", "deploying"]
ShiftStateType = Literal[
    "idle",
    "provisioning",
    "health_checking",
    "shifting",
    "settled",
    "rolling_back",
    "rolled_back",
]
DeploymentConfigName = Literal["all_at_once"]

TERMINAL_RUN_STATES: frozenset[str] = frozenset({"succeeded", "failed"})
TERMINAL_SHIFT_STATES: frozenset[str] = frozenset({"settled", "rolled_back"})


class HealthCheck(BaseModel):
    """Health check configuration shared by an environment's target groups."""

    path: str = "/"
    protocol: Literal["HTTP", "HTTPS"] = "HTTP"


class Environment(BaseModel):
    """Static definition of an environment's compute shape."""

    name: EnvironmentName
    desired_count: int = Field(1, ge=1)
    cpu: int = Field(256, gt=0)
    memory_mib: int = Field(512, gt=0)
    container_name: str = "web"
    container_port: int = Field(80, gt=0, lt=65536)
    health_check: HealthCheck = Field(default_factory=HealthCheck)
    image: Optional[str] = None

    def shape(self) -> dict[str, object]:
        """Everything that must be identical between blue and green."""
        return self.model_dump(exclude={"name", "image"})


class TargetGroup(BaseModel):
    """A named, health-checked pool of tasks a listener can forward to."""

    name: str
    environment: EnvironmentName
    port: int
    protocol: Literal["HTTP", "HTTPS"] = "HTTP"
    health_check_path: str = "/"


class DeploymentGroup(BaseModel):
    """Binds the production environment to its traffic-shifted listener."""

    name: str
    environment: EnvironmentName
    listener: str
    target_groups: tuple[str, str]
    deployment_config: DeploymentConfigName = "all_at_once"
    auto_rollback: bool = True

    def counterpart(self, target_group: str) -> str:
        """Return the other target group of the blue/green pair."""
        first, second = self.target_groups
        if target_group == first:
            return second
        if target_group == second:
            return first
        raise ValueError(f"{target_group} is not part of deployment group {self.name}")


class ArtifactReference(BaseModel):
    """A container image coordinate in the artifact store."""

    repository: str
    tag: str

    @property
    def image(self) -> str:
        return f"{self.repository}:{self.tag}"


class PromotionRecord(BaseModel):
    """The single named slot holding the tag approved for production."""

    name: str
    value: Optional[str] = None
    version: int = 0
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None


class PipelineRun(BaseModel):
    """A single execution of the staging or production pipeline."""

    id: int
    pipeline: PipelineName
    trigger: TriggerType
    state: RunStateType
    revision: Optional[str] = None
    image_tag: Optional[str] = None
    promotion_version: Optional[int] = None
    failed_stage: Optional[StageName] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_RUN_STATES


class TrafficShift(BaseModel):
    """Record of one blue/green cutover attempt."""

    id: int
    environment: EnvironmentName
    deployment_group: str
    run_id: Optional[int] = None
    state: ShiftStateType
    transitions: list[ShiftStateType] = Field(default_factory=list)
    from_target_group: str
    to_target_group: str
    image: str
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_SHIFT_STATES


class TargetHealth(BaseModel):
    """Registered and healthy task counts for a target group."""

    target_group: str
    desired: int
    registered: int
    healthy: int
    message: Optional[str] = None

    @property
    def all_healthy(self) -> bool:
        return self.desired > 0 and self.registered >= self.desired and self.healthy >= self.desired


class DeploymentDescriptors(BaseModel):
    """Task definition and load-balancer binding rendered for one image."""

    image: str
    image_tag: str
    revision: Optional[str] = None
    container_name: str
    container_port: int
    task_definition: str
    appspec: str


class EnvironmentState(BaseModel):
    """What is currently running in an environment."""

    environment: EnvironmentName
    image: str
    image_tag: Optional[str] = None
    revision: Optional[str] = None
    target_group: str
    deployed_at: datetime
    run_id: Optional[int] = None


class SourceRevision(BaseModel):
    """A resolved revision of the tracked source repository."""

    revision: str
    branch: str
    message: Optional[str] = None


class BuildResult(BaseModel):
    """Outcome reported by the build collaborator."""

    tag: str
    success: bool
    message: Optional[str] = None


class PromotionRequest(BaseModel):
    """Request to overwrite the promotion record."""

    tag: str = Field(..., description="Artifact tag approved for production")
    promoted_by: str = Field("manual", description="Actor performing the promotion")


class RoutingRequest(BaseModel):
    """An inbound request to evaluate against a listener."""

    source_ip: Optional[str] = None
    path: str = "/"


TaskSetStatusType = Literal["healthy", "degraded", "stopped", "unknown"]


class TaskSetSummary(BaseModel):
    """Snapshot of a task set running on the compute platform."""

    service: str
    environment: Optional[str] = None
    target_group: Optional[str] = None
    image: Optional[str] = None
    replicas_desired: Optional[int] = None
    replicas_running: int = 0
    status: TaskSetStatusType = "unknown"
    updated_at: Optional[datetime] = None
