"""Blue/green environment descriptors and the topology built from settings."""

from __future__ import annotations

from dataclasses import dataclass

from .config import Settings
from .errors import ConfigurationError
from .models import DeploymentGroup, Environment, EnvironmentName, HealthCheck, TargetGroup
from .routing import ListenerConfig, allow_list_listener, forwarding_listener

PRODUCTION_ENVIRONMENT: EnvironmentName = "blue"
STAGING_ENVIRONMENT: EnvironmentName = "green"
PRODUCTION_LISTENER = "blue-http"
STAGING_LISTENER = "green-http"
PRODUCTION_TARGET_GROUPS = ("blue-a", "blue-b")
STAGING_TARGET_GROUP = "green"
PRODUCTION_DEPLOYMENT_GROUP = "blue-dg"
PROMOTION_RECORD_NAME = "promoted-image-tag"


@dataclass(frozen=True, slots=True)
class Topology:
    """Static description of both environments and their routing."""

    blue: Environment
    green: Environment
    target_groups: dict[str, TargetGroup]
    staging_listener: ListenerConfig
    production_listener: ListenerConfig
    deployment_group: DeploymentGroup
    artifact_repository: str
    bootstrap_image: str


def assert_parity(blue: Environment, green: Environment) -> None:
    """Blue and green may only differ by name and image."""
    blue_shape = blue.shape()
    green_shape = green.shape()
    if blue_shape != green_shape:
        differing = sorted(key for key in blue_shape if blue_shape[key] != green_shape.get(key))
        raise ConfigurationError(
            f"Blue and green environments differ in {', '.join(differing)}"
        )


def validate_deployment_group(group: DeploymentGroup, target_groups: dict[str, TargetGroup]) -> None:
    first, second = group.target_groups
    if first == second:
        raise ConfigurationError(f"Deployment group {group.name} needs two distinct target groups")
    for name in group.target_groups:
        target = target_groups.get(name)
        if target is None or target.environment != group.environment:
            raise ConfigurationError(
                f"Target group {name} does not belong to environment {group.environment}"
            )
    if not group.auto_rollback:
        raise ConfigurationError(f"Deployment group {group.name} must roll back automatically")


def build_topology(settings: Settings) -> Topology:
    """Derive environments, target groups, listeners and the deployment group."""
    health_check = HealthCheck(path=settings.health_check_path)

    def _environment(name: EnvironmentName) -> Environment:
        return Environment(
            name=name,
            desired_count=settings.desired_count,
            cpu=settings.task_cpu,
            memory_mib=settings.task_memory_mib,
            container_name=settings.container_name,
            container_port=settings.container_port,
            health_check=health_check,
            image=settings.bootstrap_image,
        )

    blue = _environment(PRODUCTION_ENVIRONMENT)
    green = _environment(STAGING_ENVIRONMENT)
    assert_parity(blue, green)

    target_groups: dict[str, TargetGroup] = {}
    for name, environment in (
        (PRODUCTION_TARGET_GROUPS[0], blue),
        (PRODUCTION_TARGET_GROUPS[1], blue),
        (STAGING_TARGET_GROUP, green),
    ):
        target_groups[name] = TargetGroup(
            name=name,
            environment=environment.name,
            port=environment.container_port,
            protocol=environment.health_check.protocol,
            health_check_path=environment.health_check.path,
        )

    staging_listener = allow_list_listener(
        name=STAGING_LISTENER,
        environment=STAGING_ENVIRONMENT,
        target_group=STAGING_TARGET_GROUP,
        allowed_cidrs=settings.allowed_source_cidrs,
    )
    production_listener = forwarding_listener(
        name=PRODUCTION_LISTENER,
        environment=PRODUCTION_ENVIRONMENT,
        target_group=PRODUCTION_TARGET_GROUPS[0],
    )
    deployment_group = DeploymentGroup(
        name=PRODUCTION_DEPLOYMENT_GROUP,
        environment=PRODUCTION_ENVIRONMENT,
        listener=PRODUCTION_LISTENER,
        target_groups=PRODUCTION_TARGET_GROUPS,
    )
    validate_deployment_group(deployment_group, target_groups)

    return Topology(
        blue=blue,
        green=green,
        target_groups=target_groups,
        staging_listener=staging_listener,
        production_listener=production_listener,
        deployment_group=deployment_group,
        artifact_repository=settings.artifact_repository,
        bootstrap_image=settings.bootstrap_image,
    )
