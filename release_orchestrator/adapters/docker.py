"""Docker-based adapters for compute, builds and the artifact store."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from release_orchestrator.application.ports import ArtifactStore, BuildCollaborator, ComputePlatform
from release_orchestrator.descriptors import health_command
from release_orchestrator.docker_client import ContainerPlatform, TaskSetSpec
from release_orchestrator.errors import BuildError
from release_orchestrator.models import (
    ArtifactReference,
    BuildResult,
    DeploymentDescriptors,
    Environment,
    TargetHealth,
    TaskSetSummary,
)


@dataclass(slots=True)
class DockerComputePlatform(ComputePlatform):
    client: ContainerPlatform

    async def update_in_place(
        self, *, environment: Environment, target_group: str, descriptors: DeploymentDescriptors
    ) -> None:
        spec = self._spec(environment, target_group, descriptors)
        await asyncio.to_thread(self.client.apply_task_set, spec)

    async def launch_task_set(
        self, *, environment: Environment, target_group: str, descriptors: DeploymentDescriptors
    ) -> None:
        spec = self._spec(environment, target_group, descriptors)
        spec.labels["release-orchestrator.role"] = "shadow"
        await asyncio.to_thread(self.client.apply_task_set, spec)

    async def target_health(self, *, target_group: str) -> TargetHealth:
        counts = await asyncio.to_thread(self.client.service_counts, target_group=target_group)
        return TargetHealth(
            target_group=target_group,
            desired=counts.desired,
            registered=counts.registered,
            healthy=counts.healthy,
            message=counts.message,
        )

    async def deregister_task_set(self, *, target_group: str) -> None:
        await asyncio.to_thread(self.client.scale_task_set, target_group=target_group, replicas=0)

    async def list_task_sets(self) -> list[TaskSetSummary]:
        return await asyncio.to_thread(self.client.list_task_sets)

    @staticmethod
    def _spec(
        environment: Environment, target_group: str, descriptors: DeploymentDescriptors
    ) -> TaskSetSpec:
        labels = {"release-orchestrator.image-tag": descriptors.image_tag}
        if descriptors.revision:
            labels["release-orchestrator.revision"] = descriptors.revision
        return TaskSetSpec(
            environment=environment.name,
            target_group=target_group,
            image=descriptors.image,
            replicas=environment.desired_count,
            cpu=environment.cpu,
            memory_mib=environment.memory_mib,
            health_command=health_command(environment),
            labels=labels,
        )


@dataclass(slots=True)
class DockerArtifactStore(ArtifactStore):
    client: ContainerPlatform

    async def push(self, artifact: ArtifactReference) -> None:
        await asyncio.to_thread(
            self.client.push_image, repository=artifact.repository, tag=artifact.tag
        )

    async def pull(self, artifact: ArtifactReference) -> None:
        await asyncio.to_thread(
            self.client.pull_image, repository=artifact.repository, tag=artifact.tag
        )


@dataclass(slots=True)
class DockerBuildCollaborator(BuildCollaborator):
    """Builds straight from the repository's git URL at the requested revision."""

    client: ContainerPlatform
    context_url: str

    async def build(self, *, revision: str, artifact: ArtifactReference) -> BuildResult:
        context = f"{self.context_url}#{revision}"
        try:
            await asyncio.to_thread(self.client.build_image, context=context, image=artifact.image)
        except BuildError as exc:
            return BuildResult(tag=artifact.tag, success=False, message=str(exc))
        return BuildResult(tag=artifact.tag, success=True, message=f"Pushed {artifact.image}")
