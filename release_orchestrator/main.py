"""FastAPI application entry point."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from release_orchestrator.adapters.docker import (
    DockerArtifactStore,
    DockerBuildCollaborator,
    DockerComputePlatform,
)
from release_orchestrator.adapters.github_adapter import (
    GitHubSourceRepository,
    StubbedSourceRepository,
)
from release_orchestrator.adapters.persistence import (
    DatabaseEnvironmentRepository,
    DatabaseLoadBalancer,
    DatabasePipelineRunRepository,
    DatabasePromotionStore,
    DatabaseTrafficShiftRepository,
)
from release_orchestrator.adapters.time import SystemClock
from release_orchestrator.application.ports import SourceRepository
from release_orchestrator.application.services.environment_service import EnvironmentService
from release_orchestrator.application.services.pipelines import (
    ProductionPipeline,
    StagingPipeline,
)
from release_orchestrator.application.services.promotion_service import PromotionService
from release_orchestrator.application.services.traffic_shift import TrafficShiftController
from release_orchestrator.config import Settings, get_settings
from release_orchestrator.database import Database
from release_orchestrator.descriptors import DescriptorRenderer
from release_orchestrator.docker_client import (
    ContainerPlatform,
    StubbedContainerPlatform,
    SwarmContainerPlatform,
)
from release_orchestrator.environments import build_topology
from release_orchestrator.github import GitHubClient
from release_orchestrator.poller import SourcePoller
from release_orchestrator.routers import api

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = get_settings()
    logging.getLogger("release_orchestrator").setLevel(settings.log_level)
    # Configuration errors surface here, before any traffic is served.
    topology = build_topology(settings)

    database = Database(settings.database_path)
    database.initialize_schema()

    env_name = settings.environment_name
    use_stub = settings.stub_mode and (env_name.startswith("dev") or env_name.startswith("test"))
    platform: ContainerPlatform
    github_client = GitHubClient(repo=settings.github_repo, token=settings.github_token)
    source: SourceRepository
    if use_stub:
        platform = StubbedContainerPlatform(
            stack_name=settings.stack_name, images={settings.bootstrap_image}
        )
        source = StubbedSourceRepository()
    else:
        platform = SwarmContainerPlatform(stack_name=settings.stack_name, base_url=settings.docker_host)
        source = GitHubSourceRepository(github_client)

    run_repository = DatabasePipelineRunRepository(database)
    shift_repository = DatabaseTrafficShiftRepository(database)
    environment_repository = DatabaseEnvironmentRepository(database)
    promotion_store = DatabasePromotionStore(database)
    load_balancer = DatabaseLoadBalancer(database)

    compute = DockerComputePlatform(platform)
    artifact_store = DockerArtifactStore(platform)
    builder = DockerBuildCollaborator(platform, github_client.clone_url)
    renderer = DescriptorRenderer(family=settings.task_family)
    clock = SystemClock()

    environment_service = EnvironmentService(
        topology=topology,
        load_balancer=load_balancer,
        promotions=promotion_store,
        environment_repo=environment_repository,
        run_repo=run_repository,
        shift_repo=shift_repository,
        compute=compute,
        clock=clock,
        logger=logger,
    )
    environment_service.recover()
    environment_service.bootstrap()

    controller = TrafficShiftController(
        compute=compute,
        load_balancer=load_balancer,
        shift_repo=shift_repository,
        environment_repo=environment_repository,
        clock=clock,
        logger=logger,
        health_check_timeout_seconds=settings.health_check_timeout_seconds,
        health_check_interval_seconds=settings.health_check_interval_seconds,
    )
    staging = StagingPipeline(
        topology=topology,
        source=source,
        builder=builder,
        compute=compute,
        renderer=renderer,
        environment_repo=environment_repository,
        branch=settings.tracked_branch,
        build_timeout_seconds=settings.build_timeout_seconds,
        run_repo=run_repository,
        clock=clock,
        logger=logger,
    )
    production = ProductionPipeline(
        topology=topology,
        source=source,
        artifacts=artifact_store,
        promotions=promotion_store,
        controller=controller,
        renderer=renderer,
        branch=settings.tracked_branch,
        run_repo=run_repository,
        clock=clock,
        logger=logger,
    )
    promotion_service = PromotionService(
        promotions=promotion_store, run_repo=run_repository, clock=clock, logger=logger
    )
    poller = SourcePoller(
        source=source,
        pipeline=staging,
        run_repo=run_repository,
        branch=settings.tracked_branch,
        interval_seconds=settings.poll_interval_seconds,
    )

    app.state.settings = settings
    app.state.topology = topology
    app.state.database = database
    app.state.run_repository = run_repository
    app.state.shift_repository = shift_repository
    app.state.environment_service = environment_service
    app.state.promotion_service = promotion_service
    app.state.traffic_shift_controller = controller
    app.state.pipelines = {staging.name: staging, production.name: production}
    app.state.container_platform = platform
    app.state.source_repository = source
    app.state.github_client = github_client
    app.state.poller = poller

    if settings.poll_interval_seconds > 0:
        await poller.start()
    try:
        yield
    finally:
        if settings.poll_interval_seconds > 0:
            await poller.stop()
        await staging.shutdown()
        await production.shutdown()
        await github_client.close()
        platform.close()
        database.close()


app = FastAPI(title="Release Orchestrator", lifespan=lifespan)

app.include_router(api.router)


def run() -> None:
    """Serve the API with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run(
        "release_orchestrator.main:app",
        host=settings.web_host,
        port=settings.web_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    run()
