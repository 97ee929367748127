import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from release_orchestrator.adapters.docker import (
    DockerArtifactStore,
    DockerBuildCollaborator,
    DockerComputePlatform,
)
from release_orchestrator.adapters.github_adapter import StubbedSourceRepository
from release_orchestrator.adapters.persistence import (
    DatabaseEnvironmentRepository,
    DatabaseLoadBalancer,
    DatabasePipelineRunRepository,
    DatabasePromotionStore,
    DatabaseTrafficShiftRepository,
)
from release_orchestrator.application.ports import Clock
from release_orchestrator.application.services.environment_service import EnvironmentService
from release_orchestrator.application.services.pipelines import ProductionPipeline, StagingPipeline
from release_orchestrator.application.services.promotion_service import PromotionService
from release_orchestrator.application.services.traffic_shift import TrafficShiftController
from release_orchestrator.config import Settings
from release_orchestrator.database import Database
from release_orchestrator.descriptors import DescriptorRenderer
from release_orchestrator.docker_client import StubbedContainerPlatform
from release_orchestrator.environments import Topology, build_topology

REPOSITORY = "registry.local/sample-app"


class FakeClock(Clock):
    """Clock whose sleeps advance time instantly."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)
        await asyncio.sleep(0)


def make_settings(tmp_path: Path, **overrides) -> Settings:
    settings = Settings(
        environment_name="test",
        stub_mode=True,
        github_repo="user/sample-app",
        github_token=None,
        tracked_branch="main",
        webhook_secret=None,
        poll_interval_seconds=0,
        docker_host=None,
        database_path=tmp_path / "orchestrator.db",
        artifact_repository=REPOSITORY,
        bootstrap_image="nginx:alpine",
        allowed_source_cidrs=("1.2.3.4/32",),
        task_family="sample-app",
        task_cpu=256,
        task_memory_mib=512,
        desired_count=2,
        container_name="web",
        container_port=80,
        health_check_path="/",
        health_check_timeout_seconds=30,
        health_check_interval_seconds=5,
        build_timeout_seconds=60,
        log_level="DEBUG",
        web_host="127.0.0.1",
        web_port=8080,
    )
    return replace(settings, **overrides)


def make_database(tmp_path: Path) -> Database:
    database = Database(tmp_path / "orchestrator.db")
    database.initialize_schema()
    return database


@dataclass
class Stack:
    """Every service wired against a migrated database and the stubbed platform."""

    settings: Settings
    topology: Topology
    database: Database
    clock: FakeClock
    platform: StubbedContainerPlatform
    source: StubbedSourceRepository
    runs: DatabasePipelineRunRepository
    shifts: DatabaseTrafficShiftRepository
    environments: DatabaseEnvironmentRepository
    promotions: DatabasePromotionStore
    load_balancer: DatabaseLoadBalancer
    environment_service: EnvironmentService
    controller: TrafficShiftController
    staging: StagingPipeline
    production: ProductionPipeline
    promotion_service: PromotionService


def build_stack(tmp_path: Path, **overrides) -> Stack:
    settings = make_settings(tmp_path, **overrides)
    topology = build_topology(settings)
    database = make_database(tmp_path)
    clock = FakeClock()
    logger = logging.getLogger("tests")
    platform = StubbedContainerPlatform(stack_name=settings.stack_name, images={"nginx:alpine"})
    source = StubbedSourceRepository()
    runs = DatabasePipelineRunRepository(database)
    shifts = DatabaseTrafficShiftRepository(database)
    environments = DatabaseEnvironmentRepository(database)
    promotions = DatabasePromotionStore(database)
    load_balancer = DatabaseLoadBalancer(database)
    compute = DockerComputePlatform(platform)
    renderer = DescriptorRenderer(family=settings.task_family)

    environment_service = EnvironmentService(
        topology=topology,
        load_balancer=load_balancer,
        promotions=promotions,
        environment_repo=environments,
        run_repo=runs,
        shift_repo=shifts,
        compute=compute,
        clock=clock,
        logger=logger,
    )
    environment_service.bootstrap()
    controller = TrafficShiftController(
        compute=compute,
        load_balancer=load_balancer,
        shift_repo=shifts,
        environment_repo=environments,
        clock=clock,
        logger=logger,
        health_check_timeout_seconds=settings.health_check_timeout_seconds,
        health_check_interval_seconds=settings.health_check_interval_seconds,
    )
    staging = StagingPipeline(
        topology=topology,
        source=source,
        builder=DockerBuildCollaborator(platform, "https://github.com/user/sample-app.git"),
        compute=compute,
        renderer=renderer,
        environment_repo=environments,
        branch=settings.tracked_branch,
        build_timeout_seconds=settings.build_timeout_seconds,
        run_repo=runs,
        clock=clock,
        logger=logger,
    )
    production = ProductionPipeline(
        topology=topology,
        source=source,
        artifacts=DockerArtifactStore(platform),
        promotions=promotions,
        controller=controller,
        renderer=renderer,
        branch=settings.tracked_branch,
        run_repo=runs,
        clock=clock,
        logger=logger,
    )
    promotion_service = PromotionService(
        promotions=promotions, run_repo=runs, clock=clock, logger=logger
    )
    return Stack(
        settings=settings,
        topology=topology,
        database=database,
        clock=clock,
        platform=platform,
        source=source,
        runs=runs,
        shifts=shifts,
        environments=environments,
        promotions=promotions,
        load_balancer=load_balancer,
        environment_service=environment_service,
        controller=controller,
        staging=staging,
        production=production,
        promotion_service=promotion_service,
    )


@pytest.fixture
def stack(tmp_path):
    built = build_stack(tmp_path)
    yield built
    built.database.close()
