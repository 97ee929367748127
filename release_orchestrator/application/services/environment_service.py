"""Environment-focused application services."""

from __future__ import annotations

from typing import Optional

from release_orchestrator.application.ports import (
    Clock,
    ComputePlatform,
    EnvironmentStateRepository,
    LoadBalancer,
    Logger,
    PipelineRunRepository,
    PromotionStore,
    TrafficShiftRepository,
)
from release_orchestrator.artifacts import parse_image
from release_orchestrator.environments import PROMOTION_RECORD_NAME, STAGING_TARGET_GROUP, Topology
from release_orchestrator.models import EnvironmentState, RoutingRequest, TaskSetSummary, TrafficShift
from release_orchestrator.routing import ListenerConfig, RoutingDecision


class EnvironmentService:
    """Bootstraps the topology and answers read-side questions about it."""

    def __init__(
        self,
        *,
        topology: Topology,
        load_balancer: LoadBalancer,
        promotions: PromotionStore,
        environment_repo: EnvironmentStateRepository,
        run_repo: PipelineRunRepository,
        shift_repo: TrafficShiftRepository,
        compute: ComputePlatform,
        clock: Clock,
        logger: Logger,
    ):
        self._topology = topology
        self._load_balancer = load_balancer
        self._promotions = promotions
        self._environments = environment_repo
        self._runs = run_repo
        self._shifts = shift_repo
        self._compute = compute
        self._clock = clock
        self._logger = logger

    def bootstrap(self) -> None:
        """Persist listeners, the promotion record and initial environment state.

        The staging listener is rewritten from configuration on every start so
        allow-list changes take effect; the production listener is only created
        once because its default action is the live target group pointer.
        """
        self._load_balancer.save_listener(self._topology.staging_listener)
        if self._load_balancer.register_listener(self._topology.production_listener):
            self._logger.info(
                "Registered production listener %s -> %s",
                self._topology.production_listener.name,
                self._topology.production_listener.default_target_group,
            )
        self._promotions.ensure(PROMOTION_RECORD_NAME)

        live = self.live_target_group()
        now = self._clock.now()
        bootstrap = parse_image(self._topology.bootstrap_image)
        for environment, target_group in (
            (self._topology.blue.name, live),
            (self._topology.green.name, STAGING_TARGET_GROUP),
        ):
            self._environments.seed(
                EnvironmentState(
                    environment=environment,
                    image=bootstrap.image,
                    image_tag=bootstrap.tag,
                    target_group=target_group,
                    deployed_at=now,
                )
            )

    def recover(self) -> None:
        """Fail runs and shifts that a previous process left unfinished."""
        now = self._clock.now()
        runs = self._runs.fail_interrupted(now)
        shifts = self._shifts.fail_interrupted(now)
        if runs or shifts:
            self._logger.warning(
                "Marked %s interrupted pipeline runs and %s traffic shifts as failed", runs, shifts
            )

    def live_target_group(self) -> str:
        listener = self._load_balancer.get_listener(self._topology.production_listener.name)
        if listener is None or listener.default_target_group is None:
            return self._topology.deployment_group.target_groups[0]
        return listener.default_target_group

    def get_environment(self, environment: str) -> Optional[EnvironmentState]:
        return self._environments.get(environment)

    def get_all_environments(self) -> dict[str, EnvironmentState]:
        return self._environments.list()

    def list_listeners(self) -> list[ListenerConfig]:
        return self._load_balancer.list_listeners()

    def get_listener(self, name: str) -> Optional[ListenerConfig]:
        return self._load_balancer.get_listener(name)

    def evaluate(self, name: str, request: RoutingRequest) -> Optional[RoutingDecision]:
        """Route a request against the listener as currently stored."""
        listener = self._load_balancer.get_listener(name)
        if listener is None:
            return None
        return listener.evaluate(request)

    def list_shifts(self, *, environment: Optional[str] = None, limit: int = 50) -> list[TrafficShift]:
        return self._shifts.list(environment=environment, limit=limit)

    async def list_task_sets(self) -> list[TaskSetSummary]:
        return await self._compute.list_task_sets()
