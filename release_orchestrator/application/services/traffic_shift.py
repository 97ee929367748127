"""Health-gated blue/green cutover of the production listener."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from release_orchestrator.application.ports import (
    Clock,
    ComputePlatform,
    EnvironmentStateRepository,
    LoadBalancer,
    Logger,
    TrafficShiftRepository,
)
from release_orchestrator.errors import (
    ConcurrencyConflictError,
    ConfigurationError,
    DeployLaunchError,
    DeploymentAbortedError,
    HealthCheckTimeoutError,
    InvalidTransitionError,
    ReleaseError,
)
from release_orchestrator.models import (
    DeploymentDescriptors,
    DeploymentGroup,
    Environment,
    EnvironmentState,
    ShiftStateType,
    TargetHealth,
    TrafficShift,
)

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "idle": frozenset({"provisioning"}),
    "provisioning": frozenset({"health_checking", "rolling_back"}),
    "health_checking": frozenset({"shifting", "rolling_back"}),
    "shifting": frozenset({"settled", "rolling_back"}),
    "rolling_back": frozenset({"rolled_back"}),
    "settled": frozenset(),
    "rolled_back": frozenset(),
}


@dataclass(slots=True)
class _ShiftProgress:
    shift_id: int
    environment: str
    live: str
    shadow: str
    state: ShiftStateType = "idle"
    transitions: list[ShiftStateType] = field(default_factory=lambda: ["idle"])


class TrafficShiftController:
    """Moves production traffic to a freshly launched task set, or rolls back.

    The listener's default action is the only "which target group is live"
    pointer. It is written exactly once per successful shift, by a
    compare-and-set in the ``shifting`` state; every failure path leaves it
    on the previously live target group.
    """

    def __init__(
        self,
        *,
        compute: ComputePlatform,
        load_balancer: LoadBalancer,
        shift_repo: TrafficShiftRepository,
        environment_repo: EnvironmentStateRepository,
        clock: Clock,
        logger: Logger,
        health_check_timeout_seconds: float,
        health_check_interval_seconds: float,
    ):
        self._compute = compute
        self._load_balancer = load_balancer
        self._shifts = shift_repo
        self._environments = environment_repo
        self._clock = clock
        self._logger = logger
        self._health_timeout = health_check_timeout_seconds
        self._health_interval = health_check_interval_seconds
        self._lock = asyncio.Lock()
        self._active: dict[str, int] = {}

    def is_shifting(self, environment: str) -> bool:
        return environment in self._active

    async def shift(
        self,
        *,
        group: DeploymentGroup,
        environment: Environment,
        descriptors: DeploymentDescriptors,
        run_id: Optional[int] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> TrafficShift:
        progress = await self._claim(group, environment, descriptors, run_id)
        try:
            await self._execute(progress, group, environment, descriptors, run_id, abort)
        finally:
            self._active.pop(environment.name, None)
        shift = self._shifts.fetch(progress.shift_id)
        if shift is None:
            raise KeyError(progress.shift_id)
        return shift

    async def _claim(
        self,
        group: DeploymentGroup,
        environment: Environment,
        descriptors: DeploymentDescriptors,
        run_id: Optional[int],
    ) -> _ShiftProgress:
        async with self._lock:
            in_flight = self._active.get(environment.name)
            if in_flight is None:
                durable = self._shifts.active(environment.name)
                in_flight = durable.id if durable else None
            if in_flight is not None:
                raise ConcurrencyConflictError(
                    f"Traffic shift {in_flight} already in flight for {environment.name}"
                )
            listener = self._load_balancer.get_listener(group.listener)
            if listener is None or listener.default_target_group is None:
                raise ConfigurationError(
                    f"Listener {group.listener} has no default target group to shift from"
                )
            live = listener.default_target_group
            try:
                shadow = group.counterpart(live)
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc
            shift_id = self._shifts.create(
                environment=environment.name,
                deployment_group=group.name,
                run_id=run_id,
                from_target_group=live,
                to_target_group=shadow,
                image=descriptors.image,
                started_at=self._clock.now(),
            )
            self._active[environment.name] = shift_id
        self._logger.info(
            "Traffic shift %s for %s: %s -> %s (%s)",
            shift_id,
            environment.name,
            live,
            shadow,
            descriptors.image,
        )
        return _ShiftProgress(
            shift_id=shift_id, environment=environment.name, live=live, shadow=shadow
        )

    async def _execute(
        self,
        progress: _ShiftProgress,
        group: DeploymentGroup,
        environment: Environment,
        descriptors: DeploymentDescriptors,
        run_id: Optional[int],
        abort: Optional[asyncio.Event],
    ) -> None:
        try:
            self._transition(progress, "provisioning")
            self._raise_if_aborted(abort)
            await self._launch(environment, progress.shadow, descriptors)

            self._transition(progress, "health_checking")
            await self._await_healthy(progress.shadow, abort)

            self._transition(progress, "shifting")
            self._raise_if_aborted(abort)
            repointed = self._load_balancer.repoint_default(
                group.listener, expected=progress.live, target=progress.shadow
            )
            if not repointed:
                raise DeployLaunchError(
                    f"Listener {group.listener} no longer targets {progress.live}; refusing to shift"
                )
            self._environments.record(
                EnvironmentState(
                    environment=environment.name,
                    image=descriptors.image,
                    image_tag=descriptors.image_tag,
                    revision=descriptors.revision,
                    target_group=progress.shadow,
                    deployed_at=self._clock.now(),
                    run_id=run_id,
                )
            )
        except ReleaseError as exc:
            await self._roll_back(progress, group, exc)
            raise
        except asyncio.CancelledError:
            await self._roll_back(progress, group, DeploymentAbortedError("Traffic shift cancelled"))
            raise
        except Exception as exc:
            error = DeployLaunchError(f"Traffic shift {progress.shift_id} failed in {progress.state}: {exc}")
            await self._roll_back(progress, group, error)
            raise error from exc

        self._transition(progress, "settled", completed_at=self._clock.now())
        await self._drain(progress.live)

    async def _launch(
        self, environment: Environment, target_group: str, descriptors: DeploymentDescriptors
    ) -> None:
        try:
            await self._compute.launch_task_set(
                environment=environment, target_group=target_group, descriptors=descriptors
            )
        except ReleaseError:
            raise
        except Exception as exc:
            raise DeployLaunchError(f"Failed to launch task set on {target_group}: {exc}") from exc

    async def _await_healthy(
        self, target_group: str, abort: Optional[asyncio.Event]
    ) -> TargetHealth:
        deadline = self._clock.now() + timedelta(seconds=self._health_timeout)
        while True:
            self._raise_if_aborted(abort)
            health = await self._compute.target_health(target_group=target_group)
            if health.all_healthy:
                self._logger.info(
                    "Target group %s healthy (%s/%s)", target_group, health.healthy, health.desired
                )
                return health
            if self._clock.now() >= deadline:
                raise HealthCheckTimeoutError(
                    f"Target group {target_group} reported {health.healthy}/{health.desired} "
                    f"healthy tasks after {self._health_timeout:g}s"
                )
            self._logger.debug(
                "Waiting for %s: %s/%s healthy", target_group, health.healthy, health.desired
            )
            await self._clock.sleep(self._health_interval)

    async def _roll_back(
        self, progress: _ShiftProgress, group: DeploymentGroup, cause: ReleaseError
    ) -> None:
        self._transition(progress, "rolling_back", error_message=str(cause))
        self._logger.warning(
            "Rolling back traffic shift %s on %s: %s", progress.shift_id, progress.environment, cause
        )
        try:
            await self._compute.deregister_task_set(target_group=progress.shadow)
        except Exception as exc:
            self._logger.error("Failed to deregister shadow task set %s: %s", progress.shadow, exc)
        listener = self._load_balancer.get_listener(group.listener)
        if listener is not None and listener.default_target_group == progress.shadow:
            self._load_balancer.repoint_default(
                group.listener, expected=progress.shadow, target=progress.live
            )
        self._transition(progress, "rolled_back", completed_at=self._clock.now())

    async def _drain(self, target_group: str) -> None:
        try:
            await self._compute.deregister_task_set(target_group=target_group)
        except Exception as exc:
            self._logger.warning("Failed to drain previous task set %s: %s", target_group, exc)

    def _transition(self, progress: _ShiftProgress, state: ShiftStateType, **fields: object) -> None:
        if state not in _ALLOWED_TRANSITIONS[progress.state]:
            raise InvalidTransitionError(
                f"Invalid traffic shift transition: {progress.state} -> {state}"
            )
        progress.state = state
        progress.transitions.append(state)
        self._shifts.update(
            progress.shift_id, state=state, transitions=list(progress.transitions), **fields
        )
        self._logger.info("Traffic shift %s entered %s", progress.shift_id, state)

    @staticmethod
    def _raise_if_aborted(abort: Optional[asyncio.Event]) -> None:
        if abort is not None and abort.is_set():
            raise DeploymentAbortedError("Deployment aborted")
