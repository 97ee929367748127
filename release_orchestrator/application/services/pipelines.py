"""Staging and production pipeline state machines."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Awaitable, ClassVar, Optional, TypeVar

from release_orchestrator.application.ports import (
    ArtifactStore,
    BuildCollaborator,
    Clock,
    ComputePlatform,
    EnvironmentStateRepository,
    Logger,
    PipelineRunRepository,
    PromotionStore,
    SourceRepository,
)
from release_orchestrator.application.services.traffic_shift import TrafficShiftController
from release_orchestrator.artifacts import artifact_for_revision, validate_tag
from release_orchestrator.descriptors import DescriptorRenderer
from release_orchestrator.environments import (
    PROMOTION_RECORD_NAME,
    STAGING_TARGET_GROUP,
    Topology,
)
from release_orchestrator.errors import (
    ArtifactNotFoundError,
    BuildError,
    ConcurrencyConflictError,
    ConfigurationError,
    DeploymentAbortedError,
    InvalidTransitionError,
)
from release_orchestrator.models import (
    ArtifactReference,
    DeploymentDescriptors,
    EnvironmentState,
    PipelineName,
    PipelineRun,
    RunStateType,
    SourceRevision,
    TriggerType,
)

T = TypeVar("T")

_ALLOWED_RUN_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"sourcing", "failed"}),
    "sourcing": frozenset({"building", "failed"}),
    "building": frozenset({"deploying", "failed"}),
    "deploying": frozenset({"succeeded", "failed"}),
    "succeeded": frozenset(),
    "failed": frozenset(),
}
_STAGES = frozenset({"sourcing", "building", "deploying"})


@dataclass(slots=True)
class _RunContext:
    run_id: int
    revision: Optional[str]
    state: RunStateType = "pending"
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task[None]] = None


class PipelineStateMachine:
    """Runs one pipeline's stages strictly in sequence, one run at a time.

    Each state change is persisted before the stage body starts. Any exception
    raised by a stage ends the run in ``failed`` with the stage, error type and
    message recorded; nothing is retried.
    """

    name: ClassVar[PipelineName]
    accepted_triggers: ClassVar[frozenset[str]]

    def __init__(self, *, run_repo: PipelineRunRepository, clock: Clock, logger: Logger):
        self._runs = run_repo
        self._clock = clock
        self._logger = logger
        self._lock = asyncio.Lock()
        self._context: Optional[_RunContext] = None

    @property
    def active_run_id(self) -> Optional[int]:
        return self._context.run_id if self._context else None

    async def trigger(
        self, *, trigger: TriggerType, revision: Optional[str] = None
    ) -> PipelineRun:
        self._validate_trigger(trigger, revision)
        async with self._lock:
            if self._context is not None:
                raise ConcurrencyConflictError(
                    f"{self.name} pipeline run {self._context.run_id} is still in progress"
                )
            durable = self._runs.active(self.name)
            if durable is not None:
                raise ConcurrencyConflictError(
                    f"{self.name} pipeline run {durable.id} is still in progress"
                )
            run_id = self._runs.create(
                pipeline=self.name,
                trigger=trigger,
                revision=revision,
                started_at=self._clock.now(),
            )
            context = _RunContext(run_id=run_id, revision=revision)
            self._context = context
            context.task = asyncio.create_task(
                self._execute(context), name=f"{self.name}-run-{run_id}"
            )
        self._logger.info("Started %s pipeline run %s (%s)", self.name, run_id, trigger)
        return self._fetch(run_id)

    async def wait(self, run_id: int) -> PipelineRun:
        context = self._context
        if context is not None and context.run_id == run_id and context.task is not None:
            await asyncio.shield(context.task)
        return self._fetch(run_id)

    def abort(self, run_id: int) -> PipelineRun:
        run = self._fetch(run_id)
        context = self._context
        if run.is_terminal or context is None or context.run_id != run_id:
            raise InvalidTransitionError(f"Run {run_id} is not in progress (state {run.state})")
        if not context.abort.is_set():
            self._logger.warning("Abort requested for %s run %s in %s", self.name, run_id, context.state)
            context.abort.set()
        return run

    async def shutdown(self) -> None:
        """Cancel the in-flight run, leaving it failed."""
        context = self._context
        if context is None or context.task is None:
            return
        context.task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await context.task

    def _validate_trigger(self, trigger: TriggerType, revision: Optional[str]) -> None:
        if trigger not in self.accepted_triggers:
            raise ConfigurationError(f"{self.name} pipeline does not accept {trigger} triggers")

    async def _execute(self, context: _RunContext) -> None:
        try:
            await self._run_stages(context)
        except asyncio.CancelledError:
            self._fail(context, DeploymentAbortedError("Pipeline run cancelled"))
            raise
        except Exception as exc:
            self._fail(context, exc)
        else:
            self._advance(context, "succeeded", completed_at=self._clock.now())
            self._logger.info("%s pipeline run %s succeeded", self.name, context.run_id)
        finally:
            self._context = None

    async def _run_stages(self, context: _RunContext) -> None:
        raise NotImplementedError

    async def _guarded(self, context: _RunContext, awaitable: Awaitable[T]) -> T:
        """Await a stage body, cancelling it as soon as an abort is requested."""
        stage = asyncio.ensure_future(awaitable)
        if context.abort.is_set():
            stage.cancel()
            raise DeploymentAbortedError(f"Run {context.run_id} aborted during {context.state}")
        waiter = asyncio.ensure_future(context.abort.wait())
        try:
            done, _ = await asyncio.wait({stage, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not stage.done():
                stage.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await stage
        if stage in done:
            return stage.result()
        raise DeploymentAbortedError(f"Run {context.run_id} aborted during {context.state}")

    def _advance(self, context: _RunContext, state: RunStateType, **fields: object) -> None:
        if state not in _ALLOWED_RUN_TRANSITIONS[context.state]:
            raise InvalidTransitionError(
                f"Invalid {self.name} run transition: {context.state} -> {state}"
            )
        context.state = state
        self._runs.update(context.run_id, state=state, **fields)
        self._logger.info("%s pipeline run %s entered %s", self.name, context.run_id, state)

    def _fail(self, context: _RunContext, exc: BaseException) -> None:
        failed_stage = context.state if context.state in _STAGES else None
        self._logger.error(
            "%s pipeline run %s failed in %s: %s",
            self.name,
            context.run_id,
            failed_stage or context.state,
            exc,
        )
        context.state = "failed"
        self._runs.update(
            context.run_id,
            state="failed",
            failed_stage=failed_stage,
            error_type=type(exc).__name__,
            error_message=str(exc) or type(exc).__name__,
            completed_at=self._clock.now(),
        )

    def _fetch(self, run_id: int) -> PipelineRun:
        run = self._runs.fetch(run_id)
        if run is None:
            raise KeyError(run_id)
        return run


class StagingPipeline(PipelineStateMachine):
    """Push-triggered: build the pushed revision and update green in place."""

    name = "staging"
    accepted_triggers = frozenset({"push"})

    def __init__(
        self,
        *,
        topology: Topology,
        source: SourceRepository,
        builder: BuildCollaborator,
        compute: ComputePlatform,
        renderer: DescriptorRenderer,
        environment_repo: EnvironmentStateRepository,
        branch: str,
        build_timeout_seconds: float,
        run_repo: PipelineRunRepository,
        clock: Clock,
        logger: Logger,
    ):
        super().__init__(run_repo=run_repo, clock=clock, logger=logger)
        self._topology = topology
        self._source = source
        self._builder = builder
        self._compute = compute
        self._renderer = renderer
        self._environments = environment_repo
        self._branch = branch
        self._build_timeout = build_timeout_seconds

    def _validate_trigger(self, trigger: TriggerType, revision: Optional[str]) -> None:
        super()._validate_trigger(trigger, revision)
        if not revision:
            raise ConfigurationError("Staging runs require the pushed revision")

    async def _run_stages(self, context: _RunContext) -> None:
        self._advance(context, "sourcing")
        source: SourceRevision = await self._guarded(
            context, self._source.resolve(branch=self._branch, revision=context.revision)
        )
        try:
            artifact = artifact_for_revision(self._topology.artifact_repository, source.revision)
        except ValueError as exc:
            raise BuildError(str(exc)) from exc
        self._runs.update(context.run_id, revision=source.revision, image_tag=artifact.tag)

        self._advance(context, "building")
        descriptors = await self._guarded(context, self._build(artifact, source.revision))

        self._advance(context, "deploying")
        if context.abort.is_set():
            raise DeploymentAbortedError(f"Run {context.run_id} aborted before deploying")
        green = self._topology.green
        await self._compute.update_in_place(
            environment=green, target_group=STAGING_TARGET_GROUP, descriptors=descriptors
        )
        self._environments.record(
            EnvironmentState(
                environment=green.name,
                image=descriptors.image,
                image_tag=descriptors.image_tag,
                revision=descriptors.revision,
                target_group=STAGING_TARGET_GROUP,
                deployed_at=self._clock.now(),
                run_id=context.run_id,
            )
        )
        # The in-place update cannot be interrupted; an abort still fails the run.
        if context.abort.is_set():
            raise DeploymentAbortedError(f"Run {context.run_id} aborted during deploying")

    async def _build(self, artifact: ArtifactReference, revision: str) -> DeploymentDescriptors:
        try:
            result = await asyncio.wait_for(
                self._builder.build(revision=revision, artifact=artifact),
                timeout=self._build_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise BuildError(
                f"Build of {artifact.image} timed out after {self._build_timeout:g}s"
            ) from exc
        if not result.success:
            raise BuildError(result.message or f"Build of {artifact.image} failed")
        if result.tag != artifact.tag:
            raise BuildError(f"Build produced tag {result.tag}, expected {artifact.tag}")
        return self._renderer.render(
            environment=self._topology.green, artifact=artifact, revision=revision
        )


class ProductionPipeline(PipelineStateMachine):
    """Manually started: ship the promoted tag to blue through a traffic shift."""

    name = "production"
    accepted_triggers = frozenset({"manual"})

    def __init__(
        self,
        *,
        topology: Topology,
        source: SourceRepository,
        artifacts: ArtifactStore,
        promotions: PromotionStore,
        controller: TrafficShiftController,
        renderer: DescriptorRenderer,
        branch: str,
        run_repo: PipelineRunRepository,
        clock: Clock,
        logger: Logger,
    ):
        super().__init__(run_repo=run_repo, clock=clock, logger=logger)
        self._topology = topology
        self._source = source
        self._artifacts = artifacts
        self._promotions = promotions
        self._controller = controller
        self._renderer = renderer
        self._branch = branch

    async def _run_stages(self, context: _RunContext) -> None:
        self._advance(context, "sourcing")
        # Only the descriptors come from source; the image comes from the promotion record.
        source: SourceRevision = await self._guarded(
            context, self._source.resolve(branch=self._branch)
        )
        self._runs.update(context.run_id, revision=source.revision)

        self._advance(context, "building")
        artifact = self._snapshot_promotion(context)
        await self._guarded(context, self._artifacts.pull(artifact))
        descriptors = self._renderer.render(
            environment=self._topology.blue, artifact=artifact, revision=source.revision
        )

        self._advance(context, "deploying")
        await self._controller.shift(
            group=self._topology.deployment_group,
            environment=self._topology.blue,
            descriptors=descriptors,
            run_id=context.run_id,
            abort=context.abort,
        )

    def _snapshot_promotion(self, context: _RunContext) -> ArtifactReference:
        record = self._promotions.get(PROMOTION_RECORD_NAME)
        if record is None or not record.value:
            raise ArtifactNotFoundError("No image tag has been promoted yet")
        try:
            tag = validate_tag(record.value)
        except ValueError as exc:
            raise ArtifactNotFoundError(str(exc)) from exc
        self._runs.update(context.run_id, image_tag=tag, promotion_version=record.version)
        self._logger.info(
            "production run %s snapshotted promotion %s (version %s)",
            context.run_id,
            tag,
            record.version,
        )
        return ArtifactReference(repository=self._topology.artifact_repository, tag=tag)
