import asyncio
import logging

import pytest

from conftest import REPOSITORY, build_stack
from release_orchestrator.application.services.pipelines import StagingPipeline
from release_orchestrator.descriptors import DescriptorRenderer
from release_orchestrator.errors import (
    ConcurrencyConflictError,
    ConfigurationError,
    InvalidTransitionError,
)
from release_orchestrator.models import BuildResult, RoutingRequest

REVISION = "abc1234d"


async def wait_for_state(stack, run_id, state, attempts=500):
    for _ in range(attempts):
        run = stack.runs.fetch(run_id)
        if run.state == state:
            return run
        await asyncio.sleep(0.01)
    raise AssertionError(f"run {run_id} never reached {state}")


def staging_with_builder(stack, builder, **overrides):
    options = dict(
        topology=stack.topology,
        source=stack.source,
        builder=builder,
        compute=stack.staging._compute,
        renderer=DescriptorRenderer(family="sample-app"),
        environment_repo=stack.environments,
        branch="main",
        build_timeout_seconds=stack.settings.build_timeout_seconds,
        run_repo=stack.runs,
        clock=stack.clock,
        logger=logging.getLogger(__name__),
    )
    options.update(overrides)
    return StagingPipeline(**options)


class BlockingBuilder:
    def __init__(self):
        self.release = asyncio.Event()
        self.cancelled = False

    async def build(self, *, revision, artifact):
        try:
            await self.release.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return BuildResult(tag=artifact.tag, success=True)


class WrongTagBuilder:
    async def build(self, *, revision, artifact):
        return BuildResult(tag="latest", success=True)


async def run_staging(stack, revision=REVISION):
    stack.source.push("main", revision)
    run = await stack.staging.trigger(trigger="push", revision=revision)
    return await stack.staging.wait(run.id)


@pytest.mark.asyncio
async def test_push_builds_tag_and_updates_green_in_place(stack):
    run = await run_staging(stack)

    assert run.state == "succeeded"
    assert run.trigger == "push"
    assert run.image_tag == "abc1234"
    assert f"{REPOSITORY}:abc1234" in stack.platform.images
    assert stack.platform.services["green"].spec.image == f"{REPOSITORY}:abc1234"
    green = stack.environments.get("green")
    assert (green.image_tag, green.revision, green.run_id) == ("abc1234", REVISION, run.id)

    listener = stack.load_balancer.get_listener("green-http")
    assert listener.evaluate(RoutingRequest(source_ip="9.9.9.9")).status_code == 403
    assert listener.evaluate(RoutingRequest(source_ip="1.2.3.4")).target_group == "green"
    # Staging never touches production.
    assert stack.load_balancer.get_listener("blue-http").default_target_group == "blue-a"
    assert stack.shifts.list(environment="blue", limit=5) == []


@pytest.mark.asyncio
async def test_promoted_tag_reaches_production_through_shift(stack):
    await run_staging(stack)
    record = stack.promotion_service.promote("abc1234", promoted_by="alice")

    run = await stack.production.trigger(trigger="manual")
    run = await stack.production.wait(run.id)

    assert run.state == "succeeded"
    assert run.image_tag == "abc1234"
    assert run.promotion_version == record.version
    assert stack.load_balancer.get_listener("blue-http").default_target_group == "blue-b"
    assert stack.platform.services["blue-b"].spec.image == f"{REPOSITORY}:abc1234"
    shift = stack.shifts.list(environment="blue", limit=1)[0]
    assert shift.state == "settled"
    assert shift.run_id == run.id


@pytest.mark.asyncio
async def test_unhealthy_release_rolls_back_and_fails_run(stack):
    await run_staging(stack)
    stack.promotion_service.promote("abc1234")
    stack.platform.unhealthy_images.add(f"{REPOSITORY}:abc1234")

    run = await stack.production.trigger(trigger="manual")
    run = await stack.production.wait(run.id)

    assert run.state == "failed"
    assert run.failed_stage == "deploying"
    assert run.error_type == "HealthCheckTimeoutError"
    assert stack.load_balancer.get_listener("blue-http").default_target_group == "blue-a"
    assert stack.shifts.list(environment="blue", limit=1)[0].state == "rolled_back"
    assert stack.environments.get("blue").image == "nginx:alpine"


@pytest.mark.asyncio
async def test_production_before_any_promotion_fails_in_building(stack):
    stack.source.push("main", REVISION)

    run = await stack.production.trigger(trigger="manual")
    run = await stack.production.wait(run.id)

    assert run.state == "failed"
    assert run.failed_stage == "building"
    assert run.error_type == "ArtifactNotFoundError"
    assert stack.shifts.list(environment="blue", limit=5) == []


@pytest.mark.asyncio
async def test_promoted_tag_missing_from_store_fails(stack):
    stack.source.push("main", REVISION)
    stack.promotion_service.promote("fffffff")

    run = await stack.production.trigger(trigger="manual")
    run = await stack.production.wait(run.id)

    assert run.error_type == "ArtifactNotFoundError"
    assert run.image_tag == "fffffff"
    assert stack.load_balancer.get_listener("blue-http").default_target_group == "blue-a"


@pytest.mark.asyncio
async def test_production_refuses_push_triggers(stack):
    with pytest.raises(ConfigurationError):
        await stack.production.trigger(trigger="push", revision=REVISION)
    assert stack.runs.list(pipeline="production", limit=5, offset=0)[1] == 0


@pytest.mark.asyncio
async def test_staging_requires_a_revision(stack):
    with pytest.raises(ConfigurationError):
        await stack.staging.trigger(trigger="push")
    with pytest.raises(ConfigurationError):
        await stack.staging.trigger(trigger="manual", revision=REVISION)


@pytest.mark.asyncio
async def test_second_trigger_is_rejected_not_queued(stack):
    builder = BlockingBuilder()
    staging = staging_with_builder(stack, builder)
    first = await staging.trigger(trigger="push", revision=REVISION)

    with pytest.raises(ConcurrencyConflictError):
        await staging.trigger(trigger="push", revision="def5678a")

    builder.release.set()
    finished = await staging.wait(first.id)
    assert finished.state == "succeeded"
    assert stack.runs.list(pipeline="staging", limit=5, offset=0)[1] == 1


@pytest.mark.asyncio
async def test_staging_and_production_run_independently(stack):
    await run_staging(stack)
    stack.promotion_service.promote("abc1234")
    builder = BlockingBuilder()
    staging = staging_with_builder(stack, builder)

    staging_run = await staging.trigger(trigger="push", revision="def5678a")
    production_run = await stack.production.trigger(trigger="manual")
    production_run = await stack.production.wait(production_run.id)
    builder.release.set()
    staging_run = await staging.wait(staging_run.id)

    assert production_run.state == "succeeded"
    assert staging_run.state == "succeeded"


@pytest.mark.asyncio
async def test_abort_cancels_build_and_fails_run(stack):
    builder = BlockingBuilder()
    staging = staging_with_builder(stack, builder)
    run = await staging.trigger(trigger="push", revision=REVISION)
    await wait_for_state(stack, run.id, "building")

    staging.abort(run.id)
    run = await staging.wait(run.id)

    assert run.state == "failed"
    assert run.failed_stage == "building"
    assert run.error_type == "DeploymentAbortedError"
    assert builder.cancelled
    assert "green" not in stack.platform.services
    assert staging.active_run_id is None


@pytest.mark.asyncio
async def test_abort_of_finished_run_is_rejected(stack):
    run = await run_staging(stack)
    with pytest.raises(InvalidTransitionError):
        stack.staging.abort(run.id)


@pytest.mark.asyncio
async def test_abort_during_production_deploy_rolls_back(tmp_path):
    stack = build_stack(tmp_path, health_check_timeout_seconds=10**6)
    await run_staging(stack)
    stack.promotion_service.promote("abc1234")
    stack.platform.unhealthy_images.add(f"{REPOSITORY}:abc1234")

    run = await stack.production.trigger(trigger="manual")
    await wait_for_state(stack, run.id, "deploying")
    stack.production.abort(run.id)
    run = await stack.production.wait(run.id)

    assert run.state == "failed"
    assert run.failed_stage == "deploying"
    assert run.error_type == "DeploymentAbortedError"
    assert stack.load_balancer.get_listener("blue-http").default_target_group == "blue-a"
    assert stack.shifts.list(environment="blue", limit=1)[0].state == "rolled_back"
    stack.database.close()


@pytest.mark.asyncio
async def test_build_failure_fails_without_deploying(stack):
    stack.platform.failing_builds.add(f"{REPOSITORY}:abc1234")

    run = await run_staging(stack)

    assert run.state == "failed"
    assert run.failed_stage == "building"
    assert run.error_type == "BuildError"
    assert "green" not in stack.platform.services
    assert stack.environments.get("green").image == "nginx:alpine"


@pytest.mark.asyncio
async def test_unexpected_build_tag_fails(stack):
    staging = staging_with_builder(stack, WrongTagBuilder())
    run = await staging.trigger(trigger="push", revision=REVISION)
    run = await staging.wait(run.id)

    assert run.error_type == "BuildError"
    assert "expected abc1234" in run.error_message


@pytest.mark.asyncio
async def test_build_timeout_is_a_build_error(stack):
    staging = staging_with_builder(stack, BlockingBuilder(), build_timeout_seconds=0.05)
    run = await staging.trigger(trigger="push", revision=REVISION)
    run = await staging.wait(run.id)

    assert run.error_type == "BuildError"
    assert "timed out" in run.error_message


@pytest.mark.asyncio
async def test_unknown_revision_fails_in_sourcing(stack):
    run = await stack.production.trigger(trigger="manual")
    run = await stack.production.wait(run.id)

    assert run.failed_stage == "sourcing"
    assert run.error_type == "SourceFetchError"


@pytest.mark.asyncio
async def test_promotion_is_locked_while_production_runs(stack):
    await run_staging(stack)
    stack.promotion_service.promote("abc1234")
    stack.platform.unhealthy_images.add(f"{REPOSITORY}:abc1234")

    run = await stack.production.trigger(trigger="manual")
    with pytest.raises(ConcurrencyConflictError):
        stack.promotion_service.promote("def5678")
    run = await stack.production.wait(run.id)

    assert run.image_tag == "abc1234"
    assert stack.promotion_service.current().value == "abc1234"
    assert stack.promotion_service.promote("def5678").version == 2


def test_recover_fails_interrupted_runs(stack):
    run_id = stack.runs.create(
        pipeline="staging", trigger="push", revision=REVISION, started_at=stack.clock.now()
    )
    stack.runs.update(run_id, state="building")

    stack.environment_service.recover()

    run = stack.runs.fetch(run_id)
    assert run.state == "failed"
    assert run.error_type == "Interrupted"
    assert stack.runs.active("staging") is None
