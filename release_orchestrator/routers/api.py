"""JSON API endpoints."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from ..application.ports import PipelineRunRepository
from ..application.services.environment_service import EnvironmentService
from ..application.services.pipelines import PipelineStateMachine
from ..application.services.promotion_service import PromotionService
from ..config import Settings
from ..errors import (
    ConcurrencyConflictError,
    ConfigurationError,
    InvalidTransitionError,
    ReleaseError,
)
from ..github import parse_push_event, verify_signature
from ..models import PipelineName, PipelineRun, PromotionRecord, PromotionRequest, RoutingRequest
from ..routing import ListenerConfig, RoutingDecision

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["api"])


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_pipelines(request: Request) -> dict[str, PipelineStateMachine]:
    return request.app.state.pipelines


def get_run_repository(request: Request) -> PipelineRunRepository:
    return request.app.state.run_repository


def get_promotion_service(request: Request) -> PromotionService:
    return request.app.state.promotion_service


def get_environment_service(request: Request) -> EnvironmentService:
    return request.app.state.environment_service


def _http_error(exc: ReleaseError) -> HTTPException:
    if isinstance(exc, (ConcurrencyConflictError, InvalidTransitionError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.post("/webhooks/github", status_code=status.HTTP_202_ACCEPTED)
async def github_webhook(
    request: Request,
    x_github_event: Optional[str] = Header(default=None),
    x_hub_signature_256: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
    pipelines: dict[str, PipelineStateMachine] = Depends(get_pipelines),
) -> dict[str, Any]:
    body = await request.body()
    if not verify_signature(settings.webhook_secret, body, x_hub_signature_256):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
    if x_github_event == "ping":
        return {"status": "pong"}
    if x_github_event not in (None, "push"):
        return {"status": "ignored", "reason": f"event {x_github_event}"}
    try:
        payload = json.loads(body or b"{}")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Malformed JSON payload") from exc

    event = parse_push_event(payload)
    if event is None or event.deleted or not event.revision:
        return {"status": "ignored", "reason": "not a branch push"}
    if event.branch != settings.tracked_branch:
        return {"status": "ignored", "reason": f"branch {event.branch} is not tracked"}

    logger.info("Push to %s at %s received", event.branch, event.revision)
    try:
        run = await pipelines["staging"].trigger(trigger="push", revision=event.revision)
    except ReleaseError as exc:
        raise _http_error(exc) from exc
    return {"status": "triggered", "run": run.model_dump(mode="json")}


@router.get("/promotion", response_model=PromotionRecord)
def get_promotion(
    service: PromotionService = Depends(get_promotion_service),
) -> PromotionRecord:
    return service.current()


@router.put("/promotion", response_model=PromotionRecord)
def put_promotion(
    request_body: PromotionRequest,
    service: PromotionService = Depends(get_promotion_service),
) -> PromotionRecord:
    try:
        return service.promote(request_body.tag, promoted_by=request_body.promoted_by)
    except ReleaseError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/pipelines/production/runs",
    response_model=PipelineRun,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_production(
    pipelines: dict[str, PipelineStateMachine] = Depends(get_pipelines),
) -> PipelineRun:
    try:
        return await pipelines["production"].trigger(trigger="manual")
    except ReleaseError as exc:
        raise _http_error(exc) from exc


@router.get("/pipelines/{pipeline}/runs")
def list_runs(
    pipeline: PipelineName,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    runs: PipelineRunRepository = Depends(get_run_repository),
) -> dict[str, Any]:
    items, total = runs.list(pipeline=pipeline, limit=limit, offset=offset)
    return {
        "runs": [item.model_dump(mode="json") for item in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/runs/{run_id}", response_model=PipelineRun)
def get_run(run_id: int, runs: PipelineRunRepository = Depends(get_run_repository)) -> PipelineRun:
    run = runs.fetch(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.post("/runs/{run_id}/abort", response_model=PipelineRun)
def abort_run(
    run_id: int,
    runs: PipelineRunRepository = Depends(get_run_repository),
    pipelines: dict[str, PipelineStateMachine] = Depends(get_pipelines),
) -> PipelineRun:
    run = runs.fetch(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    try:
        return pipelines[run.pipeline].abort(run_id)
    except ReleaseError as exc:
        raise _http_error(exc) from exc


@router.get("/listeners", response_model=list[ListenerConfig])
def list_listeners(
    service: EnvironmentService = Depends(get_environment_service),
) -> list[ListenerConfig]:
    return service.list_listeners()


@router.get("/listeners/{name}", response_model=ListenerConfig)
def get_listener(
    name: str, service: EnvironmentService = Depends(get_environment_service)
) -> ListenerConfig:
    listener = service.get_listener(name)
    if not listener:
        raise HTTPException(status_code=404, detail="Listener not found")
    return listener


@router.post("/listeners/{name}/evaluate", response_model=RoutingDecision)
def evaluate_listener(
    name: str,
    request_body: RoutingRequest,
    service: EnvironmentService = Depends(get_environment_service),
) -> RoutingDecision:
    decision = service.evaluate(name, request_body)
    if not decision:
        raise HTTPException(status_code=404, detail="Listener not found")
    return decision


@router.get("/environments")
def list_environments(
    service: EnvironmentService = Depends(get_environment_service),
) -> dict[str, Any]:
    states = service.get_all_environments()
    return {
        "live_target_group": service.live_target_group(),
        "environments": {env: state.model_dump(mode="json") for env, state in states.items()},
    }


@router.get("/shifts")
def list_shifts(
    environment: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    service: EnvironmentService = Depends(get_environment_service),
) -> dict[str, Any]:
    shifts = service.list_shifts(environment=environment, limit=limit)
    return {"shifts": [shift.model_dump(mode="json") for shift in shifts]}


@router.get("/task-sets")
async def list_task_sets(
    service: EnvironmentService = Depends(get_environment_service),
) -> dict[str, Any]:
    task_sets = await service.list_task_sets()
    return {"task_sets": [item.model_dump(mode="json") for item in task_sets]}
