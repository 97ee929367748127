"""Database-backed port implementations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from release_orchestrator.application.ports import (
    EnvironmentStateRepository,
    LoadBalancer,
    PipelineRunRepository,
    PromotionStore,
    TrafficShiftRepository,
)
from release_orchestrator.database import Database
from release_orchestrator.models import (
    EnvironmentState,
    PipelineRun,
    PromotionRecord,
    TrafficShift,
)
from release_orchestrator.routing import ListenerConfig


@dataclass(slots=True)
class DatabasePromotionStore(PromotionStore):
    """Promotion hand-off channel backed by SQLite."""

    database: Database

    def ensure(self, name: str) -> None:
        self.database.ensure_promotion_record(name)

    def get(self, name: str) -> Optional[PromotionRecord]:
        return self.database.get_promotion_record(name)

    def put(self, name: str, *, value: str, updated_by: str, updated_at: datetime) -> PromotionRecord:
        return self.database.put_promotion_record(
            name, value=value, updated_by=updated_by, updated_at=updated_at
        )


@dataclass(slots=True)
class DatabaseLoadBalancer(LoadBalancer):
    """Listener configuration persisted as validated JSON documents."""

    database: Database

    def get_listener(self, name: str) -> Optional[ListenerConfig]:
        return self.database.get_listener(name)

    def list_listeners(self) -> list[ListenerConfig]:
        return self.database.list_listeners()

    def register_listener(self, config: ListenerConfig) -> bool:
        return self.database.insert_listener_if_missing(config)

    def save_listener(self, config: ListenerConfig) -> None:
        self.database.save_listener(config)

    def repoint_default(self, name: str, *, expected: str, target: str) -> bool:
        return self.database.repoint_listener_default(name, expected=expected, target=target)


@dataclass(slots=True)
class DatabasePipelineRunRepository(PipelineRunRepository):
    """Pipeline run adapter."""

    database: Database

    def create(
        self, *, pipeline: str, trigger: str, revision: Optional[str], started_at: datetime
    ) -> int:
        return self.database.create_run(
            pipeline=pipeline, trigger=trigger, revision=revision, started_at=started_at
        )

    def update(self, run_id: int, **fields: object) -> None:
        self.database.update_run(run_id, **fields)

    def fetch(self, run_id: int) -> Optional[PipelineRun]:
        return self.database.fetch_run(run_id)

    def active(self, pipeline: str) -> Optional[PipelineRun]:
        return self.database.active_run(pipeline)

    def latest_revision(self, pipeline: str) -> Optional[str]:
        return self.database.latest_revision(pipeline)

    def fail_interrupted(self, completed_at: datetime) -> int:
        return self.database.fail_interrupted_runs(completed_at)

    def list(
        self, *, pipeline: Optional[str], limit: int, offset: int
    ) -> Tuple[list[PipelineRun], int]:
        return self.database.list_runs(pipeline=pipeline, limit=limit, offset=offset)


@dataclass(slots=True)
class DatabaseTrafficShiftRepository(TrafficShiftRepository):
    """Traffic shift adapter."""

    database: Database

    def create(
        self,
        *,
        environment: str,
        deployment_group: str,
        run_id: Optional[int],
        from_target_group: str,
        to_target_group: str,
        image: str,
        started_at: datetime,
    ) -> int:
        return self.database.create_shift(
            environment=environment,
            deployment_group=deployment_group,
            run_id=run_id,
            from_target_group=from_target_group,
            to_target_group=to_target_group,
            image=image,
            started_at=started_at,
        )

    def update(self, shift_id: int, **fields: object) -> None:
        self.database.update_shift(shift_id, **fields)

    def fetch(self, shift_id: int) -> Optional[TrafficShift]:
        return self.database.fetch_shift(shift_id)

    def active(self, environment: str) -> Optional[TrafficShift]:
        return self.database.active_shift(environment)

    def fail_interrupted(self, completed_at: datetime) -> int:
        return self.database.fail_interrupted_shifts(completed_at)

    def list(self, *, environment: Optional[str], limit: int) -> list[TrafficShift]:
        return self.database.list_shifts(environment=environment, limit=limit)


@dataclass(slots=True)
class DatabaseEnvironmentRepository(EnvironmentStateRepository):
    """Environment state persistence backed by SQLite."""

    database: Database

    def get(self, environment: str) -> Optional[EnvironmentState]:
        return self.database.get_environment_state(environment)

    def list(self) -> dict[str, EnvironmentState]:
        return self.database.list_environment_states()

    def seed(self, state: EnvironmentState) -> None:
        self.database.insert_environment_state_if_missing(state)

    def record(self, state: EnvironmentState) -> None:
        self.database.upsert_environment_state(state)
