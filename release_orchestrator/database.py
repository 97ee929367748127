"""SQLite database helpers for the Release Orchestrator service."""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

from .migrations import upgrade_database
from .models import (
    EnvironmentState,
    PipelineRun,
    PromotionRecord,
    TrafficShift,
)
from .routing import ListenerConfig


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(dt: datetime) -> str:
    utc_dt = dt.astimezone(timezone.utc)
    return utc_dt.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")


def _from_iso(value: str | None) -> Optional[datetime]:
    if value is None:
        return None
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


_RUN_COLUMNS = {
    "state",
    "revision",
    "image_tag",
    "promotion_version",
    "failed_stage",
    "error_type",
    "error_message",
    "completed_at",
}
_SHIFT_COLUMNS = {
    "state",
    "transitions",
    "from_target_group",
    "to_target_group",
    "error_message",
    "completed_at",
}
_TERMINAL_RUN_SQL = "('succeeded', 'failed')"
_TERMINAL_SHIFT_SQL = "('settled', 'rolled_back')"


def _encode(column: str, value: Any) -> Any:
    if isinstance(value, datetime):
        return _to_iso(value)
    if column == "transitions":
        return json.dumps(list(value))
    return value


class Database:
    """Lightweight wrapper around sqlite3 providing convenience helpers."""

    def __init__(self, path: Path):
        self.path = path
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def initialize_schema(self) -> None:
        """Ensure database schema is created using Alembic migrations."""
        with self._lock:
            # Commit any pending work before running Alembic migrations.
            self._conn.commit()
        upgrade_database(self.path)

    def _execute(self, query: str, params: Sequence | None = None) -> sqlite3.Cursor:
        with self._lock:
            cursor = self._conn.execute(query, params or [])
            self._conn.commit()
        return cursor

    def _query(self, query: str, params: Sequence | None = None) -> list[sqlite3.Row]:
        with self._lock:
            cursor = self._conn.execute(query, params or [])
            rows = cursor.fetchall()
        return rows

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except Exception:
                self._conn.rollback()
                raise
            self._conn.commit()

    # Promotion records -------------------------------------------------

    def ensure_promotion_record(self, name: str) -> None:
        """Create the named record empty if it does not exist yet."""
        self._execute(
            "INSERT OR IGNORE INTO promotion_records (name, value, version) VALUES (?, NULL, 0)",
            (name,),
        )

    def get_promotion_record(self, name: str) -> Optional[PromotionRecord]:
        rows = self._query("SELECT * FROM promotion_records WHERE name = ?", (name,))
        if not rows:
            return None
        return self._promotion_from_row(rows[0])

    def put_promotion_record(
        self,
        name: str,
        *,
        value: str,
        updated_by: str,
        updated_at: datetime | None = None,
    ) -> PromotionRecord:
        """Overwrite the record's value and bump its version."""
        updated_at = updated_at or _utcnow()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO promotion_records (name, value, version, updated_at, updated_by)
                VALUES (?, ?, 1, ?, ?)
                ON CONFLICT(name)
                DO UPDATE SET
                    value=excluded.value,
                    version=promotion_records.version + 1,
                    updated_at=excluded.updated_at,
                    updated_by=excluded.updated_by
                """,
                (name, value, _to_iso(updated_at), updated_by),
            )
            row = conn.execute(
                "SELECT * FROM promotion_records WHERE name = ?", (name,)
            ).fetchone()
        return self._promotion_from_row(row)

    @staticmethod
    def _promotion_from_row(row: sqlite3.Row) -> PromotionRecord:
        return PromotionRecord(
            name=row["name"],
            value=row["value"],
            version=row["version"],
            updated_at=_from_iso(row["updated_at"]),
            updated_by=row["updated_by"],
        )

    # Pipeline runs -----------------------------------------------------

    def create_run(
        self,
        *,
        pipeline: str,
        trigger: str,
        revision: Optional[str],
        started_at: datetime | None = None,
    ) -> int:
        started_at = started_at or _utcnow()
        cursor = self._execute(
            """
            INSERT INTO pipeline_runs (pipeline, trigger_type, state, revision, started_at)
            VALUES (?, ?, 'pending', ?, ?)
            """,
            (pipeline, trigger, revision, _to_iso(started_at)),
        )
        last_row_id = cursor.lastrowid
        return int(last_row_id) if last_row_id is not None else -1

    def update_run(self, run_id: int, **fields: Any) -> None:
        unknown = set(fields) - _RUN_COLUMNS
        if unknown:
            raise ValueError(f"Unknown pipeline run columns: {', '.join(sorted(unknown))}")
        if not fields:
            return
        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = [_encode(column, value) for column, value in fields.items()]
        self._execute(f"UPDATE pipeline_runs SET {assignments} WHERE id = ?", (*params, run_id))

    def fetch_run(self, run_id: int) -> Optional[PipelineRun]:
        rows = self._query("SELECT * FROM pipeline_runs WHERE id = ?", (run_id,))
        if not rows:
            return None
        return self._run_from_row(rows[0])

    def list_runs(
        self,
        *,
        pipeline: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[PipelineRun], int]:
        """Return pipeline runs, newest first, with pagination."""
        clauses = []
        params: list[str | int] = []
        if pipeline and pipeline != "all":
            clauses.append("pipeline = ?")
            params.append(pipeline)
        where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        total_rows = self._query(f"SELECT COUNT(*) FROM pipeline_runs {where_clause}", params)
        total = total_rows[0][0] if total_rows else 0
        rows = self._query(
            f"""
            SELECT * FROM pipeline_runs
            {where_clause}
            ORDER BY id DESC
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        )
        return [self._run_from_row(row) for row in rows], total

    def active_run(self, pipeline: str) -> Optional[PipelineRun]:
        rows = self._query(
            f"""
            SELECT * FROM pipeline_runs
            WHERE pipeline = ? AND state NOT IN {_TERMINAL_RUN_SQL}
            ORDER BY id DESC LIMIT 1
            """,
            (pipeline,),
        )
        return self._run_from_row(rows[0]) if rows else None

    def latest_revision(self, pipeline: str) -> Optional[str]:
        """Revision of the most recent run that got past sourcing."""
        rows = self._query(
            """
            SELECT revision FROM pipeline_runs
            WHERE pipeline = ? AND revision IS NOT NULL
            ORDER BY id DESC LIMIT 1
            """,
            (pipeline,),
        )
        return rows[0]["revision"] if rows else None

    def fail_interrupted_runs(self, completed_at: datetime | None = None) -> int:
        completed_at = completed_at or _utcnow()
        cursor = self._execute(
            f"""
            UPDATE pipeline_runs
            SET state = 'failed',
                error_type = 'Interrupted',
                error_message = 'Run interrupted by service restart',
                completed_at = ?
            WHERE state NOT IN {_TERMINAL_RUN_SQL}
            """,
            (_to_iso(completed_at),),
        )
        return cursor.rowcount

    @staticmethod
    def _run_from_row(row: sqlite3.Row) -> PipelineRun:
        return PipelineRun(
            id=row["id"],
            pipeline=row["pipeline"],
            trigger=row["trigger_type"],
            state=row["state"],
            revision=row["revision"],
            image_tag=row["image_tag"],
            promotion_version=row["promotion_version"],
            failed_stage=row["failed_stage"],
            error_type=row["error_type"],
            error_message=row["error_message"],
            started_at=_from_iso(row["started_at"]) or _utcnow(),
            completed_at=_from_iso(row["completed_at"]),
        )

    # Listeners ---------------------------------------------------------

    def insert_listener_if_missing(self, config: ListenerConfig) -> bool:
        cursor = self._execute(
            """
            INSERT OR IGNORE INTO listeners (name, environment, config, version, updated_at)
            VALUES (?, ?, ?, 1, ?)
            """,
            (config.name, config.environment, config.model_dump_json(), _to_iso(_utcnow())),
        )
        return cursor.rowcount > 0

    def save_listener(self, config: ListenerConfig) -> None:
        self._execute(
            """
            INSERT INTO listeners (name, environment, config, version, updated_at)
            VALUES (?, ?, ?, 1, ?)
            ON CONFLICT(name)
            DO UPDATE SET
                config=excluded.config,
                version=listeners.version + 1,
                updated_at=excluded.updated_at
            """,
            (config.name, config.environment, config.model_dump_json(), _to_iso(_utcnow())),
        )

    def get_listener(self, name: str) -> Optional[ListenerConfig]:
        rows = self._query("SELECT config FROM listeners WHERE name = ?", (name,))
        if not rows:
            return None
        return ListenerConfig.model_validate_json(rows[0]["config"])

    def list_listeners(self) -> list[ListenerConfig]:
        rows = self._query("SELECT config FROM listeners ORDER BY name")
        return [ListenerConfig.model_validate_json(row["config"]) for row in rows]

    def repoint_listener_default(self, name: str, *, expected: str, target: str) -> bool:
        """Swap the default forward target only if it still points at ``expected``."""
        with self._transaction() as conn:
            row = conn.execute("SELECT config FROM listeners WHERE name = ?", (name,)).fetchone()
            if row is None:
                return False
            config = ListenerConfig.model_validate_json(row["config"])
            if config.default_target_group != expected:
                return False
            updated = config.with_default_target(target)
            conn.execute(
                """
                UPDATE listeners
                SET config = ?, version = version + 1, updated_at = ?
                WHERE name = ?
                """,
                (updated.model_dump_json(), _to_iso(_utcnow()), name),
            )
        return True

    # Traffic shifts ----------------------------------------------------

    def create_shift(
        self,
        *,
        environment: str,
        deployment_group: str,
        run_id: Optional[int],
        from_target_group: str,
        to_target_group: str,
        image: str,
        started_at: datetime | None = None,
    ) -> int:
        started_at = started_at or _utcnow()
        cursor = self._execute(
            """
            INSERT INTO traffic_shifts (
                environment, deployment_group, run_id, state, transitions,
                from_target_group, to_target_group, image, started_at
            )
            VALUES (?, ?, ?, 'idle', ?, ?, ?, ?, ?)
            """,
            (
                environment,
                deployment_group,
                run_id,
                json.dumps(["idle"]),
                from_target_group,
                to_target_group,
                image,
                _to_iso(started_at),
            ),
        )
        last_row_id = cursor.lastrowid
        return int(last_row_id) if last_row_id is not None else -1

    def update_shift(self, shift_id: int, **fields: Any) -> None:
        unknown = set(fields) - _SHIFT_COLUMNS
        if unknown:
            raise ValueError(f"Unknown traffic shift columns: {', '.join(sorted(unknown))}")
        if not fields:
            return
        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = [_encode(column, value) for column, value in fields.items()]
        self._execute(f"UPDATE traffic_shifts SET {assignments} WHERE id = ?", (*params, shift_id))

    def fetch_shift(self, shift_id: int) -> Optional[TrafficShift]:
        rows = self._query("SELECT * FROM traffic_shifts WHERE id = ?", (shift_id,))
        return self._shift_from_row(rows[0]) if rows else None

    def list_shifts(self, *, environment: Optional[str] = None, limit: int = 50) -> list[TrafficShift]:
        query = "SELECT * FROM traffic_shifts"
        params: list[str | int] = []
        if environment:
            query += " WHERE environment = ?"
            params.append(environment)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        return [self._shift_from_row(row) for row in self._query(query, params)]

    def active_shift(self, environment: str) -> Optional[TrafficShift]:
        rows = self._query(
            f"""
            SELECT * FROM traffic_shifts
            WHERE environment = ? AND state NOT IN {_TERMINAL_SHIFT_SQL}
            ORDER BY id DESC LIMIT 1
            """,
            (environment,),
        )
        return self._shift_from_row(rows[0]) if rows else None

    def fail_interrupted_shifts(self, completed_at: datetime | None = None) -> int:
        completed_at = completed_at or _utcnow()
        cursor = self._execute(
            f"""
            UPDATE traffic_shifts
            SET state = 'rolled_back',
                error_message = 'Shift interrupted by service restart',
                completed_at = ?
            WHERE state NOT IN {_TERMINAL_SHIFT_SQL}
            """,
            (_to_iso(completed_at),),
        )
        return cursor.rowcount

    @staticmethod
    def _shift_from_row(row: sqlite3.Row) -> TrafficShift:
        return TrafficShift(
            id=row["id"],
            environment=row["environment"],
            deployment_group=row["deployment_group"],
            run_id=row["run_id"],
            state=row["state"],
            transitions=json.loads(row["transitions"] or "[]"),
            from_target_group=row["from_target_group"],
            to_target_group=row["to_target_group"],
            image=row["image"],
            error_message=row["error_message"],
            started_at=_from_iso(row["started_at"]) or _utcnow(),
            completed_at=_from_iso(row["completed_at"]),
        )

    # Environment state -------------------------------------------------

    def insert_environment_state_if_missing(self, state: EnvironmentState) -> None:
        self._execute(
            """
            INSERT OR IGNORE INTO environment_state (
                environment, image, image_tag, revision, target_group, deployed_at, run_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            self._environment_params(state),
        )

    def upsert_environment_state(self, state: EnvironmentState) -> None:
        self._execute(
            """
            INSERT INTO environment_state (
                environment, image, image_tag, revision, target_group, deployed_at, run_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(environment)
            DO UPDATE SET
                image=excluded.image,
                image_tag=excluded.image_tag,
                revision=excluded.revision,
                target_group=excluded.target_group,
                deployed_at=excluded.deployed_at,
                run_id=excluded.run_id
            """,
            self._environment_params(state),
        )

    def get_environment_state(self, environment: str) -> Optional[EnvironmentState]:
        rows = self._query("SELECT * FROM environment_state WHERE environment = ?", (environment,))
        return self._environment_from_row(rows[0]) if rows else None

    def list_environment_states(self) -> dict[str, EnvironmentState]:
        rows = self._query("SELECT * FROM environment_state ORDER BY environment")
        return {row["environment"]: self._environment_from_row(row) for row in rows}

    @staticmethod
    def _environment_params(state: EnvironmentState) -> tuple:
        return (
            state.environment,
            state.image,
            state.image_tag,
            state.revision,
            state.target_group,
            _to_iso(state.deployed_at),
            state.run_id,
        )

    @staticmethod
    def _environment_from_row(row: sqlite3.Row) -> EnvironmentState:
        return EnvironmentState(
            environment=row["environment"],
            image=row["image"],
            image_tag=row["image_tag"],
            revision=row["revision"],
            target_group=row["target_group"],
            deployed_at=_from_iso(row["deployed_at"]) or _utcnow(),
            run_id=row["run_id"],
        )
