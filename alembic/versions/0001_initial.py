"""Initial release orchestration schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "promotion_records",
        sa.Column("name", sa.Text(), primary_key=True),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_by", sa.Text(), nullable=True),
    )

    op.create_table(
        "pipeline_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("pipeline", sa.Text(), nullable=False),
        sa.Column("trigger_type", sa.Text(), nullable=False),
        sa.Column("state", sa.Text(), nullable=False),
        sa.Column("revision", sa.Text(), nullable=True),
        sa.Column("image_tag", sa.Text(), nullable=True),
        sa.Column("promotion_version", sa.Integer(), nullable=True),
        sa.Column("failed_stage", sa.Text(), nullable=True),
        sa.Column("error_type", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_runs_pipeline", "pipeline_runs", ["pipeline"])
    op.create_index("idx_runs_state", "pipeline_runs", ["state"])

    op.create_table(
        "listeners",
        sa.Column("name", sa.Text(), primary_key=True),
        sa.Column("environment", sa.Text(), nullable=False),
        sa.Column("config", sa.Text(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "traffic_shifts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("environment", sa.Text(), nullable=False),
        sa.Column("deployment_group", sa.Text(), nullable=False),
        sa.Column("run_id", sa.Integer(), nullable=True),
        sa.Column("state", sa.Text(), nullable=False),
        sa.Column("transitions", sa.Text(), nullable=False),
        sa.Column("from_target_group", sa.Text(), nullable=False),
        sa.Column("to_target_group", sa.Text(), nullable=False),
        sa.Column("image", sa.Text(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_shifts_env", "traffic_shifts", ["environment"])
    op.create_index("idx_shifts_state", "traffic_shifts", ["state"])

    op.create_table(
        "environment_state",
        sa.Column("environment", sa.Text(), primary_key=True),
        sa.Column("image", sa.Text(), nullable=False),
        sa.Column("image_tag", sa.Text(), nullable=True),
        sa.Column("revision", sa.Text(), nullable=True),
        sa.Column("target_group", sa.Text(), nullable=False),
        sa.Column("deployed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("run_id", sa.Integer(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("environment_state")

    op.drop_index("idx_shifts_state", table_name="traffic_shifts")
    op.drop_index("idx_shifts_env", table_name="traffic_shifts")
    op.drop_table("traffic_shifts")

    op.drop_table("listeners")

    op.drop_index("idx_runs_state", table_name="pipeline_runs")
    op.drop_index("idx_runs_pipeline", table_name="pipeline_runs")
    op.drop_table("pipeline_runs")

    op.drop_table("promotion_records")
