"""Initial schema with jobs, executions, semaphores, processes and recurring tasks

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

Identifier = sa.BigInteger().with_variant(sa.Integer, "sqlite")


def _id() -> sa.Column:
    return sa.Column("id", Identifier, primary_key=True, autoincrement=True)


def _job_id() -> sa.Column:
    return sa.Column(
        "job_id",
        Identifier,
        sa.ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "jobs",
        _id(),
        sa.Column("queue_name", sa.String(255), nullable=False, server_default="default"),
        sa.Column("job_type", sa.String(255), nullable=False),
        sa.Column("arguments", sa.LargeBinary, nullable=True),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("scheduled_at", sa.DateTime, nullable=True),
        sa.Column("finished_at", sa.DateTime, nullable=True),
        sa.Column("concurrency_key", sa.String(255), nullable=True),
        sa.Column("concurrency_limit", sa.Integer, nullable=True),
        sa.Column("concurrency_duration", sa.Integer, nullable=True),
        sa.Column(
            "concurrency_on_conflict", sa.String(16), nullable=False, server_default="block"
        ),
        _created_at(),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_jobs_job_type", "jobs", ["job_type"])
    op.create_index("ix_jobs_finished_at", "jobs", ["finished_at"])
    op.create_index("ix_jobs_for_filtering", "jobs", ["queue_name", "finished_at"])
    op.create_index("ix_jobs_for_alerting", "jobs", ["scheduled_at", "finished_at"])

    op.create_table(
        "ready_executions",
        _id(),
        _job_id(),
        sa.Column("queue_name", sa.String(255), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        _created_at(),
    )
    op.create_index("ix_ready_executions_poll_all", "ready_executions", ["priority", "job_id"])
    op.create_index(
        "ix_ready_executions_poll_by_queue",
        "ready_executions",
        ["queue_name", "priority", "job_id"],
    )

    op.create_table(
        "claimed_executions",
        _id(),
        _job_id(),
        sa.Column("process_id", sa.BigInteger, nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_claimed_executions_process_id_job_id",
        "claimed_executions",
        ["process_id", "job_id"],
    )

    op.create_table(
        "scheduled_executions",
        _id(),
        _job_id(),
        sa.Column("queue_name", sa.String(255), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("scheduled_at", sa.DateTime, nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_scheduled_executions_dispatch_all",
        "scheduled_executions",
        ["scheduled_at", "priority", "job_id"],
    )

    op.create_table(
        "blocked_executions",
        _id(),
        _job_id(),
        sa.Column("queue_name", sa.String(255), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("concurrency_key", sa.String(255), nullable=False),
        sa.Column("expires_at", sa.DateTime, nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_blocked_executions_for_release",
        "blocked_executions",
        ["concurrency_key", "priority", "job_id"],
    )
    op.create_index(
        "ix_blocked_executions_for_maintenance",
        "blocked_executions",
        ["expires_at", "concurrency_key"],
    )

    op.create_table(
        "failed_executions",
        _id(),
        _job_id(),
        sa.Column("error", sa.JSON, nullable=True),
        _created_at(),
    )

    op.create_table(
        "semaphores",
        _id(),
        sa.Column("key", sa.String(255), nullable=False, unique=True),
        sa.Column("value", sa.Integer, nullable=False, server_default="1"),
        sa.Column("expires_at", sa.DateTime, nullable=False),
        _created_at(),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_semaphores_expires_at", "semaphores", ["expires_at"])
    op.create_index("ix_semaphores_key_value", "semaphores", ["key", "value"])

    op.create_table(
        "processes",
        _id(),
        sa.Column("kind", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("pid", sa.Integer, nullable=False),
        sa.Column("hostname", sa.String(255), nullable=True),
        sa.Column("last_heartbeat_at", sa.DateTime, nullable=False),
        sa.Column(
            "supervisor_id",
            Identifier,
            sa.ForeignKey("processes.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("metadata", sa.JSON, nullable=True),
        _created_at(),
    )
    op.create_index("ix_processes_last_heartbeat_at", "processes", ["last_heartbeat_at"])
    op.create_index("ix_processes_supervisor_id", "processes", ["supervisor_id"])

    op.create_table(
        "recurring_tasks",
        _id(),
        sa.Column("key", sa.String(255), nullable=False, unique=True),
        sa.Column("schedule", sa.String(255), nullable=False),
        sa.Column("job_type", sa.String(255), nullable=False),
        sa.Column("arguments", sa.LargeBinary, nullable=True),
        sa.Column("queue_name", sa.String(255), nullable=True),
        sa.Column("priority", sa.Integer, nullable=True, server_default="0"),
        sa.Column("static", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("description", sa.Text, nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_recurring_tasks_static", "recurring_tasks", ["static"])

    op.create_table(
        "recurring_executions",
        _id(),
        _job_id(),
        sa.Column("task_key", sa.String(255), nullable=False),
        sa.Column("run_at", sa.DateTime, nullable=False),
        _created_at(),
        sa.UniqueConstraint(
            "task_key", "run_at", name="uq_recurring_executions_task_key_run_at"
        ),
    )

    op.create_table(
        "pauses",
        _id(),
        sa.Column("queue_name", sa.String(255), nullable=False, unique=True),
        _created_at(),
    )


def downgrade() -> None:
    op.drop_table("pauses")
    op.drop_table("recurring_executions")
    op.drop_index("ix_recurring_tasks_static", table_name="recurring_tasks")
    op.drop_table("recurring_tasks")
    op.drop_index("ix_processes_supervisor_id", table_name="processes")
    op.drop_index("ix_processes_last_heartbeat_at", table_name="processes")
    op.drop_table("processes")
    op.drop_index("ix_semaphores_key_value", table_name="semaphores")
    op.drop_index("ix_semaphores_expires_at", table_name="semaphores")
    op.drop_table("semaphores")
    op.drop_table("failed_executions")
    op.drop_index("ix_blocked_executions_for_maintenance", table_name="blocked_executions")
    op.drop_index("ix_blocked_executions_for_release", table_name="blocked_executions")
    op.drop_table("blocked_executions")
    op.drop_index("ix_scheduled_executions_dispatch_all", table_name="scheduled_executions")
    op.drop_table("scheduled_executions")
    op.drop_index("ix_claimed_executions_process_id_job_id", table_name="claimed_executions")
    op.drop_table("claimed_executions")
    op.drop_index("ix_ready_executions_poll_by_queue", table_name="ready_executions")
    op.drop_index("ix_ready_executions_poll_all", table_name="ready_executions")
    op.drop_table("ready_executions")
    op.drop_index("ix_jobs_for_alerting", table_name="jobs")
    op.drop_index("ix_jobs_for_filtering", table_name="jobs")
    op.drop_index("ix_jobs_finished_at", table_name="jobs")
    op.drop_index("ix_jobs_job_type", table_name="jobs")
    op.drop_table("jobs")
