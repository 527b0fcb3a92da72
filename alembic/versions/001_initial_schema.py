"""Initial schema: users, delivery records, message queue, job runs

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False),
        sa.Column("birthday", sa.Date(), nullable=False),
        sa.Column("birthday_md", sa.String(5), nullable=False),
        sa.Column("location", sa.String(64), nullable=False),
        sa.Column("last_greeting_sent_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_birthday_md", "users", ["birthday_md"])

    op.create_table(
        "delivery_records",
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("occurrence_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_index("ix_delivery_records_user_id", "delivery_records", ["user_id"])
    op.create_index("ix_delivery_records_occurrence_date", "delivery_records", ["occurrence_date"])
    op.create_index("ix_delivery_records_status", "delivery_records", ["status"])
    op.create_index("ix_delivery_records_expires_at", "delivery_records", ["expires_at"])

    op.create_table(
        "queued_messages",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("queue", sa.String(16), nullable=False),
        sa.Column("body", sa.JSON(), nullable=False),
        sa.Column("receipt_handle", sa.String(36), nullable=True),
        sa.Column("receive_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("visible_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_queued_messages_queue", "queued_messages", ["queue"])
    op.create_index("ix_queued_messages_receipt_handle", "queued_messages", ["receipt_handle"])
    op.create_index("ix_queued_messages_visible_at", "queued_messages", ["visible_at"])

    op.create_table(
        "job_runs",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("job_id", sa.String(100), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("finished_at", sa.DateTime(), nullable=False),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_runs_job_id", "job_runs", ["job_id"])


def downgrade() -> None:
    op.drop_index("ix_job_runs_job_id", table_name="job_runs")
    op.drop_table("job_runs")

    op.drop_index("ix_queued_messages_visible_at", table_name="queued_messages")
    op.drop_index("ix_queued_messages_receipt_handle", table_name="queued_messages")
    op.drop_index("ix_queued_messages_queue", table_name="queued_messages")
    op.drop_table("queued_messages")

    op.drop_index("ix_delivery_records_expires_at", table_name="delivery_records")
    op.drop_index("ix_delivery_records_status", table_name="delivery_records")
    op.drop_index("ix_delivery_records_occurrence_date", table_name="delivery_records")
    op.drop_index("ix_delivery_records_user_id", table_name="delivery_records")
    op.drop_table("delivery_records")

    op.drop_index("ix_users_birthday_md", table_name="users")
    op.drop_table("users")
