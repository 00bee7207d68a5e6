"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column("created_at", postgresql.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", postgresql.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("phone", sa.Text(), nullable=False, unique=True),
        sa.Column("name", sa.Text()),
        sa.Column("opted_out", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("opted_out_at", postgresql.TIMESTAMP(timezone=True)),
        sa.Column("opted_out_reason", sa.Text()),
        *_timestamps(),
    )
    op.create_table(
        "abandonments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("external_id", sa.Text(), nullable=False, unique=True),
        sa.Column("product_id", sa.Text(), nullable=False),
        sa.Column("product_name", sa.Text()),
        sa.Column("value", sa.Numeric(12, 2), nullable=False),
        sa.Column("payment_link", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("payment_id", sa.Text(), unique=True),
        sa.Column("payment_amount", sa.Numeric(12, 2)),
        sa.Column("converted_at", postgresql.TIMESTAMP(timezone=True)),
        *_timestamps(),
    )
    op.create_table(
        "conversations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "abandonment_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("abandonments.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="awaiting_response"),
        sa.Column("status_reason", sa.Text()),
        sa.Column("cycle_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_message_at", postgresql.TIMESTAMP(timezone=True)),
        sa.Column("last_user_message_at", postgresql.TIMESTAMP(timezone=True)),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('awaiting_response', 'active', 'closed', 'error')",
            name="ck_conversations_status",
        ),
    )
    op.create_table(
        "messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "conversation_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("conversations.id"),
            nullable=False,
            index=True,
        ),
        sa.Column("sender_type", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("message_type", sa.Text(), nullable=False, server_default="text"),
        sa.Column("external_message_id", sa.Text(), unique=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text()),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        *_timestamps(),
    )
    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("queue", sa.Text(), nullable=False),
        sa.Column("dedup_key", sa.Text()),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True)),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="waiting"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("backoff_seconds", sa.Float(), nullable=False, server_default="1"),
        sa.Column("backoff_multiplier", sa.Float(), nullable=False, server_default="2"),
        sa.Column("next_attempt_at", postgresql.TIMESTAMP(timezone=True)),
        sa.Column("last_error", sa.Text()),
        sa.Column("result", postgresql.JSONB()),
        *_timestamps(),
        sa.UniqueConstraint("queue", "dedup_key", name="uq_jobs_queue_dedup_key"),
    )
    op.create_index("ix_jobs_queue_status_next_attempt", "jobs", ["queue", "status", "next_attempt_at"])


def downgrade() -> None:
    op.drop_index("ix_jobs_queue_status_next_attempt", table_name="jobs")
    op.drop_table("jobs")
    op.drop_table("messages")
    op.drop_table("conversations")
    op.drop_table("abandonments")
    op.drop_table("users")
