"""Create events, batches, participants and kv_store tables

Revision ID: 4f2a9c1e7b30
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4f2a9c1e7b30"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=True,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Create the scheduling schema."""
    op.create_table(
        "events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(128), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("arrival_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("practice_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("close_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("capacity_per_batch", sa.Integer(), nullable=False, server_default="21"),
        sa.Column("recurrence", postgresql.JSONB(), nullable=True),
        sa.Column(
            "has_small_batches_with_full_others",
            sa.Boolean(),
            nullable=True,
            server_default=sa.false(),
        ),
        sa.Column("small_batch_numbers", postgresql.JSONB(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_events_start_at", "events", ["start_at"])
    op.create_index("ix_events_created_by", "events", ["created_by"])

    op.create_table(
        "event_batches",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.String(36),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("batch_number", sa.Integer(), nullable=False),
        _timestamp("created_at"),
        sa.UniqueConstraint(
            "event_id", "batch_number", name="uq_event_batches_event_number"
        ),
    )

    op.create_table(
        "batch_participants",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.String(36),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("batch_number", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        _timestamp("joined_at"),
        sa.UniqueConstraint(
            "event_id", "user_id", name="uq_batch_participants_event_user"
        ),
    )
    op.create_index(
        "ix_batch_participants_event_batch",
        "batch_participants",
        ["event_id", "batch_number"],
    )

    op.create_table(
        "kv_store",
        sa.Column("key", sa.String(200), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        _timestamp("updated_at"),
    )


def downgrade() -> None:
    """Drop the scheduling schema."""
    op.drop_table("kv_store")
    op.drop_index("ix_batch_participants_event_batch", table_name="batch_participants")
    op.drop_table("batch_participants")
    op.drop_table("event_batches")
    op.drop_index("ix_events_created_by", table_name="events")
    op.drop_index("ix_events_start_at", table_name="events")
    op.drop_table("events")
