"""call history and channel cache

Revision ID: 0001_call_history_and_channels
Revises:
Create Date: 2026-03-02

"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "0001_call_history_and_channels"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "call_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("call_id", sa.String(length=64), nullable=False),
        sa.Column("channel_id", sa.String(length=64), nullable=False),
        sa.Column("caller_id", sa.String(length=64), nullable=True),
        sa.Column("caller_name", sa.String(length=255), nullable=True),
        sa.Column("call_type", sa.String(length=16), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("ended_at", sa.DateTime(), nullable=True),
        sa.Column("is_emergency", sa.Boolean(), nullable=False),
        sa.Column("participants_count", sa.Integer(), nullable=False),
        sa.Column("is_successful", sa.Boolean(), nullable=False),
        sa.Column("end_reason", sa.String(length=32), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_call_records_call_id", "call_records", ["call_id"], unique=True)
    op.create_index("ix_call_records_channel_id", "call_records", ["channel_id"], unique=False)
    op.create_index("ix_call_records_started_at", "call_records", ["started_at"], unique=False)

    op.create_table(
        "channels",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("facility_id", sa.String(length=64), nullable=True),
        sa.Column("is_emergency", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("allow_ptt", sa.Boolean(), nullable=False),
        sa.Column("allow_voip", sa.Boolean(), nullable=False),
        sa.Column("max_participants", sa.Integer(), nullable=True),
        sa.Column("refreshed_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_channels_facility_id", "channels", ["facility_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_channels_facility_id", table_name="channels")
    op.drop_table("channels")

    op.drop_index("ix_call_records_started_at", table_name="call_records")
    op.drop_index("ix_call_records_channel_id", table_name="call_records")
    op.drop_index("ix_call_records_call_id", table_name="call_records")
    op.drop_table("call_records")
