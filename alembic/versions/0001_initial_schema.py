"""initial schema

Revision ID: 0001_initial_schema
Revises: 
Create Date: 2026-10-19

"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "calls",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("state", sa.String(length=32), nullable=False),
        sa.Column("retries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("proposed_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("final_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("user_name", sa.String(length=128), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("contact", sa.String(length=64), nullable=True),
        sa.Column("extra_details", sa.Text(), nullable=True),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("call_sid", sa.String(length=64), nullable=True),
        sa.Column("last_call_status", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_calls_state", "calls", ["state"], unique=False)
    op.create_index("ix_calls_user_id", "calls", ["user_id"], unique=False)
    op.create_index("ix_calls_call_sid", "calls", ["call_sid"], unique=False)

    op.create_table(
        "call_transcript",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("call_id", sa.String(length=64), nullable=False),
        sa.Column("speaker", sa.String(length=32), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attributes", sa.JSON(), nullable=False),
        sa.ForeignKeyConstraint(["call_id"], ["calls.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_call_transcript_call_id", "call_transcript", ["call_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_call_transcript_call_id", table_name="call_transcript")
    op.drop_table("call_transcript")

    op.drop_index("ix_calls_call_sid", table_name="calls")
    op.drop_index("ix_calls_user_id", table_name="calls")
    op.drop_index("ix_calls_state", table_name="calls")
    op.drop_table("calls")
