"""Waitlist slots, entries and tokens

Revision ID: 001
Revises:
Create Date: (run alembic upgrade head)

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "waitlist_slots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("slot_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("slot_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("check_interval_minutes", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("last_check_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_check_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("label", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_waitlist_slots_owner_id", "waitlist_slots", ["owner_id"])
    op.create_index("ix_waitlist_slots_status", "waitlist_slots", ["status"])
    op.create_index("ix_waitlist_slots_owner_start", "waitlist_slots", ["owner_id", "slot_start"])

    op.create_table(
        "waitlist_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "slot_id",
            sa.Integer(),
            sa.ForeignKey("waitlist_slots.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("first_name", sa.String(128), nullable=False, server_default="Client"),
        sa.Column("last_name", sa.String(128), nullable=False, server_default=""),
        sa.Column("phone", sa.String(32), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("requested_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "alternative_times",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("party_size", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(32), nullable=False, server_default="voice_agent"),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("response_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("message_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("slot_id", "priority", name="uq_waitlist_entry_slot_priority"),
    )
    op.create_index("ix_waitlist_entries_slot_id", "waitlist_entries", ["slot_id"])
    op.create_index("ix_waitlist_entries_owner_id", "waitlist_entries", ["owner_id"])
    op.create_index("ix_waitlist_entries_status", "waitlist_entries", ["status"])

    op.create_table(
        "waitlist_tokens",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "entry_id",
            sa.Integer(),
            sa.ForeignKey("waitlist_entries.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("token_hash", sa.String(64), nullable=False),
        sa.Column("purpose", sa.String(16), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_waitlist_tokens_entry_id", "waitlist_tokens", ["entry_id"])
    op.create_index("ix_waitlist_tokens_token_hash", "waitlist_tokens", ["token_hash"], unique=True)
    op.create_index("ix_waitlist_tokens_expires_at", "waitlist_tokens", ["expires_at"])


def downgrade() -> None:
    op.drop_table("waitlist_tokens")
    op.drop_table("waitlist_entries")
    op.drop_table("waitlist_slots")
