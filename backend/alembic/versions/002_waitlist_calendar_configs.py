"""Per-owner calendar connection for the availability probe

Revision ID: 002
Revises: 001
Create Date: (run alembic upgrade head)

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "waitlist_calendar_configs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False, server_default="google_calendar"),
        sa.Column("calendar_id", sa.String(255), nullable=True),
        sa.Column("calendar_name", sa.String(255), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("access_token", sa.Text(), nullable=True),  # Fernet-encrypted
        sa.Column("refresh_token", sa.Text(), nullable=True),  # Fernet-encrypted
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_waitlist_calendar_configs_owner_id", "waitlist_calendar_configs", ["owner_id"], unique=True)


def downgrade() -> None:
    op.drop_table("waitlist_calendar_configs")
