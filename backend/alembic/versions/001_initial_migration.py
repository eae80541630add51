"""Initial migration: create event, queueentry, reorderaudit tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create event table
    op.create_table(
        "event",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("venue", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="Live"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # Create queue entry table
    op.create_table(
        "queueentry",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("requestor_user_name", sa.String(), nullable=False),
        sa.Column("song_title", sa.String(), nullable=False, server_default=""),
        sa.Column("song_artist", sa.String(), nullable=False, server_default=""),
        sa.Column("is_mature", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="Live"),
        sa.Column("sung_at", sa.DateTime(), nullable=True),
        sa.Column("was_skipped", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["event_id"],
            ["event.id"],
        ),
    )
    op.create_index("ix_queueentry_event_id", "queueentry", ["event_id"])

    # Create reorder audit table
    op.create_table(
        "reorderaudit",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("plan_id", sa.String(length=32), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("user_name", sa.String(), nullable=True),
        sa.Column("mature_policy", sa.String(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["event_id"],
            ["event.id"],
        ),
    )
    op.create_index("ix_reorderaudit_event_id", "reorderaudit", ["event_id"])
    op.create_index("ix_reorderaudit_plan_id", "reorderaudit", ["plan_id"])


def downgrade() -> None:
    op.drop_index("ix_reorderaudit_plan_id", table_name="reorderaudit")
    op.drop_index("ix_reorderaudit_event_id", table_name="reorderaudit")
    op.drop_table("reorderaudit")
    op.drop_index("ix_queueentry_event_id", table_name="queueentry")
    op.drop_table("queueentry")
    op.drop_table("event")
