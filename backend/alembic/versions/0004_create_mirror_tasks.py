"""Create mirror_tasks table

Revision ID: 0004_mirror_tasks
Revises: 0003_workflow_tables
Create Date: 2026-10-06

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0004_mirror_tasks"
down_revision = "0003_workflow_tables"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "mirror_tasks",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("video_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("source_url", sa.Text(), nullable=False),
        sa.Column("playback_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "next_attempt_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_mirror_tasks"),
        sa.ForeignKeyConstraint(
            ["video_id"], ["videos.id"], name="fk_mirror_tasks_video_id_videos", ondelete="CASCADE"
        ),
    )
    op.create_index("ix_mirror_tasks_video_id", "mirror_tasks", ["video_id"], unique=False)
    op.create_index("ix_mirror_tasks_status", "mirror_tasks", ["status"], unique=False)
    # Claim query: due pending tasks and expired processing leases.
    op.create_index(
        "ix_mirror_tasks_status_next_attempt_at",
        "mirror_tasks",
        ["status", "next_attempt_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_mirror_tasks_status_next_attempt_at", table_name="mirror_tasks")
    op.drop_index("ix_mirror_tasks_status", table_name="mirror_tasks")
    op.drop_index("ix_mirror_tasks_video_id", table_name="mirror_tasks")
    op.drop_table("mirror_tasks")
