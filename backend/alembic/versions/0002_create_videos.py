"""Create videos table

Revision ID: 0002_create_videos
Revises: 0001_users_categories
Create Date: 2026-10-01

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0002_create_videos"
down_revision = "0001_users_categories"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "videos",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("category_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("visibility", sa.String(length=16), nullable=False, server_default="private"),
        sa.Column("mux_upload_id", sa.String(length=255), nullable=True),
        sa.Column("mux_asset_id", sa.String(length=255), nullable=True),
        sa.Column("mux_playback_id", sa.String(length=255), nullable=True),
        sa.Column("mux_track_id", sa.String(length=255), nullable=True),
        sa.Column("mux_status", sa.String(length=64), nullable=True),
        sa.Column("mux_track_status", sa.String(length=64), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("thumbnail_key", sa.String(length=1024), nullable=True),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("preview_key", sa.String(length=1024), nullable=True),
        sa.Column("preview_url", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
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
        sa.PrimaryKeyConstraint("id", name="pk_videos"),
        sa.ForeignKeyConstraint(
            ["owner_id"], ["users.id"], name="fk_videos_owner_id_users", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["category_id"], ["categories.id"], name="fk_videos_category_id_categories", ondelete="SET NULL"
        ),
        sa.UniqueConstraint("mux_upload_id", name="uq_videos_mux_upload_id"),
        sa.UniqueConstraint("mux_asset_id", name="uq_videos_mux_asset_id"),
        sa.UniqueConstraint("mux_playback_id", name="uq_videos_mux_playback_id"),
        sa.UniqueConstraint("mux_track_id", name="uq_videos_mux_track_id"),
        sa.CheckConstraint("visibility IN ('private', 'public')", name="ck_videos_visibility"),
        sa.CheckConstraint("duration >= 0", name="ck_videos_duration_non_negative"),
    )
    op.create_index("ix_videos_owner_id", "videos", ["owner_id"], unique=False)
    op.create_index("ix_videos_category_id", "videos", ["category_id"], unique=False)
    op.create_index("ix_videos_mux_status", "videos", ["mux_status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_videos_mux_status", table_name="videos")
    op.drop_index("ix_videos_category_id", table_name="videos")
    op.drop_index("ix_videos_owner_id", table_name="videos")
    op.drop_table("videos")
