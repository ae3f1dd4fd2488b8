from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base

VISIBILITY_PRIVATE = "private"
VISIBILITY_PUBLIC = "public"

# Status written at creation, before the provider has reported anything.
STATUS_WAITING = "waiting"


class Video(Base):
    __tablename__ = "videos"
    __table_args__ = (
        CheckConstraint("visibility IN ('private', 'public')", name="visibility"),
        CheckConstraint("duration >= 0", name="duration_non_negative"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    owner_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    category_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    visibility: Mapped[str] = mapped_column(String(16), nullable=False, default=VISIBILITY_PRIVATE)

    # Mux identifiers. The upload id is the correlation key for most webhook events;
    # the asset id is the key for track events.
    mux_upload_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    mux_asset_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    mux_playback_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    mux_track_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    # Free-form strings mirroring the provider (e.g. "preparing", "ready", "errored").
    mux_status: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    mux_track_status: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Milliseconds.
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    thumbnail_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    preview_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    preview_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Bumped by every write; mirrored-field writes compare-and-swap on it.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
