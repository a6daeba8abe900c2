"""ORM models for the prompt tree and conversation threads."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .types import GUID


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    """Provides created_at and updated_at columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class Prompt(TimestampMixin, Base):
    """A node of a prompt family. Only the parent link matters to runs."""

    __tablename__ = "prompts"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=GUID.new)
    parent_id: Mapped[str | None] = mapped_column(
        GUID(), ForeignKey("prompts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")


class Thread(TimestampMixin, Base):
    """A conversation thread shared by every prompt of one family."""

    __tablename__ = "threads"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=GUID.new)
    root_prompt_id: Mapped[str] = mapped_column(GUID(), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_threads_family", "root_prompt_id", "owner_id"),
        # At most one active thread per family and owner
        Index(
            "uq_threads_one_active",
            "root_prompt_id",
            "owner_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )
