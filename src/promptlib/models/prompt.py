from __future__ import annotations

import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from promptlib.models.base import Base


class PromptRow(Base):
    """One prompt record.

    The indexed columns mirror fields of the pydantic record so listing and
    slug lookups stay in SQL; ``data`` holds the full serialized record.
    """

    __tablename__ = "prompts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    owner: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[str] = mapped_column(String(40), nullable=False)
    updated_at: Mapped[str] = mapped_column(String(40), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    renders: Mapped[list[RenderCacheEntry]] = relationship(
        "RenderCacheEntry",
        back_populates="prompt",
        cascade="all, delete-orphan",
        order_by="RenderCacheEntry.version",
    )

    def __repr__(self) -> str:
        return f"<PromptRow(slug={self.slug!r}, v={self.version})>"


class RenderCacheEntry(Base):
    __tablename__ = "render_cache"
    __table_args__ = (UniqueConstraint("prompt_id", "provider", "version"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    prompt_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("prompts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    content_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    prompt: Mapped[PromptRow] = relationship("PromptRow", back_populates="renders")

    def __repr__(self) -> str:
        return f"<RenderCacheEntry({self.content_ref!r})>"
