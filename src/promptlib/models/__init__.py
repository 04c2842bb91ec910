"""SQLAlchemy ORM models."""

from promptlib.models.base import Base
from promptlib.models.prompt import PromptRow, RenderCacheEntry
from promptlib.models.rating import Rating, RunLog

__all__ = ["Base", "PromptRow", "Rating", "RenderCacheEntry", "RunLog"]
