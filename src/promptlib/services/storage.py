"""SQL-backed storage for prompt records and cached renders."""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from promptlib.errors import NotFoundError, ValidationError, VersionConflictError
from promptlib.models.prompt import PromptRow, RenderCacheEntry
from promptlib.models.rating import Rating, RunLog
from promptlib.schemas.prompt import PromptFilters, PromptRecord
from promptlib.schemas.provider import ProviderPayload

logger = logging.getLogger(__name__)

MAX_SLUG_LENGTH = 50


def slugify(title: str) -> str:
    slug = title.lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    slug = slug[:MAX_SLUG_LENGTH].strip("-")
    return slug or "prompt"


def content_ref(prompt_id: str, provider: str, version: int) -> str:
    return f"{prompt_id}_{provider}_v{version}"


class PromptStorage:
    """Persists :class:`PromptRecord` objects through a SQLAlchemy session.

    Methods flush but never commit; the caller owns the transaction.
    """

    def __init__(self, session: Session) -> None:
        self._session = session
        self._cache_hits = 0
        self._cache_misses = 0

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def save_prompt(self, record: PromptRecord, expected_version: int | None = None) -> None:
        """Insert or update ``record``.

        With ``expected_version`` set, the stored row must still carry that
        version or :class:`VersionConflictError` is raised.
        """
        row = self._session.get(PromptRow, record.id)
        if row is not None and expected_version is not None and row.version != expected_version:
            raise VersionConflictError(
                f"Prompt '{record.id}' is at version {row.version}, expected {expected_version}"
            )
        owner = self._session.execute(
            select(PromptRow.id).where(PromptRow.slug == record.slug)
        ).scalar_one_or_none()
        if owner is not None and owner != record.id:
            raise ValidationError(f"Slug '{record.slug}' is already in use")

        if row is None:
            row = PromptRow(id=record.id)
            self._session.add(row)
        row.slug = record.slug
        row.title = record.metadata.title
        row.owner = record.metadata.owner
        row.status = record.status
        row.version = record.version
        row.created_at = record.created_at
        row.updated_at = record.updated_at
        row.data = record.model_dump(mode="json")
        self._session.flush()

    def load_prompt(self, prompt_id: str) -> PromptRecord:
        row = self._session.get(PromptRow, prompt_id)
        if row is None:
            raise NotFoundError(f"Prompt with id '{prompt_id}' not found")
        return PromptRecord.model_validate(row.data)

    def load_prompt_by_slug(self, slug: str) -> PromptRecord:
        row = self._session.execute(
            select(PromptRow).where(PromptRow.slug == slug)
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"Prompt with slug '{slug}' not found")
        return PromptRecord.model_validate(row.data)

    def prompt_exists(self, prompt_id: str) -> bool:
        return self._session.get(PromptRow, prompt_id) is not None

    def slug_exists(self, slug: str) -> bool:
        found = self._session.execute(
            select(PromptRow.id).where(PromptRow.slug == slug)
        ).scalar_one_or_none()
        return found is not None

    def generate_slug(self, title: str) -> str:
        """Slug for ``title`` that no stored prompt uses yet."""
        base = slugify(title)
        slug = base
        counter = 1
        while self.slug_exists(slug):
            slug = f"{base}-{counter}"
            counter += 1
        return slug

    def delete_prompt(self, prompt_id: str) -> None:
        """Delete a prompt together with its cached renders, ratings and run logs."""
        row = self._session.get(PromptRow, prompt_id)
        if row is None:
            raise NotFoundError(f"Prompt with id '{prompt_id}' not found")
        self._session.execute(delete(Rating).where(Rating.prompt_id == prompt_id))
        self._session.execute(delete(RunLog).where(RunLog.prompt_id == prompt_id))
        self._session.delete(row)
        self._session.flush()

    def list_prompts(self, filters: PromptFilters | None = None) -> list[PromptRecord]:
        if filters is not None:
            return self.search_prompts(filters)
        rows = self._session.execute(
            select(PromptRow).order_by(PromptRow.updated_at.desc())
        ).scalars()
        return [PromptRecord.model_validate(row.data) for row in rows]

    def search_prompts(self, filters: PromptFilters) -> list[PromptRecord]:
        """Filter, sort and page stored prompts.

        ``tags`` matches prompts carrying any of the given tags; ``search``
        looks at title, summary and tags case-insensitively.
        """
        stmt = select(PromptRow)
        if filters.owner:
            stmt = stmt.where(PromptRow.owner == filters.owner)
        if filters.status:
            stmt = stmt.where(PromptRow.status.in_(filters.status))
        records = [PromptRecord.model_validate(row.data) for row in self._session.execute(stmt).scalars()]

        if filters.tags:
            wanted = set(filters.tags)
            records = [r for r in records if wanted & set(r.metadata.tags)]
        if filters.min_rating is not None:
            records = [r for r in records if r.average_rating >= filters.min_rating]
        if filters.search:
            term = filters.search.lower()
            records = [
                r for r in records
                if term in r.metadata.title.lower()
                or term in r.metadata.summary.lower()
                or any(term in tag.lower() for tag in r.metadata.tags)
            ]

        sort_keys: dict[str, Any] = {
            "title": lambda r: r.metadata.title.lower(),
            "created_at": lambda r: r.created_at,
            "updated_at": lambda r: r.updated_at,
            "rating": lambda r: r.average_rating,
        }
        records.sort(key=sort_keys[filters.sort_by], reverse=filters.sort_order == "desc")

        if filters.limit is not None:
            start = ((filters.page or 1) - 1) * filters.limit
            records = records[start:start + filters.limit]
        return records

    # ------------------------------------------------------------------
    # Render cache
    # ------------------------------------------------------------------

    def get_cached_render(self, prompt_id: str, provider: str, version: int) -> ProviderPayload | None:
        entry = self._cache_entry(prompt_id, provider, version)
        if entry is None:
            self._cache_misses += 1
            return None
        self._cache_hits += 1
        return ProviderPayload.model_validate(entry.payload)

    def cache_render(self, prompt_id: str, provider: str, version: int, payload: ProviderPayload) -> str:
        """Store ``payload`` under its key, replacing any previous entry."""
        if not self.prompt_exists(prompt_id):
            raise NotFoundError(f"Prompt with id '{prompt_id}' not found")
        ref = content_ref(prompt_id, provider, version)
        entry = self._cache_entry(prompt_id, provider, version)
        if entry is None:
            entry = RenderCacheEntry(prompt_id=prompt_id, provider=provider, version=version)
            self._session.add(entry)
        entry.content_ref = ref
        entry.payload = payload.model_dump(mode="json")
        self._session.flush()
        logger.debug("Cached render %s", ref)
        return ref

    def invalidate_prompt_cache(self, prompt_id: str) -> int:
        result = self._session.execute(
            delete(RenderCacheEntry).where(RenderCacheEntry.prompt_id == prompt_id)
        )
        self._session.flush()
        return result.rowcount or 0

    def _cache_entry(self, prompt_id: str, provider: str, version: int) -> RenderCacheEntry | None:
        return self._session.execute(
            select(RenderCacheEntry).where(
                RenderCacheEntry.prompt_id == prompt_id,
                RenderCacheEntry.provider == provider,
                RenderCacheEntry.version == version,
            )
        ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_storage_stats(self) -> dict[str, Any]:
        statuses = self._session.execute(
            select(PromptRow.status, func.count()).group_by(PromptRow.status)
        ).all()
        records = self.list_prompts()
        tags = Counter(tag for r in records for tag in r.metadata.tags)
        owners = {r.metadata.owner for r in records}
        cache_entries = self._session.execute(
            select(func.count()).select_from(RenderCacheEntry)
        ).scalar_one()
        lookups = self._cache_hits + self._cache_misses
        return {
            "prompts": {
                "total": len(records),
                "by_status": {status: count for status, count in statuses},
            },
            "cache": {
                "total_entries": cache_entries,
                "hit_rate": round(self._cache_hits / lookups, 2) if lookups else 0.0,
            },
            "index": {
                "total_tags": len(tags),
                "total_owners": len(owners),
            },
        }
