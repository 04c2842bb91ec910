"""Tests for PromptStorage."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from promptlib.errors import NotFoundError, ValidationError, VersionConflictError
from promptlib.models.prompt import RenderCacheEntry
from promptlib.schemas.prompt import (
    HumanPrompt,
    PromptFilters,
    PromptMetadata,
    PromptRating,
    PromptRecord,
)
from promptlib.schemas.provider import ProviderPayload
from promptlib.services.storage import PromptStorage, content_ref, slugify


def _record(title: str, *, slug: str | None = None, tags: list[str] | None = None, owner: str = "alice",
            human: HumanPrompt | None = None) -> PromptRecord:
    return PromptRecord(
        slug=slug or slugify(title),
        metadata=PromptMetadata(title=title, tags=tags or [], owner=owner),
        prompt_human=human or HumanPrompt(goal="g", audience="a", steps=["s"]),
    )


def _payload() -> ProviderPayload:
    return ProviderPayload(provider="openai", model="gpt-4", content={"model": "gpt-4", "messages": []})


class TestSlugify:
    def test_basic(self) -> None:
        assert slugify("Hello, World!  Again") == "hello-world-again"

    def test_limits_length(self) -> None:
        assert len(slugify("word " * 30)) <= 50

    def test_empty_falls_back(self) -> None:
        assert slugify("!!!") == "prompt"


class TestRecords:
    def test_save_and_load(self, storage: PromptStorage) -> None:
        record = _record("Email Writer")
        storage.save_prompt(record)
        assert storage.load_prompt(record.id).model_dump() == record.model_dump()
        assert storage.load_prompt_by_slug("email-writer").id == record.id

    def test_missing_prompt(self, storage: PromptStorage) -> None:
        with pytest.raises(NotFoundError):
            storage.load_prompt("nope")
        with pytest.raises(NotFoundError):
            storage.load_prompt_by_slug("nope")

    def test_slug_must_be_unique(self, storage: PromptStorage) -> None:
        storage.save_prompt(_record("One", slug="same"))
        with pytest.raises(ValidationError, match="already in use"):
            storage.save_prompt(_record("Two", slug="same"))

    def test_expected_version_guards_writes(self, storage: PromptStorage) -> None:
        record = _record("Guarded")
        storage.save_prompt(record)
        record.version = 2
        storage.save_prompt(record, expected_version=1)
        stale = record.model_copy(update={"version": 3})
        with pytest.raises(VersionConflictError):
            storage.save_prompt(stale, expected_version=1)

    def test_generate_slug_appends_counter(self, storage: PromptStorage) -> None:
        storage.save_prompt(_record("Summary"))
        assert storage.generate_slug("Summary") == "summary-1"
        storage.save_prompt(_record("Summary", slug="summary-1"))
        assert storage.generate_slug("Summary") == "summary-2"

    def test_delete_removes_cached_renders(self, storage: PromptStorage, session: Session) -> None:
        record = _record("Doomed")
        storage.save_prompt(record)
        storage.cache_render(record.id, "openai", 1, _payload())
        storage.delete_prompt(record.id)
        assert not storage.prompt_exists(record.id)
        count = session.execute(select(func.count()).select_from(RenderCacheEntry)).scalar_one()
        assert count == 0
        with pytest.raises(NotFoundError):
            storage.delete_prompt(record.id)


class TestSearch:
    @pytest.fixture()
    def stored(self, storage: PromptStorage) -> list[PromptRecord]:
        records = [
            _record("Alpha Email", tags=["email"], owner="alice"),
            _record("Beta Report", tags=["report", "weekly"], owner="bob"),
            _record("Gamma Email Digest", tags=["email", "weekly"], owner="bob"),
        ]
        records[1].status = "active"
        records[2].history.ratings.append(PromptRating(user="u", score=5))
        for r in records:
            storage.save_prompt(r)
        return records

    def test_any_tag_matches(self, storage: PromptStorage, stored: list[PromptRecord]) -> None:
        found = storage.search_prompts(PromptFilters(tags=["report", "email"], sort_by="title", sort_order="asc"))
        assert [r.metadata.title for r in found] == ["Alpha Email", "Beta Report", "Gamma Email Digest"]

    def test_owner_and_status(self, storage: PromptStorage, stored: list[PromptRecord]) -> None:
        found = storage.search_prompts(PromptFilters(owner="bob", status=["active"]))
        assert [r.metadata.title for r in found] == ["Beta Report"]

    def test_text_search_case_insensitive(self, storage: PromptStorage, stored: list[PromptRecord]) -> None:
        found = storage.search_prompts(PromptFilters(search="EMAIL", sort_by="title", sort_order="asc"))
        assert [r.metadata.title for r in found] == ["Alpha Email", "Gamma Email Digest"]

    def test_min_rating(self, storage: PromptStorage, stored: list[PromptRecord]) -> None:
        found = storage.search_prompts(PromptFilters(min_rating=4))
        assert [r.metadata.title for r in found] == ["Gamma Email Digest"]

    def test_pagination(self, storage: PromptStorage, stored: list[PromptRecord]) -> None:
        page = storage.search_prompts(PromptFilters(sort_by="title", sort_order="asc", page=2, limit=2))
        assert [r.metadata.title for r in page] == ["Gamma Email Digest"]


class TestRenderCache:
    def test_roundtrip_and_hit_rate(self, storage: PromptStorage) -> None:
        record = _record("Cached")
        storage.save_prompt(record)
        assert storage.get_cached_render(record.id, "openai", 1) is None

        ref = storage.cache_render(record.id, "openai", 1, _payload())
        assert ref == content_ref(record.id, "openai", 1)
        assert storage.get_cached_render(record.id, "openai", 1).content == _payload().content
        assert storage.get_cached_render(record.id, "openai", 2) is None
        assert storage.get_storage_stats()["cache"]["hit_rate"] == pytest.approx(0.33)

    def test_upsert_keeps_one_entry(self, storage: PromptStorage, session: Session) -> None:
        record = _record("Cached")
        storage.save_prompt(record)
        storage.cache_render(record.id, "openai", 1, _payload())
        storage.cache_render(record.id, "openai", 1, _payload())
        count = session.execute(select(func.count()).select_from(RenderCacheEntry)).scalar_one()
        assert count == 1

    def test_cache_requires_prompt(self, storage: PromptStorage) -> None:
        with pytest.raises(NotFoundError):
            storage.cache_render("missing", "openai", 1, _payload())

    def test_invalidate(self, storage: PromptStorage) -> None:
        record = _record("Cached")
        storage.save_prompt(record)
        storage.cache_render(record.id, "openai", 1, _payload())
        storage.cache_render(record.id, "anthropic", 1, _payload())
        assert storage.invalidate_prompt_cache(record.id) == 2
        assert storage.get_cached_render(record.id, "openai", 1) is None


class TestStats:
    def test_counts(self, storage: PromptStorage) -> None:
        storage.save_prompt(_record("A", tags=["x", "y"], owner="alice"))
        storage.save_prompt(_record("B", tags=["x"], owner="bob"))
        stats = storage.get_storage_stats()
        assert stats["prompts"] == {"total": 2, "by_status": {"draft": 2}}
        assert stats["index"] == {"total_tags": 2, "total_owners": 2}
