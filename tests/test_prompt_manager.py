"""Tests for the PromptManager orchestration."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from promptlib.errors import ExternalServiceError, NotFoundError, PreconditionError, ValidationError
from promptlib.providers.registry import ProviderRegistry
from promptlib.schemas.prompt import HumanPrompt, OutputExpectations, PromptMetadata, PromptRecord
from promptlib.schemas.provider import RenderOptions
from promptlib.services.enhancement import MockLLMService
from promptlib.services.history import HistoryService
from promptlib.services.prompt_manager import PromptManager, sanitize_filename_part
from promptlib.services.ratings import RatingService

EMAIL_RESPONSE = {
    "structured": {
        "schema_version": 1,
        "system": ["You write clear business emails.", "Keep every email under 200 words."],
        "capabilities": ["Business writing"],
        "user_template": "Write an email to {{recipient}} about {{subject}}.",
        "rules": [{"name": "Tone", "description": "Stay polite and direct"}],
        "variables": ["recipient", "subject"],
    },
    "changes_made": ["Added recipient and subject variables"],
    "warnings": [],
}

EMAIL_VALUES = {"recipient": "Bob", "subject": "the launch"}


@pytest.fixture()
def email_prompt() -> HumanPrompt:
    return HumanPrompt(
        goal="Write an email to a colleague",
        audience="Office workers",
        steps=["Greet the recipient", "State the subject", "Close politely"],
        output_expectations=OutputExpectations(format="Plain text"),
    )


@pytest.fixture()
def enhanced(manager: PromptManager, llm: MockLLMService, email_prompt: HumanPrompt) -> PromptRecord:
    llm.add_response("Write an email", EMAIL_RESPONSE)
    record = manager.create_prompt(email_prompt, PromptMetadata(title="Email Writer", owner="alice"))
    manager.enhance_prompt(record.id)
    return manager.get_prompt(record.id)


@pytest.fixture()
def render_calls(registry: ProviderRegistry, monkeypatch: pytest.MonkeyPatch) -> list[str]:
    """Record every adapter render so cache hits can be told from misses."""
    calls: list[str] = []
    for adapter in registry.get_all_adapters():
        original = adapter.render

        def spy(structured: Any, options: Any, _original: Any = original, _id: str = adapter.id) -> Any:
            calls.append(_id)
            return _original(structured, options)

        monkeypatch.setattr(adapter, "render", spy)
    return calls


class TestCreate:
    def test_creates_draft_with_initial_version(self, manager: PromptManager, human_prompt: HumanPrompt,
                                                metadata: PromptMetadata) -> None:
        record = manager.create_prompt(human_prompt, metadata)
        assert record.slug == "blog-writer"
        assert record.status == "draft"
        assert record.version == 1
        assert [(v.number, v.message, v.author) for v in record.history.versions] == [
            (1, "Initial prompt creation", "alice")
        ]
        assert manager.get_prompt(record.id).slug == record.slug

    def test_lists_every_problem(self, manager: PromptManager) -> None:
        with pytest.raises(ValidationError) as excinfo:
            manager.create_prompt(HumanPrompt(), PromptMetadata(title=" ", owner=""))
        errors = excinfo.value.errors
        assert "Title is required" in errors
        assert "Owner is required" in errors
        assert "Goal is required and cannot be empty" in errors
        assert str(excinfo.value).startswith("Invalid prompt:")

    def test_slugs_stay_unique(self, manager: PromptManager, human_prompt: HumanPrompt,
                               metadata: PromptMetadata) -> None:
        first = manager.create_prompt(human_prompt, metadata)
        second = manager.create_prompt(human_prompt, metadata)
        assert (first.slug, second.slug) == ("blog-writer", "blog-writer-1")

    def test_explicit_slug_conflict(self, manager: PromptManager, human_prompt: HumanPrompt,
                                    metadata: PromptMetadata) -> None:
        manager.create_prompt(human_prompt, metadata, slug="taken")
        with pytest.raises(ValidationError, match="already in use"):
            manager.create_prompt(human_prompt, metadata, slug="taken")

    @pytest.mark.parametrize("slug", ["Has Spaces", "UPPER", "a/b", "trailing-", "double--dash", "caf\u00e9"])
    def test_explicit_slug_must_be_url_safe(self, manager: PromptManager, human_prompt: HumanPrompt,
                                            metadata: PromptMetadata, slug: str) -> None:
        with pytest.raises(ValidationError, match="Invalid slug"):
            manager.create_prompt(human_prompt, metadata, slug=slug)
        assert manager.list_prompts() == []

    def test_tags_are_trimmed_and_deduplicated(self, manager: PromptManager, human_prompt: HumanPrompt) -> None:
        record = manager.create_prompt(
            human_prompt, PromptMetadata(title="T", owner="o", tags=[" a ", "b", "a", ""])
        )
        assert record.metadata.tags == ["a", "b"]

    def test_find_by_id_or_slug(self, manager: PromptManager, human_prompt: HumanPrompt,
                                metadata: PromptMetadata) -> None:
        record = manager.create_prompt(human_prompt, metadata)
        assert manager.find_prompt(record.id).id == record.id
        assert manager.find_prompt("blog-writer").id == record.id
        with pytest.raises(NotFoundError):
            manager.find_prompt("nothing")


class TestUpdate:
    def test_noop_update_keeps_version(self, manager: PromptManager, human_prompt: HumanPrompt,
                                       metadata: PromptMetadata) -> None:
        record = manager.create_prompt(human_prompt, metadata)
        same = manager.update_prompt(record.id, {"metadata": record.metadata, "status": "draft"})
        assert same.version == 1
        assert len(manager.get_prompt_history(record.id).versions) == 1

    def test_change_bumps_version_with_summary(self, manager: PromptManager, human_prompt: HumanPrompt,
                                               metadata: PromptMetadata) -> None:
        record = manager.create_prompt(human_prompt, metadata)
        updated = manager.update_prompt(
            record.id, {"metadata": record.metadata.model_copy(update={"title": "Post Writer"})}
        )
        assert updated.version == 2
        entry = updated.history.versions[-1]
        assert (entry.number, entry.message, entry.author) == (2, "Modified: metadata.title", "alice")
        assert manager.get_prompt(record.id).metadata.title == "Post Writer"

    def test_versions_are_monotonic(self, manager: PromptManager, human_prompt: HumanPrompt,
                                    metadata: PromptMetadata) -> None:
        record = manager.create_prompt(human_prompt, metadata)
        for status in ("active", "archived", "draft"):
            manager.update_prompt(record.id, {"status": status}, author="bob")
        numbers = [v.number for v in manager.get_prompt_history(record.id).versions]
        assert numbers == [1, 2, 3, 4]
        assert manager.get_prompt(record.id).version == 4

    def test_protected_fields(self, manager: PromptManager, human_prompt: HumanPrompt,
                              metadata: PromptMetadata) -> None:
        record = manager.create_prompt(human_prompt, metadata)
        with pytest.raises(ValidationError, match="cannot change slug"):
            manager.update_prompt(record.id, {"slug": "other"})
        # repeating the current value is fine
        assert manager.update_prompt(record.id, {"slug": record.slug}).version == 1

    def test_invalid_status(self, manager: PromptManager, human_prompt: HumanPrompt,
                            metadata: PromptMetadata) -> None:
        record = manager.create_prompt(human_prompt, metadata)
        with pytest.raises(ValidationError, match="Invalid prompt update"):
            manager.update_prompt(record.id, {"status": "published"})

    def test_variant_target_must_exist(self, manager: PromptManager, human_prompt: HumanPrompt,
                                       metadata: PromptMetadata) -> None:
        record = manager.create_prompt(human_prompt, metadata)
        tuned = record.metadata.model_copy(update={"title": "X", "tuned_for_provider": "cohere"})
        with pytest.raises(PreconditionError, match="Unknown provider 'cohere'"):
            manager.update_prompt(record.id, {"metadata": tuned})
        tuned = record.metadata.model_copy(
            update={"title": "X", "tuned_for_provider": "anthropic", "preferred_model": "gpt-4"}
        )
        with pytest.raises(PreconditionError, match="does not support model"):
            manager.update_prompt(record.id, {"metadata": tuned})

    def test_create_version_always_bumps(self, manager: PromptManager, human_prompt: HumanPrompt,
                                         metadata: PromptMetadata) -> None:
        record = manager.create_prompt(human_prompt, metadata)
        updated = manager.create_version(record.id, {}, "Checkpoint", "carol")
        assert updated.version == 2
        assert updated.history.versions[-1].message == "Checkpoint"
        assert updated.history.versions[-1].author == "carol"


class TestEnhance:
    def test_enhance_attaches_structure(self, manager: PromptManager, enhanced: PromptRecord) -> None:
        assert enhanced.version == 2
        assert enhanced.prompt_structured is not None
        assert [v.key for v in enhanced.variables] == ["recipient", "subject"]
        entry = enhanced.history.versions[-1]
        assert entry.author == "system"
        assert entry.message.startswith("Enhanced prompt: Enhanced the prompt by:")

    def test_failed_enhancement_writes_nothing(self, manager: PromptManager, llm: MockLLMService,
                                               email_prompt: HumanPrompt) -> None:
        llm.add_response("Write an email", "not json")
        record = manager.create_prompt(email_prompt, PromptMetadata(title="Email Writer", owner="alice"))
        with pytest.raises(ExternalServiceError):
            manager.enhance_prompt(record.id)
        stored = manager.get_prompt(record.id)
        assert stored.version == 1
        assert stored.prompt_structured is None


class TestRender:
    def test_requires_enhancement(self, manager: PromptManager, human_prompt: HumanPrompt,
                                  metadata: PromptMetadata) -> None:
        record = manager.create_prompt(human_prompt, metadata)
        with pytest.raises(PreconditionError, match="must be enhanced before rendering"):
            manager.render_prompt(record.id, "openai")

    def test_unknown_provider_and_model(self, manager: PromptManager, enhanced: PromptRecord) -> None:
        with pytest.raises(NotFoundError):
            manager.render_prompt(enhanced.id, "cohere")
        with pytest.raises(PreconditionError, match="does not support model"):
            manager.render_prompt(enhanced.id, "openai", RenderOptions(model="claude-3-haiku-20240307"))

    def test_missing_variables(self, manager: PromptManager, enhanced: PromptRecord) -> None:
        with pytest.raises(ValidationError) as excinfo:
            manager.render_prompt(enhanced.id, "openai", RenderOptions(variables={"recipient": "Bob"}))
        assert excinfo.value.errors == ["Required variable 'subject' has no value"]

    def test_end_to_end_render(self, manager: PromptManager, enhanced: PromptRecord,
                               render_calls: list[str]) -> None:
        payload = manager.render_prompt(enhanced.id, "openai", RenderOptions(variables=EMAIL_VALUES))
        assert payload.model == "gpt-4-turbo"
        assert payload.content["messages"][-1]["content"] == "Write an email to Bob about the launch."
        assert payload.variables_used == ["recipient", "subject"]
        stored = manager.get_prompt(enhanced.id)
        assert [(r.provider, r.version_of_prompt) for r in stored.renders] == [("openai", 2)]
        assert stored.version == 2

        again = manager.render_prompt(enhanced.id, "openai", RenderOptions(variables=EMAIL_VALUES))
        assert again.content == payload.content
        assert render_calls == ["openai"]

    def test_new_version_invalidates_cache(self, manager: PromptManager, enhanced: PromptRecord,
                                           render_calls: list[str]) -> None:
        manager.render_prompt(enhanced.id, "openai", RenderOptions(variables=EMAIL_VALUES))
        manager.update_prompt(enhanced.id, {"status": "active"})
        manager.render_prompt(enhanced.id, "openai", RenderOptions(variables=EMAIL_VALUES))
        assert render_calls == ["openai", "openai"]
        renders = manager.get_prompt(enhanced.id).renders
        assert sorted(r.version_of_prompt for r in renders) == [2, 3]

    def test_cache_is_per_provider(self, manager: PromptManager, enhanced: PromptRecord,
                                   render_calls: list[str]) -> None:
        manager.render_prompt(enhanced.id, "openai", RenderOptions(variables=EMAIL_VALUES))
        payload = manager.render_prompt(enhanced.id, "anthropic", RenderOptions(variables=EMAIL_VALUES))
        assert payload.content["system"].startswith("You write clear business emails.")
        assert render_calls == ["openai", "anthropic"]

    def test_cache_ignores_variable_values(self, manager: PromptManager, enhanced: PromptRecord,
                                           render_calls: list[str]) -> None:
        manager.render_prompt(enhanced.id, "openai", RenderOptions(variables=EMAIL_VALUES))
        other = manager.render_prompt(
            enhanced.id, "openai", RenderOptions(variables={"recipient": "Eve", "subject": "budget"})
        )
        # Only the model takes part in the cache check.
        assert "Bob" in other.content["messages"][-1]["content"]
        assert render_calls == ["openai"]

    def test_requested_model_must_match_cached(self, manager: PromptManager, enhanced: PromptRecord,
                                               render_calls: list[str]) -> None:
        manager.render_prompt(enhanced.id, "openai", RenderOptions(variables=EMAIL_VALUES))
        payload = manager.render_prompt(
            enhanced.id, "openai", RenderOptions(model="gpt-4", variables=EMAIL_VALUES)
        )
        assert payload.model == "gpt-4"
        assert render_calls == ["openai", "openai"]
        # the newer render replaced the cache entry
        assert manager.render_prompt(enhanced.id, "openai").model == "gpt-4"
        assert render_calls == ["openai", "openai"]

    def test_defaults_fill_missing_values(self, manager: PromptManager, enhanced: PromptRecord) -> None:
        variables = [
            v.model_copy(update={"default_value": "Team"}) if v.key == "recipient" else v
            for v in enhanced.variables
        ]
        manager.update_prompt(enhanced.id, {"variables": variables})
        payload = manager.render_prompt(enhanced.id, "meta", RenderOptions(variables={"subject": "lunch"}))
        assert payload.content["messages"][-1]["content"] == "Write an email to Team about lunch."
        assert payload.variables_used == ["subject"]


class TestExport:
    def test_export_envelope(self, manager: PromptManager, enhanced: PromptRecord) -> None:
        result = manager.export_prompt(enhanced.id, "openai", RenderOptions(variables=EMAIL_VALUES))
        assert result.filename == "email-writer_openai_v2.json"
        body = json.loads(result.content)
        assert body["provider"] == "openai"
        assert body["_metadata"]["promptId"] == enhanced.id
        assert body["_metadata"]["version"] == 2
        assert body["_metadata"]["promptTitle"] == "Email Writer"
        assert result.metadata["provider"] == "openai"

    def test_custom_filename(self, manager: PromptManager, enhanced: PromptRecord) -> None:
        result = manager.export_prompt(
            enhanced.id, "openai", RenderOptions(variables=EMAIL_VALUES), filename="mine.json"
        )
        assert result.filename == "mine.json"

    def test_export_to_file(self, manager: PromptManager, enhanced: PromptRecord, tmp_path: Path) -> None:
        path = manager.export_to_file(
            enhanced.id, "anthropic", tmp_path / "out", RenderOptions(variables=EMAIL_VALUES)
        )
        assert path.name == "email-writer_anthropic_v2.json"
        assert json.loads(path.read_text(encoding="utf-8"))["content"]["max_tokens"] == 4096

    def test_sanitize_filename_part(self) -> None:
        assert sanitize_filename_part("aws/bedrock:claude") == "aws_bedrock_claude"
        assert sanitize_filename_part("__a  b__") == "a_b"


class TestRatingsAndAudit:
    def test_rating_does_not_bump_version(self, manager: PromptManager, ratings: RatingService,
                                          human_prompt: HumanPrompt, metadata: PromptMetadata) -> None:
        record = manager.create_prompt(human_prompt, metadata)
        manager.rate_prompt(record.id, "bob", 4, "good")
        manager.rate_prompt(record.id, "bob", 2)
        stored = manager.get_prompt(record.id)
        assert stored.version == 1
        assert [(r.user, r.score) for r in stored.history.ratings] == [("bob", 2)]
        assert ratings.get_average_rating(record.id) == 2.0

    def test_rating_out_of_range(self, manager: PromptManager, human_prompt: HumanPrompt,
                                 metadata: PromptMetadata) -> None:
        record = manager.create_prompt(human_prompt, metadata)
        with pytest.raises(ValidationError, match="Invalid rating"):
            manager.rate_prompt(record.id, "bob", 6)

    def test_audit_trail_newest_first(self, manager: PromptManager, history: HistoryService,
                                      enhanced: PromptRecord) -> None:
        manager.render_prompt(enhanced.id, "openai", RenderOptions(variables=EMAIL_VALUES))
        actions = [e.action for e in history.get_audit_trail(enhanced.id)]
        assert actions == ["rendered", "enhanced", "created"]

    def test_delete(self, manager: PromptManager, history: HistoryService, enhanced: PromptRecord) -> None:
        manager.rate_prompt(enhanced.id, "bob", 5)
        manager.delete_prompt(enhanced.id, author="alice")
        with pytest.raises(NotFoundError):
            manager.get_prompt(enhanced.id)
        assert history.get_audit_trail(enhanced.id)[0].action == "deleted"
        with pytest.raises(NotFoundError):
            manager.delete_prompt(enhanced.id)

    def test_service_stats(self, manager: PromptManager, enhanced: PromptRecord) -> None:
        stats = manager.get_service_stats()
        assert stats["prompts"] == {"total": 1, "by_status": {"draft": 1}}
        assert stats["providers"]["available"] == ["openai", "anthropic", "meta"]
