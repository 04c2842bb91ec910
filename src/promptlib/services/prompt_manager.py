"""Prompt lifecycle orchestration: create, update, enhance, render, export."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from promptlib.errors import NotFoundError, PreconditionError, ValidationError
from promptlib.providers.registry import ProviderRegistry
from promptlib.schemas.prompt import (
    SLUG_PATTERN,
    HumanPrompt,
    PromptFilters,
    PromptHistory,
    PromptMetadata,
    PromptRating,
    PromptRecord,
    PromptRender,
    StructuredPrompt,
    utc_now_iso,
)
from promptlib.schemas.provider import ProviderPayload, RenderOptions
from promptlib.services.enhancement import EnhancementAgent, EnhancementContext, EnhancementResult
from promptlib.services.history import AuditAction, HistoryService, apply_rating
from promptlib.services.ratings import RatingService
from promptlib.services.storage import PromptStorage, content_ref
from promptlib.services.variables import (
    extract_variable_names,
    substitute_variables,
    validate_variable_substitution,
)
from promptlib.services.versions import VersionManager

logger = logging.getLogger(__name__)

# Fields an update may only repeat, never change.
_PROTECTED_FIELDS = ("id", "slug", "version", "created_at", "history")


class ExportResult(BaseModel):
    filename: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


def sanitize_filename_part(value: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9_-]", "_", value)
    return re.sub(r"_+", "_", cleaned).strip("_")


def _template_text(structured: StructuredPrompt) -> str:
    """User template plus system instructions, for variable discovery."""
    return "\n".join([structured.user_template, *structured.system])


def _dump_updates(updates: dict[str, Any]) -> dict[str, Any]:
    dumped: dict[str, Any] = {}
    for key, value in updates.items():
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json")
        elif isinstance(value, list):
            value = [v.model_dump(mode="json") if isinstance(v, BaseModel) else v for v in value]
        dumped[key] = value
    return dumped


class PromptManager:
    """Facade over storage, enhancement, versioning and provider rendering.

    Every persisted write goes through :meth:`PromptStorage.save_prompt` with
    the version the record was loaded at, so a concurrent writer surfaces as
    :class:`~promptlib.errors.VersionConflictError` instead of a lost update.
    """

    def __init__(
        self,
        storage: PromptStorage,
        enhancement_agent: EnhancementAgent,
        registry: ProviderRegistry,
        version_manager: VersionManager | None = None,
        history: HistoryService | None = None,
        ratings: RatingService | None = None,
    ) -> None:
        self.storage = storage
        self.enhancement_agent = enhancement_agent
        self.registry = registry
        self.version_manager = version_manager or VersionManager()
        self.history = history
        self.ratings = ratings

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_prompt(
        self,
        human_prompt: HumanPrompt,
        metadata: PromptMetadata,
        *,
        slug: str | None = None,
    ) -> PromptRecord:
        errors: list[str] = []
        if not metadata.title.strip():
            errors.append("Title is required")
        if not metadata.owner.strip():
            errors.append("Owner is required")
        errors.extend(human_prompt.validate_prompt().errors)
        if errors:
            raise ValidationError.from_errors("Invalid prompt", errors)

        if slug is None:
            slug = self.storage.generate_slug(metadata.title)
        elif not SLUG_PATTERN.fullmatch(slug):
            raise ValidationError(
                f"Invalid slug '{slug}': use lowercase letters, digits and single hyphens"
            )
        elif self.storage.slug_exists(slug):
            raise ValidationError(f"Slug '{slug}' is already in use")

        tags = [t.strip() for t in metadata.tags if t.strip()]
        record = PromptRecord(
            slug=slug,
            status="draft",
            metadata=metadata.model_copy(update={
                "title": metadata.title.strip(),
                "summary": metadata.summary.strip(),
                "owner": metadata.owner.strip(),
                "tags": list(dict.fromkeys(tags)),
            }),
            prompt_human=human_prompt,
        )
        initial = self.version_manager.create_version(
            record, author=record.metadata.owner, message="Initial prompt creation"
        )
        record.history.versions.append(initial)
        self.storage.save_prompt(record)
        self._audit(record, "created", record.metadata.owner, {"slug": record.slug})
        logger.info("Created prompt %s (%s)", record.slug, record.id)
        return record

    def get_prompt(self, prompt_id: str) -> PromptRecord:
        return self.storage.load_prompt(prompt_id)

    def get_prompt_by_slug(self, slug: str) -> PromptRecord:
        return self.storage.load_prompt_by_slug(slug)

    def find_prompt(self, ref: str) -> PromptRecord:
        """Look ``ref`` up as an id first, then as a slug."""
        if self.storage.prompt_exists(ref):
            return self.storage.load_prompt(ref)
        try:
            return self.storage.load_prompt_by_slug(ref)
        except NotFoundError:
            raise NotFoundError(f"Prompt '{ref}' not found") from None

    def list_prompts(self, filters: PromptFilters | None = None) -> list[PromptRecord]:
        return self.storage.list_prompts(filters)

    def delete_prompt(self, prompt_id: str, *, author: str = "system") -> None:
        if not self.storage.prompt_exists(prompt_id):
            raise NotFoundError(f"Prompt with id '{prompt_id}' not found")
        record = self.storage.load_prompt(prompt_id)
        self.storage.delete_prompt(prompt_id)
        self._audit(record, "deleted", author)
        logger.info("Deleted prompt %s", prompt_id)

    def update_prompt(
        self,
        prompt_id: str,
        updates: dict[str, Any],
        *,
        author: str | None = None,
    ) -> PromptRecord:
        """Shallow-merge ``updates`` into the stored record.

        The version is bumped, with one history entry summarising the diff,
        only when the merged record differs from the stored one. A no-op
        update returns the stored record untouched.
        """
        existing = self.storage.load_prompt(prompt_id)
        updated = self._merge(existing, updates, "Invalid prompt update")
        comparison = self.version_manager.compare_versions(existing, updated)
        if not comparison.has_changes:
            return existing

        if author is None:
            author = updated.metadata.owner or existing.metadata.owner
        self.version_manager.record_version(updated, author=author, message=comparison.summary)
        self.storage.save_prompt(updated, expected_version=existing.version)
        self._audit(updated, "updated", author, {"summary": comparison.summary})
        return updated

    def create_version(
        self, prompt_id: str, changes: dict[str, Any], message: str, author: str
    ) -> PromptRecord:
        """Apply ``changes`` and record a new version even if nothing differs."""
        existing = self.storage.load_prompt(prompt_id)
        updated = self._merge(existing, changes, "Invalid prompt changes")
        self.version_manager.record_version(updated, author=author, message=message)
        self.storage.save_prompt(updated, expected_version=existing.version)
        self._audit(updated, "updated", author, {"message": message})
        return updated

    def get_prompt_history(self, prompt_id: str) -> PromptHistory:
        return self.storage.load_prompt(prompt_id).history

    def _merge(self, existing: PromptRecord, updates: dict[str, Any], prefix: str) -> PromptRecord:
        data = existing.model_dump(mode="json")
        changes = _dump_updates(updates)
        blocked = [f for f in _PROTECTED_FIELDS if f in changes and changes[f] != data[f]]
        if blocked:
            raise ValidationError(f"{prefix}: cannot change {', '.join(blocked)}")
        data.update(changes)
        data["updated_at"] = utc_now_iso()
        try:
            merged = PromptRecord.model_validate(data)
        except PydanticValidationError as exc:
            errors = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]
            raise ValidationError.from_errors(prefix, errors) from None
        result = merged.validate_record()
        if not result.is_valid:
            raise ValidationError.from_errors(prefix, result.errors)
        self._check_variant_target(merged)
        return merged

    def _check_variant_target(self, record: PromptRecord) -> None:
        provider = record.metadata.tuned_for_provider
        model = record.metadata.preferred_model
        if provider is None:
            return
        if not self.registry.has_provider(provider):
            raise PreconditionError(f"Unknown provider '{provider}'")
        if model is not None and not self.registry.get_adapter(provider).supports(model):
            raise PreconditionError(f"Provider '{provider}' does not support model '{model}'")

    # ------------------------------------------------------------------
    # Enhancement
    # ------------------------------------------------------------------

    def enhance_prompt(
        self,
        prompt_id: str,
        *,
        target_provider: str | None = None,
        domain_knowledge: str | None = None,
    ) -> EnhancementResult:
        """Attach an LLM-generated structured prompt and bump the version.

        Nothing is written unless the enhancement call succeeds.
        """
        record = self.storage.load_prompt(prompt_id)
        loaded_version = record.version
        result = self.enhancement_agent.enhance(
            record.prompt_human,
            EnhancementContext(target_provider=target_provider, domain_knowledge=domain_knowledge),
        )
        structured = result.structured_prompt
        record.prompt_structured = structured
        record.variables = self.enhancement_agent.extract_variables(_template_text(structured))
        self.version_manager.record_version(
            record, author="system", message=f"Enhanced prompt: {result.rationale}"
        )
        self.storage.save_prompt(record, expected_version=loaded_version)
        self._audit(record, "enhanced", "system", {"confidence": result.confidence})
        logger.info("Enhanced prompt %s to version %d", record.slug, record.version)
        return result

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render_prompt(
        self,
        prompt_id: str,
        provider: str,
        options: RenderOptions | None = None,
    ) -> ProviderPayload:
        """Render the current version for ``provider``, using the cache when possible.

        A cached payload for the same prompt version and provider is reused
        whenever the requested model (if any) matches. Variable values are
        not part of that check.
        """
        options = options or RenderOptions()
        record = self.storage.load_prompt(prompt_id)
        if record.prompt_structured is None:
            raise PreconditionError(
                "Prompt must be enhanced before rendering. Call enhance_prompt() first."
            )
        adapter = self.registry.get_adapter(provider)
        if options.model and not adapter.supports(options.model):
            raise PreconditionError(f"Provider '{provider}' does not support model '{options.model}'")

        structured = record.prompt_structured
        template_vars = extract_variable_names(_template_text(structured))
        provided = options.variables or {}

        cached = self.storage.get_cached_render(record.id, provider, record.version)
        if cached is not None and (not options.model or cached.model == options.model):
            if cached.variables_used is None:
                cached.variables_used = self._variables_used(template_vars, options.variables)
            logger.debug("Render cache hit for %s", content_ref(record.id, provider, record.version))
            return cached

        check = validate_variable_substitution(_template_text(structured), record.variables, provided)
        if not check.is_valid:
            raise ValidationError.from_errors("Cannot render prompt", check.errors)

        defaults = {v.key: v.default_value for v in record.variables if v.default_value is not None}
        resolved = structured.model_copy(update={
            "user_template": substitute_variables(structured.user_template, provided, default_values=defaults),
            "system": [substitute_variables(s, provided, default_values=defaults) for s in structured.system],
        })
        effective = options.model_copy(update={
            "model": options.model or adapter.get_default_options().model,
        })
        payload = adapter.render(resolved, effective)
        verdict = adapter.validate(payload)
        if not verdict.is_valid:
            raise ValidationError.from_errors("Invalid render output", verdict.errors)
        payload.variables_used = self._variables_used(template_vars, options.variables)

        ref = self.storage.cache_render(record.id, provider, record.version, payload)
        entry = PromptRender(
            provider=provider,
            model_hint=options.model or "default",
            version_of_prompt=record.version,
            content_ref=ref,
        )
        record.renders = [
            r for r in record.renders
            if not (r.provider == provider and r.version_of_prompt == record.version)
        ]
        record.renders.append(entry)
        self.storage.save_prompt(record, expected_version=record.version)
        self._audit(record, "rendered", "system", {"provider": provider, "model": payload.model})
        return payload

    @staticmethod
    def _variables_used(template_vars: list[str], provided: dict[str, Any] | None) -> list[str]:
        if not provided:
            return list(template_vars)
        return [v for v in template_vars if v in provided]

    def export_prompt(
        self,
        prompt_id: str,
        provider: str,
        options: RenderOptions | None = None,
        *,
        filename: str | None = None,
    ) -> ExportResult:
        payload = self.render_prompt(prompt_id, provider, options)
        record = self.storage.load_prompt(prompt_id)
        if filename is None:
            filename = f"{record.slug}_{sanitize_filename_part(provider)}_v{record.version}.json"
        metadata = {
            "promptId": record.id,
            "provider": provider,
            "version": record.version,
            "exportedAt": utc_now_iso(),
            # Read back by the importer.
            "promptTitle": record.metadata.title,
            "variablesUsed": payload.variables_used or [],
            "originalPrompt": {
                "goal": record.prompt_human.goal,
                "audience": record.prompt_human.audience,
            },
        }
        body = {**payload.model_dump(mode="json"), "_metadata": metadata}
        return ExportResult(filename=filename, content=json.dumps(body, indent=2), metadata=metadata)

    def export_to_file(
        self,
        prompt_id: str,
        provider: str,
        directory: Path,
        options: RenderOptions | None = None,
        *,
        filename: str | None = None,
    ) -> Path:
        result = self.export_prompt(prompt_id, provider, options, filename=filename)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / result.filename
        path.write_text(result.content, encoding="utf-8")
        return path

    # ------------------------------------------------------------------
    # Ratings and stats
    # ------------------------------------------------------------------

    def rate_prompt(self, prompt_id: str, user: str, score: int, note: str = "") -> PromptRating:
        """Record ``user``'s latest rating. Ratings never bump the version."""
        record = self.storage.load_prompt(prompt_id)
        if self.history is not None:
            rating = self.history.associate_rating_with_version(record, user=user, score=score, note=note)
        else:
            rating = apply_rating(record, user=user, score=score, note=note)
        self.storage.save_prompt(record, expected_version=record.version)
        if self.ratings is not None:
            self.ratings.rate_prompt(
                record.id, rating.user, score, note=note or None, prompt_version=record.version
            )
        return rating

    def get_service_stats(self) -> dict[str, Any]:
        records = self.storage.list_prompts()
        by_status: dict[str, int] = {}
        for record in records:
            by_status[record.status] = by_status.get(record.status, 0) + 1
        providers = self.registry.list_providers()
        return {
            "storage": self.storage.get_storage_stats(),
            "prompts": {"total": len(records), "by_status": by_status},
            "providers": {"total": len(providers), "available": [p.id for p in providers]},
        }

    def _audit(
        self, record: PromptRecord, action: AuditAction, author: str, details: dict[str, Any] | None = None
    ) -> None:
        if self.history is not None:
            self.history.add_audit_entry(
                record.id, action, version=record.version, author=author, details=details
            )
