"""Import provider-native prompt files into the library.

Payloads are recognised by shape (internal record, Anthropic, OpenAI or
Meta chat format), converted to a :class:`PromptRecord` and stored through
the :class:`PromptManager`, so an import is versioned and audited like any
other create.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from promptlib.errors import NotFoundError, PreconditionError, ValidationError
from promptlib.schemas.importing import (
    FailedOutcome,
    FormatDetection,
    ImportedOutcome,
    ImportOptions,
    ImportOutcome,
    ImportResult,
    ImportValidation,
    SkippedOutcome,
    VariantDetection,
)
from promptlib.schemas.prompt import (
    HumanPrompt,
    OutputExpectations,
    PromptMetadata,
    PromptRecord,
    StructuredPrompt,
    Variable,
)
from promptlib.services.prompt_manager import PromptManager
from promptlib.services.storage import slugify
from promptlib.services.variables import humanize_variable_name, variables_from_template

logger = logging.getLogger(__name__)

CHAT_ROLES = ("system", "user", "assistant")
DEFAULT_SYSTEM = "You are a helpful assistant"
FALLBACK_STEPS = [
    "Analyze the user request",
    "Process the information",
    "Provide appropriate response",
]

_NUMBERED_STEP = re.compile(r"^\d+\.\s+(.+)$", re.MULTILINE)
_TITLE_PATTERNS = (
    re.compile(r"^#\s+(.+)$", re.MULTILINE),
    re.compile(r"^Title:\s*(.+)$", re.MULTILINE | re.IGNORECASE),
)
_VARIANT_TAGS = ("enhanced",)
_PROVIDER_MODEL_TAG = re.compile(r"^(openai|anthropic|meta|aws|google)-", re.IGNORECASE)
_VARIANT_TITLE_PATTERNS = (
    re.compile(r"\(enhanced\)", re.IGNORECASE),
    re.compile(r"\(.*-.*\)"),
    re.compile(r"enhanced", re.IGNORECASE),
    re.compile(r"optimized for", re.IGNORECASE),
    re.compile(r"tuned for", re.IGNORECASE),
)
_VARIANT_TITLE_SUFFIXES = (
    re.compile(r"\s*\(enhanced\)", re.IGNORECASE),
    re.compile(r"\s*\([^)]*-[^)]*\)"),
    re.compile(r"\s*-\s*enhanced\s+using\s+.*", re.IGNORECASE),
    re.compile(r"\s*-\s*optimized\s+for\s+.*", re.IGNORECASE),
)


def _truncate(text: str, length: int) -> str:
    return text[:length] + "..." if len(text) > length else text


def _messages(content: dict[str, Any]) -> list[dict[str, Any]]:
    messages = content.get("messages")
    if not isinstance(messages, list):
        return []
    return [m for m in messages if isinstance(m, dict)]


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _prefixed(slug: str, options: ImportOptions) -> str:
    return f"{slugify(options.slug_prefix)}-{slug}" if options.slug_prefix else slug


def _text_of(value: Any) -> str:
    """Message content as text; list-of-blocks content is joined."""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = [b.get("text", "") if isinstance(b, dict) else str(b) for b in value]
        return "\n".join(p for p in parts if p)
    return "" if value is None else str(value)


def _role_texts(messages: list[dict[str, Any]], role: str) -> list[str]:
    return [_text_of(m.get("content")) for m in messages if m.get("role") == role]


def unwrap_export(content: dict[str, Any]) -> dict[str, Any]:
    """Turn an exported ``{provider, model, content, _metadata}`` envelope into its body."""
    body = content.get("content")
    if isinstance(body, dict) and isinstance(content.get("provider"), str):
        unwrapped = dict(body)
        if isinstance(content.get("_metadata"), dict):
            unwrapped["_metadata"] = content["_metadata"]
        return unwrapped
    return content


def extract_title(text: str) -> str | None:
    if not text:
        return None
    for pattern in _TITLE_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1).strip():
            return match.group(1).strip()
    first_line = text.split("\n", 1)[0][:50].strip()
    return first_line or None


def extract_steps(user_texts: list[str]) -> list[str]:
    """Numbered list items from the user messages, else generic steps."""
    if not user_texts:
        return ["Process the request"]
    steps = _NUMBERED_STEP.findall("\n".join(user_texts))
    if len(steps) > 1:
        return [s.strip() for s in steps]
    return list(FALLBACK_STEPS)


class ImportService:
    def __init__(self, manager: PromptManager) -> None:
        self.manager = manager

    # ------------------------------------------------------------------
    # Batch entry points
    # ------------------------------------------------------------------

    def import_from_files(self, paths: Iterable[Path | str], options: ImportOptions | None = None) -> ImportResult:
        """Import each file in turn. A failing file is recorded and skipped."""
        result = ImportResult()
        for raw in paths:
            path = Path(raw)
            result.summary.total_files += 1
            try:
                outcome = self.import_from_content(
                    path.read_text(encoding="utf-8"), options, filename=path.name
                )
            except (OSError, ValueError) as exc:
                logger.warning("Import of %s failed: %s", path.name, exc)
                outcome = FailedOutcome(filename=path.name, error=str(exc))
            result.add(outcome)
        return result

    def import_from_directory(
        self,
        directory: Path | str,
        options: ImportOptions | None = None,
        pattern: str = "*.json",
    ) -> ImportResult:
        directory = Path(directory)
        if not directory.is_dir():
            raise NotFoundError(f"Directory '{directory}' not found")
        files = sorted(p for p in directory.glob(pattern) if p.is_file())
        return self.import_from_files(files, options)

    def import_from_content(
        self,
        content: str | dict[str, Any],
        options: ImportOptions | None = None,
        *,
        filename: str | None = None,
    ) -> ImportOutcome:
        """Import one payload.

        Returns an :class:`ImportedOutcome` or, when a conflict is resolved
        by skipping, a :class:`SkippedOutcome`. Invalid payloads raise.
        """
        options = options or ImportOptions()
        if isinstance(content, str):
            try:
                parsed = json.loads(content)
            except json.JSONDecodeError as exc:
                raise ValidationError(f"Invalid JSON content: {exc}") from None
        else:
            parsed = content
        if not isinstance(parsed, dict):
            raise ValidationError("Import content must be a JSON object")
        parsed = unwrap_export(parsed)

        validation = self.validate_import_content(parsed, options)
        if not validation.is_valid and options.validate_before_import:
            raise ValidationError.from_errors("Import validation failed", validation.errors)
        source = options.source_provider or validation.detected_provider
        if source is None:
            raise ValidationError(
                "Could not detect provider format. Please specify source_provider in options."
            )

        record = self.convert_to_internal_format(parsed, source, options)
        self._backfill_variables(record, parsed)

        variant = self.detect_variant_characteristics(record)
        if variant.is_variant and not options.force_as_base_prompt:
            as_base = self._handle_variant_detection(variant, options)
            if not as_base and options.allow_variant_import:
                raise PreconditionError(
                    "Variant import not yet implemented. "
                    "Use force_as_base_prompt=True to import as base prompt."
                )
        self.clean_variant_metadata(record)

        if record.prompt_structured is None:
            record.prompt_structured = StructuredPrompt(
                system=[record.prompt_human.goal or DEFAULT_SYSTEM],
                user_template="\n\n".join(record.prompt_human.steps) or record.prompt_human.goal,
            )

        check = record.validate_record()
        if not check.is_valid:
            raise ValidationError.from_errors("Invalid imported prompt", check.errors)

        existing = self.find_existing(record)
        if existing is not None:
            return self._resolve_conflict(record, existing, options, filename)
        return ImportedOutcome(record=self._store(record))

    # ------------------------------------------------------------------
    # Format detection and validation
    # ------------------------------------------------------------------

    @staticmethod
    def detect_provider_format(content: Any) -> FormatDetection:
        """First matching shape wins: internal, anthropic, openai, meta."""
        if not isinstance(content, dict):
            return FormatDetection()
        if "prompt_human" in content or "prompt_structured" in content:
            return FormatDetection(provider="internal", confidence=1.0)

        messages = content.get("messages")
        if not isinstance(messages, list):
            return FormatDetection()
        system = content.get("system")
        if isinstance(system, str) and system.strip():
            return FormatDetection(provider="anthropic", confidence=0.9)
        if all(
            isinstance(m, dict) and m.get("role") in CHAT_ROLES and m.get("content")
            for m in messages
        ):
            return FormatDetection(provider="openai", confidence=0.9)
        if any(
            isinstance(m, dict)
            and (m.get("role") == "system" or (m.get("role") == "user" and isinstance(m.get("content"), str)))
            for m in messages
        ):
            return FormatDetection(provider="meta", confidence=0.7)
        return FormatDetection()

    def validate_import_content(self, content: Any, options: ImportOptions | None = None) -> ImportValidation:
        options = options or ImportOptions()
        if not isinstance(content, dict):
            return ImportValidation(
                is_valid=False,
                errors=["Content must be a valid object"],
                suggestions=["Ensure the file contains valid JSON"],
            )

        errors: list[str] = []
        suggestions: list[str] = []
        detection = self.detect_provider_format(content)
        if detection.provider is None and options.source_provider is None:
            errors.append("Could not detect provider format")
            suggestions.append("Specify source_provider in import options")

        provider = options.source_provider or detection.provider
        has_messages = isinstance(content.get("messages"), list)
        match provider:
            case "openai":
                if not has_messages:
                    errors.append("OpenAI format requires messages array")
                elif not content["messages"]:
                    errors.append("Messages array cannot be empty")
            case "anthropic":
                if not has_messages:
                    errors.append("Anthropic format requires messages array")
                if not isinstance(content.get("system"), str):
                    suggestions.append("Anthropic format typically includes system field")
            case "meta":
                if not has_messages:
                    errors.append("Meta format requires messages array")
            case "internal":
                if "prompt_human" not in content and "prompt_structured" not in content:
                    errors.append("Internal format requires prompt_human or prompt_structured")
            case None:
                pass
            case _:
                errors.append(f"Unknown provider format: {provider}")

        meta = content.get("_metadata")
        if meta is not None and not isinstance(meta, dict):
            errors.append("_metadata must be an object")
        elif isinstance(meta, dict) and not isinstance(meta.get("originalPrompt") or {}, dict):
            errors.append("_metadata.originalPrompt must be an object")
        if provider == "internal" and not isinstance(content.get("metadata") or {}, dict):
            errors.append("metadata must be an object")

        return ImportValidation(
            is_valid=not errors,
            errors=errors,
            suggestions=suggestions,
            detected_provider=detection.provider,
            confidence=detection.confidence,
        )

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def convert_to_internal_format(
        self, content: dict[str, Any], source_provider: str, options: ImportOptions | None = None
    ) -> PromptRecord:
        options = options or ImportOptions()
        match source_provider:
            case "openai" | "meta":
                return self._from_chat(content, options)
            case "anthropic":
                return self._from_anthropic(content, options)
            case "internal":
                return self._from_internal(content, options)
            case _:
                raise ValidationError(f"Unsupported provider format: {source_provider}")

    def _from_chat(self, content: dict[str, Any], options: ImportOptions) -> PromptRecord:
        messages = _messages(content)
        system = [s for s in _role_texts(messages, "system") if s]
        user = _role_texts(messages, "user")
        meta = _mapping(content.get("_metadata"))
        original = _mapping(meta.get("originalPrompt"))

        title = meta.get("promptTitle") or (extract_title(user[0]) if user else None) or "Imported OpenAI Prompt"
        if system:
            goal = _truncate(system[0], 200)
        elif user:
            goal = f"Help with: {_truncate(user[0], 100)}"
        else:
            goal = "Imported prompt goal"
        human = HumanPrompt(
            goal=original.get("goal") or goal,
            audience=original.get("audience") or "General",
            steps=extract_steps(user),
            output_expectations=OutputExpectations(format="Text"),
        )
        return self._build_record(title, human, system or [original.get("goal") or DEFAULT_SYSTEM],
                                  "\n\n".join(user), options)

    def _from_anthropic(self, content: dict[str, Any], options: ImportOptions) -> PromptRecord:
        messages = _messages(content)
        system_text = _text_of(content.get("system"))
        user = _role_texts(messages, "user")
        meta = _mapping(content.get("_metadata"))
        original = _mapping(meta.get("originalPrompt"))

        title = meta.get("promptTitle") or (extract_title(user[0]) if user else None) or "Imported Anthropic Prompt"
        human = HumanPrompt(
            goal=original.get("goal") or (_truncate(system_text, 200) if system_text else "Imported goal"),
            audience=original.get("audience") or "General",
            steps=extract_steps(user),
            output_expectations=OutputExpectations(format="Text"),
        )
        system = [system_text] if system_text else [original.get("goal") or DEFAULT_SYSTEM]
        return self._build_record(title, human, system, "\n\n".join(user), options)

    def _from_internal(self, content: dict[str, Any], options: ImportOptions) -> PromptRecord:
        data = {
            k: v for k, v in content.items()
            if k not in ("id", "version", "created_at", "updated_at", "history", "renders", "_metadata")
        }
        data["metadata"] = {"title": "Imported Prompt", **_mapping(data.get("metadata"))}
        try:
            record = PromptRecord.model_validate(data)
        except PydanticValidationError as exc:
            errors = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]
            raise ValidationError.from_errors("Invalid internal prompt", errors) from None

        if options.default_owner:
            record.metadata.owner = options.default_owner
        elif not record.metadata.owner:
            record.metadata.owner = "unknown"
        if options.default_tags:
            record.metadata.tags = [*record.metadata.tags, *options.default_tags]
        slug = slugify(record.slug or record.metadata.title)
        record.slug = _prefixed(slug, options)
        return record

    def _build_record(
        self,
        title: str,
        human: HumanPrompt,
        system: list[str],
        user_template: str,
        options: ImportOptions,
    ) -> PromptRecord:
        variables = variables_from_template("\n".join([user_template, *system]))
        structured = StructuredPrompt(
            system=system,
            user_template=user_template,
            variables=[v.key for v in variables],
        )
        slug = slugify(title)
        return PromptRecord(
            slug=_prefixed(slug, options),
            status="draft",
            metadata=PromptMetadata(
                title=title,
                summary=f"Imported prompt: {title}",
                tags=list(options.default_tags or ["imported"]),
                owner=options.default_owner or "unknown",
            ),
            prompt_human=human,
            prompt_structured=structured,
            variables=variables,
        )

    @staticmethod
    def _backfill_variables(record: PromptRecord, content: dict[str, Any]) -> None:
        """Restore variable definitions an export substituted away."""
        used = _mapping(content.get("_metadata")).get("variablesUsed")
        if not isinstance(used, list) or record.prompt_structured is None:
            return
        names = [n.strip() for n in used if isinstance(n, str) and n.strip()]
        if names and not record.prompt_structured.variables:
            record.prompt_structured.variables = names
            record.variables = [
                Variable(key=name, label=humanize_variable_name(name)) for name in names
            ]

    # ------------------------------------------------------------------
    # Variants
    # ------------------------------------------------------------------

    @staticmethod
    def detect_variant_characteristics(record: PromptRecord) -> VariantDetection:
        """Heuristic check for a provider-tuned copy of some base prompt."""
        metadata = record.metadata
        indicators: list[str] = []
        for tag in metadata.tags:
            if tag.lower() in _VARIANT_TAGS:
                indicators.append(f"Tag: {tag}")
            if _PROVIDER_MODEL_TAG.search(tag):
                indicators.append(f"Provider-model tag: {tag}")
        if metadata.variant_of:
            indicators.append(f"Linked to base prompt: {metadata.variant_of}")
        if metadata.tuned_for_provider:
            indicators.append(f"Tuned for provider: {metadata.tuned_for_provider}")
        if metadata.preferred_model:
            indicators.append(f"Preferred model: {metadata.preferred_model}")
        if any(p.search(metadata.title) for p in _VARIANT_TITLE_PATTERNS):
            indicators.append(f"Title pattern: {metadata.title}")
        return VariantDetection(
            is_variant=bool(indicators),
            indicators=indicators,
            confidence=min(len(indicators) / 3, 1.0),
        )

    @staticmethod
    def _handle_variant_detection(variant: VariantDetection, options: ImportOptions) -> bool:
        """True when a detected variant should be imported as a base prompt."""
        if options.force_as_base_prompt:
            return True
        if options.force_as_variant:
            return False
        if options.on_variant_detected is not None:
            return bool(options.on_variant_detected(variant))
        return True

    @staticmethod
    def clean_variant_metadata(record: PromptRecord) -> None:
        """Strip variant markers so ``record`` imports as a base prompt."""
        metadata = record.metadata
        metadata.variant_of = None
        metadata.tuned_for_provider = None
        metadata.preferred_model = None
        tags = [
            t for t in metadata.tags
            if t.lower() not in _VARIANT_TAGS and not _PROVIDER_MODEL_TAG.search(t)
        ]

        title = metadata.title
        for pattern in _VARIANT_TITLE_SUFFIXES:
            title = pattern.sub("", title, count=1)
        metadata.title = title.strip() or metadata.title
        summary = metadata.summary
        for pattern in _VARIANT_TITLE_SUFFIXES[2:]:
            summary = pattern.sub("", summary, count=1)
        metadata.summary = summary.strip()

        for marker in ("imported", "base-prompt"):
            if marker not in tags:
                tags.append(marker)
        metadata.tags = tags

    # ------------------------------------------------------------------
    # Persistence and conflicts
    # ------------------------------------------------------------------

    def find_existing(self, record: PromptRecord) -> PromptRecord | None:
        """Stored prompt with the same slug, else the same title (case-insensitive)."""
        try:
            return self.manager.get_prompt_by_slug(record.slug)
        except NotFoundError:
            pass
        title = record.metadata.title.casefold()
        for candidate in self.manager.list_prompts():
            if candidate.metadata.title.casefold() == title:
                return candidate
        return None

    def _resolve_conflict(
        self,
        record: PromptRecord,
        existing: PromptRecord,
        options: ImportOptions,
        filename: str | None,
    ) -> ImportOutcome:
        match options.conflict_resolution:
            case "skip":
                logger.info("Skipping import of %s: %s already exists", filename or record.slug, existing.slug)
                return SkippedOutcome(
                    filename=filename,
                    reason=f"Prompt '{existing.slug}' already exists",
                    existing_id=existing.id,
                )
            case "overwrite":
                incoming = record.metadata.model_dump(mode="json", exclude_unset=True)
                if not options.default_owner:
                    incoming.pop("owner", None)
                metadata = {**existing.metadata.model_dump(mode="json"), **incoming}
                updated = self.manager.update_prompt(existing.id, {
                    "prompt_human": record.prompt_human,
                    "prompt_structured": record.prompt_structured,
                    "variables": record.variables,
                    "metadata": metadata,
                })
                return ImportedOutcome(record=updated)
            case "create_new" | "prompt":
                # No interactive prompt exists; "prompt" behaves like create_new.
                record.slug = f"{record.slug}-imported-{int(time.time() * 1000)}"
                record.metadata.title = f"{record.metadata.title} (Imported)"
                return ImportedOutcome(record=self._store(record))
            case _:
                raise ValidationError(
                    f"Unknown conflict resolution strategy: {options.conflict_resolution}"
                )

    def _store(self, record: PromptRecord) -> PromptRecord:
        created = self.manager.create_prompt(record.prompt_human, record.metadata, slug=record.slug)
        logger.info("Imported prompt %s (%s)", created.slug, created.id)
        if record.prompt_structured is None and not record.variables:
            return created
        return self.manager.update_prompt(
            created.id,
            {"prompt_structured": record.prompt_structured, "variables": record.variables},
            author=created.metadata.owner,
        )
