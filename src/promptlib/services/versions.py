"""Version entries and field-by-field comparison of prompt snapshots."""

from __future__ import annotations

import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from promptlib.errors import ValidationError
from promptlib.schemas.prompt import (
    PromptRecord,
    PromptVersion,
    ValidationResult,
    Variable,
    utc_now_iso,
)

ChangeType = Literal["added", "modified", "removed"]


class VersionDiff(BaseModel):
    field: str
    old_value: Any = None
    new_value: Any = None
    change_type: ChangeType


class VersionComparison(BaseModel):
    from_version: int
    to_version: int
    changes: list[VersionDiff] = Field(default_factory=list)
    summary: str

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_dump(v) for v in value]
    return value


def _variables_equal(a: Variable, b: Variable) -> bool:
    return (
        a.key == b.key
        and a.label == b.label
        and a.type == b.type
        and a.required == b.required
        and a.sensitive == b.sensitive
        and a.default_value == b.default_value
        and list(a.options or []) == list(b.options or [])
    )


class VersionManager:
    """Creates immutable version entries and diffs two records."""

    def create_version(self, prompt: PromptRecord, *, author: str, message: str) -> PromptVersion:
        """Build an entry numbered with ``prompt.version`` as it stands now.

        Bumping ``prompt.version`` is left to the caller; see
        :meth:`record_version` for the combined operation.
        """
        errors: list[str] = []
        if not author or not author.strip():
            errors.append("Author is required for version creation")
        if not message or not message.strip():
            errors.append("Change message is required for version creation")
        if errors:
            raise ValidationError.from_errors("Invalid version data", errors)

        version = PromptVersion(
            number=prompt.version,
            message=message.strip(),
            created_at=utc_now_iso(),
            author=author.strip(),
        )
        result = self.validate_version(version)
        if not result.is_valid:
            raise ValidationError.from_errors("Invalid version data", result.errors)
        return version

    def record_version(self, prompt: PromptRecord, *, author: str, message: str) -> PromptVersion:
        """Bump ``prompt.version`` and append the matching history entry.

        The entry is validated before the record is touched, so a rejected
        author or message leaves the record unchanged.
        """
        candidate = prompt.model_copy(update={"version": prompt.version + 1})
        version = self.create_version(candidate, author=author, message=message)
        prompt.version = version.number
        prompt.updated_at = version.created_at
        prompt.history.versions.append(version)
        return version

    def compare_versions(self, old: PromptRecord, new: PromptRecord) -> VersionComparison:
        changes: list[VersionDiff] = []
        self._compare_metadata(old, new, changes)
        self._compare_human(old, new, changes)
        self._compare_structured(old, new, changes)
        self._compare_variables(old, new, changes)
        if old.status != new.status:
            changes.append(VersionDiff(
                field="status", old_value=old.status, new_value=new.status, change_type="modified"
            ))
        return VersionComparison(
            from_version=old.version,
            to_version=new.version,
            changes=changes,
            summary=self.generate_change_summary(changes),
        )

    @staticmethod
    def generate_change_summary(changes: list[VersionDiff]) -> str:
        if not changes:
            return "No changes detected"
        parts: list[str] = []
        for change_type, label in (("modified", "Modified"), ("added", "Added"), ("removed", "Removed")):
            fields = [c.field for c in changes if c.change_type == change_type]
            if fields:
                parts.append(f"{label}: {', '.join(fields)}")
        return "; ".join(parts)

    @staticmethod
    def get_version_history(prompt: PromptRecord) -> list[PromptVersion]:
        """Return version entries, most recent first."""
        return sorted(prompt.history.versions, key=lambda v: v.number, reverse=True)

    @staticmethod
    def get_version_details(prompt: PromptRecord, number: int) -> PromptVersion | None:
        for version in prompt.history.versions:
            if version.number == number:
                return version
        return None

    @staticmethod
    def validate_version(version: PromptVersion) -> ValidationResult:
        errors: list[str] = []
        if not isinstance(version.number, int) or version.number < 1:
            errors.append("Version number must be a positive integer")
        if not version.message or not version.message.strip():
            errors.append("Version message is required")
        if not version.author or not version.author.strip():
            errors.append("Version author is required")
        if not version.created_at:
            errors.append("Version creation timestamp is required")
        else:
            try:
                datetime.datetime.fromisoformat(version.created_at.replace("Z", "+00:00"))
            except ValueError:
                errors.append("Version creation timestamp must be a valid ISO 8601 date")
        return ValidationResult.of(errors)

    # ------------------------------------------------------------------
    # Field comparisons
    # ------------------------------------------------------------------

    @staticmethod
    def _modified(changes: list[VersionDiff], field: str, old: Any, new: Any) -> None:
        if old != new:
            changes.append(VersionDiff(
                field=field, old_value=_dump(old), new_value=_dump(new), change_type="modified"
            ))

    def _compare_metadata(self, old: PromptRecord, new: PromptRecord, changes: list[VersionDiff]) -> None:
        self._modified(changes, "metadata.title", old.metadata.title, new.metadata.title)
        self._modified(changes, "metadata.summary", old.metadata.summary, new.metadata.summary)
        self._modified(changes, "metadata.owner", old.metadata.owner, new.metadata.owner)
        old_tags = list(dict.fromkeys(old.metadata.tags))
        new_tags = list(dict.fromkeys(new.metadata.tags))
        if set(old_tags) != set(new_tags):
            changes.append(VersionDiff(
                field="metadata.tags", old_value=old_tags, new_value=new_tags, change_type="modified"
            ))

    def _compare_human(self, old: PromptRecord, new: PromptRecord, changes: list[VersionDiff]) -> None:
        a, b = old.prompt_human, new.prompt_human
        self._modified(changes, "prompt_human.goal", a.goal, b.goal)
        self._modified(changes, "prompt_human.audience", a.audience, b.audience)
        self._modified(changes, "prompt_human.steps", a.steps, b.steps)
        self._modified(
            changes,
            "prompt_human.output_expectations.format",
            a.output_expectations.format,
            b.output_expectations.format,
        )
        self._modified(
            changes,
            "prompt_human.output_expectations.fields",
            a.output_expectations.fields,
            b.output_expectations.fields,
        )

    def _compare_structured(self, old: PromptRecord, new: PromptRecord, changes: list[VersionDiff]) -> None:
        a, b = old.prompt_structured, new.prompt_structured
        if a is None and b is None:
            return
        if a is None:
            changes.append(VersionDiff(
                field="prompt_structured", new_value=_dump(b), change_type="added"
            ))
            return
        if b is None:
            changes.append(VersionDiff(
                field="prompt_structured", old_value=_dump(a), change_type="removed"
            ))
            return
        self._modified(changes, "prompt_structured.schema_version", a.schema_version, b.schema_version)
        self._modified(changes, "prompt_structured.system", a.system, b.system)
        self._modified(changes, "prompt_structured.capabilities", a.capabilities, b.capabilities)
        self._modified(changes, "prompt_structured.user_template", a.user_template, b.user_template)
        self._modified(changes, "prompt_structured.variables", a.variables, b.variables)
        old_rules = [(r.name, r.description) for r in a.rules]
        new_rules = [(r.name, r.description) for r in b.rules]
        if old_rules != new_rules:
            changes.append(VersionDiff(
                field="prompt_structured.rules",
                old_value=_dump(a.rules),
                new_value=_dump(b.rules),
                change_type="modified",
            ))

    @staticmethod
    def _compare_variables(old: PromptRecord, new: PromptRecord, changes: list[VersionDiff]) -> None:
        old_map = {v.key: v for v in old.variables}
        new_map = {v.key: v for v in new.variables}
        for key, variable in new_map.items():
            if key not in old_map:
                changes.append(VersionDiff(
                    field=f"variables.{key}", new_value=_dump(variable), change_type="added"
                ))
        for key, variable in old_map.items():
            if key not in new_map:
                changes.append(VersionDiff(
                    field=f"variables.{key}", old_value=_dump(variable), change_type="removed"
                ))
        for key, variable in new_map.items():
            previous = old_map.get(key)
            if previous is not None and not _variables_equal(previous, variable):
                changes.append(VersionDiff(
                    field=f"variables.{key}",
                    old_value=_dump(previous),
                    new_value=_dump(variable),
                    change_type="modified",
                ))
