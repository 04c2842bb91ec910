"""Version history views and the in-process audit trail."""

from __future__ import annotations

import uuid
from collections import Counter
from typing import Any, Literal

from pydantic import BaseModel, Field

from promptlib.errors import ValidationError
from promptlib.schemas.prompt import PromptRating, PromptRecord, utc_now_iso
from promptlib.services.versions import VersionManager

AuditAction = Literal["created", "updated", "enhanced", "rated", "rendered", "deleted"]


class AuditTrailEntry(BaseModel):
    id: str = Field(default_factory=lambda: f"audit_{uuid.uuid4().hex[:12]}")
    prompt_id: str
    action: AuditAction
    version: int
    author: str
    timestamp: str = Field(default_factory=utc_now_iso)
    details: dict[str, Any] = Field(default_factory=dict)


class HistoryEntry(BaseModel):
    version: int
    message: str
    author: str
    created_at: str
    ratings: list[PromptRating] = Field(default_factory=list)
    previous_version: int | None = None


class VersionFrequency(BaseModel):
    version: int
    ratings_count: int
    average_rating: float


class VersionStatistics(BaseModel):
    total_versions: int
    total_ratings: int
    average_rating: float
    most_active_author: str
    version_frequency: list[VersionFrequency]


def apply_rating(prompt: PromptRecord, *, user: str, score: int, note: str = "") -> PromptRating:
    """Keep only the latest rating per user on ``prompt``."""
    errors = []
    if not user or not user.strip():
        errors.append("Rating user is required")
    if not isinstance(score, int) or not 1 <= score <= 5:
        errors.append("Score must be an integer between 1 and 5")
    if errors:
        raise ValidationError.from_errors("Invalid rating", errors)
    rating = PromptRating(user=user.strip(), score=score, note=note)
    prompt.history.ratings = [r for r in prompt.history.ratings if r.user != rating.user]
    prompt.history.ratings.append(rating)
    return rating


class AuditTrailStore:
    """Audit entries grouped by prompt id.

    Create one per process and hand it to every service that records or
    reads audit entries. Nothing here is persisted.
    """

    def __init__(self) -> None:
        self._entries: dict[str, list[AuditTrailEntry]] = {}

    def append(self, entry: AuditTrailEntry) -> None:
        self._entries.setdefault(entry.prompt_id, []).append(entry)

    def entries_for(self, prompt_id: str) -> list[AuditTrailEntry]:
        return list(self._entries.get(prompt_id, []))

    def clear(self, prompt_id: str) -> None:
        self._entries.pop(prompt_id, None)

    def prompt_ids(self) -> list[str]:
        return list(self._entries)


class HistoryService:
    def __init__(self, store: AuditTrailStore, version_manager: VersionManager | None = None) -> None:
        self.store = store
        self.version_manager = version_manager or VersionManager()

    def get_history_display(
        self,
        prompt: PromptRecord,
        *,
        include_changes: bool = False,
        include_ratings: bool = True,
        max_entries: int | None = None,
        from_version: int | None = None,
        to_version: int | None = None,
    ) -> list[HistoryEntry]:
        """Version entries newest first, optionally windowed and truncated."""
        versions = self.version_manager.get_version_history(prompt)
        if from_version is not None:
            versions = [v for v in versions if v.number >= from_version]
        if to_version is not None:
            versions = [v for v in versions if v.number <= to_version]
        if max_entries:
            versions = versions[:max_entries]

        entries = []
        for index, version in enumerate(versions):
            previous = None
            if include_changes and index + 1 < len(versions):
                previous = versions[index + 1].number
            entries.append(HistoryEntry(
                version=version.number,
                message=version.message,
                author=version.author,
                created_at=version.created_at,
                ratings=self.get_version_ratings(prompt, version.number) if include_ratings else [],
                previous_version=previous,
            ))
        return entries

    def add_audit_entry(
        self,
        prompt_id: str,
        action: AuditAction,
        *,
        version: int,
        author: str,
        details: dict[str, Any] | None = None,
    ) -> AuditTrailEntry:
        entry = AuditTrailEntry(
            prompt_id=prompt_id,
            action=action,
            version=version,
            author=author,
            details=details or {},
        )
        self.store.append(entry)
        return entry

    def get_audit_trail(self, prompt_id: str) -> list[AuditTrailEntry]:
        """Entries for ``prompt_id``, most recent first."""
        return list(reversed(self.store.entries_for(prompt_id)))

    def clear_audit_trail(self, prompt_id: str) -> None:
        self.store.clear(prompt_id)

    @staticmethod
    def get_version_ratings(prompt: PromptRecord, version: int) -> list[PromptRating]:
        # Ratings on the record are not version-scoped.
        return list(prompt.history.ratings)

    def associate_rating_with_version(
        self, prompt: PromptRecord, *, user: str, score: int, note: str = "", version: int | None = None
    ) -> PromptRating:
        """Replace ``user``'s rating on ``prompt`` and audit it."""
        rating = apply_rating(prompt, user=user, score=score, note=note)
        target = version if version is not None else prompt.version
        self.add_audit_entry(
            prompt.id,
            "rated",
            version=target,
            author=user,
            details={"score": score, "note": note, "target_version": target},
        )
        return rating

    @staticmethod
    def get_version_statistics(prompt: PromptRecord) -> VersionStatistics:
        versions = prompt.history.versions
        ratings = prompt.history.ratings
        authors = Counter(v.author for v in versions)
        average = sum(r.score for r in ratings) / len(ratings) if ratings else 0.0
        return VersionStatistics(
            total_versions=len(versions),
            total_ratings=len(ratings),
            average_rating=round(average, 2),
            most_active_author=authors.most_common(1)[0][0] if authors else "",
            version_frequency=[
                VersionFrequency(
                    version=v.number,
                    ratings_count=len(ratings) if v.number == prompt.version else 0,
                    average_rating=round(average, 2) if v.number == prompt.version else 0.0,
                )
                for v in versions
            ],
        )
