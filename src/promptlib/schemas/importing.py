from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from promptlib.schemas.prompt import PromptRecord

SourceFormat = Literal["internal", "openai", "anthropic", "meta"]
ConflictResolution = Literal["skip", "overwrite", "create_new", "prompt"]

SOURCE_FORMATS: tuple[str, ...] = ("internal", "openai", "anthropic", "meta")


class VariantDetection(BaseModel):
    is_variant: bool
    indicators: list[str] = Field(default_factory=list)
    confidence: float = 0.0


class ImportOptions(BaseModel):
    source_provider: SourceFormat | None = None
    conflict_resolution: ConflictResolution = "skip"
    default_owner: str | None = None
    default_tags: list[str] | None = None
    slug_prefix: str | None = None
    validate_before_import: bool = True
    force_as_base_prompt: bool = False
    force_as_variant: bool = False
    allow_variant_import: bool = False
    # Returns True to import a detected variant as a base prompt.
    on_variant_detected: Callable[[VariantDetection], bool] | None = Field(default=None, exclude=True)


class FormatDetection(BaseModel):
    provider: SourceFormat | None = None
    confidence: float = 0.0


class ImportValidation(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    detected_provider: SourceFormat | None = None
    confidence: float = 0.0


class ImportedOutcome(BaseModel):
    outcome: Literal["imported"] = "imported"
    record: PromptRecord


class SkippedOutcome(BaseModel):
    outcome: Literal["skipped"] = "skipped"
    filename: str | None = None
    reason: str
    existing_id: str | None = None


class FailedOutcome(BaseModel):
    outcome: Literal["failed"] = "failed"
    filename: str | None = None
    error: str


ImportOutcome = Annotated[
    Union[ImportedOutcome, SkippedOutcome, FailedOutcome],
    Field(discriminator="outcome"),
]


class ImportSummary(BaseModel):
    total_files: int = 0
    imported: int = 0
    skipped: int = 0
    failed: int = 0


class ImportResult(BaseModel):
    imported: list[ImportedOutcome] = Field(default_factory=list)
    skipped: list[SkippedOutcome] = Field(default_factory=list)
    failed: list[FailedOutcome] = Field(default_factory=list)
    summary: ImportSummary = Field(default_factory=ImportSummary)

    def add(self, outcome: ImportOutcome) -> None:
        if isinstance(outcome, ImportedOutcome):
            self.imported.append(outcome)
            self.summary.imported += 1
        elif isinstance(outcome, SkippedOutcome):
            self.skipped.append(outcome)
            self.summary.skipped += 1
        else:
            self.failed.append(outcome)
            self.summary.failed += 1
