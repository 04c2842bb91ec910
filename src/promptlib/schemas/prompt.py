from __future__ import annotations

import datetime
import re
import uuid
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

PromptStatus = Literal["draft", "active", "archived"]
VariableType = Literal["string", "number", "select", "multiselect", "boolean"]

PROMPT_STATUSES: tuple[str, ...] = ("draft", "active", "archived")
VARIABLE_TYPES: tuple[str, ...] = ("string", "number", "select", "multiselect", "boolean")

PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")
SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def utc_now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def extract_variable_names(template: str) -> list[str]:
    """Return unique placeholder names in first-occurrence order."""
    names: list[str] = []
    for match in PLACEHOLDER.finditer(template or ""):
        name = match.group(1).strip()
        if name and name not in names:
            names.append(name)
    return names


class ValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def of(cls, errors: list[str], warnings: list[str] | None = None) -> ValidationResult:
        return cls(is_valid=not errors, errors=errors, warnings=warnings or [])


class PromptMetadata(BaseModel):
    title: str
    summary: str = ""
    tags: list[str] = Field(default_factory=list)
    owner: str = ""
    # Set on provider/model-tuned copies of a base prompt.
    variant_of: str | None = None
    tuned_for_provider: str | None = None
    preferred_model: str | None = None


class OutputExpectations(BaseModel):
    format: str = ""
    fields: list[str] = Field(default_factory=list)


class HumanPrompt(BaseModel):
    """The free-form, human-written prompt every record starts from."""

    goal: str = ""
    audience: str = ""
    steps: list[str] = Field(default_factory=list)
    output_expectations: OutputExpectations = Field(default_factory=OutputExpectations)

    def validate_prompt(self) -> ValidationResult:
        errors: list[str] = []
        if not self.goal.strip():
            errors.append("Goal is required and cannot be empty")
        if not self.audience.strip():
            errors.append("Audience is required and cannot be empty")
        if not self.steps:
            errors.append("At least one step is required")
        for index, step in enumerate(self.steps, start=1):
            if not step.strip():
                errors.append(f"Step {index} cannot be empty")
        if not self.output_expectations.format.strip():
            errors.append("Output format is required")
        return ValidationResult.of(errors)

    def __str__(self) -> str:
        parts = [f"Goal: {self.goal}", f"Audience: {self.audience}", "Steps:"]
        parts += [f"  {i}. {step}" for i, step in enumerate(self.steps, start=1)]
        parts.append(f"Output Format: {self.output_expectations.format}")
        parts.append(f"Expected Fields: {', '.join(self.output_expectations.fields)}")
        return "\n".join(parts)


class Rule(BaseModel):
    name: str
    description: str


class StructuredPrompt(BaseModel):
    """Enhanced, variable-parameterized form of a prompt."""

    schema_version: int = 1
    system: list[str] = Field(default_factory=list)
    capabilities: list[str] = Field(default_factory=list)
    user_template: str = ""
    rules: list[Rule] = Field(default_factory=list)
    variables: list[str] = Field(default_factory=list)

    def template_variables(self) -> list[str]:
        return extract_variable_names(self.user_template)

    def validate_prompt(self) -> ValidationResult:
        errors: list[str] = []
        if self.schema_version < 1:
            errors.append("Schema version must be a positive number")
        if not self.system:
            errors.append("At least one system instruction is required")
        for index, instruction in enumerate(self.system, start=1):
            if not instruction.strip():
                errors.append(f"System instruction {index} cannot be empty")
        if not self.user_template.strip():
            errors.append("User template is required and cannot be empty")
        for index, rule in enumerate(self.rules, start=1):
            if not rule.name.strip():
                errors.append(f"Rule {index} name is required")
            if not rule.description.strip():
                errors.append(f"Rule {index} description is required")
        missing = [v for v in self.template_variables() if v not in self.variables]
        if missing:
            errors.append(f"Template references undefined variables: {', '.join(missing)}")
        return ValidationResult.of(errors)


class Variable(BaseModel):
    key: str
    label: str
    type: VariableType = "string"
    required: bool = True
    options: list[str] | None = None
    sensitive: bool = False
    default_value: Any = None

    def validate_variable(self) -> list[str]:
        errors: list[str] = []
        if not self.key:
            errors.append("Variable key is required")
        if not self.label:
            errors.append(f"Variable '{self.key}' label is required")
        if self.type in ("select", "multiselect") and not self.options:
            errors.append(f"Variable '{self.key}' of type '{self.type}' must have options")
        return errors


class PromptVersion(BaseModel):
    model_config = ConfigDict(frozen=True)

    number: int
    message: str
    created_at: str
    author: str


class PromptRating(BaseModel):
    user: str
    score: int
    note: str = ""
    created_at: str = Field(default_factory=utc_now_iso)


class PromptHistory(BaseModel):
    versions: list[PromptVersion] = Field(default_factory=list)
    ratings: list[PromptRating] = Field(default_factory=list)


class PromptRender(BaseModel):
    provider: str
    model_hint: str
    version_of_prompt: int
    created_at: str = Field(default_factory=utc_now_iso)
    content_ref: str


class PromptRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    slug: str = ""
    version: int = 1
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    status: PromptStatus = "draft"
    metadata: PromptMetadata
    prompt_human: HumanPrompt = Field(default_factory=HumanPrompt)
    prompt_structured: StructuredPrompt | None = None
    variables: list[Variable] = Field(default_factory=list)
    history: PromptHistory = Field(default_factory=PromptHistory)
    renders: list[PromptRender] = Field(default_factory=list)

    def validate_record(self) -> ValidationResult:
        errors: list[str] = []
        if not self.id:
            errors.append("ID is required")
        if not self.slug:
            errors.append("Slug is required")
        elif not SLUG_PATTERN.fullmatch(self.slug):
            errors.append("Slug may only contain lowercase letters, digits and single hyphens")
        if not self.metadata.title.strip():
            errors.append("Title is required")
        if not self.prompt_human.goal.strip():
            errors.append("Goal is required")
        if self.status not in PROMPT_STATUSES:
            errors.append(f"Status must be one of: {', '.join(PROMPT_STATUSES)}")
        if self.version < 1:
            errors.append("Version must be a positive integer")
        for variable in self.variables:
            errors.extend(variable.validate_variable())
        return ValidationResult.of(errors)

    @property
    def average_rating(self) -> float:
        if not self.history.ratings:
            return 0.0
        total = sum(r.score for r in self.history.ratings)
        return round(total / len(self.history.ratings), 2)


class PromptFilters(BaseModel):
    search: str | None = None
    tags: list[str] | None = None
    owner: str | None = None
    status: list[PromptStatus] | None = None
    min_rating: float | None = None
    sort_by: Literal["title", "created_at", "updated_at", "rating"] = "updated_at"
    sort_order: Literal["asc", "desc"] = "desc"
    page: int | None = Field(default=None, ge=1)
    limit: int | None = Field(default=None, ge=1)


class Question(BaseModel):
    variable_key: str
    text: str
    type: VariableType
    required: bool
    options: list[str] | None = None
    help_text: str | None = None

    @classmethod
    def from_variable(cls, variable: Variable) -> Question:
        text = variable.label or variable.key
        if variable.type == "number":
            text += " (enter a number)"
        elif variable.type == "boolean":
            text += " (yes/no)"
        elif variable.type in ("select", "multiselect"):
            kind = "choose one" if variable.type == "select" else "choose multiple"
            choices = ", ".join(variable.options or []) or "no options available"
            text += f" ({kind}: {choices})"
        if variable.required:
            text += " *"
        return cls(
            variable_key=variable.key,
            text=text,
            type=variable.type,
            required=variable.required,
            options=variable.options,
        )
