"""LLM-assisted conversion of human prompts into structured prompts."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from promptlib.config import DEFAULT_LLM_TIMEOUT, DEFAULT_OLLAMA_MODEL, DEFAULT_OLLAMA_URL
from promptlib.errors import ExternalServiceError
from promptlib.schemas.prompt import (
    HumanPrompt,
    Question,
    StructuredPrompt,
    ValidationResult,
    Variable,
)
from promptlib.services.variables import extract_variable_names, variables_from_template

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You are an expert prompt engineer specializing in converting human-readable prompts into \
structured, reusable formats. Your goal is to:

1. Preserve the original intent and meaning
2. Create clear, actionable system instructions
3. Design flexible user templates with appropriate variables
4. Define specific rules and constraints
5. Identify required capabilities
6. Ensure the result is provider-agnostic and reusable

Focus on clarity, specificity, and maintainability. Extract variables for any content that \
should be dynamic or reusable."""

RESPONSE_SHAPE = """\
Respond with a JSON object containing:
{
  "structured": {
    "schema_version": 1,
    "system": ["instruction1", "instruction2"],
    "capabilities": ["capability1", "capability2"],
    "user_template": "template with {{variables}}",
    "rules": [{"name": "rule1", "description": "desc1"}],
    "variables": ["var1", "var2"]
  },
  "changes_made": ["change1", "change2"],
  "warnings": ["warning1", "warning2"]
}"""

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class LLMService(Protocol):
    def complete(
        self,
        prompt: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 2000,
        system_prompt: str | None = None,
    ) -> str: ...


class EnhancementContext(BaseModel):
    target_provider: str | None = None
    domain_knowledge: str | None = None


class EnhancementResult(BaseModel):
    structured_prompt: StructuredPrompt
    questions: list[Question] = Field(default_factory=list)
    rationale: str
    confidence: float
    changes_made: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


def _canned(structured: dict[str, Any], changes: list[str]) -> str:
    return json.dumps(
        {"structured": {"schema_version": 1, **structured}, "changes_made": changes, "warnings": []},
        indent=2,
    )


_DEFAULT_RESPONSE = _canned(
    {
        "system": [
            "You are a helpful AI assistant designed to complete tasks efficiently and accurately.",
            "Always provide clear, well-structured responses that directly address the user's needs.",
        ],
        "capabilities": ["Text analysis and processing", "Information synthesis", "Clear communication"],
        "user_template": (
            "Please help me with the following task: {{task_description}}. The target audience is "
            "{{audience}} and I need the output in {{output_format}} format."
        ),
        "rules": [
            {"name": "Clarity", "description": "Always provide clear and unambiguous responses"},
            {"name": "Relevance", "description": "Stay focused on the specific task at hand"},
        ],
        "variables": ["task_description", "audience", "output_format"],
    },
    [
        "Converted free-form instructions into structured template format",
        "Added system context for role definition",
        "Extracted variables for reusability",
        "Defined specific rules for consistent behavior",
    ],
)

_PATTERN_RESPONSES = {
    "write a blog post": _canned(
        {
            "system": [
                "You are a professional content writer specializing in creating engaging blog posts.",
                "Your writing should be informative, well-structured, and tailored to the target audience.",
            ],
            "capabilities": ["Content creation and writing", "SEO optimization", "Audience engagement"],
            "user_template": (
                "Write a blog post about {{topic}} for {{target_audience}}. The post should be "
                "{{word_count}} words long, written in a {{tone}} tone, and include {{key_points}}."
            ),
            "rules": [
                {"name": "Engagement", "description": "Use compelling headlines and engaging introductions"},
                {"name": "Structure", "description": "Organize content with clear headings and logical flow"},
            ],
            "variables": ["topic", "target_audience", "word_count", "tone", "key_points"],
        },
        ["Structured the blog writing task with clear parameters", "Added professional content writer persona"],
    ),
    "analyze data": _canned(
        {
            "system": [
                "You are a data analyst expert capable of interpreting complex datasets.",
                "Your analysis should be thorough, objective, and supported by evidence from the data.",
            ],
            "capabilities": ["Statistical analysis", "Trend identification", "Report writing"],
            "user_template": (
                "Analyze the provided data and focus on {{analysis_focus}}. The analysis should suit "
                "{{stakeholder_level}}. Key metrics to examine: {{key_metrics}}."
            ),
            "rules": [
                {"name": "Objectivity", "description": "Support every conclusion with data"},
                {"name": "Actionability", "description": "Provide specific recommendations based on findings"},
            ],
            "variables": ["analysis_focus", "stakeholder_level", "key_metrics"],
        },
        ["Transformed general analysis request into structured data analysis framework"],
    ),
    "create a summary": _canned(
        {
            "system": [
                "You are an expert at creating concise, accurate summaries.",
                "Your summaries should be well-organized and highlight the most important points.",
            ],
            "capabilities": ["Information extraction", "Content synthesis", "Concise writing"],
            "user_template": (
                "Summarize the following content: {{content}}. The summary should be {{length}} and "
                "focus on {{focus_areas}}. Target audience: {{audience}}."
            ),
            "rules": [
                {"name": "Accuracy", "description": "Stay faithful to the source"},
                {"name": "Conciseness", "description": "Include only the most essential information"},
            ],
            "variables": ["content", "length", "focus_areas", "audience"],
        },
        ["Structured the summarization task with clear parameters"],
    ),
}


class MockLLMService:
    """Offline LLM returning canned enhancement responses.

    Registered patterns are matched case-insensitively against the prompt in
    insertion order; the most recently added pattern is checked first.
    """

    def __init__(self) -> None:
        self._responses: dict[str, str] = dict(_PATTERN_RESPONSES)
        self.calls: list[str] = []

    def complete(
        self,
        prompt: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 2000,
        system_prompt: str | None = None,
    ) -> str:
        self.calls.append(prompt)
        lowered = prompt.lower()
        for pattern, response in reversed(self._responses.items()):
            if pattern.lower() in lowered:
                return response
        return _DEFAULT_RESPONSE

    def add_response(self, pattern: str, response: str | dict[str, Any]) -> None:
        if not isinstance(response, str):
            response = json.dumps(response)
        self._responses.pop(pattern, None)
        self._responses[pattern] = response

    def clear_responses(self) -> None:
        self._responses.clear()


class OllamaLLMService:
    """Completes prompts through a local Ollama server's ``/api/generate``."""

    def __init__(
        self,
        base_url: str = DEFAULT_OLLAMA_URL,
        model: str = DEFAULT_OLLAMA_MODEL,
        timeout: float = DEFAULT_LLM_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._client = client or httpx.Client(timeout=timeout)

    def complete(
        self,
        prompt: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 2000,
        system_prompt: str | None = None,
    ) -> str:
        body: dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        if system_prompt:
            body["system"] = system_prompt
        logger.info("Requesting completion from Ollama model %s", self.model)
        try:
            response = self._client.post(f"{self.base_url}/api/generate", json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Ollama request failed: {exc}") from exc
        return response.json().get("response", "")

    def close(self) -> None:
        self._client.close()


class EnhancementAgent:
    """Turns a :class:`HumanPrompt` into a :class:`StructuredPrompt` via an LLM."""

    def __init__(self, llm: LLMService) -> None:
        self.llm = llm

    def enhance(self, human_prompt: HumanPrompt, context: EnhancementContext | None = None) -> EnhancementResult:
        """Run one enhancement round trip.

        Every failure, including an invalid input prompt, surfaces as
        :class:`ExternalServiceError` prefixed with ``"Enhancement failed: "``.
        """
        try:
            validation = human_prompt.validate_prompt()
            if not validation.is_valid:
                raise ValueError(f"Invalid human prompt: {', '.join(validation.errors)}")
            reply = self.llm.complete(
                self.build_enhancement_prompt(human_prompt, context),
                temperature=0.3,
                max_tokens=2000,
                system_prompt=SYSTEM_PROMPT,
            )
            parsed = self._parse_reply(reply)
            structured = StructuredPrompt.model_validate(parsed["structured"])
            check = self.validate_structured_prompt(structured)
            if not check.is_valid:
                raise ValueError(f"Generated structured prompt is invalid: {', '.join(check.errors)}")
        except (ValueError, ExternalServiceError, httpx.HTTPError) as exc:
            logger.warning("Enhancement failed: %s", exc)
            raise ExternalServiceError(f"Enhancement failed: {exc}") from exc

        variables = self.extract_variables(structured.user_template)
        warnings = list(parsed.get("warnings") or [])
        return EnhancementResult(
            structured_prompt=structured,
            questions=[Question.from_variable(v) for v in variables],
            rationale=self.generate_rationale(structured),
            confidence=self.calculate_confidence(human_prompt, structured, warnings),
            changes_made=list(parsed.get("changes_made") or []),
            warnings=warnings,
        )

    def extract_variables(self, template: str) -> list[Variable]:
        return variables_from_template(template)

    def validate_structured_prompt(self, structured: StructuredPrompt) -> ValidationResult:
        """Structural validation plus quality warnings."""
        base = structured.validate_prompt()
        if not base.is_valid:
            return base
        errors: list[str] = []
        warnings: list[str] = []
        if len(structured.system) < 2:
            warnings.append("Consider adding more detailed system instructions")
        if not structured.rules:
            warnings.append("Consider adding specific rules or constraints")
        if len(structured.user_template) < 50:
            warnings.append("User template might be too simple")
        if not structured.template_variables() and structured.variables:
            errors.append("Variables defined but not used in template")
        return ValidationResult.of(errors, warnings)

    @staticmethod
    def build_enhancement_prompt(human_prompt: HumanPrompt, context: EnhancementContext | None = None) -> str:
        steps = "\n".join(f"{i}. {step}" for i, step in enumerate(human_prompt.steps, start=1))
        lines = [
            "Please enhance the following human-readable prompt into a structured format.",
            "",
            "HUMAN PROMPT:",
            f"Goal: {human_prompt.goal}",
            f"Audience: {human_prompt.audience}",
            f"Steps: {steps}",
            f"Output Format: {human_prompt.output_expectations.format}",
            f"Expected Fields: {', '.join(human_prompt.output_expectations.fields)}",
            "",
            "REQUIREMENTS:",
            "- Convert to structured format with system instructions, user template, rules, and capabilities",
            "- Extract variables using {{variable_name}} syntax where content should be dynamic",
            "- Preserve the original intent and goal",
            "- Make the prompt clear, specific, and actionable",
            "- Include appropriate rules and constraints",
        ]
        if context is not None and context.target_provider:
            lines.append(f"- Optimize for {context.target_provider} provider")
        if context is not None and context.domain_knowledge:
            lines.append(f"- Consider this domain context: {context.domain_knowledge}")
        return "\n".join(lines) + "\n\n" + RESPONSE_SHAPE

    @staticmethod
    def _parse_reply(reply: str) -> dict[str, Any]:
        match = _JSON_OBJECT.search(reply or "")
        if match is None:
            raise ValueError("Failed to parse LLM response: No JSON found in LLM response")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Failed to parse LLM response: {exc.msg}") from exc
        if not isinstance(parsed, dict) or not parsed.get("structured"):
            raise ValueError("Failed to parse LLM response: Missing structured prompt in LLM response")
        return parsed

    def generate_rationale(self, structured: StructuredPrompt) -> str:
        variables = extract_variable_names(structured.user_template)
        if (
            len(structured.system) <= 1
            and not structured.rules
            and not structured.capabilities
            and not variables
        ):
            return "Converted human prompt to structured format with minimal changes needed."
        changes: list[str] = []
        if structured.system:
            changes.append(
                f"Added {len(structured.system)} system instruction(s) to provide clear context and role definition"
            )
        if structured.rules:
            changes.append(f"Defined {len(structured.rules)} specific rule(s) to ensure consistent behavior")
        if structured.capabilities:
            changes.append(f"Identified {len(structured.capabilities)} key capability requirement(s)")
        if variables:
            changes.append(f"Extracted {len(variables)} variable(s) to make the prompt reusable")
        changes.append("Converted free-form instructions into structured template format")
        return f"Enhanced the prompt by: {'; '.join(changes)}."

    @staticmethod
    def calculate_confidence(
        human_prompt: HumanPrompt, structured: StructuredPrompt, warnings: list[str]
    ) -> float:
        confidence = 1.0 - 0.1 * len(warnings)
        original = f"{human_prompt.goal} {human_prompt.audience} {' '.join(human_prompt.steps)}".lower()
        enhanced = f"{' '.join(structured.system)} {structured.user_template}".lower()
        original_words = {w for w in original.split() if len(w) > 3}
        enhanced_words = {w for w in enhanced.split() if len(w) > 3}
        overlap = len(original_words & enhanced_words) / max(len(original_words), 1)
        if overlap < 0.3:
            confidence -= 0.2
        if not structured.system:
            confidence -= 0.2
        if not structured.user_template:
            confidence -= 0.3
        if not structured.rules:
            confidence -= 0.1
        return round(max(0.0, min(1.0, confidence)), 2)
