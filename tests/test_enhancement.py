"""Tests for the EnhancementAgent and LLM backends."""

from __future__ import annotations

import json

import httpx
import pytest

from promptlib.errors import ExternalServiceError
from promptlib.schemas.prompt import HumanPrompt, OutputExpectations, StructuredPrompt
from promptlib.services.enhancement import (
    EnhancementAgent,
    EnhancementContext,
    MockLLMService,
    OllamaLLMService,
)


class TestMockLLM:
    def test_default_response_when_nothing_matches(self) -> None:
        reply = json.loads(MockLLMService().complete("something unrelated"))
        assert reply["structured"]["variables"] == ["task_description", "audience", "output_format"]

    def test_pattern_match_is_case_insensitive(self) -> None:
        reply = json.loads(MockLLMService().complete("Please WRITE A BLOG POST"))
        assert "topic" in reply["structured"]["variables"]

    def test_newest_pattern_wins(self) -> None:
        llm = MockLLMService()
        llm.add_response("blog", {"structured": {"system": ["x"], "user_template": "custom"}})
        reply = json.loads(llm.complete("write a blog post"))
        assert reply["structured"]["user_template"] == "custom"
        assert llm.calls == ["write a blog post"]

    def test_clear_responses(self) -> None:
        llm = MockLLMService()
        llm.clear_responses()
        reply = json.loads(llm.complete("write a blog post"))
        assert "task_description" in reply["structured"]["variables"]


class TestOllama:
    def test_posts_generate_request(self) -> None:
        seen: dict[str, object] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": "hello"})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        service = OllamaLLMService(base_url="http://ollama:11434/", model="llama3.1", client=client)
        assert service.complete("hi", system_prompt="sys") == "hello"
        assert seen["url"] == "http://ollama:11434/api/generate"
        body = seen["body"]
        assert body["model"] == "llama3.1"
        assert body["stream"] is False
        assert body["system"] == "sys"

    def test_http_error_becomes_external_service_error(self) -> None:
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        service = OllamaLLMService(client=client)
        with pytest.raises(ExternalServiceError, match="Ollama request failed"):
            service.complete("hi")


class TestEnhance:
    def test_blog_prompt(self, human_prompt: HumanPrompt) -> None:
        agent = EnhancementAgent(MockLLMService())
        result = agent.enhance(human_prompt)
        assert result.structured_prompt.variables[0] == "topic"
        assert [q.variable_key for q in result.questions] == [
            "topic", "target_audience", "word_count", "tone", "key_points"
        ]
        word_count = next(q for q in result.questions if q.variable_key == "word_count")
        assert word_count.type == "number"
        assert word_count.text.endswith("(enter a number) *")
        assert result.rationale.startswith("Enhanced the prompt by:")
        assert 0.0 <= result.confidence <= 1.0

    def test_context_reaches_llm(self, human_prompt: HumanPrompt) -> None:
        llm = MockLLMService()
        EnhancementAgent(llm).enhance(
            human_prompt, EnhancementContext(target_provider="anthropic", domain_knowledge="fintech")
        )
        assert "- Optimize for anthropic provider" in llm.calls[0]
        assert "- Consider this domain context: fintech" in llm.calls[0]

    def test_invalid_human_prompt(self) -> None:
        llm = MockLLMService()
        with pytest.raises(ExternalServiceError, match="Enhancement failed: Invalid human prompt"):
            EnhancementAgent(llm).enhance(HumanPrompt(goal="", audience="x", steps=["s"]))
        assert llm.calls == []

    def test_unparseable_reply(self, human_prompt: HumanPrompt) -> None:
        llm = MockLLMService()
        llm.add_response("blog post", "no json here")
        with pytest.raises(ExternalServiceError, match="No JSON found"):
            EnhancementAgent(llm).enhance(human_prompt)

    def test_undeclared_template_variable(self, human_prompt: HumanPrompt) -> None:
        llm = MockLLMService()
        llm.add_response(
            "blog post",
            {"structured": {"system": ["s"], "user_template": "About {{topic}}", "variables": []}},
        )
        with pytest.raises(ExternalServiceError, match="undefined variables: topic"):
            EnhancementAgent(llm).enhance(human_prompt)

    def test_llm_failure_is_wrapped(self, human_prompt: HumanPrompt) -> None:
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        agent = EnhancementAgent(OllamaLLMService(client=client))
        with pytest.raises(ExternalServiceError, match="^Enhancement failed: Ollama request failed"):
            agent.enhance(human_prompt)


class TestQualityChecks:
    def test_warnings_for_thin_prompt(self) -> None:
        agent = EnhancementAgent(MockLLMService())
        result = agent.validate_structured_prompt(StructuredPrompt(system=["only"], user_template="short"))
        assert result.is_valid
        assert len(result.warnings) == 3

    def test_unused_variables_are_an_error(self) -> None:
        agent = EnhancementAgent(MockLLMService())
        prompt = StructuredPrompt(system=["a", "b"], user_template="no placeholders", variables=["x"])
        result = agent.validate_structured_prompt(prompt)
        assert result.errors == ["Variables defined but not used in template"]

    def test_minimal_rationale(self) -> None:
        agent = EnhancementAgent(MockLLMService())
        rationale = agent.generate_rationale(StructuredPrompt(system=["a"], user_template="plain"))
        assert rationale == "Converted human prompt to structured format with minimal changes needed."

    def test_confidence_penalties(self) -> None:
        human = HumanPrompt(
            goal="Summarize quarterly revenue",
            audience="executives",
            steps=["Read figures"],
            output_expectations=OutputExpectations(format="Text"),
        )
        structured = StructuredPrompt(system=["Unrelated wording"], user_template="zzz")
        assert EnhancementAgent.calculate_confidence(human, structured, ["w1"]) == 0.6
