"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from promptlib.models.base import Base
from promptlib.providers import default_registry
from promptlib.providers.registry import ProviderRegistry
from promptlib.schemas.prompt import HumanPrompt, OutputExpectations, PromptMetadata
from promptlib.services.enhancement import EnhancementAgent, MockLLMService
from promptlib.services.history import AuditTrailStore, HistoryService
from promptlib.services.prompt_manager import PromptManager
from promptlib.services.ratings import RatingService
from promptlib.services.storage import PromptStorage


@pytest.fixture()
def tmp_db(tmp_path: Path) -> Path:
    """Return a temporary database file path."""
    return tmp_path / "test.db"


@pytest.fixture()
def session(tmp_db: Path) -> Session:
    """Create a SQLite session with all tables."""
    engine = create_engine(f"sqlite:///{tmp_db}", echo=False)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine)
    sess = factory()
    yield sess  # type: ignore[misc]
    sess.close()
    engine.dispose()


@pytest.fixture()
def storage(session: Session) -> PromptStorage:
    return PromptStorage(session)


@pytest.fixture()
def llm() -> MockLLMService:
    return MockLLMService()


@pytest.fixture()
def registry() -> ProviderRegistry:
    return default_registry()


@pytest.fixture()
def history() -> HistoryService:
    return HistoryService(AuditTrailStore())


@pytest.fixture()
def ratings(session: Session) -> RatingService:
    return RatingService(session)


@pytest.fixture()
def manager(
    storage: PromptStorage,
    llm: MockLLMService,
    registry: ProviderRegistry,
    history: HistoryService,
    ratings: RatingService,
) -> PromptManager:
    """Return a PromptManager wired to the test session and a mock LLM."""
    return PromptManager(
        storage,
        EnhancementAgent(llm),
        registry,
        history=history,
        ratings=ratings,
    )


@pytest.fixture()
def human_prompt() -> HumanPrompt:
    return HumanPrompt(
        goal="Write a blog post about a technical topic",
        audience="Software developers",
        steps=["Pick an angle", "Outline the sections", "Draft the post"],
        output_expectations=OutputExpectations(format="Markdown", fields=["title", "body"]),
    )


@pytest.fixture()
def metadata() -> PromptMetadata:
    return PromptMetadata(title="Blog Writer", summary="Drafts blog posts", tags=["writing"], owner="alice")
