"""Tests for engine setup and migrations."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from sqlalchemy import text

from promptlib.database import get_engine, get_session_factory, init_db, reset_engine


@pytest.fixture()
def library(tmp_path: Path) -> Iterator[Path]:
    path = tmp_path / "nested" / "library.db"
    reset_engine()
    init_db(path)
    yield path
    reset_engine()


class TestEngine:
    def test_creates_parent_directories(self, library: Path) -> None:
        assert library.exists()

    def test_engine_is_cached(self, library: Path) -> None:
        assert get_engine(library) is get_engine(library)
        reset_engine()
        assert get_session_factory(library) is get_session_factory(library)

    def test_foreign_keys_enforced(self, library: Path) -> None:
        with get_engine(library).connect() as conn:
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1

    def test_deleting_prompt_row_cascades(self, library: Path) -> None:
        with get_engine(library).begin() as conn:
            conn.execute(text(
                "INSERT INTO prompts (id, slug, title, owner, status, version, created_at, updated_at, data) "
                "VALUES ('p1', 'p1', 'P', 'alice', 'draft', 1, 'now', 'now', '{}')"
            ))
            conn.execute(text(
                "INSERT INTO ratings (prompt_id, user_id, prompt_version, score) "
                "VALUES ('p1', 'bob', 1, 4)"
            ))
            conn.execute(text("DELETE FROM prompts WHERE id = 'p1'"))
            assert conn.execute(text("SELECT COUNT(*) FROM ratings")).scalar() == 0


class TestInitDb:
    def test_idempotent(self, library: Path) -> None:
        init_db(library)
        with get_engine(library).connect() as conn:
            versions = conn.execute(text("SELECT version_num FROM alembic_version")).fetchall()
        assert versions == [("0001",)]
