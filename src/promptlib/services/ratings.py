"""Rating and run-log persistence with simple aggregation."""

from __future__ import annotations

from collections import Counter
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from promptlib.errors import NotFoundError, ValidationError
from promptlib.models.prompt import PromptRow
from promptlib.models.rating import Rating, RunLog


class RatingAggregation(BaseModel):
    prompt_id: str
    version: int | None = None
    average_score: float
    total_ratings: int
    score_distribution: dict[int, int] = Field(default_factory=dict)


class RunStatistics(BaseModel):
    total_runs: int
    success_rate: float
    provider_distribution: dict[str, int] = Field(default_factory=dict)
    model_distribution: dict[str, int] = Field(default_factory=dict)


def _check_score(score: int) -> None:
    if not isinstance(score, int) or not 1 <= score <= 5:
        raise ValidationError("Score must be an integer between 1 and 5")


class RatingService:
    """One rating per (prompt, user); re-rating replaces the previous score."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def _require_prompt(self, prompt_id: str) -> None:
        if self._session.get(PromptRow, prompt_id) is None:
            raise NotFoundError(f"Prompt with id '{prompt_id}' not found")

    def rate_prompt(
        self,
        prompt_id: str,
        user_id: str,
        score: int,
        *,
        note: str | None = None,
        prompt_version: int = 1,
    ) -> Rating:
        errors = []
        if not user_id or not user_id.strip():
            errors.append("User id is required")
        if not isinstance(score, int) or not 1 <= score <= 5:
            errors.append("Score must be an integer between 1 and 5")
        if errors:
            raise ValidationError.from_errors("Invalid rating", errors)
        self._require_prompt(prompt_id)

        rating = self.get_user_rating(prompt_id, user_id)
        if rating is None:
            rating = Rating(prompt_id=prompt_id, user_id=user_id)
            self._session.add(rating)
        rating.score = score
        rating.note = note
        rating.prompt_version = prompt_version
        self._session.flush()
        return rating

    def get_prompt_ratings(self, prompt_id: str) -> list[Rating]:
        return list(
            self._session.execute(
                select(Rating).where(Rating.prompt_id == prompt_id).order_by(Rating.id)
            ).scalars()
        )

    def get_user_rating(self, prompt_id: str, user_id: str) -> Rating | None:
        return self._session.execute(
            select(Rating).where(Rating.prompt_id == prompt_id, Rating.user_id == user_id)
        ).scalar_one_or_none()

    def get_average_rating(self, prompt_id: str) -> float:
        average = self._session.execute(
            select(func.avg(Rating.score)).where(Rating.prompt_id == prompt_id)
        ).scalar_one()
        return round(float(average), 2) if average is not None else 0.0

    def update_rating(self, rating_id: int, *, score: int | None = None, note: str | None = None) -> Rating:
        rating = self._session.get(Rating, rating_id)
        if rating is None:
            raise NotFoundError(f"Rating '{rating_id}' not found")
        if score is not None:
            _check_score(score)
            rating.score = score
        if note is not None:
            rating.note = note
        self._session.flush()
        return rating

    def delete_rating(self, rating_id: int) -> None:
        rating = self._session.get(Rating, rating_id)
        if rating is None:
            raise NotFoundError(f"Rating '{rating_id}' not found")
        self._session.delete(rating)
        self._session.flush()

    def get_rating_aggregation(self, prompt_id: str, version: int | None = None) -> RatingAggregation:
        """Average, count and 1..5 distribution, optionally for one version."""
        stmt = select(Rating.score).where(Rating.prompt_id == prompt_id)
        if version is not None:
            stmt = stmt.where(Rating.prompt_version == version)
        scores = list(self._session.execute(stmt).scalars())
        counts = Counter(scores)
        return RatingAggregation(
            prompt_id=prompt_id,
            version=version,
            average_score=round(sum(scores) / len(scores), 2) if scores else 0.0,
            total_ratings=len(scores),
            score_distribution={score: counts.get(score, 0) for score in range(1, 6)},
        )

    def get_top_rated_prompts(self, limit: int = 10) -> list[tuple[str, float]]:
        """``(prompt_id, average)`` pairs, best first."""
        average = func.avg(Rating.score).label("average")
        rows = self._session.execute(
            select(Rating.prompt_id, average)
            .group_by(Rating.prompt_id)
            .order_by(average.desc(), Rating.prompt_id)
            .limit(limit)
        ).all()
        return [(prompt_id, round(float(avg), 2)) for prompt_id, avg in rows]

    # ------------------------------------------------------------------
    # Run logs
    # ------------------------------------------------------------------

    def log_run(
        self,
        prompt_id: str,
        *,
        provider: str,
        model: str,
        success: bool,
        prompt_version: int = 1,
        user_id: str | None = None,
        duration_ms: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RunLog:
        self._require_prompt(prompt_id)
        run = RunLog(
            prompt_id=prompt_id,
            prompt_version=prompt_version,
            provider=provider,
            model=model,
            user_id=user_id,
            success=success,
            duration_ms=duration_ms,
            metadata_=metadata,
        )
        self._session.add(run)
        self._session.flush()
        return run

    def get_run_history(self, prompt_id: str, limit: int | None = None) -> list[RunLog]:
        stmt = select(RunLog).where(RunLog.prompt_id == prompt_id).order_by(RunLog.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self._session.execute(stmt).scalars())

    def get_run_statistics(self, prompt_id: str) -> RunStatistics:
        runs = self.get_run_history(prompt_id)
        successes = sum(1 for r in runs if r.success)
        return RunStatistics(
            total_runs=len(runs),
            success_rate=round(successes / len(runs), 2) if runs else 0.0,
            provider_distribution=dict(Counter(r.provider for r in runs)),
            model_distribution=dict(Counter(r.model for r in runs)),
        )
