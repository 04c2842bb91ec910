"""Error taxonomy shared by every promptlib service.

All errors derive from :class:`PromptLibraryError`, itself a ``ValueError``,
so callers that only care about "the operation was rejected" can keep
catching ``ValueError``. The subclasses let an outer layer tell a bad request
from a missing record or a failed upstream call.
"""

from __future__ import annotations

from collections.abc import Iterable


class PromptLibraryError(ValueError):
    """Base class for all promptlib errors."""


class ValidationError(PromptLibraryError):
    """Malformed input. The message lists every violation found."""

    def __init__(self, message: str, errors: Iterable[str] | None = None) -> None:
        self.errors = list(errors) if errors is not None else [message]
        super().__init__(message)

    @classmethod
    def from_errors(cls, prefix: str, errors: Iterable[str]) -> ValidationError:
        errors = list(errors)
        return cls(f"{prefix}: {', '.join(errors)}", errors)


class MissingVariableError(ValidationError):
    """A strict substitution found placeholders without values."""

    def __init__(self, keys: Iterable[str]) -> None:
        self.keys = list(keys)
        super().__init__(
            f"Missing required variables: {', '.join(self.keys)}",
            [f"Missing required variable: {k}" for k in self.keys],
        )


class NotFoundError(PromptLibraryError):
    """Unknown prompt, provider, version or rating."""


class PreconditionError(PromptLibraryError):
    """Operation invoked while the prompt is in the wrong state."""


class VersionConflictError(PreconditionError):
    """The stored record moved on since it was loaded."""


class ExternalServiceError(PromptLibraryError):
    """An upstream service (the enhancement LLM) failed."""
