"""Template variable extraction, substitution and completeness checks.

Placeholders have the form ``{{ name }}``; whitespace inside the braces is
ignored and names are case-sensitive. An unbalanced ``{{`` simply stops
matching, it never raises.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from typing import Any

from promptlib.errors import MissingVariableError
from promptlib.schemas.prompt import (
    PLACEHOLDER,
    ValidationResult,
    Variable,
    VariableType,
    extract_variable_names,
)

_NUMBER_HINTS = ("count", "number", "amount")
_BOOLEAN_HINTS = ("enable", "is_", "has_")
_SELECT_HINTS = ("type", "category", "format")
_SENSITIVE_HINTS = ("password", "key", "secret", "token", "credential")


def value_to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(value_to_string(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value)
    return str(value)


def substitute_variables(
    template: str,
    values: Mapping[str, Any],
    *,
    strict: bool = False,
    default_values: Mapping[str, Any] | None = None,
) -> str:
    """Replace placeholders with ``values``, falling back to ``default_values``.

    A value counts as missing when it is absent or ``None``. Missing
    placeholders are left untouched unless ``strict`` is set, in which case
    :class:`MissingVariableError` names every missing key at once.
    """
    defaults = default_values or {}
    missing: list[str] = []

    def _resolve(match: re.Match[str]) -> str:
        name = match.group(1).strip()
        value = values.get(name)
        if value is None:
            value = defaults.get(name)
        if value is None:
            if name not in missing:
                missing.append(name)
            return match.group(0)
        return value_to_string(value)

    result = PLACEHOLDER.sub(_resolve, template or "")
    if strict and missing:
        raise MissingVariableError(missing)
    return result


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def validate_variable_substitution(
    template: str,
    variables: Iterable[Variable],
    provided_values: Mapping[str, Any],
) -> ValidationResult:
    """Check every template placeholder is defined and every required one has a value.

    A variable's ``default_value`` satisfies the requirement.
    """
    errors: list[str] = []
    definitions = {v.key: v for v in variables}
    for name in extract_variable_names(template):
        variable = definitions.get(name)
        if variable is None:
            errors.append(f"Template references undefined variable: {name}")
            continue
        if not variable.required:
            continue
        value = provided_values.get(name)
        if _is_empty(value) and _is_empty(variable.default_value):
            errors.append(f"Required variable '{name}' has no value")
    return ValidationResult.of(errors)


def infer_variable_type(name: str) -> VariableType:
    lowered = name.lower()
    if any(hint in lowered for hint in _NUMBER_HINTS):
        return "number"
    if any(hint in lowered for hint in _BOOLEAN_HINTS):
        return "boolean"
    if any(hint in lowered for hint in _SELECT_HINTS):
        return "select"
    return "string"


def is_sensitive_variable(name: str) -> bool:
    lowered = name.lower()
    return any(hint in lowered for hint in _SENSITIVE_HINTS)


def humanize_variable_name(name: str) -> str:
    """``target_audience`` -> ``Target Audience``."""
    spaced = re.sub(r"[_-]", " ", name)
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), spaced)


def variables_from_template(
    template: str,
    options: Mapping[str, list[str]] | None = None,
) -> list[Variable]:
    """Build ``Variable`` definitions for every placeholder in ``template``.

    A name inferred as ``select`` needs options; when none are supplied in
    ``options`` it is typed ``string`` instead so the definition stays valid.
    """
    options = options or {}
    variables: list[Variable] = []
    for name in extract_variable_names(template):
        var_type = infer_variable_type(name)
        choices = options.get(name)
        if var_type == "select" and not choices:
            var_type = "string"
        variables.append(
            Variable(
                key=name,
                label=humanize_variable_name(name),
                type=var_type,
                required=True,
                options=list(choices) if var_type == "select" else None,
                sensitive=is_sensitive_variable(name),
            )
        )
    return variables
