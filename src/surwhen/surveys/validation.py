from __future__ import annotations

import re
from typing import Any, List, Mapping

from .schema import ConfigValidationResult, ValidationResult


EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
HEX_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")


def is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and EMAIL_RE.match(value) is not None


def is_valid_hex_color(value: Any) -> bool:
    return isinstance(value, str) and HEX_COLOR_RE.match(value) is not None


def _is_blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def validate_survey(data: Mapping[str, Any], *, partial: bool = False) -> ValidationResult:
    """Check a survey payload and collect every violation.

    With ``partial=True`` only the keys present in ``data`` are checked, which
    is how update payloads are validated. A ``targetEmail`` of None or "" is
    the "use the default recipient" signal and always passes.
    """
    errors: List[str] = []

    if not partial or "title" in data:
        if _is_blank(data.get("title")):
            errors.append("Title is required")

    if not partial or "description" in data:
        if _is_blank(data.get("description")):
            errors.append("Description is required")

    if not partial or "reasons" in data:
        reasons = data.get("reasons")
        if not isinstance(reasons, list) or not reasons:
            errors.append("At least one reason is required")
        elif any(_is_blank(r) for r in reasons):
            errors.append("Reasons must be non-empty strings")

    target = data.get("targetEmail")
    if target not in (None, "") and not is_valid_email(target):
        errors.append("Invalid target email format")

    return ValidationResult(valid=not errors, errors=errors)


def validate_config_document(raw: Any) -> ConfigValidationResult:
    """Structural gate for an uploaded document; stops at the first bad survey."""
    if not isinstance(raw, Mapping):
        return ConfigValidationResult(valid=False, error="Configuration must be a JSON object")

    default_email = raw.get("defaultTargetEmail")
    if not isinstance(default_email, str):
        return ConfigValidationResult(valid=False, error="defaultTargetEmail must be a string")
    if default_email and not is_valid_email(default_email):
        return ConfigValidationResult(valid=False, error="defaultTargetEmail must be a valid email address")

    accent = raw.get("accentColor")
    if accent is not None and not isinstance(accent, str):
        return ConfigValidationResult(valid=False, error="accentColor must be a string")

    surveys = raw.get("surveys")
    if not isinstance(surveys, list):
        return ConfigValidationResult(valid=False, error="surveys must be an array")

    seen_titles = set()
    for index, item in enumerate(surveys):
        if not isinstance(item, Mapping):
            return ConfigValidationResult(
                valid=False,
                error=f"Survey at index {index} must be an object",
                index=index,
            )
        result = validate_survey(item)
        if not result.valid:
            return ConfigValidationResult(
                valid=False,
                error=f"Survey at index {index} is invalid: {', '.join(result.errors)}",
                index=index,
                errors=result.errors,
            )
        # titles are identities, so a document may not repeat one
        if item["title"] in seen_titles:
            return ConfigValidationResult(
                valid=False,
                error=f"Survey at index {index} duplicates the title {item['title']!r}",
                index=index,
                errors=["Duplicate title"],
            )
        seen_titles.add(item["title"])

    return ConfigValidationResult(valid=True)
