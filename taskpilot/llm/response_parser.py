"""Response parsing utilities for LLM output.

Extracts JSON from raw LLM responses and validates it into a
GeneratedArtifact.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from taskpilot.core.exceptions import ValidationError
from taskpilot.core.models import GeneratedArtifact

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?```$", re.DOTALL)


def extract_code_blocks(text: str, language: Optional[str] = None) -> list[str]:
    """Extract fenced code blocks from LLM output.

    Args:
        text: Raw LLM response.
        language: If specified, only return blocks with this language tag.

    Returns:
        List of code block contents (without fences).
    """
    if language:
        pattern = rf"```{re.escape(language)}\s*\n(.*?)```"
    else:
        pattern = r"```(?:\w+)?\s*\n(.*?)```"

    matches = re.findall(pattern, text, re.DOTALL)
    return [m.strip() for m in matches]


def parse_json_response(text: str) -> dict[str, Any]:
    """Parse a JSON object from LLM output, stripping markdown fences if present."""
    cleaned = text.strip()
    match = _FENCE_PATTERN.match(cleaned)
    if match:
        cleaned = match.group(1).strip()

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        blocks = extract_code_blocks(text, "json")
        if not blocks:
            raise ValidationError(
                f"Generation output is not valid JSON: {text[:200]}", raw=text
            ) from None
        try:
            data = json.loads(blocks[0])
        except json.JSONDecodeError as e:
            raise ValidationError(f"Generation output is not valid JSON: {e}", raw=text) from e

    if not isinstance(data, dict):
        raise ValidationError(
            f"Expected a JSON object, got {type(data).__name__}", raw=text
        )
    return data


def parse_generated_artifact(text: str) -> GeneratedArtifact:
    """Validate raw generation output into a GeneratedArtifact.

    Raises:
        ValidationError: If the output is not JSON or lacks code/language.
    """
    data = parse_json_response(text)
    try:
        return GeneratedArtifact.model_validate(data)
    except PydanticValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ValidationError(
            f"Generation output does not match artifact schema ({fields})", raw=text
        ) from e
