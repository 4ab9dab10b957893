# =============================================================================
# JSON Output Sanitizer
# =============================================================================
#
# Models asked for JSON often wrap it in markdown fences:
#
#   ```json
#   {"message": "hi"}
#   ```
#
# Every raw structured payload passes through clean_json_output() before
# json.loads(). parse_json_output() turns any remaining failure into
# StructuredOutputParseError carrying an excerpt of the raw text.
# =============================================================================

from __future__ import annotations

import json
import re
from typing import Any

from ai_gateway.errors import StructuredOutputParseError

_FENCE_OPEN = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*\n?")
_FENCE_CLOSE = re.compile(r"\n?\s*```\s*$")


def clean_json_output(text: str) -> str:
    """Strip surrounding code fences and whitespace."""
    cleaned = _FENCE_OPEN.sub("", text)
    cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned.strip()


def parse_json_output(text: str | None) -> dict[str, Any]:
    """
    Parse a model's structured response into a dict.

    Raises:
        StructuredOutputParseError: On empty text, malformed JSON, or a JSON
            value that is not an object.
    """
    if not text or not text.strip():
        raise StructuredOutputParseError("Empty structured response", raw=text)

    cleaned = clean_json_output(text)
    try:
        value = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise StructuredOutputParseError(
            f"Malformed JSON in structured response: {exc.msg}", raw=text
        ) from exc

    if not isinstance(value, dict):
        raise StructuredOutputParseError(
            f"Structured response is a JSON {type(value).__name__}, expected an object",
            raw=text,
        )
    return value
