"""
JSON helpers for the legacy structured-output extraction path.

Models occasionally wrap JSON in code fences, add trailing commas or
explanatory text after the closing brace; these helpers recover the object
before schema validation.
"""

import json
import re
from typing import Any

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def extract_json_object(text: str) -> str:
    """Slice the outermost {...} out of a model response."""
    cleaned = _FENCE.sub("", text.strip())
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise json.JSONDecodeError("No JSON object found", cleaned, 0)
    return cleaned[start:end + 1]


def try_parse_or_repair_json(json_str: str) -> dict[str, Any]:
    """
    Parse a JSON object, applying repair strategies if initial parsing fails.

    Raises:
        json.JSONDecodeError: If the object cannot be parsed even after repair
    """
    candidate = extract_json_object(json_str)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        repaired = candidate

        # Trailing commas before a closing bracket
        repaired = re.sub(r",\s*([}\]])", r"\1", repaired)

        # Missing colon after a key: "key" value -> "key": value
        repaired = re.sub(r'"([^"]+)"\s+(["\d\[\{]|null|true|false)', r'"\1": \2', repaired)

        # Missing comma between members on separate lines
        repaired = re.sub(r'("|\d|\]|\}|null|true|false)\s*\n(\s*")', r"\1,\n\2", repaired)

        # Parenthetical remarks after quoted strings: "text" (note) -> "text"
        repaired = re.sub(r'"([^"]*)" \([^)]*\)', r'"\1"', repaired)

        # Python-style literals
        repaired = re.sub(r"\bNone\b", "null", repaired)

        return json.loads(repaired)  # may raise; let it propagate for caller handling
