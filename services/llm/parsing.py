import json
import re
from typing import Any

from services.errors import ParseError

_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_ARRAY = re.compile(r"\[.*\]", re.DOTALL)
_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
_SINGLE_QUOTED_KEY = re.compile(r"'([^'\\]*)'\s*:")
_SINGLE_QUOTED_VALUE = re.compile(r"(?<=[:\[,])\s*'([^'\\]*)'")
_TRAILING_COMMA = re.compile(r",\s*([\]}])")

RESULT_KEYS = ("result", "results", "items")


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    # Loosely quoted JSON: 'key': 'value' and trailing commas
    relaxed = _SINGLE_QUOTED_KEY.sub(r'"\1":', text)
    relaxed = _SINGLE_QUOTED_VALUE.sub(r' "\1"', relaxed)
    relaxed = _TRAILING_COMMA.sub(r"\1", relaxed)
    return json.loads(relaxed)


def parse_model_json(text: str | None) -> Any:
    """Parse a model answer into JSON.

    Tolerates markdown fences, prose around the payload and single-quoted keys
    or values. Raises ``ParseError`` when nothing parseable is found.
    """
    if not text or not text.strip():
        raise ParseError("Empty model response", raw=text)

    cleaned = _FENCE.sub("", text).strip()
    candidates = [cleaned]
    for pattern in (_ARRAY, _OBJECT):
        match = pattern.search(cleaned)
        if match:
            candidates.append(match.group(0))

    for candidate in candidates:
        try:
            return _loads(candidate)
        except json.JSONDecodeError:
            continue

    raise ParseError(f"Could not parse model response: {text[:200]!r}", raw=text)


def unwrap_result(parsed: Any) -> Any:
    """Models often wrap their payload as {"result": [...]}; return the payload."""
    if isinstance(parsed, dict):
        for key in RESULT_KEYS:
            if key in parsed:
                return parsed[key]
    return parsed


def as_photo_results(payload: Any, expected: int, raw: str | None = None) -> list[dict]:
    """Check that an already parsed payload holds exactly one result object per photo."""
    payload = unwrap_result(payload)
    if isinstance(payload, dict) and expected == 1:
        payload = [payload]
    if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
        raise ParseError("Expected an array of per-photo results", raw=raw)
    if len(payload) != expected:
        raise ParseError(f"Expected {expected} results, got {len(payload)}", raw=raw)
    return payload


def parse_photo_results(text: str | None, expected: int) -> list[dict]:
    """Parse an answer that must contain exactly one result object per photo."""
    return as_photo_results(parse_model_json(text), expected, raw=text)
