"""Recover a single JSON object from noisy model output.

Models prepend reasoning, wrap answers in code fences, or emit several
JSON-looking fragments. Strategies, first success wins:

1. every balanced {...} span that decodes to an object with a required key;
   the last one wins (models think out loud before answering)
2. the object enclosing the first occurrence of a required key
3. the object enclosing the first occurrence of a known anchor literal
4. the span starting at the last '{' in the text

Code fences are stripped from the extracted span, never from the whole
text, so fence prose cannot disturb brace matching.
"""

import json
import logging
from typing import Any, Iterator, Optional, Sequence

from scenepipe.schemas.command import KNOWN_ACTIONS, Command, parse_command

logger = logging.getLogger(__name__)

COMMAND_KEYS = ("action",)


class ExtractionError(Exception):
    """No usable JSON object could be recovered; raw_text kept for diagnostics."""

    def __init__(self, message: str, raw_text: str):
        super().__init__(message)
        self.raw_text = raw_text


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```/```json fence if present."""
    stripped = text.strip()
    if stripped.startswith("```"):
        first_newline = stripped.find("\n")
        stripped = stripped[first_newline + 1:] if first_newline != -1 else stripped[3:]
    if stripped.endswith("```"):
        stripped = stripped[:-3]
    return stripped.strip()


def match_brace(text: str, start: int) -> int:
    """Return the index of the '}' closing the '{' at `start`, or -1.

    Braces inside JSON string literals are ignored.
    """
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return -1


def _enclosing_brace(text: str, index: int) -> int:
    """Walk back from `index` to the '{' that encloses it, skipping closed objects."""
    depth = 0
    for i in range(index - 1, -1, -1):
        ch = text[i]
        if ch == "}":
            depth += 1
        elif ch == "{":
            if depth == 0:
                return i
            depth -= 1
    return -1


def _decode(span: str) -> Optional[dict[str, Any]]:
    try:
        value = json.loads(strip_code_fence(span))
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def _has_any_key(data: dict[str, Any], keys: Sequence[str]) -> bool:
    return not keys or any(key in data for key in keys)


def _balanced_objects(text: str) -> Iterator[dict[str, Any]]:
    """Yield every decodable top-level object, left to right."""
    i = 0
    while i < len(text):
        if text[i] != "{":
            i += 1
            continue
        end = match_brace(text, i)
        if end == -1:
            i += 1
            continue
        decoded = _decode(text[i:end + 1])
        if decoded is None:
            # Not an object itself; nested objects may still be
            i += 1
            continue
        yield decoded
        i = end + 1


def _object_around(text: str, needle: str) -> Optional[dict[str, Any]]:
    index = text.find(needle)
    if index == -1:
        return None
    start = _enclosing_brace(text, index)
    if start == -1:
        return None
    end = match_brace(text, start)
    if end == -1:
        return None
    return _decode(text[start:end + 1])


def extract_json_object(
    text: str,
    required_keys: Sequence[str] = (),
    anchors: Sequence[str] = (),
) -> dict[str, Any]:
    """Recover one JSON object from free-form text.

    Args:
        text: Raw model output
        required_keys: Keys of which the object should contain at least one
        anchors: Literal values (e.g. known action names) to search around

    Returns:
        The decoded object

    Raises:
        ExtractionError: if no strategy yields an object
    """
    if not text or not text.strip():
        raise ExtractionError("empty model output", text or "")

    # Strategy 1: last valid object carrying a required key
    candidates = [obj for obj in _balanced_objects(text) if _has_any_key(obj, required_keys)]
    if candidates:
        return candidates[-1]

    # Strategy 2: around the first required key
    for key in required_keys:
        found = _object_around(text, f'"{key}"')
        if found is not None:
            logger.debug(f"Extracted object around key {key!r}")
            return found

    # Strategy 3: around a known anchor literal
    for anchor in anchors:
        found = _object_around(text, f'"{anchor}"')
        if found is not None:
            logger.debug(f"Extracted object around anchor {anchor!r}")
            return found

    # Strategy 4: from the last opening brace
    last = text.rfind("{")
    if last != -1:
        end = match_brace(text, last)
        if end != -1:
            found = _decode(text[last:end + 1])
            if found is not None:
                logger.debug("Extracted object from last opening brace")
                return found

    logger.warning(f"No JSON object found in model output ({len(text)} chars)")
    raise ExtractionError("no valid JSON object found in model output", text)


def extract_command(text: str) -> Command:
    """Recover the next command from a model turn."""
    data = extract_json_object(text, COMMAND_KEYS, KNOWN_ACTIONS)
    return parse_command(data)
