"""Utility functions for parsing model responses and bounding prompt text."""
import json
import logging
import re
from typing import Any

import json_repair

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)

TRUNCATION_MARKER = "... [truncated]"


def truncate_text(text: str | None, max_chars: int) -> str:
    """Cap *text* at *max_chars*, ending with a truncation marker when cut."""
    if not text:
        return ""
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 20)] + TRUNCATION_MARKER


def first_balanced_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` span, ignoring braces inside JSON strings."""
    start = text.find("{")
    if start < 0:
        return None
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
                return text[start: i + 1]
    return None


def extract_json_candidate(text: str) -> str:
    """Strip markdown fences and preamble: fenced block body, else first balanced object, else the input."""
    if not text:
        return text
    fenced = _FENCE_RE.search(text)
    if fenced and fenced.group(1).strip():
        return fenced.group(1).strip()
    span = first_balanced_object(text)
    if span is not None:
        return span
    return text.strip()


def loads_tolerant(response: str) -> Any:
    """Parse JSON from a model response.

    Tries: 1) strict parse, 2) fenced/balanced candidate, 3) raw_decode of the
    candidate (ignores trailing text), 4) json_repair on the candidate.
    Raises the first JSONDecodeError if nothing yields a dict or list.
    """
    if response is None:
        raise json.JSONDecodeError("Empty response", "", 0)
    try:
        return json.loads(response)
    except json.JSONDecodeError as e:
        first_error = e

    candidate = extract_json_candidate(response)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    idx = candidate.find("{")
    if idx >= 0:
        try:
            obj, _ = json.JSONDecoder().raw_decode(candidate[idx:])
            logger.warning("Recovered JSON by ignoring trailing text")
            return obj
        except json.JSONDecodeError:
            pass

    try:
        obj = json_repair.loads(candidate)
        if isinstance(obj, (dict, list)) and obj:
            logger.warning("Recovered JSON using json_repair after strict parse failed")
            return obj
    except Exception as repair_err:
        logger.debug("json_repair failed: %s", repair_err)

    logger.error("Failed to parse JSON: %s", first_error)
    logger.error("Response was: %s", (response or "")[:500])
    raise first_error
