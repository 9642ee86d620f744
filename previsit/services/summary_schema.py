"""Clinical summary output schema: tolerant parsing and sanitization of model output."""
from __future__ import annotations

import json
import logging
from typing import Any

from previsit.services.utils import extract_json_candidate, loads_tolerant
from previsit.worker.errors import SummaryParseError

logger = logging.getLogger(__name__)

URGENCY_VALUES = ("routine", "urgent", "emergency")
DEFAULT_URGENCY = "routine"
REQUIRED_FIELDS = ("short_clinical_synopsis", "chief_complaint")
ENVELOPE_KEYS = ("response", "text", "output")

EVENT_FIELDS = ("date", "event")
INVESTIGATION_FIELDS = ("test", "result", "reference_range", "date")
NEXT_STEP_FIELDS = ("tests_to_consider", "medications_to_review_start", "referrals_to_consider")


def _unwrap_envelope(obj: Any) -> Any:
    """``{"response": "<json text>"}`` -> the inner object; anything else unchanged."""
    if not isinstance(obj, dict):
        return obj
    if any(field in obj for field in REQUIRED_FIELDS):
        return obj
    for key in ENVELOPE_KEYS:
        inner = obj.get(key)
        if isinstance(inner, str) and inner.strip():
            logger.info("Detected a wrapped response under %r. Parsing inner JSON.", key)
            return loads_tolerant(extract_json_candidate(inner))
        if isinstance(inner, dict):
            return inner
    return obj


def parse_summary_response(raw: str) -> dict:
    """Parse a model response into a summary dict.

    Accepts a bare object, a fenced object, or an object wrapped in an
    envelope field.  Raises :class:`SummaryParseError` when nothing parses or
    the required fields are missing.
    """
    try:
        obj = _unwrap_envelope(loads_tolerant(raw))
    except (json.JSONDecodeError, ValueError) as exc:
        raise SummaryParseError(f"Failed to parse the AI-generated JSON summary. Reason: {exc}") from exc
    if not isinstance(obj, dict):
        raise SummaryParseError("Failed to parse the AI-generated JSON summary. Reason: top-level value is not an object")
    missing = [f for f in REQUIRED_FIELDS if not obj.get(f)]
    if missing:
        raise SummaryParseError(
            "Parsed JSON is missing required fields: " + ", ".join(missing)
        )
    return obj


def _str(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [_str(v) for v in value if v is not None and not isinstance(v, (dict, list))]


def _object_list(value: Any, fields: tuple[str, ...]) -> list[dict[str, str]]:
    if not isinstance(value, list):
        return []
    return [
        {f: _str(item.get(f)) for f in fields}
        for item in value
        if isinstance(item, dict)
    ]


def _insights(value: Any) -> dict[str, Any]:
    if not isinstance(value, dict):
        return {"urgency_flags": [], "next_steps": {f: [] for f in NEXT_STEP_FIELDS}}
    out: dict[str, Any] = {"urgency_flags": _str_list(value.get("urgency_flags"))}
    for key, item in value.items():
        if isinstance(key, str) and key.startswith("relevance_to_"):
            out[key] = _str_list(item)
    next_steps = value.get("next_steps")
    next_steps = next_steps if isinstance(next_steps, dict) else {}
    out["next_steps"] = {f: _str_list(next_steps.get(f)) for f in NEXT_STEP_FIELDS}
    return out


def sanitize_summary(obj: dict) -> dict:
    """Coerce a parsed summary into the fixed output schema.

    Non-conforming items are dropped rather than failing the summary; every
    expected array exists (possibly empty) and ``urgency`` is always one of
    :data:`URGENCY_VALUES`.
    """
    urgency = _str(obj.get("urgency")).strip().lower()
    medications = obj.get("medications")
    medications = medications if isinstance(medications, dict) else {}
    return {
        "short_clinical_synopsis": _str(obj.get("short_clinical_synopsis")),
        "urgency": urgency if urgency in URGENCY_VALUES else DEFAULT_URGENCY,
        "chief_complaint": _str(obj.get("chief_complaint")),
        "past_medical_events": _object_list(obj.get("past_medical_events"), EVENT_FIELDS),
        "past_investigations": _object_list(obj.get("past_investigations"), INVESTIGATION_FIELDS),
        "current_symptoms": _str_list(obj.get("current_symptoms")),
        "medications": {
            "active": _str_list(medications.get("active")),
            "past": _str_list(medications.get("past")),
        },
        "potential_conflicts_gaps": _str_list(obj.get("potential_conflicts_gaps")),
        "ai_insights_and_suggestions": _insights(obj.get("ai_insights_and_suggestions")),
    }
