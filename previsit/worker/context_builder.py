"""
Clinical context builder.

Collects everything the summary prompt needs for one appointment: the
consultation's clinical data (``ai_clinical_data`` view, falling back to the
``consultations`` row), the extracted document texts, the patient profile,
the consulting doctor's speciality, and the latest prior summary.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from previsit.services.prompt_registry import get_prompt
from previsit.services.utils import truncate_text
from previsit.worker import db as db_handler
from previsit.worker.config import WorkerConfig
from previsit.worker.errors import PipelineError

logger = logging.getLogger(__name__)

DEFAULT_SPECIALITY_SLUG = "general_medicine"
DEFAULT_SPECIALITY_TITLE = "General Medicine"
NOT_SPECIFIED = "Not specified"

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")

# (label, profile attribute) in prompt order
_PATIENT_FIELDS = (
    ("Gender", "gender"),
    ("Family History", "family_history"),
    ("Smoking Status", "smoking_status"),
    ("Allergies", "allergies"),
    ("Alcohol", "alcohol_consumption"),
    ("Tobacco Use", "tobacco_use"),
    ("Exercise Frequency", "exercise_frequency"),
)


@dataclass
class DocumentText:
    file_name: str
    file_type: str
    text: str


@dataclass
class ClinicalContext:
    consultation_id: str
    patient_id: str | None
    doctor_id: str | None
    form_data: dict[str, Any] = field(default_factory=dict)
    voice_data: dict[str, Any] = field(default_factory=dict)
    documents: list[DocumentText] = field(default_factory=list)
    patient: dict[str, Any] | None = None
    speciality: str | None = None
    prior_summary: dict[str, Any] | None = None
    source: str = "view"

    @property
    def chief_complaint(self) -> str:
        concern = (self.form_data or {}).get("concern")
        return str(concern).strip() if concern else NOT_SPECIFIED

    def has_sufficient_data(self) -> bool:
        """At least one extracted document, non-empty form data, or non-empty voice data."""
        return bool(self.documents) or bool(self.form_data) or bool(self.voice_data)


def speciality_slug(name: str | None) -> str:
    """``"Ear, Nose & Throat"`` -> ``"ear_nose_and_throat"``; empty -> ``general_medicine``."""
    if not name or not isinstance(name, str):
        return DEFAULT_SPECIALITY_SLUG
    slug = _NON_ALNUM_RE.sub("_", name.lower().replace("&", " and ")).strip("_")
    return slug or DEFAULT_SPECIALITY_SLUG


def compute_age(date_of_birth: date | None, today: date | None = None) -> int | None:
    """Whole years since *date_of_birth*, one less if this year's birthday hasn't come yet."""
    if not date_of_birth:
        return None
    today = today or date.today()
    age = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return age


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _profile_attributes(profile) -> dict[str, Any] | None:
    if profile is None:
        return None
    attrs: dict[str, Any] = {key: getattr(profile, key, None) for _label, key in _PATIENT_FIELDS}
    attrs["bmi"] = getattr(profile, "bmi", None)
    attrs["age"] = compute_age(getattr(profile, "date_of_birth", None))
    return attrs


async def _load_clinical_row(db: AsyncSession, consultation_id: str) -> tuple[dict[str, Any], str]:
    """View row first; the consultations row (same shape) when the view errors or is empty."""
    try:
        rows = await db_handler.get_clinical_data_view(db, consultation_id)
    except Exception as exc:
        logger.warning("[%s] Error querying ai_clinical_data view: %s", consultation_id, exc)
        await db_handler.safe_rollback(db)
        rows = []

    if rows:
        if len(rows) > 1:
            logger.warning(
                "[%s] ai_clinical_data returned %s rows; using the first", consultation_id, len(rows),
            )
        row = rows[0]
        return {
            "patient_id": row.patient_id,
            "doctor_id": row.doctor_id,
            "form_data": row.form_data,
            "voice_data": row.voice_data,
        }, "view"

    logger.info("[%s] No ai_clinical_data row; falling back to consultations", consultation_id)
    try:
        consultation = await db_handler.get_consultation(db, consultation_id)
    except Exception as exc:
        logger.error("[%s] Could not fetch consultation data: %s", consultation_id, exc, exc_info=True)
        await db_handler.safe_rollback(db)
        consultation = None
    if consultation is None:
        raise PipelineError("Failed to collect clinical data")
    return {
        "patient_id": consultation.patient_id,
        "doctor_id": consultation.doctor_id,
        "form_data": consultation.form_data,
        "voice_data": consultation.voice_data,
    }, "consultation"


async def build_clinical_context(db: AsyncSession, appointment, cfg: WorkerConfig) -> ClinicalContext:
    """Assemble the ClinicalContext for *appointment*.

    Profile, speciality and prior-summary lookups are optional: a failure
    there is logged and the field left empty.  Only a missing clinical data
    row is fatal.
    """
    consultation_id = str(appointment.consultation_id)
    row, source = await _load_clinical_row(db, consultation_id)

    files = await db_handler.get_processed_documents(db, consultation_id)
    documents = [
        DocumentText(
            file_name=f.file_name or "",
            file_type=f.file_type or "",
            text=truncate_text(f.parsed_text, cfg.max_doc_chars),
        )
        for f in files
    ]

    patient_id = row["patient_id"] or appointment.patient_id
    doctor_id = row["doctor_id"] or appointment.doctor_id

    patient = None
    speciality = None
    prior = None
    try:
        patient = _profile_attributes(await db_handler.get_profile(db, patient_id))
        doctor = await db_handler.get_profile(db, doctor_id)
        speciality = getattr(doctor, "doctor_speciality", None) if doctor else None
        latest = await db_handler.get_latest_summary(db, consultation_id)
        prior = latest.summary_json if latest is not None and latest.summary_json else None
    except Exception as exc:
        logger.warning("[%s] Optional patient context unavailable: %s", appointment.id, exc)
        await db_handler.safe_rollback(db)

    return ClinicalContext(
        consultation_id=consultation_id,
        patient_id=str(patient_id) if patient_id else None,
        doctor_id=str(doctor_id) if doctor_id else None,
        form_data=_as_dict(row["form_data"]),
        voice_data=_as_dict(row["voice_data"]),
        documents=documents,
        patient=patient,
        speciality=speciality,
        prior_summary=prior,
        source=source,
    )


def _patient_block(patient: dict[str, Any] | None) -> str:
    patient = patient or {}

    def _val(value: Any) -> str:
        return NOT_SPECIFIED if value is None or value == "" else str(value)

    age = patient.get("age")
    lines = [f"Age: {age} years" if age is not None else f"Age: {NOT_SPECIFIED}"]
    lines += [f"{label}: {_val(patient.get(key))}" for label, key in _PATIENT_FIELDS]
    lines.append(f"BMI: {_val(patient.get('bmi'))}")
    return "\n".join(lines)


def _documents_block(documents: list[DocumentText]) -> str:
    if not documents:
        return "No documents available."
    return "\n".join(
        f"--- Document {i}: {d.file_name} ({d.file_type}) ---\nEXTRACTED CONTENT:\n{d.text or '[No text extracted]'}\n"
        for i, d in enumerate(documents, start=1)
    )


def render_summary_prompt(context: ClinicalContext, cfg: WorkerConfig) -> str:
    """Fill the clinical summary template for *context*."""
    form_json = json.dumps(context.form_data or {}, indent=2, ensure_ascii=False, default=str)
    prior = (
        truncate_text(json.dumps(context.prior_summary, indent=2, ensure_ascii=False, default=str), cfg.max_form_chars)
        if context.prior_summary
        else "None."
    )
    return get_prompt("clinical_summary").format(
        few_shot_example=get_prompt("clinical_summary_example"),
        chief_complaint=context.chief_complaint,
        patient_block=_patient_block(context.patient),
        form_data=truncate_text(form_json, cfg.max_form_chars),
        documents=_documents_block(context.documents),
        prior_summary=prior,
        speciality_title=context.speciality or DEFAULT_SPECIALITY_TITLE,
        speciality_slug=speciality_slug(context.speciality),
    )
