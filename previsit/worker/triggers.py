"""
Stage trigger payloads.

A stage endpoint is called by one of a closed set of sources:

* a direct call ``{appointment_id, triggered_by?, request_id?}`` (hand-off,
  database trigger, or manual retry);
* a row webhook for ``appointments`` (INSERT, or UPDATE into ``triggered``);
* a row webhook for ``patient_files`` (INSERT already linked, or UPDATE that
  links the file to an appointment).

:func:`parse_trigger` picks the matching model; :func:`resolve_appointment_id`
decides whether the trigger should start a run.
"""
from __future__ import annotations

import time
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from previsit.worker.status import ProcessingStatus


class InvalidTriggerError(ValueError):
    """The request body matches none of the known trigger shapes."""


class _Record(BaseModel):
    model_config = ConfigDict(extra="allow")


class AppointmentRecord(_Record):
    id: str
    consultation_id: Optional[str] = None
    patient_id: Optional[str] = None
    ai_processing_status: Optional[str] = None


class PatientFileRecord(_Record):
    id: Optional[str] = None
    appointment_id: Optional[str] = None
    consultation_id: Optional[str] = None
    file_name: Optional[str] = None


class DirectTrigger(BaseModel):
    model_config = ConfigDict(extra="ignore")

    appointment_id: str
    triggered_by: Optional[str] = None
    request_id: Optional[str] = None


class AppointmentInsert(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["INSERT"]
    table: Literal["appointments"]
    record: AppointmentRecord


class AppointmentUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["UPDATE"]
    table: Literal["appointments"]
    record: AppointmentRecord
    old_record: Optional[AppointmentRecord] = None


class PatientFileEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    table: Literal["patient_files"]
    record: PatientFileRecord
    old_record: Optional[PatientFileRecord] = None


Trigger = Union[DirectTrigger, AppointmentInsert, AppointmentUpdate, PatientFileEvent]

# Tried in order; DirectTrigger first so a body carrying appointment_id wins.
_TRIGGER_MODELS = (DirectTrigger, AppointmentInsert, AppointmentUpdate, PatientFileEvent)


def parse_trigger(body: Any) -> Trigger:
    """Validate *body* against the known trigger shapes."""
    if not isinstance(body, dict) or not body:
        raise InvalidTriggerError("Unknown payload format - expected coordinated trigger or webhook payload")
    if body.get("appointment_id") in (None, "") and "type" not in body:
        raise InvalidTriggerError("appointment_id is required")
    for model in _TRIGGER_MODELS:
        try:
            return model.model_validate(body)
        except ValidationError:
            continue
    raise InvalidTriggerError("Unknown payload format - expected coordinated trigger or webhook payload")


def resolve_appointment_id(trigger: Trigger) -> str | None:
    """Appointment to process, or None when the trigger is a no-op."""
    if isinstance(trigger, DirectTrigger):
        return trigger.appointment_id
    if isinstance(trigger, AppointmentInsert):
        return trigger.record.id
    if isinstance(trigger, AppointmentUpdate):
        old_status = trigger.old_record.ai_processing_status if trigger.old_record else None
        moved_into_triggered = (
            trigger.record.ai_processing_status == ProcessingStatus.TRIGGERED.value
            and old_status != ProcessingStatus.TRIGGERED.value
        )
        return trigger.record.id if moved_into_triggered else None
    if isinstance(trigger, PatientFileEvent):
        if trigger.type == "INSERT":
            return trigger.record.appointment_id or None
        if trigger.type == "UPDATE":
            old_link = trigger.old_record.appointment_id if trigger.old_record else None
            if not old_link and trigger.record.appointment_id:
                return trigger.record.appointment_id
        return None
    return None


def noop_message(trigger: Trigger) -> str:
    """Human-readable reason a trigger did not start a run."""
    if isinstance(trigger, AppointmentUpdate):
        return "Appointment update but not triggered for processing"
    if isinstance(trigger, PatientFileEvent):
        if trigger.type == "INSERT":
            return "File uploaded but not yet linked to appointment - waiting for coordination"
        if trigger.type == "UPDATE":
            return "Update event but no new appointment link detected"
        return f"Unsupported event type: {trigger.type}"
    return "Nothing to process"


def request_id_for(trigger: Trigger) -> str:
    ms = int(time.time() * 1000)
    if isinstance(trigger, DirectTrigger):
        if trigger.request_id:
            return trigger.request_id
        return f"db_trigger_{ms}" if trigger.triggered_by else f"manual_trigger_{ms}"
    if isinstance(trigger, AppointmentInsert):
        return f"appointment_insert_{trigger.record.id}_{ms}"
    if isinstance(trigger, AppointmentUpdate):
        return f"appointment_triggered_{trigger.record.id}_{ms}"
    if isinstance(trigger, PatientFileEvent):
        return f"webhook_{trigger.type.lower()}_{trigger.record.id}_{ms}"
    return f"request_{ms}"
