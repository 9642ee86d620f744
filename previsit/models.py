from sqlalchemy import BigInteger, Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from datetime import datetime
import uuid
from previsit.database import Base


class Consultation(Base):
    __tablename__ = "consultations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("profiles.id"), nullable=False)
    doctor_id = Column(UUID(as_uuid=True), ForeignKey("profiles.id"), nullable=True)
    form_data = Column(JSONB, nullable=True)  # Structured intake form answers
    voice_data = Column(JSONB, nullable=True)  # Supplementary structured data (voice intake)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Profile(Base):
    """Patient or clinician profile. Only the fields the pipeline reads are mapped."""
    __tablename__ = "profiles"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    gender = Column(String(32), nullable=True)
    date_of_birth = Column(Date, nullable=True)
    family_history = Column(Text, nullable=True)
    smoking_status = Column(String(64), nullable=True)
    tobacco_use = Column(String(64), nullable=True)
    allergies = Column(Text, nullable=True)
    alcohol_consumption = Column(String(64), nullable=True)
    exercise_frequency = Column(String(64), nullable=True)
    bmi = Column(String(16), nullable=True)
    doctor_speciality = Column(String(128), nullable=True)  # Set for clinicians only


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("profiles.id"), nullable=False)
    consultation_id = Column(UUID(as_uuid=True), ForeignKey("consultations.id"), nullable=False)
    doctor_id = Column(UUID(as_uuid=True), ForeignKey("profiles.id"), nullable=True)
    # pending, triggered, processing, files_processed, summarizing, completed, failed
    ai_processing_status = Column(String(32), default="pending", nullable=False)
    processing_instance_id = Column(String(100), nullable=True)  # Lease token; set only while locked
    processing_started_at = Column(DateTime, nullable=True)  # Lease acquisition time (naive UTC)
    error_message = Column(Text, nullable=True)  # Last failure reason, truncated
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PatientFile(Base):
    __tablename__ = "patient_files"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    appointment_id = Column(UUID(as_uuid=True), ForeignKey("appointments.id"), nullable=True)  # NULL until linked
    consultation_id = Column(UUID(as_uuid=True), ForeignKey("consultations.id"), nullable=False)
    file_name = Column(String(255), nullable=False)
    file_path = Column(String(500), nullable=False)  # Object path in STORAGE_BUCKET
    file_size = Column(BigInteger, nullable=True)  # Declared size in bytes
    file_type = Column(String(100), nullable=False)  # Declared MIME type
    parsed_text = Column(Text, nullable=True)
    processed = Column(Boolean, default=False, nullable=True)
    processing_error = Column(Text, nullable=True)  # "<code>: <reason>" when extraction failed
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ProgressEvent(Base):
    """Append-only progress log read by the live UI. Rows are never updated."""
    __tablename__ = "ai_progress_events"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    appointment_id = Column(UUID(as_uuid=True), ForeignKey("appointments.id"), nullable=False, index=True)
    stage = Column(String(16), nullable=False)  # files, summary
    step_index = Column(Integer, nullable=False)
    step_key = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False)  # completed, error
    message = Column(Text, nullable=True)
    progress_percent = Column(Integer, nullable=False, default=0)
    meta = Column(JSONB, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ClinicalSummary(Base):
    __tablename__ = "clinical_summaries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    consultation_id = Column(UUID(as_uuid=True), ForeignKey("consultations.id"), nullable=False)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("profiles.id"), nullable=False)
    appointment_id = Column(UUID(as_uuid=True), ForeignKey("appointments.id"), nullable=True)
    raw_output = Column(Text, nullable=False)  # Verbatim model response, written before parsing
    summary_json = Column(JSONB, nullable=False, default=dict)
    processing_status = Column(String(16), default="parsing", nullable=False)  # parsing, completed, failed
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AIClinicalData(Base):
    """Read-only mapping of the ``ai_clinical_data`` view (one row per consultation)."""
    __tablename__ = "ai_clinical_data"
    __table_args__ = {"info": {"is_view": True}}

    consultation_id = Column(UUID(as_uuid=True), primary_key=True)
    patient_id = Column(UUID(as_uuid=True), nullable=True)
    doctor_id = Column(UUID(as_uuid=True), nullable=True)
    form_data = Column(JSONB, nullable=True)
    voice_data = Column(JSONB, nullable=True)
