"""
HealthBridge Core Database Models
SQLAlchemy 2.0 ORM models for the relational mirror of the document store
"""

from datetime import datetime, date
from typing import List, Optional
from sqlalchemy import (
    Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text,
    Index, CheckConstraint, JSON
)
from sqlalchemy.dialects import mysql
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.schemas import WorkflowState, ReferralStatus


# Document clocks compare at millisecond resolution; MySQL DATETIME drops it
PreciseDateTime = DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")


def _in_list(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    """Base class for all models"""
    pass


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


class SyncedDocumentMixin:
    """Columns every row mirrored from the document store carries"""
    couch_rev: Mapped[Optional[str]] = mapped_column(String(64))
    document_updated_at: Mapped[Optional[datetime]] = mapped_column(PreciseDateTime)
    raw_document: Mapped[Optional[dict]] = mapped_column(JSON)
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


# =============================================================================
# User Directory
# =============================================================================

class User(Base, TimestampMixin):
    """Local user directory entry used to resolve document actor references"""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[Optional[str]] = mapped_column(String(36), unique=True, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, index=True)
    username: Mapped[Optional[str]] = mapped_column(String(100), unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(200))
    role: Mapped[Optional[str]] = mapped_column(String(50))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


# =============================================================================
# Patient Models
# =============================================================================

class Patient(Base, TimestampMixin, SyncedDocumentMixin):
    """Patient demographic identity keyed by the tracking code (CPT)"""
    __tablename__ = "patients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    couch_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True, index=True)
    cpt: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)

    # Demographics
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    short_code: Mapped[Optional[str]] = mapped_column(String(20))
    external_id: Mapped[Optional[str]] = mapped_column(String(100))
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date)
    age_months: Mapped[Optional[int]] = mapped_column(Integer)
    gender: Mapped[Optional[str]] = mapped_column(String(20))
    weight_kg: Mapped[Optional[float]] = mapped_column(Float)
    phone: Mapped[Optional[str]] = mapped_column(String(30))

    # Visit tracking
    visit_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    last_visit_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("visit_count >= 0", name="non_negative_visit_count"),
        Index("idx_patient_name", "last_name", "first_name"),
        Index("idx_patient_active", "is_active"),
    )

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def __repr__(self) -> str:
        return f"<Patient(id={self.id}, cpt={self.cpt})>"


# =============================================================================
# Clinical Session Models
# =============================================================================

class ClinicalSession(Base, TimestampMixin, SyncedDocumentMixin):
    """One clinical encounter and its workflow state"""
    __tablename__ = "clinical_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    couch_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True, index=True)
    session_uuid: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)

    # Join key to patients.cpt; sessions may be synced before their patient
    patient_cpt: Mapped[Optional[str]] = mapped_column(String(50), index=True)

    created_by_user_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)
    provider_role: Mapped[Optional[str]] = mapped_column(String(50))

    # Lifecycle
    stage: Mapped[str] = mapped_column(String(20), default="registration", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="open", nullable=False)
    workflow_state: Mapped[str] = mapped_column(
        String(20),
        default=WorkflowState.NEW.value,
        nullable=False,
        index=True
    )
    workflow_state_updated_at: Mapped[Optional[datetime]] = mapped_column(PreciseDateTime)
    triage_priority: Mapped[str] = mapped_column(String(10), default="unknown", nullable=False, index=True)

    # Clinical content
    chief_complaint: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    treatment_plan: Mapped[Optional[dict]] = mapped_column(JSON)
    form_instance_ids: Mapped[Optional[List[str]]] = mapped_column(JSON)

    # Document-store clock
    session_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    session_updated_at: Mapped[Optional[datetime]] = mapped_column(PreciseDateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Relationships
    state_transitions: Mapped[List["StateTransition"]] = relationship(
        "StateTransition",
        back_populates="session",
        order_by="(StateTransition.created_at, StateTransition.id)",
        lazy="select"
    )
    referrals: Mapped[List["Referral"]] = relationship(
        "Referral",
        back_populates="session",
        lazy="select"
    )

    __table_args__ = (
        CheckConstraint(_in_list("workflow_state", WorkflowState.values()), name="valid_workflow_state"),
        CheckConstraint(_in_list("triage_priority", ["red", "yellow", "green", "unknown"]), name="valid_triage_priority"),
        Index("idx_session_state_priority", "workflow_state", "triage_priority"),
    )

    def __repr__(self) -> str:
        return f"<ClinicalSession(id={self.id}, couch_id={self.couch_id}, state={self.workflow_state})>"


class ClinicalForm(Base, TimestampMixin, SyncedDocumentMixin):
    """Structured assessment form filled during a session"""
    __tablename__ = "clinical_forms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    couch_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    session_couch_id: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    patient_cpt: Mapped[Optional[str]] = mapped_column(String(50), index=True)
    created_by_user_id: Mapped[Optional[int]] = mapped_column(Integer)
    creator_role: Mapped[Optional[str]] = mapped_column(String(50))

    schema_id: Mapped[str] = mapped_column(String(100), nullable=False)
    schema_version: Mapped[Optional[str]] = mapped_column(String(20))
    current_state_id: Mapped[Optional[str]] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(20), default="draft", nullable=False)

    answers: Mapped[Optional[dict]] = mapped_column(JSON)
    calculated: Mapped[Optional[dict]] = mapped_column(JSON)
    audit_log: Mapped[Optional[list]] = mapped_column(JSON)

    form_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    def __repr__(self) -> str:
        return f"<ClinicalForm(id={self.id}, schema={self.schema_id}, status={self.status})>"


class AiRequest(Base, TimestampMixin):
    """AI interaction log entry synced from the mobile clients"""
    __tablename__ = "ai_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_uuid: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    session_couch_id: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    form_couch_id: Mapped[Optional[str]] = mapped_column(String(100))
    user_id: Mapped[Optional[int]] = mapped_column(Integer)

    task: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    use_case: Mapped[Optional[str]] = mapped_column(String(100))
    prompt_version: Mapped[Optional[str]] = mapped_column(String(50))
    input_hash: Mapped[Optional[str]] = mapped_column(String(64))
    prompt: Mapped[Optional[str]] = mapped_column(Text)
    response: Mapped[Optional[str]] = mapped_column(Text)
    model: Mapped[Optional[str]] = mapped_column(String(100))
    model_version: Mapped[Optional[str]] = mapped_column(String(50))
    latency_ms: Mapped[Optional[int]] = mapped_column(Integer)
    was_overridden: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    risk_flags: Mapped[Optional[list]] = mapped_column(JSON)
    requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    couch_rev: Mapped[Optional[str]] = mapped_column(String(64))
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    def __repr__(self) -> str:
        return f"<AiRequest(id={self.id}, task={self.task})>"


class RadiologyStudy(Base, TimestampMixin, SyncedDocumentMixin):
    """Imaging study ordered during a session"""
    __tablename__ = "radiology_studies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    couch_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    study_instance_uid: Mapped[Optional[str]] = mapped_column(String(128))
    accession_number: Mapped[Optional[str]] = mapped_column(String(50))
    session_couch_id: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    patient_cpt: Mapped[Optional[str]] = mapped_column(String(50), index=True)
    referring_user_id: Mapped[Optional[int]] = mapped_column(Integer)

    modality: Mapped[Optional[str]] = mapped_column(String(20))
    body_part: Mapped[Optional[str]] = mapped_column(String(100))
    study_type: Mapped[Optional[str]] = mapped_column(String(100))
    clinical_indication: Mapped[Optional[str]] = mapped_column(Text)
    priority: Mapped[str] = mapped_column(String(20), default="routine", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)

    ordered_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    performed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    def __repr__(self) -> str:
        return f"<RadiologyStudy(id={self.id}, modality={self.modality}, status={self.status})>"


class DiagnosticReport(Base, TimestampMixin, SyncedDocumentMixin):
    """Diagnostic report written against an imaging study"""
    __tablename__ = "diagnostic_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    couch_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    study_uuid: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    radiologist_id: Mapped[Optional[int]] = mapped_column(Integer)

    report_type: Mapped[str] = mapped_column(String(20), default="final", nullable=False)
    report_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    findings: Mapped[Optional[str]] = mapped_column(Text)
    impression: Mapped[Optional[str]] = mapped_column(Text)
    recommendations: Mapped[Optional[str]] = mapped_column(Text)
    critical_findings: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    signed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        CheckConstraint("report_version >= 1", name="positive_report_version"),
    )

    def __repr__(self) -> str:
        return f"<DiagnosticReport(id={self.id}, type={self.report_type}, version={self.report_version})>"


class EncryptedDocument(Base):
    """Metadata stub for a payload that arrived encrypted"""
    __tablename__ = "encrypted_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    couch_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    couch_rev: Mapped[Optional[str]] = mapped_column(String(64))
    declared_type: Mapped[Optional[str]] = mapped_column(String(50))
    document_updated_at: Mapped[Optional[datetime]] = mapped_column(PreciseDateTime)
    raw_document: Mapped[dict] = mapped_column(JSON, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    superseded_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    def __repr__(self) -> str:
        return f"<EncryptedDocument(couch_id={self.couch_id}, rev={self.couch_rev})>"


# =============================================================================
# Workflow Models
# =============================================================================

class StateTransition(Base):
    """Append-only, hash-chained record of a workflow state change"""
    __tablename__ = "state_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("clinical_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    session_couch_id: Mapped[Optional[str]] = mapped_column(String(100), index=True)

    from_state: Mapped[str] = mapped_column(String(20), nullable=False)
    to_state: Mapped[str] = mapped_column(String(20), nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)
    reason: Mapped[Optional[str]] = mapped_column(String(100))
    transition_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(PreciseDateTime, nullable=False)

    # Tamper evidence
    previous_hash: Mapped[Optional[str]] = mapped_column(String(64))
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    session: Mapped["ClinicalSession"] = relationship("ClinicalSession", back_populates="state_transitions")

    __table_args__ = (
        Index("idx_transition_session_time", "session_id", "created_at"),
        Index("idx_transition_states", "from_state", "to_state"),
        CheckConstraint(_in_list("from_state", WorkflowState.values()), name="valid_from_state"),
        CheckConstraint(_in_list("to_state", WorkflowState.values()), name="valid_to_state"),
    )

    def __repr__(self) -> str:
        return f"<StateTransition(id={self.id}, {self.from_state}->{self.to_state})>"


class Referral(Base, TimestampMixin):
    """Request to move responsibility for a session to another actor or role"""
    __tablename__ = "referrals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referral_uuid: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    session_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("clinical_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    session_couch_id: Mapped[Optional[str]] = mapped_column(String(100), index=True)

    referring_user_id: Mapped[Optional[int]] = mapped_column(Integer)
    assigned_to_user_id: Mapped[Optional[int]] = mapped_column(Integer)
    assigned_to_role: Mapped[Optional[str]] = mapped_column(String(50))

    status: Mapped[str] = mapped_column(String(20), default=ReferralStatus.PENDING.value, nullable=False)
    priority: Mapped[str] = mapped_column(String(10), nullable=False)
    specialty: Mapped[Optional[str]] = mapped_column(String(50))
    reason: Mapped[Optional[str]] = mapped_column(Text)
    clinical_notes: Mapped[Optional[str]] = mapped_column(Text)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    source: Mapped[str] = mapped_column(String(20), default="workflow", nullable=False)

    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    session: Mapped["ClinicalSession"] = relationship("ClinicalSession", back_populates="referrals")

    __table_args__ = (
        Index("idx_referral_status_priority", "status", "priority"),
        Index("idx_referral_assignee", "assigned_to_user_id", "status"),
        CheckConstraint(_in_list("status", [s.value for s in ReferralStatus]), name="valid_referral_status"),
    )

    @property
    def is_open(self) -> bool:
        return self.status in (ReferralStatus.PENDING.value, ReferralStatus.ACCEPTED.value)

    def __repr__(self) -> str:
        return f"<Referral(id={self.id}, status={self.status}, priority={self.priority})>"


# =============================================================================
# Sync Bookkeeping
# =============================================================================

class SyncCheckpoint(Base):
    """Last change-feed position the sync engine fully processed"""
    __tablename__ = "sync_checkpoints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    last_seq: Mapped[str] = mapped_column(Text, nullable=False, default="0")
    documents_applied: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    documents_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    documents_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    def __repr__(self) -> str:
        return f"<SyncCheckpoint(name={self.name}, last_seq={self.last_seq[:20]})>"


# =============================================================================
# Audit Log Model
# =============================================================================

class AuditLog(Base):
    """Audit log for state-adjacent actions that are not workflow transitions"""
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    user_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)

    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[Optional[str]] = mapped_column(String(100))

    changes: Mapped[Optional[dict]] = mapped_column(JSON)

    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("idx_audit_user_action", "user_id", "action"),
        Index("idx_audit_resource", "resource_type", "resource_id"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action}, resource={self.resource_type})>"
