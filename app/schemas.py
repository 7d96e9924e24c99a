"""
HealthBridge Core - Domain Schemas
Pydantic models for canonical sync records, workflow requests and domain events
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, computed_field
from typing import Optional, List, Dict, Any
from datetime import datetime, date
from enum import Enum


# ============================================================================
# Enumerations - Clinical Workflow Domain
# ============================================================================

class WorkflowState(str, Enum):
    """Fine-grained lifecycle state of a clinical encounter"""
    NEW = "NEW"
    TRIAGED = "TRIAGED"
    REFERRED = "REFERRED"
    IN_REVIEW = "IN_REVIEW"
    UNDER_TREATMENT = "UNDER_TREATMENT"
    CLOSED = "CLOSED"

    @classmethod
    def values(cls) -> List[str]:
        return [state.value for state in cls]


class SessionStage(str, Enum):
    """Coarse lifecycle phase of a clinical encounter"""
    REGISTRATION = "registration"
    ASSESSMENT = "assessment"
    TREATMENT = "treatment"
    DISCHARGE = "discharge"


class TriagePriority(str, Enum):
    """Triage priority, ordered red > yellow > green > unknown"""
    RED = "red"
    YELLOW = "yellow"
    GREEN = "green"
    UNKNOWN = "unknown"

    @property
    def rank(self) -> int:
        return _TRIAGE_RANK[self]

    def outranks(self, other: "TriagePriority") -> bool:
        return self.rank > other.rank


_TRIAGE_RANK = {
    TriagePriority.RED: 3,
    TriagePriority.YELLOW: 2,
    TriagePriority.GREEN: 1,
    TriagePriority.UNKNOWN: 0,
}


class ReferralStatus(str, Enum):
    """Referral sub-state machine states"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DocumentKind(str, Enum):
    """Document kinds produced by the mobile clients"""
    PATIENT = "patient"
    SESSION = "session"
    FORM = "form"
    AI_LOG = "ai_log"
    REPORT = "report"
    IMAGING = "imaging"


class ReferralPolicy(str, Enum):
    """When the sync engine may open a referral on its own"""
    DISABLED = "disabled"
    RED_TRIAGE = "red_triage"
    WORKFLOW_REFERRED = "workflow_referred"
    ALL = "all"


class UpsertOutcome(str, Enum):
    """Result of upserting a single raw document"""
    APPLIED = "applied"
    FLAGGED = "flagged"
    SKIPPED = "skipped"
    ERROR = "error"

    @property
    def counts_as_applied(self) -> bool:
        return self in (UpsertOutcome.APPLIED, UpsertOutcome.FLAGGED)


# ============================================================================
# Canonical Sync Records (Field Mapper output)
# ============================================================================

class SyncRecord(BaseModel):
    """Fields shared by every synced document kind"""
    couch_id: str
    couch_rev: Optional[str] = None
    updated_at: Optional[datetime] = Field(None, description="Document-declared update time")
    raw_document: Dict[str, Any] = Field(default_factory=dict)


class PatientRecord(SyncRecord):
    """Canonical patient record"""
    cpt: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    short_code: Optional[str] = None
    external_id: Optional[str] = None
    date_of_birth: Optional[date] = None
    age_months: Optional[int] = Field(None, ge=0)
    gender: Optional[str] = None
    weight_kg: Optional[float] = Field(None, ge=0)
    phone: Optional[str] = None
    visit_count: int = Field(1, ge=0)
    is_active: bool = True
    last_visit_at: Optional[datetime] = None


class SessionRecord(SyncRecord):
    """Canonical clinical session (encounter) record"""
    session_uuid: str
    patient_cpt: Optional[str] = None
    created_by_ref: Optional[Any] = None
    provider_role: Optional[str] = None
    stage: Optional[SessionStage] = None
    status: str = "open"
    workflow_state: Optional[WorkflowState] = None
    workflow_state_updated_at: Optional[datetime] = None
    triage_priority: TriagePriority = TriagePriority.UNKNOWN
    chief_complaint: Optional[str] = None
    notes: Optional[str] = None
    treatment_plan: Optional[Dict[str, Any]] = None
    form_instance_ids: List[str] = Field(default_factory=list)
    session_created_at: Optional[datetime] = None


class FormRecord(SyncRecord):
    """Canonical clinical form record"""
    session_couch_id: Optional[str] = None
    patient_cpt: Optional[str] = None
    created_by_ref: Optional[Any] = None
    creator_role: Optional[str] = None
    schema_id: str = "unknown"
    schema_version: Optional[str] = None
    current_state_id: Optional[str] = None
    status: str = "draft"
    answers: Dict[str, Any] = Field(default_factory=dict)
    calculated: Optional[Dict[str, Any]] = None
    audit_log: Optional[List[Any]] = None
    form_created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class AiLogRecord(SyncRecord):
    """Canonical AI interaction log record"""
    model_config = ConfigDict(protected_namespaces=())

    session_couch_id: Optional[str] = None
    form_couch_id: Optional[str] = None
    user_ref: Optional[Any] = None
    task: Optional[str] = None
    use_case: Optional[str] = None
    prompt_version: Optional[str] = None
    input_hash: Optional[str] = None
    prompt: Optional[str] = None
    response: Optional[str] = None
    model: Optional[str] = None
    model_version: Optional[str] = None
    latency_ms: Optional[int] = Field(None, ge=0)
    was_overridden: bool = False
    risk_flags: Optional[List[Any]] = None
    requested_at: Optional[datetime] = None


class ReportRecord(SyncRecord):
    """Canonical diagnostic report record"""
    study_uuid: Optional[str] = None
    radiologist_ref: Optional[Any] = None
    report_type: str = "final"
    report_version: int = Field(1, ge=1)
    findings: Optional[str] = None
    impression: Optional[str] = None
    recommendations: Optional[str] = None
    critical_findings: bool = False
    is_locked: bool = False
    signed_at: Optional[datetime] = None


class ImagingStudyRecord(SyncRecord):
    """Canonical imaging (radiology) study record"""
    study_instance_uid: Optional[str] = None
    accession_number: Optional[str] = None
    session_couch_id: Optional[str] = None
    patient_cpt: Optional[str] = None
    referring_ref: Optional[Any] = None
    modality: Optional[str] = None
    body_part: Optional[str] = None
    study_type: Optional[str] = None
    clinical_indication: Optional[str] = None
    priority: str = "routine"
    status: str = "pending"
    ordered_at: Optional[datetime] = None
    performed_at: Optional[datetime] = None


class EncryptedStub(SyncRecord):
    """Metadata kept for a payload that is still encrypted"""
    declared_type: Optional[str] = None


# ============================================================================
# Sync Results
# ============================================================================

class BatchResult(BaseModel):
    """Outcome counts for one change-feed page"""
    total: int = 0
    applied: int = 0
    flagged: int = 0
    skipped: int = 0
    errored: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    def record(self, outcome: UpsertOutcome) -> None:
        self.total += 1
        if outcome.counts_as_applied:
            self.applied += 1
            if outcome == UpsertOutcome.FLAGGED:
                self.flagged += 1
        elif outcome == UpsertOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.errored += 1


class CheckpointView(BaseModel):
    """Change feed checkpoint"""
    name: str
    last_seq: str
    documents_applied: int = 0
    documents_skipped: int = 0
    documents_failed: int = 0
    updated_at: Optional[datetime] = None


# ============================================================================
# Workflow Requests, Views and Events
# ============================================================================

class TransitionRequest(BaseModel):
    """Request to move a session to a new workflow state"""
    session_id: Optional[int] = Field(None, description="Taken from the URL when omitted")
    to_state: WorkflowState
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("reason", mode="before")
    @classmethod
    def blank_reason_is_missing(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class AiInteractionRequest(BaseModel):
    """Opaque AI task invocation to be audited"""
    task: str = Field(..., min_length=1)
    context: Dict[str, Any] = Field(default_factory=dict)


class StateTransitionView(BaseModel):
    """Audit trail entry"""
    id: int
    session_id: int
    from_state: WorkflowState
    to_state: WorkflowState
    user_id: Optional[int] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    entry_hash: str

    @classmethod
    def from_model(cls, transition) -> "StateTransitionView":
        return cls(
            id=transition.id,
            session_id=transition.session_id,
            from_state=transition.from_state,
            to_state=transition.to_state,
            user_id=transition.user_id,
            reason=transition.reason,
            metadata=transition.transition_metadata or {},
            created_at=transition.created_at,
            entry_hash=transition.entry_hash,
        )


class WorkflowConfig(BaseModel):
    """Read-only workflow configuration for UI collaborators"""
    states: List[WorkflowState]
    transitions: Dict[str, List[WorkflowState]]
    transition_reasons: Dict[str, List[str]]
    reason_required: List[str]


class AuditVerification(BaseModel):
    """Result of checking a session's audit trail"""
    session_id: int
    transition_count: int
    stored_state: WorkflowState
    replayed_state: WorkflowState
    chain_intact: bool
    first_broken_transition_id: Optional[int] = None

    @computed_field
    @property
    def consistent(self) -> bool:
        """Replay matches stored state and no hash link is broken"""
        return self.chain_intact and self.stored_state == self.replayed_state


class SessionStateChanged(BaseModel):
    """Published after a workflow transition commits"""
    session_id: int
    session_couch_id: Optional[str] = None
    from_state: WorkflowState
    to_state: WorkflowState
    actor_id: Optional[int] = None
    reason: Optional[str] = None
    timestamp: datetime

    event_name: str = "session.state_changed"


class ReferralCreated(BaseModel):
    """Published after a referral is opened"""
    referral_uuid: str
    session_id: int
    session_couch_id: Optional[str] = None
    priority: TriagePriority
    source: str
    timestamp: datetime

    event_name: str = "referral.created"
