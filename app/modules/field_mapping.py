"""
HealthBridge Core - Field Mapping
Normalizes raw, loosely-typed documents into canonical records per document kind

Producers have renamed fields across app versions. Every logical field has an
alias tuple below; the first alias with a non-null value wins, so the order
of each tuple decides which of two conflicting fields is kept.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from dateutil import parser as date_parser

from app.schemas import (
    DocumentKind, WorkflowState, SessionStage, TriagePriority,
    PatientRecord, SessionRecord, FormRecord, AiLogRecord,
    ReportRecord, ImagingStudyRecord, EncryptedStub
)

logger = logging.getLogger(__name__)


# =============================================================================
# Discriminant and Identifier Aliases
# =============================================================================

DISCRIMINANT_KEYS: Tuple[str, ...] = ("type", "kind", "docType")
ID_KEYS: Tuple[str, ...] = ("_id", "id")
REV_KEYS: Tuple[str, ...] = ("_rev", "rev")

KIND_ALIASES: Dict[DocumentKind, Tuple[str, ...]] = {
    DocumentKind.PATIENT: ("clinicalPatient", "patient"),
    DocumentKind.SESSION: ("clinicalSession", "session"),
    DocumentKind.FORM: ("clinicalForm", "form"),
    DocumentKind.AI_LOG: ("aiLog", "ai_log", "aiInteractionLog"),
    DocumentKind.REPORT: ("diagnosticReport", "report"),
    DocumentKind.IMAGING: ("radiologyStudy", "imagingStudy", "imaging"),
}

UPDATED_AT_ALIASES: Tuple[str, ...] = ("updatedAt", "updated_at")
CREATED_AT_ALIASES: Tuple[str, ...] = ("createdAt", "created_at")

LEGACY_WORKFLOW_STATES: Dict[str, WorkflowState] = {
    "IN_GP_REVIEW": WorkflowState.IN_REVIEW,
}


# =============================================================================
# Per-Kind Field Aliases (priority order)
# =============================================================================

PATIENT_FIELDS: Dict[str, Tuple[str, ...]] = {
    "cpt": ("cpt", "patientCpt", "patient_cpt", "id"),
    "first_name": ("firstName", "first_name"),
    "last_name": ("lastName", "last_name"),
    "short_code": ("shortCode", "short_code"),
    "external_id": ("externalId", "external_id"),
    "date_of_birth": ("dateOfBirth", "date_of_birth", "dob"),
    "age_months": ("ageMonths", "age_months"),
    "gender": ("gender", "sex"),
    "weight_kg": ("weightKg", "weight_kg", "weight"),
    "phone": ("phone", "phoneNumber"),
    "visit_count": ("visitCount", "visit_count"),
    "is_active": ("isActive", "is_active"),
    "last_visit_at": ("lastVisit", "lastVisitAt", "last_visit_at"),
}

SESSION_FIELDS: Dict[str, Tuple[str, ...]] = {
    "session_uuid": ("id", "sessionId", "uuid"),
    "patient_cpt": ("patientCpt", "patient_cpt", "patientId", "patient_id"),
    "workflow_state": ("workflowState", "workflow_state"),
    "workflow_state_updated_at": ("workflowStateUpdatedAt", "workflow_state_updated_at"),
    "triage_priority": ("triage", "triagePriority", "triage_priority"),
    "created_by": ("createdBy", "createdByUserId", "created_by", "providerId", "userId"),
    "provider_role": ("providerRole", "provider_role", "createdByRole"),
    "stage": ("stage",),
    "status": ("status",),
    "chief_complaint": ("chiefComplaint", "chief_complaint"),
    "notes": ("notes",),
    "treatment_plan": ("treatmentPlan", "treatment_plan"),
    "form_instance_ids": ("formInstanceIds", "form_instance_ids"),
}

FORM_FIELDS: Dict[str, Tuple[str, ...]] = {
    "session_couch_id": ("sessionId", "session_id", "sessionCouchId"),
    "patient_cpt": ("patientCpt", "patientId", "patient_id"),
    "created_by": ("createdBy", "created_by", "userId"),
    "creator_role": ("creatorRole", "creator_role"),
    "schema_id": ("schemaId", "schema_id"),
    "schema_version": ("schemaVersion", "schema_version"),
    "current_state_id": ("currentStateId", "current_state_id"),
    "status": ("status",),
    "answers": ("answers",),
    "calculated": ("calculated",),
    "audit_log": ("auditLog", "audit_log"),
    "completed_at": ("completedAt", "completed_at"),
}

AI_LOG_FIELDS: Dict[str, Tuple[str, ...]] = {
    "session_couch_id": ("sessionId", "session_id"),
    "form_couch_id": ("formInstanceId", "formId", "form_id"),
    "user": ("userId", "user_id", "createdBy"),
    "task": ("task",),
    "use_case": ("useCase", "use_case"),
    "prompt_version": ("promptVersion", "prompt_version"),
    "input_hash": ("promptHash", "inputHash", "input_hash"),
    "prompt": ("prompt",),
    "response": ("output", "response"),
    "model": ("model",),
    "model_version": ("modelVersion", "model_version"),
    "latency_ms": ("latencyMs", "latency_ms"),
    "was_overridden": ("wasOverridden", "was_overridden"),
    "risk_flags": ("riskFlags", "risk_flags"),
}

REPORT_FIELDS: Dict[str, Tuple[str, ...]] = {
    "study_uuid": ("studyId", "studyUuid", "study_id"),
    "radiologist": ("radiologistId", "radiologist_id", "createdBy"),
    "report_type": ("reportType", "report_type"),
    "report_version": ("reportVersion", "report_version", "version"),
    "findings": ("findings",),
    "impression": ("impression",),
    "recommendations": ("recommendations",),
    "critical_findings": ("criticalFindings", "critical_findings"),
    "is_locked": ("isLocked", "is_locked"),
    "signed_at": ("signedAt", "signed_at"),
}

IMAGING_FIELDS: Dict[str, Tuple[str, ...]] = {
    "study_instance_uid": ("studyInstanceUid", "study_instance_uid"),
    "accession_number": ("accessionNumber", "accession_number"),
    "session_couch_id": ("sessionId", "session_id", "sessionCouchId"),
    "patient_cpt": ("patientCpt", "patientId", "patient_id"),
    "referring": ("referringUserId", "referring_user_id", "createdBy"),
    "modality": ("modality",),
    "body_part": ("bodyPart", "body_part"),
    "study_type": ("studyType", "study_type"),
    "clinical_indication": ("clinicalIndication", "clinical_indication"),
    "priority": ("priority",),
    "status": ("status",),
    "ordered_at": ("orderedAt", "ordered_at"),
    "performed_at": ("performedAt", "performed_at"),
}


# =============================================================================
# Lookup Helpers
# =============================================================================

def _normalize_key(key: str) -> str:
    return key.replace("_", "").replace("-", "").lower()


def lookup(doc: Mapping[str, Any], aliases: Iterable[str], default: Any = None) -> Any:
    """
    Return the first non-null value among aliases

    Exact key matches are tried first, in alias order. Only when none hits
    is a case/underscore/hyphen-insensitive match tried, again in alias
    order. Reserved keys (leading underscore) only ever match exactly.
    """
    aliases = tuple(aliases)
    for alias in aliases:
        value = doc.get(alias)
        if value is not None:
            return value

    relaxed: Dict[str, Any] = {}
    for key, value in doc.items():
        if not isinstance(key, str) or key.startswith("_") or value is None:
            continue
        relaxed.setdefault(_normalize_key(key), value)

    for alias in aliases:
        value = relaxed.get(_normalize_key(alias))
        if value is not None:
            return value
    return default


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return str(value)


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    return bool(value)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


# =============================================================================
# Timestamps and Dates
# =============================================================================

EPOCH_SECONDS_LIMIT = 10 ** 11


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a document timestamp into naive UTC

    Accepts epoch milliseconds (number or numeric string), epoch seconds
    (values below 10^11) and ISO-8601 strings. Unparseable values give None.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        moment = value
    else:
        numeric = _as_float(value) if not isinstance(value, str) or _looks_numeric(value) else None
        if numeric is not None:
            seconds = numeric if abs(numeric) < EPOCH_SECONDS_LIMIT else numeric / 1000.0
            try:
                return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
            except (OverflowError, OSError, ValueError):
                return None
        if not isinstance(value, str):
            return None
        try:
            moment = date_parser.isoparse(value.strip())
        except (ValueError, OverflowError):
            try:
                moment = date_parser.parse(value.strip())
            except (ValueError, OverflowError):
                logger.debug(f"Unparseable timestamp: {value!r}")
                return None

    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def _looks_numeric(value: str) -> bool:
    try:
        float(value.strip())
        return True
    except ValueError:
        return False


def parse_date(value: Any) -> Optional[date]:
    """Parse a calendar date (date of birth); timestamps are truncated"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    moment = parse_timestamp(value)
    return moment.date() if moment else None


def calculate_age_months(date_of_birth: Optional[date], today: date) -> Optional[int]:
    """Whole months between date of birth and today"""
    if date_of_birth is None or date_of_birth > today:
        return None
    months = (today.year - date_of_birth.year) * 12 + (today.month - date_of_birth.month)
    if today.day < date_of_birth.day:
        months -= 1
    return max(months, 0)


# =============================================================================
# Enumerated Values
# =============================================================================

def normalize_workflow_state(value: Any) -> Optional[WorkflowState]:
    """Map a declared workflow state to the enum; unknown strings give None"""
    text = _as_str(value)
    if text is None:
        return None
    key = text.upper().replace("-", "_").replace(" ", "_")
    if key in LEGACY_WORKFLOW_STATES:
        return LEGACY_WORKFLOW_STATES[key]
    try:
        return WorkflowState(key)
    except ValueError:
        return None


def normalize_triage(value: Any) -> TriagePriority:
    """Map a declared triage color; anything unrecognized is unknown"""
    if isinstance(value, Mapping):
        value = lookup(value, ("priority", "color", "level"))
    text = _as_str(value)
    if text is None:
        return TriagePriority.UNKNOWN
    try:
        return TriagePriority(text.lower())
    except ValueError:
        return TriagePriority.UNKNOWN


def normalize_stage(value: Any) -> Optional[SessionStage]:
    text = _as_str(value)
    if text is None:
        return None
    try:
        return SessionStage(text.lower())
    except ValueError:
        return None


# =============================================================================
# Envelope
# =============================================================================

def declared_kind(doc: Mapping[str, Any]) -> Optional[str]:
    """Raw discriminant value, or None when the document declares none"""
    return _as_str(lookup(doc, DISCRIMINANT_KEYS))


def resolve_kind(doc: Mapping[str, Any]) -> Optional[DocumentKind]:
    """Document kind from the discriminant; None when missing or unknown"""
    declared = declared_kind(doc)
    if declared is None:
        return None
    for kind, aliases in KIND_ALIASES.items():
        if declared in aliases:
            return kind
    lowered = _normalize_key(declared)
    for kind, aliases in KIND_ALIASES.items():
        if lowered in {_normalize_key(alias) for alias in aliases}:
            return kind
    return None


def document_id(doc: Mapping[str, Any]) -> Optional[str]:
    for key in ID_KEYS:
        value = _as_str(doc.get(key))
        if value:
            return value
    return None


def document_rev(doc: Mapping[str, Any]) -> Optional[str]:
    for key in REV_KEYS:
        value = _as_str(doc.get(key))
        if value:
            return value
    return None


def is_encrypted(doc: Mapping[str, Any]) -> bool:
    return _as_bool(doc.get("encrypted"))


def _envelope(doc: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "couch_id": document_id(doc),
        "couch_rev": document_rev(doc),
        "updated_at": parse_timestamp(lookup(doc, UPDATED_AT_ALIASES)),
        "raw_document": dict(doc),
    }


# =============================================================================
# Per-Kind Mappers
# =============================================================================

def map_encrypted_stub(doc: Mapping[str, Any]) -> EncryptedStub:
    """Minimal metadata for an encrypted payload; contents are not interpreted"""
    return EncryptedStub(declared_type=declared_kind(doc), **_envelope(doc))


def map_patient(doc: Mapping[str, Any], today: Optional[date] = None) -> PatientRecord:
    """
    Map a patient document

    Fields live either in a nested `patient` object or on the document itself.
    Age in months is derived from the date of birth when not declared.
    """
    nested = doc.get("patient")
    source = nested if isinstance(nested, Mapping) else doc
    fields = {name: lookup(source, aliases) for name, aliases in PATIENT_FIELDS.items()}

    date_of_birth = parse_date(fields["date_of_birth"])
    age_months = _as_int(fields["age_months"])
    if age_months is None and date_of_birth is not None:
        age_months = calculate_age_months(date_of_birth, today or date.today())

    visit_count = _as_int(fields["visit_count"])

    envelope = _envelope(doc)
    if envelope["updated_at"] is None and source is not doc:
        envelope["updated_at"] = parse_timestamp(lookup(source, UPDATED_AT_ALIASES))

    return PatientRecord(
        cpt=_as_str(fields["cpt"]),
        first_name=_as_str(fields["first_name"]),
        last_name=_as_str(fields["last_name"]),
        short_code=_as_str(fields["short_code"]),
        external_id=_as_str(fields["external_id"]),
        date_of_birth=date_of_birth,
        age_months=age_months,
        gender=_as_str(fields["gender"]),
        weight_kg=_as_float(fields["weight_kg"]),
        phone=_as_str(fields["phone"]),
        visit_count=visit_count if visit_count is not None and visit_count >= 0 else 1,
        is_active=_as_bool(fields["is_active"], default=True),
        last_visit_at=parse_timestamp(fields["last_visit_at"]),
        **envelope
    )


def map_session(doc: Mapping[str, Any]) -> SessionRecord:
    """Map a clinical session document"""
    fields = {name: lookup(doc, aliases) for name, aliases in SESSION_FIELDS.items()}
    envelope = _envelope(doc)

    raw_state = fields["workflow_state"]
    workflow_state = normalize_workflow_state(raw_state)
    if raw_state is not None and workflow_state is None:
        logger.warning(f"Ignoring invalid workflow state {raw_state!r} on session {envelope['couch_id']}")

    treatment_plan = fields["treatment_plan"]
    if treatment_plan is not None and not isinstance(treatment_plan, Mapping):
        treatment_plan = {"text": str(treatment_plan)}

    return SessionRecord(
        session_uuid=_as_str(fields["session_uuid"]) or envelope["couch_id"],
        patient_cpt=_as_str(fields["patient_cpt"]),
        created_by_ref=fields["created_by"],
        provider_role=_as_str(fields["provider_role"]),
        stage=normalize_stage(fields["stage"]),
        status=_as_str(fields["status"]) or "open",
        workflow_state=workflow_state,
        workflow_state_updated_at=parse_timestamp(fields["workflow_state_updated_at"]),
        triage_priority=normalize_triage(fields["triage_priority"]),
        chief_complaint=_as_str(fields["chief_complaint"]),
        notes=_as_str(fields["notes"]),
        treatment_plan=dict(treatment_plan) if treatment_plan is not None else None,
        form_instance_ids=[str(item) for item in _as_list(fields["form_instance_ids"])],
        session_created_at=parse_timestamp(lookup(doc, CREATED_AT_ALIASES)),
        **envelope
    )


def map_form(doc: Mapping[str, Any]) -> FormRecord:
    """Map a clinical form document"""
    fields = {name: lookup(doc, aliases) for name, aliases in FORM_FIELDS.items()}
    answers = fields["answers"]
    audit_log = fields["audit_log"]
    return FormRecord(
        session_couch_id=_as_str(fields["session_couch_id"]),
        patient_cpt=_as_str(fields["patient_cpt"]),
        created_by_ref=fields["created_by"],
        creator_role=_as_str(fields["creator_role"]),
        schema_id=_as_str(fields["schema_id"]) or "unknown",
        schema_version=_as_str(fields["schema_version"]),
        current_state_id=_as_str(fields["current_state_id"]),
        status=_as_str(fields["status"]) or "draft",
        answers=dict(answers) if isinstance(answers, Mapping) else {},
        calculated=fields["calculated"] if isinstance(fields["calculated"], Mapping) else None,
        audit_log=_as_list(audit_log) if audit_log is not None else None,
        form_created_at=parse_timestamp(lookup(doc, CREATED_AT_ALIASES)),
        completed_at=parse_timestamp(fields["completed_at"]),
        **_envelope(doc)
    )


def map_ai_log(doc: Mapping[str, Any]) -> AiLogRecord:
    """Map an AI interaction log; these are immutable once written"""
    fields = {name: lookup(doc, aliases) for name, aliases in AI_LOG_FIELDS.items()}
    risk_flags = fields["risk_flags"]
    return AiLogRecord(
        session_couch_id=_as_str(fields["session_couch_id"]),
        form_couch_id=_as_str(fields["form_couch_id"]),
        user_ref=fields["user"],
        task=_as_str(fields["task"]),
        use_case=_as_str(fields["use_case"]),
        prompt_version=_as_str(fields["prompt_version"]),
        input_hash=_as_str(fields["input_hash"]),
        prompt=_as_str(fields["prompt"]),
        response=_as_str(fields["response"]),
        model=_as_str(fields["model"]),
        model_version=_as_str(fields["model_version"]),
        latency_ms=_as_int(fields["latency_ms"]),
        was_overridden=_as_bool(fields["was_overridden"]),
        risk_flags=_as_list(risk_flags) if risk_flags is not None else None,
        requested_at=parse_timestamp(lookup(doc, CREATED_AT_ALIASES)),
        **_envelope(doc)
    )


def map_report(doc: Mapping[str, Any]) -> ReportRecord:
    """Map a diagnostic report document"""
    fields = {name: lookup(doc, aliases) for name, aliases in REPORT_FIELDS.items()}
    version = _as_int(fields["report_version"])
    return ReportRecord(
        study_uuid=_as_str(fields["study_uuid"]),
        radiologist_ref=fields["radiologist"],
        report_type=_as_str(fields["report_type"]) or "final",
        report_version=version if version and version >= 1 else 1,
        findings=_as_str(fields["findings"]),
        impression=_as_str(fields["impression"]),
        recommendations=_as_str(fields["recommendations"]),
        critical_findings=_as_bool(fields["critical_findings"]),
        is_locked=_as_bool(fields["is_locked"]),
        signed_at=parse_timestamp(fields["signed_at"]),
        **_envelope(doc)
    )


def map_imaging(doc: Mapping[str, Any]) -> ImagingStudyRecord:
    """Map a radiology (imaging) study document"""
    fields = {name: lookup(doc, aliases) for name, aliases in IMAGING_FIELDS.items()}
    return ImagingStudyRecord(
        study_instance_uid=_as_str(fields["study_instance_uid"]),
        accession_number=_as_str(fields["accession_number"]),
        session_couch_id=_as_str(fields["session_couch_id"]),
        patient_cpt=_as_str(fields["patient_cpt"]),
        referring_ref=fields["referring"],
        modality=_as_str(fields["modality"]),
        body_part=_as_str(fields["body_part"]),
        study_type=_as_str(fields["study_type"]),
        clinical_indication=_as_str(fields["clinical_indication"]),
        priority=(_as_str(fields["priority"]) or "routine").lower(),
        status=(_as_str(fields["status"]) or "pending").lower(),
        ordered_at=parse_timestamp(fields["ordered_at"]),
        performed_at=parse_timestamp(fields["performed_at"]),
        **_envelope(doc)
    )
