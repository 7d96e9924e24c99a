"""
HealthBridge Core - Synchronization Engine
One-way ingestion of document-store changes into the relational store

Every document is upserted in its own transaction. Data problems in one
document are logged and never abort the batch; only a lost database
connection does, so the change-feed checkpoint is not advanced past
documents that were never processed.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.database import session_scope
from app.models import (
    Patient, ClinicalSession, ClinicalForm, AiRequest,
    DiagnosticReport, RadiologyStudy, EncryptedDocument
)
from app.modules import field_mapping as fm
from app.modules.audit import build_transition, record_action
from app.modules.conflict import ConflictDecision, ConflictVerdict, resolve_conflict
from app.modules.identity import UserIdentityResolver
from app.modules.workflow import SYNC_IMPORT_REASON, open_referral
from app.schemas import (
    DocumentKind, WorkflowState, TriagePriority, ReferralPolicy, UpsertOutcome,
    SyncRecord, BatchResult, SessionStateChanged
)
from app.services.clock import SystemClock
from app.services.event_bus import EventBus, get_event_bus
from app.services.repository import Repository

logger = logging.getLogger(__name__)


# =============================================================================
# Kind Dispatch
# =============================================================================

KIND_HANDLERS: Dict[DocumentKind, str] = {
    DocumentKind.PATIENT: "_upsert_patient",
    DocumentKind.SESSION: "_upsert_session",
    DocumentKind.FORM: "_upsert_form",
    DocumentKind.AI_LOG: "_upsert_ai_log",
    DocumentKind.REPORT: "_upsert_report",
    DocumentKind.IMAGING: "_upsert_imaging",
}


def check_kind_handlers(handlers: Mapping[DocumentKind, str]) -> None:
    """Fail at import when a document kind has no upsert handler"""
    missing = set(DocumentKind) - set(handlers)
    if missing:
        raise RuntimeError(f"No upsert handler for document kinds: {sorted(k.value for k in missing)}")


check_kind_handlers(KIND_HANDLERS)

CONFLICT_OUTCOMES = {
    ConflictDecision.APPLY: UpsertOutcome.APPLIED,
    ConflictDecision.FLAG: UpsertOutcome.FLAGGED,
    ConflictDecision.SKIP: UpsertOutcome.SKIPPED,
}

ENCRYPTED_LABEL = "encrypted"
INSERT_RACE_ATTEMPTS = 2


# =============================================================================
# Referral Side Effect
# =============================================================================

class SessionSnapshot(NamedTuple):
    """Triage and workflow state of a session at one point in time"""
    triage_priority: TriagePriority
    workflow_state: WorkflowState


class ReferralTrigger(BaseModel):
    """Why a sync-driven referral should be opened"""
    trigger: str
    priority: TriagePriority
    assigned_to_role: Optional[str] = None
    specialty: Optional[str] = None
    reason: str


def plan_sync_referral(
    policy: ReferralPolicy,
    previous: Optional[SessionSnapshot],
    current: SessionSnapshot,
    has_open_referral: bool
) -> Optional[ReferralTrigger]:
    """
    Decide whether a synced session change opens a referral

    Args:
        policy: Configured referral policy
        previous: Session before the upsert, None when newly created
        current: Session after the upsert
        has_open_referral: A pending or accepted referral already exists

    Returns:
        ReferralTrigger, or None when no referral should be opened
    """
    if policy == ReferralPolicy.DISABLED or has_open_referral:
        return None

    red_enabled = policy in (ReferralPolicy.RED_TRIAGE, ReferralPolicy.ALL)
    referred_enabled = policy in (ReferralPolicy.WORKFLOW_REFERRED, ReferralPolicy.ALL)

    became_red = current.triage_priority == TriagePriority.RED and (
        previous is None or previous.triage_priority != TriagePriority.RED
    )
    if red_enabled and became_red:
        return ReferralTrigger(
            trigger="red_triage",
            priority=TriagePriority.RED,
            assigned_to_role="gp",
            specialty="general_practice",
            reason="Auto-created: RED triage priority - urgent GP review required",
        )

    became_referred = current.workflow_state == WorkflowState.REFERRED and (
        previous is None or previous.workflow_state != WorkflowState.REFERRED
    )
    if referred_enabled and became_referred:
        return ReferralTrigger(
            trigger="workflow_referred",
            priority=current.triage_priority,
            reason="Auto-created: session reported REFERRED by a mobile client",
        )

    return None


# =============================================================================
# Sync Engine
# =============================================================================

class _UnitOfWork(NamedTuple):
    repository: Repository
    identity: UserIdentityResolver
    now: datetime
    events: List[BaseModel]


class SyncEngine:
    """
    Dispatches raw documents by kind to per-kind upserts

    Upserts replace the stored row keyed by the document id. Conflicts are
    settled on the document-declared update time (see conflict.py).
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        clock=None,
        event_bus: Optional[EventBus] = None,
        referral_policy: Optional[ReferralPolicy] = None
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.event_bus = event_bus if event_bus is not None else get_event_bus()
        self.referral_policy = ReferralPolicy(referral_policy or settings.sync_auto_referral_policy)

    # =========================================================================
    # Public API
    # =========================================================================

    def upsert(self, raw: Mapping[str, Any]) -> UpsertOutcome:
        """
        Upsert one raw document

        Never raises for bad documents; the outcome says what happened.
        Database connectivity errors propagate.
        """
        outcome, _ = self._upsert(raw)
        return outcome

    def process_batch(self, documents: Sequence[Mapping[str, Any]]) -> BatchResult:
        """
        Upsert a page of documents or change-feed rows

        Change-feed rows ({"id", "seq", "doc", "deleted"}) are unwrapped;
        deletions and rows without a document are skipped.

        Returns:
            BatchResult where applied == total - skipped - errored
        """
        result = BatchResult()

        for item in documents:
            raw = item
            if _is_change_row(item):
                if item.get("deleted"):
                    logger.info(f"Ignoring deletion of {item.get('id')}; relational rows are kept for audit")
                    result.record(UpsertOutcome.SKIPPED)
                    continue
                raw = item.get("doc")
                if raw is None:
                    logger.info(f"Change row {item.get('id')} carries no document; skipped")
                    result.record(UpsertOutcome.SKIPPED)
                    continue

            outcome, error = self._upsert(raw)
            result.record(outcome)
            if outcome == UpsertOutcome.ERROR:
                result.errors.append({
                    "id": fm.document_id(raw) if isinstance(raw, Mapping) else None,
                    "kind": _kind_label(raw),
                    "error": error,
                })

        logger.info(
            f"Batch processed: {result.applied}/{result.total} applied "
            f"({result.flagged} flagged, {result.skipped} skipped, {result.errored} errors)"
        )
        return result

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _upsert(self, raw: Any) -> Tuple[UpsertOutcome, Optional[str]]:
        if not isinstance(raw, Mapping):
            logger.error(f"Malformed document of type {type(raw).__name__}; expected a mapping")
            return UpsertOutcome.ERROR, "document is not a mapping"

        doc_id = fm.document_id(raw)

        if _truthy(raw.get("_deleted")):
            logger.info(f"Ignoring deleted document {doc_id}")
            return UpsertOutcome.SKIPPED, None

        encrypted = fm.is_encrypted(raw)
        kind: Optional[DocumentKind] = None
        if not encrypted:
            kind = fm.resolve_kind(raw)
            if kind is None:
                declared = fm.declared_kind(raw)
                if declared is None:
                    logger.warning(f"Document {doc_id or 'unknown'} has no type discriminant; skipped")
                else:
                    logger.info(f"Document {doc_id or 'unknown'} has unknown type '{declared}'; skipped")
                return UpsertOutcome.SKIPPED, None

        label = ENCRYPTED_LABEL if encrypted else kind.value
        if doc_id is None:
            logger.warning(f"Document of kind {label} has no id; skipped")
            return UpsertOutcome.SKIPPED, None

        events: List[BaseModel] = []
        try:
            for attempt in range(1, INSERT_RACE_ATTEMPTS + 1):
                events.clear()
                try:
                    outcome = self._write(raw, kind, doc_id, events)
                    break
                except IntegrityError:
                    # A concurrent delivery inserted the same id first; re-read it under the lock
                    if attempt == INSERT_RACE_ATTEMPTS:
                        raise
                    logger.info(f"Concurrent insert of {label} {doc_id}; retrying against the stored row")

        except OperationalError:
            logger.error(f"Database unavailable while syncing {doc_id} ({label}); aborting batch", exc_info=True)
            raise
        except Exception as e:
            logger.error(f"Failed to sync document {doc_id} ({label}): {e}", exc_info=True)
            return UpsertOutcome.ERROR, str(e)

        for event in events:
            self.event_bus.publish(event)

        logger.debug(f"Synced {label} {doc_id}: {outcome.value}")
        return outcome, None

    def _write(
        self,
        raw: Mapping[str, Any],
        kind: Optional[DocumentKind],
        doc_id: str,
        events: List[BaseModel]
    ) -> UpsertOutcome:
        """
        Upsert one document in its own transaction

        Every handler reads the stored row with SELECT ... FOR UPDATE before
        deciding, so deliveries of the same id serialize and the timestamp
        check sees the committed winner.
        """
        with session_scope(self.session_factory) as db:
            repository = Repository(db)
            work = _UnitOfWork(repository, UserIdentityResolver(repository), self.clock.now(), events)

            if kind is None:
                return self._upsert_encrypted(work, raw)

            outcome = getattr(self, KIND_HANDLERS[kind])(work, raw)
            if outcome.counts_as_applied:
                self._supersede_encrypted_stub(work, doc_id)
            return outcome

    def _decide(
        self,
        work: _UnitOfWork,
        kind: str,
        record: SyncRecord,
        existing: Any
    ) -> ConflictVerdict:
        """Conflict verdict for a kind that carries a document update time"""
        verdict = resolve_conflict(
            record.updated_at,
            existing.document_updated_at if existing is not None else None,
            record.couch_rev,
            existing.couch_rev if existing is not None else None,
            exists=existing is not None,
        )

        if verdict.decision == ConflictDecision.SKIP:
            logger.info(
                f"Skipping {verdict.reason} {kind} {record.couch_id}: "
                f"incoming {record.updated_at} / {record.couch_rev}, "
                f"stored {existing.document_updated_at} / {existing.couch_rev}"
            )
        elif verdict.decision == ConflictDecision.FLAG:
            logger.warning(
                f"Applying {kind} {record.couch_id} without updatedAt over a timestamped row; flagged for review"
            )
            record_action(
                work.repository,
                action="sync_conflict_flagged",
                resource_type=kind,
                resource_id=record.couch_id,
                timestamp=work.now,
                changes={
                    "reason": verdict.reason,
                    "incoming_rev": record.couch_rev,
                    "stored_rev": existing.couch_rev,
                    "stored_updated_at": existing.document_updated_at.isoformat(),
                },
                status="flagged",
            )
        return verdict

    @staticmethod
    def _stamp(row: Any, record: SyncRecord, now: datetime) -> None:
        """Document bookkeeping shared by every synced row"""
        row.couch_rev = record.couch_rev
        if record.updated_at is not None:
            row.document_updated_at = record.updated_at
        row.raw_document = record.raw_document
        row.synced_at = now

    # =========================================================================
    # Patients
    # =========================================================================

    def _upsert_patient(self, work: _UnitOfWork, raw: Mapping[str, Any]) -> UpsertOutcome:
        record = fm.map_patient(raw, today=work.now.date())
        repository = work.repository

        existing = repository.find_by_couch_id(Patient, record.couch_id, for_update=True)
        if existing is None and record.cpt:
            existing = repository.find_one(Patient, for_update=True, cpt=record.cpt)
            if existing is not None and existing.couch_id not in (None, record.couch_id):
                raise ValueError(
                    f"Tracking code {record.cpt} already belongs to document {existing.couch_id}"
                )
            if existing is not None:
                logger.info(f"Linking registered patient {record.cpt} to document {record.couch_id}")

        if existing is None and not record.cpt:
            raise ValueError("Patient document has no tracking code")

        verdict = self._decide(work, DocumentKind.PATIENT.value, record, existing)
        if not verdict.should_write:
            return CONFLICT_OUTCOMES[verdict.decision]

        if existing is None:
            patient = Patient(couch_id=record.couch_id, cpt=record.cpt)
            repository.add(patient)
            visit_count = record.visit_count
        else:
            patient = existing
            patient.couch_id = record.couch_id
            if record.cpt and patient.cpt != record.cpt:
                logger.warning(
                    f"Patient {record.couch_id} declares tracking code {record.cpt}; "
                    f"keeping issued code {patient.cpt}"
                )
            visit_count = max(patient.visit_count or 0, record.visit_count)

        patient.first_name = record.first_name
        patient.last_name = record.last_name
        patient.short_code = record.short_code
        patient.external_id = record.external_id
        patient.date_of_birth = record.date_of_birth
        patient.age_months = record.age_months
        patient.gender = record.gender
        patient.weight_kg = record.weight_kg
        patient.phone = record.phone
        patient.visit_count = visit_count
        patient.is_active = record.is_active
        patient.last_visit_at = record.last_visit_at
        self._stamp(patient, record, work.now)

        return CONFLICT_OUTCOMES[verdict.decision]

    # =========================================================================
    # Sessions
    # =========================================================================

    def _upsert_session(self, work: _UnitOfWork, raw: Mapping[str, Any]) -> UpsertOutcome:
        record = fm.map_session(raw)
        repository = work.repository

        existing = repository.find_session(record.couch_id, for_update=True)
        if existing is not None and existing.workflow_state == WorkflowState.CLOSED.value:
            logger.info(f"Session {record.couch_id} is closed; sync refresh ignored")
            return UpsertOutcome.SKIPPED

        verdict = self._decide(work, DocumentKind.SESSION.value, record, existing)
        if not verdict.should_write:
            return CONFLICT_OUTCOMES[verdict.decision]

        if existing is None:
            row = ClinicalSession(
                couch_id=record.couch_id,
                session_uuid=record.session_uuid,
                workflow_state=WorkflowState.NEW.value,
            )
            repository.add(row)
            previous = None
        else:
            row = existing
            previous = SessionSnapshot(
                fm.normalize_triage(row.triage_priority),
                WorkflowState(row.workflow_state),
            )

        row.session_uuid = record.session_uuid
        row.patient_cpt = record.patient_cpt
        row.created_by_user_id = work.identity.resolve(record.created_by_ref)
        row.provider_role = record.provider_role
        if record.stage is not None:
            row.stage = record.stage.value
        elif row.stage is None:
            row.stage = "registration"
        row.status = record.status
        row.triage_priority = record.triage_priority.value
        row.chief_complaint = record.chief_complaint
        row.notes = record.notes
        row.treatment_plan = record.treatment_plan
        row.form_instance_ids = record.form_instance_ids
        row.session_created_at = record.session_created_at
        if record.updated_at is not None:
            row.session_updated_at = record.updated_at
        self._stamp(row, record, work.now)
        repository.flush()

        self._adopt_workflow_state(work, row, record)

        trigger = plan_sync_referral(
            self.referral_policy,
            previous,
            SessionSnapshot(TriagePriority(row.triage_priority), WorkflowState(row.workflow_state)),
            repository.has_open_referral(row.id),
        )
        if trigger is not None:
            _, event = open_referral(
                repository, row, work.now,
                source="sync",
                referring_user_id=row.created_by_user_id,
                priority=trigger.priority,
                specialty=trigger.specialty,
                assigned_to_role=trigger.assigned_to_role,
                reason=trigger.reason,
                clinical_notes=row.chief_complaint,
            )
            work.events.append(event)
            logger.info(f"Sync opened referral for session {row.couch_id} ({trigger.trigger})")

        return CONFLICT_OUTCOMES[verdict.decision]

    def _adopt_workflow_state(self, work: _UnitOfWork, row: ClinicalSession, record) -> None:
        """
        Adopt the workflow state a session document reports

        The state is only taken when its own timestamp is not older than the
        stored one. Each adopted change is written to the audit trail.
        """
        incoming_state = record.workflow_state
        incoming_stamp = record.workflow_state_updated_at
        stored_stamp = row.workflow_state_updated_at

        if incoming_state is None:
            return

        if incoming_state.value == row.workflow_state:
            if incoming_stamp is not None and (stored_stamp is None or incoming_stamp > stored_stamp):
                row.workflow_state_updated_at = incoming_stamp
            return

        if stored_stamp is not None:
            if incoming_stamp is None:
                logger.warning(
                    f"Session {row.couch_id} reports {incoming_state.value} without a state timestamp; "
                    f"keeping {row.workflow_state}"
                )
                return
            if incoming_stamp < stored_stamp:
                logger.info(
                    f"Session {row.couch_id} reports older state {incoming_state.value} "
                    f"({incoming_stamp} < {stored_stamp}); keeping {row.workflow_state}"
                )
                return

        from_state = row.workflow_state
        stamp = incoming_stamp or work.now
        if stored_stamp is not None and stored_stamp > stamp:
            stamp = stored_stamp

        metadata: Dict[str, Any] = {"source": "sync", "couch_rev": record.couch_rev}
        if incoming_stamp is not None:
            metadata["document_state_updated_at"] = incoming_stamp.isoformat()

        transition = build_transition(
            work.repository, row, from_state, incoming_state.value, work.now,
            user_id=row.created_by_user_id, reason=SYNC_IMPORT_REASON, metadata=metadata
        )
        row.workflow_state = incoming_state.value
        row.workflow_state_updated_at = stamp
        if incoming_state == WorkflowState.CLOSED:
            row.completed_at = stamp

        work.events.append(SessionStateChanged(
            session_id=row.id,
            session_couch_id=row.couch_id,
            from_state=from_state,
            to_state=incoming_state,
            actor_id=row.created_by_user_id,
            reason=SYNC_IMPORT_REASON,
            timestamp=transition.created_at,
        ))
        logger.info(f"Session {row.couch_id}: {from_state} -> {incoming_state.value} (sync)")

    # =========================================================================
    # Forms, AI Logs, Reports, Imaging
    # =========================================================================

    def _upsert_form(self, work: _UnitOfWork, raw: Mapping[str, Any]) -> UpsertOutcome:
        record = fm.map_form(raw)
        existing = work.repository.find_form(record.couch_id, for_update=True)

        verdict = self._decide(work, DocumentKind.FORM.value, record, existing)
        if not verdict.should_write:
            return CONFLICT_OUTCOMES[verdict.decision]

        form = existing or work.repository.add(ClinicalForm(couch_id=record.couch_id))
        form.session_couch_id = record.session_couch_id
        form.patient_cpt = record.patient_cpt
        form.created_by_user_id = work.identity.resolve(record.created_by_ref)
        form.creator_role = record.creator_role
        form.schema_id = record.schema_id
        form.schema_version = record.schema_version
        form.current_state_id = record.current_state_id
        form.status = record.status
        form.answers = record.answers
        form.calculated = record.calculated
        form.audit_log = record.audit_log
        form.form_created_at = record.form_created_at
        form.completed_at = record.completed_at
        self._stamp(form, record, work.now)

        return CONFLICT_OUTCOMES[verdict.decision]

    def _upsert_ai_log(self, work: _UnitOfWork, raw: Mapping[str, Any]) -> UpsertOutcome:
        """AI logs are immutable on the device; the latest delivery always wins"""
        record = fm.map_ai_log(raw)
        entry = work.repository.find_ai_request(record.couch_id, for_update=True)
        if entry is None:
            entry = work.repository.add(AiRequest(request_uuid=record.couch_id))

        entry.session_couch_id = record.session_couch_id
        entry.form_couch_id = record.form_couch_id
        entry.user_id = work.identity.resolve(record.user_ref)
        entry.task = record.task
        entry.use_case = record.use_case
        entry.prompt_version = record.prompt_version
        entry.input_hash = record.input_hash
        entry.prompt = record.prompt
        entry.response = record.response
        entry.model = record.model
        entry.model_version = record.model_version
        entry.latency_ms = record.latency_ms
        entry.was_overridden = record.was_overridden
        entry.risk_flags = record.risk_flags
        entry.requested_at = record.requested_at or entry.requested_at or work.now
        entry.couch_rev = record.couch_rev
        entry.synced_at = work.now

        return UpsertOutcome.APPLIED

    def _upsert_report(self, work: _UnitOfWork, raw: Mapping[str, Any]) -> UpsertOutcome:
        record = fm.map_report(raw)
        existing = work.repository.find_report(record.couch_id, for_update=True)

        verdict = self._decide(work, DocumentKind.REPORT.value, record, existing)
        if not verdict.should_write:
            return CONFLICT_OUTCOMES[verdict.decision]

        report = existing or work.repository.add(DiagnosticReport(couch_id=record.couch_id))
        report.study_uuid = record.study_uuid
        report.radiologist_id = work.identity.resolve(record.radiologist_ref)
        report.report_type = record.report_type
        report.report_version = record.report_version
        report.findings = record.findings
        report.impression = record.impression
        report.recommendations = record.recommendations
        report.critical_findings = record.critical_findings
        report.is_locked = record.is_locked
        report.signed_at = record.signed_at
        self._stamp(report, record, work.now)

        return CONFLICT_OUTCOMES[verdict.decision]

    def _upsert_imaging(self, work: _UnitOfWork, raw: Mapping[str, Any]) -> UpsertOutcome:
        record = fm.map_imaging(raw)
        existing = work.repository.find_imaging_study(record.couch_id, for_update=True)

        verdict = self._decide(work, DocumentKind.IMAGING.value, record, existing)
        if not verdict.should_write:
            return CONFLICT_OUTCOMES[verdict.decision]

        study = existing or work.repository.add(RadiologyStudy(couch_id=record.couch_id))
        study.study_instance_uid = record.study_instance_uid
        study.accession_number = record.accession_number
        study.session_couch_id = record.session_couch_id
        study.patient_cpt = record.patient_cpt
        study.referring_user_id = work.identity.resolve(record.referring_ref)
        study.modality = record.modality
        study.body_part = record.body_part
        study.study_type = record.study_type
        study.clinical_indication = record.clinical_indication
        study.priority = record.priority
        study.status = record.status
        study.ordered_at = record.ordered_at
        study.performed_at = record.performed_at
        self._stamp(study, record, work.now)

        return CONFLICT_OUTCOMES[verdict.decision]

    # =========================================================================
    # Encrypted Payloads
    # =========================================================================

    def _upsert_encrypted(self, work: _UnitOfWork, raw: Mapping[str, Any]) -> UpsertOutcome:
        """Keep id, revision and the verbatim payload; contents are not read"""
        stub = fm.map_encrypted_stub(raw)
        existing = work.repository.find_encrypted(stub.couch_id, for_update=True)

        verdict = self._decide(work, ENCRYPTED_LABEL, stub, existing)
        if not verdict.should_write:
            return CONFLICT_OUTCOMES[verdict.decision]

        row = existing or work.repository.add(EncryptedDocument(couch_id=stub.couch_id))
        row.couch_rev = stub.couch_rev
        row.declared_type = stub.declared_type
        if stub.updated_at is not None:
            row.document_updated_at = stub.updated_at
        row.raw_document = stub.raw_document
        row.received_at = work.now
        row.superseded_at = None

        logger.info(f"Stored encrypted payload stub {stub.couch_id} ({stub.declared_type or 'untyped'})")
        return CONFLICT_OUTCOMES[verdict.decision]

    def _supersede_encrypted_stub(self, work: _UnitOfWork, doc_id: str) -> None:
        stub = work.repository.find_encrypted(doc_id, for_update=True)
        if stub is not None and stub.superseded_at is None:
            stub.superseded_at = work.now
            logger.info(f"Encrypted stub {doc_id} superseded by a decrypted copy")


def _is_change_row(item: Any) -> bool:
    return isinstance(item, Mapping) and "seq" in item and ("doc" in item or "changes" in item or "deleted" in item)


def _kind_label(raw: Any) -> Optional[str]:
    if not isinstance(raw, Mapping):
        return None
    if fm.is_encrypted(raw):
        return ENCRYPTED_LABEL
    kind = fm.resolve_kind(raw)
    return kind.value if kind else fm.declared_kind(raw)


def _truthy(value: Any) -> bool:
    return value is True or (isinstance(value, str) and value.lower() == "true")
