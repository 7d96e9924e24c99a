"""
HealthBridge Core - Clinical Workflow State Machine
Legal transitions, reason vocabulary, atomic audited transitions and referrals
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.database import session_scope
from app.models import AuditLog, ClinicalSession, Referral, StateTransition
from app.modules.audit import build_transition, find_broken_link, record_action, replay_state
from app.modules.field_mapping import normalize_triage, normalize_workflow_state
from app.schemas import (
    WorkflowState, ReferralStatus, TriagePriority, WorkflowConfig,
    AuditVerification, SessionStateChanged, ReferralCreated
)
from app.services.clock import SystemClock
from app.services.event_bus import EventBus, get_event_bus
from app.services.repository import Repository

logger = logging.getLogger(__name__)


# =============================================================================
# Transition Tables
# =============================================================================

W = WorkflowState

TRANSITIONS: Dict[WorkflowState, FrozenSet[WorkflowState]] = {
    W.NEW: frozenset({W.TRIAGED}),
    W.TRIAGED: frozenset({W.REFERRED, W.UNDER_TREATMENT, W.CLOSED}),
    W.REFERRED: frozenset({W.IN_REVIEW, W.CLOSED}),
    W.IN_REVIEW: frozenset({W.UNDER_TREATMENT, W.REFERRED, W.CLOSED}),
    W.UNDER_TREATMENT: frozenset({W.CLOSED, W.IN_REVIEW}),
    W.CLOSED: frozenset(),
}

INITIAL_STATE = W.NEW
TERMINAL_STATES = frozenset(state for state, targets in TRANSITIONS.items() if not targets)

TRANSITION_REASONS: Dict[Tuple[WorkflowState, WorkflowState], Tuple[str, ...]] = {
    (W.NEW, W.TRIAGED): ("assessment_completed", "vitals_recorded"),
    (W.TRIAGED, W.REFERRED): ("specialist_needed", "gp_consultation_required", "complex_case", "urgent_triage"),
    (W.TRIAGED, W.UNDER_TREATMENT): ("treatment_started", "medication_prescribed"),
    (W.TRIAGED, W.CLOSED): ("patient_discharged", "referred_externally"),
    (W.REFERRED, W.IN_REVIEW): ("referral_accepted", "review_started"),
    (W.REFERRED, W.CLOSED): ("referral_rejected", "referral_cancelled", "patient_no_show"),
    (W.IN_REVIEW, W.UNDER_TREATMENT): ("treatment_plan_created", "medication_started"),
    (W.IN_REVIEW, W.REFERRED): ("specialist_referral", "secondary_consultation"),
    (W.IN_REVIEW, W.CLOSED): ("treatment_completed", "patient_discharged"),
    (W.UNDER_TREATMENT, W.CLOSED): ("treatment_completed", "patient_recovered"),
    (W.UNDER_TREATMENT, W.IN_REVIEW): ("follow_up_needed", "complication_detected"),
}


def check_transition_tables(
    transitions: Mapping[WorkflowState, FrozenSet[WorkflowState]],
    reasons: Mapping[Tuple[WorkflowState, WorkflowState], Sequence[str]]
) -> None:
    """Fail at import when the tables miss a state or give reasons for an illegal pair"""
    missing = set(WorkflowState) - set(transitions)
    if missing:
        raise RuntimeError(f"Transition table misses states: {sorted(s.value for s in missing)}")
    illegal = [f"{frm.value}->{to.value}" for frm, to in reasons if to not in transitions[frm]]
    if illegal:
        raise RuntimeError(f"Reasons declared for illegal transitions: {', '.join(illegal)}")


check_transition_tables(TRANSITIONS, TRANSITION_REASONS)

REFERRAL_TRANSITIONS: Dict[ReferralStatus, FrozenSet[ReferralStatus]] = {
    ReferralStatus.PENDING: frozenset({ReferralStatus.ACCEPTED, ReferralStatus.REJECTED, ReferralStatus.CANCELLED}),
    ReferralStatus.ACCEPTED: frozenset({ReferralStatus.COMPLETED, ReferralStatus.CANCELLED}),
    ReferralStatus.REJECTED: frozenset(),
    ReferralStatus.COMPLETED: frozenset(),
    ReferralStatus.CANCELLED: frozenset(),
}

SYNC_IMPORT_REASON = "sync_import"
AI_INTERACTION_ACTION = "ai_interaction"


def transition_key(from_state: Union[WorkflowState, str], to_state: Union[WorkflowState, str]) -> str:
    return f"{WorkflowState(from_state).value}->{WorkflowState(to_state).value}"


def coerce_state(value: Any) -> Optional[WorkflowState]:
    if isinstance(value, WorkflowState):
        return value
    return normalize_workflow_state(value)


def is_legal(from_state: Any, to_state: Any) -> bool:
    """Pure check against the transition table; unknown states are illegal"""
    source = coerce_state(from_state)
    target = coerce_state(to_state)
    if source is None or target is None:
        return False
    return target in TRANSITIONS[source]


def allowed_targets(from_state: Any) -> List[WorkflowState]:
    source = coerce_state(from_state)
    if source is None:
        return []
    return sorted(TRANSITIONS[source], key=lambda state: WorkflowState.values().index(state.value))


def pattern_matches(pattern: str, from_state: WorkflowState, to_state: WorkflowState) -> bool:
    """Match a FROM->TO pattern; '*' matches any state on its side"""
    source, _, target = pattern.partition("->")
    return source in ("*", from_state.value) and target in ("*", to_state.value)


# =============================================================================
# Exceptions
# =============================================================================

class WorkflowError(ValueError):
    """Base class for recoverable workflow validation errors"""
    code = "workflow_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": str(self)}


class InvalidTransitionError(WorkflowError):
    """Requested (from, to) pair is not in the transition table"""
    code = "invalid_transition"

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = [state.value for state in allowed_targets(from_state)]
        super().__init__(f"Cannot transition from {from_state} to {to_state}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(from_state=self.from_state, to_state=self.to_state, allowed_transitions=self.allowed)
        return data


class ReasonRequiredError(WorkflowError):
    """Transition is reason-required and no reason was given"""
    code = "reason_required"

    def __init__(self, from_state: str, to_state: str, field: str = "reason"):
        self.from_state = from_state
        self.to_state = to_state
        self.field = field
        self.valid_reasons = list(TRANSITION_REASONS.get((W(from_state), W(to_state)), ()))
        super().__init__(f"A {field} is required to transition from {from_state} to {to_state}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            from_state=self.from_state, to_state=self.to_state,
            field=self.field, valid_reasons=self.valid_reasons
        )
        return data


class InvalidReasonError(WorkflowError):
    """Reason is not in the vocabulary configured for the pair"""
    code = "invalid_reason"

    def __init__(self, from_state: str, to_state: str, reason: str, valid_reasons: Sequence[str]):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        self.field = "reason"
        self.valid_reasons = list(valid_reasons)
        super().__init__(
            f"Reason '{reason}' is not valid for {from_state}->{to_state}; "
            f"expected one of: {', '.join(self.valid_reasons)}"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            from_state=self.from_state, to_state=self.to_state, field=self.field,
            reason=self.reason, valid_reasons=self.valid_reasons
        )
        return data


class InvalidReferralTransitionError(WorkflowError):
    """Referral status change outside the referral sub-machine"""
    code = "invalid_referral_transition"

    def __init__(self, referral_uuid: str, from_status: str, to_status: str):
        self.referral_uuid = referral_uuid
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Referral {referral_uuid} cannot move from {from_status} to {to_status}")


class SessionNotFoundError(LookupError):
    """No clinical session with the given id"""
    code = "session_not_found"

    def __init__(self, session_id: Any):
        self.session_id = session_id
        super().__init__(f"Clinical session {session_id} not found")

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": str(self), "session_id": self.session_id}


# =============================================================================
# Referral Sub-Machine
# =============================================================================

def new_referral_uuid() -> str:
    return f"ref_{uuid.uuid4().hex[:8]}"


def open_referral(
    repository: Repository,
    session: ClinicalSession,
    now: datetime,
    source: str = "workflow",
    referring_user_id: Optional[int] = None,
    priority: Any = None,
    specialty: Optional[str] = None,
    assigned_to_role: Optional[str] = None,
    reason: Optional[str] = None,
    clinical_notes: Optional[str] = None
) -> Tuple[Referral, ReferralCreated]:
    """
    Create a pending referral for a session

    Priority defaults to the session's triage priority.

    Returns:
        The new referral and the event to publish once committed
    """
    resolved_priority = normalize_triage(priority)
    if priority is None or resolved_priority == TriagePriority.UNKNOWN:
        resolved_priority = normalize_triage(session.triage_priority)

    referral = Referral(
        referral_uuid=new_referral_uuid(),
        session_id=session.id,
        session_couch_id=session.couch_id,
        referring_user_id=referring_user_id,
        assigned_to_role=assigned_to_role,
        status=ReferralStatus.PENDING.value,
        priority=resolved_priority.value,
        specialty=specialty,
        reason=reason,
        clinical_notes=clinical_notes,
        source=source,
        assigned_at=now,
    )
    repository.add(referral)
    repository.flush()

    logger.info(f"Opened referral {referral.referral_uuid} for session {session.id} ({source}, {resolved_priority.value})")

    event = ReferralCreated(
        referral_uuid=referral.referral_uuid,
        session_id=session.id,
        session_couch_id=session.couch_id,
        priority=resolved_priority,
        source=source,
        timestamp=now,
    )
    return referral, event


def change_referral_status(
    referral: Referral,
    to_status: ReferralStatus,
    now: datetime,
    actor_id: Optional[int] = None,
    rejection_reason: Optional[str] = None
) -> Referral:
    """Move a referral along the sub-machine, stamping the matching timestamp"""
    current = ReferralStatus(referral.status)
    if to_status not in REFERRAL_TRANSITIONS[current]:
        raise InvalidReferralTransitionError(referral.referral_uuid, current.value, to_status.value)

    referral.status = to_status.value
    if to_status == ReferralStatus.ACCEPTED:
        referral.accepted_at = now
        if actor_id is not None:
            referral.assigned_to_user_id = actor_id
    elif to_status == ReferralStatus.REJECTED:
        referral.rejection_reason = rejection_reason
        referral.completed_at = now
    elif to_status in (ReferralStatus.COMPLETED, ReferralStatus.CANCELLED):
        referral.completed_at = now

    logger.debug(f"Referral {referral.referral_uuid}: {current.value} -> {to_status.value}")
    return referral


# =============================================================================
# Workflow State Machine
# =============================================================================

SessionRef = Union[ClinicalSession, int]
ReasonArg = Union[str, Callable[[WorkflowState], Optional[str]], None]


class WorkflowStateMachine:
    """
    Clinical workflow state machine over synced session rows

    Each transition runs in its own transaction: the session row is locked,
    legality is re-checked against the locked row, and the audit row, the
    session state and any referral changes commit together. Events are
    published only after the commit.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        clock=None,
        event_bus: Optional[EventBus] = None,
        reason_required: Optional[Iterable[str]] = None
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.event_bus = event_bus if event_bus is not None else get_event_bus()
        patterns = settings.workflow_reason_required if reason_required is None else reason_required
        self.reason_required = [p.replace(" ", "").upper() for p in patterns]

    # =========================================================================
    # Guards and Vocabulary
    # =========================================================================

    def can_transition(self, session: ClinicalSession, to_state: Any) -> bool:
        """Pure predicate over the table and the session's current state"""
        return is_legal(session.workflow_state, to_state)

    def is_reason_required(self, from_state: Any, to_state: Any) -> bool:
        source, target = coerce_state(from_state), coerce_state(to_state)
        if source is None or target is None:
            return False
        return any(pattern_matches(p, source, target) for p in self.reason_required)

    def get_valid_reasons(self, from_state: Any, to_state: Any) -> List[str]:
        """Reason vocabulary for a pair; empty means any reason is accepted"""
        source, target = coerce_state(from_state), coerce_state(to_state)
        if source is None or target is None:
            return []
        return list(TRANSITION_REASONS.get((source, target), ()))

    def validate_reason(self, from_state: WorkflowState, to_state: WorkflowState, reason: Optional[str]) -> Optional[str]:
        """Normalized reason, or a validation error for a required pair"""
        reason = reason.strip() if isinstance(reason, str) else reason
        reason = reason or None

        if not self.is_reason_required(from_state, to_state):
            return reason

        if reason is None:
            raise ReasonRequiredError(from_state.value, to_state.value)

        valid = self.get_valid_reasons(from_state, to_state)
        if valid and reason not in valid:
            raise InvalidReasonError(from_state.value, to_state.value, reason, valid)
        return reason

    def get_config(self) -> WorkflowConfig:
        return WorkflowConfig(
            states=list(WorkflowState),
            transitions={state.value: allowed_targets(state) for state in WorkflowState},
            transition_reasons={
                transition_key(frm, to): list(reasons)
                for (frm, to), reasons in TRANSITION_REASONS.items()
            },
            reason_required=list(self.reason_required),
        )

    # =========================================================================
    # Transition
    # =========================================================================

    def transition(
        self,
        session: SessionRef,
        to_state: Any,
        reason: ReasonArg = None,
        metadata: Optional[Dict[str, Any]] = None,
        actor_id: Optional[int] = None
    ) -> StateTransition:
        """
        Move a session to a new workflow state

        Args:
            session: Session row or id
            to_state: Target state (enum or string)
            reason: Reason code, required for reason-required pairs; a callable
                is given the locked current state and returns the code
            metadata: Free-form JSON-serializable details
            actor_id: Acting user, supplied by the calling layer

        Returns:
            The committed StateTransition

        Raises:
            SessionNotFoundError, InvalidTransitionError,
            ReasonRequiredError, InvalidReasonError
        """
        session_id = self._session_id(session)
        metadata = dict(metadata or {})
        events: List[Any] = []

        with session_scope(self.session_factory) as db:
            repository = Repository(db)
            row = repository.get_session(session_id, for_update=True)
            if row is None:
                raise SessionNotFoundError(session_id)

            current = WorkflowState(row.workflow_state)
            target = coerce_state(to_state)
            if target is None or target not in TRANSITIONS[current]:
                raise InvalidTransitionError(current.value, str(getattr(to_state, "value", to_state)))

            if callable(reason):
                reason = reason(current)
            reason = self.validate_reason(current, target, reason)
            now = self.clock.now()

            record = build_transition(
                repository, row, current.value, target.value, now,
                user_id=actor_id, reason=reason, metadata=metadata
            )

            previous_stamp = row.workflow_state_updated_at
            stamp = record.created_at
            if previous_stamp is not None and previous_stamp > stamp:
                stamp = previous_stamp
            row.workflow_state = target.value
            row.workflow_state_updated_at = stamp
            if target == W.CLOSED:
                row.completed_at = stamp

            events.extend(self._apply_referral_effects(repository, row, current, target, reason, metadata, actor_id, stamp))

            events.insert(0, SessionStateChanged(
                session_id=row.id,
                session_couch_id=row.couch_id,
                from_state=current,
                to_state=target,
                actor_id=actor_id,
                reason=reason,
                timestamp=record.created_at,
            ))

        logger.info(f"✓ Session {session_id}: {current.value} -> {target.value} (reason={reason}, actor={actor_id})")

        for event in events:
            self.event_bus.publish(event)
        return record

    def _apply_referral_effects(
        self,
        repository: Repository,
        row: ClinicalSession,
        current: WorkflowState,
        target: WorkflowState,
        reason: Optional[str],
        metadata: Dict[str, Any],
        actor_id: Optional[int],
        now: datetime
    ) -> List[ReferralCreated]:
        events: List[ReferralCreated] = []
        pending = repository.list_referrals(row.id, [ReferralStatus.PENDING.value])
        accepted = repository.list_referrals(row.id, [ReferralStatus.ACCEPTED.value])

        if target == W.REFERRED:
            for referral in accepted:
                change_referral_status(referral, ReferralStatus.COMPLETED, now)
            if not pending:
                _, event = open_referral(
                    repository, row, now,
                    source="workflow",
                    referring_user_id=actor_id,
                    priority=metadata.get("priority"),
                    specialty=metadata.get("specialty") or metadata.get("specialist_type"),
                    assigned_to_role=metadata.get("assigned_to_role"),
                    reason=reason,
                    clinical_notes=metadata.get("notes"),
                )
                events.append(event)

        elif current == W.REFERRED and target == W.IN_REVIEW:
            for referral in pending:
                change_referral_status(referral, ReferralStatus.ACCEPTED, now, actor_id=actor_id)

        elif target == W.CLOSED:
            if current == W.REFERRED:
                closing = ReferralStatus.CANCELLED if reason == "referral_cancelled" else ReferralStatus.REJECTED
                for referral in pending:
                    change_referral_status(referral, closing, now, rejection_reason=reason)
                pending = []
            for referral in accepted:
                change_referral_status(referral, ReferralStatus.COMPLETED, now)
            for referral in pending:
                change_referral_status(referral, ReferralStatus.CANCELLED, now)

        return events

    # =========================================================================
    # Named Operations
    # =========================================================================

    def accept_referral(self, session: SessionRef, actor_id: Optional[int] = None, notes: Optional[str] = None) -> StateTransition:
        """REFERRED -> IN_REVIEW"""
        return self.transition(session, W.IN_REVIEW, "referral_accepted", _compact(notes=notes), actor_id)

    def reject_referral(
        self,
        session: SessionRef,
        reason: str = "referral_rejected",
        actor_id: Optional[int] = None,
        notes: Optional[str] = None
    ) -> StateTransition:
        """REFERRED -> CLOSED"""
        return self.transition(
            session, W.CLOSED, reason,
            _compact(notes=notes, referral_rejected=True), actor_id
        )

    def start_treatment(
        self,
        session: SessionRef,
        actor_id: Optional[int] = None,
        treatment_plan: Optional[str] = None
    ) -> StateTransition:
        """TRIAGED or IN_REVIEW -> UNDER_TREATMENT"""
        return self.transition(
            session, W.UNDER_TREATMENT, _treatment_reason, _compact(treatment_plan=treatment_plan), actor_id
        )

    def request_specialist_referral(
        self,
        session: SessionRef,
        specialist_type: str,
        actor_id: Optional[int] = None,
        notes: Optional[str] = None,
        priority: Optional[str] = None
    ) -> StateTransition:
        """TRIAGED or IN_REVIEW -> REFERRED, opening a referral"""
        return self.transition(
            session, W.REFERRED, _specialist_reason,
            _compact(specialist_type=specialist_type, notes=notes, priority=priority),
            actor_id
        )

    def close_session(
        self,
        session: SessionRef,
        reason: str,
        actor_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> StateTransition:
        """Any non-terminal state with a CLOSED edge -> CLOSED"""
        details = dict(metadata or {})
        details["closed_at"] = self.clock.now().isoformat()
        return self.transition(session, W.CLOSED, reason, details, actor_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_session(self, session: SessionRef) -> ClinicalSession:
        session_id = self._session_id(session)
        with session_scope(self.session_factory) as db:
            row = Repository(db).get_session(session_id)
            if row is None:
                raise SessionNotFoundError(session_id)
            return row

    def get_allowed_transitions(self, session: SessionRef) -> List[WorkflowState]:
        row = session if isinstance(session, ClinicalSession) else self.get_session(session)
        return allowed_targets(row.workflow_state)

    def get_transition_history(self, session: SessionRef) -> List[StateTransition]:
        """Audit trail ordered by timestamp, then insertion"""
        session_id = self._session_id(session)
        with session_scope(self.session_factory) as db:
            repository = Repository(db)
            if repository.get_session(session_id) is None:
                raise SessionNotFoundError(session_id)
            return repository.list_transitions(session_id)

    def get_last_transition(self, session: SessionRef) -> Optional[StateTransition]:
        session_id = self._session_id(session)
        with session_scope(self.session_factory) as db:
            return Repository(db).last_transition(session_id)

    def is_in_final_state(self, session: SessionRef) -> bool:
        row = session if isinstance(session, ClinicalSession) else self.get_session(session)
        return coerce_state(row.workflow_state) in TERMINAL_STATES

    def get_referrals(self, session: SessionRef) -> List[Referral]:
        session_id = self._session_id(session)
        with session_scope(self.session_factory) as db:
            return Repository(db).list_referrals(session_id)

    def verify_audit_trail(self, session: SessionRef) -> AuditVerification:
        """Replay the trail and check every hash link against the stored state"""
        session_id = self._session_id(session)
        with session_scope(self.session_factory) as db:
            repository = Repository(db)
            row = repository.get_session(session_id)
            if row is None:
                raise SessionNotFoundError(session_id)
            transitions = repository.list_transitions(session_id)
            broken = find_broken_link(transitions)
            verification = AuditVerification(
                session_id=session_id,
                transition_count=len(transitions),
                stored_state=row.workflow_state,
                replayed_state=replay_state(transitions),
                chain_intact=broken is None,
                first_broken_transition_id=broken.id if broken else None,
            )

        if not verification.consistent:
            logger.warning(
                f"Audit trail inconsistent for session {session_id}: "
                f"stored={verification.stored_state.value}, replayed={verification.replayed_state.value}, "
                f"broken_link={verification.first_broken_transition_id}"
            )
        return verification

    # =========================================================================
    # AI Interactions
    # =========================================================================

    def record_ai_interaction(
        self,
        session: SessionRef,
        task: str,
        context: Optional[Dict[str, Any]] = None,
        actor_id: Optional[int] = None
    ) -> AuditLog:
        """Audit an opaque AI task invocation against a session"""
        session_id = self._session_id(session)
        with session_scope(self.session_factory) as db:
            repository = Repository(db)
            row = repository.get_session(session_id)
            if row is None:
                raise SessionNotFoundError(session_id)
            entry = record_action(
                repository,
                action=AI_INTERACTION_ACTION,
                resource_type="clinical_session",
                resource_id=str(session_id),
                timestamp=self.clock.now(),
                user_id=actor_id,
                changes={"task": task, "context": context or {}, "workflow_state": row.workflow_state},
            )
            repository.flush()

        logger.info(f"Recorded AI interaction '{task}' for session {session_id}")
        return entry

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _session_id(session: SessionRef) -> int:
        if isinstance(session, ClinicalSession):
            return session.id
        return int(session)


def _compact(**values) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def _treatment_reason(current: WorkflowState) -> str:
    return "treatment_started" if current == W.TRIAGED else "treatment_plan_created"


def _specialist_reason(current: WorkflowState) -> str:
    return "specialist_needed" if current == W.TRIAGED else "specialist_referral"
