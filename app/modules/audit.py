"""
HealthBridge Core - Audit Trail
Hash-chained state transitions, audit replay and generic action audit rows
"""

import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from app.models import AuditLog, ClinicalSession, StateTransition
from app.schemas import WorkflowState
from app.services.repository import Repository

logger = logging.getLogger(__name__)

HASH_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


# =============================================================================
# Hash Chain
# =============================================================================

def canonical_json(data: Optional[Dict[str, Any]]) -> str:
    """Stable JSON text used as hash input"""
    return json.dumps(data or {}, sort_keys=True, separators=(",", ":"), default=str)


def compute_entry_hash(
    previous_hash: Optional[str],
    session_id: int,
    from_state: str,
    to_state: str,
    user_id: Optional[int],
    reason: Optional[str],
    metadata: Optional[Dict[str, Any]],
    created_at: datetime
) -> str:
    """
    SHA-256 over the previous link and the transition content

    Timestamps are hashed at second precision so the chain survives
    databases that drop fractional seconds.
    """
    parts = [
        previous_hash or "",
        str(session_id),
        from_state,
        to_state,
        "" if user_id is None else str(user_id),
        reason or "",
        canonical_json(metadata),
        created_at.strftime(HASH_TIMESTAMP_FORMAT),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def build_transition(
    repository: Repository,
    session: ClinicalSession,
    from_state: str,
    to_state: str,
    created_at: datetime,
    user_id: Optional[int] = None,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> StateTransition:
    """
    Append a transition row linked to the session's previous entry

    The session must already have a primary key. The row is added to the
    repository's unit of work but not committed.
    """
    previous = repository.last_transition(session.id)
    previous_hash = previous.entry_hash if previous else None
    metadata = dict(metadata or {})

    # Keep timestamp order equal to append order
    if previous is not None and created_at < previous.created_at:
        created_at = previous.created_at

    transition = StateTransition(
        session_id=session.id,
        session_couch_id=session.couch_id,
        from_state=from_state,
        to_state=to_state,
        user_id=user_id,
        reason=reason,
        transition_metadata=metadata,
        created_at=created_at,
        previous_hash=previous_hash,
        entry_hash=compute_entry_hash(
            previous_hash, session.id, from_state, to_state,
            user_id, reason, metadata, created_at
        ),
    )
    repository.add(transition)
    repository.flush()
    return transition


# =============================================================================
# Replay and Verification
# =============================================================================

def replay_state(transitions: Sequence[StateTransition]) -> WorkflowState:
    """Workflow state reached by applying each transition from NEW, in order"""
    state = WorkflowState.NEW
    for transition in transitions:
        state = WorkflowState(transition.to_state)
    return state


def find_broken_link(transitions: Sequence[StateTransition]) -> Optional[StateTransition]:
    """
    First transition whose stored hash or back-link does not match

    A transition also breaks the chain when its from_state differs from the
    state the previous entry moved to.
    """
    previous_hash: Optional[str] = None
    state = WorkflowState.NEW.value
    for transition in transitions:
        expected = compute_entry_hash(
            previous_hash,
            transition.session_id,
            transition.from_state,
            transition.to_state,
            transition.user_id,
            transition.reason,
            transition.transition_metadata,
            transition.created_at,
        )
        if (
            transition.previous_hash != previous_hash
            or transition.entry_hash != expected
            or transition.from_state != state
        ):
            return transition
        previous_hash = transition.entry_hash
        state = transition.to_state
    return None


# =============================================================================
# Action Audit Log
# =============================================================================

def record_action(
    repository: Repository,
    action: str,
    resource_type: str,
    resource_id: Optional[str],
    timestamp: datetime,
    user_id: Optional[int] = None,
    changes: Optional[Dict[str, Any]] = None,
    status: str = "success",
    error_message: Optional[str] = None
) -> AuditLog:
    """Write a generic audit row for a state-adjacent action"""
    entry = AuditLog(
        timestamp=timestamp,
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        changes=changes,
        status=status,
        error_message=error_message,
    )
    repository.add(entry)
    logger.debug(f"Audit: {action} on {resource_type} {resource_id}")
    return entry
