"""
HealthBridge Core - Workflow API Routes
Endpoints exposing the clinical workflow state machine
"""

import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, Header, HTTPException, status

from app.modules.workflow import (
    WorkflowStateMachine, InvalidTransitionError, ReasonRequiredError,
    InvalidReasonError, SessionNotFoundError
)
from app.schemas import (
    TransitionRequest, StateTransitionView, WorkflowConfig,
    AuditVerification, AiInteractionRequest
)
from app.services.providers import get_workflow_machine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/workflow", tags=["Workflow"])


def _not_found(e: SessionNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_dict())


@router.get("/config", response_model=WorkflowConfig)
def get_workflow_config(machine: WorkflowStateMachine = Depends(get_workflow_machine)):
    """States, legal transitions and reason vocabulary"""
    return machine.get_config()


@router.get("/sessions/{session_id}/allowed-transitions")
def get_allowed_transitions(session_id: int, machine: WorkflowStateMachine = Depends(get_workflow_machine)):
    """Legal next states for UI guidance"""
    try:
        session = machine.get_session(session_id)
        allowed = machine.get_allowed_transitions(session)
        return {
            "session_id": session_id,
            "current_state": session.workflow_state,
            "allowed_transitions": [state.value for state in allowed],
            "is_final": machine.is_in_final_state(session),
        }
    except SessionNotFoundError as e:
        raise _not_found(e)


@router.post(
    "/sessions/{session_id}/transitions",
    response_model=StateTransitionView,
    status_code=status.HTTP_201_CREATED
)
def create_transition(
    session_id: int,
    request: TransitionRequest,
    x_actor_id: Optional[int] = Header(None),
    machine: WorkflowStateMachine = Depends(get_workflow_machine)
):
    """
    Transition a session to a new workflow state

    The acting user comes from the X-Actor-Id header set by the
    authenticating layer in front of this service.
    """
    if request.session_id is not None and request.session_id != session_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="session_id in body does not match the URL"
        )

    try:
        transition = machine.transition(
            session_id,
            request.to_state,
            reason=request.reason,
            metadata=request.metadata,
            actor_id=x_actor_id
        )
        return StateTransitionView.from_model(transition)

    except SessionNotFoundError as e:
        raise _not_found(e)
    except InvalidTransitionError as e:
        logger.info(f"Rejected transition for session {session_id}: {e}")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.to_dict())
    except (ReasonRequiredError, InvalidReasonError) as e:
        logger.info(f"Rejected transition for session {session_id}: {e}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.to_dict())


@router.get("/sessions/{session_id}/history", response_model=List[StateTransitionView])
def get_transition_history(session_id: int, machine: WorkflowStateMachine = Depends(get_workflow_machine)):
    """Ordered audit trail of a session"""
    try:
        return [StateTransitionView.from_model(t) for t in machine.get_transition_history(session_id)]
    except SessionNotFoundError as e:
        raise _not_found(e)


@router.get("/sessions/{session_id}/audit", response_model=AuditVerification)
def verify_audit_trail(session_id: int, machine: WorkflowStateMachine = Depends(get_workflow_machine)):
    """Replay and hash-chain check of a session's audit trail"""
    try:
        return machine.verify_audit_trail(session_id)
    except SessionNotFoundError as e:
        raise _not_found(e)


@router.post("/sessions/{session_id}/ai-interactions", status_code=status.HTTP_201_CREATED)
def record_ai_interaction(
    session_id: int,
    request: AiInteractionRequest,
    x_actor_id: Optional[int] = Header(None),
    machine: WorkflowStateMachine = Depends(get_workflow_machine)
):
    """Audit an AI task invocation made by an external collaborator"""
    try:
        entry = machine.record_ai_interaction(session_id, request.task, request.context, actor_id=x_actor_id)
        return {
            "audit_id": entry.id,
            "session_id": session_id,
            "task": request.task,
            "user_id": entry.user_id,
            "timestamp": entry.timestamp.isoformat(),
        }
    except SessionNotFoundError as e:
        raise _not_found(e)
