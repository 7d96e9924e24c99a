"""
HealthBridge Core - Repository
Explicit data-access interface over one SQLAlchemy session

The sync engine and the workflow state machine never query the ORM directly;
they receive a repository bound to the unit of work they run in.
"""

import logging
from typing import List, Optional, Sequence, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models import (
    Base, User, Patient, ClinicalSession, ClinicalForm, AiRequest,
    DiagnosticReport, RadiologyStudy, EncryptedDocument, StateTransition,
    Referral, SyncCheckpoint
)
from app.schemas import ReferralStatus

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Base)

OPEN_REFERRAL_STATUSES = (ReferralStatus.PENDING.value, ReferralStatus.ACCEPTED.value)
USER_LOOKUP_FIELDS = ("uuid", "email", "username")


class Repository:
    """Data access for one unit of work"""

    def __init__(self, session: Session):
        self.session = session

    # =========================================================================
    # Generic
    # =========================================================================

    def add(self, instance: Base) -> Base:
        self.session.add(instance)
        return instance

    def flush(self) -> None:
        self.session.flush()

    def find_one(self, model: Type[ModelT], for_update: bool = False, **criteria) -> Optional[ModelT]:
        """
        First row matching the criteria

        With for_update the row is locked until the transaction ends and the
        identity map is refreshed, so the caller decides on committed state.
        """
        stmt = select(model).filter_by(**criteria).limit(1)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.execute(stmt).scalars().first()

    def find_by_couch_id(self, model: Type[ModelT], couch_id: str, for_update: bool = False) -> Optional[ModelT]:
        return self.find_one(model, for_update=for_update, couch_id=couch_id)

    # =========================================================================
    # Users
    # =========================================================================

    def find_user_id(self, field: str, value: str) -> Optional[int]:
        """Local user id matching a directory field (uuid, email or username)"""
        if field not in USER_LOOKUP_FIELDS:
            raise ValueError(f"Unsupported user lookup field: {field}")
        column = getattr(User, field)
        if field in ("email", "uuid"):
            stmt = select(User.id).where(func.lower(column) == value.lower())
        else:
            stmt = select(User.id).where(column == value)
        return self.session.execute(stmt.limit(1)).scalars().first()

    # =========================================================================
    # Synced Documents
    # =========================================================================

    def find_session(self, couch_id: str, for_update: bool = False) -> Optional[ClinicalSession]:
        return self.find_by_couch_id(ClinicalSession, couch_id, for_update=for_update)

    def find_form(self, couch_id: str, for_update: bool = False) -> Optional[ClinicalForm]:
        return self.find_by_couch_id(ClinicalForm, couch_id, for_update=for_update)

    def find_ai_request(self, request_uuid: str, for_update: bool = False) -> Optional[AiRequest]:
        return self.find_one(AiRequest, for_update=for_update, request_uuid=request_uuid)

    def find_report(self, couch_id: str, for_update: bool = False) -> Optional[DiagnosticReport]:
        return self.find_by_couch_id(DiagnosticReport, couch_id, for_update=for_update)

    def find_imaging_study(self, couch_id: str, for_update: bool = False) -> Optional[RadiologyStudy]:
        return self.find_by_couch_id(RadiologyStudy, couch_id, for_update=for_update)

    def find_encrypted(self, couch_id: str, for_update: bool = False) -> Optional[EncryptedDocument]:
        return self.find_by_couch_id(EncryptedDocument, couch_id, for_update=for_update)

    # =========================================================================
    # Workflow
    # =========================================================================

    def get_session(self, session_id: int, for_update: bool = False) -> Optional[ClinicalSession]:
        """
        Session by primary key

        With for_update the row is read with SELECT ... FOR UPDATE and the
        identity map is refreshed, so the caller sees the committed state.
        """
        stmt = select(ClinicalSession).where(ClinicalSession.id == session_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.execute(stmt).scalars().first()

    def list_transitions(self, session_id: int) -> List[StateTransition]:
        stmt = (
            select(StateTransition)
            .where(StateTransition.session_id == session_id)
            .order_by(StateTransition.created_at, StateTransition.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def last_transition(self, session_id: int) -> Optional[StateTransition]:
        stmt = (
            select(StateTransition)
            .where(StateTransition.session_id == session_id)
            .order_by(StateTransition.created_at.desc(), StateTransition.id.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalars().first()

    def list_referrals(self, session_id: int, statuses: Optional[Sequence[str]] = None) -> List[Referral]:
        stmt = select(Referral).where(Referral.session_id == session_id)
        if statuses:
            stmt = stmt.where(Referral.status.in_(list(statuses)))
        stmt = stmt.order_by(Referral.created_at, Referral.id)
        return list(self.session.execute(stmt).scalars().all())

    def has_open_referral(self, session_id: int) -> bool:
        return bool(self.list_referrals(session_id, OPEN_REFERRAL_STATUSES))

    # =========================================================================
    # Checkpoints
    # =========================================================================

    def get_checkpoint(self, name: str, for_update: bool = False) -> Optional[SyncCheckpoint]:
        return self.find_one(SyncCheckpoint, for_update=for_update, name=name)

    def get_or_create_checkpoint(self, name: str, for_update: bool = False) -> SyncCheckpoint:
        checkpoint = self.get_checkpoint(name, for_update=for_update)
        if checkpoint is None:
            checkpoint = SyncCheckpoint(
                name=name,
                last_seq="0",
                documents_applied=0,
                documents_skipped=0,
                documents_failed=0,
            )
            self.add(checkpoint)
            self.flush()
            logger.info(f"Created sync checkpoint '{name}'")
        return checkpoint
