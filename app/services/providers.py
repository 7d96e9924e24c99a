"""
HealthBridge Core - Service Providers
Process-wide construction of the engine, state machine and change-feed worker
"""

import logging
from functools import partial
from typing import Optional

from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.database import create_db_engine, create_session_factory
from app.modules.change_feed import ChangeFeedWorker
from app.modules.sync_engine import SyncEngine
from app.modules.workflow import WorkflowStateMachine
from app.services.couchdb_client import CouchDbClient
from app.services.locks import single_flight

logger = logging.getLogger(__name__)

_session_factory: Optional[sessionmaker] = None


def get_session_factory() -> sessionmaker:
    """Get or create the process-wide session factory"""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(create_db_engine())
    return _session_factory


def get_workflow_machine() -> WorkflowStateMachine:
    return WorkflowStateMachine(get_session_factory())


def get_sync_engine() -> SyncEngine:
    return SyncEngine(get_session_factory())


def get_change_feed_worker() -> ChangeFeedWorker:
    session_factory = get_session_factory()
    return ChangeFeedWorker(
        CouchDbClient(), SyncEngine(session_factory), session_factory,
        guard=partial(single_flight, settings.sync_checkpoint_name)
    )
