"""
HealthBridge Core - Sync API Routes
Batch ingest and change-feed checkpoint endpoints
"""

import logging
from typing import Any, Dict, List
from fastapi import APIRouter, Body, Depends, HTTPException, status
from sqlalchemy.exc import OperationalError

from app.modules.change_feed import ChangeFeedWorker
from app.modules.sync_engine import SyncEngine
from app.schemas import BatchResult, CheckpointView
from app.services.providers import get_change_feed_worker, get_sync_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sync", tags=["Sync"])


@router.post("/documents", response_model=BatchResult)
def ingest_documents(
    documents: List[Dict[str, Any]] = Body(...),
    engine: SyncEngine = Depends(get_sync_engine)
):
    """
    Upsert a batch of raw documents

    Bad documents are reported in the result, never as an HTTP error.
    """
    try:
        logger.info(f"Ingesting {len(documents)} documents")
        return engine.process_batch(documents)
    except OperationalError as e:
        logger.error(f"Database unavailable during ingest: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Relational store unavailable"
        )


@router.get("/checkpoint", response_model=CheckpointView)
def get_checkpoint(worker: ChangeFeedWorker = Depends(get_change_feed_worker)):
    """Current change-feed position and running totals"""
    try:
        return worker.get_checkpoint()
    finally:
        worker.client.close()


@router.post("/pull", status_code=status.HTTP_202_ACCEPTED)
def schedule_pull(max_pages: int = 10):
    """Queue a background change-feed pull"""
    from app.tasks.sync import pull_changes_task

    try:
        task = pull_changes_task.delay(max_pages=max_pages)
        return {"status": "queued", "task_id": task.id}
    except Exception as e:
        logger.error(f"Failed to queue change feed pull: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Task queue unavailable: {str(e)}"
        )
