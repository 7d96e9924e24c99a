"""
HealthBridge Core - Sync Tasks
Celery tasks that drain the CouchDB change feed into the relational store
"""

import logging
from typing import Any, Dict, List

from app.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.sync.pull_changes", bind=True, max_retries=3)
def pull_changes_task(self, max_pages: int = 10) -> dict:
    """
    Pull pending change-feed pages and advance the checkpoint

    Args:
        max_pages: Upper bound on pages processed by one task run

    Returns:
        Batch statistics
    """
    from app.services.providers import get_change_feed_worker

    worker = None
    try:
        logger.info("Starting change feed pull")
        worker = get_change_feed_worker()
        result = worker.pull(max_pages=max_pages)
        if result is None:
            return {"status": "skipped", "reason": "another pull is running"}

        logger.info(f"✓ Change feed pull complete: {result.applied}/{result.total} applied")
        return {
            "status": "success",
            "stats": result.model_dump(),
            "checkpoint": worker.get_checkpoint().last_seq,
        }

    except Exception as e:
        logger.error(f"Change feed pull failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
    finally:
        if worker is not None:
            worker.client.close()


@celery_app.task(name="app.tasks.sync.ingest_documents", bind=True, max_retries=3)
def ingest_documents_task(self, documents: List[Dict[str, Any]]) -> dict:
    """
    Upsert a batch of raw documents pushed by a caller

    Args:
        documents: Raw documents or change-feed rows

    Returns:
        Batch statistics
    """
    from app.services.providers import get_sync_engine

    try:
        result = get_sync_engine().process_batch(documents)

        logger.info(f"✓ Ingested {result.applied}/{result.total} documents")
        return {"status": "success", "stats": result.model_dump()}

    except Exception as e:
        logger.error(f"Document ingest failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
