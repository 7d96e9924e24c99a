"""
HealthBridge Core - Change Feed Worker
Pulls CouchDB `_changes` pages into the sync engine and owns the checkpoint
"""

import logging
import time
from contextlib import contextmanager
from typing import Callable, ContextManager, Iterator, Optional

from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.database import session_scope
from app.modules.sync_engine import SyncEngine
from app.schemas import BatchResult, CheckpointView
from app.services.couchdb_client import CouchDbClient
from app.services.repository import Repository

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30


@contextmanager
def _unguarded() -> Iterator[bool]:
    yield True


class ChangeFeedWorker:
    """
    Incremental change-feed consumer

    The checkpoint only moves after process_batch returns, i.e. after every
    document of the page was committed or explicitly skipped and logged.
    """

    def __init__(
        self,
        client: CouchDbClient,
        engine: SyncEngine,
        session_factory: sessionmaker,
        clock=None,
        checkpoint_name: Optional[str] = None,
        batch_size: Optional[int] = None,
        poll_interval: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        guard: Optional[Callable[[], ContextManager[bool]]] = None
    ):
        self.client = client
        self.engine = engine
        self.session_factory = session_factory
        self.clock = clock or engine.clock
        self.checkpoint_name = checkpoint_name or settings.sync_checkpoint_name
        self.batch_size = batch_size or settings.sync_batch_size
        self.poll_interval = poll_interval if poll_interval is not None else settings.sync_poll_interval
        self._sleep = sleep
        self._guard = guard or _unguarded

    # =========================================================================
    # Checkpoint
    # =========================================================================

    def get_checkpoint(self) -> CheckpointView:
        with session_scope(self.session_factory) as db:
            checkpoint = Repository(db).get_or_create_checkpoint(self.checkpoint_name)
            return CheckpointView(
                name=checkpoint.name,
                last_seq=checkpoint.last_seq,
                documents_applied=checkpoint.documents_applied,
                documents_skipped=checkpoint.documents_skipped,
                documents_failed=checkpoint.documents_failed,
                updated_at=checkpoint.updated_at,
            )

    def _advance_checkpoint(self, since: str, last_seq: str, result: BatchResult) -> bool:
        """
        Compare-and-advance: move from `since` to `last_seq` only if no other
        run moved the checkpoint meanwhile

        Returns:
            True when the checkpoint and its counters were advanced
        """
        with session_scope(self.session_factory) as db:
            checkpoint = Repository(db).get_or_create_checkpoint(self.checkpoint_name, for_update=True)
            if checkpoint.last_seq != since:
                logger.warning(
                    f"Checkpoint '{self.checkpoint_name}' moved from {since[:20]} to "
                    f"{checkpoint.last_seq[:20]} during this page; not rewinding to {last_seq[:20]}"
                )
                return False
            checkpoint.last_seq = last_seq
            checkpoint.documents_applied += result.applied
            checkpoint.documents_skipped += result.skipped
            checkpoint.documents_failed += result.errored
            checkpoint.updated_at = self.clock.now()
            return True

    def reset(self) -> None:
        """Rewind the checkpoint so the next run replays the whole feed"""
        with session_scope(self.session_factory) as db:
            checkpoint = Repository(db).get_or_create_checkpoint(self.checkpoint_name)
            checkpoint.last_seq = "0"
            checkpoint.updated_at = self.clock.now()
        logger.info(f"Checkpoint '{self.checkpoint_name}' reset to 0")

    # =========================================================================
    # Polling
    # =========================================================================

    def run_once(self) -> BatchResult:
        """
        Process one page of changes after the stored checkpoint

        Returns:
            BatchResult for the page
        """
        since = self.get_checkpoint().last_seq
        changes = self.client.get_changes(since=since, limit=self.batch_size, include_docs=True)
        rows = changes.get("results", [])

        result = self.engine.process_batch(rows)

        last_seq = changes.get("last_seq")
        last_seq = str(last_seq) if last_seq is not None else since
        if not self._advance_checkpoint(since, last_seq, result):
            return result

        if rows:
            logger.info(f"Processed {len(rows)} changes since {since[:20]}; checkpoint now {last_seq[:20]}")
        return result

    def run_until_idle(self, max_pages: Optional[int] = None) -> BatchResult:
        """Keep pulling pages while they come back full"""
        total = BatchResult()
        pages = 0
        while True:
            result = self.run_once()
            pages += 1
            total.total += result.total
            total.applied += result.applied
            total.flagged += result.flagged
            total.skipped += result.skipped
            total.errored += result.errored
            total.errors.extend(result.errors)
            if result.total < self.batch_size:
                break
            if max_pages is not None and pages >= max_pages:
                break
        return total

    def pull(self, max_pages: Optional[int] = None) -> Optional[BatchResult]:
        """
        run_until_idle under the single-flight guard

        Returns:
            BatchResult, or None when another worker holds the guard
        """
        with self._guard() as acquired:
            if not acquired:
                logger.info(f"Another worker is pulling '{self.checkpoint_name}'; skipping this run")
                return None
            return self.run_until_idle(max_pages=max_pages)

    def run_forever(self, should_stop: Callable[[], bool] = lambda: False) -> None:
        """
        Poll until should_stop() returns True

        Errors are logged and followed by a backoff that doubles on every
        consecutive failure, capped at 30 seconds.
        """
        logger.info(f"Running change feed worker (poll interval: {self.poll_interval}s, batch: {self.batch_size})")
        backoff = 0.0
        while not should_stop():
            try:
                self.pull()
                backoff = 0.0
                delay = self.poll_interval
            except Exception as e:
                backoff = min(max(backoff * 2, self.poll_interval * 2), MAX_BACKOFF_SECONDS)
                delay = backoff
                logger.error(f"Sync error: {e}; retrying in {delay}s", exc_info=True)
            self._sleep(delay)
        logger.info("Change feed worker stopped")
