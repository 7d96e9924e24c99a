#!/usr/bin/env python3
"""
HealthBridge Core - CouchDB Sync Worker
Pulls the CouchDB change feed into the relational store, once or as a daemon
"""

import argparse
import logging
import signal
import sys
from functools import partial
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config import settings
from app.database import create_db_engine, create_session_factory
from app.modules.change_feed import ChangeFeedWorker
from app.modules.sync_engine import SyncEngine
from app.services.couchdb_client import CouchDbClient, CouchDbError
from app.services.locks import single_flight

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("sync_worker")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync CouchDB changes to the relational store")
    parser.add_argument("--daemon", action="store_true", help="Run as a continuous daemon")
    parser.add_argument("--poll", type=float, default=settings.sync_poll_interval, help="Polling interval in seconds")
    parser.add_argument("--batch", type=int, default=settings.sync_batch_size, help="Maximum batch size per poll")
    parser.add_argument("--reset", action="store_true", help="Rewind the checkpoint before syncing")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    client = CouchDbClient()
    session_factory = create_session_factory(create_db_engine())
    worker = ChangeFeedWorker(
        client,
        SyncEngine(session_factory),
        session_factory,
        batch_size=args.batch,
        poll_interval=args.poll,
        guard=partial(single_flight, settings.sync_checkpoint_name),
    )

    logger.info("Starting CouchDB Sync Worker...")
    logger.info(f"Database: {client.database}")

    try:
        if not client.database_exists():
            logger.error(f"CouchDB database not found: {client.database}")
            return 1
    except CouchDbError as e:
        logger.error(f"CouchDB not reachable: {e}")
        return 1
    logger.info("CouchDB connection established.")

    if args.reset:
        worker.reset()

    try:
        if args.daemon:
            stopping = []
            signal.signal(signal.SIGTERM, lambda *_: stopping.append(True))
            try:
                worker.run_forever(should_stop=lambda: bool(stopping))
            except KeyboardInterrupt:
                logger.info("Interrupted")
        else:
            checkpoint = worker.get_checkpoint()
            logger.info(f"Starting from sequence: {checkpoint.last_seq}")
            result = worker.pull()
            if result is None:
                logger.info("Another worker holds the change feed; nothing to do")
                return 0
            logger.info(
                f"Processed {result.total} changes: {result.applied} applied, "
                f"{result.skipped} skipped, {result.errored} errors"
            )
            logger.info(f"New sequence: {worker.get_checkpoint().last_seq}")
    finally:
        client.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
