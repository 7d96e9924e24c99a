"""
Unit tests for the Celery sync tasks (run eagerly)
"""

from contextlib import contextmanager

import httpx

from app.modules.change_feed import ChangeFeedWorker
from app.services.couchdb_client import CouchDbClient
from app.tasks.sync import ingest_documents_task, pull_changes_task


class TestSyncTasks:
    """Test background ingestion"""

    def test_ingest_documents(self, monkeypatch, sync_engine):
        """Pushed documents are upserted and counted"""
        monkeypatch.setattr("app.services.providers.get_sync_engine", lambda: sync_engine)
        documents = [
            {"_id": "patient:1", "type": "clinicalPatient", "patient": {"cpt": "CPT-001"}},
            {"_id": "grocery:1", "type": "shoppingList"},
        ]

        result = ingest_documents_task.apply(args=[documents]).get()

        assert result["status"] == "success"
        assert result["stats"]["applied"] == 1
        assert result["stats"]["skipped"] == 1

    def test_pull_changes(self, monkeypatch, sync_engine, session_factory, clock):
        """A pull drains the feed and reports the new checkpoint"""
        def changes(request):
            return httpx.Response(200, json={
                "results": [{
                    "seq": "1-a",
                    "id": "patient:1",
                    "doc": {"_id": "patient:1", "type": "clinicalPatient", "patient": {"cpt": "CPT-001"}},
                }],
                "last_seq": "1-a",
            })

        client = CouchDbClient(base_url="http://couch.test", database="healthbridge",
                               username="", password="", transport=httpx.MockTransport(changes))
        worker = ChangeFeedWorker(client, sync_engine, session_factory, clock=clock,
                                  checkpoint_name="task_feed", batch_size=10)
        monkeypatch.setattr("app.services.providers.get_change_feed_worker", lambda: worker)

        result = pull_changes_task.apply(kwargs={"max_pages": 1}).get()

        assert result["stats"]["applied"] == 1
        assert result["checkpoint"] == "1-a"

    def test_pull_skipped_while_another_runs(self, monkeypatch, sync_engine, session_factory, clock):
        """A second pull reports a skip instead of reading the feed"""
        requests = []

        def changes(request):
            requests.append(request)
            return httpx.Response(200, json={"results": [], "last_seq": "0"})

        @contextmanager
        def held():
            yield False

        client = CouchDbClient(base_url="http://couch.test", database="healthbridge",
                               username="", password="", transport=httpx.MockTransport(changes))
        worker = ChangeFeedWorker(client, sync_engine, session_factory, clock=clock,
                                  checkpoint_name="task_feed", batch_size=10, guard=held)
        monkeypatch.setattr("app.services.providers.get_change_feed_worker", lambda: worker)

        result = pull_changes_task.apply(kwargs={"max_pages": 1}).get()

        assert result["status"] == "skipped"
        assert requests == []
