"""Shared fixtures: temporary storage and an in-memory remote document store."""
import shutil
import tempfile
import threading
from collections import defaultdict
from pathlib import Path

import pytest

from landlord.cache import LocalStore
from landlord.models import GameRecord, Match
from landlord.network import ConnectivityMonitor
from landlord.pending import PendingOperationLog
from landlord.remote import RemoteStore, Subscription
from landlord.sync import SyncCoordinator


class FakeRemoteStore(RemoteStore):
    """
    In-memory RemoteStore.

    Snapshots are delivered synchronously: once on subscribe and again after
    every write that touches the collection. Set fail_reads / fail_writes to
    an exception instance to make the matching calls raise it.
    """

    def __init__(self):
        self.collections = defaultdict(dict)
        self.listeners = defaultdict(list)
        self.commits = []
        self.calls = []
        self.fail_reads = None
        self.fail_writes = None
        self._lock = threading.RLock()

    # ---------- Test helpers ----------

    def seed(self, collection, doc_id, data, notify=False):
        """Store a document directly, bypassing failure injection."""
        with self._lock:
            self.collections[collection][doc_id] = {k: v for k, v in data.items() if k != "id"}
        if notify:
            self._notify(collection)

    def documents(self, collection, field=None, value=None):
        with self._lock:
            docs = [{**data, "id": doc_id} for doc_id, data in self.collections[collection].items()]
        if field is not None:
            docs = [d for d in docs if d.get(field) == value]
        return docs

    def _check(self, failure):
        if failure is not None:
            raise failure

    def _notify(self, collection):
        for listener, order_by, descending, subscription in list(self.listeners[collection]):
            if not subscription.cancelled:
                listener(self._sorted(self.documents(collection), order_by, descending), None)

    @staticmethod
    def _sorted(docs, order_by, descending):
        if order_by is None:
            return docs
        return sorted(docs, key=lambda d: d.get(order_by) or "", reverse=descending)

    # ---------- RemoteStore ----------

    def get(self, collection, doc_id):
        self.calls.append(("get", collection, doc_id))
        self._check(self.fail_reads)
        with self._lock:
            data = self.collections[collection].get(doc_id)
        return {**data, "id": doc_id} if data is not None else None

    def upsert(self, collection, doc_id, data):
        self.calls.append(("upsert", collection, doc_id))
        self._check(self.fail_writes)
        self.seed(collection, doc_id, data, notify=True)

    def delete(self, collection, doc_id):
        self.calls.append(("delete", collection, doc_id))
        self._check(self.fail_writes)
        with self._lock:
            self.collections[collection].pop(doc_id, None)
        self._notify(collection)

    def query(self, collection, field=None, value=None, order_by=None, descending=False):
        self.calls.append(("query", collection, field))
        self._check(self.fail_reads)
        return self._sorted(self.documents(collection, field, value), order_by, descending)

    def subscribe(self, collection, listener, order_by=None, descending=False):
        self.calls.append(("subscribe", collection, order_by))
        entry = None

        def remove():
            if entry in self.listeners[collection]:
                self.listeners[collection].remove(entry)

        subscription = Subscription(on_cancel=remove)
        entry = (listener, order_by, descending, subscription)
        self.listeners[collection].append(entry)

        if self.fail_reads is not None:
            listener(None, self.fail_reads)
        else:
            listener(self._sorted(self.documents(collection), order_by, descending), None)
        return subscription

    def commit(self, batch):
        self.calls.append(("commit", len(batch)))
        self._check(self.fail_writes)
        touched = []
        with self._lock:
            for write in batch.writes:
                if write.is_delete:
                    self.collections[write.collection].pop(write.doc_id, None)
                else:
                    self.collections[write.collection][write.doc_id] = dict(write.data)
                if write.collection not in touched:
                    touched.append(write.collection)
            self.commits.append(batch)
        for collection in touched:
            self._notify(collection)


@pytest.fixture
def temp_dir():
    """Create a temporary data directory for testing."""
    path = Path(tempfile.mkdtemp())
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def local_store(temp_dir):
    return LocalStore(temp_dir)


@pytest.fixture
def pending_log(temp_dir):
    return PendingOperationLog(temp_dir / "pending_operations.db")


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def monitor():
    return ConnectivityMonitor()


@pytest.fixture
def coordinator(local_store, pending_log, remote, monitor):
    """Coordinator whose drain stops instead of sleeping through backoff."""
    coordinator = SyncCoordinator(local_store, pending_log, remote, monitor, wait_for_backoff=False)
    yield coordinator
    coordinator.shutdown()


@pytest.fixture
def make_match():
    def _make_match(match_id=None, **overrides):
        fields = dict(
            id=match_id,
            player_a_id="p-ann",
            player_b_id="p-bo",
            player_c_id="p-cy",
            player_a_name="Ann",
            player_b_name="Bo",
            player_c_name="Cy",
        )
        fields.update(overrides)
        return Match(**fields)
    return _make_match


@pytest.fixture
def make_record():
    def _make_record(match_id, game_index, **overrides):
        fields = dict(
            match_id=match_id,
            game_index=game_index,
            player_a_id="p-ann",
            player_b_id="p-bo",
            player_c_id="p-cy",
            player_a_name="Ann",
            player_b_name="Bo",
            player_c_name="Cy",
            bid_a=3,
            landlord_won=True,
            landlord=1,
            score_a=4,
            score_b=-2,
            score_c=-2,
        )
        fields.update(overrides)
        return GameRecord(**fields)
    return _make_record
