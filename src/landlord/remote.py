"""
Remote document store interface and its HTTP adapter.

The sync coordinator only talks to the remote store through RemoteStore:
get/upsert/delete documents by id, query a collection with an optional
equality filter, subscribe to full-collection snapshots, and commit a batch
of writes atomically. Documents are plain dicts carrying their "id".
"""
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional

import requests

from landlord.pending import PermanentError, TransientError

logger = logging.getLogger("landlord.remote")

PLAYERS = "players"
MATCHES = "matches"
GAME_RECORDS = "gameRecords"

SnapshotListener = Callable[[Optional[list], Optional[Exception]], None]


@dataclass
class BatchWrite:
    """One write inside a WriteBatch; data None means delete."""
    collection: str
    doc_id: str
    data: Optional[dict] = None

    @property
    def is_delete(self) -> bool:
        return self.data is None


@dataclass
class WriteBatch:
    """Ordered set of writes committed atomically."""
    writes: list[BatchWrite] = field(default_factory=list)

    def upsert(self, collection: str, doc_id: str, data: dict):
        self.writes.append(BatchWrite(collection, doc_id, data))
        return self

    def delete(self, collection: str, doc_id: str):
        self.writes.append(BatchWrite(collection, doc_id))
        return self

    def __len__(self):
        return len(self.writes)


class Subscription:
    """Handle for a snapshot listener; cancel() stops delivery."""

    def __init__(self, on_cancel: Optional[Callable[[], None]] = None):
        self._on_cancel = on_cancel
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self):
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        if self._on_cancel is not None:
            self._on_cancel()


class RemoteStore(ABC):
    """Narrow interface over a key-collection document database."""

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        """Fetch a document, or None if it does not exist."""

    @abstractmethod
    def upsert(self, collection: str, doc_id: str, data: dict):
        """Idempotent whole-document write."""

    @abstractmethod
    def delete(self, collection: str, doc_id: str):
        """Delete a document; deleting a missing document succeeds."""

    @abstractmethod
    def query(self, collection: str, field: Optional[str] = None, value=None,
              order_by: Optional[str] = None, descending: bool = False) -> list:
        """List documents, optionally filtered by field == value."""

    @abstractmethod
    def subscribe(self, collection: str, listener: SnapshotListener,
                  order_by: Optional[str] = None, descending: bool = False) -> Subscription:
        """Deliver full-collection snapshots on every change until cancelled."""

    @abstractmethod
    def commit(self, batch: WriteBatch):
        """Apply all writes of a batch atomically."""


class HttpRemoteStore(RemoteStore):
    """RemoteStore over a REST document API, using requests."""

    def __init__(self, base_url: str, timeout: float = 10.0, poll_interval: float = 5.0):
        """
        Initialize the HTTP remote store.

        Args:
            base_url: Base URL of the document API (e.g., "http://localhost:8001")
            timeout: Per-request timeout in seconds
            poll_interval: Seconds between snapshot polls for subscriptions
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.poll_interval = poll_interval
        logger.info(f"Remote API URL: {self.base_url}")

    def _url(self, collection: str, doc_id: Optional[str] = None) -> str:
        if doc_id is None:
            return f"{self.base_url}/v1/{collection}"
        return f"{self.base_url}/v1/{collection}/{doc_id}"

    def _request(self, method: str, url: str, allow_not_found: bool = False, **kwargs):
        """
        Send a request and categorize failures.

        Returns:
            Parsed JSON body, or None for empty bodies and allowed 404s

        Raises:
            TransientError: For network issues, timeouts, 408/429 or 5xx errors
            PermanentError: For other client errors
        """
        try:
            response = requests.request(method, url, timeout=self.timeout, **kwargs)
            if allow_not_found and response.status_code == 404:
                return None
            response.raise_for_status()
            if not response.content:
                return None
            return response.json()

        except requests.exceptions.Timeout as e:
            raise TransientError(f"Request timeout: {e}")

        except requests.exceptions.ConnectionError as e:
            raise TransientError(f"Connection error: {e}")

        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None

            if status_code is None:
                raise TransientError(f"HTTP error: {e}")
            if status_code >= 500:
                raise TransientError(f"Server error {status_code}: {e}")
            if status_code == 408:
                raise TransientError(f"Request timeout {status_code}: {e}")
            if status_code == 429:
                raise TransientError(f"Rate limited {status_code}: {e}")
            if status_code >= 400:
                raise PermanentError(f"Client error {status_code}: {e}")
            raise TransientError(f"HTTP error {status_code}: {e}")

        except requests.exceptions.RequestException as e:
            raise TransientError(f"Request failed: {e}")

        except json.JSONDecodeError as e:
            raise TransientError(f"Invalid JSON response: {e}")

    def get(self, collection, doc_id):
        body = self._request("GET", self._url(collection, doc_id), allow_not_found=True)
        if body is None:
            return None
        return {**body, "id": body.get("id", doc_id)}

    def upsert(self, collection, doc_id, data):
        logger.debug(f"PUT {collection}/{doc_id}")
        self._request("PUT", self._url(collection, doc_id), json=data)

    def delete(self, collection, doc_id):
        logger.debug(f"DELETE {collection}/{doc_id}")
        self._request("DELETE", self._url(collection, doc_id), allow_not_found=True)

    def query(self, collection, field=None, value=None, order_by=None, descending=False):
        params = {}
        if field is not None:
            params["field"] = field
            params["value"] = value
        if order_by is not None:
            params["order_by"] = order_by
            params["descending"] = "true" if descending else "false"
        body = self._request("GET", self._url(collection), params=params) or {}
        return list(body.get("documents", []))

    def commit(self, batch):
        payload = {
            "writes": [
                {
                    "op": "delete" if write.is_delete else "upsert",
                    "collection": write.collection,
                    "id": write.doc_id,
                    "data": write.data,
                }
                for write in batch.writes
            ]
        }
        logger.debug(f"POST batch with {len(batch)} write(s)")
        self._request("POST", f"{self.base_url}/v1/batch", json=payload)

    def subscribe(self, collection, listener, order_by=None, descending=False):
        poller = _PollingSnapshot(self, collection, listener, order_by, descending)
        subscription = Subscription(on_cancel=poller.stop)
        poller.start()
        return subscription


class _PollingSnapshot:
    """Polls a collection and delivers it when it changes."""

    def __init__(self, store: HttpRemoteStore, collection, listener, order_by, descending):
        self.store = store
        self.collection = collection
        self.listener = listener
        self.order_by = order_by
        self.descending = descending
        self._stop = threading.Event()
        self._last = None
        self._thread = threading.Thread(
            target=self._run, name=f"snapshot-{collection}", daemon=True
        )

    def start(self):
        self._thread.start()

    def stop(self):
        self._stop.set()

    def poll_once(self):
        try:
            documents = self.store.query(
                self.collection, order_by=self.order_by, descending=self.descending
            )
        except (TransientError, PermanentError) as e:
            # Redeliver the next successful poll so the listener can clear its error
            self._last = None
            if not self._stop.is_set():
                self._deliver(None, e)
            return
        if documents != self._last and not self._stop.is_set():
            self._last = documents
            self._deliver(documents, None)

    def _deliver(self, documents, error):
        # A failing listener must not end the polling thread; the next poll redelivers
        try:
            self.listener(documents, error)
        except Exception as e:
            logger.error(f"Snapshot listener for {self.collection} failed: {type(e).__name__}: {e}")
            self._last = None

    def _run(self):
        while not self._stop.is_set():
            self.poll_once()
            self._stop.wait(self.store.poll_interval)
