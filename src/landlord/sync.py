"""
Sync coordinator.

Owns the published players/matches collections and keeps three stores in
step: the local cache (read first, written on every change), the pending
operation log (remote writes not yet confirmed) and the remote document
store (source of truth once a write is confirmed).

Writes are optimistic: the local cache and the published state change
immediately, then the remote write is attempted directly when online and
queued in the pending log otherwise (or when the direct write fails). A
single drain thread replays the log in order while online.

Remote snapshots are merged with unconfirmed local writes so a device never
loses sight of its own edits while they wait for confirmation.
"""
import logging
import sqlite3
import threading
import time
import uuid
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from pydantic import ValidationError

from landlord.cache import LocalStore
from landlord.models import (
    GameRecord,
    Match,
    OperationType,
    PendingOperation,
    Player,
    PlayerColor,
    new_local_id,
    utcnow,
)
from landlord.network import ConnectionStatus, ConnectivityMonitor
from landlord.pending import PendingOperationLog, PermanentError, decode_payload
from landlord.remote import GAME_RECORDS, MATCHES, PLAYERS, RemoteStore, WriteBatch
from landlord.status import (
    GameRecordsSyncState,
    SyncStatus,
    describe_status,
    project_game_records_state,
    project_sync_status,
)

logger = logging.getLogger("landlord.sync")

# Operation types overlaid on remote snapshots; None marks a delete
MATCH_OVERLAY_TYPES = {
    OperationType.CREATE_MATCH: lambda payload: payload.match,
    OperationType.UPDATE_MATCH: lambda payload: payload.match,
    OperationType.DELETE_MATCH: lambda payload: None,
}
PLAYER_OVERLAY_TYPES = {
    OperationType.CREATE_PLAYER: lambda payload: payload,
    OperationType.UPDATE_PLAYER: lambda payload: payload,
    OperationType.DELETE_PLAYER: lambda payload: None,
}


class DuplicatePlayerError(ValueError):
    """A player with the same name already exists."""
    pass


def sort_players(players) -> list:
    return sorted(players, key=lambda p: p.name)


def sort_matches(matches) -> list:
    return sorted(matches, key=lambda m: m.started_at, reverse=True)


def merge_snapshot(remote_items, overlay) -> list:
    """
    Merge a remote snapshot with unconfirmed local writes.

    Args:
        remote_items: Entities decoded from the remote snapshot
        overlay: (entity id, entity or None) pairs in write order; None is a delete

    Returns:
        Remote entities minus unconfirmed deletes, plus the latest unconfirmed
        write of every entity the snapshot does not contain yet
    """
    latest = {}
    deleted = set()
    for entity_id, entity in overlay:
        if entity is None:
            latest.pop(entity_id, None)
            deleted.add(entity_id)
        else:
            latest[entity_id] = entity
            deleted.discard(entity_id)

    remote_ids = {item.id for item in remote_items}
    merged = [item for item in remote_items if item.id not in deleted]
    merged.extend(entity for entity_id, entity in latest.items() if entity_id not in remote_ids)
    return merged


@dataclass(frozen=True)
class SyncSnapshot:
    """Immutable view of everything the coordinator publishes."""
    sync_status: SyncStatus
    pending_operations_count: int
    failed_operations_count: int
    is_online: bool
    game_records_sync_state: GameRecordsSyncState
    players: tuple = field(default_factory=tuple)
    matches: tuple = field(default_factory=tuple)
    last_sync_time: Optional[datetime] = None

    @property
    def label(self) -> str:
        return describe_status(self.sync_status, self.pending_operations_count, self.is_online)

    def to_dict(self) -> dict:
        return {
            "syncStatus": self.sync_status.to_dict(),
            "label": self.label,
            "pendingOperationsCount": self.pending_operations_count,
            "failedOperationsCount": self.failed_operations_count,
            "isOnline": self.is_online,
            "gameRecordsSyncState": self.game_records_sync_state.value,
            "lastSyncTime": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "players": [p.to_json() for p in self.players],
            "matches": [m.to_json() for m in self.matches],
        }


class SyncCoordinator:
    """
    Offline-first sync orchestrator.

    Handles:
    - Optimistic local writes with direct or queued remote delivery
    - Draining the pending log in order while online
    - Live remote subscriptions merged with unconfirmed writes
    - Full game-record backfill and per-match refresh
    - Status projection for the UI

    One reentrant lock guards the published state and local cache writes.
    It is never held across a remote call or a listener callback.
    """

    def __init__(self, local_store: LocalStore, pending_log: PendingOperationLog,
                 remote: RemoteStore, monitor: ConnectivityMonitor, wait_for_backoff: bool = True):
        """
        Initialize the sync coordinator.

        Args:
            local_store: Local cache
            pending_log: Durable log of unconfirmed remote writes
            remote: Remote document store
            monitor: Connectivity monitor
            wait_for_backoff: Keep the drain running through backoff windows
                (off in tests so a drain stops as soon as nothing is eligible)
        """
        self.local_store = local_store
        self.pending_log = pending_log
        self.remote = remote
        self.monitor = monitor
        self.wait_for_backoff = wait_for_backoff

        self._lock = threading.RLock()
        self._listeners: list[Callable[[SyncSnapshot], None]] = []

        # Published state
        self._players: list = []
        self._matches: list = []
        self._last_sync_time: Optional[datetime] = None
        self._has_records_cache = False
        self._sync_status = SyncStatus.offline()
        self._pending_count = 0
        self._failed_count = 0
        self._game_records_state = GameRecordsSyncState.LOADING

        # Errors by source ("players", "matches", "backfill")
        self._errors: dict[str, str] = {}

        # Direct remote writes not yet confirmed, by collection
        self._inflight: dict[str, dict] = {PLAYERS: {}, MATCHES: {}}

        # Remote subscriptions
        self._subscription_lock = threading.Lock()
        self._subscriptions: list = []
        self._listener_generation = 0

        # Bumped by reset/shutdown; background work from an older epoch is dropped
        self._epoch = 0
        self._initialized = False
        self._closed = False

        # Drain loop
        self._draining = False
        self._drain_requested = False
        self._drain_thread: Optional[threading.Thread] = None
        self._drain_stop = threading.Event()
        self._drain_wakeup = threading.Event()

        # Backfill and refresh tasks
        self._backfilling = False
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="sync-bg")
        self._futures: set = set()

        self._monitor_unsubscribers = [
            monitor.subscribe_status(self._on_connection_status),
            monitor.subscribe_restored(self._on_network_restored),
        ]

    # ---------- Observation ----------

    def subscribe(self, listener: Callable[[SyncSnapshot], None]):
        """Register a listener called with a SyncSnapshot on every change. Returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    @property
    def sync_status(self) -> SyncStatus:
        return self._sync_status

    @property
    def pending_operations_count(self) -> int:
        return self._pending_count

    @property
    def failed_operations_count(self) -> int:
        return self._failed_count

    @property
    def is_online(self) -> bool:
        return self.monitor.is_connected

    @property
    def game_records_sync_state(self) -> GameRecordsSyncState:
        return self._game_records_state

    @property
    def players(self) -> list:
        with self._lock:
            return list(self._players)

    @property
    def matches(self) -> list:
        with self._lock:
            return list(self._matches)

    @property
    def last_sync_time(self) -> Optional[datetime]:
        return self._last_sync_time

    def snapshot(self) -> SyncSnapshot:
        with self._lock:
            return self._build_snapshot()

    def _build_snapshot(self) -> SyncSnapshot:
        return SyncSnapshot(
            sync_status=self._sync_status,
            pending_operations_count=self._pending_count,
            failed_operations_count=self._failed_count,
            is_online=self.monitor.is_connected,
            game_records_sync_state=self._game_records_state,
            players=tuple(self._players),
            matches=tuple(self._matches),
            last_sync_time=self._last_sync_time,
        )

    def _publish(self):
        """Recompute derived status and notify listeners."""
        with self._lock:
            online = self.monitor.is_connected
            error = next(iter(self._errors.values()), None)
            self._sync_status = project_sync_status(online, self._draining, self._backfilling, error)
            self._pending_count = self.pending_log.pending_count
            self._failed_count = self.pending_log.failed_count
            self._game_records_state = project_game_records_state(
                is_online=online,
                has_cache=self._has_records_cache,
                has_completed_full_sync=self.local_store.has_completed_full_sync,
                is_backfilling=self._backfilling,
                backfill_error=self._errors.get("backfill"),
            )
            snapshot = self._build_snapshot()
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Sync listener failed: {type(e).__name__}: {e}")

    # ---------- Lifecycle ----------

    def initialize(self):
        """
        Load the local cache, then go online if connected.

        Calling it again is a no-op.
        """
        with self._lock:
            if self._initialized or self._closed:
                return
            self._initialized = True

        logger.info("Initializing sync coordinator...")
        self._load_from_local_cache()

        if self.monitor.is_connected:
            self._go_online()
        else:
            logger.info("Starting in offline mode")
        self._publish()

    def shutdown(self):
        """Cancel subscriptions, stop the drain and wait for background tasks."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._epoch += 1

        for unsubscribe in self._monitor_unsubscribers:
            unsubscribe()
        self._stop_listeners()
        self._stop_drain()
        self._executor.shutdown(wait=True)
        logger.info("Sync coordinator stopped")

    def _load_from_local_cache(self):
        with self._lock:
            self._players = sort_players(self.local_store.load_players())
            self._matches = sort_matches(self.local_store.load_matches())
            self._last_sync_time = self.local_store.last_sync_timestamp
            self._has_records_cache = self.local_store.has_cached_game_records
        logger.info(
            f"Loaded from cache: {len(self._players)} players, {len(self._matches)} matches"
        )

    def _go_online(self):
        """Open subscriptions if needed, drain the log and backfill if never completed."""
        with self._lock:
            if self._closed or not self._initialized:
                return
        with self._subscription_lock:
            needs_listeners = not self._subscriptions
        if needs_listeners:
            self._start_listeners()
        self.process_pending_operations()
        if not self.local_store.has_completed_full_sync:
            self._submit(self.backfill_game_records)

    def _on_connection_status(self, status: ConnectionStatus):
        if status == ConnectionStatus.CONNECTED:
            self._go_online()
        else:
            # Let a drain waiting on backoff notice it went offline
            self._drain_wakeup.set()
        self._publish()

    def _on_network_restored(self):
        logger.info("Network restored, resuming sync...")
        self._go_online()
        self._publish()

    # ---------- Remote subscriptions ----------

    def _start_listeners(self):
        with self._subscription_lock:
            self._listener_generation += 1
            generation = self._listener_generation

        subscriptions = []
        try:
            subscriptions.append(self.remote.subscribe(
                PLAYERS,
                lambda docs, error: self._handle_players_snapshot(generation, docs, error),
                order_by="name",
            ))
            subscriptions.append(self.remote.subscribe(
                MATCHES,
                lambda docs, error: self._handle_matches_snapshot(generation, docs, error),
                order_by="startedAt",
                descending=True,
            ))
        except Exception as e:
            logger.error(f"Failed to start remote listeners: {type(e).__name__}: {e}")
            for subscription in subscriptions:
                subscription.cancel()
            with self._lock:
                self._errors["matches"] = str(e)
            return

        with self._subscription_lock:
            self._subscriptions = subscriptions
        logger.info("Started remote listeners")

    def _stop_listeners(self):
        with self._subscription_lock:
            subscriptions = self._subscriptions
            self._subscriptions = []
            # Callbacks already in flight from these subscriptions are now stale
            self._listener_generation += 1
        for subscription in subscriptions:
            subscription.cancel()

    def _is_stale(self, generation: int) -> bool:
        return self._closed or generation != self._listener_generation

    @staticmethod
    def _decode_documents(model, documents) -> list:
        decoded = []
        for document in documents:
            try:
                decoded.append(model.from_document(document["id"], document))
            except (ValidationError, KeyError, TypeError) as e:
                logger.warning(f"Skipping undecodable {model.__name__} document: {type(e).__name__}")
        return decoded

    def _overlay(self, overlay_types: dict, collection: str) -> list:
        """Unconfirmed writes of one collection as (id, entity or None) pairs in write order."""
        overlay = []
        for operation in self.pending_log.unconfirmed_operations(tuple(overlay_types)):
            if operation.local_id is None:
                continue
            try:
                payload = decode_payload(operation)
            except ValidationError as e:
                logger.warning(f"Cannot overlay operation {operation.id}: {e.error_count()} error(s)")
                continue
            overlay.append((operation.local_id, overlay_types[operation.type](payload)))
        overlay.extend(self._inflight[collection].items())
        return overlay

    def _handle_players_snapshot(self, generation: int, documents, error):
        if self._is_stale(generation):
            logger.debug("Dropping stale players snapshot")
            return
        if error is not None:
            logger.error(f"Players listener error: {error}")
            with self._lock:
                self._errors["players"] = str(error)
            self._publish()
            return

        remote_players = self._decode_documents(Player, documents)
        with self._lock:
            merged = sort_players(merge_snapshot(
                remote_players, self._overlay(PLAYER_OVERLAY_TYPES, PLAYERS)
            ))
            self._players = merged
            self._errors.pop("players", None)
            self._persist("players", self.local_store.cache_players, merged)
        logger.info(f"Synced {len(merged)} players from remote")
        self._publish()

    def _handle_matches_snapshot(self, generation: int, documents, error):
        if self._is_stale(generation):
            logger.debug("Dropping stale matches snapshot")
            return
        if error is not None:
            logger.error(f"Matches listener error: {error}")
            with self._lock:
                self._errors["matches"] = str(error)
            self._publish()
            return

        remote_matches = self._decode_documents(Match, documents)
        with self._lock:
            merged = sort_matches(merge_snapshot(
                remote_matches, self._overlay(MATCH_OVERLAY_TYPES, MATCHES)
            ))
            self._matches = merged
            self._errors.pop("matches", None)
            self._persist("matches", self.local_store.cache_matches, merged)
            now = utcnow()
            self._last_sync_time = now
            self._persist("sync timestamp", setattr, self.local_store, "last_sync_timestamp", now)
        logger.info(f"Synced {len(merged)} matches from remote")
        self._publish()

    # ---------- Local persistence ----------

    @staticmethod
    def _persist(what: str, write, *args):
        """Run a local cache write; failures are logged and in-memory state stays authoritative."""
        try:
            write(*args)
        except OSError as e:
            logger.error(f"Failed to cache {what}: {e}")

    def _cache_game_records(self, records, match_id: str):
        with self._lock:
            self._persist(f"game records for {match_id}", self.local_store.cache_game_records,
                          records, match_id)
            if records:
                self._has_records_cache = True

    @staticmethod
    def _prepare_records(match_id: str, records) -> list:
        """Copy records with the owning match id and a stable document id."""
        prepared = []
        for record in records:
            update = {"match_id": match_id}
            if not record.id:
                update["id"] = uuid.uuid4().hex
            prepared.append(record.model_copy(update=update))
        return prepared

    # ---------- Remote write pipeline ----------

    def _write_or_enqueue(self, entity_id: str, remote_write: Callable[[], None],
                          enqueue: Callable[[Optional[list]], PendingOperation],
                          collection: Optional[str] = None, entity=None):
        """
        Deliver a write directly when possible, otherwise queue it.

        A direct write is attempted only when online and no earlier write to
        the same entity is still unconfirmed; otherwise the operation is
        queued behind those writes so they replay in order.
        """
        depends_on = self.pending_log.unconfirmed_ids_for(entity_id)

        if self.monitor.is_connected and not depends_on:
            if collection is not None:
                with self._lock:
                    self._inflight[collection][entity_id] = entity
            try:
                remote_write()
                logger.info(f"Wrote {entity_id} to remote")
                return
            except Exception as e:
                logger.warning(f"Remote write for {entity_id} failed, queuing: {type(e).__name__}: {e}")
                self._enqueue(enqueue, depends_on)
            finally:
                if collection is not None:
                    with self._lock:
                        self._inflight[collection].pop(entity_id, None)
            return

        self._enqueue(enqueue, depends_on)

    def _enqueue(self, enqueue, depends_on):
        try:
            enqueue(depends_on or None)
        except sqlite3.Error as e:
            logger.error(f"Failed to persist pending operation: {e}")
            return
        if self.monitor.is_connected:
            self.process_pending_operations()

    def _commit_match(self, match: Match, records, replace_records: bool):
        batch = WriteBatch().upsert(MATCHES, match.id, match.to_document())
        if replace_records:
            self._add_record_deletes(batch, match.id, keep={r.id for r in records})
        for record in records:
            batch.upsert(GAME_RECORDS, record.id, record.to_document())
        self.remote.commit(batch)

    def _add_record_deletes(self, batch: WriteBatch, match_id: str, keep=frozenset()):
        for document in self.remote.query(GAME_RECORDS, field="matchId", value=match_id):
            if document.get("id") not in keep:
                batch.delete(GAME_RECORDS, document["id"])

    def _create_match_remote(self, match: Match, records):
        if self.remote.get(MATCHES, match.id) is not None:
            logger.info(f"Match {match.id} already exists remotely, skipping create")
            return
        self._commit_match(match, records, replace_records=False)

    def _delete_match_remote(self, match_id: str):
        batch = WriteBatch()
        self._add_record_deletes(batch, match_id)
        batch.delete(MATCHES, match_id)
        self.remote.commit(batch)

    def _create_player_remote(self, player: Player):
        if self.remote.get(PLAYERS, player.id) is not None:
            logger.info(f"Player {player.id} already exists remotely, skipping create")
            return
        if self.remote.query(PLAYERS, field="name", value=player.name):
            logger.info(f"Player named {player.name!r} already exists remotely, skipping create")
            return
        self.remote.upsert(PLAYERS, player.id, player.to_document())

    def _upsert_records_remote(self, match_id: str, records, replace: bool):
        batch = WriteBatch()
        if replace:
            self._add_record_deletes(batch, match_id, keep={r.id for r in records})
        for record in records:
            batch.upsert(GAME_RECORDS, record.id, record.to_document())
        if len(batch):
            self.remote.commit(batch)

    def _delete_records_remote(self, match_id: str):
        batch = WriteBatch()
        self._add_record_deletes(batch, match_id)
        if len(batch):
            self.remote.commit(batch)

    # ---------- Matches ----------

    def save_match(self, match: Match, game_records) -> str:
        """
        Save a new match with its game records.

        Returns:
            The match id (client-generated when the match had none)
        """
        match = match.model_copy(deep=True)
        if not match.id:
            match.id = new_local_id()
        records = self._prepare_records(match.id, game_records)

        with self._lock:
            self._matches = sort_matches([match] + [m for m in self._matches if m.id != match.id])
            self._persist("matches", self.local_store.cache_matches, self._matches)
        self._cache_game_records(records, match.id)
        logger.info(f"Saved match {match.id} locally with {len(records)} game record(s)")
        self._publish()

        self._write_or_enqueue(
            match.id,
            remote_write=lambda: self._create_match_remote(match, records),
            enqueue=lambda deps: self.pending_log.enqueue_create_match(match, records, deps),
            collection=MATCHES,
            entity=match,
        )
        self._publish()
        return match.id

    def update_match(self, match: Match, game_records) -> bool:
        """
        Replace a match and its complete list of game records.

        Returns:
            False if the match is unknown
        """
        if not match.id:
            raise ValueError("Match id is required for update")
        match = match.model_copy(deep=True)
        records = self._prepare_records(match.id, game_records)

        with self._lock:
            if not any(m.id == match.id for m in self._matches):
                logger.warning(f"Cannot update unknown match {match.id}")
                return False
            self._matches = sort_matches([match] + [m for m in self._matches if m.id != match.id])
            self._persist("matches", self.local_store.cache_matches, self._matches)
        self._cache_game_records(records, match.id)
        logger.info(f"Updated match {match.id} locally")
        self._publish()

        self._write_or_enqueue(
            match.id,
            remote_write=lambda: self._commit_match(match, records, replace_records=True),
            enqueue=lambda deps: self.pending_log.enqueue_update_match(match, records, deps),
            collection=MATCHES,
            entity=match,
        )
        self._publish()
        return True

    def delete_match(self, match_id: str) -> bool:
        """Delete a match and its game records. Returns False if the match is unknown."""
        with self._lock:
            if not any(m.id == match_id for m in self._matches):
                logger.warning(f"Cannot delete unknown match {match_id}")
                return False
            self._matches = [m for m in self._matches if m.id != match_id]
            self._persist("matches", self.local_store.cache_matches, self._matches)
            self._persist(f"game records for {match_id}", self.local_store.delete_game_records, match_id)
            self._has_records_cache = self.local_store.has_cached_game_records
        logger.info(f"Deleted match {match_id} locally")
        self._publish()

        self._write_or_enqueue(
            match_id,
            remote_write=lambda: self._delete_match_remote(match_id),
            enqueue=lambda deps: self.pending_log.enqueue_delete_match(match_id, deps),
            collection=MATCHES,
            entity=None,
        )
        self._publish()
        return True

    def add_game_records(self, match_id: str, records) -> list:
        """
        Append game records to a match.

        Returns:
            The stored records (with ids assigned)
        """
        records = self._prepare_records(match_id, records)
        with self._lock:
            added_ids = {r.id for r in records}
            existing = [r for r in self.local_store.load_game_records(match_id) if r.id not in added_ids]
        self._cache_game_records(existing + records, match_id)
        logger.info(f"Added {len(records)} game record(s) to match {match_id}")
        self._publish()

        self._write_or_enqueue(
            match_id,
            remote_write=lambda: self._upsert_records_remote(match_id, records, replace=False),
            enqueue=lambda deps: self.pending_log.enqueue_create_game_records(match_id, records, deps),
        )
        self._publish()
        return records

    def load_game_records(self, match_id: str, on_refresh: Optional[Callable[[list], None]] = None) -> list:
        """
        Return cached game records for a match immediately.

        When online a background refresh from the remote follows; on_refresh
        is called with the new list only if it differs from the cached one.
        """
        with self._lock:
            cached = self.local_store.load_game_records(match_id)
        if self.monitor.is_connected:
            self._submit(self._refresh_game_records, match_id, cached, on_refresh)
        return cached

    def _refresh_game_records(self, match_id: str, cached, on_refresh):
        epoch = self._epoch
        try:
            documents = self.remote.query(GAME_RECORDS, field="matchId", value=match_id)
        except Exception as e:
            logger.warning(f"Failed to refresh game records for {match_id}: {type(e).__name__}: {e}")
            return
        if epoch != self._epoch:
            return

        records = sorted(self._decode_documents(GameRecord, documents), key=lambda r: r.game_index)
        if self.pending_log.unconfirmed_ids_for(match_id):
            logger.debug(f"Match {match_id} has unconfirmed writes, keeping local game records")
            return
        if records == cached:
            return

        self._cache_game_records(records, match_id)
        logger.info(f"Refreshed {len(records)} game record(s) for match {match_id}")
        self._publish()
        if on_refresh is not None:
            on_refresh(records)

    # ---------- Players ----------

    def add_player(self, name: str, color: Optional[PlayerColor] = None) -> Player:
        """
        Create a player.

        Raises:
            ValueError: If the name is empty
            DuplicatePlayerError: If a player with this name already exists
        """
        name = name.strip()
        if not name:
            raise ValueError("Player name is required")

        with self._lock:
            if any(p.name == name for p in self._players):
                raise DuplicatePlayerError(f"Player name already exists: {name}")
            player = Player(id=new_local_id(), name=name, color=color)
            self._players = sort_players(self._players + [player])
            self._persist("players", self.local_store.cache_players, self._players)
        logger.info(f"Added player {name!r} ({player.id})")
        self._publish()

        self._write_or_enqueue(
            player.id,
            remote_write=lambda: self._create_player_remote(player),
            enqueue=lambda deps: self.pending_log.enqueue_create_player(player, deps),
            collection=PLAYERS,
            entity=player,
        )
        self._publish()
        return player

    def update_player(self, player: Player) -> bool:
        """
        Replace a player. Returns False if the player is unknown.

        Raises:
            DuplicatePlayerError: If another player already has the new name
        """
        if not player.id:
            raise ValueError("Player id is required for update")
        player = player.model_copy(deep=True)

        with self._lock:
            if not any(p.id == player.id for p in self._players):
                logger.warning(f"Cannot update unknown player {player.id}")
                return False
            if any(p.name == player.name and p.id != player.id for p in self._players):
                raise DuplicatePlayerError(f"Player name already exists: {player.name}")
            self._players = sort_players([player] + [p for p in self._players if p.id != player.id])
            self._persist("players", self.local_store.cache_players, self._players)
        self._publish()

        self._write_or_enqueue(
            player.id,
            remote_write=lambda: self.remote.upsert(PLAYERS, player.id, player.to_document()),
            enqueue=lambda deps: self.pending_log.enqueue_update_player(player, deps),
            collection=PLAYERS,
            entity=player,
        )
        self._publish()
        return True

    def delete_player(self, player_id: str) -> bool:
        """Delete a player. Returns False if the player is unknown."""
        with self._lock:
            if not any(p.id == player_id for p in self._players):
                logger.warning(f"Cannot delete unknown player {player_id}")
                return False
            self._players = [p for p in self._players if p.id != player_id]
            self._persist("players", self.local_store.cache_players, self._players)
        self._publish()

        self._write_or_enqueue(
            player_id,
            remote_write=lambda: self.remote.delete(PLAYERS, player_id),
            enqueue=lambda deps: self.pending_log.enqueue_delete_player(player_id, deps),
            collection=PLAYERS,
            entity=None,
        )
        self._publish()
        return True

    # ---------- Drain loop ----------

    def process_pending_operations(self):
        """Start draining the pending log if online and not already draining."""
        if not self.monitor.is_connected:
            logger.debug("Offline, not processing pending operations")
            return

        with self._lock:
            if self._closed:
                return
            if self._draining:
                # Ask the running drain for another pass instead of starting a second one
                self._drain_requested = True
                self._drain_wakeup.set()
                return
            self._draining = True
            self._drain_requested = False
            self._drain_wakeup.clear()
            thread = threading.Thread(target=self._drain_loop, name="sync-drain", daemon=True)
            self._drain_thread = thread

        self._publish()
        thread.start()

    def _drain_loop(self):
        logger.info("Processing pending operations...")
        try:
            while not self._drain_stop.is_set():
                if not self.monitor.is_connected:
                    logger.info("Went offline, pausing pending operations")
                    break

                try:
                    operation = self.pending_log.dequeue_next()
                except sqlite3.Error as e:
                    logger.error(f"Failed to read pending operations: {e}")
                    break

                if operation is not None:
                    self._run_operation(operation)
                    self._publish()
                    continue

                delay = self.pending_log.next_retry_delay()
                if delay is not None and self.wait_for_backoff:
                    logger.debug(f"Waiting {delay:.1f}s for the next retry")
                    self._drain_wakeup.wait(delay)
                    self._drain_wakeup.clear()
                    continue

                with self._lock:
                    if self._drain_requested and not self._drain_stop.is_set():
                        self._drain_requested = False
                        continue
                    self._draining = False
                break
        finally:
            with self._lock:
                # A newer drain may already have started after this one released the flag
                if self._drain_thread is threading.current_thread():
                    self._draining = False
            try:
                self.pending_log.remove_completed()
            except sqlite3.Error as e:
                logger.error(f"Failed to purge completed operations: {e}")
            logger.info("Finished processing pending operations")
            self._publish()

    def _run_operation(self, operation: PendingOperation):
        logger.info(f"Processing operation: {operation.type.value} ({operation.id})")
        try:
            self._execute_operation(operation)
        except PermanentError as e:
            logger.error(f"✗ Permanent error for operation {operation.id}: {e}. Will not retry.")
            self._mark(self.pending_log.mark_failed, operation.id, str(e), permanent=True)
        except Exception as e:
            # Unknown errors are treated as transient and retried
            self._mark(self.pending_log.mark_failed, operation.id, f"{type(e).__name__}: {e}")
        else:
            logger.info(f"✓ Completed operation: {operation.type.value} ({operation.id})")
            self._mark(self.pending_log.mark_completed, operation.id)

    @staticmethod
    def _mark(mark, *args, **kwargs):
        try:
            mark(*args, **kwargs)
        except sqlite3.Error as e:
            logger.error(f"Failed to record operation result: {e}")

    def _execute_operation(self, operation: PendingOperation):
        """
        Perform one queued remote write.

        Raises:
            PermanentError: If the payload cannot be decoded or the remote rejects it
            Exception: Any other remote failure (retried)
        """
        try:
            payload = decode_payload(operation)
        except ValidationError as e:
            raise PermanentError(f"Undecodable {operation.type.value} payload: {e.error_count()} error(s)")

        op_type = operation.type
        if op_type == OperationType.CREATE_MATCH:
            self._create_match_remote(payload.match, payload.game_records)
        elif op_type == OperationType.UPDATE_MATCH:
            self._commit_match(payload.match, payload.game_records, replace_records=True)
        elif op_type == OperationType.DELETE_MATCH:
            self._delete_match_remote(payload.match_id)
        elif op_type == OperationType.CREATE_PLAYER:
            self._create_player_remote(payload)
        elif op_type == OperationType.UPDATE_PLAYER:
            self.remote.upsert(PLAYERS, payload.id, payload.to_document())
        elif op_type == OperationType.DELETE_PLAYER:
            self.remote.delete(PLAYERS, payload.player_id)
        elif op_type == OperationType.CREATE_GAME_RECORDS:
            self._upsert_records_remote(payload.match_id, payload.game_records, replace=False)
        elif op_type == OperationType.UPDATE_GAME_RECORDS:
            self._upsert_records_remote(payload.match_id, payload.game_records, replace=True)
        elif op_type == OperationType.DELETE_GAME_RECORDS:
            self._delete_records_remote(payload.match_id)
        else:
            raise PermanentError(f"Unsupported operation type: {op_type}")

    def _stop_drain(self):
        self._drain_stop.set()
        self._drain_wakeup.set()
        thread = self._drain_thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join()
        self._drain_stop.clear()
        with self._lock:
            self._draining = False
            self._drain_requested = False

    # ---------- Backfill / control ----------

    def _submit(self, fn, *args):
        with self._lock:
            if self._closed:
                return None
            future = self._executor.submit(fn, *args)
            self._futures.add(future)
        future.add_done_callback(self._task_done)
        return future

    def _task_done(self, future):
        with self._lock:
            self._futures.discard(future)
        if not future.cancelled() and future.exception() is not None:
            error = future.exception()
            logger.error(f"Background sync task failed: {type(error).__name__}: {error}")

    def backfill_game_records(self) -> bool:
        """
        Download every remote game record and replace the local cache with it.

        Matches with unconfirmed local writes keep their cached records.

        Returns:
            True if the backfill completed
        """
        with self._lock:
            if self._backfilling:
                logger.debug("Game record backfill already running")
                return False
            self._backfilling = True
            epoch = self._epoch
        self._publish()

        logger.info("Starting full game record backfill...")
        try:
            documents = self.remote.query(GAME_RECORDS)
        except Exception as e:
            logger.error(f"Game record backfill failed: {type(e).__name__}: {e}")
            if self.local_store.has_completed_full_sync:
                logger.warning("Keeping previously synced game records (stale but usable)")
            with self._lock:
                self._backfilling = False
                if epoch == self._epoch:
                    self._errors["backfill"] = str(e)
            self._publish()
            return False

        records = self._decode_documents(GameRecord, documents)
        groups = defaultdict(list)
        for record in records:
            groups[record.match_id].append(record)
        unconfirmed = {op.local_id for op in self.pending_log.unconfirmed_operations()}
        groups = {match_id: group for match_id, group in groups.items() if match_id not in unconfirmed}

        with self._lock:
            self._backfilling = False
            if epoch != self._epoch:
                logger.info("Discarding game record backfill from before a reset")
                return False
            try:
                self.local_store.replace_game_records(groups)
                now = utcnow()
                self.local_store.has_completed_full_sync = True
                self.local_store.last_sync_timestamp = now
            except OSError as e:
                logger.error(f"Failed to cache backfilled game records: {e}")
                self._errors["backfill"] = f"Failed to cache game records: {e}"
            else:
                self._last_sync_time = now
                self._has_records_cache = self.local_store.has_cached_game_records
                self._errors.pop("backfill", None)
                logger.info(f"Backfilled {len(records)} game record(s) for {len(groups)} match(es)")
        self._publish()
        return "backfill" not in self._errors

    def force_sync(self) -> bool:
        """Reopen subscriptions, restart the drain and re-run the backfill. Returns False when offline."""
        if not self.monitor.is_connected:
            logger.info("Cannot force sync while offline")
            return False
        logger.info("Forcing sync...")
        self._stop_listeners()
        self._start_listeners()
        self.process_pending_operations()
        self._submit(self.backfill_game_records)
        self._publish()
        return True

    def reset_and_sync(self):
        """Drop all local state and pending operations, then start over from the remote."""
        logger.warning("Resetting local cache and pending operations...")
        self._stop_listeners()
        with self._lock:
            self._epoch += 1
        self._stop_drain()

        try:
            self.local_store.clear_all()
        except OSError as e:
            logger.error(f"Failed to clear local cache: {e}")
        try:
            self.pending_log.clear_all()
        except sqlite3.Error as e:
            logger.error(f"Failed to clear pending operations: {e}")

        with self._lock:
            self._players = []
            self._matches = []
            self._last_sync_time = None
            self._has_records_cache = False
            self._errors.clear()
            self._inflight = {PLAYERS: {}, MATCHES: {}}
            self._initialized = False
        self._publish()
        self.initialize()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the drain and background tasks have finished.

        Returns:
            False if the timeout expired first
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                thread = self._drain_thread
                futures = [f for f in self._futures if not f.done()]
            busy_thread = thread is not None and thread.is_alive()
            if not busy_thread and not futures:
                return True

            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            if busy_thread:
                thread.join(remaining)
            elif futures:
                wait(futures, timeout=remaining)
