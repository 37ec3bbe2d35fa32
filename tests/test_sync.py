"""Tests for the sync coordinator."""
import threading
import time
from datetime import datetime
from unittest.mock import patch

import pytest

from landlord.models import OperationStatus, OperationType, Player, PlayerColor
from landlord.network import Reachability
from landlord.pending import PendingOperationLog, PermanentError, TransientError
from landlord.remote import GAME_RECORDS, MATCHES, PLAYERS
from landlord.status import GameRecordsSyncState, SyncState, SyncStatus
from landlord.sync import DuplicatePlayerError, SyncCoordinator, SyncSnapshot, merge_snapshot


def go_online(monitor):
    monitor.update(Reachability.SATISFIED)


def go_offline(monitor):
    monitor.update(Reachability.UNSATISFIED)


def match_ids(coordinator):
    return [m.id for m in coordinator.matches]


# ---------- Merge ----------

def test_merge_overlays_missing_entities():
    """Test that unconfirmed writes appear only when the snapshot lacks them."""
    remote_items = [Player(id="a", name="Ann")]
    overlay = [
        ("b", Player(id="b", name="Bo")),
        ("a", Player(id="a", name="Ann (local edit)")),
    ]

    merged = merge_snapshot(remote_items, overlay)

    assert [(p.id, p.name) for p in merged] == [("a", "Ann"), ("b", "Bo")]


def test_merge_uses_latest_write_and_honors_deletes():
    """Test that the last unconfirmed write of an entity wins, deletes included."""
    remote_items = [Player(id="a", name="Ann")]
    overlay = [
        ("b", Player(id="b", name="Bo")),
        ("b", Player(id="b", name="Bob")),
        ("c", Player(id="c", name="Cy")),
        ("c", None),
        ("a", None),
    ]

    merged = merge_snapshot(remote_items, overlay)

    assert [(p.id, p.name) for p in merged] == [("b", "Bob")]


# ---------- Startup ----------

def test_initialize_offline_serves_cache(coordinator, local_store, monitor, remote, make_match):
    """Test that an offline start shows cached data without touching the remote."""
    local_store.cache_players([Player(id="p2", name="Bo"), Player(id="p1", name="Ann")])
    local_store.cache_matches([make_match("m1")])
    go_offline(monitor)

    coordinator.initialize()

    assert [p.name for p in coordinator.players] == ["Ann", "Bo"]
    assert match_ids(coordinator) == ["m1"]
    assert coordinator.sync_status == SyncStatus.offline()
    assert coordinator.is_online is False
    assert remote.calls == []


def test_initialize_is_idempotent(coordinator, monitor, remote):
    """Test that a second initialize does not reopen subscriptions."""
    go_online(monitor)
    coordinator.initialize()
    coordinator.initialize()
    assert coordinator.wait_idle(timeout=5)

    assert len(remote.listeners[MATCHES]) == 1
    assert len(remote.listeners[PLAYERS]) == 1


def test_cold_start_trusts_completed_full_sync(coordinator, local_store, monitor, remote, make_record):
    """Test that records are trusted immediately after a previous full sync."""
    local_store.cache_game_records([make_record("m1", 0)], "m1")
    local_store.has_completed_full_sync = True
    go_offline(monitor)

    coordinator.initialize()

    assert coordinator.game_records_sync_state == GameRecordsSyncState.SYNCED
    assert len(coordinator.load_game_records("m1")) == 1
    assert remote.calls == []


def test_cold_start_without_full_sync(coordinator, local_store, monitor, make_record):
    """Test that records cached before any full sync are marked local only."""
    go_offline(monitor)
    coordinator.initialize()
    assert coordinator.game_records_sync_state == GameRecordsSyncState.OFFLINE

    coordinator.add_game_records("m1", [make_record("m1", 0)])
    assert coordinator.game_records_sync_state == GameRecordsSyncState.LOCAL_ONLY


# ---------- Offline writes and draining ----------

def test_offline_match_syncs_after_reconnect(coordinator, monitor, remote, make_match, make_record):
    """Test the full offline save, reconnect and drain cycle."""
    go_offline(monitor)
    coordinator.initialize()

    match_id = coordinator.save_match(
        make_match("local-123"),
        [make_record("local-123", 0), make_record("local-123", 1)],
    )

    assert match_id == "local-123"
    assert coordinator.pending_operations_count == 1
    assert coordinator.sync_status.state == SyncState.OFFLINE
    assert match_ids(coordinator) == ["local-123"]

    go_online(monitor)
    assert coordinator.wait_idle(timeout=5)

    assert coordinator.pending_operations_count == 0
    assert coordinator.sync_status == SyncStatus.idle()
    assert coordinator.snapshot().label == "Synced"
    assert "local-123" in remote.collections[MATCHES]
    assert len(remote.documents(GAME_RECORDS, "matchId", "local-123")) == 2
    assert match_ids(coordinator) == ["local-123"]


def test_duplicate_create_is_idempotent(coordinator, pending_log, monitor, remote, make_match, make_record):
    """Test that replaying a create for an existing document writes nothing."""
    go_offline(monitor)
    coordinator.initialize()
    match = make_match("m1")
    pending_log.enqueue_create_match(match, [make_record("m1", 0, id="r0")])
    pending_log.enqueue_create_match(match, [make_record("m1", 0, id="r0")])

    go_online(monitor)
    assert coordinator.wait_idle(timeout=5)

    assert len(remote.commits) == 1
    assert list(remote.collections[MATCHES]) == ["m1"]
    assert list(remote.collections[GAME_RECORDS]) == ["r0"]
    assert coordinator.pending_operations_count == 0


def test_pending_create_merged_without_duplicates(coordinator, monitor, remote, make_match):
    """Test that an unconfirmed match shows once, before and after the remote has it."""
    remote.seed(MATCHES, "m2", make_match("m2").to_document())
    remote.fail_writes = TransientError("server down")
    go_offline(monitor)
    coordinator.initialize()
    coordinator.save_match(make_match("m1"), [])

    go_online(monitor)
    assert coordinator.wait_idle(timeout=5)
    assert sorted(match_ids(coordinator)) == ["m1", "m2"]
    assert coordinator.pending_operations_count == 1

    # Another device already delivered the same document
    remote.seed(MATCHES, "m1", make_match("m1").to_document(), notify=True)
    assert sorted(match_ids(coordinator)) == ["m1", "m2"]


def test_unconfirmed_delete_hides_match(coordinator, monitor, remote, make_match):
    """Test that a queued delete keeps the match hidden while the remote still has it."""
    remote.seed(MATCHES, "m1", make_match("m1").to_document())
    go_online(monitor)
    coordinator.initialize()
    assert coordinator.wait_idle(timeout=5)
    assert match_ids(coordinator) == ["m1"]

    remote.fail_writes = TransientError("server down")
    assert coordinator.delete_match("m1") is True
    assert coordinator.wait_idle(timeout=5)
    assert coordinator.matches == []

    remote.seed(MATCHES, "m2", make_match("m2").to_document(), notify=True)
    assert match_ids(coordinator) == ["m2"]
    assert coordinator.pending_operations_count == 1


def test_permanent_error_is_not_retried(coordinator, pending_log, monitor, remote, make_match):
    """Test that a rejected write gives up after one attempt."""
    remote.fail_writes = PermanentError("Client error 400")
    go_offline(monitor)
    coordinator.initialize()
    coordinator.save_match(make_match("m1"), [])

    go_online(monitor)
    assert coordinator.wait_idle(timeout=5)

    operation = pending_log.all_operations()[0]
    assert operation.status == OperationStatus.FAILED
    assert operation.retry_count == PendingOperationLog.MAX_RETRIES
    assert "400" in operation.last_error
    assert coordinator.failed_operations_count == 1
    assert len([c for c in remote.calls if c[0] == "commit"]) == 1


def test_transient_error_retried_after_backoff(coordinator, pending_log, monitor, remote, make_match):
    """Test that a failed write is delivered by a later drain once its backoff passed."""
    remote.fail_writes = TransientError("server down")
    go_offline(monitor)
    coordinator.initialize()
    coordinator.save_match(make_match("m1"), [])

    go_online(monitor)
    assert coordinator.wait_idle(timeout=5)
    operation = pending_log.all_operations()[0]
    assert operation.retry_count == 1
    assert operation.last_error == "TransientError: server down"

    remote.fail_writes = None
    with patch("time.time", return_value=time.time() + 10):
        coordinator.process_pending_operations()
        assert coordinator.wait_idle(timeout=5)

    assert "m1" in remote.collections[MATCHES]
    assert pending_log.all_operations() == []


def test_add_game_records_depends_on_unconfirmed_match(coordinator, pending_log, monitor, make_match, make_record):
    """Test that records wait for the match they belong to."""
    go_offline(monitor)
    coordinator.initialize()
    coordinator.save_match(make_match("m1"), [make_record("m1", 0)])

    added = coordinator.add_game_records("m1", [make_record("m1", 1)])

    create, add = pending_log.all_operations()
    assert add.type == OperationType.CREATE_GAME_RECORDS
    assert add.depends_on == [create.id]
    assert added[0].id
    assert [r.game_index for r in coordinator.load_game_records("m1")] == [0, 1]


def test_offline_update_depends_on_create(coordinator, pending_log, monitor, make_match):
    """Test that an update queued behind an unconfirmed create declares it."""
    go_offline(monitor)
    coordinator.initialize()
    coordinator.save_match(make_match("m1"), [])

    assert coordinator.update_match(make_match("m1", total_games=3), []) is True

    create, update = pending_log.all_operations()
    assert update.type == OperationType.UPDATE_MATCH
    assert update.depends_on == [create.id]
    assert coordinator.matches[0].total_games == 3


def test_update_unknown_match(coordinator, monitor, make_match):
    """Test that updating a match nobody knows is refused."""
    go_offline(monitor)
    coordinator.initialize()
    assert coordinator.update_match(make_match("nope"), []) is False
    assert coordinator.delete_match("nope") is False


def test_online_update_replaces_remote_records(coordinator, monitor, remote, make_match, make_record):
    """Test that an update rewrites the match's records in one batch."""
    go_online(monitor)
    coordinator.initialize()
    assert coordinator.wait_idle(timeout=5)

    match_id = coordinator.save_match(make_match(), [make_record("draft", 0), make_record("draft", 1)])
    assert match_id.startswith("local-")
    assert len(remote.documents(GAME_RECORDS, "matchId", match_id)) == 2

    coordinator.update_match(make_match(match_id, total_games=1), [make_record(match_id, 0, id="fresh")])

    assert [d["id"] for d in remote.documents(GAME_RECORDS, "matchId", match_id)] == ["fresh"]
    assert remote.collections[MATCHES][match_id]["totalGames"] == 1
    assert coordinator.pending_operations_count == 0


def test_save_match_with_naive_start_time(coordinator, monitor, make_match):
    """Test that a match without a timezone on its start time still saves and sorts."""
    go_offline(monitor)
    coordinator.initialize()
    coordinator.save_match(make_match("m1"), [])

    coordinator.save_match(make_match("m2", started_at=datetime(2024, 1, 1, 10, 0)), [])

    assert match_ids(coordinator) == ["m1", "m2"]
    assert coordinator.pending_operations_count == 2


def test_remote_match_with_naive_start_time(coordinator, monitor, remote, make_match):
    """Test that a remote match without a timezone merges with local ones."""
    go_offline(monitor)
    coordinator.initialize()
    coordinator.save_match(make_match("m1"), [])
    remote.seed(MATCHES, "r1", {**make_match("r1").to_document(), "startedAt": "2024-01-01T10:00:00"})

    go_online(monitor)
    assert coordinator.wait_idle(timeout=5)

    assert match_ids(coordinator) == ["m1", "r1"]
    assert coordinator.pending_operations_count == 0
    assert "m1" in remote.collections[MATCHES]


# ---------- Players ----------

def test_add_player_rejects_duplicate_name(coordinator, monitor):
    """Test that player names are unique."""
    go_offline(monitor)
    coordinator.initialize()
    coordinator.add_player("Ann")

    with pytest.raises(DuplicatePlayerError):
        coordinator.add_player("Ann")
    with pytest.raises(ValueError):
        coordinator.add_player("   ")
    assert coordinator.pending_operations_count == 1


def test_add_player_online_writes_directly(coordinator, pending_log, monitor, remote):
    """Test that an online player write skips the pending log."""
    go_online(monitor)
    coordinator.initialize()
    assert coordinator.wait_idle(timeout=5)

    player = coordinator.add_player("Ann", PlayerColor.BLUE)

    assert remote.documents(PLAYERS) == [{**player.to_document(), "id": player.id}]
    assert pending_log.all_operations() == []
    assert [p.name for p in coordinator.players] == ["Ann"]


def test_create_player_idempotent_by_name(coordinator, pending_log, monitor, remote):
    """Test that a queued player whose name already exists remotely is not written again."""
    remote.seed(PLAYERS, "remote-ann", {"name": "Ann", "createdAt": "2024-01-01T00:00:00Z"})
    go_offline(monitor)
    coordinator.initialize()
    pending_log.enqueue_create_player(Player(id="local-ann", name="Ann"))

    go_online(monitor)
    assert coordinator.wait_idle(timeout=5)

    assert list(remote.collections[PLAYERS]) == ["remote-ann"]
    assert pending_log.all_operations() == []


def test_update_and_delete_player(coordinator, monitor, remote):
    """Test that player edits and deletes reach the remote."""
    go_online(monitor)
    coordinator.initialize()
    player = coordinator.add_player("Ann")
    coordinator.add_player("Bo")

    renamed = player.model_copy(update={"name": "Anna"})
    assert coordinator.update_player(renamed) is True
    assert remote.collections[PLAYERS][player.id]["name"] == "Anna"

    with pytest.raises(DuplicatePlayerError):
        coordinator.update_player(renamed.model_copy(update={"name": "Bo"}))

    assert coordinator.delete_player(player.id) is True
    assert player.id not in remote.collections[PLAYERS]
    assert [p.name for p in coordinator.players] == ["Bo"]


# ---------- Game records ----------

def test_backfill_marks_full_sync(coordinator, local_store, monitor, remote, make_record):
    """Test that the first online start downloads every game record."""
    remote.seed(GAME_RECORDS, "r1", make_record("m1", 0).to_document())
    remote.seed(GAME_RECORDS, "r2", make_record("m1", 1).to_document())
    remote.seed(GAME_RECORDS, "r3", make_record("m2", 0).to_document())
    go_online(monitor)

    coordinator.initialize()
    assert coordinator.wait_idle(timeout=5)

    assert coordinator.game_records_sync_state == GameRecordsSyncState.SYNCED
    assert local_store.has_completed_full_sync
    assert len(local_store.load_all_game_records()) == 3
    assert coordinator.last_sync_time is not None


def test_backfill_failure_before_any_full_sync(coordinator, local_store, monitor, remote):
    """Test that a failed first backfill is reported and recovers on force_sync."""
    remote.fail_reads = TransientError("server down")
    go_online(monitor)
    coordinator.initialize()
    assert coordinator.wait_idle(timeout=5)

    assert coordinator.game_records_sync_state == GameRecordsSyncState.ERROR
    assert coordinator.sync_status.state == SyncState.ERROR
    assert not local_store.has_completed_full_sync

    remote.fail_reads = None
    assert coordinator.force_sync() is True
    assert coordinator.wait_idle(timeout=5)

    assert coordinator.game_records_sync_state == GameRecordsSyncState.SYNCED
    assert coordinator.sync_status == SyncStatus.idle()


def test_backfill_failure_after_full_sync_keeps_trust(coordinator, local_store, monitor, remote):
    """Test that a later failed refresh leaves the cache trusted but reports the error."""
    local_store.has_completed_full_sync = True
    remote.fail_reads = TransientError("server down")
    go_online(monitor)
    coordinator.initialize()
    assert coordinator.force_sync() is True
    assert coordinator.wait_idle(timeout=5)

    assert coordinator.game_records_sync_state == GameRecordsSyncState.SYNCED
    assert coordinator.sync_status.state == SyncState.ERROR


def test_load_game_records_refreshes_in_background(coordinator, local_store, monitor, remote, make_record):
    """Test that cached records return at once and a changed remote list follows."""
    local_store.has_completed_full_sync = True
    local_store.cache_game_records([make_record("m1", 0, id="r0")], "m1")
    remote.seed(GAME_RECORDS, "r0", make_record("m1", 0).to_document())
    remote.seed(GAME_RECORDS, "r1", make_record("m1", 1).to_document())
    go_online(monitor)
    coordinator.initialize()
    assert coordinator.wait_idle(timeout=5)

    refreshed = []
    cached = coordinator.load_game_records("m1", on_refresh=refreshed.append)
    assert [r.id for r in cached] == ["r0"]

    assert coordinator.wait_idle(timeout=5)
    assert [[r.id for r in records] for records in refreshed] == [["r0", "r1"]]
    assert len(local_store.load_game_records("m1")) == 2


def test_load_game_records_unchanged_does_not_notify(coordinator, local_store, monitor, remote, make_record):
    """Test that an identical remote list does not trigger on_refresh."""
    record = make_record("m1", 0, id="r0")
    local_store.has_completed_full_sync = True
    local_store.cache_game_records([record], "m1")
    remote.seed(GAME_RECORDS, "r0", record.to_document())
    go_online(monitor)
    coordinator.initialize()
    assert coordinator.wait_idle(timeout=5)

    refreshed = []
    coordinator.load_game_records("m1", on_refresh=refreshed.append)
    assert coordinator.wait_idle(timeout=5)

    assert refreshed == []


def test_refresh_keeps_records_with_unconfirmed_writes(coordinator, local_store, monitor, remote, make_record):
    """Test that a refresh never overwrites records still waiting to upload."""
    local_store.has_completed_full_sync = True
    remote.seed(GAME_RECORDS, "old", make_record("m1", 0).to_document())
    go_online(monitor)
    coordinator.initialize()
    assert coordinator.wait_idle(timeout=5)

    remote.fail_writes = TransientError("server down")
    coordinator.add_game_records("m1", [make_record("m1", 0, id="mine")])
    assert coordinator.wait_idle(timeout=5)

    refreshed = []
    coordinator.load_game_records("m1", on_refresh=refreshed.append)
    assert coordinator.wait_idle(timeout=5)

    assert refreshed == []
    assert [r.id for r in local_store.load_game_records("m1")] == ["mine"]


# ---------- Status and lifecycle ----------

def test_listeners_receive_snapshots(coordinator, monitor, make_match):
    """Test that subscribers get an immutable snapshot on every change."""
    snapshots = []
    coordinator.subscribe(snapshots.append)
    go_offline(monitor)
    coordinator.initialize()

    coordinator.save_match(make_match("m1"), [])

    last = snapshots[-1]
    assert isinstance(last, SyncSnapshot)
    assert [m.id for m in last.matches] == ["m1"]
    assert last.pending_operations_count == 1
    assert last.label == "Offline (1 pending)"


def test_going_offline_updates_status(coordinator, monitor):
    """Test that losing connectivity shows offline."""
    go_online(monitor)
    coordinator.initialize()
    assert coordinator.wait_idle(timeout=5)
    assert coordinator.sync_status == SyncStatus.idle()

    go_offline(monitor)
    assert coordinator.sync_status == SyncStatus.offline()


def test_stale_snapshot_after_reset_is_dropped(coordinator, monitor, remote, make_match):
    """Test that callbacks from cancelled subscriptions are ignored."""
    go_online(monitor)
    coordinator.initialize()
    assert coordinator.wait_idle(timeout=5)
    old_listener = remote.listeners[MATCHES][0][0]

    coordinator.reset_and_sync()
    assert coordinator.wait_idle(timeout=5)
    old_listener([{**make_match("ghost").to_document(), "id": "ghost"}], None)

    assert "ghost" not in match_ids(coordinator)


def test_reset_clears_local_state(coordinator, local_store, pending_log, monitor, make_match, make_record):
    """Test that reset drops cached data and pending operations."""
    go_offline(monitor)
    coordinator.initialize()
    coordinator.save_match(make_match("m1"), [make_record("m1", 0)])

    coordinator.reset_and_sync()

    assert coordinator.matches == []
    assert coordinator.pending_operations_count == 0
    assert pending_log.all_operations() == []
    assert local_store.load_matches() == []
    assert local_store.load_all_game_records() == []


def test_shutdown_interrupts_backoff_wait(local_store, pending_log, remote, monitor, make_match):
    """Test that shutdown does not wait out a retry backoff."""
    coordinator = SyncCoordinator(local_store, pending_log, remote, monitor, wait_for_backoff=True)
    remote.fail_writes = TransientError("server down")
    go_offline(monitor)
    coordinator.initialize()
    coordinator.save_match(make_match("m1"), [])
    go_online(monitor)

    started = time.monotonic()
    coordinator.shutdown()

    assert time.monotonic() - started < 1.5
    coordinator.shutdown()


def test_finished_drain_leaves_newer_drain_running(coordinator, monitor):
    """Test that a drain finishing late does not clear the flag of the drain that replaced it."""
    go_offline(monitor)
    coordinator.initialize()
    newer = threading.Thread(target=lambda: None)
    coordinator._drain_thread = newer
    coordinator._draining = True

    # Stands in for the older drain thread reaching its cleanup
    coordinator._drain_loop()

    assert coordinator._draining is True
    assert coordinator._drain_thread is newer
    coordinator._draining = False
