"""
Derived sync status values for display.

Everything here is a pure function of coordinator state; nothing in this
module reads the network, the cache or the pending log by itself.
"""
import enum
from dataclasses import dataclass
from typing import Optional


class SyncState(str, enum.Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    OFFLINE = "offline"
    ERROR = "error"


@dataclass(frozen=True)
class SyncStatus:
    """Coarse sync status; message is set only for errors."""
    state: SyncState
    message: Optional[str] = None

    @classmethod
    def idle(cls):
        return cls(SyncState.IDLE)

    @classmethod
    def syncing(cls):
        return cls(SyncState.SYNCING)

    @classmethod
    def offline(cls):
        return cls(SyncState.OFFLINE)

    @classmethod
    def error(cls, message: str):
        return cls(SyncState.ERROR, message)

    def to_dict(self) -> dict:
        return {"state": self.state.value, "message": self.message}


class GameRecordsSyncState(str, enum.Enum):
    """Finer-grained 'can I trust what's on screen' signal for game records."""
    LOADING = "loading"
    LOCAL_ONLY = "localOnly"
    SYNCING = "syncing"
    SYNCED = "synced"
    OFFLINE = "offline"
    ERROR = "error"


def project_sync_status(is_online: bool, is_draining: bool, is_backfilling: bool,
                        error: Optional[str]) -> SyncStatus:
    """
    Compute the coarse status.

    Args:
        is_online: Connectivity (unknown counts as offline)
        is_draining: Drain loop is running
        is_backfilling: Full game-record backfill is running
        error: Outstanding error message, if any
    """
    if not is_online:
        return SyncStatus.offline()
    if is_draining or is_backfilling:
        return SyncStatus.syncing()
    if error:
        return SyncStatus.error(error)
    return SyncStatus.idle()


def project_game_records_state(is_online: bool, has_cache: bool, has_completed_full_sync: bool,
                               is_backfilling: bool, backfill_error: Optional[str]) -> GameRecordsSyncState:
    """
    Compute the game-records sync state.

    Once a full sync has completed the cache is trusted, on a cold start
    without any network call and also after a later refresh fails (the
    coarse status reports that error). Before that, errors and missing
    data are surfaced so the UI does not present partial data as complete.
    """
    if is_backfilling:
        return GameRecordsSyncState.SYNCING
    if has_completed_full_sync:
        return GameRecordsSyncState.SYNCED
    if backfill_error:
        return GameRecordsSyncState.ERROR
    if not has_cache:
        return GameRecordsSyncState.LOADING if is_online else GameRecordsSyncState.OFFLINE
    return GameRecordsSyncState.LOCAL_ONLY


def is_game_records_cache_trusted(has_completed_full_sync: bool) -> bool:
    """Cached game records are trusted (possibly stale) once a full sync ever completed."""
    return has_completed_full_sync


def describe_status(status: SyncStatus, pending_count: int, is_online: bool) -> str:
    """Short display label for a status indicator."""
    if status.state == SyncState.IDLE:
        if pending_count > 0:
            return f"{pending_count} pending"
        return "Synced" if is_online else "Offline"
    if status.state == SyncState.SYNCING:
        return "Syncing…"
    if status.state == SyncState.OFFLINE:
        if pending_count > 0:
            return f"Offline ({pending_count} pending)"
        return "Offline mode"
    return f"Sync error: {status.message}"
