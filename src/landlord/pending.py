import json
import logging
import threading
import time
from typing import Optional

from pydantic import ValidationError

from landlord.db import get_db, init_db
from landlord.models import (
    UNCONFIRMED_STATUSES,
    GameRecordsPayload,
    MatchDeletePayload,
    MatchPayload,
    OperationStatus,
    OperationType,
    PendingOperation,
    Player,
    PlayerDeletePayload,
)

# Set up logger for this module
logger = logging.getLogger("landlord.pending")


# ---------- Error Categories ----------

class DeliveryError(Exception):
    """Base class for remote delivery errors."""
    pass


class TransientError(DeliveryError):
    """Temporary error that should be retried (network issues, timeouts, 5xx errors)."""
    pass


class PermanentError(DeliveryError):
    """Permanent error that should not be retried (bad data, 4xx errors)."""
    pass


PAYLOAD_MODELS = {
    OperationType.CREATE_MATCH: MatchPayload,
    OperationType.UPDATE_MATCH: MatchPayload,
    OperationType.DELETE_MATCH: MatchDeletePayload,
    OperationType.CREATE_PLAYER: Player,
    OperationType.UPDATE_PLAYER: Player,
    OperationType.DELETE_PLAYER: PlayerDeletePayload,
    OperationType.CREATE_GAME_RECORDS: GameRecordsPayload,
    OperationType.UPDATE_GAME_RECORDS: GameRecordsPayload,
    OperationType.DELETE_GAME_RECORDS: GameRecordsPayload,
}


def decode_payload(operation: PendingOperation):
    """
    Decode an operation's payload into its model.

    Raises:
        ValidationError: If the payload does not match the operation type
    """
    return PAYLOAD_MODELS[operation.type].model_validate_json(operation.payload)


class PendingOperationLog:
    """
    Durable, ordered log of remote mutations not yet confirmed.

    Holds the operations in memory and mirrors every change to SQLite
    before returning, so an enqueue that returned survives a crash.

    Handles:
    - Insertion-order dequeue honoring dependencies
    - Retry bookkeeping with exponential backoff
    - Permanent failures kept visible for diagnostics

    One lock guards the list and its mirror; enqueue is called from the
    UI side while the drain loop dequeues and marks.
    """

    # Retry configuration
    MAX_RETRIES = 5  # Maximum number of attempts before giving up
    INITIAL_BACKOFF = 1  # Initial backoff in seconds
    BACKOFF_MULTIPLIER = 2  # Exponential backoff multiplier
    MAX_BACKOFF = 60  # Maximum backoff in seconds

    def __init__(self, db_path):
        """
        Initialize the pending operation log.

        Args:
            db_path: Path to SQLite database
        """
        self.db_path = str(db_path)
        self._lock = threading.Lock()

        init_db(self.db_path)
        self._operations = self._load_from_disk()

    # ---------- Persistence ----------

    def _load_from_disk(self) -> list:
        db = get_db(self.db_path)
        try:
            rows = db.execute("SELECT * FROM pending_operations ORDER BY seq ASC").fetchall()

            # An operation left inProgress was interrupted mid-drain; run it again
            interrupted = db.execute(
                "UPDATE pending_operations SET status = ? WHERE status = ?",
                (OperationStatus.PENDING.value, OperationStatus.IN_PROGRESS.value),
            ).rowcount
            db.commit()
        finally:
            db.close()

        if interrupted:
            logger.warning(f"Recovered {interrupted} interrupted operation(s) as pending")

        operations = []
        for row in rows:
            try:
                operation = self._from_row(row)
            except (ValidationError, ValueError) as e:
                logger.warning(f"Skipping unreadable pending operation {row['id']}: {e}")
                continue
            if operation.status == OperationStatus.IN_PROGRESS:
                operation.status = OperationStatus.PENDING
            operations.append(operation)

        if operations:
            logger.info(f"Loaded {len(operations)} pending operation(s)")
        return operations

    @staticmethod
    def _from_row(row) -> PendingOperation:
        depends_on = json.loads(row["depends_on"]) if row["depends_on"] else None
        return PendingOperation(
            id=row["id"],
            type=row["type"],
            created_at=row["created_at"],
            status=row["status"],
            retry_count=row["retry_count"] or 0,
            last_error=row["last_error"],
            last_attempt_at=row["last_attempt_at"],
            payload=row["payload"],
            local_id=row["local_id"],
            depends_on=depends_on,
        )

    def _insert(self, operation: PendingOperation):
        db = get_db(self.db_path)
        try:
            db.execute("""
                INSERT INTO pending_operations
                (id, type, created_at, status, retry_count, last_error, last_attempt_at,
                 payload, local_id, depends_on)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                operation.id,
                operation.type.value,
                operation.created_at,
                operation.status.value,
                operation.retry_count,
                operation.last_error,
                operation.last_attempt_at,
                operation.payload,
                operation.local_id,
                json.dumps(operation.depends_on) if operation.depends_on is not None else None,
            ))
            db.commit()
        finally:
            db.close()

    def _update(self, operation: PendingOperation):
        db = get_db(self.db_path)
        try:
            db.execute("""
                UPDATE pending_operations
                SET status = ?, retry_count = ?, last_error = ?, last_attempt_at = ?
                WHERE id = ?
            """, (
                operation.status.value,
                operation.retry_count,
                operation.last_error,
                operation.last_attempt_at,
                operation.id,
            ))
            db.commit()
        finally:
            db.close()

    def _index_of(self, operation_id: str) -> Optional[int]:
        for index, operation in enumerate(self._operations):
            if operation.id == operation_id:
                return index
        return None

    # ---------- Backoff / eligibility ----------

    @classmethod
    def calculate_backoff(cls, retry_count: int) -> float:
        """
        Calculate exponential backoff delay.

        Args:
            retry_count: Number of previous failed attempts

        Returns:
            Backoff delay in seconds
        """
        backoff = cls.INITIAL_BACKOFF * (cls.BACKOFF_MULTIPLIER ** retry_count)
        return min(backoff, cls.MAX_BACKOFF)

    def _dependencies_met(self, operation: PendingOperation) -> bool:
        if not operation.depends_on:
            return True
        statuses = {op.id: op.status for op in self._operations}
        # Ids no longer in the log were purged after completing
        return all(
            statuses.get(dep, OperationStatus.COMPLETED) == OperationStatus.COMPLETED
            for dep in operation.depends_on
        )

    def _backoff_remaining(self, operation: PendingOperation, now: float) -> float:
        if operation.last_attempt_at is None:
            return 0
        required = self.calculate_backoff(operation.retry_count)
        return max(0.0, required - (now - operation.last_attempt_at))

    def _is_retryable(self, operation: PendingOperation) -> bool:
        return (
            operation.status in (OperationStatus.PENDING, OperationStatus.FAILED)
            and operation.retry_count < self.MAX_RETRIES
        )

    # ---------- Queue Operations ----------

    def enqueue(self, operation: PendingOperation) -> PendingOperation:
        """
        Append an operation and persist it before returning.

        Raises:
            sqlite3.Error: If the operation could not be persisted
        """
        with self._lock:
            self._insert(operation)
            self._operations.append(operation)
        logger.info(f"Enqueued operation: {operation.type.value} (id: {operation.id})")
        return operation.model_copy()

    def dequeue_next(self) -> Optional[PendingOperation]:
        """
        Claim the first eligible operation in insertion order.

        Eligible means pending or failed, under the retry ceiling, past its
        backoff window and with every dependency completed. The claimed
        operation is flipped to inProgress and stamped with the attempt time.

        Returns:
            A copy of the claimed operation, or None if nothing is eligible
        """
        with self._lock:
            now = time.time()
            for index, operation in enumerate(self._operations):
                if not self._is_retryable(operation):
                    continue
                if self._backoff_remaining(operation, now) > 0:
                    continue
                if not self._dependencies_met(operation):
                    continue

                claimed = operation.model_copy(update={
                    "status": OperationStatus.IN_PROGRESS,
                    "last_attempt_at": now,
                })
                self._update(claimed)
                self._operations[index] = claimed

                if claimed.retry_count > 0:
                    logger.debug(
                        f"Operation {claimed.id} ready for retry "
                        f"{claimed.retry_count + 1}/{self.MAX_RETRIES}"
                    )
                return claimed.model_copy()
        return None

    def mark_completed(self, operation_id: str):
        """Mark an operation as confirmed by the remote store."""
        with self._lock:
            index = self._index_of(operation_id)
            if index is None:
                return
            completed = self._operations[index].model_copy(update={
                "status": OperationStatus.COMPLETED,
                "last_error": None,
            })
            self._update(completed)
            self._operations[index] = completed
        logger.info(f"Operation completed: {operation_id}")

    def mark_failed(self, operation_id: str, error: str, permanent: bool = False):
        """
        Record a failed attempt.

        Args:
            operation_id: Operation id
            error: Error text kept for diagnostics
            permanent: Jump straight to the retry ceiling (no further attempts)
        """
        with self._lock:
            index = self._index_of(operation_id)
            if index is None:
                return
            current = self._operations[index]
            new_retry_count = self.MAX_RETRIES if permanent else current.retry_count + 1
            failed = current.model_copy(update={
                "status": OperationStatus.FAILED,
                "retry_count": new_retry_count,
                "last_error": error,
            })
            self._update(failed)
            self._operations[index] = failed

        if new_retry_count >= self.MAX_RETRIES:
            logger.warning(
                f"Operation {operation_id} exceeded max retries ({self.MAX_RETRIES}), "
                f"giving up. Last error: {error}"
            )
        else:
            logger.warning(
                f"Operation {operation_id} failed (attempt {new_retry_count}/{self.MAX_RETRIES}). "
                f"Next retry in {self.calculate_backoff(new_retry_count)}s. Error: {error}"
            )

    def remove_completed(self) -> int:
        """Purge completed operations; returns how many were removed."""
        with self._lock:
            db = get_db(self.db_path)
            try:
                db.execute(
                    "DELETE FROM pending_operations WHERE status = ?",
                    (OperationStatus.COMPLETED.value,),
                )
                db.commit()
            finally:
                db.close()
            before = len(self._operations)
            self._operations = [
                op for op in self._operations if op.status != OperationStatus.COMPLETED
            ]
            removed = before - len(self._operations)

        if removed:
            logger.info(f"Removed {removed} completed operation(s)")
        return removed

    def clear_all(self):
        """Drop every operation, confirmed or not."""
        with self._lock:
            db = get_db(self.db_path)
            try:
                db.execute("DELETE FROM pending_operations")
                db.commit()
            finally:
                db.close()
            self._operations = []
        logger.info("Cleared all operations")

    # ---------- Inspection ----------

    def get(self, operation_id: str) -> Optional[PendingOperation]:
        with self._lock:
            index = self._index_of(operation_id)
            return self._operations[index].model_copy() if index is not None else None

    def all_operations(self) -> list:
        with self._lock:
            return [op.model_copy() for op in self._operations]

    def unconfirmed_operations(self, types=None) -> list:
        """Operations not yet completed, optionally filtered by type."""
        with self._lock:
            return [
                op.model_copy() for op in self._operations
                if op.status in UNCONFIRMED_STATUSES and (types is None or op.type in types)
            ]

    def unconfirmed_ids_for(self, local_id: str) -> list:
        """Ids of not-yet-completed operations targeting an entity."""
        with self._lock:
            return [
                op.id for op in self._operations
                if op.local_id == local_id and op.status in UNCONFIRMED_STATUSES
            ]

    def next_retry_delay(self) -> Optional[float]:
        """
        Seconds until the earliest backoff-blocked operation becomes eligible.

        Returns:
            Delay in seconds, or None if nothing is waiting on backoff
        """
        with self._lock:
            now = time.time()
            delays = [
                self._backoff_remaining(op, now)
                for op in self._operations
                if self._is_retryable(op) and self._dependencies_met(op)
            ]
        delays = [d for d in delays if d > 0]
        return min(delays) if delays else None

    @property
    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for op in self._operations if op.status in UNCONFIRMED_STATUSES)

    @property
    def failed_count(self) -> int:
        with self._lock:
            return sum(
                1 for op in self._operations
                if op.status == OperationStatus.FAILED and op.retry_count >= self.MAX_RETRIES
            )

    @property
    def has_pending_operations(self) -> bool:
        return self.pending_count > 0

    # ---------- Convenience Builders ----------

    def _enqueue_payload(self, op_type, payload, local_id=None, depends_on=None):
        operation = PendingOperation(
            type=op_type,
            payload=payload.model_dump_json(by_alias=True),
            local_id=local_id,
            depends_on=list(depends_on) if depends_on else None,
        )
        return self.enqueue(operation)

    def enqueue_create_match(self, match, game_records, depends_on=None):
        payload = MatchPayload(match=match, game_records=game_records)
        return self._enqueue_payload(OperationType.CREATE_MATCH, payload, match.id, depends_on)

    def enqueue_update_match(self, match, game_records, depends_on=None):
        payload = MatchPayload(match=match, game_records=game_records)
        return self._enqueue_payload(OperationType.UPDATE_MATCH, payload, match.id, depends_on)

    def enqueue_delete_match(self, match_id: str, depends_on=None):
        payload = MatchDeletePayload(match_id=match_id)
        return self._enqueue_payload(OperationType.DELETE_MATCH, payload, match_id, depends_on)

    def enqueue_create_player(self, player, depends_on=None):
        return self._enqueue_payload(OperationType.CREATE_PLAYER, player, player.id, depends_on)

    def enqueue_update_player(self, player, depends_on=None):
        return self._enqueue_payload(OperationType.UPDATE_PLAYER, player, player.id, depends_on)

    def enqueue_delete_player(self, player_id: str, depends_on=None):
        payload = PlayerDeletePayload(player_id=player_id)
        return self._enqueue_payload(OperationType.DELETE_PLAYER, payload, player_id, depends_on)

    def enqueue_create_game_records(self, match_id: str, game_records, depends_on=None):
        payload = GameRecordsPayload(match_id=match_id, game_records=game_records)
        return self._enqueue_payload(OperationType.CREATE_GAME_RECORDS, payload, match_id, depends_on)

    def enqueue_update_game_records(self, match_id: str, game_records, depends_on=None):
        payload = GameRecordsPayload(match_id=match_id, game_records=game_records)
        return self._enqueue_payload(OperationType.UPDATE_GAME_RECORDS, payload, match_id, depends_on)

    def enqueue_delete_game_records(self, match_id: str, depends_on=None):
        payload = GameRecordsPayload(match_id=match_id)
        return self._enqueue_payload(OperationType.DELETE_GAME_RECORDS, payload, match_id, depends_on)
