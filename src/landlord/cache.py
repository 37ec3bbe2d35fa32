"""
File-backed local cache for players, matches and game records.

Each collection is one JSON file under <data_dir>/SyncCache, always rewritten
whole through a temp-file-then-rename so a crash leaves either the old or the
new file on disk. Scalar metadata (schema version, last sync time, full-sync
flag) lives next to it in metadata.json and is written the same way.

The sync coordinator is the only writer; it serializes calls.
"""
import json
import logging
import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

from landlord.models import GameRecord, Match, Player, decode_many

logger = logging.getLogger("landlord.cache")

CURRENT_SCHEMA_VERSION = 1

PLAYERS = "players"
MATCHES = "matches"
GAME_RECORDS = "game_records"

COLLECTION_MODELS = {
    PLAYERS: Player,
    MATCHES: Match,
    GAME_RECORDS: GameRecord,
}


def atomic_write(path, data: bytes):
    """
    Write bytes to path atomically.

    Args:
        path: Destination file
        data: Complete new contents

    Raises:
        OSError: If the write or rename fails (the old file is untouched)
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


class LocalStore:
    """Durable, versioned local cache."""

    CACHE_DIR_NAME = "SyncCache"
    METADATA_FILE = "metadata.json"

    def __init__(self, data_dir, schema_version: int = CURRENT_SCHEMA_VERSION):
        """
        Initialize the local store.

        Args:
            data_dir: Root directory for cache files and metadata
            schema_version: Schema version this build writes
        """
        self.data_dir = Path(data_dir)
        self.cache_dir = self.data_dir / self.CACHE_DIR_NAME
        self.metadata_path = self.data_dir / self.METADATA_FILE
        self.target_schema_version = schema_version
        self._migrations = {}
        self._migration_checked = False

        self._create_cache_directory()
        self._metadata = self._load_metadata()

    # ---------- Directory / metadata ----------

    def _create_cache_directory(self):
        if not self.cache_dir.exists():
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created cache directory at {self.cache_dir}")

    def _load_metadata(self) -> dict:
        if not self.metadata_path.exists():
            return {}
        try:
            data = json.loads(self.metadata_path.read_bytes())
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read metadata, starting fresh: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save_metadata(self):
        atomic_write(self.metadata_path, json.dumps(self._metadata, indent=2).encode())

    @property
    def schema_version(self) -> int:
        return int(self._metadata.get("schemaVersion", 0))

    @property
    def last_sync_timestamp(self) -> Optional[datetime]:
        value = self._metadata.get("lastSyncTimestamp")
        return datetime.fromisoformat(value) if value else None

    @last_sync_timestamp.setter
    def last_sync_timestamp(self, value: Optional[datetime]):
        self._metadata["lastSyncTimestamp"] = value.isoformat() if value else None
        self._save_metadata()

    @property
    def has_completed_full_sync(self) -> bool:
        return bool(self._metadata.get("hasCompletedFullSync", False))

    @has_completed_full_sync.setter
    def has_completed_full_sync(self, value: bool):
        self._metadata["hasCompletedFullSync"] = bool(value)
        self._save_metadata()

    # ---------- Migration ----------

    def register_migration(self, version: int, step):
        """
        Register an idempotent migration step.

        Args:
            version: Schema version the step upgrades to
            step: Callable taking this store
        """
        self._migrations[version] = step

    def migrate_if_needed(self) -> bool:
        """
        Run pending migration steps once per process.

        Returns:
            True if the persisted version was upgraded
        """
        if self._migration_checked:
            return False
        self._migration_checked = True

        saved_version = self.schema_version
        if saved_version >= self.target_schema_version:
            return False

        logger.info(f"Migrating cache from version {saved_version} to {self.target_schema_version}")
        for version in range(saved_version + 1, self.target_schema_version + 1):
            step = self._migrations.get(version)
            if step is not None:
                logger.info(f"Running cache migration step to version {version}")
                step(self)

        self._metadata["schemaVersion"] = self.target_schema_version
        self._save_metadata()
        return True

    # ---------- Generic save/load ----------

    def _collection_path(self, collection: str) -> Path:
        return self.cache_dir / f"cached_{collection}.json"

    def save(self, collection: str, items):
        """
        Overwrite a whole collection atomically.

        Raises:
            OSError: If the file cannot be written
        """
        encoded = [item.to_json() if hasattr(item, "to_json") else item for item in items]
        data = json.dumps(encoded, indent=2).encode()
        atomic_write(self._collection_path(collection), data)
        logger.debug(f"Saved {collection} ({len(encoded)} items, {len(data)} bytes)")

    def load(self, collection: str) -> list:
        """Load a collection; missing or unreadable files load as empty."""
        path = self._collection_path(collection)
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_bytes())
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load cached {collection}: {e}")
            return []
        if not isinstance(raw, list):
            logger.error(f"Cached {collection} is not a list, ignoring")
            return []
        return decode_many(COLLECTION_MODELS[collection], raw)

    # ---------- Players / matches ----------

    def cache_players(self, players):
        self.save(PLAYERS, players)

    def load_players(self) -> list:
        return self.load(PLAYERS)

    def cache_matches(self, matches):
        self.save(MATCHES, matches)

    def load_matches(self) -> list:
        return self.load(MATCHES)

    # ---------- Game records ----------

    @staticmethod
    def _repair_match_id(records, match_id: str) -> list:
        repaired = []
        for record in records:
            if record.match_id != match_id:
                logger.warning(
                    f"Repairing game record {record.id} matchId {record.match_id!r} -> {match_id!r}"
                )
                record = record.model_copy(update={"match_id": match_id})
            repaired.append(record)
        return repaired

    def load_all_game_records(self) -> list:
        return self.load(GAME_RECORDS)

    def load_game_records(self, match_id: str) -> list:
        records = [r for r in self.load_all_game_records() if r.match_id == match_id]
        return sorted(records, key=lambda r: r.game_index)

    def cache_game_records(self, records, match_id: str):
        """Replace the cached records of one match (read-modify-write)."""
        self.replace_game_records({match_id: records})

    def replace_game_records(self, groups: dict):
        """
        Replace the cached records of several matches in one write.

        Args:
            groups: Map of match id -> records for that match
        """
        all_records = [r for r in self.load_all_game_records() if r.match_id not in groups]
        for match_id, records in groups.items():
            all_records.extend(self._repair_match_id(records, match_id))
        self.save(GAME_RECORDS, all_records)

    def delete_game_records(self, match_id: str):
        remaining = [r for r in self.load_all_game_records() if r.match_id != match_id]
        self.save(GAME_RECORDS, remaining)

    # ---------- Cache status ----------

    @property
    def has_cached_data(self) -> bool:
        return self._collection_path(PLAYERS).exists() or self._collection_path(MATCHES).exists()

    @property
    def has_cached_game_records(self) -> bool:
        return bool(self.load_all_game_records())

    def cache_size(self) -> int:
        """Total size of the cache directory in bytes."""
        if not self.cache_dir.exists():
            return 0
        return sum(p.stat().st_size for p in self.cache_dir.rglob("*") if p.is_file())

    def clear_all(self):
        """
        Remove every cached collection and reset sync metadata.

        The schema version is kept.
        """
        if self.cache_dir.exists():
            shutil.rmtree(self.cache_dir)
        self._create_cache_directory()
        self._metadata.pop("lastSyncTimestamp", None)
        self._metadata["hasCompletedFullSync"] = False
        self._save_metadata()
        logger.info("Cleared all cache")
