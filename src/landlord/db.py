"""Database utilities for the pending operation log."""

import logging
import sqlite3

logger = logging.getLogger("landlord.db")


def get_db(db_path: str):
    """Get database connection with Row factory."""
    conn = sqlite3.connect(db_path, timeout=10.0)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str):
    """Initialize database with the pending_operations table.

    Creates the table if it doesn't exist and adds columns that older
    databases are missing.
    """
    logger.info("Initializing pending operation database...")
    db = get_db(db_path)
    try:
        db.execute("""
            CREATE TABLE IF NOT EXISTS pending_operations (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                type TEXT NOT NULL,
                created_at REAL NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                payload TEXT NOT NULL
            )
        """)

        # Columns added after the first release
        cursor = db.execute("PRAGMA table_info(pending_operations)")
        columns = [col[1] for col in cursor.fetchall()]
        added_columns = {
            "retry_count": "INTEGER NOT NULL DEFAULT 0",
            "last_error": "TEXT",
            "last_attempt_at": "REAL",
            "local_id": "TEXT",
            "depends_on": "TEXT",
        }
        for name, definition in added_columns.items():
            if name not in columns:
                logger.info(f"Migrating database: adding {name} column to pending_operations")
                db.execute(f"ALTER TABLE pending_operations ADD COLUMN {name} {definition}")

        count = db.execute("SELECT COUNT(*) FROM pending_operations").fetchone()[0]
        if count == 0:
            logger.info("Pending operation log is empty")
        else:
            logger.info(f"Pending operation log has {count} stored operation(s)")

        db.commit()
    finally:
        db.close()
