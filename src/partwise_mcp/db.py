"""SQLite persistence for preference patterns and the interaction log.

One database file holds both tables. Interactions are append-only; patterns
are upserted by (user_id, pattern_type, subject) with last-write-wins.
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path

from .models import PreferencePattern, UserInteraction

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS preference_patterns (
    user_id TEXT NOT NULL,
    pattern_type TEXT NOT NULL,
    subject TEXT NOT NULL,
    value REAL NOT NULL,
    confidence REAL NOT NULL,
    sample_size INTEGER NOT NULL,
    last_updated TEXT NOT NULL,
    PRIMARY KEY (user_id, pattern_type, subject)
);
CREATE TABLE IF NOT EXISTS interactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    payload TEXT NOT NULL,
    timestamp TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_interactions_user ON interactions(user_id);
"""


class PreferenceDatabase:
    """SQLite store implementing both PreferenceStore and InteractionStore.

    Thread safety: WAL mode + check_same_thread=False. The _lock serializes
    lazy connection setup and every statement, so the asyncio loop and any
    worker threads can share one instance.
    """

    def __init__(self, db_path: str | Path = ":memory:"):
        self.db_path = str(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def _ensure_db(self) -> sqlite3.Connection:
        """Open the connection and create tables on first use. Thread-safe."""
        if self._conn is not None:
            return self._conn
        with self._lock:
            if self._conn is not None:
                return self._conn
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            if self.db_path != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
            conn.commit()
            self._conn = conn
            logger.info(f"Preference database ready at {self.db_path}")
        return self._conn

    def close(self) -> None:
        """Close database connection. Thread-safe."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    # PreferenceStore

    async def get(self, user_id: str, pattern_type: str, subject: str) -> PreferencePattern | None:
        conn = self._ensure_db()
        with self._lock:
            row = conn.execute(
                "SELECT * FROM preference_patterns WHERE user_id = ? AND pattern_type = ? AND subject = ?",
                (user_id, pattern_type, subject),
            ).fetchone()
        return PreferencePattern.from_dict(dict(row)) if row else None

    async def set(self, pattern: PreferencePattern) -> None:
        conn = self._ensure_db()
        with self._lock:
            conn.execute(
                """
                INSERT INTO preference_patterns
                    (user_id, pattern_type, subject, value, confidence, sample_size, last_updated)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, pattern_type, subject) DO UPDATE SET
                    value = excluded.value,
                    confidence = excluded.confidence,
                    sample_size = excluded.sample_size,
                    last_updated = excluded.last_updated
                """,
                (
                    pattern.user_id,
                    pattern.pattern_type,
                    pattern.subject,
                    pattern.value,
                    pattern.confidence,
                    pattern.sample_size,
                    pattern.last_updated.isoformat(),
                ),
            )
            conn.commit()

    async def list_for_user(self, user_id: str) -> list[PreferencePattern]:
        conn = self._ensure_db()
        with self._lock:
            rows = conn.execute(
                "SELECT * FROM preference_patterns WHERE user_id = ? ORDER BY pattern_type, subject",
                (user_id,),
            ).fetchall()
        return [PreferencePattern.from_dict(dict(r)) for r in rows]


class InteractionLog:
    """InteractionStore view over a PreferenceDatabase.

    Separate class because both ports name their listing method list_for_user.
    """

    def __init__(self, db: PreferenceDatabase):
        self._db = db

    async def append(self, interaction: UserInteraction) -> None:
        conn = self._db._ensure_db()
        with self._db._lock:
            conn.execute(
                "INSERT INTO interactions (user_id, type, payload, timestamp) VALUES (?, ?, ?, ?)",
                (
                    interaction.user_id,
                    interaction.type,
                    json.dumps(interaction.to_dict()),
                    interaction.timestamp.isoformat(),
                ),
            )
            conn.commit()

    async def count(self, user_id: str) -> int:
        conn = self._db._ensure_db()
        with self._db._lock:
            row = conn.execute(
                "SELECT COUNT(*) FROM interactions WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row[0]

    async def list_for_user(self, user_id: str) -> list[UserInteraction]:
        conn = self._db._ensure_db()
        with self._db._lock:
            rows = conn.execute(
                "SELECT payload FROM interactions WHERE user_id = ? ORDER BY id", (user_id,)
            ).fetchall()
        return [UserInteraction.from_dict(json.loads(r["payload"])) for r in rows]
