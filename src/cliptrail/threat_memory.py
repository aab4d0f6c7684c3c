import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path

from cliptrail.config import THREATS_DB_PATH
from cliptrail.models import SecurityHash, Threat, ThreatMemoryStats
from cliptrail.security import highest_threat
from cliptrail.utils import text_hash

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS security_hashes (
    hash        TEXT PRIMARY KEY,
    threat_type TEXT NOT NULL,
    confidence  REAL NOT NULL,
    reason      TEXT NOT NULL,
    first_seen  TEXT NOT NULL,
    last_seen   TEXT NOT NULL,
    count       INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_threat_type ON security_hashes(threat_type);
CREATE INDEX IF NOT EXISTS idx_confidence ON security_hashes(confidence);
CREATE INDEX IF NOT EXISTS idx_last_seen ON security_hashes(last_seen);
"""


class ThreatMemoryError(Exception):
    pass


class ThreatMemory:
    """Content hashes whose threats the user has dismissed."""

    def __init__(self, db_path: str | Path | None = None):
        self._db_path = str(db_path) if db_path else str(THREATS_DB_PATH)
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise ThreatMemoryError(f"cannot open threat memory at {self._db_path}: {e}") from e

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise ThreatMemoryError(f"threat memory query failed: {e}") from e

    def _write(self, sql: str, params: tuple = ()) -> int:
        with self._lock:
            try:
                cursor = self._conn.execute(sql, params)
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise ThreatMemoryError(f"threat memory write failed: {e}") from e
            return cursor.rowcount

    def has(self, content_hash: str) -> bool:
        return bool(self._query("SELECT 1 FROM security_hashes WHERE hash = ? LIMIT 1", (content_hash,)))

    def get(self, content_hash: str) -> SecurityHash | None:
        rows = self._query("SELECT * FROM security_hashes WHERE hash = ?", (content_hash,))
        return self._row_to_entry(rows[0]) if rows else None

    def put(self, content_hash: str, threat: Threat) -> None:
        """Record a dismissed threat, or bump an existing record.

        Repeat sightings increment the count, refresh last_seen, keep the
        highest confidence seen and take the latest reason.
        """
        now = datetime.now().isoformat()
        self._write(
            """INSERT INTO security_hashes (hash, threat_type, confidence, reason, first_seen, last_seen, count)
               VALUES (?, ?, ?, ?, ?, ?, 1)
               ON CONFLICT(hash) DO UPDATE SET
                   last_seen = excluded.last_seen,
                   count = count + 1,
                   confidence = MAX(confidence, excluded.confidence),
                   reason = excluded.reason""",
            (content_hash, threat.type, threat.confidence, threat.reason, now, now),
        )

    def remove(self, content_hash: str) -> None:
        self._write("DELETE FROM security_hashes WHERE hash = ?", (content_hash,))

    def list_all(self, threat_type: str | None = None) -> list[SecurityHash]:
        if threat_type:
            rows = self._query(
                "SELECT * FROM security_hashes WHERE threat_type = ? ORDER BY last_seen DESC",
                (threat_type,),
            )
        else:
            rows = self._query("SELECT * FROM security_hashes ORDER BY last_seen DESC")
        return [self._row_to_entry(r) for r in rows]

    def cleanup_older_than(self, age: timedelta) -> int:
        cutoff = (datetime.now() - age).isoformat()
        return self._write("DELETE FROM security_hashes WHERE last_seen < ?", (cutoff,))

    def clear(self) -> int:
        return self._write("DELETE FROM security_hashes")

    def stats(self) -> ThreatMemoryStats:
        total = self._query("SELECT COUNT(*) AS cnt FROM security_hashes")[0]["cnt"]
        rows = self._query(
            "SELECT threat_type, COUNT(*) AS cnt FROM security_hashes GROUP BY threat_type ORDER BY cnt DESC"
        )
        high = self._query("SELECT COUNT(*) AS cnt FROM security_hashes WHERE confidence > 0.8")[0]["cnt"]
        return ThreatMemoryStats(
            total_hashes=total,
            threat_types={r["threat_type"]: r["cnt"] for r in rows},
            high_confidence_count=high,
        )

    def is_known_content(self, content: str) -> SecurityHash | None:
        return self.get(text_hash(content))

    def dismiss(self, content: str, threats: list[Threat]) -> None:
        """Remember content so its threats are no longer reported."""
        threat = highest_threat(threats)
        if threat is not None:
            self.put(text_hash(content), threat)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> SecurityHash:
        return SecurityHash(
            hash=row["hash"],
            threat_type=row["threat_type"],
            confidence=row["confidence"],
            reason=row["reason"],
            first_seen=datetime.fromisoformat(row["first_seen"]),
            last_seen=datetime.fromisoformat(row["last_seen"]),
            occurrence_count=row["count"],
        )


def open_threat_memory(db_path: str | Path | None = None) -> ThreatMemory | None:
    """Open the threat memory, or return None so capture can go on without it."""
    try:
        return ThreatMemory(db_path)
    except ThreatMemoryError:
        logger.warning("Threat memory unavailable, dismissed threats will not be suppressed", exc_info=True)
        return None
