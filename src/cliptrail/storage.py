import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from cliptrail.config import DB_PATH, MAX_ENTRIES, MAX_PINNED_ENTRIES
from cliptrail.models import ClipboardItem, ClipboardItemMeta, ContentType, RescanStats, Threat, ThreatLevel
from cliptrail.security import calculate_threat_level, classify
from cliptrail.utils import compute_hash, normalize_text, text_hash, truncate_text

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS clipboard_items (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    content       TEXT NOT NULL,
    content_type  TEXT NOT NULL CHECK(content_type IN ('text', 'image')),
    content_hash  TEXT NOT NULL,
    image_data    BLOB,
    created_at    TEXT NOT NULL,
    last_seen_at  TEXT NOT NULL,
    threat_level  TEXT NOT NULL DEFAULT 'none',
    safe_entry    INTEGER NOT NULL DEFAULT 1,
    is_pinned     INTEGER NOT NULL DEFAULT 0,
    pin_order     INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_last_seen_at ON clipboard_items(last_seen_at DESC);
CREATE INDEX IF NOT EXISTS idx_content_hash ON clipboard_items(content_hash, content_type);
CREATE INDEX IF NOT EXISTS idx_pinned ON clipboard_items(is_pinned, pin_order);
"""

META_COLUMNS = "id, content, content_type, created_at, last_seen_at, threat_level, safe_entry, is_pinned, pin_order"
DISPLAY_ORDER = "ORDER BY is_pinned DESC, pin_order ASC, last_seen_at DESC, id DESC"


class StorageError(Exception):
    pass


class ItemNotFoundError(StorageError):
    pass


class PinLimitError(StorageError):
    pass


def assess_threat(content: str, content_type: ContentType, classifier: Callable[[str], list[Threat]] = classify) -> tuple[ThreatLevel, bool]:
    """Threat level and initial safe flag for content about to be stored."""
    if content_type == ContentType.IMAGE:
        return ThreatLevel.NONE, True
    level = calculate_threat_level(classifier(content))
    return level, level.is_safe


class StorageManager:
    def __init__(
        self,
        db_path: str | Path | None = None,
        max_entries: int = MAX_ENTRIES,
        classifier: Callable[[str], list[Threat]] = classify,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._db_path = str(db_path) if db_path else str(DB_PATH)
        self._max_entries = max_entries
        self._classifier = classifier
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error as e:
            raise StorageError(f"cannot open clipboard history at {self._db_path}: {e}") from e
        self.init_db()

    def init_db(self) -> None:
        with self._write() as conn:
            conn.executescript(SCHEMA)

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Serialize a write: one critical section, committed or rolled back as a whole."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StorageError(str(e)) from e
            except Exception:
                self._conn.rollback()
                raise

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    # -- capture ---------------------------------------------------------

    def add_text(self, content: str) -> int | None:
        """Store captured text, or refresh the existing row holding the same text.

        Returns:
            The id of the new or refreshed row, None when content is empty
            or whitespace only.
        """
        if not normalize_text(content):
            return None
        return self._add(content, ContentType.TEXT, None, text_hash(content))

    def add_image(self, image_data: bytes | None, description: str) -> int | None:
        if not image_data:
            return None
        return self._add(description, ContentType.IMAGE, bytes(image_data), compute_hash(image_data))

    def _add(self, content: str, content_type: ContentType, image_data: bytes | None, content_hash: str) -> int:
        now = datetime.now()
        with self._write() as conn:
            existing_id = self._find_duplicate(conn, content, content_type, image_data, content_hash)
            if existing_id is not None:
                conn.execute(
                    "UPDATE clipboard_items SET last_seen_at = ? WHERE id = ?",
                    (now.isoformat(), existing_id),
                )
                logger.debug("Refreshed existing %s item %d", content_type.value, existing_id)
                return existing_id

            threat_level, safe_entry = assess_threat(content, content_type, self._classifier)
            item_id = self._insert_item(conn, content, content_type, image_data, content_hash, now, threat_level, safe_entry)
            evicted = self._enforce_retention(conn)
            if evicted:
                logger.debug("Retention evicted %d items", evicted)
            return item_id

    @staticmethod
    def _find_duplicate(
        conn: sqlite3.Connection,
        content: str,
        content_type: ContentType,
        image_data: bytes | None,
        content_hash: str,
        exclude_id: int | None = None,
    ) -> int | None:
        rows = conn.execute(
            "SELECT id, content, image_data FROM clipboard_items WHERE content_hash = ? AND content_type = ?",
            (content_hash, content_type.value),
        ).fetchall()
        for row in rows:
            if row["id"] == exclude_id:
                continue
            if content_type == ContentType.IMAGE:
                if row["image_data"] is not None and bytes(row["image_data"]) == image_data:
                    return row["id"]
            elif normalize_text(row["content"]) == normalize_text(content):
                return row["id"]
        return None

    @staticmethod
    def _insert_item(
        conn: sqlite3.Connection,
        content: str,
        content_type: ContentType,
        image_data: bytes | None,
        content_hash: str,
        now: datetime,
        threat_level: ThreatLevel,
        safe_entry: bool,
    ) -> int:
        cursor = conn.execute(
            """INSERT INTO clipboard_items
               (content, content_type, content_hash, image_data, created_at, last_seen_at, threat_level, safe_entry, is_pinned, pin_order)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 0)""",
            (
                content,
                content_type.value,
                content_hash,
                image_data,
                now.isoformat(),
                now.isoformat(),
                threat_level.value,
                int(safe_entry),
            ),
        )
        return cursor.lastrowid

    def _enforce_retention(self, conn: sqlite3.Connection) -> int:
        # Pinned rows only go once nothing unpinned is left to evict.
        pinned = conn.execute("SELECT COUNT(*) AS cnt FROM clipboard_items WHERE is_pinned = 1").fetchone()["cnt"]
        keep_unpinned = max(self._max_entries - pinned, 0)
        cursor = conn.execute(
            """DELETE FROM clipboard_items WHERE id IN (
                   SELECT id FROM clipboard_items WHERE is_pinned = 0
                   ORDER BY last_seen_at DESC, id DESC
                   LIMIT -1 OFFSET ?)""",
            (keep_unpinned,),
        )
        evicted = cursor.rowcount

        excess = pinned - self._max_entries
        if excess > 0:
            cursor = conn.execute(
                """DELETE FROM clipboard_items WHERE id IN (
                       SELECT id FROM clipboard_items WHERE is_pinned = 1
                       ORDER BY last_seen_at ASC, id ASC
                       LIMIT ?)""",
                (excess,),
            )
            evicted += cursor.rowcount
            self._compact_pin_order(conn)
        return evicted

    # -- queries ---------------------------------------------------------

    def get_all(self) -> list[ClipboardItem]:
        rows = self._query(f"SELECT {META_COLUMNS}, image_data FROM clipboard_items {DISPLAY_ORDER}")
        return [self._row_to_item(r) for r in rows]

    def get_all_meta(self) -> list[ClipboardItemMeta]:
        rows = self._query(f"SELECT {META_COLUMNS} FROM clipboard_items {DISPLAY_ORDER}")
        return [self._row_to_meta(r) for r in rows]

    def get_page(self, offset: int, limit: int) -> list[ClipboardItemMeta]:
        rows = self._query(
            f"SELECT {META_COLUMNS} FROM clipboard_items {DISPLAY_ORDER} LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [self._row_to_meta(r) for r in rows]

    def get_by_id(self, item_id: int) -> ClipboardItem | None:
        rows = self._query(f"SELECT {META_COLUMNS}, image_data FROM clipboard_items WHERE id = ?", (item_id,))
        return self._row_to_item(rows[0]) if rows else None

    def get_image_data(self, item_id: int) -> bytes | None:
        rows = self._query("SELECT image_data FROM clipboard_items WHERE id = ?", (item_id,))
        if not rows or rows[0]["image_data"] is None:
            return None
        return bytes(rows[0]["image_data"])

    def get_pinned(self) -> list[ClipboardItemMeta]:
        rows = self._query(f"SELECT {META_COLUMNS} FROM clipboard_items WHERE is_pinned = 1 ORDER BY pin_order ASC")
        return [self._row_to_meta(r) for r in rows]

    def count(self) -> int:
        return self._query("SELECT COUNT(*) AS cnt FROM clipboard_items")[0]["cnt"]

    def count_pinned(self) -> int:
        return self._query("SELECT COUNT(*) AS cnt FROM clipboard_items WHERE is_pinned = 1")[0]["cnt"]

    # -- edits -----------------------------------------------------------

    def update(self, item_id: int, new_content: str) -> int:
        """Replace an item's content and reclassify it. The content type is kept.

        Editing text into content another row already holds merges the two:
        the edited row is deleted, the other row is refreshed and inherits
        the edited row's pin if it had none.

        Returns:
            The id of the row now holding the content.
        """
        with self._write() as conn:
            row = conn.execute(
                "SELECT content_type, is_pinned, pin_order FROM clipboard_items WHERE id = ?", (item_id,)
            ).fetchone()
            if row is None:
                raise ItemNotFoundError(f"no clipboard item with id {item_id}")
            content_type = ContentType(row["content_type"])

            if content_type == ContentType.TEXT:
                existing_id = self._find_duplicate(
                    conn, new_content, content_type, None, text_hash(new_content), exclude_id=item_id
                )
                if existing_id is not None:
                    self._merge_into(conn, item_id, existing_id, row)
                    logger.debug("Edit of item %d merged into existing item %d", item_id, existing_id)
                    return existing_id

            threat_level, safe_entry = assess_threat(new_content, content_type, self._classifier)
            if content_type == ContentType.TEXT:
                conn.execute(
                    "UPDATE clipboard_items SET content = ?, content_hash = ?, threat_level = ?, safe_entry = ? WHERE id = ?",
                    (new_content, text_hash(new_content), threat_level.value, int(safe_entry), item_id),
                )
            else:
                # the image payload, and with it the dedup key, never changes
                conn.execute(
                    "UPDATE clipboard_items SET content = ?, threat_level = ?, safe_entry = ? WHERE id = ?",
                    (new_content, threat_level.value, int(safe_entry), item_id),
                )
            return item_id

    def _merge_into(self, conn: sqlite3.Connection, item_id: int, survivor_id: int, edited: sqlite3.Row) -> None:
        survivor = conn.execute("SELECT is_pinned FROM clipboard_items WHERE id = ?", (survivor_id,)).fetchone()
        conn.execute("DELETE FROM clipboard_items WHERE id = ?", (item_id,))
        conn.execute(
            "UPDATE clipboard_items SET last_seen_at = ? WHERE id = ?",
            (datetime.now().isoformat(), survivor_id),
        )
        if edited["is_pinned"] and not survivor["is_pinned"]:
            conn.execute(
                "UPDATE clipboard_items SET is_pinned = 1, pin_order = ? WHERE id = ?",
                (edited["pin_order"], survivor_id),
            )
        elif edited["is_pinned"]:
            self._compact_pin_order(conn)

    def update_safe_flag(self, item_id: int, safe_entry: bool) -> None:
        with self._write() as conn:
            conn.execute("UPDATE clipboard_items SET safe_entry = ? WHERE id = ?", (int(safe_entry), item_id))

    def delete(self, item_id: int) -> None:
        with self._write() as conn:
            row = conn.execute("SELECT is_pinned FROM clipboard_items WHERE id = ?", (item_id,)).fetchone()
            conn.execute("DELETE FROM clipboard_items WHERE id = ?", (item_id,))
            if row is not None and row["is_pinned"]:
                self._compact_pin_order(conn)

    # -- pinning ---------------------------------------------------------

    def pin(self, item_id: int) -> None:
        with self._write() as conn:
            row = conn.execute("SELECT is_pinned FROM clipboard_items WHERE id = ?", (item_id,)).fetchone()
            if row is None:
                raise ItemNotFoundError(f"no clipboard item with id {item_id}")
            if row["is_pinned"]:
                return

            stats = conn.execute(
                "SELECT COUNT(*) AS cnt, COALESCE(MAX(pin_order), 0) AS max_order FROM clipboard_items WHERE is_pinned = 1"
            ).fetchone()
            if stats["cnt"] >= MAX_PINNED_ENTRIES:
                raise PinLimitError(f"maximum of {MAX_PINNED_ENTRIES} items can be pinned")
            conn.execute(
                "UPDATE clipboard_items SET is_pinned = 1, pin_order = ? WHERE id = ?",
                (stats["max_order"] + 1, item_id),
            )

    def unpin(self, item_id: int) -> None:
        with self._write() as conn:
            row = conn.execute("SELECT is_pinned, pin_order FROM clipboard_items WHERE id = ?", (item_id,)).fetchone()
            if row is None:
                raise ItemNotFoundError(f"no clipboard item with id {item_id}")
            if not row["is_pinned"]:
                return
            conn.execute("UPDATE clipboard_items SET is_pinned = 0, pin_order = 0 WHERE id = ?", (item_id,))
            conn.execute(
                "UPDATE clipboard_items SET pin_order = pin_order - 1 WHERE is_pinned = 1 AND pin_order > ?",
                (row["pin_order"],),
            )

    @staticmethod
    def _compact_pin_order(conn: sqlite3.Connection) -> None:
        rows = conn.execute("SELECT id FROM clipboard_items WHERE is_pinned = 1 ORDER BY pin_order ASC, id ASC").fetchall()
        for order, row in enumerate(rows, start=1):
            conn.execute("UPDATE clipboard_items SET pin_order = ? WHERE id = ?", (order, row["id"]))

    # -- maintenance -----------------------------------------------------

    def deduplicate_existing(self) -> int:
        """Remove rows whose content already appears earlier in display order.

        Pinned rows come first in that order, so a pinned copy always
        survives over an unpinned one; otherwise the most recent copy wins.
        """
        with self._write() as conn:
            rows = conn.execute(f"SELECT id, content, content_type, content_hash, is_pinned FROM clipboard_items {DISPLAY_ORDER}").fetchall()
            seen: set[tuple[str, str]] = set()
            to_delete = []
            pinned_removed = False
            for row in rows:
                if row["content_type"] == ContentType.TEXT.value:
                    key = (row["content_type"], normalize_text(row["content"]))
                else:
                    key = (row["content_type"], row["content_hash"])
                if key in seen:
                    to_delete.append(row["id"])
                    pinned_removed = pinned_removed or bool(row["is_pinned"])
                else:
                    seen.add(key)

            conn.executemany("DELETE FROM clipboard_items WHERE id = ?", [(i,) for i in to_delete])
            if pinned_removed:
                self._compact_pin_order(conn)
        if to_delete:
            logger.info("Deduplication removed %d items", len(to_delete))
        return len(to_delete)

    def prune_database(self, prune_empty: bool, prune_single_char: bool) -> int:
        """Delete text rows that are empty (whitespace only) or one character long."""
        if not prune_empty and not prune_single_char:
            return 0

        with self._write() as conn:
            rows = conn.execute("SELECT id, content, is_pinned FROM clipboard_items WHERE content_type = 'text'").fetchall()
            to_delete = [
                row for row in rows
                if (prune_empty and not normalize_text(row["content"]))
                or (prune_single_char and len(row["content"]) == 1)
            ]
            conn.executemany("DELETE FROM clipboard_items WHERE id = ?", [(row["id"],) for row in to_delete])
            if any(row["is_pinned"] for row in to_delete):
                self._compact_pin_order(conn)
        return len(to_delete)

    def rescan_security_threats(self) -> RescanStats:
        """Reclassify every text item with the current classifier.

        Returns:
            Before/after threat level distribution and how many items moved
            up, moved down, or kept their level.
        """
        stats = RescanStats()
        with self._write() as conn:
            rows = conn.execute("SELECT id, content, content_type, threat_level FROM clipboard_items").fetchall()
            stats.total_items = len(rows)
            for row in rows:
                if row["content_type"] != ContentType.TEXT.value:
                    continue
                stats.items_scanned += 1

                old_level = ThreatLevel(row["threat_level"])
                new_level, new_safe = assess_threat(row["content"], ContentType.TEXT, self._classifier)
                stats.before[old_level] += 1
                stats.after[new_level] += 1
                if old_level != ThreatLevel.NONE:
                    stats.threats_before += 1
                if new_level != ThreatLevel.NONE:
                    stats.threats_after += 1

                if new_level == old_level:
                    stats.unchanged += 1
                    continue
                if new_level.severity > old_level.severity:
                    stats.upgraded += 1
                else:
                    stats.downgraded += 1
                logger.debug(
                    "Rescan moved item %d from %s to %s: %s",
                    row["id"], old_level.value, new_level.value, truncate_text(row["content"]),
                )
                conn.execute(
                    "UPDATE clipboard_items SET threat_level = ?, safe_entry = ? WHERE id = ?",
                    (new_level.value, int(new_safe), row["id"]),
                )
        return stats

    # -- lifecycle -------------------------------------------------------

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @staticmethod
    def _row_to_meta(row: sqlite3.Row) -> ClipboardItemMeta:
        return ClipboardItemMeta(
            id=row["id"],
            content=row["content"],
            content_type=ContentType(row["content_type"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            last_seen_at=datetime.fromisoformat(row["last_seen_at"]),
            threat_level=ThreatLevel(row["threat_level"]),
            safe_entry=bool(row["safe_entry"]),
            is_pinned=bool(row["is_pinned"]),
            pin_order=row["pin_order"],
        )

    def _row_to_item(self, row: sqlite3.Row) -> ClipboardItem:
        image_data = bytes(row["image_data"]) if row["image_data"] is not None else None
        return ClipboardItem.from_meta(self._row_to_meta(row), image_data)
