"""Concrete repository implementations backed by SQLite."""
from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from .domain import CategoryKey, ContentItem, DeliveryRecord, ItemState, KeyStats, WeaknessRecord
from .errors import TransientStorageError, UnknownItemError
from .models import ContentPayload, PerformanceEvent
from .repositories import ContentPoolRepository, DeliveryLedgerRepository, WeaknessRepository


_TRANSIENT_MARKERS = ("locked", "busy")


def _ts(value: datetime) -> str:
    """Serialise to a fixed-width UTC ISO string so text comparison orders by time."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class _SqliteStore:
    """One serialised SQLite connection with transaction helpers."""

    _SCHEMA = ""

    def __init__(self, db_path: Union[Path, str]) -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=5.0)
        self._conn.row_factory = sqlite3.Row
        self._initialise_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _initialise_schema(self) -> None:
        with self._lock:
            cursor = self._conn.cursor()
            cursor.executescript(self._SCHEMA)
            self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cursor = self._conn.cursor()
            try:
                yield cursor
                self._conn.commit()
            except sqlite3.OperationalError as exc:
                self._conn.rollback()
                if any(marker in str(exc).lower() for marker in _TRANSIENT_MARKERS):
                    raise TransientStorageError(str(exc)) from exc
                raise
            except Exception:
                self._conn.rollback()
                raise


class SqliteContentStore(_SqliteStore, ContentPoolRepository, DeliveryLedgerRepository):
    """Stores pooled items and the delivery ledger in a SQLite database."""

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS content_items (
            id TEXT PRIMARY KEY,
            test_type TEXT NOT NULL,
            section TEXT NOT NULL,
            difficulty TEXT NOT NULL,
            track TEXT NOT NULL,
            topic TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            content_hash TEXT NOT NULL,
            state TEXT NOT NULL DEFAULT 'available'
                CHECK (state IN ('available', 'reserved', 'used')),
            reserved_by TEXT,
            lease_token TEXT,
            reserved_at TEXT,
            lease_expiry TEXT,
            created_at TEXT NOT NULL,
            used_at TEXT,
            CHECK (
                state != 'reserved'
                OR (
                    reserved_by IS NOT NULL
                    AND lease_token IS NOT NULL
                    AND reserved_at IS NOT NULL
                    AND lease_expiry > reserved_at
                )
            ),
            UNIQUE (test_type, section, difficulty, track, content_hash)
        );

        CREATE INDEX IF NOT EXISTS idx_content_items_key_state
            ON content_items (test_type, section, difficulty, track, state);

        CREATE INDEX IF NOT EXISTS idx_content_items_lease
            ON content_items (state, lease_expiry);

        CREATE TABLE IF NOT EXISTS deliveries (
            user_id TEXT NOT NULL,
            content_hash TEXT NOT NULL,
            delivered_at TEXT NOT NULL,
            PRIMARY KEY (user_id, content_hash)
        );

        CREATE INDEX IF NOT EXISTS idx_deliveries_hash
            ON deliveries (content_hash, delivered_at);
    """

    _KEY_CLAUSE = "test_type = ? AND section = ? AND difficulty = ? AND track = ?"
    _CLEAR_LEASE = (
        "state = 'available', reserved_by = NULL, lease_token = NULL, "
        "reserved_at = NULL, lease_expiry = NULL"
    )

    def _row_to_item(self, row: sqlite3.Row) -> ContentItem:
        return ContentItem(
            id=row["id"],
            key=CategoryKey(row["test_type"], row["section"], row["difficulty"], row["track"]),
            payload=ContentPayload.model_validate(json.loads(row["payload_json"])),
            content_hash=row["content_hash"],
            state=ItemState(row["state"]),
            reserved_by=row["reserved_by"],
            lease_token=row["lease_token"],
            reserved_at=_parse_ts(row["reserved_at"]),
            lease_expiry=_parse_ts(row["lease_expiry"]),
            created_at=_parse_ts(row["created_at"]),
            used_at=_parse_ts(row["used_at"]),
        )

    # ContentPoolRepository ----------------------------------------------
    def insert_items(
        self, key: CategoryKey, entries: Iterable[Tuple[ContentPayload, str]], now: datetime
    ) -> int:
        rows = [
            (
                uuid4().hex,
                *key.as_tuple(),
                payload.topic,
                json.dumps(payload.model_dump(), ensure_ascii=False),
                content_hash,
                _ts(now),
            )
            for payload, content_hash in entries
        ]
        if not rows:
            return 0
        inserted = 0
        with self._transaction() as cursor:
            for row in rows:
                cursor.execute(
                    """
                    INSERT OR IGNORE INTO content_items
                        (id, test_type, section, difficulty, track, topic,
                         payload_json, content_hash, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    row,
                )
                inserted += cursor.rowcount
        return inserted

    def get_item(self, item_id: str) -> ContentItem:
        with self._transaction() as cursor:
            row = cursor.execute("SELECT * FROM content_items WHERE id = ?", (item_id,)).fetchone()
        if row is None:
            raise UnknownItemError(f"Content item {item_id} does not exist")
        return self._row_to_item(row)

    def candidate_ids(
        self,
        key: CategoryKey,
        limit: int,
        preferred_topics: Sequence[str] = (),
        exclude_delivered_to: Optional[str] = None,
        delivered_since: Optional[datetime] = None,
    ) -> List[str]:
        params: List[object] = list(key.as_tuple())
        query = f"SELECT id FROM content_items WHERE {self._KEY_CLAUSE} AND state = 'available'"
        if exclude_delivered_to is not None:
            query += (
                " AND content_hash NOT IN ("
                "SELECT content_hash FROM deliveries WHERE user_id = ? AND delivered_at >= ?)"
            )
            since = delivered_since or datetime.min.replace(tzinfo=timezone.utc)
            params.extend([exclude_delivered_to, _ts(since)])
        order = "created_at, id"
        topics = [topic for topic in preferred_topics if topic]
        if topics:
            placeholders = ", ".join("?" for _ in topics)
            order = f"CASE WHEN topic IN ({placeholders}) THEN 0 ELSE 1 END, " + order
            params.extend(topics)
        query += f" ORDER BY {order} LIMIT ?"
        params.append(limit)
        with self._transaction() as cursor:
            rows = cursor.execute(query, params).fetchall()
        return [row["id"] for row in rows]

    def compare_and_reserve(
        self,
        item_id: str,
        owner: str,
        lease_token: str,
        reserved_at: datetime,
        lease_expiry: datetime,
    ) -> bool:
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE content_items
                   SET state = 'reserved', reserved_by = ?, lease_token = ?,
                       reserved_at = ?, lease_expiry = ?
                 WHERE id = ? AND state = 'available'
                """,
                (owner, lease_token, _ts(reserved_at), _ts(lease_expiry), item_id),
            )
            return cursor.rowcount == 1

    def compare_and_finalize(
        self, item_id: str, owner: str, lease_token: str, now: datetime
    ) -> bool:
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE content_items
                   SET state = 'used', used_at = ?
                 WHERE id = ? AND state = 'reserved' AND reserved_by = ? AND lease_token = ?
                """,
                (_ts(now), item_id, owner, lease_token),
            )
            if cursor.rowcount != 1:
                return False
            cursor.execute(
                """
                INSERT OR REPLACE INTO deliveries (user_id, content_hash, delivered_at)
                SELECT ?, content_hash, ? FROM content_items WHERE id = ?
                """,
                (owner, _ts(now), item_id),
            )
            return True

    def compare_and_release(self, item_id: str, owner: str, lease_token: str) -> bool:
        with self._transaction() as cursor:
            cursor.execute(
                f"""
                UPDATE content_items
                   SET {self._CLEAR_LEASE}
                 WHERE id = ? AND state = 'reserved' AND reserved_by = ? AND lease_token = ?
                """,
                (item_id, owner, lease_token),
            )
            return cursor.rowcount == 1

    def reclaim_expired(self, now: datetime) -> int:
        with self._transaction() as cursor:
            cursor.execute(
                f"""
                UPDATE content_items
                   SET {self._CLEAR_LEASE}
                 WHERE state = 'reserved' AND lease_expiry < ?
                """,
                (_ts(now),),
            )
            return cursor.rowcount

    def count_available(self, key: CategoryKey) -> int:
        with self._transaction() as cursor:
            row = cursor.execute(
                f"SELECT COUNT(*) AS n FROM content_items WHERE {self._KEY_CLAUSE} AND state = 'available'",
                key.as_tuple(),
            ).fetchone()
        return int(row["n"])

    def hash_exists(self, key: CategoryKey, content_hash: str) -> bool:
        with self._transaction() as cursor:
            row = cursor.execute(
                f"SELECT 1 FROM content_items WHERE {self._KEY_CLAUSE} AND content_hash = ? LIMIT 1",
                (*key.as_tuple(), content_hash),
            ).fetchone()
        return row is not None

    def stats(self) -> Dict[CategoryKey, KeyStats]:
        with self._transaction() as cursor:
            rows = cursor.execute(
                """
                SELECT test_type, section, difficulty, track, state, COUNT(*) AS n
                  FROM content_items
                 GROUP BY test_type, section, difficulty, track, state
                """
            ).fetchall()
        stats: Dict[CategoryKey, KeyStats] = {}
        for row in rows:
            key = CategoryKey(row["test_type"], row["section"], row["difficulty"], row["track"])
            entry = stats.setdefault(key, KeyStats())
            setattr(entry, row["state"], int(row["n"]))
        return stats

    def purge_used(self, used_before: datetime) -> int:
        with self._transaction() as cursor:
            cursor.execute(
                "DELETE FROM content_items WHERE state = 'used' AND used_at < ?",
                (_ts(used_before),),
            )
            return cursor.rowcount

    # DeliveryLedgerRepository -------------------------------------------
    def was_delivered(self, user_id: str, content_hash: str, since: datetime) -> bool:
        with self._transaction() as cursor:
            row = cursor.execute(
                """
                SELECT 1 FROM deliveries
                 WHERE user_id = ? AND content_hash = ? AND delivered_at >= ?
                """,
                (user_id, content_hash, _ts(since)),
            ).fetchone()
        return row is not None

    def delivered_recently(self, content_hash: str, since: datetime) -> bool:
        with self._transaction() as cursor:
            row = cursor.execute(
                "SELECT 1 FROM deliveries WHERE content_hash = ? AND delivered_at >= ? LIMIT 1",
                (content_hash, _ts(since)),
            ).fetchone()
        return row is not None

    def deliveries_for(self, user_id: str, since: datetime) -> List[DeliveryRecord]:
        with self._transaction() as cursor:
            rows = cursor.execute(
                """
                SELECT user_id, content_hash, delivered_at FROM deliveries
                 WHERE user_id = ? AND delivered_at >= ?
                 ORDER BY delivered_at DESC
                """,
                (user_id, _ts(since)),
            ).fetchall()
        return [
            DeliveryRecord(row["user_id"], row["content_hash"], _parse_ts(row["delivered_at"]))
            for row in rows
        ]

    def purge_deliveries(self, delivered_before: datetime) -> int:
        with self._transaction() as cursor:
            cursor.execute(
                "DELETE FROM deliveries WHERE delivered_at < ?", (_ts(delivered_before),)
            )
            return cursor.rowcount


class SqliteWeaknessStore(_SqliteStore, WeaknessRepository):
    """Stores performance history and weakness counters in a SQLite database."""

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS performance_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            topic TEXT NOT NULL,
            section TEXT NOT NULL,
            test_type TEXT NOT NULL,
            is_correct INTEGER NOT NULL,
            time_spent_seconds REAL NOT NULL DEFAULT 0,
            content_hash TEXT,
            attempted_at TEXT NOT NULL,
            recorded_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_performance_user_time
            ON performance_history (user_id, attempted_at);

        CREATE TABLE IF NOT EXISTS weakness_records (
            user_id TEXT NOT NULL,
            topic TEXT NOT NULL,
            section TEXT NOT NULL,
            test_type TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            correct_attempts INTEGER NOT NULL DEFAULT 0,
            total_time_seconds REAL NOT NULL DEFAULT 0,
            last_updated TEXT NOT NULL,
            PRIMARY KEY (user_id, topic, section, test_type),
            CHECK (correct_attempts <= attempts)
        );
    """

    def _row_to_record(self, row: sqlite3.Row) -> WeaknessRecord:
        return WeaknessRecord(
            user_id=row["user_id"],
            topic=row["topic"],
            section=row["section"],
            test_type=row["test_type"],
            attempts=int(row["attempts"]),
            correct_attempts=int(row["correct_attempts"]),
            total_time_seconds=float(row["total_time_seconds"]),
            last_updated=datetime.fromisoformat(row["last_updated"]),
        )

    # WeaknessRepository -------------------------------------------------
    def record_event(self, event: PerformanceEvent, recorded_at: datetime) -> None:
        attempted_at = _ts(event.timestamp)
        correct = 1 if event.is_correct else 0
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO performance_history
                    (user_id, topic, section, test_type, is_correct, time_spent_seconds,
                     content_hash, attempted_at, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.user_id,
                    event.topic,
                    event.section,
                    event.test_type,
                    correct,
                    event.time_spent_seconds,
                    event.content_hash,
                    attempted_at,
                    _ts(recorded_at),
                ),
            )
            cursor.execute(
                """
                INSERT INTO weakness_records
                    (user_id, topic, section, test_type, attempts, correct_attempts,
                     total_time_seconds, last_updated)
                VALUES (?, ?, ?, ?, 1, ?, ?, ?)
                ON CONFLICT (user_id, topic, section, test_type) DO UPDATE SET
                    attempts = attempts + 1,
                    correct_attempts = correct_attempts + excluded.correct_attempts,
                    total_time_seconds = total_time_seconds + excluded.total_time_seconds,
                    last_updated = MAX(last_updated, excluded.last_updated)
                """,
                (
                    event.user_id,
                    event.topic,
                    event.section,
                    event.test_type,
                    correct,
                    event.time_spent_seconds,
                    attempted_at,
                ),
            )

    def list_records(
        self, user_id: str, test_type: Optional[str] = None, section: Optional[str] = None
    ) -> List[WeaknessRecord]:
        query = "SELECT * FROM weakness_records WHERE user_id = ?"
        params: List[object] = [user_id]
        if test_type is not None:
            query += " AND test_type = ?"
            params.append(test_type)
        if section is not None:
            query += " AND section = ?"
            params.append(section)
        with self._transaction() as cursor:
            rows = cursor.execute(query, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_record(
        self, user_id: str, topic: str, section: str, test_type: str
    ) -> Optional[WeaknessRecord]:
        with self._transaction() as cursor:
            row = cursor.execute(
                """
                SELECT * FROM weakness_records
                 WHERE user_id = ? AND topic = ? AND section = ? AND test_type = ?
                """,
                (user_id, topic, section, test_type),
            ).fetchone()
        if not row:
            return None
        return self._row_to_record(row)

    def recent_outcomes(self, user_id: str, limit: int) -> List[bool]:
        with self._transaction() as cursor:
            rows = cursor.execute(
                """
                SELECT is_correct FROM performance_history
                 WHERE user_id = ?
                 ORDER BY attempted_at DESC, id DESC
                 LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [bool(row["is_correct"]) for row in rows]

    def recent_topic_outcomes(
        self, user_id: str, topic: str, section: str, test_type: str, limit: int
    ) -> List[bool]:
        with self._transaction() as cursor:
            rows = cursor.execute(
                """
                SELECT is_correct FROM performance_history
                 WHERE user_id = ? AND topic = ? AND section = ? AND test_type = ?
                 ORDER BY attempted_at DESC, id DESC
                 LIMIT ?
                """,
                (user_id, topic, section, test_type, limit),
            ).fetchall()
        return [bool(row["is_correct"]) for row in rows]


__all__ = ["SqliteContentStore", "SqliteWeaknessStore"]
