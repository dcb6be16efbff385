"""SQLite-based state tracking for chunk processing."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

from mbox_ingestor.core.exceptions import StateStoreError
from mbox_ingestor.core.models import (
    CHUNK_STATUSES,
    ChunkMetadata,
    ChunkRecord,
    DateRange,
    ProcessingLogEntry,
)

logger = logging.getLogger(__name__)

OrderBy = Literal["date", "size"]

_ORDER_CLAUSES: dict[str, str] = {
    "date": "date_start IS NULL, date_start ASC, registered_seq ASC",
    "size": "size_bytes ASC, registered_seq ASC",
}


def _now() -> str:
    # Fixed-width timestamps compare correctly as text
    return datetime.now(UTC).isoformat(timespec="microseconds")


def _to_utc_iso(value: datetime | None) -> str | None:
    return value.astimezone(UTC).isoformat(timespec="microseconds") if value else None


class ChunkTracker:
    """Tracks chunk lifecycle in SQLite so processing survives restarts.

    Status state machine:
        pending → processing          claim()
        processing → processing       record_progress()
        processing → processing       reclaim()  (stale holder only)
        processing → pending          release()
        processing → completed        complete()
        processing → failed           fail()
        completed | failed → pending  reset()

    Every transition is a single conditional UPDATE plus an audit row in
    ``processing_log``, committed together. A transition from the wrong state,
    or on an unknown chunk, returns False.

    Tables:
    - chunks: per-chunk metadata, status and resume offset
    - processing_log: append-only transition history
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                str(self._db_path), check_same_thread=False, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
            self._create_tables()
        except (OSError, sqlite3.Error) as e:
            raise StateStoreError(f"Failed to open chunk index {self._db_path}: {e}") from e
        logger.info("Chunk index opened: %s", self._db_path)

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> ChunkTracker:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def _create_tables(self) -> None:
        """Create tables if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS chunks (
                chunk_id TEXT PRIMARY KEY,
                archive_path TEXT NOT NULL,
                path TEXT NOT NULL,
                size_bytes INTEGER NOT NULL DEFAULT 0,
                message_count INTEGER NOT NULL DEFAULT 0,
                date_start TEXT,
                date_end TEXT,
                hash TEXT NOT NULL DEFAULT '',
                labels TEXT NOT NULL DEFAULT '[]',
                status TEXT NOT NULL DEFAULT 'pending',
                resume_offset INTEGER NOT NULL DEFAULT 0,
                error_message TEXT NOT NULL DEFAULT '',
                registered_seq INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                processed_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_chunks_status ON chunks(status);
            CREATE INDEX IF NOT EXISTS idx_chunks_archive ON chunks(archive_path);

            CREATE TABLE IF NOT EXISTS processing_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chunk_id TEXT NOT NULL,
                status TEXT NOT NULL,
                message_offset INTEGER,
                error TEXT,
                timestamp TEXT NOT NULL,
                FOREIGN KEY (chunk_id) REFERENCES chunks(chunk_id)
            );

            CREATE INDEX IF NOT EXISTS idx_processing_log_chunk ON processing_log(chunk_id);
        """)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize a write across threads (lock) and processes (BEGIN IMMEDIATE)."""
        with self._lock:
            conn = self.conn
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                raise StateStoreError(f"Chunk index write failed: {e}") from e

    def _query(self, sql: str, params: tuple[object, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StateStoreError(f"Chunk index read failed: {e}") from e

    @staticmethod
    def _append_log(
        conn: sqlite3.Connection,
        chunk_id: str,
        status: str,
        offset: int | None = None,
        error: str | None = None,
    ) -> None:
        conn.execute(
            """INSERT INTO processing_log (chunk_id, status, message_offset, error, timestamp)
               VALUES (?, ?, ?, ?, ?)""",
            (chunk_id, status, offset, error, _now()),
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_chunk(self, metadata: ChunkMetadata, archive_path: str | Path) -> None:
        """Upsert one chunk as 'pending'."""
        self.register_chunks([metadata], archive_path)

    def register_chunks(self, chunks: Iterable[ChunkMetadata], archive_path: str | Path) -> int:
        """Upsert chunks as 'pending' in one transaction.

        Re-registering an existing chunk resets its per-run fields (status,
        resume offset, error, processed_at) but keeps its registration order
        and creation time.

        Returns:
            Number of chunks registered.
        """
        count = 0
        with self._transaction() as conn:
            for chunk in chunks:
                now = _now()
                conn.execute(
                    """INSERT INTO chunks (
                           chunk_id, archive_path, path, size_bytes, message_count,
                           date_start, date_end, hash, labels, status,
                           resume_offset, error_message, registered_seq, created_at, updated_at
                       ) VALUES (
                           ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', 0, '',
                           (SELECT COALESCE(MAX(registered_seq), 0) + 1 FROM chunks), ?, ?
                       )
                       ON CONFLICT(chunk_id) DO UPDATE SET
                           archive_path = excluded.archive_path,
                           path = excluded.path,
                           size_bytes = excluded.size_bytes,
                           message_count = excluded.message_count,
                           date_start = excluded.date_start,
                           date_end = excluded.date_end,
                           hash = excluded.hash,
                           labels = excluded.labels,
                           status = 'pending',
                           resume_offset = 0,
                           error_message = '',
                           updated_at = excluded.updated_at,
                           processed_at = NULL""",
                    (
                        chunk.chunk_id,
                        str(archive_path),
                        str(chunk.path),
                        chunk.size_bytes,
                        chunk.message_count,
                        _to_utc_iso(chunk.date_range.start),
                        _to_utc_iso(chunk.date_range.end),
                        chunk.content_hash,
                        json.dumps(list(chunk.labels)),
                        now,
                        now,
                    ),
                )
                self._append_log(conn, chunk.chunk_id, "pending", 0)
                count += 1

        logger.info("Registered %d chunks for %s", count, archive_path)
        return count

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(
        self,
        chunk_id: str,
        from_statuses: tuple[str, ...],
        to_status: str,
        *,
        sets: str = "",
        params: tuple[object, ...] = (),
        offset: int | None = None,
        error: str | None = None,
        where: str = "",
        where_params: tuple[object, ...] = (),
    ) -> bool:
        placeholders = ", ".join("?" for _ in from_statuses)
        assignments = "status = ?, updated_at = ?" + (f", {sets}" if sets else "")
        condition = f"chunk_id = ? AND status IN ({placeholders})" + (f" AND {where}" if where else "")
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE chunks SET {assignments} WHERE {condition}",
                (to_status, _now(), *params, chunk_id, *from_statuses, *where_params),
            )
            if cursor.rowcount != 1:
                return False
            self._append_log(conn, chunk_id, to_status, offset, error)
        return True

    def claim(self, chunk_id: str, offset: int | None = None) -> bool:
        """Atomically move a chunk from 'pending' to 'processing'.

        ``offset`` overrides the stored resume offset; None keeps it, so a
        released chunk picks up where it stopped.

        Returns False if the chunk is unknown or another worker already claimed it.
        """
        claimed = self._transition(
            chunk_id,
            ("pending",),
            "processing",
            sets="resume_offset = COALESCE(?, resume_offset)",
            params=(offset,),
            offset=offset,
        )
        if claimed:
            logger.debug("Claimed chunk %s", chunk_id)
        return claimed

    def record_progress(self, chunk_id: str, offset: int) -> bool:
        """Checkpoint the resume offset of a chunk being processed."""
        return self._transition(
            chunk_id,
            ("processing",),
            "processing",
            sets="resume_offset = ?",
            params=(offset,),
            offset=offset,
        )

    def reclaim(self, chunk_id: str, stale_before: datetime) -> bool:
        """Take over a 'processing' chunk whose holder went quiet.

        Succeeds only if the chunk's last claim or checkpoint is at or before
        ``stale_before``, so a live worker that keeps checkpointing is never
        displaced. Exactly one of several concurrent callers wins.
        """
        record = self.get(chunk_id)
        if record is None:
            return False
        reclaimed = self._transition(
            chunk_id,
            ("processing",),
            "processing",
            offset=record.resume_offset,
            error="reclaimed from stale holder",
            where="updated_at <= ?",
            where_params=(_to_utc_iso(stale_before),),
        )
        if reclaimed:
            logger.warning(
                "Reclaimed stale chunk %s at offset %d", chunk_id, record.resume_offset
            )
        return reclaimed

    def release(self, chunk_id: str, offset: int) -> bool:
        """Hand an unfinished 'processing' chunk back to 'pending', keeping its offset."""
        released = self._transition(
            chunk_id,
            ("processing",),
            "pending",
            sets="resume_offset = ?",
            params=(offset,),
            offset=offset,
        )
        if released:
            logger.info("Chunk %s released at offset %d", chunk_id, offset)
        return released

    def complete(self, chunk_id: str) -> bool:
        """Mark a processing chunk as completed."""
        done = self._transition(
            chunk_id,
            ("processing",),
            "completed",
            sets="processed_at = ?",
            params=(_now(),),
        )
        if done:
            logger.info("Chunk %s completed", chunk_id)
        return done

    def fail(self, chunk_id: str, error: str) -> bool:
        """Mark a processing chunk as failed. The resume offset is kept."""
        failed = self._transition(
            chunk_id,
            ("processing",),
            "failed",
            sets="error_message = ?",
            params=(error,),
            error=error,
        )
        if failed:
            logger.error("Chunk %s failed: %s", chunk_id, error)
        return failed

    def reset(self, chunk_id: str) -> bool:
        """Return a completed or failed chunk to 'pending' for retry."""
        was_reset = self._transition(
            chunk_id,
            ("completed", "failed"),
            "pending",
            sets="processed_at = NULL, resume_offset = 0, error_message = ''",
            offset=0,
        )
        if was_reset:
            logger.info("Chunk %s reset to pending", chunk_id)
        return was_reset

    def reset_failed(self) -> int:
        """Reset every 'failed' chunk to 'pending'. Returns the number reset."""
        return sum(1 for record in self.get_by_status("failed") if self.reset(record.chunk_id))

    def update_labels(self, chunk_id: str, labels: Iterable[str]) -> bool:
        """Replace the label set of a chunk. Returns False for an unknown chunk."""
        unique = sorted(set(labels))
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE chunks SET labels = ? WHERE chunk_id = ?",
                (json.dumps(unique), chunk_id),
            )
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Work selection
    # ------------------------------------------------------------------

    def get_next_chunk(self, order_by: OrderBy = "date") -> ChunkRecord | None:
        """Peek at the pending chunk claim_next() would pick, without claiming it."""
        if order_by not in _ORDER_CLAUSES:
            raise ValueError(f"Invalid order_by: {order_by}")
        rows = self._query(
            f"SELECT * FROM chunks WHERE status = 'pending' "
            f"ORDER BY {_ORDER_CLAUSES[order_by]} LIMIT 1"
        )
        return self._row_to_record(rows[0]) if rows else None

    def claim_next(self, order_by: OrderBy = "date") -> ChunkRecord | None:
        """Select and claim the next pending chunk.

        Compare-and-set loop: if another worker claims the candidate first,
        select again. Returns None when nothing is pending.
        """
        while True:
            candidate = self.get_next_chunk(order_by)
            if candidate is None:
                return None
            if self.claim(candidate.chunk_id):
                return self.get(candidate.chunk_id)
            logger.debug("Lost claim race for %s, retrying", candidate.chunk_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, chunk_id: str) -> ChunkRecord | None:
        """Get a chunk record by ID."""
        rows = self._query("SELECT * FROM chunks WHERE chunk_id = ?", (chunk_id,))
        return self._row_to_record(rows[0]) if rows else None

    def get_by_archive(self, archive_path: str | Path) -> list[ChunkRecord]:
        """All chunks of one archive, in registration order."""
        rows = self._query(
            "SELECT * FROM chunks WHERE archive_path = ? ORDER BY registered_seq",
            (str(archive_path),),
        )
        return [self._row_to_record(row) for row in rows]

    def get_by_status(self, status: str) -> list[ChunkRecord]:
        if status not in CHUNK_STATUSES:
            raise ValueError(f"Invalid status: {status}")
        rows = self._query(
            "SELECT * FROM chunks WHERE status = ? ORDER BY registered_seq", (status,)
        )
        return [self._row_to_record(row) for row in rows]

    def interrupted_chunks(self) -> list[ChunkRecord]:
        """Chunks left in 'processing', e.g. by a session that crashed mid-stream."""
        return self.get_by_status("processing")

    def get_log(self, chunk_id: str) -> list[ProcessingLogEntry]:
        """All transitions of a chunk, oldest first."""
        rows = self._query(
            "SELECT * FROM processing_log WHERE chunk_id = ? ORDER BY id", (chunk_id,)
        )
        return [
            ProcessingLogEntry(
                chunk_id=row["chunk_id"],
                status=row["status"],
                offset=row["message_offset"],
                error=row["error"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
            )
            for row in rows
        ]

    def get_resume_point(self, chunk_id: str) -> int:
        """Last recorded offset of a chunk, or 0 if none."""
        rows = self._query("SELECT resume_offset FROM chunks WHERE chunk_id = ?", (chunk_id,))
        return rows[0]["resume_offset"] if rows else 0

    def get_stats(self) -> dict[str, int]:
        """Chunk counts by status, plus 'total'."""
        rows = self._query("SELECT status, COUNT(*) AS cnt FROM chunks GROUP BY status")
        stats = dict.fromkeys(CHUNK_STATUSES, 0)
        for row in rows:
            stats[row["status"]] = row["cnt"]
        stats["total"] = sum(stats.values())
        return stats

    def clear_all(self) -> None:
        """Delete every chunk and log entry. Administrative full reset only."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM processing_log")
            conn.execute("DELETE FROM chunks")
        logger.warning("All chunks cleared from index %s", self._db_path)

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ChunkRecord:
        return ChunkRecord(
            chunk_id=row["chunk_id"],
            archive_path=row["archive_path"],
            path=row["path"],
            size_bytes=row["size_bytes"],
            message_count=row["message_count"],
            date_range=DateRange(
                start=datetime.fromisoformat(row["date_start"]) if row["date_start"] else None,
                end=datetime.fromisoformat(row["date_end"]) if row["date_end"] else None,
            ),
            content_hash=row["hash"],
            labels=tuple(json.loads(row["labels"])),
            status=row["status"],
            resume_offset=row["resume_offset"],
            error_message=row["error_message"],
            created_at=datetime.fromisoformat(row["created_at"]),
            processed_at=datetime.fromisoformat(row["processed_at"]) if row["processed_at"] else None,
            registered_seq=row["registered_seq"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
