"""Tests for ChunkTracker: SQLite-based chunk processing state."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from mbox_ingestor.core.exceptions import StateStoreError
from mbox_ingestor.core.models import ChunkMetadata, DateRange
from mbox_ingestor.storage.tracker import ChunkTracker

ARCHIVE = "/data/archive.mbox"


def _chunk(
    chunk_id: str,
    *,
    size: int = 1024,
    start: datetime | None = None,
    end: datetime | None = None,
    count: int = 10,
) -> ChunkMetadata:
    return ChunkMetadata(
        chunk_id=chunk_id,
        path=Path(f"/data/chunks/{chunk_id}.mbox"),
        size_bytes=size,
        message_count=count,
        date_range=DateRange(start=start, end=end or start),
        content_hash=f"hash-{chunk_id}",
    )


def _day(day: int) -> datetime:
    return datetime(2024, 1, day, tzinfo=UTC)


@pytest.fixture
def tracker(tmp_db_path: Path):
    with ChunkTracker(tmp_db_path) as t:
        yield t


class TestConnect:
    """ChunkTracker.connect() initialises the database schema."""

    def test_creates_tables(self, tracker: ChunkTracker) -> None:
        rows = tracker.conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        names = {row["name"] for row in rows}
        assert {"chunks", "processing_log"} <= names

    def test_creates_indexes(self, tracker: ChunkTracker) -> None:
        rows = tracker.conn.execute(
            "SELECT name FROM sqlite_master WHERE type='index' AND name LIKE 'idx_%'"
        ).fetchall()
        names = {row["name"] for row in rows}
        assert {"idx_chunks_status", "idx_chunks_archive", "idx_processing_log_chunk"} <= names

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        nested = tmp_path / "a" / "b" / "index.db"
        with ChunkTracker(nested):
            pass
        assert nested.exists()

    def test_unopenable_path_raises(self, tmp_path: Path) -> None:
        tracker = ChunkTracker(tmp_path)
        with pytest.raises(StateStoreError):
            tracker.connect()

    def test_conn_before_connect_raises(self, tmp_db_path: Path) -> None:
        with pytest.raises(RuntimeError):
            _ = ChunkTracker(tmp_db_path).conn


class TestRegistration:
    """register_chunks upserts chunks as 'pending'."""

    def test_registers_pending(self, tracker: ChunkTracker) -> None:
        count = tracker.register_chunks([_chunk("c1", start=_day(1)), _chunk("c2")], ARCHIVE)
        assert count == 2

        record = tracker.get("c1")
        assert record is not None
        assert record.status == "pending"
        assert record.archive_path == ARCHIVE
        assert record.path == "/data/chunks/c1.mbox"
        assert record.resume_offset == 0
        assert record.content_hash == "hash-c1"
        assert record.date_range.start == _day(1)
        assert record.processed_at is None

    def test_null_dates_round_trip(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        record = tracker.get("c1")
        assert record.date_range.start is None
        assert record.date_range.end is None

    def test_registration_is_logged(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        assert [e.status for e in tracker.get_log("c1")] == ["pending"]

    def test_reregistration_resets_run_fields(self, tracker: ChunkTracker) -> None:
        tracker.register_chunks([_chunk("c1"), _chunk("c2")], ARCHIVE)
        tracker.claim("c1")
        tracker.record_progress("c1", 500)
        tracker.fail("c1", "boom")
        seq_before = tracker.get("c1").registered_seq

        tracker.register_chunk(_chunk("c1", size=4096), ARCHIVE)

        record = tracker.get("c1")
        assert record.status == "pending"
        assert record.resume_offset == 0
        assert record.error_message == ""
        assert record.size_bytes == 4096
        assert record.registered_seq == seq_before
        assert tracker.get_stats()["total"] == 2

    def test_registration_order(self, tracker: ChunkTracker) -> None:
        tracker.register_chunks([_chunk("b"), _chunk("a"), _chunk("c")], ARCHIVE)
        assert [r.chunk_id for r in tracker.get_by_archive(ARCHIVE)] == ["b", "a", "c"]

    def test_get_by_archive_filters(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("a"), ARCHIVE)
        tracker.register_chunk(_chunk("z"), "/other.mbox")
        assert [r.chunk_id for r in tracker.get_by_archive(ARCHIVE)] == ["a"]

    def test_get_unknown(self, tracker: ChunkTracker) -> None:
        assert tracker.get("nope") is None


class TestTransitions:
    """The status state machine accepts only legal transitions."""

    def test_full_lifecycle(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        assert tracker.claim("c1") is True
        assert tracker.record_progress("c1", 100) is True
        assert tracker.complete("c1") is True

        record = tracker.get("c1")
        assert record.status == "completed"
        assert record.resume_offset == 100
        assert record.processed_at is not None

    def test_claim_twice_fails(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        assert tracker.claim("c1") is True
        assert tracker.claim("c1") is False

    def test_claim_with_offset(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        tracker.claim("c1", offset=250)
        assert tracker.get_resume_point("c1") == 250

    def test_unknown_chunk_transitions_return_false(self, tracker: ChunkTracker) -> None:
        assert tracker.claim("ghost") is False
        assert tracker.record_progress("ghost", 1) is False
        assert tracker.complete("ghost") is False
        assert tracker.fail("ghost", "x") is False
        assert tracker.reset("ghost") is False
        assert tracker.get_log("ghost") == []

    def test_progress_requires_processing(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        assert tracker.record_progress("c1", 10) is False
        assert tracker.complete("c1") is False
        assert tracker.fail("c1", "x") is False

    def test_complete_is_terminal_until_reset(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        tracker.claim("c1")
        tracker.complete("c1")
        assert tracker.claim("c1") is False
        assert tracker.fail("c1", "late") is False
        assert tracker.get("c1").status == "completed"

    def test_fail_keeps_offset_and_error(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        tracker.claim("c1")
        tracker.record_progress("c1", 300)
        assert tracker.fail("c1", "disk gone") is True

        record = tracker.get("c1")
        assert record.status == "failed"
        assert record.error_message == "disk gone"
        assert record.resume_offset == 300

    def test_reset_clears_fields(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        tracker.claim("c1")
        tracker.record_progress("c1", 300)
        tracker.fail("c1", "boom")

        assert tracker.reset("c1") is True
        record = tracker.get("c1")
        assert record.status == "pending"
        assert record.resume_offset == 0
        assert record.error_message == ""
        assert record.processed_at is None

    def test_reset_rejects_pending_and_processing(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        assert tracker.reset("c1") is False
        tracker.claim("c1")
        assert tracker.reset("c1") is False

    def test_reset_failed(self, tracker: ChunkTracker) -> None:
        tracker.register_chunks([_chunk("a"), _chunk("b"), _chunk("c")], ARCHIVE)
        for chunk_id in ("a", "b"):
            tracker.claim(chunk_id)
            tracker.fail(chunk_id, "boom")
        tracker.claim("c")
        tracker.complete("c")

        assert tracker.reset_failed() == 2
        assert tracker.get_stats()["pending"] == 2
        assert tracker.get("c").status == "completed"


class TestReclaimAndRelease:
    """Taking over abandoned chunks and handing unfinished ones back."""

    def test_reclaim_stale_chunk(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        tracker.claim("c1")
        tracker.record_progress("c1", 120)

        assert tracker.reclaim("c1", stale_before=datetime.now(UTC)) is True

        record = tracker.get("c1")
        assert record.status == "processing"
        assert record.resume_offset == 120
        last = tracker.get_log("c1")[-1]
        assert last.status == "processing"
        assert last.offset == 120
        assert last.error == "reclaimed from stale holder"

    def test_reclaim_refuses_live_holder(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        tracker.claim("c1")
        an_hour_ago = datetime.now(UTC) - timedelta(hours=1)
        assert tracker.reclaim("c1", stale_before=an_hour_ago) is False
        assert len(tracker.get_log("c1")) == 2

    def test_reclaim_only_processing(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        assert tracker.reclaim("c1", stale_before=datetime.now(UTC)) is False
        assert tracker.reclaim("ghost", stale_before=datetime.now(UTC)) is False

    def test_checkpoint_updates_heartbeat(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        tracker.claim("c1")
        claimed_at = tracker.get("c1").updated_at
        tracker.record_progress("c1", 10)
        assert tracker.get("c1").updated_at >= claimed_at

    def test_release_keeps_offset_for_next_claim(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        tracker.claim("c1")
        assert tracker.release("c1", 300) is True

        record = tracker.get("c1")
        assert record.status == "pending"
        assert record.resume_offset == 300

        claimed = tracker.claim_next()
        assert claimed.chunk_id == "c1"
        assert claimed.resume_offset == 300

    def test_release_requires_processing(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        assert tracker.release("c1", 10) is False
        assert tracker.release("ghost", 10) is False


class TestWorkSelection:
    """claim_next picks pending chunks by date or size, ties by registration."""

    def test_date_order_nulls_last(self, tracker: ChunkTracker) -> None:
        tracker.register_chunks(
            [_chunk("undated"), _chunk("late", start=_day(20)), _chunk("early", start=_day(2))],
            ARCHIVE,
        )
        order = [tracker.claim_next("date").chunk_id for _ in range(3)]
        assert order == ["early", "late", "undated"]

    def test_size_order(self, tracker: ChunkTracker) -> None:
        tracker.register_chunks(
            [_chunk("c1", size=1024), _chunk("c2", size=2048), _chunk("c3", size=512)], ARCHIVE
        )
        record = tracker.claim_next("size")
        assert record.chunk_id == "c3"
        assert record.status == "processing"

    def test_ties_by_registration_order(self, tracker: ChunkTracker) -> None:
        tracker.register_chunks([_chunk("b", size=1), _chunk("a", size=1)], ARCHIVE)
        assert tracker.claim_next("size").chunk_id == "b"
        assert tracker.claim_next("size").chunk_id == "a"

    def test_none_when_nothing_pending(self, tracker: ChunkTracker) -> None:
        assert tracker.claim_next() is None
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        tracker.claim_next()
        assert tracker.claim_next() is None

    def test_get_next_chunk_does_not_claim(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        assert tracker.get_next_chunk().chunk_id == "c1"
        assert tracker.get("c1").status == "pending"

    def test_invalid_order_by(self, tracker: ChunkTracker) -> None:
        with pytest.raises(ValueError):
            tracker.get_next_chunk("random")  # type: ignore[arg-type]

    def test_concurrent_claims_are_unique(self, tracker: ChunkTracker) -> None:
        tracker.register_chunks([_chunk(f"c{i:02d}") for i in range(20)], ARCHIVE)
        claimed: list[str] = []
        lock = threading.Lock()

        def worker() -> None:
            while (record := tracker.claim_next()) is not None:
                with lock:
                    claimed.append(record.chunk_id)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(claimed) == [f"c{i:02d}" for i in range(20)]
        assert tracker.get_stats()["processing"] == 20


class TestQueries:
    """Log, resume point, statistics and administrative operations."""

    def test_log_in_transition_order(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        tracker.claim("c1")
        tracker.record_progress("c1", 40)
        tracker.fail("c1", "boom")
        tracker.reset("c1")

        log = tracker.get_log("c1")
        assert [e.status for e in log] == ["pending", "processing", "processing", "failed", "pending"]
        assert log[2].offset == 40
        assert log[3].error == "boom"
        assert all(e.timestamp.tzinfo is not None for e in log)

    def test_resume_point(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        assert tracker.get_resume_point("c1") == 0
        tracker.claim("c1")
        tracker.record_progress("c1", 128)
        tracker.record_progress("c1", 256)
        assert tracker.get_resume_point("c1") == 256
        assert tracker.get_resume_point("ghost") == 0

    def test_interrupted_chunks(self, tracker: ChunkTracker) -> None:
        tracker.register_chunks([_chunk("a"), _chunk("b")], ARCHIVE)
        tracker.claim("b")
        assert [r.chunk_id for r in tracker.interrupted_chunks()] == ["b"]

    def test_get_stats(self, tracker: ChunkTracker) -> None:
        tracker.register_chunks([_chunk("a"), _chunk("b"), _chunk("c")], ARCHIVE)
        tracker.claim("a")
        tracker.complete("a")
        tracker.claim("b")
        assert tracker.get_stats() == {
            "pending": 1,
            "processing": 1,
            "completed": 1,
            "failed": 0,
            "total": 3,
        }

    def test_get_by_status_rejects_unknown(self, tracker: ChunkTracker) -> None:
        with pytest.raises(ValueError):
            tracker.get_by_status("archived")

    def test_update_labels(self, tracker: ChunkTracker) -> None:
        tracker.register_chunk(_chunk("c1"), ARCHIVE)
        assert tracker.update_labels("c1", ["Work", "Inbox", "Work"]) is True
        assert tracker.get("c1").labels == ("Inbox", "Work")
        assert tracker.update_labels("ghost", ["x"]) is False

    def test_clear_all(self, tracker: ChunkTracker) -> None:
        tracker.register_chunks([_chunk("a"), _chunk("b")], ARCHIVE)
        tracker.clear_all()
        assert tracker.get_stats()["total"] == 0
        assert tracker.get_log("a") == []

    def test_state_survives_reconnect(self, tmp_db_path: Path) -> None:
        with ChunkTracker(tmp_db_path) as tracker:
            tracker.register_chunk(_chunk("c1"), ARCHIVE)
            tracker.claim("c1")
            tracker.record_progress("c1", 77)

        with ChunkTracker(tmp_db_path) as tracker:
            record = tracker.get("c1")
            assert record.status == "processing"
            assert record.resume_offset == 77
            assert len(tracker.get_log("c1")) == 3
