"""Pipeline orchestrator: split → register → process chunks → build threads."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, datetime, timedelta
from pathlib import Path

from mbox_ingestor.config.settings import MboxIngestorSettings
from mbox_ingestor.core.exceptions import (
    ChunkTimeoutError,
    ProcessingCancelledError,
    StateStoreError,
)
from mbox_ingestor.core.models import (
    ArchiveManifest,
    ChunkRecord,
    ChunkSummary,
    IngestProgress,
    ParsedMessage,
    ProcessingLogEntry,
    Thread,
)
from mbox_ingestor.core.parser import MboxMessageParser
from mbox_ingestor.core.reader import MessageStreamReader
from mbox_ingestor.core.splitter import MboxSplitter, file_sha256
from mbox_ingestor.core.threads import ThreadBuilder
from mbox_ingestor.storage.tracker import ChunkTracker, OrderBy

logger = logging.getLogger(__name__)

MessageFilter = Callable[[ParsedMessage], ParsedMessage | None]


class ArchiveIngestor:
    """Orchestrates chunked mbox ingestion.

    Stage 1 - Split:   Split the archive into chunk files → register them as 'pending'
    Stage 2 - Process: Workers claim chunks → stream messages → checkpoint offsets →
                       mark 'completed' or 'failed'
    Stage 3 - Thread:  Group every accepted message into conversation threads

    ``message_filter`` is the hook for downstream label filtering and text
    extraction: it may return a transformed message, or None to skip it.
    """

    def __init__(
        self,
        settings: MboxIngestorSettings | None = None,
        on_progress: Callable[[IngestProgress], None] | None = None,
        message_filter: MessageFilter | None = None,
        tracker: ChunkTracker | None = None,
    ) -> None:
        self._settings = settings or MboxIngestorSettings()
        self._on_progress = on_progress
        self._message_filter = message_filter
        self._progress = IngestProgress()
        self._progress_lock = threading.Lock()

        self._parser = MboxMessageParser()
        self._splitter = MboxSplitter(
            self._settings.chunk_output_dir,
            chunk_size_bytes=self._settings.chunk_size_bytes,
            buffer_size=self._settings.buffer_size_bytes,
            lock_timeout=self._settings.lock_timeout_seconds,
            lock_retry_interval=self._settings.lock_retry_seconds,
            stale_lock_seconds=self._settings.stale_lock_seconds,
        )
        self._threads = ThreadBuilder(
            subject_match_window_days=self._settings.subject_match_window_days,
            use_transport_thread_id=self._settings.use_transport_thread_id,
        )
        self._stop = threading.Event()
        # Initialized lazily unless injected
        self._tracker = tracker

    @property
    def progress(self) -> IngestProgress:
        return self._progress

    @property
    def thread_builder(self) -> ThreadBuilder:
        return self._threads

    def _ensure_initialized(self) -> ChunkTracker:
        """Open the chunk index if not already done."""
        if self._tracker is None:
            self._settings.ensure_directories()
            self._tracker = ChunkTracker(self._settings.database_path)
            self._tracker.connect()
        return self._tracker

    def stop(self) -> None:
        """Ask running workers to stop after their current message.

        Unfinished chunks go back to 'pending' with their offset kept.
        """
        self._stop.set()

    def run(
        self,
        archive_path: Path,
        *,
        max_workers: int | None = None,
        order_by: OrderBy | None = None,
    ) -> list[Thread]:
        """Run the full pipeline for one archive.

        An archive whose previous split is unchanged and still registered is
        not split again, so checkpoints from an earlier run survive.

        Returns:
            Threads built from every message accepted in this session.
        """
        self._progress = IngestProgress(current_stage="split")
        self._notify()

        try:
            if self._registered_manifest(archive_path) is None:
                self.run_split(archive_path)
            self.process_pending(max_workers=max_workers, order_by=order_by)
            threads = self.build_threads()
            self._set_stage("complete")
        except Exception as e:
            self._set_stage(f"error: {e}")
            raise

        return threads

    def _registered_manifest(self, archive_path: Path) -> ArchiveManifest | None:
        """The previous split of an archive, if its bytes and chunk registrations still match."""
        tracker = self._ensure_initialized()
        try:
            manifest = self._splitter.load_manifest(archive_path.stem)
            if manifest is None or manifest.original_size != archive_path.stat().st_size:
                return None
            if manifest.original_hash != file_sha256(archive_path, self._settings.buffer_size_bytes):
                return None
        except (OSError, ValueError, KeyError) as e:
            logger.warning("Ignoring previous split of %s: %s", archive_path, e)
            return None

        registered = {record.chunk_id for record in tracker.get_by_archive(archive_path)}
        if registered != {chunk.chunk_id for chunk in manifest.chunks}:
            return None
        if not all(chunk.path.exists() for chunk in manifest.chunks):
            return None

        logger.info(
            "Archive %s unchanged since %s, keeping %d registered chunks",
            archive_path,
            manifest.split_timestamp.isoformat(),
            len(manifest.chunks),
        )
        return manifest

    def run_split(self, archive_path: Path, chunk_size_bytes: int | None = None) -> ArchiveManifest:
        """Stage 1: Split an archive and register its chunks as pending."""
        tracker = self._ensure_initialized()
        self._set_stage("split")

        manifest = self._splitter.split(archive_path, chunk_size_bytes)
        tracker.register_chunks(manifest.chunks, archive_path)

        with self._progress_lock:
            self._progress.chunks_total += len(manifest.chunks)
        self._notify()
        return manifest

    def validate(self, archive_path: Path) -> bool:
        """Check that the registered chunks of an archive reproduce it byte for byte."""
        tracker = self._ensure_initialized()
        chunk_paths = [Path(record.path) for record in tracker.get_by_archive(archive_path)]
        return self._splitter.validate_split(archive_path, chunk_paths)

    def process_pending(
        self,
        *,
        max_workers: int | None = None,
        order_by: OrderBy | None = None,
    ) -> list[ChunkSummary]:
        """Stage 2: Process pending chunks with a pool of workers.

        Chunk failures are recorded and never stop the other workers. An
        interrupt, or a call to stop(), makes every worker hand its chunk back
        and stop claiming new ones.

        Returns:
            One summary per chunk finished, in completion order.
        """
        tracker = self._ensure_initialized()
        self._set_stage("process")
        self._stop.clear()
        workers = max_workers or self._settings.max_parallel_workers
        ordering = order_by or self._settings.order_by

        summaries: list[ChunkSummary] = []
        if self._settings.resume_on_failure:
            summaries.extend(self._recover(tracker))

        with self._progress_lock:
            self._progress.chunks_total = max(
                self._progress.chunks_total, tracker.get_stats()["total"]
            )

        executor = ThreadPoolExecutor(max_workers=workers)
        try:
            futures = [executor.submit(self._worker_loop, ordering) for _ in range(workers)]
            for future in as_completed(futures):
                summaries.extend(future.result())
        except BaseException:
            self._stop.set()
            logger.warning("Processing interrupted, stopping workers")
            raise
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        logger.info(
            "Processing %s: %d chunks handled (%d failed)",
            "stopped" if self._stop.is_set() else "finished",
            len(summaries),
            sum(1 for s in summaries if s.status == "failed"),
        )
        return summaries

    def _recover(self, tracker: ChunkTracker) -> list[ChunkSummary]:
        """Take over chunks abandoned by a previous session and requeue failed ones.

        A 'processing' chunk is only taken over once it has gone quiet for
        ``stale_chunk_seconds``; a chunk another live session still works on
        is left alone.
        """
        stale_before = datetime.now(UTC) - timedelta(seconds=self._settings.stale_chunk_seconds)
        summaries = []
        for record in tracker.interrupted_chunks():
            if self._stop.is_set():
                break
            if not tracker.reclaim(record.chunk_id, stale_before):
                logger.info("Chunk %s is still held by another worker, skipping", record.chunk_id)
                continue
            resume_at = tracker.get_resume_point(record.chunk_id)
            logger.info("Resuming interrupted chunk %s at offset %d", record.chunk_id, resume_at)
            try:
                summaries.append(self.process_chunk(record, resume_offset=resume_at))
            except ProcessingCancelledError:
                break

        reset = tracker.reset_failed()
        if reset:
            logger.info("Requeued %d failed chunks", reset)
        return summaries

    def _worker_loop(self, order_by: OrderBy) -> list[ChunkSummary]:
        tracker = self._ensure_initialized()
        summaries = []
        while not self._stop.is_set():
            record = tracker.claim_next(order_by)
            if record is None:
                break
            try:
                summaries.append(self.process_chunk(record, resume_offset=record.resume_offset))
            except ProcessingCancelledError:
                break
        return summaries

    def process_chunk(self, record: ChunkRecord, resume_offset: int = 0) -> ChunkSummary:
        """Stream one claimed chunk into the thread builder.

        The chunk must already be 'processing'. Any failure while reading marks
        the chunk 'failed' with its last checkpoint kept; state store errors
        propagate. When processing is stopped or interrupted, the chunk is
        released back to 'pending' at the end of the last message handled.

        Raises:
            ProcessingCancelledError: If stop() was called.
        """
        tracker = self._ensure_initialized()
        deadline = (
            time.monotonic() + self._settings.io_timeout_seconds
            if self._settings.io_timeout_seconds
            else None
        )
        processed = skipped = 0
        handled_up_to = resume_offset
        reader: MessageStreamReader | None = None

        try:
            self._check_stopped(record)
            reader = MessageStreamReader(
                Path(record.path),
                resume_offset,
                skip_malformed=self._settings.skip_malformed,
                buffer_size=self._settings.buffer_size_bytes,
                parser=self._parser,
            )
            for message in reader:
                accepted = self._message_filter(message) if self._message_filter else message
                if accepted is None:
                    skipped += 1
                else:
                    self._threads.add(accepted)
                    processed += 1
                handled_up_to = reader.position

                if (processed + skipped) % self._settings.progress_interval == 0:
                    tracker.record_progress(record.chunk_id, reader.position)
                if deadline is not None and time.monotonic() > deadline:
                    raise ChunkTimeoutError(
                        f"Chunk {record.chunk_id} exceeded {self._settings.io_timeout_seconds}s"
                    )
                self._check_stopped(record)
        except StateStoreError:
            raise
        except ProcessingCancelledError:
            tracker.release(record.chunk_id, handled_up_to)
            raise
        except Exception as e:
            if reader is not None:
                tracker.record_progress(record.chunk_id, reader.position)
            tracker.fail(record.chunk_id, str(e))
            summary = ChunkSummary(
                chunk_id=record.chunk_id,
                status="failed",
                messages_processed=processed,
                messages_skipped=skipped,
                messages_errored=reader.errors if reader else 0,
                start_offset=resume_offset,
                end_offset=reader.position if reader else resume_offset,
                error=str(e),
            )
            self._record(summary)
            return summary
        except BaseException:
            tracker.release(record.chunk_id, handled_up_to)
            raise

        tracker.record_progress(record.chunk_id, reader.position)
        tracker.complete(record.chunk_id)
        summary = ChunkSummary(
            chunk_id=record.chunk_id,
            status="completed",
            messages_processed=processed,
            messages_skipped=skipped,
            messages_errored=reader.errors,
            start_offset=resume_offset,
            end_offset=reader.position,
        )
        logger.info(
            "Chunk %s: %d processed, %d skipped, %d errored",
            record.chunk_id,
            processed,
            skipped,
            reader.errors,
        )
        self._record(summary)
        return summary

    def _check_stopped(self, record: ChunkRecord) -> None:
        if self._stop.is_set():
            raise ProcessingCancelledError(f"Processing of {record.chunk_id} was stopped")

    def build_threads(self) -> list[Thread]:
        """Stage 3: Group all accepted messages into threads."""
        self._set_stage("thread")
        return self._threads.build_threads()

    def get_status(self) -> dict[str, int]:
        """Get current chunk counts by status."""
        return self._ensure_initialized().get_stats()

    def retry_failed(self) -> int:
        """Reset failed chunks to pending for retry."""
        return self._ensure_initialized().reset_failed()

    def reset_chunk(self, chunk_id: str) -> bool:
        """Reset one completed or failed chunk to pending."""
        return self._ensure_initialized().reset(chunk_id)

    def get_log(self, chunk_id: str) -> list[ProcessingLogEntry]:
        return self._ensure_initialized().get_log(chunk_id)

    def clear_all(self) -> None:
        """Wipe all chunk state. Administrative use only."""
        self._ensure_initialized().clear_all()

    def close(self) -> None:
        """Clean up resources."""
        if self._tracker:
            self._tracker.close()

    def _record(self, summary: ChunkSummary) -> None:
        with self._progress_lock:
            self._progress.summaries.append(summary)
            if summary.status == "completed":
                self._progress.chunks_completed += 1
            else:
                self._progress.chunks_failed += 1
            self._progress.messages_processed += summary.messages_processed
            self._progress.messages_skipped += summary.messages_skipped
            self._progress.messages_errored += summary.messages_errored
        self._notify()

    def _set_stage(self, stage: str) -> None:
        self._progress.current_stage = stage
        self._notify()

    def _notify(self) -> None:
        """Send progress update to callback if registered."""
        if self._on_progress:
            self._on_progress(self._progress)
