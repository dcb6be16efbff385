"""Split large mbox archives into size-bounded chunks on message boundaries."""

from __future__ import annotations

import hashlib
import json
import logging
import os
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import BinaryIO

from mbox_ingestor.core.exceptions import LockTimeoutError, SplitError
from mbox_ingestor.core.models import ArchiveManifest, ChunkMetadata, DateRange
from mbox_ingestor.storage.locks import cleanup_stale_locks, file_lock

logger = logging.getLogger(__name__)

MBOX_DELIMITER = b"From "
DEFAULT_BUFFER_SIZE = 64 * 1024


def file_sha256(path: Path, buffer_size: int = DEFAULT_BUFFER_SIZE) -> str:
    """Stream a file through SHA-256 and return the hex digest."""
    digest = hashlib.sha256()
    with path.open("rb") as f:
        while block := f.read(buffer_size):
            digest.update(block)
    return digest.hexdigest()


def parse_header_date(value: str) -> datetime | None:
    """Parse an RFC 2822 date into an aware UTC datetime, or None if unparseable."""
    try:
        parsed = parsedate_to_datetime(value.strip())
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        # Dates near datetime.max overflow when shifted to UTC
        return parsed.astimezone(UTC)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None


def _message_date(lines: list[bytes]) -> datetime | None:
    """Find the Date: header in a message's header section."""
    in_headers = False
    for line in lines:
        if not in_headers:
            in_headers = line.startswith(MBOX_DELIMITER)
            continue
        if not line.strip():
            break
        if line[:5].lower() == b"date:":
            parsed = parse_header_date(line[5:].decode("utf-8", errors="replace"))
            if parsed is None:
                logger.debug("Ignoring unparseable Date header: %r", line[:80])
            return parsed
    return None


class _ChunkWriter:
    """Accumulates whole messages into one chunk file."""

    def __init__(self, chunk_id: str, path: Path) -> None:
        self.chunk_id = chunk_id
        self.path = path
        self.size = 0
        self.message_count = 0
        self.date_range = DateRange()
        self._handle: BinaryIO = path.open("wb")

    def add(self, lines: list[bytes], size: int, is_message: bool) -> None:
        self._handle.writelines(lines)
        self.size += size
        if is_message:
            self.message_count += 1
            msg_date = _message_date(lines)
            if msg_date is not None:
                self.date_range = self.date_range.extend(msg_date)

    def finish(self, buffer_size: int) -> ChunkMetadata:
        self._handle.close()
        return ChunkMetadata(
            chunk_id=self.chunk_id,
            path=self.path,
            size_bytes=self.path.stat().st_size,
            message_count=self.message_count,
            date_range=self.date_range,
            content_hash=file_sha256(self.path, buffer_size),
        )

    def abort(self) -> None:
        self._handle.close()


class MboxSplitter:
    """Split one mbox file into chunk files that never break a message.

    A chunk is flushed before the next message only if adding it would exceed
    the target size and the chunk already holds a message, so a single
    oversized message gets a chunk of its own. Concatenating the chunks in
    order reproduces the original bytes exactly.
    """

    def __init__(
        self,
        output_dir: Path,
        chunk_size_bytes: int | None = None,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        *,
        lock_timeout: float = 30.0,
        lock_retry_interval: float = 0.1,
        stale_lock_seconds: float = 300.0,
    ) -> None:
        self._output_dir = output_dir
        self._chunk_size_bytes = chunk_size_bytes
        self._buffer_size = buffer_size
        self._lock_timeout = lock_timeout
        self._lock_retry_interval = lock_retry_interval
        self._stale_lock_seconds = stale_lock_seconds

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    def split(self, archive_path: Path, chunk_size_bytes: int | None = None) -> ArchiveManifest:
        """Split an archive and persist its manifest sidecar.

        The split holds ``{stem}.lock`` in the output directory, so two splits
        of the same archive never write the same chunk files at once.

        Args:
            archive_path: Path to the mbox file.
            chunk_size_bytes: Target chunk size. Overrides the constructor value;
                None or a value <= 0 means unbounded.

        Returns:
            ArchiveManifest describing every chunk written.

        Raises:
            SplitError: On any I/O failure or if the lock cannot be acquired.
                No manifest is left behind for a split that failed after it
                started rewriting chunks.
        """
        limit = chunk_size_bytes if chunk_size_bytes is not None else self._chunk_size_bytes
        if limit is not None and limit <= 0:
            limit = None

        logger.info(
            "Starting mbox split: %s (chunk size: %s bytes)",
            archive_path,
            limit if limit is not None else "unbounded",
        )

        try:
            self._output_dir.mkdir(parents=True, exist_ok=True)
            cleanup_stale_locks(self._output_dir, self._stale_lock_seconds)
            with file_lock(
                self._output_dir / archive_path.stem,
                timeout=self._lock_timeout,
                retry_interval=self._lock_retry_interval,
            ):
                manifest = self._split_locked(archive_path, limit)
        except LockTimeoutError as e:
            logger.error("Split of %s could not start: %s", archive_path, e)
            raise SplitError(f"Failed to split {archive_path}: {e}") from e
        except OSError as e:
            logger.error("Split of %s failed: %s", archive_path, e)
            raise SplitError(f"Failed to split {archive_path}: {e}") from e

        logger.info(
            "Mbox split complete: %d chunks, %d messages, %d bytes",
            len(manifest.chunks),
            manifest.total_messages,
            manifest.original_size,
        )
        return manifest

    def _split_locked(self, archive_path: Path, limit: int | None) -> ArchiveManifest:
        original_size = archive_path.stat().st_size
        original_hash = file_sha256(archive_path, self._buffer_size)

        # Chunk files are about to change; an old sidecar would describe stale bytes
        stale_manifest = self.manifest_path(archive_path.stem)
        if stale_manifest.exists():
            logger.debug("Removing previous manifest %s", stale_manifest)
            stale_manifest.unlink()

        chunks = self._write_chunks(archive_path, limit)
        manifest = ArchiveManifest(
            original_path=archive_path,
            original_size=original_size,
            original_hash=original_hash,
            chunks=tuple(chunks),
            split_timestamp=datetime.now(UTC),
        )
        self._write_manifest(archive_path.stem, manifest)
        return manifest

    def _write_chunks(self, archive_path: Path, limit: int | None) -> list[ChunkMetadata]:
        base_name = archive_path.stem
        extension = archive_path.suffix.lstrip(".") or "mbox"
        chunks: list[ChunkMetadata] = []
        writer: _ChunkWriter | None = None

        def accept(lines: list[bytes], is_message: bool) -> None:
            nonlocal writer
            size = sum(len(line) for line in lines)
            if (
                writer is not None
                and limit is not None
                and writer.message_count > 0
                and writer.size + size > limit
            ):
                chunks.append(writer.finish(self._buffer_size))
                self._log_chunk(chunks[-1])
                writer = None
            if writer is None:
                chunk_id = f"{base_name}_chunk_{len(chunks) + 1:03d}"
                writer = _ChunkWriter(chunk_id, self._output_dir / f"{chunk_id}.{extension}")
            writer.add(lines, size, is_message)

        message_lines: list[bytes] = []
        has_delimiter = False
        try:
            with archive_path.open("rb", buffering=self._buffer_size) as f:
                for line in f:
                    if line.startswith(MBOX_DELIMITER) and has_delimiter:
                        accept(message_lines, is_message=True)
                        message_lines = []
                    if line.startswith(MBOX_DELIMITER):
                        has_delimiter = True
                    message_lines.append(line)

            if message_lines:
                accept(message_lines, is_message=has_delimiter)
            if writer is not None:
                chunks.append(writer.finish(self._buffer_size))
                self._log_chunk(chunks[-1])
                writer = None
        finally:
            if writer is not None:
                writer.abort()

        return chunks

    @staticmethod
    def _log_chunk(chunk: ChunkMetadata) -> None:
        logger.info(
            "Chunk written: %s (%d messages, %d KB)",
            chunk.chunk_id,
            chunk.message_count,
            chunk.size_bytes // 1024,
        )

    def manifest_path(self, archive_stem: str) -> Path:
        return self._output_dir / f"{archive_stem}_metadata.json"

    def _write_manifest(self, archive_stem: str, manifest: ArchiveManifest) -> Path:
        path = self.manifest_path(archive_stem)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(manifest.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp_path, path)
        logger.debug("Wrote manifest: %s", path)
        return path

    def load_manifest(self, archive_stem: str) -> ArchiveManifest | None:
        """Read a previously written manifest sidecar, or None if absent."""
        path = self.manifest_path(archive_stem)
        if not path.exists():
            return None
        return ArchiveManifest.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def validate_split(self, archive_path: Path, chunk_paths: list[Path]) -> bool:
        """Check that the chunks, concatenated in order, hash to the original.

        Advisory only: mismatches and unreadable files return False rather than raise.
        """
        logger.info("Validating split of %s across %d chunks", archive_path, len(chunk_paths))
        try:
            original_hash = file_sha256(archive_path, self._buffer_size)
            digest = hashlib.sha256()
            for chunk_path in chunk_paths:
                with Path(chunk_path).open("rb") as f:
                    while block := f.read(self._buffer_size):
                        digest.update(block)
        except OSError as e:
            logger.error("Split validation could not read files: %s", e)
            return False

        reconstructed_hash = digest.hexdigest()
        is_valid = original_hash == reconstructed_hash
        if is_valid:
            logger.info("Split validation passed: %s", original_hash)
        else:
            logger.warning(
                "Split validation failed: original %s, reconstructed %s",
                original_hash,
                reconstructed_hash,
            )
        return is_valid
