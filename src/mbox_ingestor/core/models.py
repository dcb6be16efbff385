"""Frozen dataclasses for the mbox ingestor domain model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

# Chunk lifecycle: pending → processing → completed | failed → (reset) pending
CHUNK_STATUSES = ("pending", "processing", "completed", "failed")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class EmailAddress:
    """A mailbox address; ``email`` is always lower-cased."""

    email: str
    name: str | None = None


@dataclass(frozen=True)
class AttachmentInfo:
    """Attachment metadata only; content is never loaded into the record."""

    filename: str = "unnamed"
    content_type: str = "application/octet-stream"
    size_bytes: int = 0
    content_id: str | None = None
    is_inline: bool = False


@dataclass(frozen=True)
class DateRange:
    start: datetime | None = None
    end: datetime | None = None

    def extend(self, value: datetime) -> DateRange:
        """Return a range widened to include ``value``."""
        start = value if self.start is None or value < self.start else self.start
        end = value if self.end is None or value > self.end else self.end
        return DateRange(start=start, end=end)


@dataclass(frozen=True)
class ChunkMetadata:
    """A contiguous, self-contained slice of an archive as written by the splitter."""

    chunk_id: str
    path: Path
    size_bytes: int
    message_count: int
    date_range: DateRange
    content_hash: str
    labels: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "path": str(self.path),
            "size_bytes": self.size_bytes,
            "message_count": self.message_count,
            "date_range": {
                "start": _iso(self.date_range.start),
                "end": _iso(self.date_range.end),
            },
            "hash": self.content_hash,
            "labels": list(self.labels),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChunkMetadata:
        date_range = data.get("date_range") or {}
        return cls(
            chunk_id=data["chunk_id"],
            path=Path(data["path"]),
            size_bytes=int(data["size_bytes"]),
            message_count=int(data["message_count"]),
            date_range=DateRange(
                start=_from_iso(date_range.get("start")),
                end=_from_iso(date_range.get("end")),
            ),
            content_hash=data["hash"],
            labels=tuple(data.get("labels", ())),
        )


@dataclass(frozen=True)
class ArchiveManifest:
    """Result of splitting one archive, persisted as a JSON sidecar."""

    original_path: Path
    original_size: int
    original_hash: str
    chunks: tuple[ChunkMetadata, ...]
    split_timestamp: datetime

    @property
    def total_messages(self) -> int:
        return sum(chunk.message_count for chunk in self.chunks)

    @property
    def chunk_paths(self) -> list[Path]:
        return [chunk.path for chunk in self.chunks]

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_file": str(self.original_path),
            "original_size_bytes": self.original_size,
            "original_hash": self.original_hash,
            "chunks": [chunk.to_dict() for chunk in self.chunks],
            "split_timestamp": self.split_timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchiveManifest:
        return cls(
            original_path=Path(data["original_file"]),
            original_size=int(data["original_size_bytes"]),
            original_hash=data["original_hash"],
            chunks=tuple(ChunkMetadata.from_dict(c) for c in data.get("chunks", [])),
            split_timestamp=datetime.fromisoformat(data["split_timestamp"]),
        )


@dataclass(frozen=True)
class ChunkRecord:
    """A chunk as tracked by the state store."""

    chunk_id: str
    archive_path: str
    path: str
    size_bytes: int
    message_count: int
    date_range: DateRange
    content_hash: str
    labels: tuple[str, ...]
    status: str
    resume_offset: int
    error_message: str
    created_at: datetime
    processed_at: datetime | None
    registered_seq: int
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ProcessingLogEntry:
    """Append-only audit record written on every chunk status transition."""

    chunk_id: str
    status: str
    offset: int | None
    error: str | None
    timestamp: datetime


@dataclass(frozen=True)
class ParsedMessage:
    """One email decoded from an mbox block. Immutable once produced."""

    message_id: str
    sender: EmailAddress
    date: datetime
    subject: str = ""
    to: tuple[EmailAddress, ...] = field(default_factory=tuple)
    cc: tuple[EmailAddress, ...] = field(default_factory=tuple)
    bcc: tuple[EmailAddress, ...] = field(default_factory=tuple)
    references: tuple[str, ...] = field(default_factory=tuple)
    in_reply_to: str | None = None
    transport_thread_id: str | None = None
    body_text: str | None = None
    body_html: str | None = None
    attachments: tuple[AttachmentInfo, ...] = field(default_factory=tuple)
    headers: dict[str, str | tuple[str, ...]] = field(default_factory=dict, compare=False)
    labels: tuple[str, ...] = field(default_factory=tuple)
    source_offset: int = 0


@dataclass(frozen=True)
class Thread:
    """A reconstructed conversation, messages in date order."""

    thread_id: str
    messages: tuple[ParsedMessage, ...]
    participants: tuple[EmailAddress, ...]
    subject: str
    date_start: datetime
    date_end: datetime

    @property
    def root_message(self) -> ParsedMessage:
        return self.messages[0]

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def message_ids(self) -> list[str]:
        return [m.message_id for m in self.messages]


@dataclass
class ReaderState:
    """Mutable counters exposed by a streaming reader."""

    position: int = 0
    messages_processed: int = 0
    bytes_read: int = 0
    errors: int = 0
    file_size: int = 0


@dataclass(frozen=True)
class ChunkSummary:
    """Outcome of processing one chunk."""

    chunk_id: str
    status: str
    messages_processed: int = 0
    messages_skipped: int = 0
    messages_errored: int = 0
    start_offset: int = 0
    end_offset: int = 0
    error: str | None = None


@dataclass
class IngestProgress:
    """Mutable progress tracker for pipeline status reporting."""

    chunks_total: int = 0
    chunks_completed: int = 0
    chunks_failed: int = 0
    messages_processed: int = 0
    messages_skipped: int = 0
    messages_errored: int = 0
    current_stage: str = "idle"
    summaries: list[ChunkSummary] = field(default_factory=list)
