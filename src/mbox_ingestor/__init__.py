"""Mbox Ingestor - Split large mbox archives, stream them resumably, rebuild threads."""

from mbox_ingestor.core.models import (
    ArchiveManifest,
    AttachmentInfo,
    ChunkMetadata,
    ChunkRecord,
    ChunkSummary,
    DateRange,
    EmailAddress,
    IngestProgress,
    ParsedMessage,
    ProcessingLogEntry,
    ReaderState,
    Thread,
)
from mbox_ingestor.core.reader import MessageStreamReader
from mbox_ingestor.core.splitter import MboxSplitter
from mbox_ingestor.core.threads import ThreadBuilder
from mbox_ingestor.pipeline.ingestor import ArchiveIngestor
from mbox_ingestor.storage.tracker import ChunkTracker

__all__ = [
    "ArchiveIngestor",
    "ArchiveManifest",
    "AttachmentInfo",
    "ChunkMetadata",
    "ChunkRecord",
    "ChunkSummary",
    "ChunkTracker",
    "DateRange",
    "EmailAddress",
    "IngestProgress",
    "MboxSplitter",
    "MessageStreamReader",
    "ParsedMessage",
    "ProcessingLogEntry",
    "ReaderState",
    "Thread",
    "ThreadBuilder",
]
