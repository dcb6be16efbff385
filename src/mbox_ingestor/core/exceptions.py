"""Custom exceptions for the mbox ingestor."""


class MboxIngestorError(Exception):
    """Base exception for all mbox ingestor errors."""


class SplitError(MboxIngestorError):
    """Failed to split an archive into chunks."""


class StateStoreError(MboxIngestorError):
    """A read or write against the chunk state store failed."""


class ParseError(MboxIngestorError):
    """Failed to parse a single message block."""


class ChunkTimeoutError(MboxIngestorError):
    """Processing a chunk exceeded its deadline."""


class ProcessingCancelledError(MboxIngestorError):
    """Chunk processing stopped because the pool was asked to stop."""


class LockTimeoutError(MboxIngestorError):
    """A file lock could not be acquired before its timeout."""
