"""Streaming, resumable reader that turns a chunk file into parsed messages."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import replace
from pathlib import Path

from mbox_ingestor.core.exceptions import ParseError
from mbox_ingestor.core.models import ParsedMessage, ReaderState
from mbox_ingestor.core.parser import MboxMessageParser
from mbox_ingestor.core.splitter import MBOX_DELIMITER

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class MessageStreamReader:
    """Lazily yields ParsedMessage records from one mbox chunk.

    The reader is single-use: iterate it once, and construct a new one with
    ``resume_offset=reader.position`` to pick up where an interrupted pass
    stopped. ``position`` always points at the start of the next unconsumed
    block, and is updated before each message is yielded.

    Lines starting before ``resume_offset`` are skipped without being parsed.
    Content before the first delimiter (a preamble, or the tail of a block
    when resuming mid-message) is not a message and is discarded.
    """

    def __init__(
        self,
        chunk_path: Path,
        resume_offset: int = 0,
        *,
        skip_malformed: bool = True,
        buffer_size: int = 4096,
        parser: MboxMessageParser | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self._chunk_path = Path(chunk_path)
        self._resume_offset = max(resume_offset, 0)
        self._skip_malformed = skip_malformed
        self._buffer_size = buffer_size
        self._parser = parser or MboxMessageParser()
        self._on_progress = on_progress
        self._started = False
        self._state = ReaderState(
            position=self._resume_offset,
            file_size=self._chunk_path.stat().st_size,
        )
        logger.debug(
            "Reader opened for %s (resume at %d of %d bytes)",
            self._chunk_path,
            self._resume_offset,
            self._state.file_size,
        )

    @property
    def chunk_path(self) -> Path:
        return self._chunk_path

    @property
    def position(self) -> int:
        return self._state.position

    @property
    def messages_processed(self) -> int:
        return self._state.messages_processed

    @property
    def bytes_read(self) -> int:
        return self._state.bytes_read

    @property
    def errors(self) -> int:
        return self._state.errors

    @property
    def file_size(self) -> int:
        return self._state.file_size

    @property
    def progress(self) -> float:
        """Fraction of the file consumed, counting any resumed prefix."""
        if not self._state.file_size:
            return 1.0
        return min(self._state.position / self._state.file_size, 1.0)

    def get_state(self) -> ReaderState:
        """Snapshot of the running counters."""
        return replace(self._state)

    def __iter__(self) -> Iterator[ParsedMessage]:
        return self.messages()

    def messages(self) -> Iterator[ParsedMessage]:
        """Return the message iterator. May only be called once per reader."""
        if self._started:
            raise RuntimeError(
                "MessageStreamReader is single-use; create a new reader to resume"
            )
        self._started = True
        return self._iterate()

    def _iterate(self) -> Iterator[ParsedMessage]:
        offset = 0
        block: list[bytes] = []
        block_start = self._resume_offset
        in_message = False

        with self._chunk_path.open("rb", buffering=self._buffer_size) as f:
            for line in f:
                line_start = offset
                offset += len(line)
                if line_start < self._resume_offset:
                    continue

                if line.startswith(MBOX_DELIMITER):
                    if block:
                        message = self._finish_block(block, block_start, line_start, in_message)
                        if message is not None:
                            yield message
                    block = [line]
                    block_start = line_start
                    in_message = True
                else:
                    block.append(line)

        if block:
            message = self._finish_block(block, block_start, offset, in_message)
            if message is not None:
                yield message

        logger.info(
            "Finished reading %s: %d messages, %d errors, %d bytes",
            self._chunk_path.name,
            self._state.messages_processed,
            self._state.errors,
            self._state.bytes_read,
        )

    def _finish_block(
        self,
        lines: list[bytes],
        block_start: int,
        next_position: int,
        in_message: bool,
    ) -> ParsedMessage | None:
        raw = b"".join(lines)
        self._state.bytes_read += len(raw)

        if not in_message:
            if raw.strip():
                logger.warning(
                    "Discarding %d bytes before the first message delimiter in %s at offset %d",
                    len(raw),
                    self._chunk_path.name,
                    block_start,
                )
            self._advance(next_position)
            return None

        try:
            message = self._parser.parse(raw, source_offset=block_start)
        except ParseError as e:
            self._state.errors += 1
            if not self._skip_malformed:
                logger.error("Malformed message in %s at offset %d: %s", self._chunk_path.name, block_start, e)
                raise
            logger.warning(
                "Skipping malformed message in %s at offset %d: %s",
                self._chunk_path.name,
                block_start,
                e,
            )
            self._advance(next_position)
            return None

        self._state.messages_processed += 1
        self._advance(next_position)
        return message

    def _advance(self, position: int) -> None:
        self._state.position = position
        if self._on_progress:
            self._on_progress(self._state.position, self._state.file_size)

    def collect_all(self) -> list[ParsedMessage]:
        """Read every remaining message into a list. Holds the whole chunk in memory."""
        return list(self.messages())

    def count_messages(self) -> int:
        """Count parseable messages by consuming the reader."""
        return sum(1 for _ in self.messages())


def stream_mbox_chunk(
    chunk_path: Path,
    callback: Callable[[ParsedMessage, int], None],
    **reader_kwargs: object,
) -> ReaderState:
    """Feed every message of a chunk to ``callback(message, index)``.

    Returns:
        The reader's final state.
    """
    reader = MessageStreamReader(chunk_path, **reader_kwargs)  # type: ignore[arg-type]
    for index, message in enumerate(reader):
        callback(message, index)
    return reader.get_state()
