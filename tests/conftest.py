"""Shared fixtures for mbox ingestor tests."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from email.utils import format_datetime
from pathlib import Path

import pytest

from mbox_ingestor.core.models import EmailAddress, ParsedMessage

EmailFactory = Callable[..., bytes]


def build_email(
    *,
    sender: str = "sender@example.com",
    to: str = "recipient@example.com",
    subject: str = "Test Email",
    body: str = "This is a test email body.",
    date: datetime | str | None = datetime(2024, 1, 15, 10, 0, tzinfo=UTC),
    message_id: str | None = "<test@example.com>",
    extra_headers: Sequence[str] = (),
) -> bytes:
    """Build one mbox message block (delimiter line included) as bytes."""
    envelope = "Mon Jan 15 10:00:00 2024"
    lines = [f"From {sender} {envelope}", f"From: {sender}", f"To: {to}", f"Subject: {subject}"]
    if date is not None:
        date_str = format_datetime(date) if isinstance(date, datetime) else date
        lines.append(f"Date: {date_str}")
    if message_id is not None:
        lines.append(f"Message-ID: {message_id}")
    lines.extend(extra_headers)
    lines.extend(["Content-Type: text/plain; charset=UTF-8", "", body, ""])
    return ("\n".join(lines) + "\n").encode("utf-8")


@pytest.fixture
def make_email() -> EmailFactory:
    """Factory for single mbox message blocks."""
    return build_email


@pytest.fixture
def write_mbox(tmp_path: Path) -> Callable[..., Path]:
    """Factory that writes message blocks to an mbox file under tmp_path."""

    def _write(blocks: Sequence[bytes], name: str = "archive.mbox") -> Path:
        path = tmp_path / name
        path.write_bytes(b"".join(blocks))
        return path

    return _write


@pytest.fixture
def three_message_blocks() -> list[bytes]:
    """Messages dated Jan 1, Jan 10 and Feb 1 2024."""
    return [
        build_email(
            subject="Kickoff",
            date=datetime(2024, 1, 1, 9, 0, tzinfo=UTC),
            message_id="<m1@example.com>",
        ),
        build_email(
            subject="Re: Kickoff",
            date=datetime(2024, 1, 10, 9, 0, tzinfo=UTC),
            message_id="<m2@example.com>",
            extra_headers=["In-Reply-To: <m1@example.com>"],
        ),
        build_email(
            subject="Invoice",
            date=datetime(2024, 2, 1, 9, 0, tzinfo=UTC),
            message_id="<m3@example.com>",
        ),
    ]


@pytest.fixture
def sample_mbox(write_mbox: Callable[..., Path], three_message_blocks: list[bytes]) -> Path:
    """A three-message archive on disk."""
    return write_mbox(three_message_blocks)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary database path for tests."""
    return tmp_path / "test.db"


@pytest.fixture
def chunk_dir(tmp_path: Path) -> Path:
    """Temporary chunk output directory."""
    return tmp_path / "chunks"


def make_message(
    message_id: str,
    *,
    day: int = 1,
    month: int = 1,
    hour: int = 9,
    subject: str = "Subject",
    sender: str = "alice@example.com",
    sender_name: str | None = None,
    to: Sequence[str] = ("bob@example.com",),
    cc: Sequence[str] = (),
    in_reply_to: str | None = None,
    references: Sequence[str] = (),
    transport_thread_id: str | None = None,
) -> ParsedMessage:
    """Build a ParsedMessage directly, bypassing MIME parsing."""
    return ParsedMessage(
        message_id=message_id,
        sender=EmailAddress(email=sender, name=sender_name),
        date=datetime(2024, month, day, hour, 0, tzinfo=UTC),
        subject=subject,
        to=tuple(EmailAddress(email=addr) for addr in to),
        cc=tuple(EmailAddress(email=addr) for addr in cc),
        in_reply_to=in_reply_to,
        references=tuple(references),
        transport_thread_id=transport_thread_id,
    )


@pytest.fixture
def message_factory() -> Callable[..., ParsedMessage]:
    """Factory for ParsedMessage records."""
    return make_message
