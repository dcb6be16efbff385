"""Mbox block parser: MIME decoding, address normalization, header extraction."""

from __future__ import annotations

import logging
import re
import uuid
from datetime import UTC, datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses

from mbox_ingestor.core.exceptions import ParseError
from mbox_ingestor.core.models import AttachmentInfo, EmailAddress, ParsedMessage
from mbox_ingestor.core.splitter import MBOX_DELIMITER, parse_header_date

logger = logging.getLogger(__name__)

TRANSPORT_THREAD_HEADER = "x-gm-thrid"
LABELS_HEADER = "x-gmail-labels"
UNKNOWN_SENDER = EmailAddress(email="unknown@unknown.com", name="Unknown")

_MSG_ID_PATTERN = re.compile(r"<[^<>\s]+>")


class MboxMessageParser:
    """Parses one raw mbox block (delimiter line included) into a ParsedMessage."""

    def __init__(self) -> None:
        self._parser = BytesParser(policy=policy.default)

    def parse(self, raw_block: bytes, source_offset: int = 0) -> ParsedMessage:
        """Parse a raw mbox block.

        Args:
            raw_block: Block bytes, optionally starting with the ``From `` line.
            source_offset: Byte offset of the block inside its chunk file.

        Returns:
            Parsed message.

        Raises:
            ParseError: If the block cannot be decoded.
        """
        try:
            msg = self._parser.parsebytes(self._strip_delimiter(raw_block))
            if not msg.keys():
                raise ParseError("Block contains no headers")

            return ParsedMessage(
                message_id=self._extract_message_id(msg),
                sender=self._extract_sender(msg),
                to=self._extract_addresses(msg, "to"),
                cc=self._extract_addresses(msg, "cc"),
                bcc=self._extract_addresses(msg, "bcc"),
                subject=self._header_str(msg, "subject").strip(),
                date=self._parse_date(self._raw_header(msg, "date")),
                references=self._extract_references(msg),
                in_reply_to=self._extract_in_reply_to(msg),
                transport_thread_id=self._header_str(msg, TRANSPORT_THREAD_HEADER).strip() or None,
                body_text=self._extract_body(msg, "plain"),
                body_html=self._extract_body(msg, "html"),
                attachments=self._extract_attachments(msg),
                headers=self._extract_headers(msg),
                labels=self._parse_labels(self._header_str(msg, LABELS_HEADER)),
                source_offset=source_offset,
            )
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(f"Failed to parse message block at offset {source_offset}: {e}") from e

    @staticmethod
    def _strip_delimiter(raw_block: bytes) -> bytes:
        if raw_block.startswith(MBOX_DELIMITER):
            _, _, rest = raw_block.partition(b"\n")
            return rest
        return raw_block

    @staticmethod
    def _raw_header(msg: EmailMessage, name: str) -> str:
        """Unparsed header value, bypassing the policy's header classes."""
        for key, value in msg.raw_items():
            if key.lower() == name:
                return str(value)
        return ""

    @staticmethod
    def _header_str(msg: EmailMessage, name: str) -> str:
        value = msg.get(name)
        return str(value) if value is not None else ""

    def _extract_message_id(self, msg: EmailMessage) -> str:
        message_id = self._header_str(msg, "message-id").strip()
        if message_id:
            return message_id
        synthetic = f"<generated-{uuid.uuid4()}@synthetic>"
        logger.debug("Generated synthetic Message-ID %s", synthetic)
        return synthetic

    def _extract_sender(self, msg: EmailMessage) -> EmailAddress:
        addresses = self._extract_addresses(msg, "from")
        return addresses[0] if addresses else UNKNOWN_SENDER

    @staticmethod
    def _extract_addresses(msg: EmailMessage, name: str) -> tuple[EmailAddress, ...]:
        """Parse an address header; emails are lower-cased, display names kept."""
        values = [str(v) for v in msg.get_all(name, [])]
        addresses = []
        for display_name, addr in getaddresses(values):
            addr = addr.strip().lower()
            if addr:
                addresses.append(EmailAddress(email=addr, name=display_name.strip() or None))
        return tuple(addresses)

    def _extract_references(self, msg: EmailMessage) -> tuple[str, ...]:
        refs: list[str] = []
        for value in msg.get_all("references", []):
            text = str(value)
            found = _MSG_ID_PATTERN.findall(text)
            refs.extend(found if found else text.split())
        return tuple(ref for ref in refs if ref)

    def _extract_in_reply_to(self, msg: EmailMessage) -> str | None:
        text = self._header_str(msg, "in-reply-to").strip()
        if not text:
            return None
        match = _MSG_ID_PATTERN.search(text)
        return match.group(0) if match else text

    @staticmethod
    def _extract_body(msg: EmailMessage, subtype: str) -> str | None:
        part = msg.get_body(preferencelist=(subtype,))
        if part is None or part.get_content_subtype() != subtype:
            return None
        try:
            return part.get_content()
        except (LookupError, UnicodeDecodeError):
            payload = part.get_payload(decode=True) or b""
            return payload.decode("utf-8", errors="replace")

    @staticmethod
    def _extract_attachments(msg: EmailMessage) -> tuple[AttachmentInfo, ...]:
        if not msg.is_multipart():
            return ()
        attachments = []
        for part in msg.iter_attachments():
            payload = part.get_payload(decode=True)
            content_id = part.get("content-id")
            attachments.append(
                AttachmentInfo(
                    filename=part.get_filename() or "unnamed",
                    content_type=part.get_content_type() or "application/octet-stream",
                    size_bytes=len(payload) if isinstance(payload, bytes) else 0,
                    content_id=str(content_id).strip() if content_id else None,
                    is_inline=part.get_content_disposition() == "inline",
                )
            )
        return tuple(attachments)

    @staticmethod
    def _extract_headers(msg: EmailMessage) -> dict[str, str | tuple[str, ...]]:
        """Collect raw headers keyed by lower-cased name; repeated names become tuples."""
        collected: dict[str, list[str]] = {}
        for key, value in msg.raw_items():
            collected.setdefault(key.lower(), []).append(str(value).strip())
        return {
            key: values[0] if len(values) == 1 else tuple(values)
            for key, values in collected.items()
        }

    @staticmethod
    def _parse_labels(value: str) -> tuple[str, ...]:
        """Split an X-Gmail-Labels value, honoring quoted labels containing commas."""
        labels: list[str] = []
        current = ""
        in_quotes = False
        for char in value:
            if char == '"':
                in_quotes = not in_quotes
            elif char == "," and not in_quotes:
                labels.append(current.strip())
                current = ""
            else:
                current += char
        labels.append(current.strip())
        return tuple(label for label in labels if label)

    @staticmethod
    def _parse_date(date_str: str) -> datetime:
        """Parse a Date header, falling back to now when missing or invalid."""
        parsed = parse_header_date(date_str) if date_str else None
        if parsed is None:
            logger.warning("Missing or unparseable Date header %r, using current time", date_str)
            return datetime.now(UTC)
        return parsed
