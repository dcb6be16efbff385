"""Thread reconstruction: transport thread id, reference graph, subject/time fallback."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterable
from datetime import timedelta

from mbox_ingestor.core.models import EmailAddress, ParsedMessage, Thread

logger = logging.getLogger(__name__)

_REPLY_PREFIX = re.compile(r"^\s*(?:re|fwd?)\s*:\s*", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


def normalize_subject(subject: str) -> str:
    """Strip leading Re:/Fwd:/FW: tokens, collapse whitespace, lower-case."""
    normalized = subject or ""
    while True:
        stripped = _REPLY_PREFIX.sub("", normalized, count=1)
        if stripped == normalized:
            break
        normalized = stripped
    return _WHITESPACE.sub(" ", normalized).strip().lower()


def unique_participants(messages: Iterable[ParsedMessage]) -> tuple[EmailAddress, ...]:
    """From/To/Cc addresses deduplicated by lower-cased email; first-seen name wins."""
    seen: dict[str, EmailAddress] = {}
    for message in messages:
        for addr in (message.sender, *message.to, *message.cc):
            key = addr.email.lower()
            if key and key not in seen:
                seen[key] = addr
    return tuple(seen.values())


def _sort_key(message: ParsedMessage) -> tuple[object, str]:
    return (message.date, message.message_id)


class _DisjointSet:
    """Union-find over message ids. The smaller id becomes the root, so results
    do not depend on union order."""

    def __init__(self, keys: Iterable[str]) -> None:
        self._parent = {key: key for key in keys}
        self._size = dict.fromkeys(self._parent, 1)

    def find(self, key: str) -> str:
        root = key
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[key] != root:
            self._parent[key], key = root, self._parent[key]
        return root

    def union(self, a: str, b: str) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return
        if root_b < root_a:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        self._size[root_a] += self._size.pop(root_b)

    def size(self, key: str) -> int:
        return self._size[self.find(key)]


class ThreadBuilder:
    """Accumulates parsed messages and groups them into conversations.

    Layers, applied in order:
    1. Messages sharing a transport thread id (e.g. X-GM-THRID) form one group.
    2. In-Reply-To / References links join messages into connected components.
       A link between two messages that both carry transport ids is ignored,
       since the provider has already grouped them.
    3. Messages still alone are attached to the closest-in-time message with
       the same normalized subject inside the match window.

    ``add`` is safe to call from several workers. ``build_threads`` is a pure
    function of the messages added so far and should not run concurrently
    with ``add``.
    """

    def __init__(
        self,
        subject_match_window_days: float = 7,
        use_transport_thread_id: bool = True,
        normalize_subject: bool = True,
    ) -> None:
        self._window = timedelta(days=subject_match_window_days)
        self._use_transport_thread_id = use_transport_thread_id
        self._match_subjects = normalize_subject
        self._messages: list[ParsedMessage] = []
        self._lock = threading.Lock()

    def add(self, message: ParsedMessage) -> None:
        with self._lock:
            self._messages.append(message)

    def add_many(self, messages: Iterable[ParsedMessage]) -> None:
        batch = list(messages)
        with self._lock:
            self._messages.extend(batch)

    def clear(self) -> None:
        with self._lock:
            self._messages = []

    @property
    def message_count(self) -> int:
        return len(self._messages)

    def build_threads(self) -> list[Thread]:
        """Group all accumulated messages into threads.

        Returns:
            Threads ordered by start date, each with messages in date order.
        """
        with self._lock:
            snapshot = list(self._messages)

        messages = self._canonical_messages(snapshot)
        logger.info("Building threads from %d messages", len(messages))
        if not messages:
            return []

        by_id = {m.message_id: m for m in messages}
        groups = _DisjointSet(by_id)

        if self._use_transport_thread_id:
            self._link_by_transport_id(messages, groups)
        self._link_by_references(messages, by_id, groups)
        if self._match_subjects:
            self._link_by_subject(messages, groups)

        members: dict[str, list[ParsedMessage]] = {}
        for message in messages:
            members.setdefault(groups.find(message.message_id), []).append(message)

        threads = [self._create_thread(group) for group in members.values()]
        threads.sort(key=lambda t: (t.date_start, t.thread_id))
        logger.info("Built %d threads from %d messages", len(threads), len(messages))
        return threads

    @staticmethod
    def _canonical_messages(messages: list[ParsedMessage]) -> list[ParsedMessage]:
        """Deduplicate by message id (first added wins) and sort by (date, id)."""
        unique: dict[str, ParsedMessage] = {}
        for message in messages:
            if message.message_id in unique:
                logger.debug("Ignoring duplicate message %s", message.message_id)
                continue
            unique[message.message_id] = message
        return sorted(unique.values(), key=_sort_key)

    @staticmethod
    def _link_by_transport_id(messages: list[ParsedMessage], groups: _DisjointSet) -> None:
        first_seen: dict[str, str] = {}
        for message in messages:
            tid = message.transport_thread_id
            if not tid:
                continue
            if tid in first_seen:
                groups.union(first_seen[tid], message.message_id)
            else:
                first_seen[tid] = message.message_id

    def _link_by_references(
        self,
        messages: list[ParsedMessage],
        by_id: dict[str, ParsedMessage],
        groups: _DisjointSet,
    ) -> None:
        for message in messages:
            targets = [message.in_reply_to] if message.in_reply_to else []
            targets.extend(message.references)
            for target_id in targets:
                target = by_id.get(target_id)
                if target is None or target is message:
                    continue
                if (
                    self._use_transport_thread_id
                    and message.transport_thread_id
                    and target.transport_thread_id
                ):
                    continue
                groups.union(message.message_id, target.message_id)

    def _link_by_subject(self, messages: list[ParsedMessage], groups: _DisjointSet) -> None:
        by_subject: dict[str, list[ParsedMessage]] = {}
        for message in messages:
            key = normalize_subject(message.subject)
            if key:
                by_subject.setdefault(key, []).append(message)

        for message in messages:
            if groups.size(message.message_id) > 1:
                continue
            candidates = by_subject.get(normalize_subject(message.subject), [])
            best: ParsedMessage | None = None
            best_gap: timedelta | None = None
            for other in candidates:
                if other is message:
                    continue
                gap = abs(message.date - other.date)
                if gap > self._window:
                    continue
                if best_gap is None or gap < best_gap:
                    best, best_gap = other, gap
            if best is not None:
                logger.debug(
                    "Subject match: %s joins thread of %s", message.message_id, best.message_id
                )
                groups.union(message.message_id, best.message_id)

    def _create_thread(self, messages: list[ParsedMessage]) -> Thread:
        ordered = tuple(sorted(messages, key=_sort_key))
        root = ordered[0]
        thread_id = root.message_id
        if self._use_transport_thread_id:
            thread_id = next(
                (m.transport_thread_id for m in ordered if m.transport_thread_id), thread_id
            )
        return Thread(
            thread_id=thread_id,
            messages=ordered,
            participants=unique_participants(ordered),
            subject=root.subject,
            date_start=ordered[0].date,
            date_end=ordered[-1].date,
        )
