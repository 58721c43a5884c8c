"""
Session-scoped state for one signed-in user.

Every timeline mutation builds a new list and swaps it in whole, so readers
never see a half-applied merge.
"""

from dataclasses import replace
from typing import Iterable, Optional, Union

from .models import Conversation, DecryptedMessage, Protocol, ScanCursor, SendState
from .types import RelayDMError


def _sort_key(message: DecryptedMessage) -> tuple[int, float]:
    return (message.created_at, message.client_first_seen or 0.0)


def find_optimistic_match(
    timeline: list[DecryptedMessage],
    message: DecryptedMessage,
    window: int,
) -> Optional[int]:
    """
    Find the local entry a confirmed message stands for.

    A local entry matches when it recorded the message's event id, or when
    author and content are equal and the timestamps are within `window`
    seconds. The closest timestamp wins.

    Returns:
        Index into timeline, or None
    """
    best: Optional[int] = None
    best_delta: Optional[int] = None
    for index, entry in enumerate(timeline):
        if not entry.is_local:
            continue
        if message.id in entry.event_ids:
            return index
        if entry.author != message.author or entry.content != message.content:
            continue
        delta = abs(entry.created_at - message.created_at)
        if delta <= window and (best_delta is None or delta < best_delta):
            best, best_delta = index, delta
    return best


class SessionStore:
    """In-memory per-session store keyed by partner."""

    def __init__(self, optimistic_match_window: int = 30) -> None:
        self.optimistic_match_window = optimistic_match_window
        self._timelines: dict[str, list[DecryptedMessage]] = {}
        self._conversations: dict[str, Conversation] = {}
        self._cursors: dict[tuple[str, Protocol], ScanCursor] = {}
        self._decoded: dict[str, Union[DecryptedMessage, RelayDMError]] = {}

    # MARK: - Timelines

    def timeline(self, partner: str) -> list[DecryptedMessage]:
        """Returns the partner's messages, oldest first."""
        return list(self._timelines.get(partner, []))

    def partners(self) -> list[str]:
        return list(self._timelines.keys())

    def contains(self, partner: str, message_id: str) -> bool:
        return any(m.id == message_id for m in self._timelines.get(partner, []))

    def _commit(self, partner: str, messages: Iterable[DecryptedMessage]) -> None:
        self._timelines[partner] = sorted(messages, key=_sort_key)

    def merge(
        self, partner: str, messages: Iterable[DecryptedMessage]
    ) -> list[DecryptedMessage]:
        """
        Merge confirmed messages into a timeline.

        Messages whose id is present are ignored. A message matching a local
        entry replaces it in place, keeping the entry's `client_first_seen`.

        Returns:
            The messages that were added or that replaced a local entry
        """
        current = list(self._timelines.get(partner, []))
        known_ids = {m.id for m in current}
        applied: list[DecryptedMessage] = []

        for message in messages:
            if message.id in known_ids:
                continue

            confirmed = replace(message, send_state=SendState.CONFIRMED)
            index = find_optimistic_match(current, confirmed, self.optimistic_match_window)
            if index is not None:
                confirmed = replace(
                    confirmed,
                    client_first_seen=current[index].client_first_seen,
                    error=None,
                )
                current[index] = confirmed
            else:
                current.append(confirmed)

            known_ids.add(confirmed.id)
            applied.append(confirmed)

        if applied or partner not in self._timelines:
            self._commit(partner, current)
        return applied

    def prepend(
        self, partner: str, older: Iterable[DecryptedMessage]
    ) -> list[DecryptedMessage]:
        """Add an older page; only ids not yet present are taken."""
        return self.merge(partner, older)

    def reconcile(self, partner: str, message: DecryptedMessage) -> Optional[DecryptedMessage]:
        """Apply one live message. Returns it as stored, or None if it was a duplicate."""
        applied = self.merge(partner, [message])
        return applied[0] if applied else None

    def insert_local(self, partner: str, message: DecryptedMessage) -> None:
        """Insert an optimistic entry."""
        self._commit(partner, self._timelines.get(partner, []) + [message])

    def update_local(self, partner: str, local_id: str, **changes) -> Optional[DecryptedMessage]:
        """
        Update a local entry.

        Returns:
            The updated entry, or None if it was already confirmed or removed
        """
        current = list(self._timelines.get(partner, []))
        for index, entry in enumerate(current):
            if entry.id == local_id and entry.is_local:
                current[index] = replace(entry, **changes)
                self._commit(partner, current)
                return current[index]
        return None

    def remove_local(self, partner: str, local_id: str) -> Optional[DecryptedMessage]:
        current = self._timelines.get(partner, [])
        removed = next((m for m in current if m.id == local_id and m.is_local), None)
        if removed is not None:
            self._commit(partner, [m for m in current if m is not removed])
        return removed

    def local_entry(self, partner: str, local_id: str) -> Optional[DecryptedMessage]:
        return next(
            (m for m in self._timelines.get(partner, []) if m.id == local_id and m.is_local),
            None,
        )

    def reset(self, partner: str, keep_local: bool = True) -> None:
        """Drop a partner's timeline and cursors; local entries survive unless asked."""
        kept = [m for m in self._timelines.get(partner, []) if keep_local and m.is_local]
        self._commit(partner, kept)
        self.drop_cursors(partner)

    # MARK: - Conversations

    def set_conversations(self, conversations: Iterable[Conversation]) -> None:
        self._conversations = {c.partner: c for c in conversations}

    def conversation(self, partner: str) -> Optional[Conversation]:
        return self._conversations.get(partner)

    def conversations(self) -> list[Conversation]:
        return list(self._conversations.values())

    # MARK: - Cursors

    def cursor(self, partner: str, protocol: Protocol) -> ScanCursor:
        """Returns the cursor for (partner, protocol), creating it if needed."""
        key = (partner, protocol)
        if key not in self._cursors:
            self._cursors[key] = ScanCursor()
        return self._cursors[key]

    def has_cursor(self, partner: str, protocol: Protocol) -> bool:
        return (partner, protocol) in self._cursors

    def drop_cursors(self, partner: str) -> None:
        for key in [k for k in self._cursors if k[0] == partner]:
            del self._cursors[key]

    # MARK: - Decode cache

    def cached_decode(self, envelope_id: str) -> Optional[Union[DecryptedMessage, RelayDMError]]:
        """A previous decode result (message or soft failure) for an envelope."""
        return self._decoded.get(envelope_id)

    def remember_decode(
        self, envelope_id: str, result: Union[DecryptedMessage, RelayDMError]
    ) -> None:
        self._decoded[envelope_id] = result

    def decoded_messages(self) -> list[DecryptedMessage]:
        """Every message decoded this session, whichever mode read it."""
        return [r for r in self._decoded.values() if isinstance(r, DecryptedMessage)]

    def clear(self) -> None:
        """Clear all session state."""
        self._timelines.clear()
        self._conversations.clear()
        self._cursors.clear()
        self._decoded.clear()
