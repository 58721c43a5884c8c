"""
Search over decrypted direct messages.

Matches are found in what the session has already decoded; nothing is
fetched or decrypted to answer a search. Each partner appears at most once,
with the newest matching message.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from .models import DecryptedMessage
from .types import ENCRYPTED_PLACEHOLDER


class MatchType(Enum):
    """What a search query matched."""
    PARTNER = "partner"
    CONTENT = "content"


@dataclass(frozen=True)
class SearchResult:
    """A conversation that matched a search query."""
    partner: str
    message: DecryptedMessage
    match_type: MatchType


def _has_text(message: DecryptedMessage) -> bool:
    return message.error is None and message.content != ENCRYPTED_PLACEHOLDER


def match(message: DecryptedMessage, query: str) -> Optional[MatchType]:
    """
    Match one message against a lowercased query.

    The partner identity is checked first; content only counts for messages
    that were actually decrypted.

    Returns:
        The MatchType, or None
    """
    if query in message.partner.lower():
        return MatchType.PARTNER
    if _has_text(message) and query in message.content.lower():
        return MatchType.CONTENT
    return None


def search_messages(messages: Iterable[DecryptedMessage], query: str) -> list[SearchResult]:
    """
    Find the conversations whose partner or content matches `query`.

    Args:
        messages: Decrypted messages to search, duplicates allowed.
        query: Case-insensitive substring.

    Returns:
        One result per partner, newest match first.
    """
    query = query.strip().lower()
    if not query:
        return []

    unique = {m.id: m for m in messages}
    results: dict[str, SearchResult] = {}
    for message in sorted(unique.values(), key=lambda m: m.created_at, reverse=True):
        if message.partner in results:
            continue
        match_type = match(message, query)
        if match_type is not None:
            results[message.partner] = SearchResult(message.partner, message, match_type)

    return list(results.values())
