"""Models for relaydm envelopes, messages and conversations."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
import uuid

from .types import InvalidEnvelopeError


class Protocol(Enum):
    """Encryption protocol a message travelled under."""
    LEGACY = "legacy"
    SEALED = "sealed"


class SendState(Enum):
    """Delivery state of a message in a timeline."""
    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class RawEnvelope:
    """A signed event as stored by relays."""
    id: str
    author: str
    created_at: int
    kind: int
    content: str
    tags: tuple[tuple[str, ...], ...] = ()
    sig: str = ""

    @property
    def recipient_hint(self) -> Optional[str]:
        """First `p` tag value. Not trustworthy on sealed wrappers."""
        values = self.tag_values("p")
        return values[0] if values else None

    def tag_values(self, name: str) -> list[str]:
        """Returns the first value of every tag with the given name."""
        return [tag[1] for tag in self.tags if len(tag) > 1 and tag[0] == name]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RawEnvelope":
        """Builds an envelope from its wire JSON form."""
        try:
            return cls(
                id=str(data["id"]),
                author=str(data["pubkey"]),
                created_at=int(data["created_at"]),
                kind=int(data["kind"]),
                content=str(data.get("content", "")),
                tags=tuple(tuple(str(v) for v in tag) for tag in data.get("tags", [])),
                sig=str(data.get("sig", "")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidEnvelopeError(f"Invalid event data: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        """Returns the wire JSON form."""
        return {
            "id": self.id,
            "pubkey": self.author,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(tag) for tag in self.tags],
            "content": self.content,
            "sig": self.sig,
        }


@dataclass
class UnsignedEvent:
    """An event before the signer assigns its id, author and signature."""
    kind: int
    content: str
    created_at: int
    tags: list[list[str]] = field(default_factory=list)


@dataclass
class DecryptedMessage:
    """A message in canonical, decrypted form."""
    id: str
    partner: str
    author: str
    created_at: int
    protocol: Protocol
    content: str
    send_state: SendState = SendState.CONFIRMED
    client_first_seen: Optional[float] = None
    error: Optional[str] = None
    event_ids: tuple[str, ...] = ()

    def is_from(self, identity: str) -> bool:
        """Whether the message was authored by the given identity."""
        return self.author == identity

    @property
    def is_optimistic(self) -> bool:
        return self.send_state == SendState.OPTIMISTIC

    @property
    def is_local(self) -> bool:
        """Whether the entry only exists locally (optimistic or failed)."""
        return self.send_state != SendState.CONFIRMED


def categorize(
    messages: list[DecryptedMessage],
    identity: str,
    truncated: bool = False,
) -> tuple[bool, bool]:
    """
    Classifies a conversation from its observed history.

    Returns:
        Tuple of (is_known, is_request). A conversation is known once self
        authored a message in the observed window. Otherwise it is a request
        when the partner wrote, or when the window was cut at its limit.
    """
    if any(m.is_from(identity) for m in messages):
        return True, False
    partner_wrote = any(not m.is_from(identity) for m in messages)
    return False, partner_wrote or truncated


@dataclass
class Conversation:
    """Summary of a direct-message conversation with one partner."""
    partner: str
    last_message: Optional[DecryptedMessage] = None
    last_activity: int = 0
    has_legacy: bool = False
    has_sealed: bool = False
    recent_messages: list[DecryptedMessage] = field(default_factory=list)
    is_known: bool = False
    is_request: bool = False
    last_message_from_self: bool = False

    @property
    def id(self) -> str:
        """Returns the unique identifier (the partner's identity)."""
        return self.partner

    @classmethod
    def build(
        cls,
        partner: str,
        messages: list[DecryptedMessage],
        identity: str,
        limit: int,
        truncated: bool = False,
        has_legacy: Optional[bool] = None,
        has_sealed: Optional[bool] = None,
    ) -> "Conversation":
        """
        Builds a summary from a set of messages.

        Messages are deduplicated by id, sorted newest first and cut to
        `limit`. Protocol flags default to the protocols present in the
        messages.
        """
        unique: dict[str, DecryptedMessage] = {}
        for message in messages:
            unique.setdefault(message.id, message)
        ordered = sorted(unique.values(), key=lambda m: m.created_at, reverse=True)
        truncated = truncated or len(ordered) > limit
        recent = ordered[:limit]

        is_known, is_request = categorize(recent, identity, truncated=truncated)
        last = recent[0] if recent else None

        if has_legacy is None:
            has_legacy = any(m.protocol == Protocol.LEGACY for m in ordered)
        if has_sealed is None:
            has_sealed = any(m.protocol == Protocol.SEALED for m in ordered)

        return cls(
            partner=partner,
            last_message=last,
            last_activity=last.created_at if last else 0,
            has_legacy=has_legacy,
            has_sealed=has_sealed,
            recent_messages=recent,
            is_known=is_known,
            is_request=is_request,
            last_message_from_self=last.is_from(identity) if last else False,
        )


@dataclass
class PartnerSummary:
    """Bounded per-partner accumulator used while scanning."""
    partner: str
    limit: int
    messages: list[DecryptedMessage] = field(default_factory=list)
    seen_ids: set[str] = field(default_factory=set)

    @property
    def total_seen(self) -> int:
        return len(self.seen_ids)

    @property
    def truncated(self) -> bool:
        return self.total_seen > self.limit

    @property
    def last_activity(self) -> int:
        return self.messages[0].created_at if self.messages else 0

    def add(self, message: DecryptedMessage) -> bool:
        """Folds a message in, keeping only the newest `limit`. Returns False for duplicates."""
        if message.id in self.seen_ids:
            return False
        self.seen_ids.add(message.id)
        self.messages = sorted(
            self.messages + [message], key=lambda m: m.created_at, reverse=True
        )[: self.limit]
        return True

    def to_conversation(self, identity: str) -> Conversation:
        return Conversation.build(
            self.partner,
            self.messages,
            identity,
            self.limit,
            truncated=self.truncated,
        )


@dataclass
class ScanCursor:
    """Backward pagination state for one (partner, protocol) session."""
    oldest_seen_timestamp: Optional[int] = None
    total_processed: int = 0
    exhausted: bool = False

    def next_until(self) -> Optional[int]:
        """The `until` bound for the next batch: just before the oldest seen envelope."""
        if self.oldest_seen_timestamp is None:
            return None
        return self.oldest_seen_timestamp - 1


@dataclass
class ConversationPage:
    """A window of a conversation timeline."""
    messages: list[DecryptedMessage]
    has_more: bool
    oldest_timestamp: Optional[int]


@dataclass
class SendResult:
    """Result of a send operation."""
    message: DecryptedMessage
    event_ids: list[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def new_local_id() -> str:
    """Returns an id for a locally composed message."""
    return f"local-{uuid.uuid4()}"
