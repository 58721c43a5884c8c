"""
Conversation aggregation.

Conversation lists come from two sources: a cheap probe over known contacts
that only proves a conversation exists, and the protocol discovery scans that
carry decrypted content. The aggregator runs the probe and merges all sources
into one Conversation per partner.
"""

from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Iterable, Optional
import asyncio
import logging

from .config import SyncConfig
from .models import Conversation, DecryptedMessage, Protocol, RawEnvelope
from .relay import Filter, RelayPool
from .types import ENCRYPTED_PLACEHOLDER, KIND_LEGACY_DM, KIND_WRAPPER, TransportTimeoutError

logger = logging.getLogger(__name__)


class ContactDirectory(ABC):
    """Interface for the user's social graph."""

    @abstractmethod
    async def mutual_contacts(self) -> list[str]:
        """Identities that follow the user and are followed back."""
        ...

    @abstractmethod
    async def followed_contacts(self) -> list[str]:
        """Identities the user follows."""
        ...


class StaticContacts(ContactDirectory):
    """ContactDirectory backed by fixed lists."""

    def __init__(
        self,
        mutual: Optional[Iterable[str]] = None,
        followed: Optional[Iterable[str]] = None,
    ) -> None:
        self._mutual = list(mutual or [])
        self._followed = list(followed or [])

    async def mutual_contacts(self) -> list[str]:
        return list(self._mutual)

    async def followed_contacts(self) -> list[str]:
        return list(self._followed)


class ConversationAggregator:
    """Builds the merged conversation list for one identity."""

    def __init__(
        self,
        identity: str,
        relay: RelayPool,
        contacts: Optional[ContactDirectory] = None,
        config: Optional[SyncConfig] = None,
    ) -> None:
        self.identity = identity
        self.relay = relay
        self.contacts = contacts
        self.config = config or SyncConfig()

    # MARK: - Probe

    async def candidates(self) -> list[str]:
        """Mutual contacts first, then followed contacts not already listed."""
        if self.contacts is None:
            return []
        ordered: list[str] = []
        for partner in await self.contacts.mutual_contacts() + await self.contacts.followed_contacts():
            if partner != self.identity and partner not in ordered:
                ordered.append(partner)
        return ordered

    def _probe_filters(self, partner: str) -> list[Filter]:
        filters = [
            Filter(kinds=[KIND_LEGACY_DM], authors=[partner], tags={"p": [self.identity]}, limit=1),
            Filter(kinds=[KIND_LEGACY_DM], authors=[self.identity], tags={"p": [partner]}, limit=1),
        ]
        if self.config.sealed_enabled:
            filters.append(
                Filter(kinds=[KIND_WRAPPER], authors=[partner], tags={"p": [self.identity]}, limit=1)
            )
        return filters

    def _placeholder(self, partner: str, envelope: RawEnvelope) -> DecryptedMessage:
        protocol = Protocol.SEALED if envelope.kind == KIND_WRAPPER else Protocol.LEGACY
        return DecryptedMessage(
            id=envelope.id,
            partner=partner,
            author=envelope.author,
            created_at=envelope.created_at,
            protocol=protocol,
            content=ENCRYPTED_PLACEHOLDER,
        )

    async def _probe_one(self, partner: str) -> Optional[Conversation]:
        try:
            envelopes = await asyncio.wait_for(
                self.relay.query(self._probe_filters(partner)),
                timeout=self.config.probe_timeout,
            )
        except asyncio.TimeoutError:
            raise TransportTimeoutError(f"probe {partner[:12]}", self.config.probe_timeout)

        if not envelopes:
            return None
        placeholders = [self._placeholder(partner, e) for e in envelopes]
        return Conversation.build(
            partner, placeholders, self.identity, self.config.recent_messages_window
        )

    async def probe(self, candidates: Optional[list[str]] = None) -> dict[str, Conversation]:
        """
        Check candidate partners for any message without decrypting.

        Candidates are probed in concurrent chunks; a failed or slow probe is
        logged and skipped.

        Args:
            candidates: Partners to probe (default: the contact directory)

        Returns:
            Placeholder conversations keyed by partner
        """
        if candidates is None:
            candidates = await self.candidates()

        found: dict[str, Conversation] = {}
        chunk_size = max(1, self.config.probe_batch_size)
        for start in range(0, len(candidates), chunk_size):
            chunk = candidates[start:start + chunk_size]
            results = await asyncio.gather(
                *(self._probe_one(partner) for partner in chunk), return_exceptions=True
            )
            for partner, result in zip(chunk, results):
                if isinstance(result, Exception):
                    logger.debug("Probe failed for %s: %s", partner, result)
                elif isinstance(result, BaseException):
                    raise result
                elif result is not None:
                    found[partner] = result

        logger.info("Probed %d contacts, %d with messages", len(candidates), len(found))
        return found

    # MARK: - Merge

    def combine(self, a: Conversation, b: Conversation) -> Conversation:
        """
        Merge two summaries of the same partner.

        Summary fields come from the more recent one; recent messages are
        unioned and cut to the window; protocol flags are OR-ed.
        """
        newer = a if a.last_activity >= b.last_activity else b

        unique: dict[str, DecryptedMessage] = {}
        for message in a.recent_messages + b.recent_messages:
            unique.setdefault(message.id, message)
        recent = sorted(unique.values(), key=lambda m: m.created_at, reverse=True)
        recent = recent[: self.config.recent_messages_window]

        is_known = a.is_known or b.is_known
        return replace(
            newer,
            recent_messages=recent,
            has_legacy=a.has_legacy or b.has_legacy,
            has_sealed=a.has_sealed or b.has_sealed,
            is_known=is_known,
            is_request=not is_known and (a.is_request or b.is_request),
        )

    def merge(
        self,
        probe: dict[str, Conversation],
        legacy: dict[str, Conversation],
        sealed: dict[str, Conversation],
    ) -> list[Conversation]:
        """
        Merge probe placeholders with both protocols' discovery results.

        Returns:
            Conversations sorted by last activity, newest first
        """
        discovered: dict[str, Conversation] = {}
        for source in (legacy, sealed):
            for partner, conversation in source.items():
                existing = discovered.get(partner)
                discovered[partner] = (
                    conversation if existing is None else self.combine(existing, conversation)
                )

        merged = dict(probe)
        merged.update(discovered)

        conversations = list(merged.values())
        if not self.config.sealed_enabled:
            conversations = [c for c in conversations if c.has_legacy or not c.has_sealed]

        return sorted(conversations, key=lambda c: c.last_activity, reverse=True)
