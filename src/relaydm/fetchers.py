"""
Protocol fetchers.

Each fetcher retrieves candidate envelopes for one protocol, decodes them and
yields DecryptedMessage objects. It runs in two modes:

- discovery: bulk scan of every envelope involving self, folded into bounded
  per-partner summaries;
- conversation: envelopes between self and one partner, walked backward from
  an `until` bound.

Both modes walk one or more query "directions" with a shared timestamp cursor.
After each batch the cursor moves to one second before the newest of the
oldest timestamps among directions that returned a full batch, so no
direction skips events; re-fetched envelopes are dropped by id.
A conversation page keeps only messages at or after the point its walk fully
covered; older ones are read again by the next page.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Optional
import asyncio
import logging

from .config import SyncConfig
from .envelope import decode_legacy, decode_sealed
from .models import Conversation, DecryptedMessage, PartnerSummary, Protocol, RawEnvelope
from .relay import Filter, RelayPool
from .signer import Signer
from .store import SessionStore
from .types import (
    KIND_LEGACY_DM,
    KIND_WRAPPER,
    MalformedLayerError,
    NoSignerCapabilityError,
    TransportTimeoutError,
    UndecryptableError,
)

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryScan:
    """
    State of one discovery scan.

    Summaries are folded in as each batch is decoded, so a scan that is
    cancelled or times out part way still holds valid partial results.
    """
    protocol: Protocol
    summary_limit: int
    summaries: dict[str, PartnerSummary] = field(default_factory=dict)
    seen_envelopes: set[str] = field(default_factory=set)
    processed: int = 0
    decoded: int = 0
    failures: int = 0
    batches: int = 0
    partial: bool = False
    complete: bool = False

    def fold(self, message: DecryptedMessage) -> None:
        summary = self.summaries.get(message.partner)
        if summary is None:
            summary = PartnerSummary(partner=message.partner, limit=self.summary_limit)
            self.summaries[message.partner] = summary
        summary.add(message)

    def conversations(self, identity: str) -> dict[str, Conversation]:
        """Per-partner conversation summaries built from the scan so far."""
        return {
            partner: summary.to_conversation(identity)
            for partner, summary in self.summaries.items()
        }


@dataclass
class FetchResult:
    """
    Result of a conversation-mode fetch.

    `oldest_timestamp` is the point the fetch fully covered down to: the next
    fetch resumes at one second before it. None when nothing was read.
    """
    messages: list[DecryptedMessage]
    exhausted: bool
    oldest_timestamp: Optional[int]
    processed: int
    timed_out: bool = False


@dataclass
class _Walk:
    exhausted: bool = False
    timed_out: bool = False
    processed: int = 0
    oldest_timestamp: Optional[int] = None


class ProtocolFetcher(ABC):
    """Shared query, decode and walk logic for one protocol."""

    protocol: Protocol
    kind: int

    def __init__(
        self,
        relay: RelayPool,
        signer: Signer,
        store: SessionStore,
        config: Optional[SyncConfig] = None,
    ) -> None:
        self.relay = relay
        self.signer = signer
        self.store = store
        self.config = config or SyncConfig()

    @property
    def identity(self) -> str:
        return self.signer.identity

    @property
    def available(self) -> bool:
        """Whether the signer offers the scheme this protocol needs."""
        return self.signer.scheme_for(self.protocol) is not None

    @property
    @abstractmethod
    def timeout(self) -> float:
        pass

    @abstractmethod
    async def _decode_one(self, envelope: RawEnvelope) -> DecryptedMessage:
        pass

    @abstractmethod
    def _discovery_directions(self) -> list[Filter]:
        pass

    @abstractmethod
    async def fetch_conversation(
        self,
        partner: str,
        until: Optional[int] = None,
        max_messages: Optional[int] = None,
    ) -> FetchResult:
        pass

    def _require_available(self) -> None:
        if not self.available:
            raise NoSignerCapabilityError(self.protocol.value)

    async def _query(self, filters: list[Filter]) -> list[RawEnvelope]:
        try:
            return await asyncio.wait_for(self.relay.query(filters), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise TransportTimeoutError(f"{self.protocol.value} query", self.timeout)

    async def decode(self, envelope: RawEnvelope) -> Optional[DecryptedMessage]:
        """
        Decode an envelope, memoizing the outcome for the session.

        Returns:
            The message, or None when the envelope is undecryptable or malformed
        """
        cached = self.store.cached_decode(envelope.id)
        if isinstance(cached, DecryptedMessage):
            return cached
        if cached is not None:
            return None

        try:
            message = await self._decode_one(envelope)
        except (UndecryptableError, MalformedLayerError) as e:
            logger.debug("Skipping %s envelope %s: %s", self.protocol.value, envelope.id, e)
            self.store.remember_decode(envelope.id, e)
            return None

        self.store.remember_decode(envelope.id, message)
        return message

    async def _walk(
        self,
        directions: list[Filter],
        until: Optional[int],
        batch_size: int,
        max_envelopes: int,
        on_batch: Callable[[list[RawEnvelope]], Awaitable[bool]],
    ) -> _Walk:
        walk = _Walk()
        active = list(directions)
        seen: set[str] = set()

        while active and walk.processed < max_envelopes:
            limit = min(batch_size, max_envelopes - walk.processed)
            filters = [replace(d, until=until, limit=limit) for d in active]
            results = await asyncio.gather(
                *(self._query([f]) for f in filters), return_exceptions=True
            )

            still_active: list[Filter] = []
            full_oldest: list[int] = []
            fresh: list[RawEnvelope] = []
            for direction, result in zip(active, results):
                if isinstance(result, TransportTimeoutError):
                    logger.warning("%s; keeping partial results", result)
                    walk.timed_out = True
                    continue
                if isinstance(result, BaseException):
                    raise result

                walk.processed += len(result)
                for envelope in result:
                    if envelope.id not in seen:
                        seen.add(envelope.id)
                        fresh.append(envelope)

                if len(result) >= limit and result:
                    still_active.append(direction)
                    full_oldest.append(min(e.created_at for e in result))

            fresh.sort(key=lambda e: e.created_at, reverse=True)
            keep_going = await on_batch(fresh)

            if walk.timed_out:
                break
            if not still_active:
                walk.exhausted = True
                if fresh:
                    walk.oldest_timestamp = fresh[-1].created_at
                break

            # everything at or after this timestamp has been read in every direction
            walk.oldest_timestamp = max(full_oldest)
            if not keep_going:
                break

            until = walk.oldest_timestamp - 1
            active = still_active

        return walk

    def _page(self, collected: dict[str, DecryptedMessage], walk: _Walk) -> FetchResult:
        """
        Build a conversation page from a finished walk.

        Until the walk is exhausted, messages older than the point it fully
        covered are left for the next page, so consecutive pages never overlap
        in time. A walk that covered nothing returns no messages.
        """
        messages = sorted(collected.values(), key=lambda m: m.created_at)
        if not walk.exhausted:
            covered = walk.oldest_timestamp
            messages = [m for m in messages if covered is not None and m.created_at >= covered]

        return FetchResult(
            messages=messages,
            exhausted=walk.exhausted,
            oldest_timestamp=walk.oldest_timestamp,
            processed=walk.processed,
            timed_out=walk.timed_out,
        )

    # MARK: - Discovery

    async def discover(self, scan: Optional[DiscoveryScan] = None) -> DiscoveryScan:
        """
        Scan every envelope involving self and fold it into per-partner summaries.

        Args:
            scan: Scan state to continue filling (a fresh one by default).
                Callers that may cancel the scan keep a reference to read
                partial results.

        Raises:
            NoSignerCapabilityError: If the signer lacks this protocol's scheme
        """
        self._require_available()
        if scan is None:
            scan = DiscoveryScan(self.protocol, self.config.summary_messages_per_chat)

        logger.info(
            "Starting %s discovery scan (limit %d, batch %d)",
            self.protocol.value, self.config.scan_total_limit, self.config.batch_size,
        )

        async def fold_batch(envelopes: list[RawEnvelope]) -> bool:
            scan.batches += 1
            for envelope in envelopes:
                if envelope.id in scan.seen_envelopes:
                    continue
                message = await self.decode(envelope)
                # nothing is recorded for an envelope until its decode has finished
                if message is None or message.error:
                    scan.failures += 1
                if message is not None:
                    scan.decoded += 1
                    scan.fold(message)
                scan.seen_envelopes.add(envelope.id)
                scan.processed += 1
            return True

        walk = await self._walk(
            self._discovery_directions(),
            until=None,
            batch_size=self.config.batch_size,
            max_envelopes=self.config.scan_total_limit,
            on_batch=fold_batch,
        )
        scan.partial = walk.timed_out
        scan.complete = walk.exhausted

        logger.info(
            "%s discovery: %d envelopes, %d decoded, %d failed, %d partners",
            self.protocol.value, scan.processed, scan.decoded, scan.failures, len(scan.summaries),
        )
        return scan


class LegacyFetcher(ProtocolFetcher):
    """Fetcher for directly addressed legacy envelopes."""

    protocol = Protocol.LEGACY
    kind = KIND_LEGACY_DM

    @property
    def timeout(self) -> float:
        return self.config.legacy_query_timeout

    async def _decode_one(self, envelope: RawEnvelope) -> DecryptedMessage:
        return await decode_legacy(envelope, self.signer)

    def _discovery_directions(self) -> list[Filter]:
        return [
            Filter(kinds=[self.kind], tags={"p": [self.identity]}),
            Filter(kinds=[self.kind], authors=[self.identity]),
        ]

    def is_between(self, envelope: RawEnvelope, partner: str) -> bool:
        """Exact (author, addressee) match in either direction."""
        if envelope.kind != self.kind:
            return False
        recipients = envelope.tag_values("p")
        if len(recipients) != 1:
            return False
        pair = (envelope.author, recipients[0])
        return pair in ((self.identity, partner), (partner, self.identity))

    async def fetch_conversation(
        self,
        partner: str,
        until: Optional[int] = None,
        max_messages: Optional[int] = None,
    ) -> FetchResult:
        """
        Fetch legacy messages between self and partner, newest first from `until`.

        Raises:
            NoSignerCapabilityError: If the signer lacks the legacy scheme
        """
        self._require_available()
        cap = max_messages or self.config.max_conversation_messages
        collected: dict[str, DecryptedMessage] = {}

        async def collect(envelopes: list[RawEnvelope]) -> bool:
            for envelope in envelopes:
                if not self.is_between(envelope, partner):
                    continue
                message = await self.decode(envelope)
                if message is not None:
                    collected.setdefault(message.id, message)
            return len(collected) < cap

        walk = await self._walk(
            [
                Filter(kinds=[self.kind], authors=[partner], tags={"p": [self.identity]}),
                Filter(kinds=[self.kind], authors=[self.identity], tags={"p": [partner]}),
            ],
            until=until,
            batch_size=min(self.config.conversation_batch_size, cap),
            max_envelopes=self.config.max_conversation_messages * 2,
            on_batch=collect,
        )

        return self._page(collected, walk)


class SealedFetcher(ProtocolFetcher):
    """
    Fetcher for sealed Wrappers.

    Wrappers are only routed by their reader tag, so both discovery and
    conversation mode read every Wrapper addressed to self and sort messages
    into conversations after decryption.
    """

    protocol = Protocol.SEALED
    kind = KIND_WRAPPER

    @property
    def timeout(self) -> float:
        return self.config.sealed_query_timeout

    async def _decode_one(self, envelope: RawEnvelope) -> DecryptedMessage:
        return await decode_sealed(envelope, self.signer)

    def _discovery_directions(self) -> list[Filter]:
        return [Filter(kinds=[self.kind], tags={"p": [self.identity]})]

    async def fetch_conversation(
        self,
        partner: str,
        until: Optional[int] = None,
        max_messages: Optional[int] = None,
    ) -> FetchResult:
        """
        Fetch sealed messages with partner, newest first from `until`.

        Raises:
            NoSignerCapabilityError: If the signer lacks the sealed scheme
        """
        self._require_available()
        cap = max_messages or self.config.max_conversation_messages
        collected: dict[str, DecryptedMessage] = {}

        async def collect(envelopes: list[RawEnvelope]) -> bool:
            for envelope in envelopes:
                message = await self.decode(envelope)
                if message is not None and message.partner == partner:
                    collected.setdefault(message.id, message)
            return len(collected) < cap

        walk = await self._walk(
            self._discovery_directions(),
            until=until,
            batch_size=self.config.batch_size,
            max_envelopes=self.config.scan_total_limit,
            on_batch=collect,
        )

        return self._page(collected, walk)
