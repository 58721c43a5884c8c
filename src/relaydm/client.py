"""
Direct-message client.

The DirectMessagesClient ties the fetchers, aggregator, send coordinator,
pagination and live reconciler to one session store for a signed-in user.

Example usage:
    ```python
    signer = LocalSigner.generate()
    client = DirectMessagesClient(signer, relay, contacts=StaticContacts(mutual=[alice]))

    for conversation in await client.discover_conversations():
        print(conversation.partner, conversation.is_request)

    page = await client.get_messages(alice)
    live = await client.open_live(alice)
    await client.send_message(alice, "hello")
    async for message in live:
        print(message.content, message.send_state)
    ```
"""

from typing import Optional
import asyncio
import logging

from .aggregator import ContactDirectory, ConversationAggregator
from .config import SyncConfig
from .fetchers import DiscoveryScan, LegacyFetcher, ProtocolFetcher, SealedFetcher
from .models import Conversation, ConversationPage, DecryptedMessage, Protocol, SendResult
from .outbox import OutgoingMessage, SendCoordinator
from .pagination import PaginationManager
from .reconciler import LiveReconciler, LiveSubscription
from .relay import RelayPool
from .search import SearchResult, search_messages
from .signer import Signer
from .store import SessionStore
from .types import NoSignerCapabilityError

logger = logging.getLogger(__name__)


class DirectMessagesClient:
    """
    High-level client for encrypted direct messages.

    The client provides methods for:
    - Discovering conversations across both protocols
    - Loading a conversation's timeline and paging backward
    - Sending with optimistic display, retrying failed sends
    - Live updates for an open conversation
    - Searching what the session has decoded
    """

    def __init__(
        self,
        signer: Signer,
        relay: RelayPool,
        contacts: Optional[ContactDirectory] = None,
        config: Optional[SyncConfig] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            signer: Signer holding the user's identity and cipher schemes.
            relay: Relay pool to query, subscribe to and publish on.
            contacts: Optional contact directory used to probe for conversations.
            config: Sync configuration (default: SyncConfig()).
        """
        self.signer = signer
        self.relay = relay
        self.config = config or SyncConfig()
        self.store = SessionStore(self.config.optimistic_match_window)

        self.legacy = LegacyFetcher(relay, signer, self.store, self.config)
        self.sealed = SealedFetcher(relay, signer, self.store, self.config)

        fetchers = self._fetchers()
        self.aggregator = ConversationAggregator(signer.identity, relay, contacts, self.config)
        self.outbox = SendCoordinator(signer, relay, self.store, self.config)
        self.pagination = PaginationManager(self.store, fetchers, self.config)
        self.reconciler = LiveReconciler(signer.identity, relay, self.store, fetchers, self.config)
        self.scans: dict[Protocol, DiscoveryScan] = {}

        for fetcher in [self.legacy, self.sealed]:
            if not fetcher.available:
                logger.info("Signer has no %s scheme; protocol disabled", fetcher.protocol.value)

    def _fetchers(self) -> list[ProtocolFetcher]:
        fetchers: list[ProtocolFetcher] = [self.legacy]
        if self.config.sealed_enabled:
            fetchers.append(self.sealed)
        return fetchers

    @property
    def identity(self) -> str:
        """The user's identity."""
        return self.signer.identity

    @property
    def sealed_enabled(self) -> bool:
        """Whether the sealed protocol is configured on and supported by the signer."""
        return self.config.sealed_enabled and self.sealed.available

    @property
    def available_protocols(self) -> list[Protocol]:
        """Protocols usable in this session."""
        return [f.protocol for f in self._fetchers() if f.available]

    # MARK: - Conversations

    async def discover_conversations(self, probe: bool = True) -> list[Conversation]:
        """
        Discover every conversation involving the user.

        Runs the contact probe and each available protocol's discovery scan
        concurrently and merges the results. Scans that time out contribute
        what they read before the timeout.

        Args:
            probe: Whether to probe contacts for conversations discovery may miss.

        Returns:
            Conversations sorted by last activity, newest first.
        """
        fetchers = [f for f in self._fetchers() if f.available]
        self.scans = {
            f.protocol: DiscoveryScan(f.protocol, self.config.summary_messages_per_chat)
            for f in fetchers
        }

        probe_task = self.aggregator.probe() if probe else _nothing()
        results = await asyncio.gather(
            probe_task, *(f.discover(self.scans[f.protocol]) for f in fetchers)
        )
        probed = results[0]

        legacy_scan = self.scans.get(Protocol.LEGACY)
        sealed_scan = self.scans.get(Protocol.SEALED)
        conversations = self.aggregator.merge(
            probed,
            legacy_scan.conversations(self.identity) if legacy_scan else {},
            sealed_scan.conversations(self.identity) if sealed_scan else {},
        )
        self.store.set_conversations(conversations)

        partial = [s.protocol.value for s in self.scans.values() if s.partial]
        if partial:
            logger.warning("Discovery incomplete for %s", ", ".join(partial))
        logger.info("Discovered %d conversations", len(conversations))
        return conversations

    def conversations(self) -> list[Conversation]:
        """The conversations from the last discovery."""
        return self.store.conversations()

    # MARK: - Messages

    async def get_messages(self, partner: str, until: Optional[int] = None) -> ConversationPage:
        """
        Get a conversation's timeline, oldest first.

        The first call for a partner opens the conversation and loads its
        newest page; opening another partner discards this one's state.

        Args:
            partner: The other party's identity.
            until: Only return messages older than this timestamp. Older
                pages are loaded until a full page before it is available.
        """
        if self.pagination.active_partner != partner:
            await self.pagination.open(partner)
        if until is not None:
            await self.pagination.load_until(partner, until)
        return self.pagination.get_messages(partner, until)

    async def load_older(self, partner: str) -> ConversationPage:
        """Load the previous page of partner's conversation."""
        await self.pagination.load_older(partner)
        return self.pagination.get_messages(partner)

    def reached_start(self, partner: str) -> bool:
        return self.pagination.reached_start(partner)

    def search_messages(self, query: str) -> list[SearchResult]:
        """
        Search conversations by partner identity or decrypted content.

        Covers everything this session has decoded: discovery scans, loaded
        timelines and live updates. Results are newest first, one per partner.
        """
        messages: list[DecryptedMessage] = self.store.decoded_messages()
        for scan in self.scans.values():
            for summary in scan.summaries.values():
                messages.extend(summary.messages)
        for conversation in self.store.conversations():
            messages.extend(conversation.recent_messages)
        for partner in self.store.partners():
            messages.extend(self.store.timeline(partner))
        return search_messages(messages, query)

    # MARK: - Sending

    async def send_message(
        self,
        partner: str,
        content: str,
        protocol: Optional[Protocol] = None,
    ) -> SendResult:
        """
        Send a message.

        The message appears in the timeline as optimistic immediately. If
        publishing fails it stays there as failed and can be retried.

        Args:
            partner: Recipient identity.
            content: Plaintext message.
            protocol: Protocol to use (default: sealed when enabled, else legacy).

        Raises:
            NoSignerCapabilityError: If the protocol is disabled or unsupported.
        """
        if protocol is None:
            protocol = Protocol.SEALED if self.sealed_enabled else Protocol.LEGACY
        if protocol == Protocol.SEALED and not self.config.sealed_enabled:
            raise NoSignerCapabilityError(protocol.value)
        return await self.outbox.send(partner, content, protocol)

    async def retry_message(self, partner: str, local_id: str) -> SendResult:
        """Retry a failed send."""
        return await self.outbox.retry(partner, local_id)

    def discard_message(self, partner: str, local_id: str) -> bool:
        """Remove a failed or pending message from the timeline."""
        return self.outbox.discard(partner, local_id)

    def pending_messages(self, partner: Optional[str] = None) -> list[OutgoingMessage]:
        return self.outbox.pending(partner)

    # MARK: - Live updates

    async def open_live(self, partner: str) -> LiveSubscription:
        """Subscribe to new messages with partner."""
        return await self.reconciler.open(partner)

    async def close_live(self, partner: str) -> None:
        await self.reconciler.close(partner)

    async def close(self) -> None:
        """Close all subscriptions and drop session state."""
        await self.reconciler.close_all()
        self.pagination.close()
        self.store.clear()


async def _nothing() -> dict[str, Conversation]:
    return {}
