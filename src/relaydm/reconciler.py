"""
Live updates for open conversations.

A LiveSubscription consumes a relay subscription in a background task,
decodes each envelope, and reconciles it into the session store: a confirmed
message either replaces the matching optimistic entry or is appended. Each
applied message is also yielded to whoever iterates the subscription.
"""

from typing import Optional
import asyncio
import contextlib
import logging
import time

from .config import SyncConfig
from .envelope import protocol_for_kind
from .fetchers import LegacyFetcher, ProtocolFetcher
from .models import DecryptedMessage, Protocol, RawEnvelope
from .relay import Filter, RelayPool, RelaySubscription
from .store import SessionStore
from .types import KIND_LEGACY_DM, KIND_WRAPPER, RelayDMError

logger = logging.getLogger(__name__)


class LiveSubscription:
    """
    Async iterator over messages applied to one partner's timeline.

    Must be closed explicitly; iteration ends once closed.
    """

    _CLOSED = object()

    def __init__(self, partner: str, source: RelaySubscription) -> None:
        self.partner = partner
        self.source = source
        self.seen: set[str] = set()
        self.task: Optional[asyncio.Task] = None
        self._updates: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def __aiter__(self) -> "LiveSubscription":
        return self

    async def __anext__(self) -> DecryptedMessage:
        item = await self._updates.get()
        if item is self._CLOSED:
            # keep the marker for other waiters
            self._updates.put_nowait(item)
            raise StopAsyncIteration
        return item

    def push(self, message: DecryptedMessage) -> None:
        if not self._closed:
            self._updates.put_nowait(message)

    def finish(self) -> None:
        """Signal the end of the stream to iterators."""
        self._updates.put_nowait(self._CLOSED)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.source.close()
        if self.task is not None and not self.task.done():
            self.task.cancel()
        self.finish()

    @property
    def closed(self) -> bool:
        return self._closed


class LiveReconciler:
    """Keeps at most one live subscription per partner."""

    def __init__(
        self,
        identity: str,
        relay: RelayPool,
        store: SessionStore,
        fetchers: list[ProtocolFetcher],
        config: Optional[SyncConfig] = None,
    ) -> None:
        self.identity = identity
        self.relay = relay
        self.store = store
        self.fetchers = {f.protocol: f for f in fetchers}
        self.config = config or SyncConfig()
        self._subscriptions: dict[str, LiveSubscription] = {}

    def subscription(self, partner: str) -> Optional[LiveSubscription]:
        return self._subscriptions.get(partner)

    def since(self, partner: str) -> int:
        """Start of the live window: newest confirmed timestamp less the overlap."""
        confirmed = [m.created_at for m in self.store.timeline(partner) if not m.is_local]
        latest = max(confirmed) if confirmed else int(time.time())
        return latest - self.config.subscription_overlap

    def filters(self, partner: str, since: int) -> list[Filter]:
        filters: list[Filter] = []
        legacy = self.fetchers.get(Protocol.LEGACY)
        if legacy is not None and legacy.available:
            filters.append(
                Filter(kinds=[KIND_LEGACY_DM], authors=[partner], tags={"p": [self.identity]}, since=since)
            )
            filters.append(
                Filter(kinds=[KIND_LEGACY_DM], authors=[self.identity], tags={"p": [partner]}, since=since)
            )
        sealed = self.fetchers.get(Protocol.SEALED)
        if sealed is not None and sealed.available:
            filters.append(Filter(kinds=[KIND_WRAPPER], tags={"p": [self.identity]}, since=since))
        return filters

    async def open(self, partner: str) -> LiveSubscription:
        """Open a live subscription for partner, closing any previous one first."""
        await self.close(partner)

        since = self.since(partner)
        subscription = LiveSubscription(partner, self.relay.subscribe(self.filters(partner, since)))
        subscription.task = asyncio.ensure_future(self._consume(subscription))
        self._subscriptions[partner] = subscription

        logger.info("Opened live subscription for %s since %d", partner, since)
        return subscription

    async def _consume(self, subscription: LiveSubscription) -> None:
        try:
            async for envelope in subscription.source:
                await self.process(subscription, envelope)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Live subscription for %s stopped", subscription.partner)
        finally:
            subscription.finish()

    async def process(
        self, subscription: LiveSubscription, envelope: RawEnvelope
    ) -> Optional[DecryptedMessage]:
        """
        Reconcile one live envelope into the partner's timeline.

        Returns:
            The applied message, or None if it was skipped
        """
        if envelope.id in subscription.seen:
            return None
        subscription.seen.add(envelope.id)

        protocol = protocol_for_kind(envelope.kind)
        fetcher = self.fetchers.get(protocol) if protocol is not None else None
        if fetcher is None or not fetcher.available:
            return None
        if isinstance(fetcher, LegacyFetcher) and not fetcher.is_between(envelope, subscription.partner):
            return None

        try:
            message = await fetcher.decode(envelope)
        except RelayDMError as e:
            logger.debug("Dropping live envelope %s: %s", envelope.id, e)
            return None
        if message is None or message.partner != subscription.partner:
            return None

        applied = self.store.reconcile(subscription.partner, message)
        if applied is not None:
            subscription.push(applied)
        return applied

    async def close(self, partner: str) -> None:
        subscription = self._subscriptions.pop(partner, None)
        if subscription is None:
            return
        subscription.close()
        if subscription.task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await subscription.task
        logger.info("Closed live subscription for %s", partner)

    async def close_all(self) -> None:
        for partner in list(self._subscriptions):
            await self.close(partner)
