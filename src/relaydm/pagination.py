"""
Backward pagination over one conversation at a time.

Each (partner, protocol) pair keeps a ScanCursor in the session store. Loading
an older page asks every protocol that is not exhausted for the messages
before its cursor and prepends the ones not already in the timeline.
"""

from dataclasses import replace
from typing import Optional
import asyncio
import logging

from .config import SyncConfig
from .fetchers import FetchResult, ProtocolFetcher
from .models import ConversationPage, Protocol, ScanCursor
from .store import SessionStore

logger = logging.getLogger(__name__)


class PaginationManager:
    """Tracks the open conversation and its per-protocol cursors."""

    def __init__(
        self,
        store: SessionStore,
        fetchers: list[ProtocolFetcher],
        config: Optional[SyncConfig] = None,
    ) -> None:
        self.store = store
        self.fetchers = fetchers
        self.config = config or SyncConfig()
        self.active_partner: Optional[str] = None

    def _available(self) -> list[ProtocolFetcher]:
        return [f for f in self.fetchers if f.available]

    async def open(self, partner: str) -> ConversationPage:
        """
        Start a fresh pagination session for partner and load the first page.

        Switching partner discards the previous partner's cursors and fetched
        messages; unconfirmed local entries are kept.
        """
        if self.active_partner is not None and self.active_partner != partner:
            self.store.reset(self.active_partner)
        self.store.reset(partner)
        self.active_partner = partner

        await self.load_older(partner)
        return self.get_messages(partner)

    async def load_older(self, partner: str) -> dict[Protocol, ScanCursor]:
        """
        Load the page before each protocol's cursor.

        Returns:
            The cursors after loading, keyed by protocol
        """
        if self.active_partner != partner:
            return await self._reopen(partner)

        pending = [
            f for f in self._available()
            if not self.store.cursor(partner, f.protocol).exhausted
        ]
        results = await asyncio.gather(
            *(
                f.fetch_conversation(
                    partner,
                    until=self.store.cursor(partner, f.protocol).next_until(),
                    max_messages=self.config.page_size,
                )
                for f in pending
            )
        )

        boundary = self._boundary(results)
        for fetcher, result in zip(pending, results):
            page = self._clamp(result, boundary)
            self._advance(self.store.cursor(partner, fetcher.protocol), page)
            added = self.store.prepend(partner, page.messages)
            logger.debug(
                "Loaded %d older %s messages for %s", len(added), fetcher.protocol.value, partner
            )

        return self._cursors(partner)

    async def load_until(self, partner: str, until: int) -> dict[Protocol, ScanCursor]:
        """
        Load older pages until a full page before `until` is in the timeline.

        Pages are loaded in order, so the timeline stays contiguous; loading
        stops at the start of the conversation or when a page makes no progress.
        """
        if self.active_partner != partner:
            await self.open(partner)

        while not self.reached_start(partner):
            before = [m for m in self.store.timeline(partner) if m.created_at < until]
            if len(before) >= self.config.page_size:
                break

            previous = self._progress(partner)
            await self.load_older(partner)
            if self._progress(partner) == previous:
                logger.warning("No progress paging %s back to %d", partner, until)
                break

        return self._cursors(partner)

    async def _reopen(self, partner: str) -> dict[Protocol, ScanCursor]:
        await self.open(partner)
        return self._cursors(partner)

    def _cursors(self, partner: str) -> dict[Protocol, ScanCursor]:
        return {f.protocol: self.store.cursor(partner, f.protocol) for f in self._available()}

    def _progress(self, partner: str) -> list[tuple[Optional[int], bool]]:
        return [
            (c.oldest_seen_timestamp, c.exhausted) for c in self._cursors(partner).values()
        ]

    @staticmethod
    def _boundary(results: list[FetchResult]) -> Optional[int]:
        """The newest point that every protocol still being read has covered."""
        covered = [
            r.oldest_timestamp for r in results
            if not r.exhausted and r.oldest_timestamp is not None
        ]
        return max(covered) if covered else None

    @staticmethod
    def _clamp(result: FetchResult, boundary: Optional[int]) -> FetchResult:
        """
        Cut one protocol's page at the shared boundary.

        Messages older than the boundary are left for the next page, and the
        protocol's cursor resumes from the boundary instead of its own point.
        """
        if boundary is None or (not result.exhausted and result.oldest_timestamp is None):
            return result

        kept = [m for m in result.messages if m.created_at >= boundary]
        if result.exhausted and len(kept) == len(result.messages):
            return result

        return replace(result, messages=kept, exhausted=False, oldest_timestamp=boundary)

    def _advance(self, cursor: ScanCursor, result: FetchResult) -> None:
        cursor.total_processed += result.processed
        if result.oldest_timestamp is not None and (
            cursor.oldest_seen_timestamp is None
            or result.oldest_timestamp < cursor.oldest_seen_timestamp
        ):
            cursor.oldest_seen_timestamp = result.oldest_timestamp
        if result.exhausted:
            cursor.exhausted = True

    def reached_start(self, partner: str) -> bool:
        """Whether every available protocol has been read back to the beginning."""
        return all(
            self.store.has_cursor(partner, f.protocol)
            and self.store.cursor(partner, f.protocol).exhausted
            for f in self._available()
        )

    def get_messages(self, partner: str, until: Optional[int] = None) -> ConversationPage:
        """The accumulated timeline, oldest first, optionally limited to before `until`."""
        messages = self.store.timeline(partner)
        if until is not None:
            messages = [m for m in messages if m.created_at < until]

        cursors = [
            self.store.cursor(partner, f.protocol)
            for f in self._available()
            if self.store.has_cursor(partner, f.protocol)
        ]
        oldest = [c.oldest_seen_timestamp for c in cursors if c.oldest_seen_timestamp is not None]

        return ConversationPage(
            messages=messages,
            has_more=not self.reached_start(partner),
            oldest_timestamp=min(oldest) if oldest else None,
        )

    def close(self) -> None:
        """End the pagination session."""
        if self.active_partner is not None:
            self.store.drop_cursors(self.active_partner)
        self.active_partner = None
