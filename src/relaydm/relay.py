"""
Relay interfaces.

This module provides abstract base classes for querying, subscribing to and
publishing on a relay pool, plus an in-memory implementation. Implementations
can use any relay transport.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional
import asyncio

from .models import RawEnvelope


@dataclass
class Filter:
    """Selects events by kind, author, tag values, time bounds and count."""

    kinds: list[int] = field(default_factory=list)
    """Event kinds to match (empty matches any kind)."""

    authors: Optional[list[str]] = None
    """Author identities to match (None matches any author)."""

    tags: dict[str, list[str]] = field(default_factory=dict)
    """Tag name to accepted values, e.g. {"p": [identity]}."""

    since: Optional[int] = None
    """Inclusive lower time bound."""

    until: Optional[int] = None
    """Inclusive upper time bound."""

    limit: Optional[int] = None
    """Maximum number of newest matching events to return."""

    def matches(self, envelope: RawEnvelope) -> bool:
        """Whether the envelope satisfies every condition except `limit`."""
        if self.kinds and envelope.kind not in self.kinds:
            return False
        if self.authors is not None and envelope.author not in self.authors:
            return False
        for name, values in self.tags.items():
            if not set(envelope.tag_values(name)) & set(values):
                return False
        if self.since is not None and envelope.created_at < self.since:
            return False
        if self.until is not None and envelope.created_at > self.until:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        """Returns the wire JSON form."""
        data: dict[str, Any] = {}
        if self.kinds:
            data["kinds"] = list(self.kinds)
        if self.authors is not None:
            data["authors"] = list(self.authors)
        for name, values in self.tags.items():
            data[f"#{name}"] = list(values)
        if self.since is not None:
            data["since"] = self.since
        if self.until is not None:
            data["until"] = self.until
        if self.limit is not None:
            data["limit"] = self.limit
        return data


class RelaySubscription(ABC):
    """A live stream of events. Must be closed explicitly."""

    @abstractmethod
    def __aiter__(self) -> "RelaySubscription":
        pass

    @abstractmethod
    async def __anext__(self) -> RawEnvelope:
        pass

    @abstractmethod
    def close(self) -> None:
        """Stop delivery. Iteration ends after close."""
        pass

    @property
    @abstractmethod
    def closed(self) -> bool:
        pass


class RelayPool(ABC):
    """Abstract base class for a pool of relays."""

    @abstractmethod
    async def query(self, filters: list[Filter]) -> list[RawEnvelope]:
        """Return stored events matching any of the filters."""
        pass

    @abstractmethod
    def subscribe(self, filters: list[Filter]) -> RelaySubscription:
        """Open a live subscription for events matching any of the filters."""
        pass

    @abstractmethod
    async def publish(self, envelope: RawEnvelope) -> None:
        """Publish a signed event."""
        pass


class InMemorySubscription(RelaySubscription):
    """Subscription fed by an InMemoryRelay."""

    _CLOSED = object()

    def __init__(self, relay: "InMemoryRelay", filters: list[Filter]) -> None:
        self.filters = filters
        self._relay = relay
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def deliver(self, envelope: RawEnvelope) -> None:
        if not self._closed and any(f.matches(envelope) for f in self.filters):
            self._queue.put_nowait(envelope)

    def __aiter__(self) -> "InMemorySubscription":
        return self

    async def __anext__(self) -> RawEnvelope:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._relay.detach(self)
        self._queue.put_nowait(self._CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed


class InMemoryRelay(RelayPool):
    """
    In-memory implementation of RelayPool (for testing and local use).

    Stores published events, answers queries newest first per filter, and
    delivers stored plus newly published events to open subscriptions.
    """

    def __init__(self, query_delay: float = 0.0) -> None:
        self._events: dict[str, RawEnvelope] = {}
        self._subscriptions: list[InMemorySubscription] = []
        self.query_delay = query_delay
        self.publish_error: Optional[Exception] = None
        self.query_count = 0

    @property
    def events(self) -> list[RawEnvelope]:
        return list(self._events.values())

    def add(self, *envelopes: RawEnvelope) -> None:
        """Store events without notifying subscriptions."""
        for envelope in envelopes:
            self._events[envelope.id] = envelope

    async def query(self, filters: list[Filter]) -> list[RawEnvelope]:
        self.query_count += 1
        if self.query_delay:
            await asyncio.sleep(self.query_delay)

        results: dict[str, RawEnvelope] = {}
        for f in filters:
            matching = sorted(
                (e for e in self._events.values() if f.matches(e)),
                key=lambda e: e.created_at,
                reverse=True,
            )
            if f.limit is not None:
                matching = matching[: f.limit]
            for envelope in matching:
                results.setdefault(envelope.id, envelope)
        return list(results.values())

    def subscribe(self, filters: list[Filter]) -> InMemorySubscription:
        subscription = InMemorySubscription(self, filters)
        for envelope in sorted(self._events.values(), key=lambda e: e.created_at):
            subscription.deliver(envelope)
        self._subscriptions.append(subscription)
        return subscription

    def detach(self, subscription: InMemorySubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def open_subscriptions(self) -> int:
        return len(self._subscriptions)

    async def publish(self, envelope: RawEnvelope) -> None:
        if self.publish_error is not None:
            raise self.publish_error
        self._events[envelope.id] = envelope
        for subscription in list(self._subscriptions):
            subscription.deliver(envelope)
