"""Tests for backward pagination."""

import pytest
from relaydm.config import SyncConfig
from relaydm.envelope import encode_legacy, encode_sealed
from relaydm.fetchers import LegacyFetcher, SealedFetcher
from relaydm.models import Protocol
from relaydm.pagination import PaginationManager
from relaydm.store import SessionStore


def manager(signer, relay, page_size: int = 3) -> PaginationManager:
    config = SyncConfig(page_size=page_size)
    store = SessionStore()
    fetchers = [
        LegacyFetcher(relay, signer, store, config),
        SealedFetcher(relay, signer, store, config),
    ]
    return PaginationManager(store, fetchers, config)


async def seed_legacy(relay, sender, recipient, count: int, start: int = 100) -> None:
    for i in range(count):
        relay.add(await encode_legacy(recipient.identity, f"m{i}", sender, created_at=start + i * 10))


class TestPagination:
    """Test paging a conversation backward."""

    @pytest.mark.asyncio
    async def test_open_loads_newest_page(self, alice, bob, relay) -> None:
        await seed_legacy(relay, bob, alice, 7)
        pages = manager(alice, relay)

        page = await pages.open(bob.identity)

        assert [m.content for m in page.messages] == ["m4", "m5", "m6"]
        assert page.has_more
        assert page.oldest_timestamp == 140

    @pytest.mark.asyncio
    async def test_pages_do_not_overlap_and_reach_start(self, alice, bob, relay) -> None:
        await seed_legacy(relay, bob, alice, 7)
        pages = manager(alice, relay)
        await pages.open(bob.identity)

        cursor_history = []
        while not pages.reached_start(bob.identity):
            cursors = await pages.load_older(bob.identity)
            cursor_history.append(cursors[Protocol.LEGACY].oldest_seen_timestamp)

        messages = pages.get_messages(bob.identity).messages
        assert [m.content for m in messages] == [f"m{i}" for i in range(7)]
        assert len({m.id for m in messages}) == 7
        assert cursor_history == sorted(cursor_history, reverse=True)
        assert not pages.get_messages(bob.identity).has_more

    @pytest.mark.asyncio
    async def test_load_after_start_is_noop(self, alice, bob, relay) -> None:
        await seed_legacy(relay, bob, alice, 2)
        pages = manager(alice, relay)
        await pages.open(bob.identity)
        assert pages.reached_start(bob.identity)

        queries = relay.query_count
        await pages.load_older(bob.identity)
        assert relay.query_count == queries

    @pytest.mark.asyncio
    async def test_protocols_merged(self, alice, bob, relay) -> None:
        await seed_legacy(relay, bob, alice, 2)
        bundle = await encode_sealed(alice.identity, "sealed hi", bob, created_at=105)
        relay.add(*bundle.wrappers)

        page = await manager(alice, relay).open(bob.identity)

        assert [m.content for m in page.messages] == ["m0", "sealed hi", "m1"]

    @pytest.mark.asyncio
    async def test_get_messages_until(self, alice, bob, relay) -> None:
        await seed_legacy(relay, bob, alice, 3)
        pages = manager(alice, relay)
        await pages.open(bob.identity)

        assert [m.content for m in pages.get_messages(bob.identity, until=120).messages] == ["m0", "m1"]

    @pytest.mark.asyncio
    async def test_partner_switch_discards_state(self, alice, bob, carol, relay) -> None:
        await seed_legacy(relay, bob, alice, 4)
        await seed_legacy(relay, carol, alice, 2)
        pages = manager(alice, relay)
        await pages.open(bob.identity)

        page = await pages.open(carol.identity)

        assert [m.content for m in page.messages] == ["m0", "m1"]
        assert pages.store.timeline(bob.identity) == []
        assert not pages.store.has_cursor(bob.identity, Protocol.LEGACY)
        assert pages.active_partner == carol.identity

    @pytest.mark.asyncio
    async def test_load_older_for_other_partner_reopens(self, alice, bob, carol, relay) -> None:
        await seed_legacy(relay, bob, alice, 2)
        await seed_legacy(relay, carol, alice, 2)
        pages = manager(alice, relay)
        await pages.open(bob.identity)

        await pages.load_older(carol.identity)

        assert pages.active_partner == carol.identity
        assert len(pages.get_messages(carol.identity).messages) == 2

    @pytest.mark.asyncio
    async def test_close(self, alice, bob, relay) -> None:
        await seed_legacy(relay, bob, alice, 2)
        pages = manager(alice, relay)
        await pages.open(bob.identity)

        pages.close()

        assert pages.active_partner is None
        assert not pages.store.has_cursor(bob.identity, Protocol.LEGACY)


async def load_all_pages(pages: PaginationManager, partner: str) -> list[list[int]]:
    """Open a conversation and page back to the start, returning each page's timestamps."""
    first = await pages.open(partner)
    loaded = [[m.created_at for m in first.messages]]
    for _ in range(50):
        if pages.reached_start(partner):
            break
        known = {m.id for m in pages.store.timeline(partner)}
        await pages.load_older(partner)
        loaded.append([m.created_at for m in pages.store.timeline(partner) if m.id not in known])
    return loaded


def assert_no_overlap(loaded: list[list[int]]) -> None:
    for newer, older in zip(loaded, loaded[1:]):
        if newer and older:
            assert max(older) <= min(newer)


class TestPageBoundaries:
    """Test that each older page ends where the previous one began."""

    @pytest.mark.asyncio
    async def test_directions_with_disjoint_ranges(self, alice, bob, relay) -> None:
        for i in range(30):
            relay.add(await encode_legacy(alice.identity, f"in{i}", bob, created_at=1000 + i))
            relay.add(await encode_legacy(bob.identity, f"out{i}", alice, created_at=100 + i))
        pages = manager(alice, relay, page_size=25)

        loaded = await load_all_pages(pages, bob.identity)

        assert_no_overlap(loaded)
        assert sum(len(page) for page in loaded) == 60
        assert pages.reached_start(bob.identity)

    @pytest.mark.asyncio
    async def test_protocols_with_disjoint_ranges(self, alice, bob, relay) -> None:
        await seed_legacy(relay, bob, alice, 10, start=1000)
        for i in range(5):
            bundle = await encode_sealed(alice.identity, f"s{i}", bob, created_at=100 + i)
            relay.add(*bundle.wrappers)
        pages = manager(alice, relay, page_size=3)

        loaded = await load_all_pages(pages, bob.identity)

        assert loaded[0] == [1070, 1080, 1090]
        assert loaded[-1] == [100, 101, 102, 103, 104, 1000]
        assert_no_overlap(loaded)
        assert sum(len(page) for page in loaded) == 15

    @pytest.mark.asyncio
    async def test_clamped_protocol_resumes_from_boundary(self, alice, bob, relay) -> None:
        await seed_legacy(relay, bob, alice, 10, start=1000)
        bundle = await encode_sealed(alice.identity, "old sealed", bob, created_at=100)
        relay.add(*bundle.wrappers)
        pages = manager(alice, relay, page_size=3)

        await pages.open(bob.identity)
        sealed_cursor = pages.store.cursor(bob.identity, Protocol.SEALED)

        assert not sealed_cursor.exhausted
        assert sealed_cursor.oldest_seen_timestamp == 1070
        assert "old sealed" not in [m.content for m in pages.get_messages(bob.identity).messages]


class TestLoadUntil:
    """Test loading history before a timestamp."""

    @pytest.mark.asyncio
    async def test_pages_back_to_bound(self, alice, bob, relay) -> None:
        await seed_legacy(relay, bob, alice, 7)
        pages = manager(alice, relay)
        await pages.open(bob.identity)

        await pages.load_until(bob.identity, 130)
        page = pages.get_messages(bob.identity, until=130)

        assert [m.content for m in page.messages] == ["m0", "m1", "m2"]
        assert not page.has_more

    @pytest.mark.asyncio
    async def test_stops_after_full_page(self, alice, bob, relay) -> None:
        await seed_legacy(relay, bob, alice, 12)
        pages = manager(alice, relay)
        await pages.open(bob.identity)

        await pages.load_until(bob.identity, 200)

        assert [m.content for m in pages.get_messages(bob.identity, until=200).messages] == [
            "m6", "m7", "m8", "m9",
        ]
        assert not pages.reached_start(bob.identity)
