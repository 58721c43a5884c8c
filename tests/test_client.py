"""End-to-end tests for DirectMessagesClient."""

import asyncio

import pytest
from relaydm import (
    DirectMessagesClient,
    InMemoryRelay,
    KIND_LEGACY_DM,
    LocalSigner,
    MatchType,
    NoSignerCapabilityError,
    Protocol,
    SendState,
    StaticContacts,
    SyncConfig,
    UnsignedEvent,
    __version__,
)
from relaydm.envelope import encode_legacy, encode_sealed
from .test_vectors import ALICE_SEED_HEX


def test_version() -> None:
    assert __version__ == "0.1.0"


class TestDiscovery:
    """Test conversation discovery through the client."""

    @pytest.mark.asyncio
    async def test_unanswered_message_is_request(self, alice, bob, relay) -> None:
        """A partner who wrote once and got no reply shows up as a request."""
        relay.add(await encode_legacy(alice.identity, "hi", bob, created_at=100))
        client = DirectMessagesClient(alice, relay)

        [conversation] = await client.discover_conversations()

        assert conversation.partner == bob.identity
        assert conversation.is_known is False
        assert conversation.is_request is True
        assert conversation.last_message_from_self is False
        assert conversation.last_message.content == "hi"

    @pytest.mark.asyncio
    async def test_merges_protocols_and_probe(self, alice, bob, carol, relay) -> None:
        relay.add(await encode_legacy(bob.identity, "legacy", alice, created_at=100))
        relay.add(*(await encode_sealed(alice.identity, "sealed", bob, created_at=200)).wrappers)
        relay.add(await encode_legacy(alice.identity, "from carol", carol, created_at=50))
        client = DirectMessagesClient(alice, relay, contacts=StaticContacts(mutual=[carol.identity]))

        conversations = await client.discover_conversations()

        assert [c.partner for c in conversations] == [bob.identity, carol.identity]
        merged = conversations[0]
        assert merged.has_legacy and merged.has_sealed
        assert merged.last_message.content == "sealed"
        assert merged.is_known
        assert conversations[1].last_message.content == "from carol"
        assert client.conversations() == conversations

    @pytest.mark.asyncio
    async def test_sealed_disabled(self, alice, bob, relay) -> None:
        relay.add(*(await encode_sealed(alice.identity, "sealed", bob, created_at=200)).wrappers)
        client = DirectMessagesClient(alice, relay, config=SyncConfig.legacy_only())

        assert await client.discover_conversations() == []
        assert not client.sealed_enabled
        assert client.available_protocols == [Protocol.LEGACY]

    @pytest.mark.asyncio
    async def test_signer_without_sealed_scheme(self, bob, relay) -> None:
        signer = LocalSigner.from_seed(bytes.fromhex(ALICE_SEED_HEX), sealed_enabled=False)
        client = DirectMessagesClient(signer, relay)

        assert client.available_protocols == [Protocol.LEGACY]
        assert await client.discover_conversations() == []
        with pytest.raises(NoSignerCapabilityError):
            await client.send_message(bob.identity, "hi", Protocol.SEALED)

    @pytest.mark.asyncio
    async def test_partial_on_timeout(self, alice, bob) -> None:
        relay = InMemoryRelay(query_delay=0.5)
        relay.add(await encode_legacy(alice.identity, "hi", bob, created_at=100))
        config = SyncConfig(legacy_query_timeout=0.01, sealed_query_timeout=0.01)
        client = DirectMessagesClient(alice, relay, config=config)

        assert await client.discover_conversations() == []
        assert all(scan.partial for scan in client.scans.values())


class TestMessaging:
    """Test reading, sending and live updates through the client."""

    @pytest.mark.asyncio
    async def test_optimistic_then_confirmed(self, alice, bob, relay) -> None:
        """A sealed send shows once as optimistic and once confirmed, never twice."""
        client = DirectMessagesClient(alice, relay)
        assert (await client.get_messages(bob.identity)).messages == []
        live = await client.open_live(bob.identity)

        result = await client.send_message(bob.identity, "hello")
        before = (await client.get_messages(bob.identity)).messages

        assert result.ok
        assert [(m.content, m.send_state) for m in before] == [("hello", SendState.OPTIMISTIC)]

        await asyncio.wait_for(live.__anext__(), 1)
        after = (await client.get_messages(bob.identity)).messages

        assert [(m.content, m.send_state) for m in after] == [("hello", SendState.CONFIRMED)]
        await client.close()

    @pytest.mark.asyncio
    async def test_send_defaults_to_legacy_without_sealed(self, alice, bob, relay) -> None:
        client = DirectMessagesClient(alice, relay, config=SyncConfig.legacy_only())
        result = await client.send_message(bob.identity, "hi")

        assert result.message.protocol == Protocol.LEGACY
        with pytest.raises(NoSignerCapabilityError):
            await client.send_message(bob.identity, "hi", Protocol.SEALED)

    @pytest.mark.asyncio
    async def test_failed_send_retry_and_discard(self, alice, bob, relay) -> None:
        client = DirectMessagesClient(alice, relay)
        await client.get_messages(bob.identity)

        relay.publish_error = ConnectionError("offline")
        failed = await client.send_message(bob.identity, "one")
        dropped = await client.send_message(bob.identity, "two")
        assert len(client.pending_messages(bob.identity)) == 2

        relay.publish_error = None
        assert (await client.retry_message(bob.identity, failed.message.id)).ok
        assert client.discard_message(bob.identity, dropped.message.id)

        messages = (await client.get_messages(bob.identity)).messages
        assert [(m.content, m.send_state) for m in messages] == [("one", SendState.OPTIMISTIC)]

    @pytest.mark.asyncio
    async def test_history_and_paging(self, alice, bob, relay) -> None:
        for i in range(5):
            relay.add(await encode_legacy(alice.identity, f"m{i}", bob, created_at=100 + i))
        client = DirectMessagesClient(alice, relay, config=SyncConfig(page_size=2))

        first = await client.get_messages(bob.identity)
        assert [m.content for m in first.messages] == ["m3", "m4"]

        while not client.reached_start(bob.identity):
            await client.load_older(bob.identity)

        page = await client.get_messages(bob.identity)
        assert [m.content for m in page.messages] == [f"m{i}" for i in range(5)]
        assert not page.has_more

    @pytest.mark.asyncio
    async def test_close_clears_session(self, alice, bob, relay) -> None:
        client = DirectMessagesClient(alice, relay)
        await client.get_messages(bob.identity)
        await client.open_live(bob.identity)

        await client.close()

        assert relay.open_subscriptions == 0
        assert client.store.partners() == []

    @pytest.mark.asyncio
    async def test_get_messages_until_loads_older_history(self, alice, bob, relay) -> None:
        for i in range(7):
            relay.add(await encode_legacy(alice.identity, f"m{i}", bob, created_at=100 + i * 10))
        client = DirectMessagesClient(alice, relay, config=SyncConfig(page_size=3))

        page = await client.get_messages(bob.identity, until=130)

        assert [m.content for m in page.messages] == ["m0", "m1", "m2"]
        assert not page.has_more


class TestSearch:
    """Test searching decoded messages."""

    @pytest.mark.asyncio
    async def test_content_and_partner_matches(self, alice, bob, carol, relay) -> None:
        relay.add(await encode_legacy(alice.identity, "Lunch tomorrow?", bob, created_at=100))
        relay.add(*(await encode_sealed(alice.identity, "see you", carol, created_at=200)).wrappers)
        client = DirectMessagesClient(alice, relay)
        await client.discover_conversations()

        [by_content] = client.search_messages("lunch")
        [by_partner] = client.search_messages(carol.identity[:10].upper())

        assert by_content.partner == bob.identity
        assert by_content.match_type == MatchType.CONTENT
        assert by_content.message.content == "Lunch tomorrow?"
        assert by_partner.partner == carol.identity
        assert by_partner.match_type == MatchType.PARTNER

    @pytest.mark.asyncio
    async def test_one_result_per_partner_newest_first(self, alice, bob, carol, relay) -> None:
        relay.add(await encode_legacy(alice.identity, "plan A", bob, created_at=100))
        relay.add(await encode_legacy(alice.identity, "plan B", bob, created_at=300))
        relay.add(await encode_legacy(alice.identity, "plan C", carol, created_at=200))
        client = DirectMessagesClient(alice, relay)
        await client.discover_conversations()

        results = client.search_messages("plan")

        assert [(r.partner, r.message.content) for r in results] == [
            (bob.identity, "plan B"),
            (carol.identity, "plan C"),
        ]

    @pytest.mark.asyncio
    async def test_includes_local_sends(self, alice, bob, relay) -> None:
        client = DirectMessagesClient(alice, relay)
        await client.get_messages(bob.identity)
        await client.send_message(bob.identity, "draft idea")

        [result] = client.search_messages("draft")

        assert result.partner == bob.identity
        assert result.message.send_state == SendState.OPTIMISTIC

    @pytest.mark.asyncio
    async def test_placeholders_and_blank_query(self, alice, bob, carol, relay) -> None:
        undecryptable = await bob.sign_event(
            UnsignedEvent(
                kind=KIND_LEGACY_DM,
                content=await bob.legacy.encrypt(carol.identity, "secret"),
                created_at=100,
                tags=[["p", alice.identity]],
            )
        )
        relay.add(undecryptable)
        client = DirectMessagesClient(alice, relay)
        await client.discover_conversations()

        assert client.search_messages("decrypt") == []
        assert client.search_messages("   ") == []
