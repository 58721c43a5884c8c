"""Tests for event ids and signatures."""

from dataclasses import replace

import pytest
from relaydm.models import UnsignedEvent
from relaydm.signature import compute_event_id, sign_event_id, verify_event
from relaydm.types import KIND_LEGACY_DM, SignatureError


class TestEventId:
    """Test event id computation."""

    def test_deterministic(self) -> None:
        a = compute_event_id("ab" * 32, 100, KIND_LEGACY_DM, [["p", "cd" * 32]], "hi")
        b = compute_event_id("ab" * 32, 100, KIND_LEGACY_DM, [("p", "cd" * 32)], "hi")
        assert a == b
        assert len(a) == 64

    def test_changes_with_content(self) -> None:
        a = compute_event_id("ab" * 32, 100, KIND_LEGACY_DM, [], "hi")
        b = compute_event_id("ab" * 32, 100, KIND_LEGACY_DM, [], "ho")
        assert a != b

    def test_changes_with_timestamp(self) -> None:
        a = compute_event_id("ab" * 32, 100, KIND_LEGACY_DM, [], "hi")
        b = compute_event_id("ab" * 32, 101, KIND_LEGACY_DM, [], "hi")
        assert a != b


class TestSignAndVerify:
    """Test signing with a LocalSigner and verifying."""

    @pytest.mark.asyncio
    async def test_sign_and_verify_roundtrip(self, alice) -> None:
        envelope = await alice.sign_event(UnsignedEvent(kind=KIND_LEGACY_DM, content="x", created_at=100))

        assert envelope.author == alice.identity
        assert verify_event(envelope, alice.verifying_key)

    @pytest.mark.asyncio
    async def test_verify_wrong_key_fails(self, alice, bob) -> None:
        envelope = await alice.sign_event(UnsignedEvent(kind=KIND_LEGACY_DM, content="x", created_at=100))
        assert not verify_event(envelope, bob.verifying_key)

    @pytest.mark.asyncio
    async def test_tampered_content_fails(self, alice) -> None:
        envelope = await alice.sign_event(UnsignedEvent(kind=KIND_LEGACY_DM, content="x", created_at=100))
        assert not verify_event(replace(envelope, content="y"), alice.verifying_key)


class TestErrorHandling:
    """Test error cases."""

    def test_non_hex_event_id(self, alice) -> None:
        with pytest.raises(SignatureError, match="not hex"):
            sign_event_id("not-hex", alice._signing_key)

    @pytest.mark.asyncio
    async def test_invalid_verifying_key_length(self, alice) -> None:
        envelope = await alice.sign_event(UnsignedEvent(kind=KIND_LEGACY_DM, content="x", created_at=100))
        with pytest.raises(SignatureError, match="32 bytes"):
            verify_event(envelope, b"short")

    @pytest.mark.asyncio
    async def test_invalid_signature_length(self, alice) -> None:
        envelope = await alice.sign_event(UnsignedEvent(kind=KIND_LEGACY_DM, content="x", created_at=100))
        with pytest.raises(SignatureError, match="64 bytes"):
            verify_event(replace(envelope, sig="abcd"), alice.verifying_key)
