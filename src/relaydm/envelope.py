"""
Envelope encoding and decoding for the Legacy and Sealed protocols.

Legacy envelopes are a single event whose content is encrypted for the
partner named by its `p` tag.

Sealed envelopes nest three events:
    Wrapper (kind 1059)  content = encrypt(reader, json(Seal))
    Seal    (kind 13)    content = encrypt(reader, json(Message)), authored by the real sender
    Message (kind 14)    plaintext content, `p` tag = addressee

A Wrapper's `p` tag only routes it to a reader and is never used to decide
who the conversation partner is, with one exception: the flat variant, where
the Wrapper content is the message itself, has no inner addressee, so a flat
Wrapper written by self takes its partner from the tag.
"""

from dataclasses import dataclass
from typing import Any, Optional
import json
import time

from .models import DecryptedMessage, Protocol, RawEnvelope, UnsignedEvent
from .signature import compute_event_id
from .signer import Signer
from .types import (
    KIND_LEGACY_DM,
    KIND_SEAL,
    KIND_SEALED_MESSAGE,
    KIND_WRAPPER,
    UNDECRYPTABLE_PLACEHOLDER,
    MalformedLayerError,
    UndecryptableError,
)


@dataclass
class SealedBundle:
    """The events produced by one sealed send."""
    message: RawEnvelope
    wrappers: list[RawEnvelope]


def _now() -> int:
    return int(time.time())


def _parse_event(data: str) -> Optional[dict[str, Any]]:
    """Parse a serialized inner event, or None if it is not a JSON object."""
    try:
        parsed = json.loads(data)
    except (json.JSONDecodeError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _first_p_tag(tags: Any) -> Optional[str]:
    if not isinstance(tags, list):
        return None
    for tag in tags:
        if isinstance(tag, list) and len(tag) > 1 and tag[0] == "p" and isinstance(tag[1], str):
            return tag[1]
    return None


# MARK: - Decoding


async def decode_legacy(envelope: RawEnvelope, signer: Signer) -> DecryptedMessage:
    """
    Decode a legacy envelope.

    A payload the signer cannot decrypt is returned with placeholder content
    and `error` set instead of failing, so one bad envelope never sinks a batch.

    Raises:
        NoSignerCapabilityError: If the signer lacks the legacy scheme
        UndecryptableError: If the envelope names no partner
    """
    scheme = signer.require_scheme(Protocol.LEGACY)
    identity = signer.identity

    if envelope.author == identity:
        partner = envelope.recipient_hint
    else:
        partner = envelope.author

    if not partner:
        raise UndecryptableError(f"Legacy envelope {envelope.id} has no recipient")

    error = None
    try:
        content = await scheme.decrypt(partner, envelope.content)
    except Exception as e:
        content = UNDECRYPTABLE_PLACEHOLDER
        error = str(e) or type(e).__name__

    return DecryptedMessage(
        id=envelope.id,
        partner=partner,
        author=envelope.author,
        created_at=envelope.created_at,
        protocol=Protocol.LEGACY,
        content=content,
        error=error,
    )


async def decode_sealed(envelope: RawEnvelope, signer: Signer) -> DecryptedMessage:
    """
    Decode a sealed Wrapper down to its Message.

    If the decrypted Wrapper content is not a Seal, it is taken as the flat
    payload of the single-layer variant some producers emit.

    Raises:
        NoSignerCapabilityError: If the signer lacks the sealed scheme
        UndecryptableError: If a layer cannot be decrypted
        MalformedLayerError: If a layer has the wrong structure
    """
    scheme = signer.require_scheme(Protocol.SEALED)
    identity = signer.identity

    if envelope.kind != KIND_WRAPPER:
        raise MalformedLayerError("wrapper", f"expected kind {KIND_WRAPPER}, got {envelope.kind}")

    try:
        inner = await scheme.decrypt(envelope.author, envelope.content)
    except Exception as e:
        raise UndecryptableError(f"Wrapper {envelope.id} failed to decrypt") from e

    seal = _parse_event(inner)
    if seal is None or seal.get("kind") != KIND_SEAL:
        return _decode_flat(envelope, inner, identity)

    seal_author = seal.get("pubkey")
    seal_content = seal.get("content")
    if not isinstance(seal_author, str) or not seal_author or not isinstance(seal_content, str):
        raise MalformedLayerError("seal", "missing author or content")

    try:
        message_json = await scheme.decrypt(seal_author, seal_content)
    except Exception as e:
        raise UndecryptableError(f"Seal inside {envelope.id} failed to decrypt") from e

    message = _parse_event(message_json)
    if message is None:
        raise MalformedLayerError("message", "not a JSON object")
    if message.get("kind") != KIND_SEALED_MESSAGE:
        raise MalformedLayerError(
            "message", f"expected kind {KIND_SEALED_MESSAGE}, got {message.get('kind')}"
        )

    content = message.get("content")
    created_at = message.get("created_at")
    if not isinstance(content, str) or not isinstance(created_at, int):
        raise MalformedLayerError("message", "missing content or created_at")

    author = message.get("pubkey", seal_author)
    if author != seal_author:
        raise MalformedLayerError("message", "author does not match seal author")

    tags = message.get("tags", [])
    if seal_author != identity:
        partner = seal_author
    else:
        partner = _first_p_tag(tags)
    if not partner:
        raise MalformedLayerError("message", "missing addressee")

    message_id = message.get("id")
    if not isinstance(message_id, str) or not message_id:
        message_id = compute_event_id(seal_author, created_at, KIND_SEALED_MESSAGE, tags, content)

    return DecryptedMessage(
        id=message_id,
        partner=partner,
        author=seal_author,
        created_at=created_at,
        protocol=Protocol.SEALED,
        content=content,
    )


def _decode_flat(envelope: RawEnvelope, content: str, identity: str) -> DecryptedMessage:
    """Single-layer variant: the Wrapper content is the message itself."""
    if envelope.author != identity:
        partner = envelope.author
    else:
        # no inner layer to read the addressee from
        partner = envelope.recipient_hint
    if not partner:
        raise MalformedLayerError("wrapper", "flat payload without addressee")

    return DecryptedMessage(
        id=envelope.id,
        partner=partner,
        author=envelope.author,
        created_at=envelope.created_at,
        protocol=Protocol.SEALED,
        content=content,
    )


async def decode_envelope(envelope: RawEnvelope, signer: Signer) -> DecryptedMessage:
    """Decode an envelope of either protocol."""
    if envelope.kind == KIND_LEGACY_DM:
        return await decode_legacy(envelope, signer)
    if envelope.kind == KIND_WRAPPER:
        return await decode_sealed(envelope, signer)
    raise MalformedLayerError("envelope", f"unsupported kind {envelope.kind}")


def protocol_for_kind(kind: int) -> Optional[Protocol]:
    """Which protocol a queryable kind belongs to."""
    if kind == KIND_LEGACY_DM:
        return Protocol.LEGACY
    if kind == KIND_WRAPPER:
        return Protocol.SEALED
    return None


# MARK: - Encoding


async def encode_legacy(
    partner: str,
    content: str,
    signer: Signer,
    created_at: Optional[int] = None,
) -> RawEnvelope:
    """
    Build a signed legacy envelope addressed to partner.

    Raises:
        NoSignerCapabilityError: If the signer lacks the legacy scheme
    """
    scheme = signer.require_scheme(Protocol.LEGACY)
    ciphertext = await scheme.encrypt(partner, content)
    return await signer.sign_event(
        UnsignedEvent(
            kind=KIND_LEGACY_DM,
            content=ciphertext,
            created_at=created_at if created_at is not None else _now(),
            tags=[["p", partner]],
        )
    )


async def encode_sealed(
    partner: str,
    content: str,
    signer: Signer,
    created_at: Optional[int] = None,
) -> SealedBundle:
    """
    Build the dual-seal construction for one message.

    The Message is sealed twice, once encrypted to the partner and once to
    self, and each Seal goes into its own Wrapper. Both Wrappers must be
    published: the single-recipient cipher cannot target two readers.

    Raises:
        NoSignerCapabilityError: If the signer lacks the sealed scheme
    """
    scheme = signer.require_scheme(Protocol.SEALED)
    identity = signer.identity
    timestamp = created_at if created_at is not None else _now()

    message = await signer.sign_event(
        UnsignedEvent(
            kind=KIND_SEALED_MESSAGE,
            content=content,
            created_at=timestamp,
            tags=[["p", partner]],
        )
    )
    message_json = json.dumps(message.to_dict(), separators=(",", ":"), ensure_ascii=False)

    readers = [partner] if partner == identity else [partner, identity]
    wrappers: list[RawEnvelope] = []
    for reader in readers:
        seal = await signer.sign_event(
            UnsignedEvent(
                kind=KIND_SEAL,
                content=await scheme.encrypt(reader, message_json),
                created_at=timestamp,
            )
        )
        seal_json = json.dumps(seal.to_dict(), separators=(",", ":"), ensure_ascii=False)
        wrappers.append(
            await signer.sign_event(
                UnsignedEvent(
                    kind=KIND_WRAPPER,
                    content=await scheme.encrypt(reader, seal_json),
                    created_at=timestamp,
                    tags=[["p", reader]],
                )
            )
        )

    return SealedBundle(message=message, wrappers=wrappers)
