"""
Event ids and signatures.

An event id is the SHA-256 of the compact JSON array
`[0, pubkey, created_at, kind, tags, content]`; the signature is an Ed25519
signature over the raw id bytes.
"""

import hashlib
import json
from typing import Sequence

from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.exceptions import InvalidSignature

from .models import RawEnvelope
from .types import PUBLIC_KEY_SIZE, SIGNATURE_SIZE, SignatureError


def compute_event_id(
    author: str,
    created_at: int,
    kind: int,
    tags: Sequence[Sequence[str]],
    content: str,
) -> str:
    """
    Compute the id of an event.

    Args:
        author: The author's identity
        created_at: Unix timestamp in seconds
        kind: Event kind
        tags: Event tags
        content: Event content

    Returns:
        Hex-encoded SHA-256 digest
    """
    serialized = json.dumps(
        [0, author, created_at, kind, [list(tag) for tag in tags], content],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def sign_event_id(event_id: str, signing_key: Ed25519PrivateKey) -> str:
    """Sign an event id, returning the hex signature."""
    try:
        digest = bytes.fromhex(event_id)
    except ValueError as e:
        raise SignatureError(f"Event id is not hex: {event_id!r}") from e
    return signing_key.sign(digest).hex()


def verify_event(envelope: RawEnvelope, verifying_key_bytes: bytes) -> bool:
    """
    Verify an envelope's id and signature.

    Args:
        envelope: The signed envelope
        verifying_key_bytes: The author's Ed25519 public key (32 bytes)

    Returns:
        True if the id matches the content and the signature is valid

    Raises:
        SignatureError: If the key or signature lengths are invalid
    """
    if len(verifying_key_bytes) != PUBLIC_KEY_SIZE:
        raise SignatureError(
            f"Verifying key must be {PUBLIC_KEY_SIZE} bytes, got {len(verifying_key_bytes)}"
        )

    expected_id = compute_event_id(
        envelope.author, envelope.created_at, envelope.kind, envelope.tags, envelope.content
    )
    if expected_id != envelope.id:
        return False

    try:
        signature = bytes.fromhex(envelope.sig)
    except ValueError:
        return False
    if len(signature) != SIGNATURE_SIZE:
        raise SignatureError(f"Signature must be {SIGNATURE_SIZE} bytes, got {len(signature)}")

    verifying_key = Ed25519PublicKey.from_public_bytes(verifying_key_bytes)
    try:
        verifying_key.verify(signature, bytes.fromhex(envelope.id))
        return True
    except InvalidSignature:
        return False
