"""Key derivation and management for the local signer."""

import os
from typing import Tuple

from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .types import KEY_DERIVATION_SALT, KEY_DERIVATION_INFO, SIGNING_KEY_INFO, PUBLIC_KEY_SIZE


def _derive(seed: bytes, info: bytes) -> bytes:
    if len(seed) != 32:
        raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")

    hkdf = HKDF(
        algorithm=SHA256(),
        length=32,
        salt=KEY_DERIVATION_SALT,
        info=info,
    )
    return hkdf.derive(seed)


def derive_keys_from_seed(seed: bytes) -> Tuple[X25519PrivateKey, X25519PublicKey]:
    """
    Derive the X25519 identity key pair from a 32-byte seed using HKDF-SHA256.

    Args:
        seed: 32-byte seed

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = X25519PrivateKey.from_private_bytes(_derive(seed, KEY_DERIVATION_INFO))
    return private_key, private_key.public_key()


def derive_signing_key(seed: bytes) -> Ed25519PrivateKey:
    """Derive the Ed25519 event signing key from the same seed."""
    return Ed25519PrivateKey.from_private_bytes(_derive(seed, SIGNING_KEY_INFO))


def generate_seed() -> bytes:
    """Generate a random 32-byte seed."""
    return os.urandom(32)


def x25519_ecdh(private_key: X25519PrivateKey, public_key: X25519PublicKey) -> bytes:
    """
    Perform X25519 ECDH key exchange.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        32-byte shared secret
    """
    return private_key.exchange(public_key)


def public_key_to_bytes(public_key: X25519PublicKey) -> bytes:
    """Convert X25519 public key to raw bytes."""
    return public_key.public_bytes(Encoding.Raw, PublicFormat.Raw)


def public_key_to_identity(public_key: X25519PublicKey) -> str:
    """The hex identity string peers use to address this key."""
    return public_key_to_bytes(public_key).hex()


def public_key_from_identity(identity: str) -> X25519PublicKey:
    """Parse a hex identity back into an X25519 public key."""
    try:
        data = bytes.fromhex(identity)
    except ValueError as e:
        raise ValueError(f"Identity is not hex: {identity!r}") from e
    if len(data) != PUBLIC_KEY_SIZE:
        raise ValueError(f"Identity must be {PUBLIC_KEY_SIZE} bytes, got {len(data)}")
    return X25519PublicKey.from_public_bytes(data)
