"""
Signer interface and a local reference implementation.

The engine never touches key material: it asks a Signer to encrypt, decrypt
and sign. A Signer exposes one CipherScheme per protocol it supports, and
`None` for the ones it does not.
"""

from abc import ABC, abstractmethod
from typing import Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .crypto import (
    derive_conversation_key,
    legacy_decrypt,
    legacy_encrypt,
    sealed_decrypt,
    sealed_encrypt,
)
from .keys import (
    derive_keys_from_seed,
    derive_signing_key,
    generate_seed,
    public_key_from_identity,
    public_key_to_identity,
    x25519_ecdh,
)
from .models import Protocol, RawEnvelope, UnsignedEvent
from .signature import compute_event_id, sign_event_id
from .types import NoSignerCapabilityError, UndecryptableError


class CipherScheme(ABC):
    """One encryption scheme offered by a signer."""

    name: str = ""

    @abstractmethod
    async def encrypt(self, peer: str, plaintext: str) -> str:
        """Encrypt plaintext for the conversation between self and peer."""
        pass

    @abstractmethod
    async def decrypt(self, peer: str, ciphertext: str) -> str:
        """Decrypt ciphertext from the conversation between self and peer."""
        pass


class Signer(ABC):
    """Abstract signer holding the user's identity."""

    @property
    @abstractmethod
    def identity(self) -> str:
        """The user's public identity."""
        pass

    @property
    @abstractmethod
    def legacy(self) -> Optional[CipherScheme]:
        """The legacy scheme, or None when unsupported."""
        pass

    @property
    @abstractmethod
    def sealed(self) -> Optional[CipherScheme]:
        """The sealed scheme, or None when unsupported."""
        pass

    @abstractmethod
    async def sign_event(self, event: UnsignedEvent) -> RawEnvelope:
        """Assign id, author and signature to an event."""
        pass

    def scheme_for(self, protocol: Protocol) -> Optional[CipherScheme]:
        """Returns the scheme a protocol needs, if supported."""
        return self.legacy if protocol == Protocol.LEGACY else self.sealed

    def require_scheme(self, protocol: Protocol) -> CipherScheme:
        """
        Returns the scheme a protocol needs.

        Raises:
            NoSignerCapabilityError: If the signer does not offer it
        """
        scheme = self.scheme_for(protocol)
        if scheme is None:
            raise NoSignerCapabilityError(protocol.value)
        return scheme


class _LocalScheme(CipherScheme):
    def __init__(self, private_key: X25519PrivateKey) -> None:
        self._private_key = private_key

    def _shared_secret(self, peer: str) -> bytes:
        try:
            peer_key = public_key_from_identity(peer)
        except ValueError as e:
            raise UndecryptableError(str(e)) from e
        return x25519_ecdh(self._private_key, peer_key)


class LocalLegacyScheme(_LocalScheme):
    """Legacy scheme: AES-256-CBC over the raw ECDH secret."""

    name = "legacy"

    async def encrypt(self, peer: str, plaintext: str) -> str:
        return legacy_encrypt(plaintext, self._shared_secret(peer))

    async def decrypt(self, peer: str, ciphertext: str) -> str:
        return legacy_decrypt(ciphertext, self._shared_secret(peer))


class LocalSealedScheme(_LocalScheme):
    """Sealed scheme: ChaCha20-Poly1305 under an HKDF conversation key."""

    name = "sealed"

    async def encrypt(self, peer: str, plaintext: str) -> str:
        return sealed_encrypt(plaintext, derive_conversation_key(self._shared_secret(peer)))

    async def decrypt(self, peer: str, ciphertext: str) -> str:
        return sealed_decrypt(ciphertext, derive_conversation_key(self._shared_secret(peer)))


class LocalSigner(Signer):
    """
    A signer holding its keys in memory.

    The identity is the hex X25519 public key derived from a 32-byte seed;
    events are signed with an Ed25519 key derived from the same seed.

    Example usage:
        ```python
        signer = LocalSigner.from_seed(seed)
        ciphertext = await signer.sealed.encrypt(partner, "hello")
        ```
    """

    def __init__(
        self,
        private_key: X25519PrivateKey,
        signing_key: Ed25519PrivateKey,
        legacy_enabled: bool = True,
        sealed_enabled: bool = True,
    ) -> None:
        self._private_key = private_key
        self._signing_key = signing_key
        self._identity = public_key_to_identity(private_key.public_key())
        self._legacy = LocalLegacyScheme(private_key) if legacy_enabled else None
        self._sealed = LocalSealedScheme(private_key) if sealed_enabled else None

    @classmethod
    def from_seed(
        cls,
        seed: bytes,
        legacy_enabled: bool = True,
        sealed_enabled: bool = True,
    ) -> "LocalSigner":
        """
        Create a signer from a 32-byte seed.

        Raises:
            ValueError: If seed is not 32 bytes.
        """
        private_key, _ = derive_keys_from_seed(seed)
        return cls(
            private_key,
            derive_signing_key(seed),
            legacy_enabled=legacy_enabled,
            sealed_enabled=sealed_enabled,
        )

    @classmethod
    def generate(cls) -> "LocalSigner":
        """Create a signer with fresh random keys."""
        return cls.from_seed(generate_seed())

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def verifying_key(self) -> bytes:
        """The Ed25519 public key that verifies this signer's events."""
        return self._signing_key.public_key().public_bytes_raw()

    @property
    def legacy(self) -> Optional[CipherScheme]:
        return self._legacy

    @property
    def sealed(self) -> Optional[CipherScheme]:
        return self._sealed

    async def sign_event(self, event: UnsignedEvent) -> RawEnvelope:
        event_id = compute_event_id(
            self._identity, event.created_at, event.kind, event.tags, event.content
        )
        return RawEnvelope(
            id=event_id,
            author=self._identity,
            created_at=event.created_at,
            kind=event.kind,
            content=event.content,
            tags=tuple(tuple(tag) for tag in event.tags),
            sig=sign_event_id(event_id, self._signing_key),
        )
