"""Type definitions and protocol constants for relaydm."""

# Event kinds
KIND_LEGACY_DM = 4
KIND_SEAL = 13
KIND_SEALED_MESSAGE = 14
KIND_WRAPPER = 1059

# Placeholder content
UNDECRYPTABLE_PLACEHOLDER = "[Could not decrypt message]"
ENCRYPTED_PLACEHOLDER = "[Encrypted message]"

# Sealed payload format
SEALED_PAYLOAD_VERSION = 0x02
SEALED_NONCE_SIZE = 12
SEALED_KEY_SALT = b"relaydm-sealed-v2"

# Legacy payload format
LEGACY_IV_SIZE = 16
LEGACY_IV_SEPARATOR = "?iv="

# Key derivation constants
KEY_DERIVATION_SALT = b"relaydm-v1-identity"
KEY_DERIVATION_INFO = b"x25519-key"
SIGNING_KEY_INFO = b"ed25519-key"

PUBLIC_KEY_SIZE = 32
SIGNATURE_SIZE = 64


# Exception types
class RelayDMError(Exception):
    """Base exception for relaydm errors."""
    pass


class TransportTimeoutError(RelayDMError):
    """A relay query did not answer within its time bound."""

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout}s")


class UndecryptableError(RelayDMError):
    """The signer could not decrypt an envelope (key mismatch or bad ciphertext)."""
    pass


class MalformedLayerError(RelayDMError):
    """A sealed envelope failed structural validation at one of its layers."""

    def __init__(self, layer: str, reason: str) -> None:
        self.layer = layer
        self.reason = reason
        super().__init__(f"Malformed {layer}: {reason}")


class NoSignerCapabilityError(RelayDMError):
    """The active signer lacks the encryption scheme a protocol needs."""

    def __init__(self, scheme: str) -> None:
        self.scheme = scheme
        super().__init__(f"Signer does not support the {scheme} encryption scheme")


class SendFailedError(RelayDMError):
    """Publishing or signing an outgoing message failed."""
    pass


class InvalidEnvelopeError(RelayDMError):
    """Raw event data is missing required fields."""
    pass


class SignatureError(RelayDMError):
    """Event signing or verification failed."""
    pass


class MessageNotFoundError(RelayDMError):
    """No outstanding local message with the given id."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id
