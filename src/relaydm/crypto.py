"""Payload encryption for the two direct-message schemes."""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .types import (
    LEGACY_IV_SEPARATOR,
    LEGACY_IV_SIZE,
    SEALED_KEY_SALT,
    SEALED_NONCE_SIZE,
    SEALED_PAYLOAD_VERSION,
    UndecryptableError,
)


def legacy_encrypt(plaintext: str, shared_secret: bytes) -> str:
    """
    Encrypt with the legacy scheme (AES-256-CBC keyed by the raw ECDH secret).

    Args:
        plaintext: Message to encrypt
        shared_secret: 32-byte ECDH secret between sender and recipient

    Returns:
        "base64(ciphertext)?iv=base64(iv)"
    """
    iv = os.urandom(LEGACY_IV_SIZE)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(shared_secret), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return (
        base64.b64encode(ciphertext).decode("ascii")
        + LEGACY_IV_SEPARATOR
        + base64.b64encode(iv).decode("ascii")
    )


def legacy_decrypt(payload: str, shared_secret: bytes) -> str:
    """
    Decrypt a legacy payload.

    Raises:
        UndecryptableError: If the payload is malformed or the key is wrong
    """
    if LEGACY_IV_SEPARATOR not in payload:
        raise UndecryptableError("Legacy payload has no iv")

    encoded_ct, encoded_iv = payload.split(LEGACY_IV_SEPARATOR, 1)
    try:
        ciphertext = base64.b64decode(encoded_ct, validate=True)
        iv = base64.b64decode(encoded_iv, validate=True)
    except (binascii.Error, ValueError) as e:
        raise UndecryptableError(f"Legacy payload is not base64: {e}") from e

    if len(iv) != LEGACY_IV_SIZE or not ciphertext or len(ciphertext) % 16:
        raise UndecryptableError("Legacy payload has invalid sizes")

    decryptor = Cipher(algorithms.AES(shared_secret), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    try:
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        data = unpadder.update(padded) + unpadder.finalize()
        return data.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        # wrong key shows up as bad padding or garbage bytes
        raise UndecryptableError("Legacy payload failed to decrypt") from e


def derive_conversation_key(shared_secret: bytes) -> bytes:
    """Derive the symmetric key both parties of a conversation share."""
    hkdf = HKDF(algorithm=SHA256(), length=32, salt=SEALED_KEY_SALT, info=b"conversation-key")
    return hkdf.derive(shared_secret)


def sealed_encrypt(plaintext: str, conversation_key: bytes) -> str:
    """
    Encrypt with the sealed scheme.

    Format (base64 encoded):
        [0]       version (0x02)
        [1-12]    nonce (12 bytes)
        [13+]     ciphertext + 16-byte tag
    """
    nonce = os.urandom(SEALED_NONCE_SIZE)
    cipher = ChaCha20Poly1305(conversation_key)
    ciphertext = cipher.encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(bytes([SEALED_PAYLOAD_VERSION]) + nonce + ciphertext).decode("ascii")


def sealed_decrypt(payload: str, conversation_key: bytes) -> str:
    """
    Decrypt a sealed payload.

    Raises:
        UndecryptableError: If the payload is malformed or authentication fails
    """
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise UndecryptableError(f"Sealed payload is not base64: {e}") from e

    if len(data) < 1 + SEALED_NONCE_SIZE + 16:
        raise UndecryptableError(f"Sealed payload too short: {len(data)} bytes")

    if data[0] != SEALED_PAYLOAD_VERSION:
        raise UndecryptableError(f"Unknown sealed payload version: {data[0]}")

    nonce = data[1 : 1 + SEALED_NONCE_SIZE]
    cipher = ChaCha20Poly1305(conversation_key)
    try:
        plaintext = cipher.decrypt(nonce, data[1 + SEALED_NONCE_SIZE :], None)
        return plaintext.decode("utf-8")
    except (InvalidTag, UnicodeDecodeError) as e:
        raise UndecryptableError("Sealed payload failed authentication") from e
