"""
relaydm - Encrypted direct messages over relays

Client-side sync engine for direct messages under the legacy (single-layer)
and sealed (Wrapper/Seal/Message) protocols.
"""

from .types import (
    KIND_LEGACY_DM,
    KIND_SEAL,
    KIND_SEALED_MESSAGE,
    KIND_WRAPPER,
    ENCRYPTED_PLACEHOLDER,
    UNDECRYPTABLE_PLACEHOLDER,
    RelayDMError,
    TransportTimeoutError,
    UndecryptableError,
    MalformedLayerError,
    NoSignerCapabilityError,
    SendFailedError,
    InvalidEnvelopeError,
    SignatureError,
    MessageNotFoundError,
)
from .models import (
    Protocol,
    SendState,
    RawEnvelope,
    UnsignedEvent,
    DecryptedMessage,
    Conversation,
    PartnerSummary,
    ScanCursor,
    ConversationPage,
    SendResult,
    categorize,
)
from .config import SyncConfig
from .keys import derive_keys_from_seed, derive_signing_key, generate_seed
from .crypto import legacy_encrypt, legacy_decrypt, sealed_encrypt, sealed_decrypt
from .signature import compute_event_id, sign_event_id, verify_event
from .signer import CipherScheme, Signer, LocalSigner
from .relay import Filter, RelayPool, RelaySubscription, InMemoryRelay
from .envelope import (
    SealedBundle,
    decode_legacy,
    decode_sealed,
    decode_envelope,
    encode_legacy,
    encode_sealed,
)
from .store import SessionStore, find_optimistic_match
from .fetchers import DiscoveryScan, FetchResult, ProtocolFetcher, LegacyFetcher, SealedFetcher
from .aggregator import ContactDirectory, StaticContacts, ConversationAggregator
from .outbox import OutgoingStatus, OutgoingMessage, SendCoordinator
from .pagination import PaginationManager
from .reconciler import LiveSubscription, LiveReconciler
from .search import MatchType, SearchResult, search_messages
from .client import DirectMessagesClient

__version__ = "0.1.0"

__all__ = [
    # Types
    "KIND_LEGACY_DM",
    "KIND_SEAL",
    "KIND_SEALED_MESSAGE",
    "KIND_WRAPPER",
    "ENCRYPTED_PLACEHOLDER",
    "UNDECRYPTABLE_PLACEHOLDER",
    "RelayDMError",
    "TransportTimeoutError",
    "UndecryptableError",
    "MalformedLayerError",
    "NoSignerCapabilityError",
    "SendFailedError",
    "InvalidEnvelopeError",
    "SignatureError",
    "MessageNotFoundError",
    # Models
    "Protocol",
    "SendState",
    "RawEnvelope",
    "UnsignedEvent",
    "DecryptedMessage",
    "Conversation",
    "PartnerSummary",
    "ScanCursor",
    "ConversationPage",
    "SendResult",
    "categorize",
    "SyncConfig",
    # Keys and crypto
    "derive_keys_from_seed",
    "derive_signing_key",
    "generate_seed",
    "legacy_encrypt",
    "legacy_decrypt",
    "sealed_encrypt",
    "sealed_decrypt",
    "compute_event_id",
    "sign_event_id",
    "verify_event",
    # Signer
    "CipherScheme",
    "Signer",
    "LocalSigner",
    # Relay
    "Filter",
    "RelayPool",
    "RelaySubscription",
    "InMemoryRelay",
    # Envelope
    "SealedBundle",
    "decode_legacy",
    "decode_sealed",
    "decode_envelope",
    "encode_legacy",
    "encode_sealed",
    # Engine
    "SessionStore",
    "find_optimistic_match",
    "DiscoveryScan",
    "FetchResult",
    "ProtocolFetcher",
    "LegacyFetcher",
    "SealedFetcher",
    "ContactDirectory",
    "StaticContacts",
    "ConversationAggregator",
    "OutgoingStatus",
    "OutgoingMessage",
    "SendCoordinator",
    "PaginationManager",
    "LiveSubscription",
    "LiveReconciler",
    "MatchType",
    "SearchResult",
    "search_messages",
    "DirectMessagesClient",
]
