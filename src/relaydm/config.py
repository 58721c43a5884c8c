"""Configuration for the direct-message sync engine."""

from dataclasses import dataclass, replace


@dataclass
class SyncConfig:
    """Limits, windows and timeouts for fetching and reconciling messages."""

    batch_size: int = 1000
    """Envelopes requested per discovery batch."""

    scan_total_limit: int = 20_000
    """Maximum envelopes processed by one discovery scan."""

    summary_messages_per_chat: int = 5
    """Messages retained per partner while scanning."""

    recent_messages_window: int = 20
    """Messages kept per conversation after merging protocols."""

    conversation_batch_size: int = 100
    """Envelopes requested per direction per conversation batch."""

    max_conversation_messages: int = 50_000
    """Safety cap on messages accumulated by one conversation fetch."""

    page_size: int = 25
    """Messages loaded per page when opening or paging a conversation."""

    optimistic_match_window: int = 30
    """Seconds within which a confirmed message replaces a matching optimistic one."""

    subscription_overlap: int = 60
    """Seconds subtracted from the newest known timestamp when subscribing."""

    legacy_query_timeout: float = 15.0
    """Timeout in seconds for one legacy query."""

    sealed_query_timeout: float = 30.0
    """Timeout in seconds for one sealed query."""

    probe_timeout: float = 2.0
    """Timeout in seconds for one contact probe."""

    probe_batch_size: int = 20
    """Contacts probed concurrently."""

    max_send_retries: int = 3
    """Maximum retries of a failed send."""

    sealed_enabled: bool = True
    """Whether the sealed protocol is used at all."""

    @classmethod
    def default(cls) -> "SyncConfig":
        """Default configuration."""
        return cls()

    @classmethod
    def legacy_only(cls) -> "SyncConfig":
        """Configuration with the sealed protocol disabled."""
        return cls(sealed_enabled=False)

    def with_sealed(self, enabled: bool) -> "SyncConfig":
        """Returns a copy with the sealed protocol toggled."""
        return replace(self, sealed_enabled=enabled)
