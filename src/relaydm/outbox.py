"""Outgoing message coordination: optimistic insert, publish, failure and retry."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional
import logging
import time

from .config import SyncConfig
from .envelope import encode_legacy, encode_sealed
from .models import DecryptedMessage, Protocol, RawEnvelope, SendResult, SendState, new_local_id
from .relay import RelayPool
from .signer import Signer
from .store import SessionStore
from .types import MessageNotFoundError, SendFailedError

logger = logging.getLogger(__name__)


class OutgoingStatus(Enum):
    """Status of an outgoing message."""
    SENDING = "sending"
    FAILED = "failed"
    SENT = "sent"


@dataclass
class OutgoingMessage:
    """Send bookkeeping for one locally composed message."""
    local_id: str
    partner: str
    content: str
    protocol: Protocol
    created_at: int
    retry_count: int = 0
    last_attempt: Optional[datetime] = None
    status: OutgoingStatus = OutgoingStatus.SENDING
    last_error: Optional[str] = None
    event_ids: list[str] = field(default_factory=list)

    def mark_sending(self) -> None:
        """Mark as currently sending."""
        self.status = OutgoingStatus.SENDING
        self.last_attempt = datetime.now()

    def mark_failed(self, error: str) -> None:
        """Mark as failed with an error."""
        self.status = OutgoingStatus.FAILED
        self.retry_count += 1
        self.last_error = error

    def mark_sent(self, event_ids: list[str]) -> None:
        """Mark as published."""
        self.status = OutgoingStatus.SENT
        self.event_ids = list(event_ids)
        self.last_error = None

    def can_retry(self, max_retries: int) -> bool:
        """Whether the message can be retried."""
        return self.status == OutgoingStatus.FAILED and self.retry_count <= max_retries


class SendCoordinator:
    """
    Sends messages under either protocol.

    A send inserts an optimistic entry into the session store before anything
    touches the network. The entry turns confirmed when the published message
    comes back through a fetch or the live reconciler, or failed if publishing
    raises. Failed entries stay visible until retried or discarded.
    """

    def __init__(
        self,
        signer: Signer,
        relay: RelayPool,
        store: SessionStore,
        config: Optional[SyncConfig] = None,
    ) -> None:
        self.signer = signer
        self.relay = relay
        self.store = store
        self.config = config or SyncConfig()
        self._outgoing: dict[str, OutgoingMessage] = {}

    async def send(
        self,
        partner: str,
        content: str,
        protocol: Protocol = Protocol.SEALED,
    ) -> SendResult:
        """
        Send a message to partner.

        Args:
            partner: Recipient identity
            content: Plaintext message
            protocol: Protocol to send under

        Returns:
            SendResult with the local entry; `error` is set if publishing failed

        Raises:
            NoSignerCapabilityError: If the signer lacks the protocol's scheme
        """
        self.signer.require_scheme(protocol)

        local = DecryptedMessage(
            id=new_local_id(),
            partner=partner,
            author=self.signer.identity,
            created_at=int(time.time()),
            protocol=protocol,
            content=content,
            send_state=SendState.OPTIMISTIC,
            client_first_seen=time.time(),
        )
        self.store.insert_local(partner, local)

        outgoing = OutgoingMessage(
            local_id=local.id,
            partner=partner,
            content=content,
            protocol=protocol,
            created_at=local.created_at,
        )
        self._outgoing[local.id] = outgoing
        return await self._attempt(outgoing)

    async def retry(self, partner: str, local_id: str) -> SendResult:
        """
        Re-send a failed message.

        Raises:
            MessageNotFoundError: If there is no failed local entry with that id
            SendFailedError: If the message has exhausted its retries
        """
        outgoing = self._outgoing.get(local_id)
        entry = self.store.local_entry(partner, local_id)
        if outgoing is None or entry is None or outgoing.partner != partner:
            raise MessageNotFoundError(local_id)
        if outgoing.status != OutgoingStatus.FAILED:
            raise SendFailedError(f"Message {local_id} has not failed")
        if not outgoing.can_retry(self.config.max_send_retries):
            raise SendFailedError(
                f"Message {local_id} exceeded {self.config.max_send_retries} retries"
            )

        self.store.update_local(partner, local_id, send_state=SendState.OPTIMISTIC, error=None)
        return await self._attempt(outgoing)

    def discard(self, partner: str, local_id: str) -> bool:
        """Remove a local entry. Returns False if it was not found."""
        self._outgoing.pop(local_id, None)
        return self.store.remove_local(partner, local_id) is not None

    def pending(self, partner: Optional[str] = None) -> list[OutgoingMessage]:
        """Outgoing messages whose local entry is not yet confirmed."""
        outstanding = []
        for local_id, outgoing in list(self._outgoing.items()):
            if self.store.local_entry(outgoing.partner, local_id) is None:
                # confirmed or discarded
                del self._outgoing[local_id]
                continue
            if partner is None or outgoing.partner == partner:
                outstanding.append(outgoing)
        return outstanding

    async def _encode(self, outgoing: OutgoingMessage) -> tuple[list[str], list[RawEnvelope]]:
        """Returns (ids to match confirmations against, envelopes to publish)."""
        if outgoing.protocol == Protocol.LEGACY:
            envelope = await encode_legacy(
                outgoing.partner, outgoing.content, self.signer, created_at=outgoing.created_at
            )
            return [envelope.id], [envelope]

        bundle = await encode_sealed(
            outgoing.partner, outgoing.content, self.signer, created_at=outgoing.created_at
        )
        return [bundle.message.id] + [w.id for w in bundle.wrappers], bundle.wrappers

    async def _attempt(self, outgoing: OutgoingMessage) -> SendResult:
        partner, local_id = outgoing.partner, outgoing.local_id
        outgoing.mark_sending()

        try:
            event_ids, envelopes = await self._encode(outgoing)
            self.store.update_local(partner, local_id, event_ids=tuple(event_ids))
            for envelope in envelopes:
                await self.relay.publish(envelope)
        except Exception as e:
            error = str(e) or type(e).__name__
            outgoing.mark_failed(error)
            logger.warning("Send to %s failed: %s", partner, error)
            entry = self.store.update_local(
                partner, local_id, send_state=SendState.FAILED, error=error
            )
            return SendResult(message=entry or self._snapshot(outgoing), error=error)

        outgoing.mark_sent(event_ids)
        logger.info(
            "Published %d %s envelope(s) to %s", len(envelopes), outgoing.protocol.value, partner
        )
        return SendResult(message=self._current(outgoing), event_ids=event_ids)

    def _current(self, outgoing: OutgoingMessage) -> DecryptedMessage:
        """The entry as it stands now, which may already be confirmed."""
        entry = self.store.local_entry(outgoing.partner, outgoing.local_id)
        if entry is not None:
            return entry
        for message in self.store.timeline(outgoing.partner):
            if message.id in outgoing.event_ids:
                return message
        return self._snapshot(outgoing)

    def _snapshot(self, outgoing: OutgoingMessage) -> DecryptedMessage:
        return DecryptedMessage(
            id=outgoing.local_id,
            partner=outgoing.partner,
            author=self.signer.identity,
            created_at=outgoing.created_at,
            protocol=outgoing.protocol,
            content=outgoing.content,
            send_state=SendState.FAILED if outgoing.last_error else SendState.OPTIMISTIC,
            error=outgoing.last_error,
            event_ids=tuple(outgoing.event_ids),
        )
