"""Session lifecycle management.

Tracks every connection's lifecycle state and owns the set of active
pairings. All client actions are serialized through one asyncio.Lock; the
notifications they produce are delivered after the lock is released so a
slow client never stalls the broker.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from rendezvous.errors import (
    AlreadyWaiting,
    ContentionExceeded,
    NotWaiting,
    PartnerUnreachable,
)
from rendezvous.identity import IdentityRegistry, SessionIdentity
from rendezvous.matchmaker import Matchmaker, MatchOutcome, Paired, Role, Waiting
from rendezvous.metrics import MetricsCollector, get_metrics_collector
from rendezvous.state import ClientEvent, ClientState, Effect, transition
from rendezvous.transport.websocket_protocol import (
    CancelledMessage,
    ErrorMessage,
    PairedMessage,
    PartnerDisconnectedMessage,
    ServerMessage,
    SessionEndedMessage,
    WaitingMessage,
)

logger = logging.getLogger(__name__)

# Number of stale local slot entries skipped before giving up on one request
MAX_STALE_CLAIMS = 3

TERMINAL_PEER_STATES = {"disconnected", "closed"}

NOTIFY_EFFECTS = {
    Effect.NOTIFY_PARTNER_ENDED,
    Effect.NOTIFY_PARTNER_DISCONNECTED,
    Effect.NOTIFY_PARTNER_UNREACHABLE,
}


@dataclass(frozen=True)
class Pairing:
    """Two matched parties with asymmetric roles."""

    initiator: SessionIdentity
    receiver: SessionIdentity
    established_at: float = field(default_factory=time.time)

    def partner_of(self, connection_handle: str) -> SessionIdentity:
        if self.initiator.connection_handle == connection_handle:
            return self.receiver
        return self.initiator

    def role_of(self, connection_handle: str) -> Role:
        if self.initiator.connection_handle == connection_handle:
            return Role.INITIATOR
        return Role.RECEIVER


@dataclass(frozen=True)
class Notification:
    """Outbound message for a client, possibly owned by another broker.

    ``sender`` is the identity that caused the message; the relay needs it so
    the receiving broker can match the message to its side of the pairing.
    """

    target: SessionIdentity
    message: ServerMessage
    sender: SessionIdentity | None = None


class Notifier(ABC):
    """Delivers notifications to local connections or remote brokers."""

    @abstractmethod
    async def deliver(self, notification: Notification) -> None:
        """Deliver one notification.

        Raises:
            ConnectionError: If the target cannot be reached
        """
        pass


def _partner_unreachable_message() -> ErrorMessage:
    return ErrorMessage(
        message="Peer connection to partner could not be established",
        code=PartnerUnreachable.code,
    )


class LifecycleManager:
    """Applies client events to the lifecycle state machine.

    Thread-safety: NOT thread-safe. Use from the broker's event loop only.
    """

    def __init__(
        self,
        matchmaker: Matchmaker,
        identities: IdentityRegistry,
        notifier: Notifier,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize lifecycle manager.

        Args:
            matchmaker: Matchmaker owning the waiting slot
            identities: Registry of identities held by this broker
            notifier: Outbound delivery for role assignments and teardown notices
            metrics: Metrics collector (defaults to the global collector)
        """
        self.matchmaker = matchmaker
        self.identities = identities
        self.notifier = notifier
        self.metrics = metrics or get_metrics_collector()

        self._states: dict[str, ClientState] = {}
        self._pairings: dict[str, Pairing] = {}
        self._lock = asyncio.Lock()

    @property
    def broker_id(self) -> str:
        return self.identities.broker_id

    def state_of(self, connection_handle: str) -> ClientState:
        return self._states.get(connection_handle, ClientState.IDLE)

    def pairing_of(self, connection_handle: str) -> Pairing | None:
        return self._pairings.get(connection_handle)

    def is_local(self, identity: SessionIdentity) -> bool:
        return identity.broker_id == self.broker_id

    # === Client operations ===

    async def find_partner(self, connection_handle: str, peer_address: str) -> MatchOutcome:
        """Match the client or make it wait.

        Args:
            connection_handle: Requesting connection
            peer_address: The client's peer-connection address

        Returns:
            Paired(INITIATOR, partner) or Waiting()

        Raises:
            AlreadyWaiting: If the connection is already waiting or paired
            ContentionExceeded: If the slot stayed contended (client may retry)
            ConnectionError: If a shared slot backend is unreachable
        """
        async with self._lock:
            state = self.state_of(connection_handle)
            if state is not ClientState.IDLE:
                raise AlreadyWaiting(
                    f"Connection {connection_handle} is already {state.value}"
                )

            identity = self.identities.register(peer_address, connection_handle)
            self.metrics.record_search()
            try:
                outcome, outbox = await self._match(identity)
            except ContentionExceeded:
                self.identities.release(identity)
                self.metrics.record_contention()
                raise
            except Exception:
                self.identities.release(identity)
                raise
            self._update_gauges()

        await self._dispatch(outbox)
        return outcome

    async def cancel_search(self, connection_handle: str) -> None:
        """Stop waiting. Calling it again is a no-op (raises NotWaiting).

        Raises:
            NotWaiting: If the connection is not waiting
        """
        async with self._lock:
            if self.state_of(connection_handle) is not ClientState.WAITING:
                raise NotWaiting(f"Connection {connection_handle} is not waiting")

            identity = self.identities.get(connection_handle)
            outbox = await self._handle_event(connection_handle, ClientEvent.CANCEL)
            if identity is not None:
                outbox.append(Notification(identity, CancelledMessage()))
            self.metrics.record_cancellation()
            self._update_gauges()

        await self._dispatch(outbox)

    async def end_session(self, connection_handle: str) -> None:
        """Hang up: tear down the pairing and notify the partner.

        Raises:
            InvalidTransition: If the connection is not paired
        """
        async with self._lock:
            outbox = await self._handle_event(connection_handle, ClientEvent.END)
            self._update_gauges()

        await self._dispatch(outbox)

    async def on_peer_state(self, connection_handle: str, peer_state: str) -> None:
        """Handle a peer-connection state report from the client.

        ``disconnected``/``closed`` end the session. ``failed`` means the
        partner was unreachable: both sides return to idle and only the
        partner is told. Reports outside a pairing are ignored.
        """
        if peer_state in TERMINAL_PEER_STATES:
            event = ClientEvent.END
        elif peer_state == "failed":
            event = ClientEvent.PEER_FAILED
        else:
            logger.debug(
                "Peer state reported",
                extra={"connection_handle": connection_handle, "peer_state": peer_state},
            )
            return

        async with self._lock:
            if self.state_of(connection_handle) is not ClientState.PAIRED:
                logger.debug(
                    "Ignoring peer state outside pairing",
                    extra={"connection_handle": connection_handle, "peer_state": peer_state},
                )
                return
            outbox = await self._handle_event(connection_handle, event)
            if event is ClientEvent.PEER_FAILED:
                self.metrics.record_partner_unreachable()
            self._update_gauges()

        await self._dispatch(outbox)

    async def on_disconnect(self, connection_handle: str) -> None:
        """Clean up after a dropped connection. Valid in every state."""
        async with self._lock:
            previous = self.state_of(connection_handle)
            outbox = await self._handle_event(connection_handle, ClientEvent.DISCONNECT)
            if previous is not ClientState.IDLE:
                self.metrics.record_disconnect()
            self._update_gauges()

        logger.info(
            "Connection cleaned up",
            extra={"connection_handle": connection_handle, "from_state": previous.value},
        )
        await self._dispatch(outbox)

    async def apply_remote(
        self,
        connection_handle: str,
        message: ServerMessage,
        sender: SessionIdentity | None,
        claimed: SessionIdentity | None = None,
    ) -> None:
        """Apply a notification relayed from another broker.

        A role assignment is accepted only if ``claimed`` (the entry the
        remote broker took from the slot) is the connection's current search.
        Anything else is answered with a partner-unreachable error so the
        claimer is not left dialing a party that will never answer.
        """
        async with self._lock:
            outbox = await self._apply_remote_locked(
                connection_handle, message, sender, claimed
            )
            self._update_gauges()

        await self._dispatch(outbox)

    async def keepalive_waiting(self) -> None:
        """Refresh the slot expiry for local waiting parties."""
        async with self._lock:
            waiting = [
                identity
                for handle, state in self._states.items()
                if state is ClientState.WAITING
                and (identity := self.identities.get(handle)) is not None
            ]
            for identity in waiting:
                if not await self.matchmaker.slot.keepalive(identity):
                    # Claimed by another broker; the role assignment is in flight
                    logger.warning(
                        "Waiting entry no longer in slot",
                        extra={"connection_handle": identity.connection_handle},
                    )

    def snapshot(self) -> dict[str, int]:
        """Counts for health and metrics reporting."""
        waiting = sum(1 for s in self._states.values() if s is ClientState.WAITING)
        paired = sum(1 for s in self._states.values() if s is ClientState.PAIRED)
        return {
            "waiting": waiting,
            "paired": paired,
            "pairings": len({id(p) for p in self._pairings.values()}),
            "identities": len(self.identities),
        }

    # === Internals (caller holds the lock) ===

    async def _match(
        self, identity: SessionIdentity
    ) -> tuple[MatchOutcome, list[Notification]]:
        handle = identity.connection_handle

        for _ in range(MAX_STALE_CLAIMS):
            outcome = await self.matchmaker.find_partner(identity)

            if isinstance(outcome, Waiting):
                result = transition(self.state_of(handle), ClientEvent.SEARCH)
                self._set_state(handle, result.state)
                return outcome, [Notification(identity, WaitingMessage())]

            partner = outcome.partner
            current = self.identities.get(partner.connection_handle)
            partner_state = self.state_of(partner.connection_handle)
            if self.is_local(partner) and (
                partner_state is not ClientState.WAITING or not partner.same_entry(current)
            ):
                logger.warning(
                    "Discarded stale waiting entry",
                    extra={"connection_handle": partner.connection_handle},
                )
                continue

            return outcome, self._form_pairing(identity, outcome)

        raise ContentionExceeded(
            f"Skipped {MAX_STALE_CLAIMS} stale waiting entries (connection {handle})"
        )

    def _form_pairing(self, initiator: SessionIdentity, outcome: Paired) -> list[Notification]:
        receiver = outcome.partner
        pairing = Pairing(initiator=initiator, receiver=receiver)

        self._enter_pairing(initiator, pairing)
        outbox = [
            Notification(
                initiator,
                PairedMessage(role=Role.INITIATOR.value, partner_address=receiver.peer_address),
            )
        ]
        receiver_message = PairedMessage(
            role=Role.RECEIVER.value, partner_address=initiator.peer_address
        )
        if self.is_local(receiver):
            self._enter_pairing(receiver, pairing)
        outbox.append(Notification(receiver, receiver_message, sender=initiator))

        self.metrics.record_match(time.time() - receiver.arrival_ts)
        logger.info(
            "Pairing established",
            extra={
                "initiator": initiator.connection_handle,
                "receiver": receiver.connection_handle,
                "remote_receiver": not self.is_local(receiver),
            },
        )
        return outbox

    def _enter_pairing(self, identity: SessionIdentity, pairing: Pairing) -> None:
        handle = identity.connection_handle
        self._set_state(handle, transition(self.state_of(handle), ClientEvent.MATCH).state)
        self._pairings[handle] = pairing

    async def _handle_event(self, connection_handle: str, event: ClientEvent) -> list[Notification]:
        result = transition(self.state_of(connection_handle), event)
        identity = self.identities.get(connection_handle)
        pairing = self._pairings.get(connection_handle)
        outbox: list[Notification] = []

        for effect in result.effects:
            if effect is Effect.VACATE_SLOT and identity is not None:
                await self._vacate(identity)
            elif effect is Effect.TEAR_DOWN_PAIRING:
                self._pairings.pop(connection_handle, None)
            elif effect is Effect.RELEASE_IDENTITY and identity is not None:
                self.identities.release(identity)
            elif effect in NOTIFY_EFFECTS and pairing is not None and identity is not None:
                outbox.extend(self._notify_partner(identity, pairing, effect))

        self._set_state(connection_handle, result.state)
        return outbox

    async def _vacate(self, identity: SessionIdentity) -> None:
        """Remove the connection's entry from the slot if it is still there.

        A backend failure is logged and the caller carries on: the entry
        stops being refreshed and expires via the slot TTL, and a late claim
        of it is answered with partner_unreachable.
        """
        try:
            vacated = await self.matchmaker.slot.vacate_if_owner(identity)
        except ConnectionError as e:
            logger.error(
                "Could not vacate waiting slot, leaving entry to expire",
                extra={"connection_handle": identity.connection_handle, "error": str(e)},
            )
            return

        if not vacated:
            # The claim won the race; the claimer learns we left via the relay
            logger.info(
                "Waiting entry already claimed",
                extra={"connection_handle": identity.connection_handle},
            )

    def _notify_partner(
        self, identity: SessionIdentity, pairing: Pairing, effect: Effect
    ) -> list[Notification]:
        partner = pairing.partner_of(identity.connection_handle)
        message: ServerMessage
        if effect is Effect.NOTIFY_PARTNER_ENDED:
            message = SessionEndedMessage()
        elif effect is Effect.NOTIFY_PARTNER_DISCONNECTED:
            message = PartnerDisconnectedMessage()
        else:
            message = _partner_unreachable_message()

        if self.is_local(partner):
            self._partner_left(partner)
        return [Notification(partner, message, sender=identity)]

    def _partner_left(self, partner: SessionIdentity) -> None:
        handle = partner.connection_handle
        result = transition(self.state_of(handle), ClientEvent.PARTNER_LEFT)
        self._pairings.pop(handle, None)
        if Effect.RELEASE_IDENTITY in result.effects:
            self.identities.release(partner)
        self._set_state(handle, result.state)

    async def _apply_remote_locked(
        self,
        connection_handle: str,
        message: ServerMessage,
        sender: SessionIdentity | None,
        claimed: SessionIdentity | None,
    ) -> list[Notification]:
        identity = self.identities.get(connection_handle)
        state = self.state_of(connection_handle)

        if isinstance(message, PairedMessage):
            if sender is None:
                logger.warning("Relayed pairing without sender, dropped")
                return []
            if (
                state is not ClientState.WAITING
                or identity is None
                or not identity.same_entry(claimed)
            ):
                # Claimed entry was cancelled, or belongs to an earlier search
                logger.warning(
                    "Relayed pairing for a stale waiting entry",
                    extra={"connection_handle": connection_handle, "state": state.value},
                )
                return [Notification(sender, _partner_unreachable_message(), sender=claimed)]

            await self._vacate(identity)
            pairing = Pairing(initiator=sender, receiver=identity)
            self._enter_pairing(identity, pairing)
            logger.info(
                "Pairing established by remote broker",
                extra={"initiator": sender.connection_handle, "receiver": connection_handle},
            )
            return [Notification(identity, message)]

        if isinstance(
            message, SessionEndedMessage | PartnerDisconnectedMessage | ErrorMessage
        ):
            pairing = self._pairings.get(connection_handle)
            if state is not ClientState.PAIRED or pairing is None or identity is None:
                return []
            if sender is not None and not pairing.partner_of(connection_handle).same_connection(
                sender
            ):
                return []
            self._partner_left(identity)
            return [Notification(identity, message)]

        logger.warning("Unexpected relayed message", extra={"type": message.type})
        return []

    def _set_state(self, connection_handle: str, state: ClientState) -> None:
        old_state = self.state_of(connection_handle)
        if state is ClientState.IDLE:
            self._states.pop(connection_handle, None)
        else:
            self._states[connection_handle] = state

        if old_state is not state:
            logger.debug(
                "Connection state transition",
                extra={
                    "connection_handle": connection_handle,
                    "from_state": old_state.value,
                    "to_state": state.value,
                },
            )

    def _update_gauges(self) -> None:
        snapshot = self.snapshot()
        self.metrics.set_waiting_parties(snapshot["waiting"])
        self.metrics.set_active_pairings(snapshot["pairings"])

    async def _dispatch(self, outbox: list[Notification]) -> None:
        for notification in outbox:
            try:
                await self.notifier.deliver(notification)
            except Exception as e:
                # Undeliverable targets are cleaned up by their own disconnect
                logger.warning(
                    "Failed to deliver notification",
                    extra={
                        "connection_handle": notification.target.connection_handle,
                        "type": notification.message.type,
                        "error": str(e),
                    },
                )
                if (
                    isinstance(notification.message, PairedMessage)
                    and notification.sender is not None
                    and not self.is_local(notification.target)
                ):
                    # Receiver's broker is gone; release the initiator
                    await self.apply_remote(
                        notification.sender.connection_handle,
                        _partner_unreachable_message(),
                        notification.target,
                    )
