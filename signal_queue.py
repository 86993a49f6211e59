"""Client-side buffering of signaling payloads that beat the peer object."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Deque, Dict, Optional, Set, Tuple


logger = logging.getLogger(__name__)


class ChannelState(Enum):
    NO_PEER = "no_peer"
    PEER_READY = "peer_ready"
    CLOSED = "closed"


@dataclass(frozen=True)
class SignalingEnvelope:
    signal: Any
    call_id: str
    sender_id: Any = None

    @classmethod
    def from_event(cls, data) -> "SignalingEnvelope":
        """Build an envelope from a ``signalingData`` event payload."""

        if not isinstance(data, dict):
            raise ValueError("Signaling event must be an object.")
        if data.get("signal") is None or not data.get("callId"):
            raise ValueError("Signaling event needs signal and callId.")
        return cls(signal=data["signal"], call_id=str(data["callId"]), sender_id=data.get("senderId"))


class SignalChannel:
    """Route signals for one call into its peer connection.

    Until a peer is attached, signals wait in arrival order. ``attach`` drains
    them into the peer once and switches to direct delivery.
    """

    def __init__(self, call_id: str, remote_id: Any = None) -> None:
        self.call_id = call_id
        self.remote_id = remote_id
        self.state = ChannelState.NO_PEER
        self.peer = None
        self._pending: Deque[SignalingEnvelope] = deque()
        self._lock = threading.RLock()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def receive(self, envelope: SignalingEnvelope) -> bool:
        """Feed or buffer ``envelope``; returns False when it was dropped."""

        if envelope.call_id != self.call_id:
            logger.debug("Dropping signal for call %s on channel %s", envelope.call_id, self.call_id)
            return False
        with self._lock:
            if self.state is ChannelState.CLOSED:
                logger.debug("Dropping signal for closed call %s", self.call_id)
                return False
            if self.state is ChannelState.NO_PEER:
                self._pending.append(envelope)
                logger.debug("Buffered signal for call %s (%d waiting)", self.call_id, len(self._pending))
                return True
            self._feed(envelope)
            return True

    def attach(self, peer) -> int:
        """Hand the peer every buffered signal in FIFO order; returns how many."""

        with self._lock:
            if self.state is not ChannelState.NO_PEER:
                raise RuntimeError(f"Channel for call {self.call_id} is {self.state.value}.")
            self.peer = peer
            self.state = ChannelState.PEER_READY
            drained = 0
            while self._pending:
                self._feed(self._pending.popleft())
                drained += 1
        if drained:
            logger.debug("Replayed %d buffered signals into call %s", drained, self.call_id)
        return drained

    def close(self) -> None:
        with self._lock:
            self.state = ChannelState.CLOSED
            self._pending.clear()
            self.peer = None

    def _feed(self, envelope: SignalingEnvelope) -> None:
        try:
            self.peer.signal(envelope.signal)
        except Exception:
            logger.exception("Peer rejected signal for call %s; continuing", self.call_id)


class SignalRouter:
    """Keep one :class:`SignalChannel` per call id and remote peer.

    A group call has one channel per member the caller talks to. Once a
    channel is closed, late signals from that member are dropped instead of
    opening a fresh buffer.
    """

    def __init__(self) -> None:
        self._channels: Dict[Tuple[str, Any], SignalChannel] = {}
        self._closed: Set[Tuple[str, Any]] = set()
        self._lock = threading.Lock()

    def channel(self, call_id: str, remote_id: Any = None) -> SignalChannel:
        key = (str(call_id), remote_id)
        with self._lock:
            self._closed.discard(key)
            channel = self._channels.get(key)
            if channel is None:
                channel = self._channels[key] = SignalChannel(str(call_id), remote_id)
            return channel

    def get(self, call_id: str, remote_id: Any = None) -> Optional[SignalChannel]:
        return self._channels.get((str(call_id), remote_id))

    def is_closed(self, call_id: str, remote_id: Any = None) -> bool:
        return (str(call_id), remote_id) in self._closed

    def dispatch(self, data) -> bool:
        """Deliver a raw ``signalingData`` payload; malformed ones are dropped."""

        try:
            envelope = SignalingEnvelope.from_event(data)
        except ValueError as exc:
            logger.warning("Dropping malformed signal: %s", exc)
            return False
        key = (envelope.call_id, envelope.sender_id)
        with self._lock:
            if key in self._closed:
                channel = None
            else:
                channel = self._channels.get(key)
                if channel is None:
                    channel = self._channels[key] = SignalChannel(*key)
        if channel is None:
            logger.debug("Dropping signal from %s for closed call %s", envelope.sender_id, envelope.call_id)
            return False
        return channel.receive(envelope)

    def close(self, call_id: str, remote_id: Any = None) -> None:
        key = (str(call_id), remote_id)
        with self._lock:
            channel = self._channels.pop(key, None)
            self._closed.add(key)
        if channel is not None:
            channel.close()

    def close_all(self) -> None:
        with self._lock:
            channels = list(self._channels.values())
            self._channels.clear()
            self._closed.clear()
        for channel in channels:
            channel.close()
