"""Relay of WebRTC signaling payloads between call participants."""

import logging
from typing import Hashable, Tuple

from event_relay import EventRelay


logger = logging.getLogger(__name__)

SIGNAL_EVENT = "signalingData"


def validate_envelope(data) -> Tuple[int, str, object]:
    """Return ``(receiver_id, call_id, signal)`` from a raw envelope."""

    if not isinstance(data, dict):
        raise ValueError("Signaling envelope must be an object.")
    receiver_id = data.get("receiverId")
    call_id = data.get("callId")
    signal = data.get("signal")
    if receiver_id in (None, "") or not call_id or signal is None:
        raise ValueError("receiverId, callId and signal are required.")
    try:
        receiver_id = int(receiver_id)
    except (TypeError, ValueError) as exc:
        raise ValueError("receiverId must be a user id.") from exc
    return receiver_id, str(call_id), signal


class SignalingRelay:
    """Forward opaque offers, answers and ICE candidates to the other peer.

    Nothing is queued here; a payload for an offline peer is dropped.
    """

    def __init__(self, relay: EventRelay) -> None:
        self.relay = relay

    def relay_signal(self, sender_id: Hashable, target_id: Hashable, call_id: str, signal) -> bool:
        delivered = self.relay.deliver(
            target_id,
            SIGNAL_EVENT,
            {"signal": signal, "callId": call_id, "senderId": sender_id},
        )
        if not delivered:
            logger.debug("Signal for call %s from %s dropped: %s is offline", call_id, sender_id, target_id)
        return delivered
