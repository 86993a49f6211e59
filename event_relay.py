"""Best-effort delivery of server events to a user's live connection."""

import logging
from typing import Dict, Hashable, Iterable, Optional

from presence import PresenceDirectory


logger = logging.getLogger(__name__)


class EventRelay:
    """Push events to users through the presence directory.

    Delivery is at-most-once. Offline users are skipped and the call returns
    ``False`` so the caller can decide whether that matters.
    """

    def __init__(self, socketio, presence: PresenceDirectory) -> None:
        self.socketio = socketio
        self.presence = presence

    def deliver(self, user_id: Hashable, event: str, payload) -> bool:
        sid = self.presence.lookup(user_id)
        if sid is None:
            logger.debug("Dropping %s for offline user %s", event, user_id)
            return False
        self.socketio.emit(event, payload, to=sid)
        logger.debug("Delivered %s to user %s (%s)", event, user_id, sid)
        return True

    def deliver_many(
        self,
        user_ids: Iterable[Hashable],
        event: str,
        payload,
        exclude: Optional[Hashable] = None,
    ) -> Dict[Hashable, bool]:
        results = {}
        for user_id in user_ids:
            if exclude is not None and user_id == exclude:
                continue
            results[user_id] = self.deliver(user_id, event, payload)
        return results

    def broadcast(self, event: str, payload) -> None:
        self.socketio.emit(event, payload)
