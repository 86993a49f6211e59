"""Directory of users that currently hold a live Socket.IO connection."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Hashable, List, Optional


logger = logging.getLogger(__name__)


class PresenceDirectory:
    """Map each user to at most one connection sid.

    A reconnect replaces the previous entry. ``on_change`` receives the full
    list of online users after every change.
    """

    def __init__(self, on_change: Optional[Callable[[List[Hashable]], None]] = None) -> None:
        self._sid_by_user: Dict[Hashable, str] = {}
        self._user_by_sid: Dict[str, Hashable] = {}
        self._lock = threading.Lock()
        self.on_change = on_change

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------
    def register(self, user_id: Hashable, sid: str) -> None:
        with self._lock:
            previous = self._sid_by_user.get(user_id)
            if previous is not None and previous != sid:
                self._user_by_sid.pop(previous, None)
                logger.info("User %s reconnected; replacing connection %s with %s", user_id, previous, sid)
            self._sid_by_user[user_id] = sid
            self._user_by_sid[sid] = user_id
            snapshot = self._snapshot()
        self._notify(snapshot)

    def unregister(self, sid: str) -> Optional[Hashable]:
        """Drop the entry owned by ``sid``; a stale sid leaves newer entries alone."""

        with self._lock:
            user_id = self._user_by_sid.pop(sid, None)
            if user_id is None:
                return None
            if self._sid_by_user.get(user_id) != sid:
                logger.debug("Ignoring stale disconnect of %s for user %s", sid, user_id)
                return None
            del self._sid_by_user[user_id]
            snapshot = self._snapshot()
        self._notify(snapshot)
        return user_id

    def clear(self) -> None:
        with self._lock:
            self._sid_by_user.clear()
            self._user_by_sid.clear()

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    def lookup(self, user_id: Hashable) -> Optional[str]:
        return self._sid_by_user.get(user_id)

    def user_for(self, sid: str) -> Optional[Hashable]:
        return self._user_by_sid.get(sid)

    def is_online(self, user_id: Hashable) -> bool:
        return user_id in self._sid_by_user

    def online_users(self) -> List[Hashable]:
        with self._lock:
            return self._snapshot()

    def __len__(self) -> int:
        return len(self._sid_by_user)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _snapshot(self) -> List[Hashable]:
        return sorted(self._sid_by_user, key=str)

    def _notify(self, snapshot: List[Hashable]) -> None:
        if self.on_change is not None:
            self.on_change(snapshot)
