"""Client-side call controller.

Drives one user's side of a call: REST actions against ``/calls``, Socket.IO
event handling, local media, peer objects and the signal buffers that hold
offers and ICE candidates until the peer object exists.

The peer-connection and media layers are injected:

* ``peer_factory(initiator, stream, on_signal)`` returns an object with
  ``signal(data)`` and ``destroy()``; it calls ``on_signal(data)`` whenever it
  has an offer, answer or candidate to send.
* ``media_provider(call_type)`` returns a local stream; ``stop()`` is called on
  it when the call is torn down, if present.
* ``notify(kind, message)`` shows a toast-style notification.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from signal_queue import SignalRouter


logger = logging.getLogger(__name__)

# server error code -> notification kind
_NOTIFY_KINDS = {
    "peer_offline": "peer_offline",
    "not_allowed": "unauthorized",
    "login_required": "unauthorized",
    "invalid_transition": "call_ended",
    "call_not_found": "call_ended",
}

# session statuses after which a group call has nobody left on the line
_FINISHED_STATUSES = ("rejected", "ended")


class CallRequestError(Exception):
    """Raised when a ``/calls`` request fails."""

    def __init__(self, status_code: int, error: str, message: str = "") -> None:
        super().__init__(message or error)
        self.status_code = status_code
        self.error = error
        self.message = message or error


def format_duration(seconds) -> str:
    """Render a call duration as ``MM:SS`` or ``H:MM:SS``."""

    seconds = max(0, int(seconds or 0))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class CallClient:
    """One user's view of the current call."""

    def __init__(
        self,
        http: requests.Session,
        sio,
        peer_factory: Callable[..., Any],
        media_provider: Callable[[str], Any],
        base_url: str = "",
        notify: Optional[Callable[[str, str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        timeout: float = 10,
    ) -> None:
        self.http = http
        self.sio = sio
        self.peer_factory = peer_factory
        self.media_provider = media_provider
        self.base_url = base_url.rstrip("/")
        self.notify = notify or (lambda kind, message: None)
        self.clock = clock
        self.timeout = timeout

        self.current_call: Optional[Dict[str, Any]] = None
        self.peers: Dict[Any, Any] = {}
        self.local_stream = None
        self.online_users: List[Any] = []
        self.is_call_modal_open = False
        self.is_minimized = False
        self.signals = SignalRouter()
        self._started_at: Optional[float] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # wiring
    # ------------------------------------------------------------------
    def bind(self) -> None:
        """Register the Socket.IO handlers on ``self.sio``."""

        self.sio.on("incomingCall", self.on_incoming_call)
        self.sio.on("callAccepted", self.on_call_accepted)
        self.sio.on("callRejected", self.on_call_rejected)
        self.sio.on("callEnded", self.on_call_ended)
        self.sio.on("callMissed", self.on_call_missed)
        self.sio.on("signalingData", self.on_signaling_data)
        self.sio.on("getOnlineUsers", self.on_online_users)

    def connect(self, url: Optional[str] = None) -> None:
        """Open the socket, authenticating with the HTTP session cookie."""

        cookie = "; ".join(f"{name}={value}" for name, value in self.http.cookies.items())
        headers = {"Cookie": cookie} if cookie else {}
        self.sio.connect(url or self.base_url, headers=headers, transports=["websocket"])

    # ------------------------------------------------------------------
    # properties
    # ------------------------------------------------------------------
    @property
    def call_id(self) -> Optional[str]:
        if not self.current_call:
            return None
        return self.current_call.get("callId") or self.current_call.get("_id")

    @property
    def is_active(self) -> bool:
        return self._started_at is not None

    def call_duration(self) -> int:
        if self._started_at is None:
            return 0
        return int(self.clock() - self._started_at)

    def formatted_duration(self) -> str:
        return format_duration(self.call_duration())

    def toggle_minimized(self) -> bool:
        if self.current_call:
            self.is_minimized = not self.is_minimized
        return self.is_minimized

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------
    def _post(self, path: str, payload: Optional[dict] = None) -> dict:
        try:
            response = self.http.post(f"{self.base_url}{path}", json=payload or {}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise CallRequestError(0, "network_error", str(exc)) from exc
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not response.ok:
            raise CallRequestError(response.status_code, body.get("error", "request_failed"), body.get("message", ""))
        return body

    def _report(self, exc: CallRequestError) -> None:
        kind = _NOTIFY_KINDS.get(exc.error, "error")
        logger.warning("Call request failed (%s %s): %s", exc.status_code, exc.error, exc.message)
        self.notify(kind, exc.message)

    # ------------------------------------------------------------------
    # user actions
    # ------------------------------------------------------------------
    def initiate_call(self, receiver_id=None, call_type="audio", group_id=None, is_group_call=False):
        """Ring a user (or a group); returns the call record or None."""

        try:
            call = self._post(
                "/calls/initiate",
                {
                    "receiverId": receiver_id,
                    "type": call_type,
                    "groupId": group_id,
                    "isGroupCall": is_group_call,
                },
            )
        except CallRequestError as exc:
            self._report(exc)
            return None

        with self._lock:
            self.current_call = dict(call, isIncoming=False)
            self.is_call_modal_open = True
            self.local_stream = self.media_provider(call_type)
            if not is_group_call:
                # offer goes out now; the receiver buffers it until it answers
                self._open_peer(call["receiverId"], initiator=True)
        return call

    def accept_call(self) -> bool:
        with self._lock:
            call = self.current_call
            if not call or not call.get("isIncoming"):
                return False
            call_id = self.call_id
        try:
            self._post(f"/calls/{call_id}/accept")
        except CallRequestError as exc:
            self._report(exc)
            if exc.status_code in (404, 409):
                self._teardown()
            return False

        with self._lock:
            if self.call_id != call_id:
                return False
            self.current_call["status"] = "accepted"
            self.local_stream = self.media_provider(self.current_call.get("type", "audio"))
            self._open_peer(self.current_call["callerId"], initiator=False)
            self._start_timer()
        return True

    def reject_call(self) -> bool:
        call_id = self.call_id
        if not call_id:
            return False
        try:
            self._post(f"/calls/{call_id}/reject")
        except CallRequestError as exc:
            self._report(exc)
            return False
        finally:
            self._teardown()
        return True

    def end_call(self) -> bool:
        call_id = self.call_id
        if not call_id:
            return False
        try:
            self._post(f"/calls/{call_id}/end")
        except CallRequestError as exc:
            self._report(exc)
            return False
        finally:
            self._teardown()
        return True

    # ------------------------------------------------------------------
    # socket events
    # ------------------------------------------------------------------
    def on_incoming_call(self, data) -> None:
        with self._lock:
            if self.current_call is not None:
                busy_with = self.call_id
            else:
                busy_with = None
                self.current_call = dict(data, isIncoming=True, status="pending")
                self.is_call_modal_open = True
                self.is_minimized = False
        if busy_with is not None:
            logger.info("Declining call %s while busy with %s", data.get("callId"), busy_with)
            try:
                self._post(f"/calls/{data.get('callId')}/reject")
            except CallRequestError as exc:
                logger.warning("Could not decline call %s: %s", data.get("callId"), exc.message)

    def on_call_accepted(self, data) -> None:
        with self._lock:
            if not self._is_current(data) or self.current_call.get("isIncoming"):
                return
            self.current_call["status"] = "accepted"
            if self.current_call.get("isGroupCall"):
                self._open_peer(data.get("receiverId"), initiator=True)
            self._start_timer()

    def on_call_rejected(self, data) -> None:
        with self._lock:
            if not self._is_current(data):
                return
            group_call = self.current_call.get("isGroupCall")
        if group_call:
            logger.info("Member %s declined group call %s", data.get("receiverId"), data.get("callId"))
            if data.get("status") not in _FINISHED_STATUSES:
                return
            self.notify("call_rejected", "Nobody joined the call.")
            self._teardown()
            return
        self.notify("call_rejected", "The call was declined.")
        self._teardown()

    def on_call_ended(self, data) -> None:
        with self._lock:
            if not self._is_current(data):
                return
            call = self.current_call
            leaving = data.get("userId")
            if call.get("isGroupCall") and not call.get("isIncoming") and leaving != call.get("callerId"):
                self._close_peer(leaving)
                if data.get("status") not in _FINISHED_STATUSES:
                    return
        self.notify("call_ended", "The call has ended.")
        self._teardown()

    def on_call_missed(self, data) -> None:
        if not self._is_current(data):
            return
        self.notify("call_ended", "Nobody answered the call.")
        self._teardown()

    def on_signaling_data(self, data) -> None:
        if not isinstance(data, dict):
            logger.debug("Dropping malformed signal %r", data)
            return
        if not self._is_current(data):
            logger.debug("Dropping signal for inactive call %s", data.get("callId"))
            return
        self.signals.dispatch(data)

    def on_online_users(self, users) -> None:
        self.online_users = list(users or [])

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _is_current(self, data) -> bool:
        call_id = self.call_id
        return call_id is not None and str(data.get("callId")) == str(call_id)

    def _start_timer(self) -> None:
        if self._started_at is None:
            self._started_at = self.clock()

    def _open_peer(self, remote_id, initiator: bool):
        call_id = self.call_id

        def _send(signal):
            self._send_signal(call_id, remote_id, signal)

        peer = self.peer_factory(initiator, self.local_stream, _send)
        self.peers[remote_id] = peer
        self.signals.channel(call_id, remote_id).attach(peer)
        return peer

    def _close_peer(self, remote_id) -> None:
        peer = self.peers.pop(remote_id, None)
        self.signals.close(self.call_id, remote_id)
        if peer is not None:
            peer.destroy()

    def _send_signal(self, call_id, remote_id, signal) -> None:
        try:
            self._post("/calls/signal", {"receiverId": remote_id, "signal": signal, "callId": call_id})
        except CallRequestError as exc:
            # dropped signals stay invisible to the user
            logger.warning("Signal for call %s to %s not sent: %s", call_id, remote_id, exc.error)

    def _teardown(self) -> None:
        with self._lock:
            peers = list(self.peers.values())
            stream = self.local_stream
            self.current_call = None
            self.peers = {}
            self.local_stream = None
            self.is_call_modal_open = False
            self.is_minimized = False
            self._started_at = None
            self.signals.close_all()
        for peer in peers:
            try:
                peer.destroy()
            except Exception:
                logger.exception("Failed to destroy peer connection")
        stop = getattr(stream, "stop", None)
        if callable(stop):
            stop()
