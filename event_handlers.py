# Description: This file contains the event handlers for the SocketIO events.


# import
import logging

from flask import request, session
from flask_socketio import emit

from signaling import validate_envelope


logger = logging.getLogger(__name__)


def register_event_handlers(socketio, app, services):
    """Register the realtime handlers that keep presence and relay signals."""

    presence = services.presence
    signaling = services.signaling

    @socketio.on("connect")
    def handle_connect(auth=None):
        """Handle the "connect" event."""

        user_id = session.get("user_id")
        if not user_id:
            logger.info("Refusing anonymous socket connection %s", request.sid)
            return False
        presence.register(user_id, request.sid)
        logger.info("User %s connected (%s)", user_id, request.sid)

    @socketio.on("disconnect")
    def handle_disconnect(reason=None):
        """Handle the "disconnect" event."""

        # calls survive a dropped socket; the peer may come back and resume
        user_id = presence.unregister(request.sid)
        if user_id is not None:
            logger.info("User %s disconnected (%s)", user_id, request.sid)

    @socketio.on("signal")
    def handle_signal(data):
        """Relay an offer, answer or ICE candidate to the other peer."""

        user_id = session.get("user_id")
        if not user_id or presence.user_for(request.sid) != user_id:
            emit("call_error", {"error": "login_required", "message": "Login required."})
            return {"delivered": False}

        try:
            receiver_id, call_id, signal = validate_envelope(data)
        except ValueError as exc:
            logger.warning("Malformed signal from %s dropped: %s", user_id, exc)
            emit("call_error", {"error": "invalid_signal", "message": str(exc)})
            return {"delivered": False}

        delivered = signaling.relay_signal(user_id, receiver_id, call_id, signal)
        return {"delivered": delivered}

    @socketio.on("getOnlineUsers")
    def handle_get_online_users(data=None):
        """Send the current presence snapshot to the requesting client only."""

        emit("getOnlineUsers", presence.online_users())
