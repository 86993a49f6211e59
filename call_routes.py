"""REST endpoints for the call lifecycle and signaling."""

import logging

from flask import jsonify, request

from call_sessions import serialize_call_session
from errors import PeerUnreachable
from helpers import current_user_id, login_required, parse_limit, parse_user_id
from signaling import validate_envelope


logger = logging.getLogger(__name__)


def register_call_routes(app, services):
    """Register the ``/calls`` routes on ``app``."""

    call_manager = services.call_manager
    signaling = services.signaling
    presence = services.presence

    @app.route("/calls/initiate", methods=["POST"])
    @login_required
    def initiate_call():
        """Create a call and ring the receiver or the group."""

        data = request.get_json(silent=True) or {}
        is_group_call = bool(data.get("isGroupCall"))
        call_type = (data.get("type") or "").lower()
        try:
            receiver_id = parse_user_id(data.get("receiverId"))
            group_id = parse_user_id(data.get("groupId"))
        except ValueError as exc:
            return jsonify({"error": "invalid_id", "message": str(exc)}), 400

        caller_id = current_user_id()
        try:
            call_session = call_manager.initiate(
                caller_id,
                call_type,
                receiver_id=receiver_id,
                group_id=group_id,
                is_group_call=is_group_call,
            )
        except PeerUnreachable:
            logger.info("Call from %s to offline user %s refused", caller_id, receiver_id)
            raise
        except ValueError as exc:
            return jsonify({"error": "invalid_request", "message": str(exc)}), 400
        return jsonify(serialize_call_session(call_session))

    @app.route("/calls/<call_id>/accept", methods=["POST"])
    @login_required
    def accept_call(call_id):
        call_session = call_manager.accept(call_id, current_user_id())
        return jsonify(serialize_call_session(call_session))

    @app.route("/calls/<call_id>/reject", methods=["POST"])
    @login_required
    def reject_call(call_id):
        call_session = call_manager.reject(call_id, current_user_id())
        return jsonify(serialize_call_session(call_session))

    @app.route("/calls/<call_id>/end", methods=["POST"])
    @login_required
    def end_call(call_id):
        call_session = call_manager.end(call_id, current_user_id())
        return jsonify(serialize_call_session(call_session))

    @app.route("/calls/signal", methods=["POST"])
    @login_required
    def relay_signal():
        """Forward a signaling payload; 400 when the peer has no connection."""

        try:
            receiver_id, call_id, signal = validate_envelope(request.get_json(silent=True))
        except ValueError as exc:
            return jsonify({"error": "invalid_signal", "message": str(exc)}), 400

        if not signaling.relay_signal(current_user_id(), receiver_id, call_id, signal):
            raise PeerUnreachable("The other participant is offline.", call_id)
        return jsonify({"message": "Signal delivered.", "callId": call_id})

    @app.route("/calls/<call_id>", methods=["GET"])
    @login_required
    def call_status(call_id):
        call_session = call_manager.get_for_participant(call_id, current_user_id())
        return jsonify(serialize_call_session(call_session))

    @app.route("/calls/history", methods=["GET"])
    @login_required
    def call_history():
        """Return the calls the current user placed or was invited to."""

        limit = parse_limit(request.args.get("limit"))
        entries = call_manager.history(current_user_id(), limit=limit)
        return jsonify({"calls": [serialize_call_session(entry) for entry in entries]})

    @app.route("/calls/timeout/sweep", methods=["POST"])
    @login_required
    def call_timeout_sweep():
        """Mark the current user's calls that rang past the timeout as missed."""

        timeout_seconds = call_manager.ring_timeout_seconds
        updated_count = call_manager.expire_pending(user_id=current_user_id())
        return jsonify({"timeoutSeconds": timeout_seconds, "updatedCount": updated_count})

    @app.route("/users/online", methods=["GET"])
    @login_required
    def online_users():
        return jsonify({"users": presence.online_users()})
