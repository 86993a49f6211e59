"""Main Flask application for the realtime call relay."""

import logging
import os

import click
from flask import Flask, jsonify
from flask_session import Session
from flask_socketio import SocketIO
from sqlalchemy.exc import SQLAlchemyError

from call_routes import register_call_routes
from call_sessions import CallSessionManager
from errors import CallError
from event_handlers import register_event_handlers
from event_relay import EventRelay
from models import db
from presence import PresenceDirectory
from signaling import SignalingRelay


logger = logging.getLogger(__name__)

EXTENSION_KEY = "relaychat"


class RealtimeServices:
    """The process-wide presence directory and everything built on it."""

    def __init__(self, socketio: SocketIO, ring_timeout_seconds: int) -> None:
        self.socketio = socketio
        self.presence = PresenceDirectory()
        self.relay = EventRelay(socketio, self.presence)
        self.signaling = SignalingRelay(self.relay)
        self.call_manager = CallSessionManager(
            self.relay,
            self.presence,
            ring_timeout_seconds=ring_timeout_seconds,
        )
        self.presence.on_change = self._broadcast_presence
        self.sweeper = None

    def _broadcast_presence(self, online_users) -> None:
        self.relay.broadcast("getOnlineUsers", online_users)


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %s", name, value, default)
        return default


def _default_config() -> dict:
    origins = os.environ.get("CORS_ALLOWED_ORIGINS", "*")
    return {
        "SECRET_KEY": os.environ.get("SECRET_KEY", "dev-secret-key"),
        "SQLALCHEMY_DATABASE_URI": os.environ.get("DATABASE_URL", "sqlite:///relaychat.db"),
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "SESSION_TYPE": os.environ.get("SESSION_TYPE", "filesystem"),
        "SESSION_PERMANENT": False,
        "CALL_RING_TIMEOUT_SECONDS": _env_int("CALL_RING_TIMEOUT_SECONDS", 60),
        "CALL_SWEEP_INTERVAL_SECONDS": _env_int("CALL_SWEEP_INTERVAL_SECONDS", 15),
        "CORS_ALLOWED_ORIGINS": origins if origins == "*" else [o.strip() for o in origins.split(",") if o.strip()],
        "SOCKETIO_ASYNC_MODE": os.environ.get("SOCKETIO_ASYNC_MODE") or None,
    }


def start_missed_call_sweeper(app: Flask, services: RealtimeServices, interval: int):
    """Periodically move calls that rang too long to ``missed``."""

    socketio = services.socketio

    def _sweep_loop():
        while True:
            socketio.sleep(interval)
            with app.app_context():
                try:
                    count = services.call_manager.expire_pending()
                except SQLAlchemyError:
                    db.session.rollback()
                    logger.exception("Missed-call sweep failed")
                    continue
                if count:
                    logger.info("Marked %s unanswered calls as missed", count)

    logger.info("Starting missed-call sweeper every %ss", interval)
    return socketio.start_background_task(_sweep_loop)


def create_app(config=None) -> Flask:
    """Build the Flask app, its Socket.IO server and the call services."""

    app = Flask(__name__)
    app.config.update(_default_config())
    if config:
        app.config.update(config)

    # configure database
    db.init_app(app)

    # configure session
    if app.config.get("SESSION_TYPE"):
        Session(app)

    # initialize SocketIO
    socketio = SocketIO(
        app,
        cors_allowed_origins=app.config["CORS_ALLOWED_ORIGINS"],
        async_mode=app.config["SOCKETIO_ASYNC_MODE"],
    )
    services = RealtimeServices(socketio, app.config["CALL_RING_TIMEOUT_SECONDS"])
    app.extensions[EXTENSION_KEY] = services

    register_event_handlers(socketio, app, services)
    register_call_routes(app, services)

    @app.errorhandler(CallError)
    def handle_call_error(exc):
        logger.warning("%s: %s", exc.error, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.cli.command("init-db")
    @click.option("--drop", is_flag=True, help="Drop existing tables first.")
    def init_db_command(drop):
        """Create the database tables."""
        if drop:
            db.drop_all()
            click.echo("Database tables dropped")
        db.create_all()
        click.echo("Database tables created")

    interval = app.config["CALL_SWEEP_INTERVAL_SECONDS"]
    if interval > 0 and not app.config.get("TESTING"):
        services.sweeper = start_missed_call_sweeper(app, services, interval)

    return app


def get_services(app: Flask) -> RealtimeServices:
    return app.extensions[EXTENSION_KEY]


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    application = create_app()
    with application.app_context():
        db.create_all()
    get_services(application).socketio.run(application, debug=True)
