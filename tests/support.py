"""Shared fixtures for the test suite."""

import unittest

from app import create_app, get_services
from models import CallSession, Group, GroupMembership, User, db


TEST_CONFIG = {
    "TESTING": True,
    "SECRET_KEY": "test-secret-key",
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "SESSION_TYPE": None,
    "SOCKETIO_ASYNC_MODE": "threading",
    "CALL_RING_TIMEOUT_SECONDS": 60,
}


class RecordingSocketIO:
    """Stand-in for ``SocketIO`` that records emitted events."""

    def __init__(self):
        self.emitted = []

    def emit(self, event, payload=None, to=None):
        self.emitted.append((event, payload, to))

    def events_to(self, sid):
        return [(event, payload) for event, payload, target in self.emitted if target == sid]

    def names(self):
        return [event for event, _, _ in self.emitted]


class AppTestCase(unittest.TestCase):
    """Base test case with a fresh app, database and three users."""

    def setUp(self):
        self.app = create_app(dict(TEST_CONFIG))
        self.app_context = self.app.app_context()
        self.app_context.push()
        db.create_all()

        self.services = get_services(self.app)
        self.socketio = self.services.socketio

        self.alice = self.create_user("alice")
        self.bob = self.create_user("bob")
        self.carol = self.create_user("carol")

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.app_context.pop()

    # helpers -----------------------------------------------------------
    def create_user(self, username):
        user = User(username=username)
        db.session.add(user)
        db.session.commit()
        return user

    def create_group(self, owner, *members):
        group = Group(name=f"{owner.username}'s group", owner_id=owner.id)
        group.memberships = [GroupMembership(user_id=user.id) for user in (owner,) + members]
        db.session.add(group)
        db.session.commit()
        return group

    def login(self, user):
        client = self.app.test_client()
        with client.session_transaction() as sess:
            sess["user_id"] = user.id
        return client

    def connect(self, client):
        return self.socketio.test_client(self.app, flask_test_client=client)

    def reload_call(self, call_id):
        db.session.expire_all()
        return db.session.get(CallSession, call_id)

    @staticmethod
    def events(socket_client, name):
        return [item["args"][0] for item in socket_client.get_received() if item["name"] == name]
