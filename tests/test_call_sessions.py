"""Tests for the call session state machine."""

import unittest
from datetime import datetime, timedelta, timezone

from call_sessions import CallSessionManager, GroupNotFound, serialize_call_session
from errors import CallNotFound, CallUnauthorized, InvalidTransition, PeerUnreachable
from event_relay import EventRelay
from models import CallLeg, CallSession, db
from presence import PresenceDirectory
from support import AppTestCase, RecordingSocketIO


class CallSessionTestCase(AppTestCase):

    def setUp(self):
        super().setUp()
        self.recorder = RecordingSocketIO()
        self.presence = PresenceDirectory()
        self.manager = CallSessionManager(EventRelay(self.recorder, self.presence), self.presence)
        self.presence.register(self.alice.id, "sid-alice")
        self.presence.register(self.bob.id, "sid-bob")

    def ring_bob(self, call_type="audio"):
        session = self.manager.initiate(self.alice.id, call_type, receiver_id=self.bob.id)
        self.recorder.emitted.clear()
        return session


class PrivateCallTest(CallSessionTestCase):

    def test_initiate_accept_scenario(self):
        session = self.manager.initiate(self.alice.id, "audio", receiver_id=self.bob.id)

        self.assertEqual(session.status, "pending")
        self.assertIsNone(session.start_time)
        self.assertEqual(
            self.recorder.events_to("sid-bob"),
            [("incomingCall", {"callId": session.id, "callerId": self.alice.id, "type": "audio", "isGroupCall": False})],
        )

        self.recorder.emitted.clear()
        session = self.manager.accept(session.id, self.bob.id)

        self.assertEqual(session.status, "accepted")
        self.assertIsNotNone(session.start_time)
        self.assertEqual(
            self.recorder.events_to("sid-alice"),
            [("callAccepted", {"callId": session.id, "receiverId": self.bob.id})],
        )

    def test_initiate_to_offline_user_persists_nothing(self):
        with self.assertRaises(PeerUnreachable):
            self.manager.initiate(self.alice.id, "video", receiver_id=self.carol.id)

        self.assertEqual(CallSession.query.count(), 0)
        self.assertEqual(self.recorder.emitted, [])

    def test_initiate_validates_input(self):
        with self.assertRaises(ValueError):
            self.manager.initiate(self.alice.id, "hologram", receiver_id=self.bob.id)
        with self.assertRaises(ValueError):
            self.manager.initiate(self.alice.id, "audio", receiver_id=self.alice.id)
        with self.assertRaises(ValueError):
            self.manager.initiate(self.alice.id, "audio")
        self.assertEqual(CallSession.query.count(), 0)

    def test_only_receiver_may_accept_or_reject(self):
        session = self.ring_bob()

        for actor in (self.alice.id, self.carol.id):
            with self.assertRaises(CallUnauthorized):
                self.manager.accept(session.id, actor)
            with self.assertRaises(CallUnauthorized):
                self.manager.reject(session.id, actor)

        self.assertEqual(self.reload_call(session.id).status, "pending")
        self.assertEqual(self.recorder.emitted, [])

    def test_reject_notifies_caller(self):
        session = self.ring_bob()

        session = self.manager.reject(session.id, self.bob.id)

        self.assertEqual(session.status, "rejected")
        self.assertIsNone(session.end_time)
        self.assertEqual(
            self.recorder.events_to("sid-alice"),
            [("callRejected", {"callId": session.id, "receiverId": self.bob.id})],
        )

    def test_transition_from_wrong_state_is_refused(self):
        session = self.ring_bob()
        self.manager.reject(session.id, self.bob.id)
        self.recorder.emitted.clear()

        with self.assertRaises(InvalidTransition) as ctx:
            self.manager.reject(session.id, self.bob.id)
        self.assertEqual(ctx.exception.current_status, "rejected")

        with self.assertRaises(InvalidTransition):
            self.manager.accept(session.id, self.bob.id)

        self.assertEqual(self.reload_call(session.id).status, "rejected")
        self.assertEqual(self.recorder.emitted, [])

    def test_unknown_call(self):
        for action in (self.manager.accept, self.manager.reject, self.manager.end):
            with self.assertRaises(CallNotFound):
                action("does-not-exist", self.bob.id)

    def test_end_accepted_call_scenario(self):
        session = self.ring_bob()
        self.manager.accept(session.id, self.bob.id)
        self.recorder.emitted.clear()

        session = self.manager.end(session.id, self.bob.id)
        end_time = session.end_time

        self.assertEqual(session.status, "ended")
        self.assertIsNotNone(end_time)
        self.assertGreaterEqual(session.duration_seconds, 0)
        self.assertEqual(
            self.recorder.events_to("sid-alice"),
            [("callEnded", {"callId": session.id, "userId": self.bob.id})],
        )

        for actor in (self.alice.id, self.bob.id):
            with self.assertRaises(InvalidTransition):
                self.manager.end(session.id, actor)
        self.assertEqual(self.reload_call(session.id).end_time, end_time)

    def test_caller_can_cancel_ringing_call(self):
        session = self.ring_bob()

        session = self.manager.end(session.id, self.alice.id)

        self.assertEqual(session.status, "ended")
        self.assertEqual(
            self.recorder.events_to("sid-bob"),
            [("callEnded", {"callId": session.id, "userId": self.alice.id})],
        )
        with self.assertRaises(InvalidTransition):
            self.manager.accept(session.id, self.bob.id)

    def test_non_participant_cannot_end(self):
        session = self.ring_bob()

        with self.assertRaises(CallUnauthorized):
            self.manager.end(session.id, self.carol.id)
        self.assertEqual(self.reload_call(session.id).status, "pending")

    def test_status_write_rechecks_database_state(self):
        session = self.ring_bob()
        CallSession.query.filter_by(id=session.id).update({"status": "ended"})
        db.session.commit()

        self.assertFalse(self.manager._transition(session, ["pending"], "accepted"))
        db.session.rollback()
        self.assertEqual(self.reload_call(session.id).status, "ended")

    def test_accept_after_concurrent_end_is_refused(self):
        session = self.ring_bob()
        self.manager.end(session.id, self.alice.id)

        with self.assertRaises(InvalidTransition) as ctx:
            self.manager.accept(session.id, self.bob.id)
        self.assertEqual(ctx.exception.current_status, "ended")
        self.assertIsNone(self.reload_call(session.id).start_time)

    def test_notifications_to_offline_peer_do_not_fail(self):
        session = self.ring_bob()
        self.presence.unregister("sid-alice")

        session = self.manager.accept(session.id, self.bob.id)

        self.assertEqual(session.status, "accepted")
        self.assertEqual(self.recorder.emitted, [])


class MissedCallTest(CallSessionTestCase):

    def test_expire_pending_marks_missed(self):
        session = self.ring_bob()
        later = datetime.now(timezone.utc) + timedelta(seconds=120)

        self.assertEqual(self.manager.expire_pending(now=later), 1)

        session = self.reload_call(session.id)
        self.assertEqual(session.status, "missed")
        self.assertIsNone(session.end_time)
        self.assertEqual(self.recorder.events_to("sid-alice"), [("callMissed", {"callId": session.id})])
        self.assertEqual(self.recorder.events_to("sid-bob"), [("callMissed", {"callId": session.id})])

        with self.assertRaises(InvalidTransition):
            self.manager.accept(session.id, self.bob.id)

    def test_fresh_and_answered_calls_are_not_swept(self):
        fresh = self.ring_bob()
        self.presence.register(self.carol.id, "sid-carol")
        answered = self.manager.initiate(self.alice.id, "audio", receiver_id=self.carol.id)
        self.manager.accept(answered.id, self.carol.id)

        self.assertEqual(self.manager.expire_pending(), 0)
        later = datetime.now(timezone.utc) + timedelta(seconds=120)
        self.assertEqual(self.manager.expire_pending(now=later), 1)

        self.assertEqual(self.reload_call(fresh.id).status, "missed")
        self.assertEqual(self.reload_call(answered.id).status, "accepted")

    def test_sweep_for_one_user_skips_other_calls(self):
        bobs_call = self.ring_bob()
        self.presence.register(self.carol.id, "sid-carol")
        outsider = self.create_user("dave")
        later = datetime.now(timezone.utc) + timedelta(seconds=120)

        self.assertEqual(self.manager.expire_pending(now=later, user_id=outsider.id), 0)
        self.assertEqual(self.reload_call(bobs_call.id).status, "pending")
        self.assertEqual(self.recorder.emitted, [])

        self.assertEqual(self.manager.expire_pending(now=later, user_id=self.bob.id), 1)
        self.assertEqual(self.reload_call(bobs_call.id).status, "missed")


class GroupCallTest(CallSessionTestCase):

    def setUp(self):
        super().setUp()
        self.group = self.create_group(self.alice, self.bob, self.carol)

    def ring_group(self):
        session = self.manager.initiate(self.alice.id, "video", group_id=self.group.id, is_group_call=True)
        self.recorder.emitted.clear()
        return session

    def leg_status(self, call_id, user):
        db.session.expire_all()
        return CallLeg.query.filter_by(call_id=call_id, user_id=user.id).one().status

    def test_initiate_rings_online_members_except_caller(self):
        session = self.manager.initiate(self.alice.id, "video", group_id=self.group.id, is_group_call=True)

        self.assertTrue(session.is_group_call)
        self.assertIsNone(session.receiver_id)
        self.assertEqual(sorted(leg.user_id for leg in session.legs), [self.bob.id, self.carol.id])
        self.assertEqual(
            self.recorder.events_to("sid-bob"),
            [(
                "incomingCall",
                {
                    "callId": session.id,
                    "callerId": self.alice.id,
                    "type": "video",
                    "groupId": self.group.id,
                    "isGroupCall": True,
                },
            )],
        )
        self.assertEqual(self.recorder.events_to("sid-alice"), [])

    def test_group_must_exist_and_include_caller(self):
        with self.assertRaises(GroupNotFound):
            self.manager.initiate(self.alice.id, "audio", group_id=999, is_group_call=True)

        outsider = self.create_user("dave")
        with self.assertRaises(CallUnauthorized):
            self.manager.initiate(outsider.id, "audio", group_id=self.group.id, is_group_call=True)
        self.assertEqual(CallSession.query.count(), 0)

    def test_each_member_accepts_independently(self):
        session = self.ring_group()

        self.manager.accept(session.id, self.bob.id)
        start_time = self.reload_call(session.id).start_time
        self.manager.accept(session.id, self.carol.id)

        session = self.reload_call(session.id)
        self.assertEqual(session.status, "accepted")
        self.assertEqual(session.start_time, start_time)
        self.assertEqual(self.leg_status(session.id, self.bob), "accepted")
        self.assertEqual(self.leg_status(session.id, self.carol), "accepted")
        self.assertEqual(
            self.recorder.events_to("sid-alice"),
            [
                ("callAccepted", {"callId": session.id, "receiverId": self.bob.id}),
                ("callAccepted", {"callId": session.id, "receiverId": self.carol.id}),
            ],
        )

        with self.assertRaises(InvalidTransition):
            self.manager.accept(session.id, self.bob.id)

    def test_non_members_and_caller_cannot_answer(self):
        session = self.ring_group()
        outsider = self.create_user("dave")

        for actor in (self.alice.id, outsider.id):
            with self.assertRaises(CallUnauthorized):
                self.manager.accept(session.id, actor)
            with self.assertRaises(CallUnauthorized):
                self.manager.reject(session.id, actor)

    def test_everyone_declining_rejects_the_call(self):
        session = self.ring_group()

        self.manager.reject(session.id, self.bob.id)
        self.assertEqual(self.reload_call(session.id).status, "pending")
        self.manager.reject(session.id, self.carol.id)

        self.assertEqual(self.reload_call(session.id).status, "rejected")
        self.assertEqual(
            self.recorder.events_to("sid-alice"),
            [
                ("callRejected", {"callId": session.id, "receiverId": self.bob.id}),
                ("callRejected", {"callId": session.id, "receiverId": self.carol.id, "status": "rejected"}),
            ],
        )

    def test_last_member_leaving_ends_the_call(self):
        session = self.ring_group()
        self.manager.accept(session.id, self.bob.id)
        self.manager.accept(session.id, self.carol.id)
        self.recorder.emitted.clear()

        self.manager.end(session.id, self.bob.id)
        self.assertEqual(self.reload_call(session.id).status, "accepted")
        self.assertEqual(
            self.recorder.events_to("sid-alice"),
            [("callEnded", {"callId": session.id, "userId": self.bob.id})],
        )
        with self.assertRaises(InvalidTransition):
            self.manager.end(session.id, self.bob.id)

        self.recorder.emitted.clear()
        self.manager.end(session.id, self.carol.id)
        session = self.reload_call(session.id)
        self.assertEqual(session.status, "ended")
        self.assertIsNotNone(session.end_time)
        self.assertEqual(
            self.recorder.events_to("sid-alice"),
            [("callEnded", {"callId": session.id, "userId": self.carol.id, "status": "ended"})],
        )

    def test_caller_hanging_up_ends_every_leg(self):
        session = self.ring_group()
        self.manager.accept(session.id, self.bob.id)
        self.recorder.emitted.clear()

        self.manager.end(session.id, self.alice.id)

        self.assertEqual(self.reload_call(session.id).status, "ended")
        self.assertEqual(self.leg_status(session.id, self.bob), "ended")
        self.assertEqual(self.leg_status(session.id, self.carol), "ended")
        self.assertEqual(
            self.recorder.events_to("sid-bob"),
            [("callEnded", {"callId": session.id, "userId": self.alice.id})],
        )

    def test_unanswered_members_are_marked_missed(self):
        session = self.ring_group()
        later = datetime.now(timezone.utc) + timedelta(seconds=120)

        self.assertEqual(self.manager.expire_pending(now=later), 1)

        self.assertEqual(self.reload_call(session.id).status, "missed")
        self.assertEqual(self.leg_status(session.id, self.carol), "missed")


class SerializationTest(CallSessionTestCase):

    def test_serialized_shape(self):
        session = self.ring_bob("video")
        data = serialize_call_session(session)

        self.assertEqual(data["_id"], session.id)
        self.assertEqual(data["callId"], session.id)
        self.assertEqual(data["callerId"], self.alice.id)
        self.assertEqual(data["receiverId"], self.bob.id)
        self.assertIsNone(data["groupId"])
        self.assertFalse(data["isGroupCall"])
        self.assertEqual(data["type"], "video")
        self.assertEqual(data["status"], "pending")
        self.assertIsNone(data["startTime"])
        self.assertIsNone(data["endTime"])
        self.assertIsNone(data["durationSeconds"])
        self.assertNotIn("legs", data)

    def test_history_includes_group_invitations(self):
        group = self.create_group(self.alice, self.bob, self.carol)
        private = self.ring_bob()
        grouped = self.manager.initiate(self.alice.id, "audio", group_id=group.id, is_group_call=True)

        carol_history = [entry.id for entry in self.manager.history(self.carol.id)]
        bob_history = {entry.id for entry in self.manager.history(self.bob.id)}

        self.assertEqual(carol_history, [grouped.id])
        self.assertEqual(bob_history, {private.id, grouped.id})
        self.assertEqual(len(self.manager.history(self.alice.id, limit=1)), 1)


if __name__ == "__main__":
    unittest.main()
