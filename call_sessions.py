"""Call session state management utilities."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy import or_

from errors import CallNotFound, CallUnauthorized, InvalidTransition, PeerUnreachable
from event_relay import EventRelay
from models import CALL_TYPES, CallLeg, CallSession, Group, db
from presence import PresenceDirectory


logger = logging.getLogger(__name__)

OPEN_STATUSES = ("pending", "accepted")


class GroupNotFound(CallNotFound):
    """Raised when a group call targets a group that does not exist."""

    error = "group_not_found"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _involves(user_id: int):
    return or_(
        CallSession.caller_id == user_id,
        CallSession.receiver_id == user_id,
        CallSession.legs.any(CallLeg.user_id == user_id),
    )


def serialize_call_session(entry: CallSession) -> dict:
    """Return a JSON-serializable representation of a call session."""

    data = {
        "_id": entry.id,
        "callId": entry.id,
        "callerId": entry.caller_id,
        "receiverId": entry.receiver_id,
        "groupId": entry.group_id,
        "isGroupCall": entry.is_group_call,
        "type": entry.type,
        "status": entry.status,
        "startTime": _isoformat(entry.start_time),
        "endTime": _isoformat(entry.end_time),
        "createdAt": _isoformat(entry.created_at),
        "durationSeconds": entry.duration_seconds,
    }
    if entry.is_group_call:
        data["legs"] = [
            {
                "userId": leg.user_id,
                "status": leg.status,
                "joinedAt": _isoformat(leg.joined_at),
                "leftAt": _isoformat(leg.left_at),
            }
            for leg in entry.legs
        ]
    return data


class CallSessionManager:
    """Manage lifecycle of voice/video call sessions.

    Every status write is a conditional ``UPDATE ... WHERE status IN (...)``
    so two handlers racing on the same call cannot both transition it.
    """

    def __init__(
        self,
        relay: EventRelay,
        presence: PresenceDirectory,
        ring_timeout_seconds: int = 60,
    ) -> None:
        self.relay = relay
        self.presence = presence
        self.ring_timeout_seconds = ring_timeout_seconds

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    def get(self, call_id: str) -> CallSession:
        session = db.session.get(CallSession, call_id) if call_id else None
        if session is None:
            raise CallNotFound("Call not found.", call_id)
        return session

    def get_for_participant(self, call_id: str, user_id: int) -> CallSession:
        session = self.get(call_id)
        if not self.is_participant(session, user_id):
            raise CallUnauthorized("You are not part of this call.", call_id)
        return session

    def history(self, user_id: int, limit: int = 50) -> List[CallSession]:
        return (
            CallSession.query.filter(_involves(user_id))
            .order_by(CallSession.created_at.desc())
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # permissions
    # ------------------------------------------------------------------
    @staticmethod
    def is_participant(session: CallSession, user_id: int) -> bool:
        if user_id == session.caller_id:
            return True
        if session.is_group_call:
            return session.leg_for(user_id) is not None
        return user_id == session.receiver_id

    @staticmethod
    def counterparts(session: CallSession, user_id: int) -> List[int]:
        """Users that should hear about an action taken by ``user_id``."""

        if user_id != session.caller_id:
            return [session.caller_id]
        if session.is_group_call:
            return [leg.user_id for leg in session.legs if leg.status in OPEN_STATUSES]
        return [session.receiver_id]

    # ------------------------------------------------------------------
    # state writes
    # ------------------------------------------------------------------
    def _transition(self, session: CallSession, sources: Iterable[str], target: str, **values) -> bool:
        """Compare-and-set the session status inside the current transaction."""

        values.update(status=target, updated_at=_utcnow())
        updated = (
            CallSession.query.filter(
                CallSession.id == session.id,
                CallSession.status.in_(tuple(sources)),
            ).update(values, synchronize_session=False)
        )
        return bool(updated)

    def _transition_leg(self, leg: CallLeg, sources: Iterable[str], target: str, **values) -> bool:
        values["status"] = target
        updated = (
            CallLeg.query.filter(
                CallLeg.id == leg.id,
                CallLeg.status.in_(tuple(sources)),
            ).update(values, synchronize_session=False)
        )
        return bool(updated)

    def _reject_transition(self, session: CallSession, message: str) -> None:
        db.session.rollback()
        db.session.refresh(session)
        logger.warning(
            "Rejected transition on call %s (status=%s): %s",
            session.id,
            session.status,
            message,
        )
        raise InvalidTransition(message, session.id, session.status)

    def _commit(self, session: CallSession) -> CallSession:
        db.session.commit()
        db.session.refresh(session)
        return session

    def _notify(self, user_ids: Iterable[int], event: str, payload: dict) -> Dict[int, bool]:
        results = self.relay.deliver_many(user_ids, event, payload)
        dropped = [user_id for user_id, delivered in results.items() if not delivered]
        if dropped:
            logger.info("%s for call %s not delivered to offline users %s", event, payload.get("callId"), dropped)
        return results

    # ------------------------------------------------------------------
    # lifecycle actions
    # ------------------------------------------------------------------
    def initiate(
        self,
        caller_id: int,
        call_type: str,
        receiver_id: Optional[int] = None,
        group_id: Optional[int] = None,
        is_group_call: bool = False,
    ) -> CallSession:
        """Create a pending call and ring the recipient(s)."""

        if call_type not in CALL_TYPES:
            raise ValueError(f"Call type must be one of {', '.join(CALL_TYPES)}.")

        if is_group_call:
            return self._initiate_group(caller_id, call_type, group_id)

        if receiver_id is None:
            raise ValueError("receiverId is required for a private call.")
        if receiver_id == caller_id:
            raise ValueError("You cannot call yourself.")
        if not self.presence.is_online(receiver_id):
            raise PeerUnreachable("The user you are calling is offline.")

        session = CallSession(
            caller_id=caller_id,
            receiver_id=receiver_id,
            is_group_call=False,
            type=call_type,
            status="pending",
        )
        db.session.add(session)
        self._commit(session)
        logger.info("Call %s: %s is calling %s (%s)", session.id, caller_id, receiver_id, call_type)

        self._notify(
            [receiver_id],
            "incomingCall",
            {
                "callId": session.id,
                "callerId": caller_id,
                "type": call_type,
                "isGroupCall": False,
            },
        )
        return session

    def _initiate_group(self, caller_id: int, call_type: str, group_id: Optional[int]) -> CallSession:
        if group_id is None:
            raise ValueError("groupId is required for a group call.")
        group = db.session.get(Group, group_id)
        if group is None:
            raise GroupNotFound("Group not found.")
        member_ids = group.member_ids
        if caller_id not in member_ids:
            raise CallUnauthorized("You are not a member of this group.")
        invitees = [member_id for member_id in member_ids if member_id != caller_id]
        if not invitees:
            raise ValueError("There is nobody else in this group to call.")

        session = CallSession(
            caller_id=caller_id,
            group_id=group_id,
            is_group_call=True,
            type=call_type,
            status="pending",
        )
        session.legs = [CallLeg(user_id=member_id, status="pending") for member_id in invitees]
        db.session.add(session)
        self._commit(session)
        logger.info(
            "Group call %s: %s is calling group %s (%d members, %s)",
            session.id,
            caller_id,
            group_id,
            len(invitees),
            call_type,
        )

        self._notify(
            invitees,
            "incomingCall",
            {
                "callId": session.id,
                "callerId": caller_id,
                "type": call_type,
                "groupId": group_id,
                "isGroupCall": True,
            },
        )
        return session

    def accept(self, call_id: str, user_id: int) -> CallSession:
        session = self.get(call_id)
        now = _utcnow()

        if session.is_group_call:
            leg = session.leg_for(user_id)
            if leg is None:
                raise CallUnauthorized("You are not allowed to answer this call.", call_id)
            if session.status not in OPEN_STATUSES:
                self._reject_transition(session, "Call is no longer available.")
            if not self._transition_leg(leg, ["pending"], "accepted", joined_at=now):
                self._reject_transition(session, "You already answered this call.")
            if not self._transition(session, ["pending"], "accepted", start_time=now):
                current = db.session.query(CallSession.status).filter_by(id=session.id).scalar()
                if current != "accepted":
                    self._reject_transition(session, "Call is no longer available.")
        else:
            if session.receiver_id != user_id:
                raise CallUnauthorized("You are not allowed to answer this call.", call_id)
            if not self._transition(session, ["pending"], "accepted", start_time=now):
                self._reject_transition(session, "Call is no longer available.")

        self._commit(session)
        logger.info("Call %s accepted by %s", call_id, user_id)
        self._notify([session.caller_id], "callAccepted", {"callId": session.id, "receiverId": user_id})
        return session

    def reject(self, call_id: str, user_id: int) -> CallSession:
        session = self.get(call_id)
        payload = {"callId": session.id, "receiverId": user_id}

        if session.is_group_call:
            leg = session.leg_for(user_id)
            if leg is None:
                raise CallUnauthorized("You are not allowed to decline this call.", call_id)
            if session.status not in OPEN_STATUSES:
                self._reject_transition(session, "Call is no longer available.")
            if not self._transition_leg(leg, ["pending"], "rejected"):
                self._reject_transition(session, "You already answered this call.")
            settled = self._settle_group(session, _utcnow())
            if settled:
                payload["status"] = settled
        else:
            if session.receiver_id != user_id:
                raise CallUnauthorized("You are not allowed to decline this call.", call_id)
            if not self._transition(session, ["pending"], "rejected"):
                self._reject_transition(session, "Call is no longer available.")

        self._commit(session)
        logger.info("Call %s rejected by %s", call_id, user_id)
        self._notify([session.caller_id], "callRejected", payload)
        return session

    def end(self, call_id: str, user_id: int) -> CallSession:
        """Hang up, or cancel a call that is still ringing."""

        session = self.get(call_id)
        if not self.is_participant(session, user_id):
            raise CallUnauthorized("You are not allowed to end this call.", call_id)
        now = _utcnow()
        recipients = self.counterparts(session, user_id)
        payload = {"callId": session.id, "userId": user_id}

        if session.is_group_call and user_id != session.caller_id:
            leg = session.leg_for(user_id)
            if not self._transition_leg(leg, OPEN_STATUSES, "ended", left_at=now):
                self._reject_transition(session, "You already left this call.")
            settled = self._settle_group(session, now)
            if settled:
                payload["status"] = settled
        else:
            if not self._transition(session, OPEN_STATUSES, "ended", end_time=now):
                self._reject_transition(session, "Call has already finished.")
            if session.is_group_call:
                (
                    CallLeg.query.filter(
                        CallLeg.call_id == session.id,
                        CallLeg.status.in_(OPEN_STATUSES),
                    ).update({"status": "ended", "left_at": now}, synchronize_session=False)
                )

        self._commit(session)
        logger.info("Call %s ended by %s", call_id, user_id)
        self._notify(recipients, "callEnded", payload)
        return session

    def _has_open_legs(self, call_id: str) -> bool:
        return (
            CallLeg.query.filter(
                CallLeg.call_id == call_id,
                CallLeg.status.in_(OPEN_STATUSES),
            ).first()
            is not None
        )

    def _settle_group(self, session: CallSession, now: datetime) -> Optional[str]:
        """Close the group call once no member is ringing or talking.

        Returns the terminal status the session moved to, or None while
        members are still open.
        """

        if self._has_open_legs(session.id):
            return None
        if self._transition(session, ["pending"], "rejected"):
            return "rejected"
        if self._transition(session, ["accepted"], "ended", end_time=now):
            return "ended"
        return None

    # ------------------------------------------------------------------
    # ring timeout
    # ------------------------------------------------------------------
    def mark_missed(self, session: CallSession) -> bool:
        """Move a still-ringing call to ``missed``; returns False if it moved on."""

        unanswered = (
            [leg.user_id for leg in session.legs if leg.status == "pending"]
            if session.is_group_call
            else [session.receiver_id]
        )
        if not self._transition(session, ["pending"], "missed"):
            db.session.rollback()
            return False
        if session.is_group_call:
            (
                CallLeg.query.filter(
                    CallLeg.call_id == session.id,
                    CallLeg.status == "pending",
                ).update({"status": "missed"}, synchronize_session=False)
            )
        self._commit(session)
        logger.info("Call %s missed after ringing for %ss", session.id, self.ring_timeout_seconds)
        self._notify([session.caller_id] + unanswered, "callMissed", {"callId": session.id})
        return True

    def expire_pending(
        self,
        now: Optional[datetime] = None,
        timeout_seconds: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> int:
        """Mark every call that has been ringing past the timeout as missed.

        With ``user_id`` only that user's calls are swept.
        """

        if timeout_seconds is None:
            timeout_seconds = self.ring_timeout_seconds
        cutoff = (now or _utcnow()) - timedelta(seconds=timeout_seconds)
        query = CallSession.query.filter(
            CallSession.status == "pending",
            CallSession.created_at < cutoff,
        )
        if user_id is not None:
            query = query.filter(_involves(user_id))
        expired = query.order_by(CallSession.created_at).all()
        return sum(1 for session in expired if self.mark_missed(session))
