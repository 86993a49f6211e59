# Description: This file contains the database models for the application.

# import
import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy


CALL_TYPES = ("audio", "video")

# create the database object
db = SQLAlchemy()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_call_id() -> str:
    return uuid.uuid4().hex


# User database model
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(20), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=_utcnow, nullable=False)


class Group(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=_utcnow, nullable=False)

    owner = db.relationship('User', backref='owned_groups')
    memberships = db.relationship('GroupMembership', cascade='all, delete-orphan', backref='group')

    @property
    def member_ids(self):
        return [membership.user_id for membership in self.memberships]


class GroupMembership(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('group.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    joined_at = db.Column(db.DateTime, default=_utcnow, nullable=False)

    user = db.relationship('User', backref='group_memberships')


class CallSession(db.Model):
    """Durable record of one call attempt and its lifecycle."""

    id = db.Column(db.String(32), primary_key=True, default=_new_call_id)
    caller_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    receiver_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    group_id = db.Column(db.Integer, db.ForeignKey('group.id'), nullable=True)
    is_group_call = db.Column(db.Boolean, nullable=False, default=False)
    type = db.Column(db.String(10), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending', index=True)
    start_time = db.Column(db.DateTime, nullable=True)
    end_time = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=_utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    caller = db.relationship('User', foreign_keys=[caller_id], backref='initiated_calls')
    receiver = db.relationship('User', foreign_keys=[receiver_id], backref='received_calls')
    group = db.relationship('Group', backref='calls')
    legs = db.relationship('CallLeg', cascade='all, delete-orphan', backref='call', order_by='CallLeg.id')

    __table_args__ = (
        db.CheckConstraint(
            '(receiver_id IS NULL) != (group_id IS NULL)',
            name='ck_call_session_single_target',
        ),
    )

    @property
    def duration_seconds(self):
        if not self.start_time or not self.end_time:
            return None
        return int((self.end_time - self.start_time).total_seconds())

    def leg_for(self, user_id):
        for leg in self.legs:
            if leg.user_id == user_id:
                return leg
        return None


class CallLeg(db.Model):
    """Per-member state of a group call."""

    id = db.Column(db.Integer, primary_key=True)
    call_id = db.Column(db.String(32), db.ForeignKey('call_session.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending')
    joined_at = db.Column(db.DateTime, nullable=True)
    left_at = db.Column(db.DateTime, nullable=True)

    user = db.relationship('User')

    __table_args__ = (db.UniqueConstraint('call_id', 'user_id', name='uq_call_leg_member'),)
