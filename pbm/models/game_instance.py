"""
project: Play By Mail
module: game_instance.py
License: MIT

Live play-throughs and their runtime world.

``GameInstance`` owns the lifecycle state machine. The permitted moves are
listed in ``TRANSITIONS``; every mutator goes through ``_move`` so an illegal
request raises ``IllegalTransition`` before any field changes.

Runtime rows (location, creature, item and character instances) store both
``game_instance_id`` and ``game_id``. The instance is the source of truth;
a flush-time listener fills ``game_id`` from it and rejects disagreement.
"""

import datetime

from sqlalchemy import event, select

from pbm import db
from pbm.errors import IllegalTransition, InvalidField
from pbm.utils.clock import new_id, utcnow

STATUS_CREATED = "created"
STATUS_STARTED = "started"
STATUS_PAUSED = "paused"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_CANCELLED})

# (action, from) -> to
TRANSITIONS = {
    ("start", STATUS_CREATED): STATUS_STARTED,
    ("pause", STATUS_STARTED): STATUS_PAUSED,
    ("resume", STATUS_PAUSED): STATUS_STARTED,
    ("complete", STATUS_STARTED): STATUS_COMPLETED,
    ("cancel", STATUS_CREATED): STATUS_CANCELLED,
    ("cancel", STATUS_STARTED): STATUS_CANCELLED,
    ("cancel", STATUS_PAUSED): STATUS_CANCELLED,
}


class GameInstance(db.Model):
    """A live play-through of a game.

    Attributes:
        status: created | started | paused | completed | cancelled
        current_turn: 0 while created, then 1.. and only ever increasing.
        max_turns: Configured total; reaching it completes the instance.
        next_turn_due_at: Deadline after which outstanding sheets are abandoned.
        manager_subscription_id: The manager subscription join sheets encode.
    """

    __tablename__ = "game_instance"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), db.ForeignKey("game.id", ondelete="CASCADE"), nullable=False, index=True)
    manager_subscription_id = db.Column(db.String(36), nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False, default=STATUS_CREATED)
    current_turn = db.Column(db.Integer, nullable=False, default=0)
    max_turns = db.Column(db.Integer, nullable=True)
    required_player_count = db.Column(db.Integer, nullable=False, default=0)
    delivery_email = db.Column(db.Boolean, nullable=False, default=False)
    delivery_physical_post = db.Column(db.Boolean, nullable=False, default=True)
    delivery_physical_local = db.Column(db.Boolean, nullable=False, default=False)
    started_at = db.Column(db.DateTime, nullable=True)
    last_turn_at = db.Column(db.DateTime, nullable=True)
    next_turn_due_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    game = db.relationship("Game", back_populates="instances", lazy="joined")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can(self, action: str) -> bool:
        return (action, self.status) in TRANSITIONS

    def _move(self, action: str) -> str:
        target = TRANSITIONS.get((action, self.status))
        if target is None:
            raise IllegalTransition(
                f"cannot {action} an instance that is {self.status}",
                details={"game_instance_id": self.id, "action": action, "status": self.status},
            )
        self.status = target
        return target

    def mark_started(self, now: datetime.datetime, turn_due_at: datetime.datetime | None):
        self._move("start")
        self.current_turn = 1
        self.started_at = now
        self.next_turn_due_at = turn_due_at

    def mark_paused(self):
        self._move("pause")

    def mark_resumed(self, turn_due_at: datetime.datetime | None):
        self._move("resume")
        self.next_turn_due_at = turn_due_at

    def mark_cancelled(self, now: datetime.datetime):
        self._move("cancel")
        self.cancelled_at = now
        self.next_turn_due_at = None

    def mark_completed(self, now: datetime.datetime):
        self._move("complete")
        self.completed_at = now
        self.next_turn_due_at = None

    def advance_turn(self, now: datetime.datetime, turn_due_at: datetime.datetime | None):
        if self.status != STATUS_STARTED:
            raise IllegalTransition(
                f"cannot advance an instance that is {self.status}",
                details={"game_instance_id": self.id, "status": self.status},
            )
        self.current_turn += 1
        self.last_turn_at = now
        self.next_turn_due_at = turn_due_at

    def deadline_passed(self, now: datetime.datetime) -> bool:
        return self.next_turn_due_at is not None and now >= self.next_turn_due_at

    def is_last_turn(self) -> bool:
        return self.max_turns is not None and self.current_turn >= self.max_turns

    def to_dict(self):
        def _iso(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "game_id": self.game_id,
            "status": self.status,
            "current_turn": self.current_turn,
            "max_turns": self.max_turns,
            "required_player_count": self.required_player_count,
            "started_at": _iso(self.started_at),
            "last_turn_at": _iso(self.last_turn_at),
            "next_turn_due_at": _iso(self.next_turn_due_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "delivery_email": self.delivery_email,
            "delivery_physical_post": self.delivery_physical_post,
            "delivery_physical_local": self.delivery_physical_local,
        }


def _instance_fk():
    return db.Column(
        db.String(36), db.ForeignKey("game_instance.id", ondelete="CASCADE"), nullable=False, index=True
    )


class LocationInstance(db.Model):
    __tablename__ = "location_instance"
    __table_args__ = (db.UniqueConstraint("game_instance_id", "location_id", name="uq_location_instance"),)

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), nullable=False, index=True)
    game_instance_id = _instance_fk()
    location_id = db.Column(db.String(36), db.ForeignKey("location.id", ondelete="CASCADE"), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    location = db.relationship("Location", lazy="joined")


class CreatureInstance(db.Model):
    __tablename__ = "creature_instance"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), nullable=False, index=True)
    game_instance_id = _instance_fk()
    creature_id = db.Column(db.String(36), db.ForeignKey("creature.id", ondelete="CASCADE"), nullable=False)
    location_instance_id = db.Column(
        db.String(36), db.ForeignKey("location_instance.id", ondelete="CASCADE"), nullable=False
    )
    health = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    creature = db.relationship("Creature", lazy="joined")

    @property
    def is_alive(self) -> bool:
        return self.health > 0


class ItemInstance(db.Model):
    """An item lying at a location or carried by a character (exactly one of the two)."""

    __tablename__ = "item_instance"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), nullable=False, index=True)
    game_instance_id = _instance_fk()
    item_id = db.Column(db.String(36), db.ForeignKey("item.id", ondelete="CASCADE"), nullable=False)
    location_instance_id = db.Column(
        db.String(36), db.ForeignKey("location_instance.id", ondelete="CASCADE"), nullable=True
    )
    character_instance_id = db.Column(
        db.String(36), db.ForeignKey("character_instance.id", ondelete="CASCADE"), nullable=True
    )
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    item = db.relationship("Item", lazy="joined")


class CharacterInstance(db.Model):
    __tablename__ = "character_instance"
    __table_args__ = (db.UniqueConstraint("game_instance_id", "character_id", name="uq_character_instance"),)

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), nullable=False, index=True)
    game_instance_id = _instance_fk()
    character_id = db.Column(db.String(36), db.ForeignKey("character.id", ondelete="CASCADE"), nullable=False)
    location_instance_id = db.Column(
        db.String(36), db.ForeignKey("location_instance.id", ondelete="CASCADE"), nullable=False
    )
    health = db.Column(db.Integer, nullable=False, default=100)
    inventory_capacity = db.Column(db.Integer, nullable=False, default=10)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    character = db.relationship("Character", lazy="joined")

    @property
    def account_id(self) -> str:
        return self.character.account_id

    @property
    def is_active(self) -> bool:
        return self.health > 0


class JoinSubmission(db.Model):
    """A scanned blank join sheet waiting for (or consumed by) the join-player worker."""

    __tablename__ = "join_submission"
    __table_args__ = (
        db.UniqueConstraint("manager_subscription_id", "image_sha256", name="uq_join_submission_image"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), nullable=False, index=True)
    game_instance_id = _instance_fk()
    manager_subscription_id = db.Column(db.String(36), nullable=False)
    image_sha256 = db.Column(db.String(64), nullable=False)
    scanned_data = db.Column(db.JSON, nullable=False)
    scan_quality = db.Column(db.Float, nullable=False)
    # received -> processed | rejected
    status = db.Column(db.String(16), nullable=False, default="received")
    account_id = db.Column(db.String(36), nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "join_submission_id": self.id,
            "turn_sheet_id": None,
            "sheet_type": "join_game",
            "processing_status": self.status,
            "scan_quality": self.scan_quality,
            "scanned_data": self.scanned_data,
        }


def _pin_game_id(mapper, connection, target):
    """Fill ``game_id`` from the owning instance and refuse a disagreeing value."""
    owner_game_id = connection.execute(
        select(GameInstance.__table__.c.game_id).where(GameInstance.__table__.c.id == target.game_instance_id)
    ).scalar()
    if owner_game_id is None:
        raise InvalidField("runtime row references an unknown game instance")
    if target.game_id is None:
        target.game_id = owner_game_id
    elif target.game_id != owner_game_id:
        raise InvalidField(
            "game_id does not match the owning game instance",
            details={"game_id": target.game_id, "game_instance_id": target.game_instance_id},
        )


for _runtime_cls in (LocationInstance, CreatureInstance, ItemInstance, CharacterInstance, JoinSubmission):
    event.listen(_runtime_cls, "before_insert", _pin_game_id)
    event.listen(_runtime_cls, "before_update", _pin_game_id)
