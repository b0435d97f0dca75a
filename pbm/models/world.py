"""Authored world: locations, links, creatures, items, placements, characters.

These rows are owned by a Game and edited through the designer CRUD surface;
the core only reads them when validating readiness and materialising an
instance.
"""

from pbm import db
from pbm.utils.clock import new_id, utcnow

CREATURE_AGGRESSIVE = "aggressive"
CREATURE_PASSIVE = "passive"


def _game_fk():
    return db.Column(db.String(36), db.ForeignKey("game.id", ondelete="CASCADE"), nullable=False, index=True)


class Location(db.Model):
    __tablename__ = "location"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = _game_fk()
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    is_starting_location = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)


class LocationLink(db.Model):
    """Directed edge between two locations of the same game."""

    __tablename__ = "location_link"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = _game_fk()
    from_location_id = db.Column(db.String(36), db.ForeignKey("location.id", ondelete="CASCADE"), nullable=False)
    to_location_id = db.Column(db.String(36), db.ForeignKey("location.id", ondelete="CASCADE"), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    requirements = db.relationship(
        "LocationLinkRequirement", cascade="all, delete-orphan", passive_deletes=True, lazy="selectin"
    )


class LocationLinkRequirement(db.Model):
    """Traversal gate: the character must carry ``quantity`` of ``item_id``."""

    __tablename__ = "location_link_requirement"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = _game_fk()
    location_link_id = db.Column(
        db.String(36), db.ForeignKey("location_link.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_id = db.Column(db.String(36), db.ForeignKey("item.id", ondelete="CASCADE"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)


class Creature(db.Model):
    __tablename__ = "creature"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = _game_fk()
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    max_health = db.Column(db.Integer, nullable=False, default=10)
    attack_damage = db.Column(db.Integer, nullable=False, default=0)
    # 'aggressive' creatures attack characters sharing their location
    disposition = db.Column(db.String(16), nullable=False, default=CREATURE_PASSIVE)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)


class Item(db.Model):
    __tablename__ = "item"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = _game_fk()
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    # Picked up automatically by a lone character at the end of a turn
    auto_pickup = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)


class CreaturePlacement(db.Model):
    """At ``location_id`` spawn ``initial_count`` creatures, each with ``spawn_chance``."""

    __tablename__ = "creature_placement"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = _game_fk()
    creature_id = db.Column(db.String(36), db.ForeignKey("creature.id", ondelete="CASCADE"), nullable=False)
    location_id = db.Column(db.String(36), db.ForeignKey("location.id", ondelete="CASCADE"), nullable=False)
    initial_count = db.Column(db.Integer, nullable=False, default=1)
    spawn_chance = db.Column(db.Float, nullable=False, default=1.0)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)


class ItemPlacement(db.Model):
    """At ``location_id`` spawn ``initial_count`` items, each with ``spawn_chance``."""

    __tablename__ = "item_placement"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = _game_fk()
    item_id = db.Column(db.String(36), db.ForeignKey("item.id", ondelete="CASCADE"), nullable=False)
    location_id = db.Column(db.String(36), db.ForeignKey("location.id", ondelete="CASCADE"), nullable=False)
    initial_count = db.Column(db.Integer, nullable=False, default=1)
    spawn_chance = db.Column(db.Float, nullable=False, default=1.0)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)


class Character(db.Model):
    """A player's avatar template within a game (one per account per game)."""

    __tablename__ = "character"
    __table_args__ = (db.UniqueConstraint("game_id", "account_id", name="uq_character_game_account"),)

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = _game_fk()
    account_id = db.Column(db.String(36), db.ForeignKey("account.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
