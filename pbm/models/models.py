"""
project: Play By Mail
module: models.py
License: MIT

Accounts, authored games and the subscriptions that relate them.

Notes:
- API tokens are minted outside the core; only a SHA-256 digest is stored so
  a bearer token can be looked up without keeping it in plaintext.
- Deleting a Game cascades to every authored and runtime row it owns.
"""

import hashlib
import secrets

from flask_login import UserMixin

from pbm import db
from pbm.errors import GameNotDraft
from pbm.utils.clock import new_id, utcnow

GAME_STATUS_DRAFT = "draft"
GAME_STATUS_PUBLISHED = "published"

SUBSCRIPTION_DESIGNER = "designer"
SUBSCRIPTION_MANAGER = "manager"
SUBSCRIPTION_PLAYER = "player"
SUBSCRIPTION_TYPES = (SUBSCRIPTION_DESIGNER, SUBSCRIPTION_MANAGER, SUBSCRIPTION_PLAYER)

SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_PENDING = "pending_approval"
SUBSCRIPTION_REVOKED = "revoked"


def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class Account(UserMixin, db.Model):
    """A person known to the service (designer, manager or player).

    Attributes:
        email: Unique contact address; join sheets reuse an account by email.
        name: Display name.
        api_token_digest: SHA-256 of the bearer token, if one was issued.
        postal_*: Mailing address captured from a join sheet.
    """

    __tablename__ = "account"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    email = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(255), nullable=False, default="")
    api_token_digest = db.Column(db.String(64), unique=True, nullable=True)
    postal_address_line1 = db.Column(db.String(255), nullable=True)
    postal_address_line2 = db.Column(db.String(255), nullable=True)
    state_province = db.Column(db.String(255), nullable=True)
    country = db.Column(db.String(255), nullable=True)
    postal_code = db.Column(db.String(32), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def issue_token(self) -> str:
        """Mint a new bearer token, store its digest and return the raw value."""
        token = secrets.token_urlsafe(32)
        self.api_token_digest = _token_digest(token)
        return token

    @staticmethod
    def find_by_token(token: str):
        if not token:
            return None
        return Account.query.filter_by(api_token_digest=_token_digest(token)).first()

    def __repr__(self):
        return f"<Account {self.id} {self.email}>"


class Game(db.Model):
    """An authored adventure world.

    Only ``draft`` games are mutable; publication is one-way.
    """

    __tablename__ = "game"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    game_type = db.Column(db.String(32), nullable=False, default="adventure")
    status = db.Column(db.String(16), nullable=False, default=GAME_STATUS_DRAFT)
    # Players get this long to return each turn's sheet
    turn_duration_hours = db.Column(db.Integer, nullable=False, default=168)
    created_by_account_id = db.Column(db.String(36), db.ForeignKey("account.id"), nullable=True)
    published_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Owned rows; the database cascade mirrors these for bulk deletes
    locations = db.relationship("Location", cascade="all, delete-orphan", passive_deletes=True)
    location_links = db.relationship("LocationLink", cascade="all, delete-orphan", passive_deletes=True)
    creatures = db.relationship("Creature", cascade="all, delete-orphan", passive_deletes=True)
    items = db.relationship("Item", cascade="all, delete-orphan", passive_deletes=True)
    characters = db.relationship("Character", cascade="all, delete-orphan", passive_deletes=True)
    instances = db.relationship(
        "GameInstance", back_populates="game", cascade="all, delete-orphan", passive_deletes=True
    )
    images = db.relationship("GameImage", cascade="all, delete-orphan", passive_deletes=True)
    templates = db.relationship("SheetTemplate", cascade="all, delete-orphan", passive_deletes=True)
    subscriptions = db.relationship("Subscription", cascade="all, delete-orphan", passive_deletes=True)

    @property
    def is_draft(self) -> bool:
        return self.status == GAME_STATUS_DRAFT

    @property
    def is_published(self) -> bool:
        return self.status == GAME_STATUS_PUBLISHED

    def publish(self, now=None):
        if not self.is_draft:
            raise GameNotDraft("game is already published", details={"game_id": self.id})
        self.status = GAME_STATUS_PUBLISHED
        self.published_at = now or utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "game_type": self.game_type,
            "status": self.status,
            "turn_duration_hours": self.turn_duration_hours,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Subscription(db.Model):
    """An account's relation to a game (designer, manager or player).

    Player subscriptions are bound to the instance they joined; manager
    subscriptions are what blank join sheets encode.
    """

    __tablename__ = "subscription"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), db.ForeignKey("game.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = db.Column(db.String(36), db.ForeignKey("account.id"), nullable=False, index=True)
    subscription_type = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(24), nullable=False, default=SUBSCRIPTION_ACTIVE)
    game_instance_id = db.Column(
        db.String(36), db.ForeignKey("game_instance.id", ondelete="CASCADE"), nullable=True, index=True
    )
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == SUBSCRIPTION_ACTIVE

    def to_dict(self):
        return {
            "id": self.id,
            "game_id": self.game_id,
            "account_id": self.account_id,
            "subscription_type": self.subscription_type,
            "status": self.status,
            "game_instance_id": self.game_instance_id,
        }
