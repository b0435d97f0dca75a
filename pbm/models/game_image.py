"""Background images for printable sheet templates.

At most one row exists per (game, record, type, turn sheet type). ``record_id``
NULL marks the game-level image a location-level lookup falls back to. Since
SQL treats NULLs as distinct in unique constraints, the key is materialised
into ``scope_key`` before every flush.
"""

from sqlalchemy import event

from pbm import db
from pbm.utils.clock import new_id, utcnow

IMAGE_TYPE_TURN_SHEET_BACKGROUND = "turn_sheet_background"
IMAGE_TYPE_ASSET = "asset"
IMAGE_TYPES = (IMAGE_TYPE_TURN_SHEET_BACKGROUND, IMAGE_TYPE_ASSET)


def scope_key(record_id, turn_sheet_type) -> str:
    return f"{record_id or '*'}:{turn_sheet_type or '*'}"


class GameImage(db.Model):
    __tablename__ = "game_image"
    __table_args__ = (db.UniqueConstraint("game_id", "type", "scope_key", name="uq_game_image_key"),)

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), db.ForeignKey("game.id", ondelete="CASCADE"), nullable=False, index=True)
    record_id = db.Column(db.String(36), nullable=True)
    type = db.Column(db.String(32), nullable=False)
    turn_sheet_type = db.Column(db.String(32), nullable=True)
    scope_key = db.Column(db.String(80), nullable=False)
    mime_type = db.Column(db.String(32), nullable=False)
    width = db.Column(db.Integer, nullable=False)
    height = db.Column(db.Integer, nullable=False)
    file_size = db.Column(db.Integer, nullable=False)
    sha256 = db.Column(db.String(64), nullable=False)
    content = db.deferred(db.Column(db.LargeBinary, nullable=False))
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "game_id": self.game_id,
            "record_id": self.record_id,
            "type": self.type,
            "turn_sheet_type": self.turn_sheet_type,
            "mime_type": self.mime_type,
            "width": self.width,
            "height": self.height,
            "file_size": self.file_size,
            "sha256": self.sha256,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@event.listens_for(GameImage, "before_insert")
@event.listens_for(GameImage, "before_update")
def _fill_scope_key(mapper, connection, target):
    target.scope_key = scope_key(target.record_id, target.turn_sheet_type)
