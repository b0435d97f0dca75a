"""Authored sheet templates and the immutable snapshots taken at start.

``SheetTemplate`` rows are the designer's working copy (resolved only by
preview). ``TemplateSnapshot`` rows are written once when an instance starts
and are what live rendering and sheet generation read thereafter.
"""

from sqlalchemy import event

from pbm import db
from pbm.errors import InvalidField
from pbm.models.game_image import scope_key
from pbm.utils.clock import new_id, utcnow


class SheetTemplate(db.Model):
    """Template body for ``sheet_type``; ``record_id`` NULL is the game-wide default.

    ``version`` increases on every edit so snapshots record what they captured.
    """

    __tablename__ = "sheet_template"
    __table_args__ = (db.UniqueConstraint("game_id", "sheet_type", "scope_key", name="uq_sheet_template_key"),)

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), db.ForeignKey("game.id", ondelete="CASCADE"), nullable=False, index=True)
    sheet_type = db.Column(db.String(32), nullable=False)
    record_id = db.Column(db.String(36), nullable=True)
    scope_key = db.Column(db.String(80), nullable=False)
    version = db.Column(db.Integer, nullable=False, default=1)
    body = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)


class TemplateSnapshot(db.Model):
    __tablename__ = "template_snapshot"
    __table_args__ = (
        db.UniqueConstraint("game_instance_id", "sheet_type", "scope_key", name="uq_template_snapshot_key"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), nullable=False, index=True)
    game_instance_id = db.Column(
        db.String(36), db.ForeignKey("game_instance.id", ondelete="CASCADE"), nullable=False, index=True
    )
    template_id = db.Column(db.String(36), nullable=False)
    sheet_type = db.Column(db.String(32), nullable=False)
    record_id = db.Column(db.String(36), nullable=True)
    scope_key = db.Column(db.String(80), nullable=False)
    version = db.Column(db.Integer, nullable=False)
    body = db.Column(db.JSON, nullable=False)
    captured_at = db.Column(db.DateTime, default=utcnow)


@event.listens_for(SheetTemplate, "before_insert")
@event.listens_for(SheetTemplate, "before_update")
@event.listens_for(TemplateSnapshot, "before_insert")
def _fill_scope_key(mapper, connection, target):
    target.scope_key = scope_key(target.record_id, None)


@event.listens_for(TemplateSnapshot, "before_update")
def _snapshots_are_immutable(mapper, connection, target):
    raise InvalidField("template snapshots cannot be modified", details={"snapshot_id": target.id})
