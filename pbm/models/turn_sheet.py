"""Turn sheet records and their processing state machine.

A sheet moves ``pending -> printed -> processed | failed | abandoned``;
``failed`` sheets may be re-scanned and ``pending`` sheets may be abandoned
at a deadline. ``processed`` and ``abandoned`` are final: a flush-time
listener refuses any further column change on such a row.

The three scan columns (``scanned_data``, ``scanned_at``, ``scan_quality``)
are written together or not at all; a CHECK constraint backs this up.
"""

import enum

from sqlalchemy import event, inspect

from pbm import db
from pbm.errors import InvalidField, NotProcessable
from pbm.utils.clock import new_id, utcnow


class SheetType(str, enum.Enum):
    LOCATION_CHOICE = "location_choice"
    JOIN_GAME = "join_game"
    INVENTORY_MANAGEMENT = "inventory_management"


class ProcessingStatus(str, enum.Enum):
    PENDING = "pending"
    PRINTED = "printed"
    PROCESSED = "processed"
    ABANDONED = "abandoned"
    FAILED = "failed"


FINAL_STATUSES = frozenset({ProcessingStatus.PROCESSED.value, ProcessingStatus.ABANDONED.value})
SCANNABLE_STATUSES = frozenset({ProcessingStatus.PRINTED.value, ProcessingStatus.FAILED.value})

_ALLOWED = {
    ProcessingStatus.PENDING.value: {ProcessingStatus.PRINTED.value, ProcessingStatus.ABANDONED.value},
    ProcessingStatus.PRINTED.value: {
        ProcessingStatus.PROCESSED.value,
        ProcessingStatus.FAILED.value,
        ProcessingStatus.ABANDONED.value,
    },
    ProcessingStatus.FAILED.value: {
        ProcessingStatus.PROCESSED.value,
        ProcessingStatus.FAILED.value,
        ProcessingStatus.ABANDONED.value,
    },
}


class TurnSheet(db.Model):
    """One player's printed and scanned document for one turn.

    Attributes:
        sheet_data: Authored inputs the scan is checked against (options etc.).
        scanned_data: Structured answers, present iff scanned_at/scan_quality are.
        scan_image_sha256: Digest of the image that produced scanned_data.
        rendered_document: PDF produced by the render job.
    """

    __tablename__ = "turn_sheet"
    __table_args__ = (
        db.UniqueConstraint(
            "game_instance_id", "account_id", "turn_number", "sheet_type", name="uq_turn_sheet_account_turn_type"
        ),
        db.CheckConstraint(
            "(scanned_data IS NULL AND scanned_at IS NULL AND scan_quality IS NULL) OR "
            "(scanned_data IS NOT NULL AND scanned_at IS NOT NULL AND scan_quality IS NOT NULL)",
            name="ck_turn_sheet_scan_all_or_none",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    game_id = db.Column(db.String(36), nullable=False, index=True)
    game_instance_id = db.Column(
        db.String(36), db.ForeignKey("game_instance.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_id = db.Column(db.String(36), db.ForeignKey("account.id"), nullable=False, index=True)
    character_instance_id = db.Column(
        db.String(36), db.ForeignKey("character_instance.id", ondelete="CASCADE"), nullable=True
    )
    turn_number = db.Column(db.Integer, nullable=False)
    sheet_type = db.Column(db.String(32), nullable=False)
    sheet_order = db.Column(db.Integer, nullable=False, default=1)
    sheet_data = db.Column(db.JSON, nullable=False, default=dict)
    scanned_data = db.Column(db.JSON(none_as_null=True), nullable=True)
    scanned_at = db.Column(db.DateTime, nullable=True)
    scan_quality = db.Column(db.Float, nullable=True)
    scanned_by = db.Column(db.String(36), nullable=True)
    scan_image_sha256 = db.Column(db.String(64), nullable=True)
    processing_status = db.Column(db.String(16), nullable=False, default=ProcessingStatus.PENDING.value)
    error_message = db.Column(db.Text, nullable=True)
    rendered_document = db.deferred(db.Column(db.LargeBinary, nullable=True))
    printed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_final(self) -> bool:
        return self.processing_status in FINAL_STATUSES

    def _move(self, target: str):
        if target not in _ALLOWED.get(self.processing_status, ()):
            raise NotProcessable(
                f"turn sheet cannot move from {self.processing_status} to {target}",
                details={"turn_sheet_id": self.id, "processing_status": self.processing_status},
            )
        self.processing_status = target

    def mark_printed(self, document: bytes, now=None):
        self._move(ProcessingStatus.PRINTED.value)
        self.rendered_document = document
        self.printed_at = now or utcnow()

    def record_scan(self, answers: dict, quality: float, scanned_by: str | None, image_sha256: str, now=None):
        self._move(ProcessingStatus.PROCESSED.value)
        self.scanned_data = answers
        self.scanned_at = now or utcnow()
        self.scan_quality = quality
        self.scanned_by = scanned_by
        self.scan_image_sha256 = image_sha256
        self.error_message = None

    def mark_failed(self, reason: str, scanned_by: str | None, image_sha256: str, now=None):
        self._move(ProcessingStatus.FAILED.value)
        self.scanned_data = {"failed": True, "reason": reason}
        self.scanned_at = now or utcnow()
        self.scan_quality = 0.0
        self.scanned_by = scanned_by
        self.scan_image_sha256 = image_sha256
        self.error_message = reason

    def mark_abandoned(self):
        self._move(ProcessingStatus.ABANDONED.value)

    def summary(self):
        return {
            "turn_sheet_id": self.id,
            "sheet_type": self.sheet_type,
            "processing_status": self.processing_status,
            "scan_quality": self.scan_quality,
            "scanned_data": self.scanned_data,
        }

    def to_dict(self):
        body = self.summary()
        body.update(
            {
                "game_id": self.game_id,
                "game_instance_id": self.game_instance_id,
                "account_id": self.account_id,
                "turn_number": self.turn_number,
                "sheet_order": self.sheet_order,
                "sheet_data": self.sheet_data,
                "scanned_at": self.scanned_at.isoformat() if self.scanned_at else None,
                "error_message": self.error_message,
            }
        )
        return body


_SCAN_COLUMNS = ("scanned_data", "scanned_at", "scan_quality")


@event.listens_for(TurnSheet, "before_insert")
def _check_scan_columns(mapper, connection, target):
    present = [getattr(target, col) is not None for col in _SCAN_COLUMNS]
    if any(present) and not all(present):
        raise InvalidField("scanned_data, scanned_at and scan_quality must be set together")


@event.listens_for(TurnSheet, "before_update")
def _freeze_final_sheets(mapper, connection, target):
    state = inspect(target)
    status_history = state.attrs.processing_status.history
    previous = status_history.deleted[0] if status_history.deleted else target.processing_status
    if previous in FINAL_STATUSES:
        changed = [attr.key for attr in mapper.column_attrs if state.attrs[attr.key].history.has_changes()]
        if changed:
            raise NotProcessable(
                "turn sheet is final and can no longer change",
                details={"turn_sheet_id": target.id, "fields": sorted(changed)},
            )
    _check_scan_columns(mapper, connection, target)
