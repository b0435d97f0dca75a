"""Sheet background image store.

Responsibilities:
  * Validate an uploaded blob in a fixed order: size, sniffed format,
    decodability, then dimensions.
  * Upsert by (game, record, type, turn sheet type) so a second upload for
    the same key replaces the first in one transaction.
  * Resolve a location-level image, falling back to the game-level one.

Design notes:
  The claimed ``Content-Type`` is advisory; the format is sniffed from the
  magic bytes and must agree with what Pillow decodes. Dimensions inside the
  hard box but off the A4 portrait shape (or below print resolution) are
  accepted with a warning string.
"""

from __future__ import annotations

import hashlib
import io
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError
from sqlalchemy.exc import IntegrityError

from pbm import db
from pbm.errors import (
    BadDimensions,
    EmptyBody,
    GameNotDraft,
    ImageTooLarge,
    InvalidField,
    NotFound,
    UnreadableImage,
    UnsupportedImageFormat,
)
from pbm.logging_utils import get_logger
from pbm.models.game_image import IMAGE_TYPE_TURN_SHEET_BACKGROUND, IMAGE_TYPES, GameImage, scope_key
from pbm.models.turn_sheet import SheetType
from pbm.models.world import Location

log = get_logger("pbm.images")

MAX_IMAGE_BYTES = 1_048_576

MIN_WIDTH = 400
MAX_WIDTH = 4000
MIN_HEIGHT = 200
MAX_HEIGHT = 6000

# A4 portrait at 300 DPI
RECOMMENDED_WIDTH = 2480
RECOMMENDED_HEIGHT = 3508
A4_RATIO = 1.414
RATIO_TOLERANCE = 0.15

MIME_WEBP = "image/webp"
MIME_PNG = "image/png"
MIME_JPEG = "image/jpeg"

_PIL_FORMATS = {MIME_WEBP: "WEBP", MIME_PNG: "PNG", MIME_JPEG: "JPEG"}


@dataclass(frozen=True)
class ValidatedImage:
    mime_type: str
    width: int
    height: int
    file_size: int
    warning: Optional[str] = None


def sniff_mime(data: bytes) -> Optional[str]:
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return MIME_PNG
    if data.startswith(b"\xff\xd8\xff"):
        return MIME_JPEG
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return MIME_WEBP
    return None


def decode_dimensions(data: bytes, mime_type: str) -> tuple[int, int]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            if img.format != _PIL_FORMATS[mime_type]:
                raise UnreadableImage(f"image decodes as {img.format}, not {mime_type}")
            img.load()
            return img.size
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise UnreadableImage(f"image could not be decoded: {exc}") from exc


def dimension_warning(width: int, height: int) -> Optional[str]:
    ratio = height / width
    if abs(ratio - A4_RATIO) / A4_RATIO > RATIO_TOLERANCE:
        return (
            f"aspect ratio {ratio:.3f} differs from A4 portrait ({A4_RATIO}); "
            "the background will be stretched when printed"
        )
    if width < RECOMMENDED_WIDTH or height < RECOMMENDED_HEIGHT:
        return (
            f"{width}x{height} is below the recommended {RECOMMENDED_WIDTH}x{RECOMMENDED_HEIGHT} "
            "(A4 at 300 DPI); print quality may suffer"
        )
    return None


def validate_image(data: bytes, claimed_type: Optional[str] = None) -> ValidatedImage:
    """Validate ``data`` in order: size, format, decode, dimensions."""
    if not data:
        raise EmptyBody("image body is empty")
    if len(data) > MAX_IMAGE_BYTES:
        raise ImageTooLarge(
            f"image is {len(data)} bytes; the limit is {MAX_IMAGE_BYTES}",
            details={"file_size": len(data), "max_file_size": MAX_IMAGE_BYTES},
        )
    mime_type = sniff_mime(data)
    if mime_type is None:
        raise UnsupportedImageFormat("only WebP, PNG and JPEG images are accepted")
    if claimed_type and claimed_type.split(";")[0].strip().lower() != mime_type:
        log.debug(event="image_content_type_mismatch", claimed=claimed_type, sniffed=mime_type)
    width, height = decode_dimensions(data, mime_type)
    if not (MIN_WIDTH <= width <= MAX_WIDTH and MIN_HEIGHT <= height <= MAX_HEIGHT):
        raise BadDimensions(
            f"{width}x{height} is outside {MIN_WIDTH}-{MAX_WIDTH} x {MIN_HEIGHT}-{MAX_HEIGHT}",
            details={"width": width, "height": height},
        )
    return ValidatedImage(mime_type, width, height, len(data), dimension_warning(width, height))


def _check_key(game, image_type: str, turn_sheet_type: Optional[str], record_id: Optional[str]):
    if image_type not in IMAGE_TYPES:
        raise InvalidField(f"unknown image type {image_type!r}")
    if image_type == IMAGE_TYPE_TURN_SHEET_BACKGROUND:
        if turn_sheet_type not in {t.value for t in SheetType}:
            raise InvalidField("turn_sheet_type is required for turn sheet backgrounds")
    elif turn_sheet_type:
        raise InvalidField("turn_sheet_type only applies to turn sheet backgrounds")
    if record_id:
        location = db.session.get(Location, record_id)
        if location is None or location.game_id != game.id:
            raise NotFound(f"location {record_id} not found")


def _find(game_id: str, image_type: str, turn_sheet_type: Optional[str], record_id: Optional[str]):
    return GameImage.query.filter_by(
        game_id=game_id, type=image_type, scope_key=scope_key(record_id, turn_sheet_type)
    ).first()


def upsert_image(
    game,
    data: bytes,
    *,
    image_type: str = IMAGE_TYPE_TURN_SHEET_BACKGROUND,
    turn_sheet_type: Optional[str] = None,
    record_id: Optional[str] = None,
    claimed_type: Optional[str] = None,
) -> tuple[GameImage, Optional[str]]:
    """Store ``data`` under its key, replacing any previous image. Returns (row, warning)."""
    if not game.is_draft:
        raise GameNotDraft("images can only change while the game is a draft", details={"game_id": game.id})
    _check_key(game, image_type, turn_sheet_type, record_id)
    validated = validate_image(data, claimed_type)

    for attempt in (1, 2):
        row = _find(game.id, image_type, turn_sheet_type, record_id)
        if row is None:
            row = GameImage(game_id=game.id, record_id=record_id, type=image_type, turn_sheet_type=turn_sheet_type)
            db.session.add(row)
        row.mime_type = validated.mime_type
        row.width = validated.width
        row.height = validated.height
        row.file_size = validated.file_size
        row.sha256 = hashlib.sha256(data).hexdigest()
        row.content = data
        try:
            db.session.commit()
            break
        except IntegrityError:
            # A concurrent upload inserted the same key first; update theirs
            db.session.rollback()
            if attempt == 2:
                raise
    log.info(
        event="image_upserted",
        game_id=game.id,
        record_id=record_id,
        type=image_type,
        turn_sheet_type=turn_sheet_type,
        width=validated.width,
        height=validated.height,
        warning=validated.warning,
    )
    return row, validated.warning


def get_image(
    game_id: str,
    *,
    image_type: str = IMAGE_TYPE_TURN_SHEET_BACKGROUND,
    turn_sheet_type: Optional[str] = None,
    record_id: Optional[str] = None,
) -> GameImage:
    """Return the image for the key, or the game-level image when a record has none."""
    row = _find(game_id, image_type, turn_sheet_type, record_id)
    if row is None and record_id:
        row = _find(game_id, image_type, turn_sheet_type, None)
    if row is None:
        raise NotFound("no image stored for this key")
    return row


def find_background(game_id: str, turn_sheet_type: str, record_id: Optional[str] = None) -> Optional[bytes]:
    """Background bytes for rendering, or None when the game has none."""
    try:
        return get_image(game_id, turn_sheet_type=turn_sheet_type, record_id=record_id).content
    except NotFound:
        return None


def delete_image(game, *, image_type: str, turn_sheet_type: Optional[str] = None, record_id: Optional[str] = None):
    if not game.is_draft:
        raise GameNotDraft("images can only change while the game is a draft", details={"game_id": game.id})
    row = _find(game.id, image_type, turn_sheet_type, record_id)
    if row is None:
        raise NotFound("no image stored for this key")
    db.session.delete(row)
    db.session.commit()
    log.info(event="image_deleted", game_id=game.id, record_id=record_id, type=image_type)
