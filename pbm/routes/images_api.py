"""Turn sheet background image endpoints (upload, fetch with fallback, delete)."""

from flask import Blueprint, Response, jsonify, request
from flask_login import current_user, login_required

from pbm.errors import EmptyBody
from pbm.models.game_image import IMAGE_TYPE_TURN_SHEET_BACKGROUND
from pbm.models.models import SUBSCRIPTION_DESIGNER, SUBSCRIPTION_MANAGER
from pbm.services.game_service import require_subscription
from pbm.services.image_store import delete_image, get_image, upsert_image

bp_images = Blueprint("images", __name__)


def _key(source) -> dict:
    return {
        "image_type": source.get("type") or IMAGE_TYPE_TURN_SHEET_BACKGROUND,
        "turn_sheet_type": source.get("turn_sheet_type") or None,
        "record_id": source.get("record_id") or None,
    }


@bp_images.route("/api/v1/games/<game_id>/turn-sheet-image", methods=["POST"])
@login_required
def upload_turn_sheet_image(game_id):
    game, _ = require_subscription(game_id, current_user, (SUBSCRIPTION_DESIGNER,))
    upload = request.files.get("image")
    if upload is None:
        raise EmptyBody("multipart field 'image' is required")
    data = upload.read()
    row, warning = upsert_image(game, data, claimed_type=upload.mimetype, **_key(request.form))
    body = {
        "id": row.id,
        "game_id": row.game_id,
        "record_id": row.record_id,
        "type": row.type,
        "turn_sheet_type": row.turn_sheet_type,
        "mime_type": row.mime_type,
        "width": row.width,
        "height": row.height,
        "file_size": row.file_size,
    }
    if warning:
        body["warning"] = warning
    return jsonify(body), 201


@bp_images.route("/api/v1/games/<game_id>/turn-sheet-image", methods=["GET"])
@login_required
def get_turn_sheet_image(game_id):
    require_subscription(game_id, current_user, (SUBSCRIPTION_DESIGNER, SUBSCRIPTION_MANAGER))
    row = get_image(game_id, **_key(request.args))
    resp = Response(row.content, mimetype=row.mime_type)
    resp.headers["ETag"] = row.sha256
    return resp


@bp_images.route("/api/v1/games/<game_id>/turn-sheet-image", methods=["DELETE"])
@login_required
def delete_turn_sheet_image(game_id):
    game, _ = require_subscription(game_id, current_user, (SUBSCRIPTION_DESIGNER,))
    delete_image(game, **_key(request.args))
    return "", 204
