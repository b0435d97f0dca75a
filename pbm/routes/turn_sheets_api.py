"""Turn sheet API endpoints: scan upload, preview, printed documents and join sheets.

The upload body is the raw image; it is read exactly once into memory and
handed to the pipeline.
"""

from flask import Blueprint, Response, current_app, g, jsonify, request
from flask_login import current_user, login_required

from pbm import db
from pbm.errors import Forbidden, InvalidField, NotFound
from pbm.models.models import SUBSCRIPTION_DESIGNER, SUBSCRIPTION_MANAGER
from pbm.models.turn_sheet import SheetType, TurnSheet
from pbm.services.game_service import require_instance, require_subscription
from pbm.services.render_service import render_join_sheet, render_preview
from pbm.services.upload_pipeline import upload_sheet
from pbm.utils.deadline import CallContext

bp_turn_sheets = Blueprint("turn_sheets", __name__)


def _pdf(document: bytes, filename: str) -> Response:
    resp = Response(document, mimetype="application/pdf")
    resp.headers["Content-Disposition"] = f'inline; filename="{filename}"'
    return resp


@bp_turn_sheets.route("/api/v1/games/<game_id>/instances/<instance_id>/turn-sheets/upload", methods=["POST"])
@login_required
def upload_turn_sheet(game_id, instance_id):
    game, _ = require_subscription(game_id, current_user, (SUBSCRIPTION_MANAGER, SUBSCRIPTION_DESIGNER))
    instance = require_instance(game, instance_id)
    image = request.get_data(cache=False)
    ctx = CallContext.with_timeout(current_app.config["PBM_SCAN_TIMEOUT_SECONDS"], g.get("correlation_id"))
    outcome = upload_sheet(
        game,
        instance,
        current_user,
        image,
        current_app.extensions["pbm_scanners"],
        ctx,
        max_bytes=current_app.config["PBM_MAX_SCAN_BYTES"],
    )
    return jsonify(outcome.body), outcome.status_code


@bp_turn_sheets.route("/api/v1/games/<game_id>/turn-sheets/preview")
@login_required
def preview_turn_sheet(game_id):
    game, _ = require_subscription(game_id, current_user, (SUBSCRIPTION_DESIGNER,))
    sheet_type = request.args.get("sheet_type", SheetType.LOCATION_CHOICE.value)
    if sheet_type not in {t.value for t in SheetType}:
        raise InvalidField(f"unknown sheet_type {sheet_type!r}")
    document = render_preview(game, sheet_type, request.args.get("record_id") or None, g.get("correlation_id"))
    return _pdf(document, f"preview-{sheet_type}.pdf")


@bp_turn_sheets.route("/api/v1/games/<game_id>/instances/<instance_id>/turn-sheets/<turn_sheet_id>/document")
@login_required
def turn_sheet_document(game_id, instance_id, turn_sheet_id):
    game, _ = require_subscription(game_id, current_user, (SUBSCRIPTION_MANAGER,))
    instance = require_instance(game, instance_id)
    sheet = db.session.get(TurnSheet, turn_sheet_id)
    if sheet is None or sheet.game_instance_id != instance.id or sheet.rendered_document is None:
        raise NotFound(f"no printed document for turn sheet {turn_sheet_id}")
    return _pdf(sheet.rendered_document, f"turn-{sheet.turn_number}-{sheet.id}.pdf")


@bp_turn_sheets.route("/api/v1/games/<game_id>/instances/<instance_id>/join-sheet")
@login_required
def join_sheet_document(game_id, instance_id):
    game, subscription = require_subscription(game_id, current_user, (SUBSCRIPTION_MANAGER,))
    instance = require_instance(game, instance_id)
    if instance.manager_subscription_id not in (None, subscription.id):
        raise Forbidden("instance is managed by another subscription")
    document = render_join_sheet(instance, g.get("correlation_id"))
    return _pdf(document, f"join-{instance.id}.pdf")
