"""Game API endpoints.

Create and publish games, and edit their sheet templates while in draft.
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from pbm.errors import InvalidField
from pbm.models.models import SUBSCRIPTION_DESIGNER, SUBSCRIPTION_MANAGER, SUBSCRIPTION_PLAYER
from pbm.services.game_service import create_game, publish_game, require_subscription
from pbm.services.template_registry import upsert_template

bp_games = Blueprint("games", __name__)


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidField("request body must be a JSON object")
    return data


@bp_games.route("/api/v1/games", methods=["POST"])
@login_required
def create_game_route():
    data = json_body()
    game = create_game(
        current_user,
        name=data.get("name", ""),
        description=data.get("description", ""),
        turn_duration_hours=data.get("turn_duration_hours", 168),
    )
    return jsonify({"game": game.to_dict()}), 201


@bp_games.route("/api/v1/games/<game_id>")
@login_required
def get_game(game_id):
    game, _ = require_subscription(
        game_id, current_user, (SUBSCRIPTION_DESIGNER, SUBSCRIPTION_MANAGER, SUBSCRIPTION_PLAYER)
    )
    return jsonify({"game": game.to_dict()})


@bp_games.route("/api/v1/games/<game_id>/publish", methods=["POST"])
@login_required
def publish_game_route(game_id):
    game, _ = require_subscription(game_id, current_user, (SUBSCRIPTION_DESIGNER,))
    publish_game(game)
    return jsonify({"game": game.to_dict()})


@bp_games.route("/api/v1/games/<game_id>/sheet-templates/<sheet_type>", methods=["PUT"])
@login_required
def put_sheet_template(game_id, sheet_type):
    game, _ = require_subscription(game_id, current_user, (SUBSCRIPTION_DESIGNER,))
    data = json_body()
    body = data.get("body")
    if not isinstance(body, dict):
        raise InvalidField("'body' must be a JSON object")
    row = upsert_template(game, sheet_type, body, record_id=data.get("record_id") or None)
    return jsonify(
        {
            "template": {
                "id": row.id,
                "game_id": row.game_id,
                "sheet_type": row.sheet_type,
                "record_id": row.record_id,
                "version": row.version,
                "body": row.body,
            }
        }
    )
