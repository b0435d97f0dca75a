"""Game instance API endpoints.

Lifecycle actions answer 200 with the instance body; an illegal transition
is a 409 ``IllegalTransition`` and an unready game a 409 ``NotReady`` whose
details list the readiness issues.
"""

from flask import Blueprint, abort, jsonify
from flask_login import current_user, login_required

from pbm.errors import Forbidden
from pbm.models.models import SUBSCRIPTION_DESIGNER, SUBSCRIPTION_MANAGER
from pbm.routes.games_api import json_body
from pbm.services.game_service import create_instance, require_instance, require_subscription
from pbm.services.instance_service import cancel_instance, pause_instance, resume_instance, start_instance
from pbm.services.readiness import blocking, check_readiness

bp_instances = Blueprint("instances", __name__)

_ACTIONS = {
    "start": start_instance,
    "pause": pause_instance,
    "resume": resume_instance,
    "cancel": cancel_instance,
}


@bp_instances.route("/api/v1/games/<game_id>/instances", methods=["POST"])
@login_required
def create_instance_route(game_id):
    game, subscription = require_subscription(game_id, current_user, (SUBSCRIPTION_MANAGER,))
    data = json_body()
    instance = create_instance(
        game,
        subscription,
        max_turns=data.get("max_turns"),
        required_player_count=data.get("required_player_count", 0),
        delivery_email=data.get("delivery_email", False),
        delivery_physical_post=data.get("delivery_physical_post", True),
        delivery_physical_local=data.get("delivery_physical_local", False),
    )
    return jsonify({"instance": instance.to_dict()}), 201


@bp_instances.route("/api/v1/games/<game_id>/instances/<instance_id>")
@login_required
def get_instance(game_id, instance_id):
    game, _ = require_subscription(game_id, current_user, (SUBSCRIPTION_MANAGER, SUBSCRIPTION_DESIGNER))
    return jsonify({"instance": require_instance(game, instance_id).to_dict()})


@bp_instances.route("/api/v1/games/<game_id>/instances/<instance_id>/readiness")
@login_required
def instance_readiness(game_id, instance_id):
    game, _ = require_subscription(game_id, current_user, (SUBSCRIPTION_MANAGER,))
    issues = check_readiness(require_instance(game, instance_id))
    return jsonify({"ready": not blocking(issues), "issues": [issue.to_dict() for issue in issues]})


@bp_instances.route("/api/v1/games/<game_id>/instances/<instance_id>/<action>", methods=["POST"])
@login_required
def instance_action(game_id, instance_id, action):
    handler = _ACTIONS.get(action)
    if handler is None:
        abort(404)
    game, subscription = require_subscription(game_id, current_user, (SUBSCRIPTION_MANAGER,))
    instance = require_instance(game, instance_id)
    if instance.manager_subscription_id not in (None, subscription.id):
        raise Forbidden("instance is managed by another subscription")
    instance = handler(instance.id)
    return jsonify({"instance": instance.to_dict()})
