"""Games, subscriptions and the visibility rules built on them.

A caller with no active subscription on a game cannot see it at all
(``NotFound``); a caller subscribed with the wrong kind gets ``Forbidden``.
"""

from __future__ import annotations

from typing import Iterable, Optional, Tuple

from pbm import db
from pbm.errors import Forbidden, InvalidField, NotFound
from pbm.logging_utils import get_logger
from pbm.models.game_instance import GameInstance
from pbm.models.models import (
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_DESIGNER,
    SUBSCRIPTION_MANAGER,
    Account,
    Game,
    Subscription,
)
from pbm.utils.clock import utcnow

log = get_logger("pbm.games")


def require_subscription(game_id: str, account: Account, kinds: Iterable[str]) -> Tuple[Game, Subscription]:
    """Return ``(game, subscription)`` when ``account`` holds one of ``kinds`` on the game."""
    game = db.session.get(Game, game_id)
    subscriptions = []
    if game is not None and account is not None:
        subscriptions = Subscription.query.filter_by(
            game_id=game_id, account_id=account.id, status=SUBSCRIPTION_ACTIVE
        ).order_by(Subscription.id).all()
    if not subscriptions:
        raise NotFound(f"game {game_id} not found")
    wanted = set(kinds)
    for subscription in subscriptions:
        if subscription.subscription_type in wanted:
            return game, subscription
    raise Forbidden(
        "your subscription does not allow this action",
        details={"game_id": game_id, "required": sorted(wanted)},
    )


def require_instance(game: Game, game_instance_id: str) -> GameInstance:
    instance = db.session.get(GameInstance, game_instance_id)
    if instance is None or instance.game_id != game.id:
        raise NotFound(f"game instance {game_instance_id} not found")
    return instance


def create_game(
    account: Account,
    name: str,
    description: str = "",
    turn_duration_hours: int = 168,
    game_type: str = "adventure",
) -> Game:
    """Create a draft game and mint designer and manager subscriptions for ``account``."""
    if not name or not str(name).strip():
        raise InvalidField("name is required")
    try:
        turn_duration_hours = int(turn_duration_hours)
    except (TypeError, ValueError) as exc:
        raise InvalidField("turn_duration_hours must be an integer") from exc
    if turn_duration_hours <= 0:
        raise InvalidField("turn_duration_hours must be positive")

    game = Game(
        name=str(name).strip(),
        description=description or "",
        game_type=game_type,
        turn_duration_hours=turn_duration_hours,
        created_by_account_id=account.id,
    )
    db.session.add(game)
    db.session.flush()
    for kind in (SUBSCRIPTION_DESIGNER, SUBSCRIPTION_MANAGER):
        db.session.add(Subscription(game_id=game.id, account_id=account.id, subscription_type=kind))
    db.session.commit()
    log.info(event="game_created", game_id=game.id, account_id=account.id)
    return game


def publish_game(game: Game) -> Game:
    game.publish(utcnow())
    db.session.commit()
    log.info(event="game_published", game_id=game.id)
    return game


def create_instance(
    game: Game,
    manager_subscription: Subscription,
    max_turns: Optional[int] = None,
    required_player_count: int = 0,
    delivery_email: bool = False,
    delivery_physical_post: bool = True,
    delivery_physical_local: bool = False,
) -> GameInstance:
    if manager_subscription.subscription_type != SUBSCRIPTION_MANAGER:
        raise Forbidden("only a manager subscription can own an instance")
    if max_turns is not None:
        if not isinstance(max_turns, int) or isinstance(max_turns, bool) or max_turns < 1:
            raise InvalidField("max_turns must be a positive integer")
    if not isinstance(required_player_count, int) or required_player_count < 0:
        raise InvalidField("required_player_count must be a non-negative integer")

    instance = GameInstance(
        game_id=game.id,
        manager_subscription_id=manager_subscription.id,
        max_turns=max_turns,
        required_player_count=required_player_count,
        delivery_email=bool(delivery_email),
        delivery_physical_post=bool(delivery_physical_post),
        delivery_physical_local=bool(delivery_physical_local),
    )
    db.session.add(instance)
    db.session.commit()
    log.info(event="instance_created", game_id=game.id, game_instance_id=instance.id)
    return instance
