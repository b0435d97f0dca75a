"""
project: Play By Mail
module: instance_service.py
License: MIT

Lifecycle actions on a game instance: start, pause, resume, cancel.

``start`` is the heavy one. In a single transaction it:
  * checks the transition, publication and readiness,
  * materialises the live world (one LocationInstance per location, rolled
    creature and item placements, one CharacterInstance per joined player
    at the starting location),
  * snapshots every sheet template,
  * creates turn 1's sheets and schedules their rendering.

Placement rolls use ``random.Random`` seeded from the instance id so a
replay of the same instance spawns the same world.
"""

from __future__ import annotations

import datetime
import hashlib
import random
from typing import List, Optional, Sequence, Tuple

from pbm import db, job_queue
from pbm.errors import GameNotPublished, NotReady
from pbm.jobs.queue import ADVANCE_IF_READY
from pbm.logging_utils import get_logger
from pbm.models.game_instance import (
    CharacterInstance,
    CreatureInstance,
    GameInstance,
    ItemInstance,
    LocationInstance,
)
from pbm.models.models import SUBSCRIPTION_ACTIVE, SUBSCRIPTION_PLAYER, Subscription
from pbm.models.world import Character, Creature, CreaturePlacement, ItemPlacement, Location
from pbm.services.locks import row_lock
from pbm.services.readiness import blocking, check_readiness
from pbm.services.sheet_builder import create_turn_sheets
from pbm.services.template_registry import snapshot_templates
from pbm.services.turn_advancement import next_due, schedule_renders
from pbm.utils.clock import utcnow

log = get_logger("pbm.lifecycle")


def placement_seed(game_instance_id: str) -> int:
    return int.from_bytes(hashlib.sha256(game_instance_id.encode("utf-8")).digest()[:8], "big")


def roll_placements(placements: Sequence, rng: random.Random) -> List[Tuple[object, int]]:
    """Return ``(placement, spawned)`` pairs, rolling each unit against ``spawn_chance``.

    Placements are visited in id order so the draw sequence does not depend
    on query order.
    """
    rolled = []
    for placement in sorted(placements, key=lambda p: p.id):
        spawned = sum(1 for _ in range(max(placement.initial_count, 0)) if rng.random() < placement.spawn_chance)
        rolled.append((placement, spawned))
    return rolled


def materialise_world(instance: GameInstance) -> List[CharacterInstance]:
    """Create the runtime rows for ``instance``. Caller commits."""
    locations = Location.query.filter_by(game_id=instance.game_id).order_by(Location.id).all()
    by_location = {}
    for location in locations:
        row = LocationInstance(game_instance_id=instance.id, game_id=instance.game_id, location_id=location.id)
        db.session.add(row)
        by_location[location.id] = row
    db.session.flush()

    rng = random.Random(placement_seed(instance.id))
    creature_placements = CreaturePlacement.query.filter_by(game_id=instance.game_id).all()
    for placement, spawned in roll_placements(creature_placements, rng):
        creature = db.session.get(Creature, placement.creature_id)
        for _ in range(spawned):
            db.session.add(
                CreatureInstance(
                    game_instance_id=instance.id,
                    game_id=instance.game_id,
                    creature_id=placement.creature_id,
                    location_instance_id=by_location[placement.location_id].id,
                    health=creature.max_health,
                )
            )
    item_placements = ItemPlacement.query.filter_by(game_id=instance.game_id).all()
    for placement, spawned in roll_placements(item_placements, rng):
        for _ in range(spawned):
            db.session.add(
                ItemInstance(
                    game_instance_id=instance.id,
                    game_id=instance.game_id,
                    item_id=placement.item_id,
                    location_instance_id=by_location[placement.location_id].id,
                )
            )

    start = next(loc for loc in locations if loc.is_starting_location)
    characters = []
    for character in joined_characters(instance):
        row = CharacterInstance(
            game_instance_id=instance.id,
            game_id=instance.game_id,
            character_id=character.id,
            location_instance_id=by_location[start.id].id,
        )
        db.session.add(row)
        characters.append(row)
    db.session.flush()
    return characters


def joined_characters(instance: GameInstance) -> List[Character]:
    """Characters of accounts holding an active player subscription on ``instance``."""
    account_ids = [
        sub.account_id
        for sub in Subscription.query.filter_by(
            game_instance_id=instance.id, subscription_type=SUBSCRIPTION_PLAYER, status=SUBSCRIPTION_ACTIVE
        ).all()
    ]
    if not account_ids:
        return []
    return (
        Character.query.filter(Character.game_id == instance.game_id, Character.account_id.in_(account_ids))
        .order_by(Character.account_id, Character.id)
        .all()
    )


def start_instance(game_instance_id: str, now: Optional[datetime.datetime] = None) -> GameInstance:
    now = now or utcnow()
    with row_lock(GameInstance, game_instance_id) as instance:
        game = instance.game
        instance.mark_started(now, next_due(instance, now))
        if not game.is_published:
            raise GameNotPublished(
                "game must be published before an instance can start", details={"game_id": game.id}
            )
        issues = check_readiness(instance)
        if blocking(issues):
            raise NotReady(
                "game is not ready to start",
                details={"issues": [issue.to_dict() for issue in issues]},
            )
        materialise_world(instance)
        snapshot_templates(instance)
        db.session.flush()
        sheets = create_turn_sheets(instance, 1)
        schedule_renders(sheets)
        db.session.commit()
    log.info(event="instance_started", game_instance_id=instance.id, game_id=instance.game_id, sheets=len(sheets))
    return instance


def pause_instance(game_instance_id: str) -> GameInstance:
    with row_lock(GameInstance, game_instance_id) as instance:
        instance.mark_paused()
        db.session.commit()
    log.info(event="instance_paused", game_instance_id=instance.id, turn=instance.current_turn)
    return instance


def resume_instance(game_instance_id: str, now: Optional[datetime.datetime] = None) -> GameInstance:
    now = now or utcnow()
    with row_lock(GameInstance, game_instance_id) as instance:
        instance.mark_resumed(next_due(instance, now))
        # Sheets that arrived while paused had their advance jobs no-op
        job_queue.enqueue(
            ADVANCE_IF_READY,
            {"game_instance_id": instance.id, "turn_number": instance.current_turn},
            idempotency_tag=f"resume:{instance.id}:{instance.current_turn}:{instance.next_turn_due_at.isoformat()}",
        )
        db.session.commit()
    log.info(event="instance_resumed", game_instance_id=instance.id, turn=instance.current_turn)
    return instance


def cancel_instance(game_instance_id: str, now: Optional[datetime.datetime] = None) -> GameInstance:
    now = now or utcnow()
    with row_lock(GameInstance, game_instance_id) as instance:
        instance.mark_cancelled(now)
        db.session.commit()
    log.info(event="instance_cancelled", game_instance_id=instance.id, turn=instance.current_turn)
    return instance
