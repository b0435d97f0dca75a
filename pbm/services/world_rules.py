"""End-of-turn world rules.

Rules run after every applied sheet has moved its character. Each entry in
``END_OF_TURN_RULES`` is ``(sheet_type, rule_name, fn)``; a rule runs when a
sheet of its type took part in the turn. ``fn(instance, characters, events)``
mutates the world in place and appends ``{"rule", "message"}`` dicts to
``events[character_instance_id]``. Rules iterate in id order so a replay
yields the same world.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Callable, Dict, Iterable, List

from pbm.logging_utils import get_logger
from pbm.models.game_instance import CharacterInstance, CreatureInstance, GameInstance, ItemInstance
from pbm.models.turn_sheet import SheetType
from pbm.models.world import CREATURE_AGGRESSIVE

log = get_logger("pbm.rules")

Events = Dict[str, List[Dict[str, str]]]
Rule = Callable[[GameInstance, List[CharacterInstance], Events], None]


def _event(rule: str, message: str) -> Dict[str, str]:
    return {"rule": rule, "message": message}


def creature_encounter(instance: GameInstance, characters: List[CharacterInstance], events: Events):
    """Living aggressive creatures strike every character sharing their location."""
    creatures = (
        CreatureInstance.query.filter_by(game_instance_id=instance.id)
        .filter(CreatureInstance.health > 0)
        .order_by(CreatureInstance.id)
        .all()
    )
    by_location = defaultdict(list)
    for creature in creatures:
        if creature.creature.disposition == CREATURE_AGGRESSIVE:
            by_location[creature.location_instance_id].append(creature)

    for character in characters:
        if not character.is_active:
            continue
        for creature in by_location.get(character.location_instance_id, []):
            damage = max(creature.creature.attack_damage, 0)
            character.health = max(character.health - damage, 0)
            events[character.id].append(
                _event("creature_encounter", f"{creature.creature.name} attacked you for {damage} damage.")
            )
            if not character.is_active:
                events[character.id].append(_event("creature_encounter", "You have fallen."))
                break


def item_pickup(instance: GameInstance, characters: List[CharacterInstance], events: Events):
    """A character standing alone at a location collects its auto-pickup items."""
    standing = defaultdict(list)
    for character in characters:
        if character.is_active:
            standing[character.location_instance_id].append(character)

    for location_instance_id, present in sorted(standing.items()):
        if len(present) != 1:
            continue
        character = present[0]
        carried = ItemInstance.query.filter_by(character_instance_id=character.id).count()
        lying = (
            ItemInstance.query.filter_by(game_instance_id=instance.id, location_instance_id=location_instance_id)
            .order_by(ItemInstance.id)
            .all()
        )
        for item in lying:
            if not item.item.auto_pickup:
                continue
            if carried >= character.inventory_capacity:
                events[character.id].append(_event("item_pickup", f"You could not carry the {item.item.name}."))
                break
            item.location_instance_id = None
            item.character_instance_id = character.id
            carried += 1
            events[character.id].append(_event("item_pickup", f"You picked up the {item.item.name}."))


END_OF_TURN_RULES = (
    (SheetType.LOCATION_CHOICE.value, "creature_encounter", creature_encounter),
    (SheetType.LOCATION_CHOICE.value, "item_pickup", item_pickup),
)


def run_end_of_turn_rules(
    instance: GameInstance, characters: List[CharacterInstance], sheet_types: Iterable[str], events: Events
) -> Events:
    active_types = set(sheet_types)
    for sheet_type, name, rule in END_OF_TURN_RULES:
        if sheet_type not in active_types:
            continue
        rule(instance, characters, events)
        log.debug(event="rule_applied", rule=name, game_instance_id=instance.id, turn=instance.current_turn)
    return events
