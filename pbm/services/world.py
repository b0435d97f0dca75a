"""Queries over an instance's live world shared by sheet generation and turn advancement."""

from __future__ import annotations

from collections import Counter
from typing import Dict, List, Optional, Tuple

from pbm import db
from pbm.models.game_instance import CharacterInstance, ItemInstance, LocationInstance
from pbm.models.world import LocationLink


def location_instances_by_location(game_instance_id: str) -> Dict[str, LocationInstance]:
    rows = LocationInstance.query.filter_by(game_instance_id=game_instance_id).all()
    return {row.location_id: row for row in rows}


def carried_item_counts(character_instance_id: str) -> Counter:
    rows = ItemInstance.query.filter_by(character_instance_id=character_instance_id).all()
    return Counter(row.item_id for row in rows)


def requirements_met(link: LocationLink, carried: Counter) -> bool:
    return all(carried[req.item_id] >= req.quantity for req in link.requirements)


def admissible_links(character: CharacterInstance) -> List[Tuple[LocationLink, LocationInstance]]:
    """Outbound links the character may take now, with their destination instances.

    Ordered by link name then id so the printed option order is stable.
    """
    here = db.session.get(LocationInstance, character.location_instance_id)
    if here is None:
        return []
    by_location = location_instances_by_location(character.game_instance_id)
    carried = carried_item_counts(character.id)
    links = (
        LocationLink.query.filter_by(game_id=character.game_id, from_location_id=here.location_id)
        .order_by(LocationLink.name, LocationLink.id)
        .all()
    )
    out = []
    for link in links:
        destination = by_location.get(link.to_location_id)
        if destination is None or not requirements_met(link, carried):
            continue
        out.append((link, destination))
    return out


def resolve_choice(character: CharacterInstance, location_link_id: Optional[str]) -> Optional[LocationInstance]:
    """Destination for ``location_link_id`` if the link is still admissible, else None."""
    if not location_link_id:
        return None
    for link, destination in admissible_links(character):
        if link.id == location_link_id:
            return destination
    return None


def active_characters(game_instance_id: str) -> List[CharacterInstance]:
    """Living characters ordered by (account_id, id)."""
    rows = CharacterInstance.query.filter_by(game_instance_id=game_instance_id).all()
    return sorted((c for c in rows if c.is_active), key=lambda c: (c.account_id, c.id))
