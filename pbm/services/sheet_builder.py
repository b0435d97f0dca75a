"""Builds the per-turn TurnSheet rows and their ``sheet_data`` payloads.

``sheet_data`` is what the scanner later validates answers against, so it
carries the exact options printed on the page alongside the template text
captured in the instance's snapshot.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pbm import db
from pbm.models.game_instance import CharacterInstance, GameInstance, LocationInstance
from pbm.models.turn_sheet import ProcessingStatus, SheetType, TurnSheet
from pbm.services.template_registry import resolve_live
from pbm.services.world import active_characters, admissible_links

DEFAULT_TITLE = "Where will you go next?"
DEFAULT_INSTRUCTIONS = "Mark exactly one box to travel. Leave every box empty to stay where you are."


def location_choice_data(
    character: CharacterInstance, template_version: int, template_body: Dict, events: Optional[List[Dict]] = None
) -> Dict:
    here = db.session.get(LocationInstance, character.location_instance_id)
    options = [
        {
            "location_link_id": link.id,
            "to_location_instance_id": destination.id,
            "name": link.name,
            "description": link.description,
        }
        for link, destination in admissible_links(character)
    ]
    return {
        "title": template_body.get("title", DEFAULT_TITLE),
        "instructions": template_body.get("instructions", DEFAULT_INSTRUCTIONS),
        "template_version": template_version,
        "character_instance_id": character.id,
        "character_name": character.character.name,
        "health": character.health,
        "location_id": here.location_id,
        "location_instance_id": here.id,
        "location_name": here.location.name,
        "location_description": here.location.description,
        "options": options,
        "turn_events": list(events or []),
    }


def create_turn_sheets(
    instance: GameInstance, turn_number: int, events_by_character: Optional[Dict[str, List[Dict]]] = None
) -> List[TurnSheet]:
    """Add one pending LocationChoice sheet per active character. Caller commits."""
    events_by_character = events_by_character or {}
    sheets = []
    for character in active_characters(instance.id):
        here = db.session.get(LocationInstance, character.location_instance_id)
        version, body = resolve_live(instance.id, SheetType.LOCATION_CHOICE.value, record_id=here.location_id)
        sheet = TurnSheet(
            game_id=instance.game_id,
            game_instance_id=instance.id,
            account_id=character.account_id,
            character_instance_id=character.id,
            turn_number=turn_number,
            sheet_type=SheetType.LOCATION_CHOICE.value,
            sheet_order=1,
            sheet_data=location_choice_data(character, version, body, events_by_character.get(character.id)),
            processing_status=ProcessingStatus.PENDING.value,
        )
        db.session.add(sheet)
        sheets.append(sheet)
    db.session.flush()
    return sheets
