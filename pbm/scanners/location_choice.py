"""LocationChoice: the player marks at most one outbound link at their location."""

from __future__ import annotations

from typing import Any, Dict

from pbm.errors import ScanFailed
from pbm.models.turn_sheet import SheetType
from pbm.scanners.base import VisionScanner


class LocationChoiceScanner(VisionScanner):
    sheet_type = SheetType.LOCATION_CHOICE.value

    def instructions(self, template: Dict[str, Any]) -> str:
        lines = [
            "This is a location choice turn sheet. Exactly one box may be marked.",
            "Return 'location_link_ids' as the list of option ids whose box is marked.",
            "Options printed on the sheet:",
        ]
        for option in template.get("options", []):
            lines.append(f"- {option.get('location_link_id')}: {option.get('name')}")
        return "\n".join(lines)

    def answer_schema(self, template: Dict[str, Any]) -> Dict[str, Any]:
        return {"location_link_ids": {"type": "array", "items": {"type": "string"}}}

    def validate(self, answers: Dict[str, Any], template: Dict[str, Any]) -> Dict[str, Any]:
        if "location_link_ids" in answers:
            marked = [m for m in (answers.get("location_link_ids") or []) if m]
        else:
            single = answers.get("location_link_id")
            marked = [single] if single else []
        if len(marked) > 1:
            raise ScanFailed("more than one option is marked", details={"marked": marked})
        if not marked:
            # Nothing marked means the character stays put
            return {"location_link_id": None}
        offered = {o.get("location_link_id") for o in template.get("options", [])}
        if marked[0] not in offered:
            raise ScanFailed("marked option is not printed on this sheet", details={"marked": marked[0]})
        return {"location_link_id": marked[0]}
