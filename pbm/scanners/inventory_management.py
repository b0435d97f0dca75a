"""InventoryManagement: pick up / drop marks. Read and checked, not yet applied by the turn engine."""

from __future__ import annotations

from typing import Any, Dict

from pbm.errors import ScanFailed
from pbm.models.turn_sheet import SheetType
from pbm.scanners.base import VisionScanner


class InventoryManagementScanner(VisionScanner):
    sheet_type = SheetType.INVENTORY_MANAGEMENT.value

    def instructions(self, template: Dict[str, Any]) -> str:
        return (
            "This is an inventory sheet. Return 'pick_up' as the ids of marked items on the ground "
            "and 'drop' as the ids of marked items being carried."
        )

    def answer_schema(self, template: Dict[str, Any]) -> Dict[str, Any]:
        ids = {"type": "array", "items": {"type": "string"}}
        return {"pick_up": ids, "drop": ids}

    def validate(self, answers: Dict[str, Any], template: Dict[str, Any]) -> Dict[str, Any]:
        ground = {i.get("item_instance_id") for i in template.get("location_items", [])}
        carried = {i.get("item_instance_id") for i in template.get("inventory", [])}
        pick_up = list(dict.fromkeys(answers.get("pick_up") or []))
        drop = list(dict.fromkeys(answers.get("drop") or []))
        unknown = [i for i in pick_up if i not in ground] + [i for i in drop if i not in carried]
        if unknown:
            raise ScanFailed("marked items are not printed on this sheet", details={"unknown": unknown})
        return {"pick_up": pick_up, "drop": drop}
