"""JoinGame: a blank sheet where a new player writes their contact details."""

from __future__ import annotations

from typing import Any, Dict

from pbm.errors import ScanFailed
from pbm.models.turn_sheet import SheetType
from pbm.scanners.base import VisionScanner

REQUIRED_FIELDS = ("name", "email", "postal_address_line1", "country", "postal_code", "character_name")
OPTIONAL_FIELDS = ("postal_address_line2", "state_province")


class JoinGameScanner(VisionScanner):
    sheet_type = SheetType.JOIN_GAME.value

    def instructions(self, template: Dict[str, Any]) -> str:
        return (
            "This is a hand-written join game sheet. Transcribe each labelled box: "
            + ", ".join(REQUIRED_FIELDS + OPTIONAL_FIELDS)
            + ". Leave a field empty when the box is blank."
        )

    def answer_schema(self, template: Dict[str, Any]) -> Dict[str, Any]:
        return {name: {"type": "string"} for name in REQUIRED_FIELDS + OPTIONAL_FIELDS}

    def validate(self, answers: Dict[str, Any], template: Dict[str, Any]) -> Dict[str, Any]:
        cleaned = {}
        for name in REQUIRED_FIELDS + OPTIONAL_FIELDS:
            value = answers.get(name)
            cleaned[name] = " ".join(str(value).split()) if value is not None else ""
        missing = [name for name in REQUIRED_FIELDS if not cleaned[name]]
        if missing:
            raise ScanFailed("join sheet is missing required fields", details={"missing": missing})
        email = cleaned["email"].lower()
        local, _, domain = email.partition("@")
        if not local or "." not in domain:
            raise ScanFailed("join sheet email address is not legible", details={"email": cleaned["email"]})
        cleaned["email"] = email
        return cleaned
