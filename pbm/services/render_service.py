"""Rendering of live turn sheets and designer previews.

Live sheets render from the data captured on the sheet (which already
carries the snapshot template text) and print a live sheet code. Previews
read the designer's working template, fill the world-dependent parts with
placeholders and print a code built from nil identifiers. Join sheets are
per instance: blank contact fields plus a join code naming the manager
subscription that receives them.
"""

from __future__ import annotations

import datetime
from typing import Any, Dict, Optional, Tuple

from flask import current_app

from pbm import db
from pbm.logging_utils import get_logger
from pbm.errors import NotFound, NotProcessable, NoTemplate
from pbm.models.game_instance import STATUS_CREATED, GameInstance
from pbm.models.models import Game
from pbm.models.turn_sheet import ProcessingStatus, SheetType, TurnSheet
from pbm.models.world import Location, LocationLink
from pbm.rendering.renderer import Renderer
from pbm.services.image_store import find_background
from pbm.services.locks import row_lock
from pbm.services.sheet_builder import DEFAULT_INSTRUCTIONS, DEFAULT_TITLE
from pbm.services.template_registry import resolve_live, resolve_preview
from pbm.utils.clock import utcnow
from pbm.utils.deadline import CallContext
from pbm.utils.sheet_code import JoinCode, LiveCode, encode

log = get_logger("pbm.render")

NIL_ID = "00000000-0000-0000-0000-000000000000"


def _renderer() -> Renderer:
    return current_app.extensions["pbm_renderer"]


def _context(correlation_id: Optional[str] = None) -> CallContext:
    return CallContext.with_timeout(current_app.config["PBM_RENDER_TIMEOUT_SECONDS"], correlation_id)


def live_code(sheet: TurnSheet) -> str:
    return encode(LiveCode(sheet.game_id, sheet.game_instance_id, sheet.account_id, sheet.id))


def render_turn_sheet(turn_sheet_id: str, now: Optional[datetime.datetime] = None) -> Optional[TurnSheet]:
    """Render a pending sheet and mark it printed. Returns None when there was nothing to do."""
    with row_lock(TurnSheet, turn_sheet_id) as sheet:
        if sheet.processing_status != ProcessingStatus.PENDING.value:
            log.debug(event="render_skipped", turn_sheet_id=sheet.id, processing_status=sheet.processing_status)
            return None
        instance = db.session.get(GameInstance, sheet.game_instance_id)
        if instance is None or instance.is_terminal:
            log.debug(event="render_skipped", turn_sheet_id=sheet.id, reason="instance_finished")
            return None
        data = sheet.sheet_data or {}
        background = find_background(sheet.game_id, sheet.sheet_type, record_id=data.get("location_id"))
        document = _renderer().render(_context(), sheet.sheet_type, data, background, live_code(sheet))
        sheet.mark_printed(document, now or utcnow())
        db.session.commit()
    log.info(event="sheet_rendered", turn_sheet_id=sheet.id, turn=sheet.turn_number, bytes=len(document))
    return sheet


def _preview_data(game: Game, sheet_type: str, body: Dict[str, Any], version: int, record_id: Optional[str]):
    data: Dict[str, Any] = {
        "title": body.get("title", DEFAULT_TITLE),
        "instructions": body.get("instructions", DEFAULT_INSTRUCTIONS),
        "template_version": version,
        "turn_events": [],
    }
    if sheet_type != SheetType.LOCATION_CHOICE.value:
        return data
    location = db.session.get(Location, record_id) if record_id else None
    if location is None or location.game_id != game.id:
        data.update(
            location_name="Your current location",
            location_description="The description of the location appears here.",
            options=[{"location_link_id": NIL_ID, "name": "A way onward", "description": ""}],
        )
        return data
    links = (
        LocationLink.query.filter_by(game_id=game.id, from_location_id=location.id)
        .order_by(LocationLink.name, LocationLink.id)
        .all()
    )
    data.update(
        location_id=location.id,
        location_name=location.name,
        location_description=location.description,
        options=[
            {"location_link_id": link.id, "name": link.name, "description": link.description} for link in links
        ],
    )
    return data


def render_preview(game: Game, sheet_type: str, record_id: Optional[str] = None, correlation_id=None) -> bytes:
    template = resolve_preview(game.id, sheet_type, record_id)
    data = _preview_data(game, sheet_type, template.body or {}, template.version, record_id)
    if sheet_type == SheetType.JOIN_GAME.value:
        code = encode(JoinCode(game.id, NIL_ID))
    else:
        code = encode(LiveCode(game.id, NIL_ID, NIL_ID, NIL_ID))
    background = find_background(game.id, sheet_type, record_id=record_id)
    document = _renderer().render(_context(correlation_id), sheet_type, data, background, code)
    log.info(event="preview_rendered", game_id=game.id, sheet_type=sheet_type, record_id=record_id)
    return document


JOIN_INSTRUCTIONS = (
    "Fill in your name, contact details and the name of your character, then return this sheet to the game manager."
)


def join_sheet_code(instance: GameInstance) -> str:
    if instance.manager_subscription_id is None:
        raise NotFound(f"game instance {instance.id} has no manager to return join sheets to")
    return encode(JoinCode(instance.game_id, instance.manager_subscription_id))


def _join_template(instance: GameInstance) -> Tuple[int, Dict[str, Any]]:
    sheet_type = SheetType.JOIN_GAME.value
    try:
        if instance.status == STATUS_CREATED:
            row = resolve_preview(instance.game_id, sheet_type)
            return row.version, row.body or {}
        return resolve_live(instance.id, sheet_type)
    except NoTemplate:
        # Join sheets need no authored text; the field layout comes from the renderer
        return 0, {}


def render_join_sheet(instance: GameInstance, correlation_id: Optional[str] = None) -> bytes:
    """Blank join sheet for ``instance``; the printed code routes returns to its manager."""
    if instance.is_terminal:
        raise NotProcessable(f"game instance is {instance.status} and no longer accepts players")
    code = join_sheet_code(instance)
    version, body = _join_template(instance)
    data = {
        "title": body.get("title", f"Join {instance.game.name}"),
        "instructions": body.get("instructions", JOIN_INSTRUCTIONS),
        "template_version": version,
        "turn_events": [],
    }
    background = find_background(instance.game_id, SheetType.JOIN_GAME.value)
    document = _renderer().render(_context(correlation_id), SheetType.JOIN_GAME.value, data, background, code)
    log.info(event="join_sheet_rendered", game_instance_id=instance.id, template_version=version)
    return document
