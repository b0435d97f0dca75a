"""Sheet template registry.

Resolution order for both working copies and snapshots:
  (game, sheet_type, record_id) -> (game, sheet_type, NULL) -> NoTemplate

Preview requests read the designer's working copy (``SheetTemplate``).
Live rendering and sheet generation read the ``TemplateSnapshot`` rows
captured when the instance started; snapshots never change afterwards, so
resolved bodies are memoised per process.
"""

from __future__ import annotations

import copy
import threading
from typing import Any, Dict, Optional

from pbm import db
from pbm.errors import GameNotDraft, NoTemplate, UnsupportedSheetType
from pbm.logging_utils import get_logger
from pbm.models.game_image import scope_key
from pbm.models.template import SheetTemplate, TemplateSnapshot
from pbm.models.turn_sheet import SheetType

log = get_logger("pbm.templates")

_snapshot_cache: Dict[tuple, tuple[int, Dict[str, Any]]] = {}
_snapshot_cache_guard = threading.Lock()
_SNAPSHOT_CACHE_MAX = 2048


def _check_sheet_type(sheet_type: str):
    if sheet_type not in {t.value for t in SheetType}:
        raise UnsupportedSheetType(f"unknown sheet type {sheet_type!r}")


def upsert_template(game, sheet_type: str, body: Dict[str, Any], record_id: Optional[str] = None) -> SheetTemplate:
    """Create or replace the working copy; each replacement bumps ``version``."""
    if not game.is_draft:
        raise GameNotDraft("templates can only change while the game is a draft", details={"game_id": game.id})
    _check_sheet_type(sheet_type)
    row = SheetTemplate.query.filter_by(
        game_id=game.id, sheet_type=sheet_type, scope_key=scope_key(record_id, None)
    ).first()
    if row is None:
        row = SheetTemplate(game_id=game.id, sheet_type=sheet_type, record_id=record_id, version=1, body=body)
        db.session.add(row)
    else:
        row.version += 1
        row.body = body
    db.session.commit()
    log.info(event="template_saved", game_id=game.id, sheet_type=sheet_type, record_id=record_id, version=row.version)
    return row


def resolve_preview(game_id: str, sheet_type: str, record_id: Optional[str] = None) -> SheetTemplate:
    _check_sheet_type(sheet_type)
    keys = [scope_key(record_id, None)] if record_id else []
    keys.append(scope_key(None, None))
    for key in keys:
        row = SheetTemplate.query.filter_by(game_id=game_id, sheet_type=sheet_type, scope_key=key).first()
        if row is not None:
            return row
    raise NoTemplate(f"no {sheet_type} template for game {game_id}", details={"record_id": record_id})


def snapshot_templates(instance) -> list[TemplateSnapshot]:
    """Freeze every working template of the instance's game. Caller commits."""
    snapshots = []
    for row in SheetTemplate.query.filter_by(game_id=instance.game_id).order_by(SheetTemplate.id).all():
        snap = TemplateSnapshot(
            game_id=row.game_id,
            game_instance_id=instance.id,
            template_id=row.id,
            sheet_type=row.sheet_type,
            record_id=row.record_id,
            version=row.version,
            body=copy.deepcopy(row.body),
        )
        db.session.add(snap)
        snapshots.append(snap)
    return snapshots


def resolve_live(game_instance_id: str, sheet_type: str, record_id: Optional[str] = None) -> tuple[int, Dict[str, Any]]:
    """Return ``(version, body)`` from the instance's snapshots."""
    _check_sheet_type(sheet_type)
    cache_key = (game_instance_id, sheet_type, record_id)
    with _snapshot_cache_guard:
        hit = _snapshot_cache.get(cache_key)
    if hit is not None:
        return hit[0], copy.deepcopy(hit[1])

    keys = [scope_key(record_id, None)] if record_id else []
    keys.append(scope_key(None, None))
    for key in keys:
        snap = TemplateSnapshot.query.filter_by(
            game_instance_id=game_instance_id, sheet_type=sheet_type, scope_key=key
        ).first()
        if snap is not None:
            with _snapshot_cache_guard:
                if len(_snapshot_cache) >= _SNAPSHOT_CACHE_MAX:
                    _snapshot_cache.clear()
                _snapshot_cache[cache_key] = (snap.version, copy.deepcopy(snap.body))
            return snap.version, copy.deepcopy(snap.body)
    raise NoTemplate(
        f"no {sheet_type} template snapshot for instance {game_instance_id}", details={"record_id": record_id}
    )
