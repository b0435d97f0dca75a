"""
project: Play By Mail
module: turn_advancement.py
License: MIT

Turn advancement for one game instance.

``advance_if_ready(game_instance_id, turn_number)`` is the body of the
``advance-if-ready`` job. It runs under the instance advisory lock plus a row
lock on the instance, inside one transaction:

  1. Bail out (no-op) unless the instance is started and still on
     ``turn_number``; stale and duplicate jobs land here.
  2. Partition the turn's sheets. While any is outstanding and the deadline
     has not passed, bail out.
  3. Lock and abandon outstanding sheets; a sheet mid-scan makes this Busy.
  4. Apply processed sheets ordered by (account_id, turn_sheet_id).
  5. Run the end-of-turn rule table.
  6. Bump the turn; either complete the instance or create the next sheets
     and schedule their rendering.

Any exception rolls the whole step back; the job queue retries it.
"""

from __future__ import annotations

import datetime
from collections import defaultdict
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from pbm import db, job_queue
from pbm.jobs.queue import ADVANCE_IF_READY, RENDER_SHEET
from pbm.logging_utils import get_logger
from pbm.models.game_instance import STATUS_STARTED, CharacterInstance, GameInstance
from pbm.models.turn_sheet import ProcessingStatus, SheetType, TurnSheet
from pbm.services.locks import instance_lock, row_lock
from pbm.services.sheet_builder import create_turn_sheets
from pbm.services.world import active_characters, resolve_choice
from pbm.services.world_rules import Events, run_end_of_turn_rules
from pbm.utils.clock import utcnow

log = get_logger("pbm.advance")


@dataclass
class AdvanceResult:
    game_instance_id: str
    turn_number: int
    advanced: bool
    reason: str
    current_turn: int
    completed: bool = False
    abandoned: int = 0
    applied: int = 0
    created_sheet_ids: List[str] = field(default_factory=list)


def _apply_location_choice(sheet: TurnSheet, character: CharacterInstance, events: Events):
    choice = (sheet.scanned_data or {}).get("location_link_id")
    destination = resolve_choice(character, choice)
    if destination is None:
        # Staying put, or the link stopped being admissible since the sheet was printed
        return
    character.location_instance_id = destination.id
    events[character.id].append(
        {"rule": SheetType.LOCATION_CHOICE.value, "message": f"You travelled to {destination.location.name}."}
    )


# Sheet types without an entry (inventory management) are recorded but have no world effect
SHEET_EFFECTS: Dict[str, Callable[[TurnSheet, CharacterInstance, Events], None]] = {
    SheetType.LOCATION_CHOICE.value: _apply_location_choice,
}


def apply_order(sheets: List[TurnSheet]) -> List[TurnSheet]:
    """Processed sheets in apply order: (account_id, id), never arrival order."""
    return sorted(
        (s for s in sheets if s.processing_status == ProcessingStatus.PROCESSED.value),
        key=lambda s: (s.account_id, s.id),
    )


def schedule_renders(sheets: List[TurnSheet]):
    for sheet in sheets:
        job_queue.enqueue(RENDER_SHEET, {"turn_sheet_id": sheet.id}, idempotency_tag=f"render:{sheet.id}")


def next_due(instance: GameInstance, now: datetime.datetime) -> datetime.datetime:
    return now + datetime.timedelta(hours=instance.game.turn_duration_hours)


def advance_if_ready(
    game_instance_id: str, turn_number: int, now: Optional[datetime.datetime] = None
) -> AdvanceResult:
    now = now or utcnow()
    alog = log.bind(game_instance_id=game_instance_id, turn=turn_number)
    with instance_lock(game_instance_id), ExitStack() as held:
        instance = held.enter_context(row_lock(GameInstance, game_instance_id))

        def skip(reason: str) -> AdvanceResult:
            current_turn = instance.current_turn
            db.session.rollback()
            alog.info(event="advance_noop", current_turn=current_turn, reason=reason)
            return AdvanceResult(game_instance_id, turn_number, False, reason, current_turn)

        if instance.status != STATUS_STARTED:
            return skip(f"instance_{instance.status}")
        if instance.current_turn != turn_number:
            return skip("stale_turn")

        sheets = TurnSheet.query.filter_by(game_instance_id=instance.id, turn_number=turn_number).all()
        outstanding = [s for s in sheets if not s.is_final]
        if outstanding and not instance.deadline_passed(now):
            return skip("waiting_for_sheets")

        # A sheet still being scanned holds its row lock: Busy here, and the job retries
        for sheet in outstanding:
            held.enter_context(row_lock(TurnSheet, sheet.id))
        # The locks reload each row; a scan may have landed since the query above
        outstanding = [s for s in outstanding if not s.is_final]
        for sheet in outstanding:
            sheet.mark_abandoned()

        events: Events = defaultdict(list)
        ordered = apply_order(sheets)
        for sheet in ordered:
            effect = SHEET_EFFECTS.get(sheet.sheet_type)
            if effect is None or sheet.character_instance_id is None:
                continue
            character = db.session.get(CharacterInstance, sheet.character_instance_id)
            if character is None or not character.is_active:
                continue
            effect(sheet, character, events)
        db.session.flush()

        run_end_of_turn_rules(instance, active_characters(instance.id), {s.sheet_type for s in sheets}, events)

        instance.advance_turn(now, next_due(instance, now))
        created: List[TurnSheet] = []
        if instance.is_last_turn():
            instance.mark_completed(now)
        else:
            created = create_turn_sheets(instance, instance.current_turn, events)
            schedule_renders(created)
        db.session.commit()

        alog.info(
            event="advance_applied",
            current_turn=instance.current_turn,
            applied=len(ordered),
            abandoned=len(outstanding),
            new_sheets=len(created),
            completed=instance.status != STATUS_STARTED,
        )
        return AdvanceResult(
            game_instance_id,
            turn_number,
            True,
            "advanced",
            instance.current_turn,
            completed=instance.status != STATUS_STARTED,
            abandoned=len(outstanding),
            applied=len(ordered),
            created_sheet_ids=[s.id for s in created],
        )


def enqueue_due_advancements(now: Optional[datetime.datetime] = None) -> int:
    """Schedule ``advance-if-ready`` for every started instance past its deadline."""
    now = now or utcnow()
    overdue = (
        GameInstance.query.filter(GameInstance.status == STATUS_STARTED, GameInstance.next_turn_due_at <= now)
        .order_by(GameInstance.id)
        .all()
    )
    for instance in overdue:
        job_queue.enqueue(
            ADVANCE_IF_READY,
            {"game_instance_id": instance.id, "turn_number": instance.current_turn},
            idempotency_tag=f"deadline:{instance.id}:{instance.current_turn}:{instance.next_turn_due_at.isoformat()}",
        )
    db.session.commit()
    if overdue:
        log.info(event="deadlines_due", count=len(overdue))
    return len(overdue)
