"""Job handlers registered on the application's queue.

Each handler takes the job payload and commits its own work. Handlers are
safe to run more than once: they re-check state under a lock and return
quietly when the work was already done.
"""

from pbm import job_queue
from pbm.jobs.queue import ADVANCE_IF_READY, CHECK_DEADLINES, JOIN_PLAYER, RENDER_SHEET
from pbm.services.join_service import process_join_submission
from pbm.services.render_service import render_turn_sheet
from pbm.services.turn_advancement import advance_if_ready, enqueue_due_advancements


@job_queue.worker(ADVANCE_IF_READY)
def advance_if_ready_job(payload):
    return advance_if_ready(payload["game_instance_id"], int(payload["turn_number"]))


@job_queue.worker(RENDER_SHEET)
def render_sheet_job(payload):
    return render_turn_sheet(payload["turn_sheet_id"])


@job_queue.worker(JOIN_PLAYER)
def join_player_job(payload):
    return process_join_submission(payload["join_submission_id"])


@job_queue.worker(CHECK_DEADLINES)
def check_deadlines_job(payload):
    return enqueue_due_advancements()
