import datetime
import logging

import pytest

from pbm import app, db, logging_utils
from pbm.jobs.queue import ADVANCE_IF_READY, CHECK_DEADLINES
from pbm.models.game_instance import GameInstance
from pbm.models.job import Job
from pbm.models.turn_sheet import ProcessingStatus
from pbm.server import DEADLINE_SWEEP_SECONDS, _configure_logging, schedule_deadline_sweep
from pbm.services.turn_advancement import enqueue_due_advancements
from pbm.utils.clock import utcnow
from tests.factories import option_id, sheet_of, sheets_for, submit


def _overdue(world):
    instance = db.session.get(GameInstance, world.instance.id, populate_existing=True)
    instance.next_turn_due_at = utcnow() - datetime.timedelta(minutes=5)
    db.session.commit()
    return instance


def test_deadline_sweep_is_idempotent_within_a_window():
    now = datetime.datetime(2030, 6, 1, 12, 0, 5)
    first = schedule_deadline_sweep(now)
    second = schedule_deadline_sweep(now + datetime.timedelta(seconds=30))
    assert first.id == second.id
    later = schedule_deadline_sweep(now + datetime.timedelta(seconds=DEADLINE_SWEEP_SECONDS))
    assert later.id != first.id
    assert Job.query.filter_by(kind=CHECK_DEADLINES).count() == 2


def test_only_overdue_started_instances_are_enqueued(started):
    assert enqueue_due_advancements() == 0
    instance = _overdue(started)
    assert enqueue_due_advancements() == 1
    assert enqueue_due_advancements() == 1
    tags = [j.idempotency_tag for j in Job.query.filter_by(kind=ADVANCE_IF_READY).all()]
    assert tags == [f"deadline:{instance.id}:1:{instance.next_turn_due_at.isoformat()}"]


def test_sweep_job_abandons_late_sheets(started, jobs):
    alice_sheet = sheet_of(started, "alice@example.com", 1)
    submit(alice_sheet, option_id(alice_sheet, "Forest path"))
    _overdue(started)

    schedule_deadline_sweep()
    jobs.drain()

    instance = db.session.get(GameInstance, started.instance.id, populate_existing=True)
    assert instance.current_turn == 2
    assert instance.next_turn_due_at > utcnow()
    assert sheet_of(started, "bob@example.com", 1).processing_status == ProcessingStatus.ABANDONED.value
    assert {s.processing_status for s in sheets_for(started, 2)} == {ProcessingStatus.PRINTED.value}


@pytest.fixture()
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def test_configure_logging_writes_to_the_instance_folder(tmp_path, monkeypatch, restore_root_logging):
    monkeypatch.setattr(app, "instance_path", str(tmp_path))
    # Run twice to exercise the handler replacement path
    _configure_logging()
    _configure_logging()
    assert len(logging.getLogger().handlers) == 2
    logging.getLogger("pbm.test").info("hello")
    assert (tmp_path / "pbm.log").exists()


def test_structured_logger_levels(monkeypatch, capsys):
    monkeypatch.setattr(logging_utils, "CURRENT_LEVEL", logging_utils.LEVELS["info"])
    log = logging_utils.get_logger("pbm.test")
    assert logging_utils.get_logger("pbm.test") is log
    log.debug(event="hidden")
    log.info(event="sheet_scanned", quality=0.93, note="two words", skipped=None)
    log.error(event="boom")
    captured = capsys.readouterr()
    assert "hidden" not in captured.out
    line = captured.out.strip()
    assert line.startswith("level=info ts=")
    assert "event=sheet_scanned" in line
    assert "quality=0.93" in line
    assert "note=two_words" in line
    assert "skipped" not in line
    assert "logger=pbm.test" in line
    assert "event=boom" in captured.err


def test_structured_logger_json_mode(monkeypatch, capsys):
    monkeypatch.setattr(logging_utils, "CURRENT_LEVEL", logging_utils.LEVELS["debug"])
    monkeypatch.setattr(logging_utils, "JSON_MODE", True)
    logging_utils.get_logger("pbm.test").warn(event="job_retry_scheduled", attempt=2)
    out = capsys.readouterr().out
    assert '"event":"job_retry_scheduled"' in out
    assert '"level":"warn"' in out
    assert '"attempt":2' in out


def test_bound_fields_ride_along(monkeypatch, capsys):
    monkeypatch.setattr(logging_utils, "CURRENT_LEVEL", logging_utils.LEVELS["info"])
    child = logging_utils.get_logger("pbm.test").bind(correlation_id="req-7", game_instance_id="i-1")
    child.info(event="upload_scanned", game_instance_id="i-2", ok=True)
    line = capsys.readouterr().out
    assert "correlation_id=req-7" in line
    # Call-site fields win over bound ones
    assert "game_instance_id=i-2" in line
    assert "ok=true" in line
    assert logging_utils.get_logger("pbm.test").bound == {}


def test_set_level(monkeypatch):
    monkeypatch.setattr(logging_utils, "CURRENT_LEVEL", logging_utils.LEVELS["info"])
    logging_utils.set_level("ERROR")
    assert logging_utils.CURRENT_LEVEL == logging_utils.LEVELS["error"]
    with pytest.raises(ValueError):
        logging_utils.set_level("loud")
