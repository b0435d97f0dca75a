import pytest

from pbm import db
from pbm.errors import InvalidField, NotProcessable
from pbm.models.turn_sheet import ProcessingStatus, TurnSheet
from pbm.utils.clock import utcnow
from tests.factories import sheets_for, submit


def test_turn_one_sheets_are_printed(started):
    sheets = sheets_for(started, 1)
    assert len(sheets) == 2
    for sheet in sheets:
        assert sheet.processing_status == ProcessingStatus.PRINTED.value
        assert sheet.rendered_document.startswith(b"%PDF")
        assert sheet.scanned_data is None and sheet.scanned_at is None and sheet.scan_quality is None
        assert {o["name"] for o in sheet.sheet_data["options"]} == {"Forest path", "Mill road"}


def test_scan_columns_are_written_together(started):
    sheet = sheets_for(started, 1)[0]
    sheet.scanned_data = {"location_link_id": None}
    with pytest.raises(InvalidField):
        db.session.commit()
    db.session.rollback()


def test_partial_scan_columns_rejected_on_insert(started):
    template = sheets_for(started, 1)[0]
    sheet = TurnSheet(
        game_id=template.game_id,
        game_instance_id=template.game_instance_id,
        account_id=template.account_id,
        turn_number=99,
        sheet_type="location_choice",
        scanned_at=utcnow(),
    )
    db.session.add(sheet)
    with pytest.raises(InvalidField):
        db.session.commit()
    db.session.rollback()


def test_processed_sheet_is_frozen(started):
    sheet = submit(sheets_for(started, 1)[0])
    sheet.error_message = "edited later"
    with pytest.raises(NotProcessable):
        db.session.commit()
    db.session.rollback()
    fresh = db.session.get(TurnSheet, sheet.id, populate_existing=True)
    assert fresh.error_message is None
    assert fresh.processing_status == ProcessingStatus.PROCESSED.value


def test_abandoned_sheet_is_frozen(started):
    sheet = sheets_for(started, 1)[0]
    sheet.mark_abandoned()
    db.session.commit()
    with pytest.raises(NotProcessable):
        sheet.record_scan({"location_link_id": None}, 0.9, None, "0" * 64)


def test_pending_sheet_cannot_be_scanned(world):
    from tests.factories import join_player, start

    join_player(world, "alice@example.com", "Alice")
    start(world)
    sheet = sheets_for(world, 1)[0]
    assert sheet.processing_status == ProcessingStatus.PENDING.value
    with pytest.raises(NotProcessable):
        sheet.record_scan({"location_link_id": None}, 0.9, None, "0" * 64)


def test_failed_sheet_can_be_rescanned(started):
    sheet = sheets_for(started, 1)[0]
    sheet.mark_failed("smudged", None, "1" * 64)
    db.session.commit()
    assert sheet.scan_quality == 0.0 and sheet.scanned_data["failed"] is True
    sheet.record_scan({"location_link_id": None}, 0.9, None, "2" * 64)
    db.session.commit()
    assert sheet.processing_status == ProcessingStatus.PROCESSED.value
    assert sheet.error_message is None
