"""
project: Play By Mail
module: upload_pipeline.py
License: MIT

Single-pass intake for a scanned sheet image.

  image -> extract_code (default scanner) -> decode
        -> live code: ownership check, row lock, status check, scan,
                      status re-check, record, enqueue advance-if-ready,
                      commit                                      (200)
        -> join code: manager subscription check, scan, record a
                      JoinSubmission, enqueue join-player, commit (202)

Only the failed-scan path commits without success: the sheet is marked
``failed`` so the operator can see it, then ``ScanFailed`` is raised.
A timeout or any other error rolls everything back.
"""

from __future__ import annotations

import datetime
import hashlib
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from pbm import db, job_queue
from pbm.errors import (
    EmptyBody,
    ImageTooLarge,
    NotFound,
    NotProcessable,
    ScanFailed,
    ScanTimeout,
    SheetBelongsElsewhere,
)
from pbm.jobs.queue import ADVANCE_IF_READY, JOIN_PLAYER
from pbm.logging_utils import get_logger
from pbm.models.game_instance import GameInstance, JoinSubmission
from pbm.models.models import SUBSCRIPTION_MANAGER, Account, Game, Subscription
from pbm.models.turn_sheet import SCANNABLE_STATUSES, ProcessingStatus, SheetType, TurnSheet
from pbm.scanners.registry import ScannerRegistry
from pbm.services.locks import row_lock
from pbm.utils.clock import utcnow
from pbm.utils.deadline import CallContext
from pbm.utils.sheet_code import JoinCode, LiveCode, decode

log = get_logger("pbm.upload")

DEFAULT_MAX_SCAN_BYTES = 10 * 1024 * 1024


@dataclass(frozen=True)
class UploadOutcome:
    status_code: int
    body: Dict[str, Any]


def upload_sheet(
    game: Game,
    instance: GameInstance,
    account: Account,
    image: bytes,
    registry: ScannerRegistry,
    ctx: CallContext,
    max_bytes: int = DEFAULT_MAX_SCAN_BYTES,
    now: Optional[datetime.datetime] = None,
) -> UploadOutcome:
    if not image:
        raise EmptyBody("request body must contain the scanned image")
    if len(image) > max_bytes:
        raise ImageTooLarge(
            f"scan is {len(image)} bytes; the limit is {max_bytes}",
            details={"file_size": len(image), "max_file_size": max_bytes},
        )
    now = now or utcnow()
    digest = hashlib.sha256(image).hexdigest()
    ulog = log.bind(correlation_id=ctx.correlation_id, game_instance_id=instance.id)
    ulog.info(event="upload_received", bytes=len(image), sha256=digest[:12])

    printed = registry.default().extract_code(ctx, image)
    code = decode(printed)
    ulog.info(event="upload_decoded", kind=type(code).__name__)

    if isinstance(code, LiveCode):
        return _upload_live(game, instance, account, image, digest, code, registry, ctx, now, ulog)
    return _upload_join(game, instance, image, digest, code, registry, ctx, ulog)


def _ensure_still_open(sheet: TurnSheet, ulog=log):
    """Re-read the committed status after the scan; raise if the sheet was closed meanwhile."""
    current = db.session.execute(
        select(TurnSheet.processing_status).where(TurnSheet.id == sheet.id)
    ).scalar_one()
    if current not in SCANNABLE_STATUSES:
        ulog.info(event="upload_rejected", reason="closed_during_scan", turn_sheet_id=sheet.id, status=current)
        raise NotProcessable(
            f"turn sheet became {current} while it was being scanned",
            details={"turn_sheet_id": sheet.id, "processing_status": current},
        )


def _upload_live(
    game: Game,
    instance: GameInstance,
    account: Account,
    image: bytes,
    digest: str,
    code: LiveCode,
    registry: ScannerRegistry,
    ctx: CallContext,
    now: datetime.datetime,
    ulog=log,
) -> UploadOutcome:
    if code.game_instance_id != instance.id or code.game_id != game.id:
        ulog.info(event="upload_rejected", reason="belongs_elsewhere", code_game_instance_id=code.game_instance_id)
        raise SheetBelongsElsewhere(
            "this sheet belongs to a different game instance",
            details={"game_instance_id": instance.id, "sheet_game_instance_id": code.game_instance_id},
        )

    with row_lock(TurnSheet, code.turn_sheet_id) as sheet:
        if sheet.game_instance_id != instance.id or sheet.account_id != code.account_id:
            raise NotFound(f"turn sheet {code.turn_sheet_id} not found")

        if sheet.processing_status == ProcessingStatus.PROCESSED.value:
            if sheet.scan_image_sha256 == digest:
                ulog.info(event="upload_duplicate", turn_sheet_id=sheet.id)
                return UploadOutcome(200, sheet.summary())
            raise NotProcessable(
                "turn sheet was already processed from a different image",
                details={"turn_sheet_id": sheet.id, "processing_status": sheet.processing_status},
            )
        if sheet.processing_status not in SCANNABLE_STATUSES or instance.is_terminal:
            raise NotProcessable(
                f"turn sheet is {sheet.processing_status} and cannot accept a scan",
                details={"turn_sheet_id": sheet.id, "processing_status": sheet.processing_status},
            )

        scanner = registry.get(sheet.sheet_type)
        try:
            result = scanner.scan(ctx, image, sheet.sheet_data or {})
        except ScanTimeout:
            ulog.warn(event="upload_scan_timeout", turn_sheet_id=sheet.id)
            raise
        except ScanFailed as exc:
            _ensure_still_open(sheet, ulog)
            sheet.mark_failed(exc.message, account.id, digest, now)
            db.session.commit()
            ulog.info(event="upload_scan_failed", turn_sheet_id=sheet.id, reason=exc.message)
            raise
        if ctx.expired():
            raise ScanTimeout("request deadline elapsed during the scan")

        _ensure_still_open(sheet, ulog)
        sheet.record_scan(result.answers, result.quality, account.id, digest, now)
        job_queue.enqueue(
            ADVANCE_IF_READY,
            {"game_instance_id": sheet.game_instance_id, "turn_number": sheet.turn_number},
            idempotency_tag=f"advance:{sheet.id}:{sheet.turn_number}",
        )
        db.session.commit()
        ulog.info(
            event="upload_scanned",
            turn_sheet_id=sheet.id,
            sheet_type=sheet.sheet_type,
            turn=sheet.turn_number,
            quality=result.quality,
        )
        return UploadOutcome(200, sheet.summary())


def _upload_join(
    game: Game,
    instance: GameInstance,
    image: bytes,
    digest: str,
    code: JoinCode,
    registry: ScannerRegistry,
    ctx: CallContext,
    ulog=log,
) -> UploadOutcome:
    manager = db.session.get(Subscription, code.manager_subscription_id)
    if manager is None or manager.subscription_type != SUBSCRIPTION_MANAGER:
        raise NotFound(f"manager subscription {code.manager_subscription_id} not found")
    if manager.game_id != code.game_id or code.game_id != game.id or instance.manager_subscription_id != manager.id:
        raise SheetBelongsElsewhere(
            "this join sheet belongs to a different game or instance",
            details={"game_id": game.id, "sheet_game_id": code.game_id},
        )
    if instance.is_terminal:
        raise NotProcessable(f"game instance is {instance.status} and no longer accepts players")

    existing = JoinSubmission.query.filter_by(manager_subscription_id=manager.id, image_sha256=digest).first()
    if existing is not None:
        ulog.info(event="upload_duplicate", join_submission_id=existing.id)
        return UploadOutcome(202, existing.to_dict())

    result = registry.get(SheetType.JOIN_GAME.value).scan(ctx, image, {"game_id": game.id})
    if ctx.expired():
        raise ScanTimeout("request deadline elapsed during the scan")

    submission = JoinSubmission(
        game_id=game.id,
        game_instance_id=instance.id,
        manager_subscription_id=manager.id,
        image_sha256=digest,
        scanned_data=result.answers,
        scan_quality=result.quality,
    )
    db.session.add(submission)
    try:
        db.session.flush()
    except IntegrityError:
        # The same image raced in on another request
        db.session.rollback()
        existing = JoinSubmission.query.filter_by(manager_subscription_id=manager.id, image_sha256=digest).one()
        return UploadOutcome(202, existing.to_dict())
    job_queue.enqueue(JOIN_PLAYER, {"join_submission_id": submission.id}, idempotency_tag=f"join:{submission.id}")
    db.session.commit()
    ulog.info(event="upload_join_received", join_submission_id=submission.id)
    return UploadOutcome(202, submission.to_dict())
