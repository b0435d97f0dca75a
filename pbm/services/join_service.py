"""Turns a scanned join sheet into a player.

``process_join_submission`` is the body of the ``join-player`` job. It is
idempotent: a submission already ``processed`` or ``rejected`` is left alone.
A rejection (instance finished, player already in another running instance)
is an outcome, not an error, so the job does not retry it.
"""

from __future__ import annotations

from typing import Optional

from pbm import db
from pbm.logging_utils import get_logger
from pbm.models.game_instance import (
    STATUS_CREATED,
    CharacterInstance,
    GameInstance,
    JoinSubmission,
    LocationInstance,
)
from pbm.models.models import SUBSCRIPTION_ACTIVE, SUBSCRIPTION_PLAYER, Account, Subscription
from pbm.models.world import Character, Location
from pbm.services.locks import row_lock

log = get_logger("pbm.join")

JOIN_RECEIVED = "received"
JOIN_PROCESSED = "processed"
JOIN_REJECTED = "rejected"

_ADDRESS_FIELDS = ("postal_address_line1", "postal_address_line2", "state_province", "country", "postal_code")


def _account_for(data: dict) -> Account:
    account = Account.query.filter_by(email=data["email"]).first()
    if account is None:
        account = Account(email=data["email"], name=data.get("name", ""))
        db.session.add(account)
    for name in _ADDRESS_FIELDS:
        if data.get(name):
            setattr(account, name, data[name])
    if not account.name and data.get("name"):
        account.name = data["name"]
    db.session.flush()
    return account


def _reject(submission: JoinSubmission, reason: str) -> JoinSubmission:
    submission.status = JOIN_REJECTED
    submission.error_message = reason
    db.session.commit()
    log.info(event="join_rejected", join_submission_id=submission.id, reason=reason)
    return submission


def _place_character(instance: GameInstance, character: Character) -> Optional[CharacterInstance]:
    existing = CharacterInstance.query.filter_by(game_instance_id=instance.id, character_id=character.id).first()
    if existing is not None:
        return existing
    start = (
        LocationInstance.query.join(Location, Location.id == LocationInstance.location_id)
        .filter(LocationInstance.game_instance_id == instance.id, Location.is_starting_location.is_(True))
        .first()
    )
    if start is None:
        return None
    row = CharacterInstance(
        game_instance_id=instance.id,
        game_id=instance.game_id,
        character_id=character.id,
        location_instance_id=start.id,
    )
    db.session.add(row)
    return row


def process_join_submission(join_submission_id: str) -> JoinSubmission:
    with row_lock(JoinSubmission, join_submission_id) as submission:
        if submission.status != JOIN_RECEIVED:
            return submission
        instance = db.session.get(GameInstance, submission.game_instance_id)
        if instance.is_terminal:
            return _reject(submission, f"game instance is {instance.status}")

        data = submission.scanned_data or {}
        account = _account_for(data)
        subscription = Subscription.query.filter_by(
            game_id=instance.game_id, account_id=account.id, subscription_type=SUBSCRIPTION_PLAYER
        ).first()
        if subscription is not None and subscription.game_instance_id not in (None, instance.id):
            other = db.session.get(GameInstance, subscription.game_instance_id)
            if other is not None and not other.is_terminal:
                return _reject(submission, "player already takes part in another instance of this game")
        if subscription is None:
            subscription = Subscription(
                game_id=instance.game_id, account_id=account.id, subscription_type=SUBSCRIPTION_PLAYER
            )
            db.session.add(subscription)
        subscription.game_instance_id = instance.id
        subscription.status = SUBSCRIPTION_ACTIVE

        character = Character.query.filter_by(game_id=instance.game_id, account_id=account.id).first()
        if character is None:
            character = Character(game_id=instance.game_id, account_id=account.id, name=data.get("character_name", ""))
            db.session.add(character)
            db.session.flush()
        if instance.status != STATUS_CREATED:
            # Late joiners enter at the start and get a sheet from the next turn
            _place_character(instance, character)

        submission.status = JOIN_PROCESSED
        submission.account_id = account.id
        submission.error_message = None
        db.session.commit()
    log.info(
        event="join_processed",
        join_submission_id=submission.id,
        account_id=account.id,
        game_instance_id=instance.id,
    )
    return submission
