"""Test data factories to reduce boilerplate in tests.

Usage examples:
    from tests.factories import create_world, join_player, start, sheets_for

    def test_something(world):
        join_player(world, "alice@example.com", "Alice")
        start(world)
        sheets = sheets_for(world, 1)

The standard world is a published game with three locations:

    Village Square (start) --Forest path--> Dark Forest --Back to the square--> Village Square
    Village Square         --Mill road----> Old Mill    --Back to the square--> Village Square

plus one game-wide location_choice template and one instance owned by the
designer's manager subscription.
"""
from __future__ import annotations

import hashlib
import io
from types import SimpleNamespace
from typing import Optional

from PIL import Image, PngImagePlugin

from pbm import db
from pbm.models.game_instance import CharacterInstance, JoinSubmission
from pbm.models.models import SUBSCRIPTION_MANAGER, Account, Subscription
from pbm.models.turn_sheet import ProcessingStatus, TurnSheet
from pbm.models.world import Location, LocationLink
from pbm.scanners.vision import embed_manifest
from pbm.services.game_service import create_game, create_instance, publish_game
from pbm.services.instance_service import start_instance
from pbm.services.join_service import process_join_submission
from pbm.services.render_service import live_code
from pbm.services.template_registry import upsert_template
from pbm.services.turn_advancement import advance_if_ready
from pbm.utils.sheet_code import JoinCode, encode

SQUARE = "Village Square"
FOREST = "Dark Forest"
MILL = "Old Mill"


def create_account(email: str, name: str = "Tester", account_id: Optional[str] = None):
    """Return ``(account, bearer_token)``; reuses an account with the same email."""
    account = Account.query.filter_by(email=email).first()
    if account is None:
        account = Account(email=email, name=name)
        if account_id:
            account.id = account_id
        db.session.add(account)
    token = account.issue_token()
    db.session.commit()
    return account, token


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def add_location(game, name: str, starting: bool = False, description: str = "") -> Location:
    loc = Location(game_id=game.id, name=name, description=description or f"You are at the {name}.",
                   is_starting_location=starting)
    db.session.add(loc)
    db.session.commit()
    return loc


def add_link(game, src: Location, dst: Location, name: str) -> LocationLink:
    link = LocationLink(game_id=game.id, from_location_id=src.id, to_location_id=dst.id, name=name)
    db.session.add(link)
    db.session.commit()
    return link


def create_world(publish: bool = True, max_turns: Optional[int] = None, required_player_count: int = 0,
                 turn_duration_hours: int = 168, with_template: bool = True):
    designer, token = create_account("designer@example.com", "Dana Designer")
    game = create_game(designer, "The Hollow Vale", "A small valley", turn_duration_hours=turn_duration_hours)
    square = add_location(game, SQUARE, starting=True)
    forest = add_location(game, FOREST)
    mill = add_location(game, MILL)
    links = {
        "forest": add_link(game, square, forest, "Forest path"),
        "mill": add_link(game, square, mill, "Mill road"),
        "forest_back": add_link(game, forest, square, "Back to the square"),
        "mill_back": add_link(game, mill, square, "Back to the square"),
    }
    if with_template:
        upsert_template(game, "location_choice", {"title": "Choose your path"})
    if publish:
        publish_game(game)
    manager = Subscription.query.filter_by(
        game_id=game.id, account_id=designer.id, subscription_type=SUBSCRIPTION_MANAGER
    ).one()
    instance = create_instance(game, manager, max_turns=max_turns, required_player_count=required_player_count)
    return SimpleNamespace(
        designer=designer,
        token=token,
        game=game,
        manager=manager,
        instance=instance,
        locations={SQUARE: square, FOREST: forest, MILL: mill},
        links=links,
    )


def join_fields(email: str, name: str) -> dict:
    return {
        "name": name,
        "email": email,
        "postal_address_line1": "1 High Street",
        "postal_address_line2": "",
        "state_province": "",
        "country": "United Kingdom",
        "postal_code": "AB1 2CD",
        "character_name": f"{name} the Brave",
    }


def join_player(world, email: str, name: str, instance=None) -> JoinSubmission:
    """Record a returned join sheet and run the join-player step for it."""
    instance = instance or world.instance
    submission = JoinSubmission(
        game_id=world.game.id,
        game_instance_id=instance.id,
        manager_subscription_id=instance.manager_subscription_id,
        image_sha256=hashlib.sha256(f"{instance.id}:{email}".encode()).hexdigest(),
        scanned_data=join_fields(email, name),
        scan_quality=0.9,
    )
    db.session.add(submission)
    db.session.commit()
    return process_join_submission(submission.id)


def start(world, now=None):
    world.instance = start_instance(world.instance.id, now)
    return world.instance


def print_pending_sheets(world):
    from pbm.services.render_service import render_turn_sheet

    pending = TurnSheet.query.filter_by(
        game_instance_id=world.instance.id, processing_status=ProcessingStatus.PENDING.value
    ).all()
    for sheet in pending:
        render_turn_sheet(sheet.id)
    return pending


def sheets_for(world, turn: int):
    return (
        TurnSheet.query.filter_by(game_instance_id=world.instance.id, turn_number=turn)
        .order_by(TurnSheet.account_id, TurnSheet.id)
        .all()
    )


def character_of(world, email: str) -> CharacterInstance:
    account = Account.query.filter_by(email=email).one()
    return next(
        c
        for c in CharacterInstance.query.filter_by(game_instance_id=world.instance.id).all()
        if c.account_id == account.id
    )


def sheet_of(world, email: str, turn: int) -> TurnSheet:
    account = Account.query.filter_by(email=email).one()
    return TurnSheet.query.filter_by(game_instance_id=world.instance.id, account_id=account.id, turn_number=turn).one()


def submit(sheet: TurnSheet, link_id: Optional[str] = None, quality: float = 0.9):
    """Record a scan directly, bypassing the upload pipeline."""
    sheet.record_scan({"location_link_id": link_id}, quality, None, hashlib.sha256(sheet.id.encode()).hexdigest())
    db.session.commit()
    return sheet


def play_turn(world):
    """Every character stays put; advance and print the next turn's sheets."""
    turn = world.instance.current_turn
    for sheet in sheets_for(world, turn):
        submit(sheet)
    result = advance_if_ready(world.instance.id, turn)
    print_pending_sheets(world)
    return result


def option_id(sheet: TurnSheet, name: str) -> str:
    return next(o["location_link_id"] for o in sheet.sheet_data["options"] if o["name"] == name)


# --- images ------------------------------------------------------------------
def png_bytes(width: int = 400, height: int = 566, color=(200, 180, 140), mode: str = "RGB") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, (width, height), color if mode == "RGB" else 200).save(buf, format="PNG")
    return buf.getvalue()


def jpeg_bytes(width: int = 400, height: int = 566) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (10, 20, 30)).save(buf, format="JPEG")
    return buf.getvalue()


def png_of_size(total: int, width: int = 400, height: int = 566) -> bytes:
    """A valid PNG padded with an uncompressed text chunk to exactly ``total`` bytes."""
    base = len(png_bytes(width, height))
    # chunk length + type + crc, then b"pad\0"
    padding = total - base - 12 - 4
    info = PngImagePlugin.PngInfo()
    info.add_text("pad", "x" * padding)
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (200, 180, 140)).save(buf, format="PNG", pnginfo=info)
    data = buf.getvalue()
    assert len(data) == total
    return data


# --- scans -------------------------------------------------------------------
def live_scan(sheet: TurnSheet, link_id: Optional[str] = None, quality: float = 0.95, **extra) -> bytes:
    answers = {"location_link_ids": [link_id] if link_id else []}
    return embed_manifest(png_bytes(), code=live_code(sheet), answers=answers, quality=quality, **extra)


def join_scan(world, email: str, name: str, instance=None, quality: float = 0.9) -> bytes:
    instance = instance or world.instance
    code = encode(JoinCode(world.game.id, instance.manager_subscription_id))
    return embed_manifest(png_bytes(), code=code, answers=join_fields(email, name), quality=quality)


def upload_url(world, instance_id: Optional[str] = None) -> str:
    return f"/api/v1/games/{world.game.id}/instances/{instance_id or world.instance.id}/turn-sheets/upload"


def upload(client, world, image: bytes, instance_id: Optional[str] = None, token: Optional[str] = None):
    headers = auth(token or world.token)
    headers["Content-Type"] = "image/png"
    return client.post(upload_url(world, instance_id), data=image, headers=headers)
