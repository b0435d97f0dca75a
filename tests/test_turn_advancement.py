import datetime

import pytest

from pbm import db
from pbm.jobs.queue import ADVANCE_IF_READY
from pbm.models.game_instance import CharacterInstance, GameInstance, ItemInstance, LocationInstance
from pbm.models.job import JOB_QUEUED, JOB_SUCCEEDED, Job
from pbm.models.turn_sheet import ProcessingStatus
from pbm.models.world import CREATURE_AGGRESSIVE, Creature, CreaturePlacement, Item, ItemPlacement
from pbm.services import world_rules
from pbm.services.game_service import publish_game
from pbm.services.instance_service import pause_instance, resume_instance
from pbm.services.turn_advancement import advance_if_ready, apply_order
from tests.factories import (
    FOREST,
    MILL,
    SQUARE,
    character_of,
    create_account,
    create_world,
    join_player,
    live_scan,
    option_id,
    play_turn,
    print_pending_sheets,
    sheet_of,
    sheets_for,
    start,
    submit,
    upload,
)


def _instance(world):
    return db.session.get(GameInstance, world.instance.id, populate_existing=True)


def _location_name(character):
    here = db.session.get(LocationInstance, character.location_instance_id)
    return here.location.name


def _reload_character(world, email):
    character = character_of(world, email)
    return db.session.get(CharacterInstance, character.id, populate_existing=True)


def _messages(sheet):
    return [event["message"] for event in sheet.sheet_data["turn_events"]]


def _three_player_world():
    world = create_world()
    for email, name in (("alice@example.com", "Alice"), ("bob@example.com", "Bob"), ("carol@example.com", "Carol")):
        join_player(world, email, name)
    start(world)
    print_pending_sheets(world)
    return world


def test_advance_waits_for_every_sheet():
    world = _three_player_world()
    play_turn(world)
    play_turn(world)
    assert _instance(world).current_turn == 3

    first, second, third = sheets_for(world, 3)
    submit(first)
    submit(second)
    result = advance_if_ready(world.instance.id, 3)
    assert not result.advanced
    assert result.reason == "waiting_for_sheets"
    assert _instance(world).current_turn == 3
    assert sheets_for(world, 4) == []

    submit(third)
    result = advance_if_ready(world.instance.id, 3)
    assert result.advanced and result.reason == "advanced"
    assert result.applied == 3 and result.abandoned == 0
    assert _instance(world).current_turn == 4
    fresh = sheets_for(world, 4)
    assert len(fresh) == 3
    assert {s.processing_status for s in fresh} == {ProcessingStatus.PENDING.value}
    assert sorted(result.created_sheet_ids) == sorted(s.id for s in fresh)


def test_apply_order_ignores_arrival_order():
    world = create_world()
    create_account("second@example.com", "Second", account_id="a-2")
    create_account("first@example.com", "First", account_id="a-1")
    join_player(world, "second@example.com", "Second")
    join_player(world, "first@example.com", "First")
    start(world)
    print_pending_sheets(world)

    sheet_a2 = sheet_of(world, "second@example.com", 1)
    sheet_a1 = sheet_of(world, "first@example.com", 1)
    # a-2 comes back first
    submit(sheet_a2, option_id(sheet_a2, "Mill road"))
    submit(sheet_a1, option_id(sheet_a1, "Forest path"))
    assert [s.account_id for s in apply_order(sheets_for(world, 1))] == ["a-1", "a-2"]

    result = advance_if_ready(world.instance.id, 1)
    assert result.advanced
    assert _location_name(_reload_character(world, "first@example.com")) == FOREST
    assert _location_name(_reload_character(world, "second@example.com")) == MILL
    assert _messages(sheet_of(world, "first@example.com", 2)) == [f"You travelled to {FOREST}."]
    assert _messages(sheet_of(world, "second@example.com", 2)) == [f"You travelled to {MILL}."]


def test_next_sheet_offers_the_new_locations_links(started):
    sheet = sheet_of(started, "alice@example.com", 1)
    submit(sheet, option_id(sheet, "Forest path"))
    submit(sheet_of(started, "bob@example.com", 1))
    advance_if_ready(started.instance.id, 1)
    alice_next = sheet_of(started, "alice@example.com", 2)
    assert alice_next.sheet_data["location_name"] == FOREST
    assert [o["name"] for o in alice_next.sheet_data["options"]] == ["Back to the square"]
    bob_next = sheet_of(started, "bob@example.com", 2)
    assert bob_next.sheet_data["location_name"] == SQUARE
    assert bob_next.sheet_data["turn_events"] == []


def test_deadline_abandons_outstanding_sheets(started):
    alice_sheet = sheet_of(started, "alice@example.com", 1)
    submit(alice_sheet, option_id(alice_sheet, "Mill road"))
    due = _instance(started).next_turn_due_at

    early = advance_if_ready(started.instance.id, 1, now=due - datetime.timedelta(seconds=1))
    assert early.reason == "waiting_for_sheets"

    result = advance_if_ready(started.instance.id, 1, now=due + datetime.timedelta(seconds=1))
    assert result.advanced
    assert result.abandoned == 1 and result.applied == 1
    assert sheet_of(started, "bob@example.com", 1).processing_status == ProcessingStatus.ABANDONED.value
    # An abandoned player stays put but keeps playing
    assert _location_name(_reload_character(started, "bob@example.com")) == SQUARE
    assert len(sheets_for(started, 2)) == 2
    instance = _instance(started)
    assert instance.next_turn_due_at == due + datetime.timedelta(seconds=1) + datetime.timedelta(hours=168)


def test_last_turn_completes_without_new_sheets():
    world = create_world(max_turns=2)
    join_player(world, "alice@example.com", "Alice")
    start(world)
    print_pending_sheets(world)
    result = play_turn(world)
    assert result.advanced and result.completed
    assert result.created_sheet_ids == []
    instance = _instance(world)
    assert instance.status == "completed"
    assert instance.current_turn == 2
    assert instance.completed_at is not None
    assert sheets_for(world, 2) == []
    assert advance_if_ready(world.instance.id, 2).reason == "instance_completed"


def test_stale_and_duplicate_advances_are_noops(started):
    assert advance_if_ready(started.instance.id, 0).reason == "stale_turn"
    for sheet in sheets_for(started, 1):
        submit(sheet)
    assert advance_if_ready(started.instance.id, 1).advanced
    again = advance_if_ready(started.instance.id, 1)
    assert not again.advanced and again.reason == "stale_turn"
    assert again.current_turn == 2
    assert len(sheets_for(started, 2)) == 2


def test_paused_instance_does_not_advance(started):
    for sheet in sheets_for(started, 1):
        submit(sheet)
    pause_instance(started.instance.id)
    result = advance_if_ready(started.instance.id, 1)
    assert result.reason == "instance_paused"
    assert _instance(started).current_turn == 1


def test_resume_advances_when_every_sheet_arrived_while_paused(client, started, jobs):
    pause_instance(started.instance.id)
    for sheet in sheets_for(started, 1):
        assert upload(client, started, live_scan(sheet)).status_code == 200
    jobs.drain()
    assert _instance(started).current_turn == 1

    instance = resume_instance(started.instance.id)
    tag = f"resume:{instance.id}:1:{instance.next_turn_due_at.isoformat()}"
    assert Job.query.filter_by(kind=ADVANCE_IF_READY, idempotency_tag=tag).count() == 1
    jobs.drain()

    assert _instance(started).current_turn == 2
    assert {s.processing_status for s in sheets_for(started, 1)} == {ProcessingStatus.PROCESSED.value}
    assert {s.processing_status for s in sheets_for(started, 2)} == {ProcessingStatus.PRINTED.value}


def test_failing_rule_rolls_the_whole_turn_back(started, jobs, monkeypatch):
    def exploding_rule(instance, characters, events):
        for character in characters:
            character.health = 1
        raise RuntimeError("rule exploded")

    monkeypatch.setattr(world_rules, "END_OF_TURN_RULES", (("location_choice", "exploding", exploding_rule),))
    alice_sheet = sheet_of(started, "alice@example.com", 1)
    submit(alice_sheet, option_id(alice_sheet, "Forest path"))
    submit(sheet_of(started, "bob@example.com", 1))

    with pytest.raises(RuntimeError):
        advance_if_ready(started.instance.id, 1)
    assert _instance(started).current_turn == 1
    alice = _reload_character(started, "alice@example.com")
    assert _location_name(alice) == SQUARE
    assert alice.health == 100
    assert sheets_for(started, 2) == []

    job = jobs.enqueue(
        ADVANCE_IF_READY,
        {"game_instance_id": started.instance.id, "turn_number": 1},
        idempotency_tag=f"advance:{alice_sheet.id}:1",
    )
    db.session.commit()
    jobs.run_pending()
    job = db.session.get(Job, job.id, populate_existing=True)
    assert job.status == JOB_QUEUED
    assert job.attempts == 1
    assert "rule exploded" in job.last_error

    monkeypatch.undo()
    jobs.run_pending(now=job.run_after)
    job = db.session.get(Job, job.id, populate_existing=True)
    assert job.status == JOB_SUCCEEDED
    assert _instance(started).current_turn == 2
    assert _location_name(_reload_character(started, "alice@example.com")) == FOREST


# --- world rules -------------------------------------------------------------
def _world_with(creature=None, item=None, at=FOREST, players=(("alice@example.com", "Alice"),)):
    world = create_world(publish=False)
    if creature is not None:
        creature.game_id = world.game.id
        db.session.add(creature)
        db.session.flush()
        db.session.add(
            CreaturePlacement(
                game_id=world.game.id, creature_id=creature.id, location_id=world.locations[at].id, spawn_chance=1.0
            )
        )
    if item is not None:
        item.game_id = world.game.id
        db.session.add(item)
        db.session.flush()
        db.session.add(
            ItemPlacement(game_id=world.game.id, item_id=item.id, location_id=world.locations[at].id, spawn_chance=1.0)
        )
    db.session.commit()
    publish_game(world.game)
    for email, name in players:
        join_player(world, email, name)
    start(world)
    print_pending_sheets(world)
    return world


def _travel(world, email, link_name):
    sheet = sheet_of(world, email, world.instance.current_turn)
    return submit(sheet, option_id(sheet, link_name) if link_name else None)


def test_aggressive_creature_attacks_on_arrival():
    wolf = Creature(name="Wolf", max_health=12, attack_damage=30, disposition=CREATURE_AGGRESSIVE)
    world = _world_with(creature=wolf)
    _travel(world, "alice@example.com", "Forest path")
    advance_if_ready(world.instance.id, 1)

    alice = _reload_character(world, "alice@example.com")
    assert alice.health == 70
    assert _messages(sheet_of(world, "alice@example.com", 2)) == [
        f"You travelled to {FOREST}.",
        "Wolf attacked you for 30 damage.",
    ]
    assert sheet_of(world, "alice@example.com", 2).sheet_data["health"] == 70


def test_fallen_character_gets_no_more_sheets():
    wolf = Creature(name="Wolf", max_health=12, attack_damage=30, disposition=CREATURE_AGGRESSIVE)
    world = _world_with(creature=wolf, players=(("alice@example.com", "Alice"), ("bob@example.com", "Bob")))
    character_of(world, "alice@example.com").health = 20
    db.session.commit()
    _travel(world, "alice@example.com", "Forest path")
    _travel(world, "bob@example.com", None)
    advance_if_ready(world.instance.id, 1)

    alice = _reload_character(world, "alice@example.com")
    assert alice.health == 0 and not alice.is_active
    assert [s.account_id for s in sheets_for(world, 2)] == [sheet_of(world, "bob@example.com", 2).account_id]


def test_passive_creature_leaves_characters_alone():
    deer = Creature(name="Deer", max_health=5, attack_damage=50)
    world = _world_with(creature=deer)
    _travel(world, "alice@example.com", "Forest path")
    advance_if_ready(world.instance.id, 1)
    assert _reload_character(world, "alice@example.com").health == 100


def test_lone_character_picks_up_items():
    world = _world_with(item=Item(name="Silver coin"), at=MILL)
    _travel(world, "alice@example.com", "Mill road")
    advance_if_ready(world.instance.id, 1)

    alice = _reload_character(world, "alice@example.com")
    carried = ItemInstance.query.filter_by(character_instance_id=alice.id).all()
    assert [i.item.name for i in carried] == ["Silver coin"]
    assert carried[0].location_instance_id is None
    assert _messages(sheet_of(world, "alice@example.com", 2))[-1] == "You picked up the Silver coin."


def test_shared_location_blocks_pickup():
    players = (("alice@example.com", "Alice"), ("bob@example.com", "Bob"))
    world = _world_with(item=Item(name="Silver coin"), at=MILL, players=players)
    _travel(world, "alice@example.com", "Mill road")
    _travel(world, "bob@example.com", "Mill road")
    advance_if_ready(world.instance.id, 1)
    assert ItemInstance.query.filter(ItemInstance.character_instance_id.isnot(None)).count() == 0


def test_full_inventory_leaves_the_item():
    world = _world_with(item=Item(name="Anvil"), at=MILL)
    character_of(world, "alice@example.com").inventory_capacity = 0
    db.session.commit()
    _travel(world, "alice@example.com", "Mill road")
    advance_if_ready(world.instance.id, 1)
    assert ItemInstance.query.filter(ItemInstance.character_instance_id.isnot(None)).count() == 0
    assert _messages(sheet_of(world, "alice@example.com", 2))[-1] == "You could not carry the Anvil."


def test_late_joiner_enters_at_the_next_turn(started):
    join_player(started, "carol@example.com", "Carol")
    carol = character_of(started, "carol@example.com")
    assert _location_name(carol) == SQUARE
    assert len(sheets_for(started, 1)) == 2
    play_turn(started)
    assert len(sheets_for(started, 2)) == 3


def test_uploads_drive_the_turn_end_to_end(client, jobs, started):
    alice_sheet = sheet_of(started, "alice@example.com", 1)
    bob_sheet = sheet_of(started, "bob@example.com", 1)
    assert upload(client, started, live_scan(alice_sheet, option_id(alice_sheet, "Forest path"))).status_code == 200
    assert upload(client, started, live_scan(bob_sheet, option_id(bob_sheet, "Mill road"))).status_code == 200

    jobs.drain()
    assert _instance(started).current_turn == 2
    assert _location_name(_reload_character(started, "alice@example.com")) == FOREST
    assert _location_name(_reload_character(started, "bob@example.com")) == MILL
    assert {s.processing_status for s in sheets_for(started, 2)} == {ProcessingStatus.PRINTED.value}
    advances = Job.query.filter(Job.kind == ADVANCE_IF_READY).all()
    assert len(advances) == 2
    assert {j.status for j in advances} == {JOB_SUCCEEDED}
