from pbm import db
from pbm.models.world import Item, ItemPlacement, Location, LocationLink, LocationLinkRequirement
from pbm.services.readiness import SEVERITY_ERROR, SEVERITY_WARNING, blocking, check_readiness
from tests.factories import FOREST, MILL, SQUARE, add_location, auth, create_world, join_player


def _fields(issues, severity=SEVERITY_ERROR):
    return {issue.field for issue in issues if issue.severity == severity}


def _gate_forest_path(world, key_location=None):
    key = Item(game_id=world.game.id, name="Iron key")
    db.session.add(key)
    db.session.flush()
    db.session.add(
        LocationLinkRequirement(
            game_id=world.game.id, location_link_id=world.links["forest"].id, item_id=key.id, quantity=1
        )
    )
    if key_location is not None:
        db.session.add(
            ItemPlacement(game_id=world.game.id, item_id=key.id, location_id=world.locations[key_location].id)
        )
    db.session.commit()
    return key


def test_standard_world_with_a_player_is_ready(world):
    join_player(world, "alice@example.com", "Alice")
    assert check_readiness(world.instance) == []


def test_players_are_required(world):
    issues = check_readiness(world.instance)
    assert _fields(issues) == {"players"}


def test_required_player_count_is_honoured():
    world = create_world(required_player_count=2)
    join_player(world, "alice@example.com", "Alice")
    issues = blocking(check_readiness(world.instance))
    assert [i.field for i in issues] == ["players"]
    assert "at least 2" in issues[0].message
    join_player(world, "bob@example.com", "Bob")
    assert blocking(check_readiness(world.instance)) == []


def test_no_starting_location():
    world = create_world(publish=False)
    join_player(world, "alice@example.com", "Alice")
    world.locations[SQUARE].is_starting_location = False
    db.session.commit()
    assert "starting_location" in _fields(check_readiness(world.instance))


def test_two_starting_locations():
    world = create_world(publish=False)
    join_player(world, "alice@example.com", "Alice")
    world.locations[MILL].is_starting_location = True
    db.session.commit()
    issues = [i for i in check_readiness(world.instance) if i.field == "starting_location"]
    assert len(issues) == 1
    assert "2 starting locations" in issues[0].message


def test_game_without_locations():
    world = create_world(publish=False)
    join_player(world, "alice@example.com", "Alice")
    LocationLink.query.filter_by(game_id=world.game.id).delete()
    Location.query.filter_by(game_id=world.game.id).delete()
    db.session.commit()
    assert "locations" in _fields(check_readiness(world.instance))


def test_unsatisfiable_link_requirement():
    world = create_world(publish=False)
    join_player(world, "alice@example.com", "Alice")
    _gate_forest_path(world)
    issues = check_readiness(world.instance)
    errors = [i for i in issues if i.severity == SEVERITY_ERROR]
    assert [i.field for i in errors] == ["location_links"]
    assert "Forest path" in errors[0].message
    # The forest is cut off as a consequence, which is only a warning
    warnings = [i for i in issues if i.severity == SEVERITY_WARNING]
    assert any(FOREST in i.message for i in warnings)


def test_requirement_met_by_a_reachable_item():
    world = create_world(publish=False)
    join_player(world, "alice@example.com", "Alice")
    _gate_forest_path(world, key_location=MILL)
    assert check_readiness(world.instance) == []


def test_requirement_behind_its_own_gate_is_unsatisfiable():
    world = create_world(publish=False)
    join_player(world, "alice@example.com", "Alice")
    _gate_forest_path(world, key_location=FOREST)
    assert _fields(check_readiness(world.instance)) == {"location_links"}


def test_unreachable_location_is_only_a_warning():
    world = create_world(publish=False)
    join_player(world, "alice@example.com", "Alice")
    add_location(world.game, "Hermit's Cave")
    issues = check_readiness(world.instance)
    assert blocking(issues) == []
    assert [i.field for i in issues] == ["locations"]
    assert issues[0].severity == SEVERITY_WARNING


def test_missing_template():
    world = create_world(publish=False, with_template=False)
    join_player(world, "alice@example.com", "Alice")
    issues = check_readiness(world.instance)
    assert _fields(issues) == {"templates"}
    assert len([i for i in issues if i.field == "templates"]) == 1


def test_readiness_endpoint(client, world):
    url = f"/api/v1/games/{world.game.id}/instances/{world.instance.id}/readiness"
    resp = client.get(url, headers=auth(world.token))
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["ready"] is False
    assert body["issues"][0]["field"] == "players"
    assert body["issues"][0]["severity"] == "error"

    join_player(world, "alice@example.com", "Alice")
    body = client.get(url, headers=auth(world.token)).get_json()
    assert body == {"ready": True, "issues": []}
