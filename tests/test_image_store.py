import io

import pytest

from pbm.errors import (
    BadDimensions,
    EmptyBody,
    GameNotDraft,
    ImageTooLarge,
    InvalidField,
    NotFound,
    UnreadableImage,
    UnsupportedImageFormat,
)
from pbm.models.game_image import GameImage
from pbm.services.image_store import (
    MAX_IMAGE_BYTES,
    delete_image,
    find_background,
    get_image,
    upsert_image,
    validate_image,
)
from tests.factories import FOREST, auth, create_world, jpeg_bytes, png_bytes, png_of_size

LC = "location_choice"


@pytest.fixture()
def draft():
    return create_world(publish=False)


def test_exactly_one_mebibyte_is_accepted():
    data = png_of_size(MAX_IMAGE_BYTES)
    validated = validate_image(data)
    assert validated.file_size == 1_048_576
    assert validated.mime_type == "image/png"


def test_one_byte_over_the_limit_is_rejected():
    data = png_of_size(MAX_IMAGE_BYTES + 1)
    with pytest.raises(ImageTooLarge):
        validate_image(data)


def test_empty_body():
    with pytest.raises(EmptyBody):
        validate_image(b"")


def test_format_is_sniffed_not_claimed():
    validated = validate_image(jpeg_bytes(), claimed_type="image/png")
    assert validated.mime_type == "image/jpeg"


def test_unknown_magic_bytes():
    with pytest.raises(UnsupportedImageFormat):
        validate_image(b"GIF89a" + b"\x00" * 64)


def test_truncated_image_is_unreadable():
    with pytest.raises(UnreadableImage):
        validate_image(png_bytes()[:60])


@pytest.mark.parametrize("width,height", [(399, 566), (400, 199), (4001, 600), (1000, 6001)])
def test_hard_dimension_bounds(width, height):
    with pytest.raises(BadDimensions):
        validate_image(png_bytes(width, height, mode="L"))


def test_soft_bounds_warn_but_accept():
    at_minimum = validate_image(png_bytes(400, 566))
    assert at_minimum.warning and "below the recommended" in at_minimum.warning
    wide = validate_image(png_bytes(800, 400))
    assert wide.warning and "aspect ratio" in wide.warning


def test_recommended_a4_size_has_no_warning():
    assert validate_image(png_bytes(2480, 3508, mode="L")).warning is None


def test_upsert_replaces_the_row_for_the_same_key(draft):
    first, _ = upsert_image(draft.game, png_bytes(color=(1, 2, 3)), turn_sheet_type=LC)
    second, _ = upsert_image(draft.game, png_bytes(color=(4, 5, 6)), turn_sheet_type=LC)
    assert first.id == second.id
    assert GameImage.query.filter_by(game_id=draft.game.id).count() == 1
    assert get_image(draft.game.id, turn_sheet_type=LC).content == png_bytes(color=(4, 5, 6))


def test_location_lookup_falls_back_to_game_image(draft):
    forest = draft.locations[FOREST]
    game_level = png_bytes(color=(10, 10, 10))
    upsert_image(draft.game, game_level, turn_sheet_type=LC)
    assert get_image(draft.game.id, turn_sheet_type=LC, record_id=forest.id).content == game_level

    location_level = png_bytes(color=(90, 90, 90))
    upsert_image(draft.game, location_level, turn_sheet_type=LC, record_id=forest.id)
    assert get_image(draft.game.id, turn_sheet_type=LC, record_id=forest.id).content == location_level
    assert get_image(draft.game.id, turn_sheet_type=LC).content == game_level


def test_background_is_keyed_by_sheet_type(draft):
    upsert_image(draft.game, png_bytes(), turn_sheet_type=LC)
    assert find_background(draft.game.id, "join_game") is None
    with pytest.raises(NotFound):
        get_image(draft.game.id, turn_sheet_type="join_game")


def test_background_requires_a_sheet_type(draft):
    with pytest.raises(InvalidField):
        upsert_image(draft.game, png_bytes())


def test_record_must_be_a_location_of_the_game(draft):
    other = create_world(publish=False)
    with pytest.raises(NotFound):
        upsert_image(draft.game, png_bytes(), turn_sheet_type=LC, record_id=other.locations[FOREST].id)


def test_images_are_frozen_once_published():
    world = create_world()
    with pytest.raises(GameNotDraft):
        upsert_image(world.game, png_bytes(), turn_sheet_type=LC)


def test_delete(draft):
    upsert_image(draft.game, png_bytes(), turn_sheet_type=LC)
    delete_image(draft.game, image_type="turn_sheet_background", turn_sheet_type=LC)
    with pytest.raises(NotFound):
        get_image(draft.game.id, turn_sheet_type=LC)


def test_http_upload_fetch_delete(client, draft):
    url = f"/api/v1/games/{draft.game.id}/turn-sheet-image"
    data = png_bytes(800, 400)
    resp = client.post(
        url,
        data={"image": (io.BytesIO(data), "background.png", "image/png"), "turn_sheet_type": LC},
        content_type="multipart/form-data",
        headers=auth(draft.token),
    )
    assert resp.status_code == 201, resp.get_data(as_text=True)
    body = resp.get_json()
    assert body["width"] == 800 and body["height"] == 400
    assert "aspect ratio" in body["warning"]

    got = client.get(url, query_string={"turn_sheet_type": LC}, headers=auth(draft.token))
    assert got.status_code == 200
    assert got.data == data
    assert got.mimetype == "image/png"

    gone = client.delete(url, query_string={"turn_sheet_type": LC}, headers=auth(draft.token))
    assert gone.status_code == 204
    missing = client.get(url, query_string={"turn_sheet_type": LC}, headers=auth(draft.token))
    assert missing.status_code == 404


def test_http_upload_rejects_oversized_images(client, draft):
    resp = client.post(
        f"/api/v1/games/{draft.game.id}/turn-sheet-image",
        data={"image": (io.BytesIO(png_of_size(MAX_IMAGE_BYTES + 1)), "big.png"), "turn_sheet_type": LC},
        content_type="multipart/form-data",
        headers=auth(draft.token),
    )
    assert resp.status_code == 400
    assert resp.get_json()["error"]["code"] == "ImageTooLarge"


def test_http_upload_requires_the_image_field(client, draft):
    resp = client.post(
        f"/api/v1/games/{draft.game.id}/turn-sheet-image",
        data={"turn_sheet_type": LC},
        content_type="multipart/form-data",
        headers=auth(draft.token),
    )
    assert resp.status_code == 400
    assert resp.get_json()["error"]["code"] == "EmptyBody"
