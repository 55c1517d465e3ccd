import base64
import io

import pytest
from PIL import Image

from cardex.api_models import SaveCardRequest, UpdateCardRequest
from cardex.errors import CardNotFoundError, PersistenceError
from cardex.services.card_store import CardStore
from cardex.services.card_workflows import CardWorkflows

USER_ID = "user-1"


def _data_url(raw: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}"


def _save_request(image: str, **extra) -> SaveCardRequest:
    return SaveCardRequest.model_validate({
        "name": "Pika",
        "set": "Base",
        "rarity": "Rare",
        "imageBase64": image,
        "isGenerated": True,
        "generationParams": {"characterName": "Pika", "characterType": "Electric", "stats": {"hp": 60}},
        **extra,
    })


@pytest.fixture
def inline_workflows(engine, storage, settings):
    def build(budget: int):
        inline_settings = settings.model_copy(
            update={"inline_image_storage": True, "inline_image_budget_bytes": budget}
        )
        store = CardStore(db_engine=engine, allow_inline_images=True)
        return CardWorkflows(store=store, storage=storage, settings=inline_settings)
    return build


def test_saved_card_image_goes_to_blob_storage(workflows, storage, png):
    card = workflows.save_card(USER_ID, _save_request(_data_url(png())))

    assert storage.path_for(card.image_url).startswith("users/user-1/cards/pika_")
    assert storage.read(card.image_url) == png()
    assert card.set_name == "Base"
    assert card.generation_params == {
        "game": "pokemon",
        "characterName": "Pika",
        "characterType": "Electric",
        "backgroundDescription": "",
        "characterDescription": "",
        "language": "english",
        "isHolo": False,
        "isIllustrationRare": False,
        "stats": {"hp": 60},
    }


def test_oversized_image_is_compressed_before_upload(workflows, storage, noise_png):
    raw = noise_png(800, 500)
    assert len(raw) > 1_000_000

    card = workflows.save_card(USER_ID, _save_request(_data_url(raw)))

    stored = storage.read(card.image_url)
    assert len(stored) < 800_000
    with Image.open(io.BytesIO(stored)) as img:
        assert img.format == "JPEG"
        assert img.size == (400, 250)


def test_inline_mode_keeps_small_images_in_the_card(inline_workflows, storage, png):
    workflows = inline_workflows(800_000)

    card = workflows.save_card(USER_ID, _save_request(_data_url(png())))

    assert card.image_url == _data_url(png())
    assert list(storage.root.rglob("*.png")) == []


def test_inline_mode_uploads_images_whose_data_url_is_over_budget(inline_workflows, storage, png):
    raw = png()
    workflows = inline_workflows(len(raw) + 10)

    card = workflows.save_card(USER_ID, _save_request(_data_url(raw)))

    assert storage.owns(card.image_url)


def test_failed_save_releases_the_uploaded_image(workflows, store, storage, png, monkeypatch):
    def broken_add(user_id, values):
        raise PersistenceError("Failed to add card to collection.", detail="db down")

    monkeypatch.setattr(store, "add_card", broken_add)

    with pytest.raises(PersistenceError):
        workflows.save_card(USER_ID, _save_request(_data_url(png())))
    assert list(storage.root.rglob("*.png")) == []


def test_edit_replaces_the_image_and_removes_the_old_blob(workflows, storage, saved_card, png):
    old_url = saved_card.image_url
    new_image = _data_url(png(color=(0, 200, 0)))

    card = workflows.edit_card(USER_ID, saved_card.id, UpdateCardRequest(image_base64=new_image, rarity="Holo Rare"))

    assert card.image_url != old_url
    assert card.rarity == "Holo Rare"
    assert card.name == "Pika"
    assert storage.read(card.image_url) == png(color=(0, 200, 0))
    assert not storage.file_for(storage.path_for(old_url)).exists()


def test_metadata_edit_keeps_the_image(workflows, storage, saved_card):
    card = workflows.edit_card(USER_ID, saved_card.id, UpdateCardRequest.model_validate({"set": "Jungle"}))

    assert card.set_name == "Jungle"
    assert card.image_url == saved_card.image_url
    assert storage.file_for(storage.path_for(saved_card.image_url)).exists()


def test_shared_images_survive_the_deletion_of_one_card(workflows, store, storage, saved_card):
    twin_id = store.add_card(USER_ID, {"name": "Twin", "image_url": saved_card.image_url})

    workflows.delete_card(USER_ID, saved_card.id)

    assert storage.read(saved_card.image_url)
    workflows.delete_card(USER_ID, twin_id)
    assert not storage.file_for(storage.path_for(saved_card.image_url)).exists()


def test_delete_removes_the_image_and_video(workflows, store, storage, saved_card):
    video_url = storage.upload_video(b"\x00\x00video", USER_ID, "Pika")
    store.update_card(USER_ID, saved_card.id, {"video_generation_status": "completed", "video_url": video_url})

    workflows.delete_card(USER_ID, saved_card.id)

    assert store.get_card(USER_ID, saved_card.id) is None
    assert list(storage.root.rglob("*.*")) == []


def test_deleting_a_missing_card_is_not_found(workflows):
    with pytest.raises(CardNotFoundError):
        workflows.delete_card(USER_ID, "missing")
    with pytest.raises(CardNotFoundError):
        workflows.edit_card(USER_ID, "missing", UpdateCardRequest(name="x"))


def test_migration_moves_inline_images_to_blob_storage(engine, storage, settings, png):
    inline_store = CardStore(db_engine=engine, allow_inline_images=True)
    good = inline_store.add_card(USER_ID, {"name": "Pika", "image_url": _data_url(png())})
    broken = inline_store.add_card(USER_ID, {"name": "Broken", "image_url": "data:image/png;base64,@@@@"})
    workflows = CardWorkflows(store=CardStore(db_engine=engine), storage=storage, settings=settings)

    assert workflows.migrate_inline_images() == (1, 1)

    migrated = inline_store.get_card(USER_ID, good)
    assert storage.read(migrated.image_url) == png()
    assert inline_store.get_card(USER_ID, broken).image_url.startswith("data:")
