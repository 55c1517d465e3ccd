import base64
import io

import pytest
import requests
from fastapi.testclient import TestClient
from PIL import Image

from cardex import main
from cardex.database.models import VideoStatus
from cardex.errors import PersistenceError

USER_ID = "user-1"


def _generate_body(**extra):
    body = {
        "userId": USER_ID,
        "game": "pokemon",
        "characterName": "Pika",
        "characterType": "Electric",
        "backgroundDescription": "A stormy sky",
        "characterDescription": "A small yellow mouse",
    }
    body.update(extra)
    return body


def _png_data_url(png):
    return "data:image/png;base64," + base64.b64encode(png()).decode("ascii")


class FakeUpstream:
    def __init__(self, status_code=200, content=b"file-bytes", content_type="image/png"):
        self.status_code = status_code
        self.content = content
        self.headers = {"content-type": content_type}
        self.closed = False

    def iter_content(self, chunk_size):
        yield self.content

    def close(self):
        self.closed = True


# --- Status and authentication ---

def test_health_needs_no_token():
    assert TestClient(main.app).get("/health").json() == {"status": "ok"}


def test_requests_without_a_token_are_rejected(api):
    anonymous = TestClient(main.app)

    response = anonymous.get("/api/v1/cards")

    assert response.status_code == 401
    assert response.json()["code"] == "authentication_required"


def test_unknown_tokens_are_rejected(api):
    response = api.get("/api/v1/cards", headers={"Authorization": "Bearer not-a-token"})

    assert response.status_code == 401


# --- Generation ---

def test_missing_fields_are_listed(api):
    body = _generate_body()
    del body["characterType"]
    body["backgroundDescription"] = ""

    response = api.post("/api/v1/generate-card", json=body)

    assert response.status_code == 400
    assert response.json()["missingFields"] == ["characterType", "backgroundDescription"]


def test_body_user_must_match_the_token(api, with_keys):
    response = api.post("/api/v1/generate-card", json=_generate_body(userId="user-2"))

    assert response.status_code == 403
    assert response.json()["code"] == "identity_mismatch"


def test_generation_without_a_key_asks_for_one(api, store, gateway):
    response = api.post("/api/v1/generate-card", json=_generate_body())

    assert response.status_code == 400
    assert response.json() == {
        "error": "An API key for 'openai' is required. Please configure it in Settings.",
        "code": "api_key_required",
        "provider": "openai",
    }
    assert gateway.calls == []
    assert store.get_cards(USER_ID) == []


def test_generate_card(api, with_keys, gateway):
    response = api.post("/api/v1/generate-card", json=_generate_body())

    assert response.status_code == 200
    assert response.json()["prompt"] == "A card of Pika"
    assert base64.b64decode(response.json()["imageBase64"]).startswith(b"\x89PNG")
    assert gateway.calls == [("image", "Pika")]


def test_generate_card_from_photo(api, with_keys, png):
    response = api.post("/api/v1/generate-card-from-photo", json={
        "userId": USER_ID,
        "photoDataUri": _png_data_url(png),
        "characterName": "Rex",
        "characterType": "Fire",
        "styleDescription": "Watercolor",
    })

    assert response.status_code == 200
    assert response.json()["prompt"] == "A photo card of Rex"


def test_invalid_enum_values_are_a_bad_request(api, with_keys):
    response = api.post("/api/v1/generate-card", json=_generate_body(game="chess"))

    assert response.status_code == 400
    assert "game" in response.json()["missingFields"]


def test_non_object_body_is_a_bad_request(api):
    response = api.post("/api/v1/generate-card", json=["not", "an", "object"])

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_request"


# --- Vision ---

def test_grade_card(api, with_keys, gateway):
    response = api.post("/api/v1/grade-card", json={"frontPhotoDataUri": "AAAA", "gradingScale": "CGC"})

    assert response.status_code == 200
    result = response.json()["gradingResult"]
    assert result["gradingScale"] == "CGC"
    assert result["overallGrade"] == 8.5
    assert result["centering"]["frontCentering"] == "60/40"
    assert set(result["corners"]) == {"score", "notes"}
    assert gateway.calls == [("grade", "CGC")]


def test_grade_card_requires_a_front_photo(api):
    response = api.post("/api/v1/grade-card", json={"backPhotoDataUri": "AAAA"})

    assert response.status_code == 400
    assert response.json()["missingFields"] == ["frontPhotoDataUri"]


def test_scan_and_summarize(api, with_keys):
    scan = api.post("/api/v1/scan-card", json={"photoDataUri": "AAAA"})
    summary = api.post("/api/v1/summarize-card", json={"name": "Pikachu", "set": "Base"})

    assert scan.json() == {"cardDetails": {"name": "Pikachu", "set": "Base Set", "rarity": "Common"}}
    assert summary.json() == {"summary": "Pikachu is a card."}


# --- Collection ---

def test_card_crud(api, png, storage):
    created = api.post("/api/v1/cards", json={
        "name": "Pika", "set": "Base", "rarity": "Rare", "imageBase64": _png_data_url(png),
    })
    assert created.status_code == 201
    card_id = created.json()["id"]
    assert storage.owns(created.json()["imageUrl"])

    listed = api.get("/api/v1/cards").json()
    assert [c["id"] for c in listed] == [card_id]
    assert listed[0]["videoGenerationStatus"] == "pending"
    assert listed[0]["set"] == "Base"

    patched = api.patch(f"/api/v1/cards/{card_id}", json={"rarity": "Ultra Rare"})
    assert patched.json()["rarity"] == "Ultra Rare"
    assert api.get(f"/api/v1/cards/{card_id}").json()["rarity"] == "Ultra Rare"

    assert api.delete(f"/api/v1/cards/{card_id}").status_code == 204
    assert api.get(f"/api/v1/cards/{card_id}").status_code == 404
    assert api.delete(f"/api/v1/cards/{card_id}").status_code == 404


def test_save_card_requires_an_image(api):
    response = api.post("/api/v1/cards", json={"name": "Pika"})

    assert response.status_code == 400
    assert response.json()["missingFields"] == ["imageBase64"]


def test_patch_ignores_ownership_fields(api, saved_card):
    response = api.patch(f"/api/v1/cards/{saved_card.id}", json={"userId": "user-2", "name": "Mine"})

    assert response.status_code == 200
    assert response.json()["userId"] == USER_ID


def test_cards_of_other_users_are_invisible(api, store):
    other_id = store.add_card("user-2", {"name": "Theirs", "image_url": "http://testserver/blobs/cards/t_1.png"})

    assert api.get(f"/api/v1/cards/{other_id}").status_code == 404
    assert api.get("/api/v1/cards").json() == []


# --- Video ---

def test_generate_video_runs_to_completion(api, saved_card, with_keys, store):
    response = api.post("/api/v1/generate-video", json={"userId": USER_ID, "cardId": saved_card.id})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Video generation started successfully",
        "videoGenerationStatus": "generating",
    }
    # The background job has run by the time the test client returns.
    card = api.get(f"/api/v1/cards/{saved_card.id}").json()
    assert card["videoGenerationStatus"] == "completed"
    assert card["videoUrl"].startswith("http://testserver/blobs/users/user-1/videos/")

    again = api.post("/api/v1/generate-video", json={"userId": USER_ID, "cardId": saved_card.id})
    assert again.status_code == 409


def test_generate_video_without_a_key_leaves_the_card_pending(api, saved_card):
    response = api.post("/api/v1/generate-video", json={"userId": USER_ID, "cardId": saved_card.id})

    assert response.status_code == 400
    assert response.json()["code"] == "api_key_required"
    assert api.get(f"/api/v1/cards/{saved_card.id}").json()["videoGenerationStatus"] == "pending"


def test_generate_video_requires_ids(api):
    response = api.post("/api/v1/generate-video", json={"userId": USER_ID})

    assert response.status_code == 400
    assert response.json()["missingFields"] == ["cardId"]


def test_generated_video_is_downloadable(api, saved_card, with_keys):
    api.post("/api/v1/generate-video", json={"userId": USER_ID, "cardId": saved_card.id})
    video_url = api.get(f"/api/v1/cards/{saved_card.id}").json()["videoUrl"]

    served = api.get(video_url)
    downloaded = api.get("/api/v1/download", params={"url": video_url})

    assert served.status_code == 200
    assert downloaded.status_code == 200
    assert downloaded.headers["content-disposition"] == "attachment"
    assert downloaded.content == served.content


# --- Downloads and blobs ---

def test_download_requires_a_url(api):
    response = api.get("/api/v1/download")

    assert response.status_code == 400
    assert response.json()["missingFields"] == ["url"]


@pytest.mark.parametrize(
    "url",
    [
        "https://evil.example.com/image.png",
        "ftp://firebasestorage.googleapis.com/x.png",
        "https://firebasestorage.googleapis.com.evil.example/x.png",
        "https://user:pw@firebasestorage.googleapis.com/x.png",
        "https://firebasestorage.googleapis.com:8443/x.png",
        "http://localhost:9200/x.png",
        "http://localhost/x.png",
    ],
)
def test_download_refuses_hosts_off_the_allow_list(api, monkeypatch, url):
    def fail(*args, **kwargs):
        raise AssertionError("must not fetch")

    monkeypatch.setattr(main.requests, "get", fail)

    response = api.get("/api/v1/download", params={"url": url})

    assert response.status_code == 403
    assert response.json()["code"] == "download_forbidden"


def test_download_streams_allowed_hosts_as_attachments(api, monkeypatch):
    seen = {}

    def fake_get(url, **kwargs):
        seen.update(url=url, **kwargs)
        return FakeUpstream()

    monkeypatch.setattr(main.requests, "get", fake_get)
    url = "https://firebasestorage.googleapis.com/v0/b/bucket/o/card.png?alt=media"

    response = api.get("/api/v1/download", params={"url": url})

    assert response.status_code == 200
    assert response.content == b"file-bytes"
    assert response.headers["content-disposition"] == "attachment"
    assert response.headers["content-type"] == "image/png"
    assert seen["url"] == url
    assert seen["allow_redirects"] is False


def test_download_allows_listed_host_ports(api, monkeypatch):
    monkeypatch.setattr(main.requests, "get", lambda url, **kwargs: FakeUpstream())

    assert api.get("/api/v1/download", params={"url": "http://localhost:9199/b/x.png"}).status_code == 200


def test_download_upstream_failures_are_reported(api, monkeypatch):
    upstream = FakeUpstream(status_code=404)
    monkeypatch.setattr(main.requests, "get", lambda url, **kwargs: upstream)

    response = api.get("/api/v1/download", params={"url": "https://firebasestorage.googleapis.com/x.png"})

    assert response.status_code == 502
    assert upstream.closed

    def unreachable(url, **kwargs):
        raise requests.ConnectionError("unreachable")

    monkeypatch.setattr(main.requests, "get", unreachable)
    response = api.get("/api/v1/download", params={"url": "https://firebasestorage.googleapis.com/x.png"})
    assert response.status_code == 502


def test_download_of_own_blobs_skips_the_network(api, saved_card, storage, monkeypatch):
    monkeypatch.setattr(main.requests, "get", lambda *args, **kwargs: pytest.fail("fetched over the network"))

    response = api.get("/api/v1/download", params={"url": saved_card.image_url})

    assert response.status_code == 200
    assert response.content == storage.read(saved_card.image_url)
    assert response.headers["content-type"] == "image/png"


def test_blob_route_enforces_the_access_rules(api, storage, saved_card):
    video_url = storage.upload_video(b"\x00\x00video", USER_ID, "Pika")
    unsigned = video_url.split("?")[0]

    assert api.get(saved_card.image_url.split("?")[0]).status_code == 200
    assert api.get(video_url).content == b"\x00\x00video"
    assert api.get(unsigned).status_code == 403
    assert api.get("/blobs/users/user-1/cards/missing_1.png").status_code == 404
    assert api.get("/blobs/other/place.png").status_code == 403


def test_compressed_images_are_served_as_jpeg(api, storage, png):
    jpeg = io.BytesIO()
    Image.open(io.BytesIO(png())).save(jpeg, format="JPEG")
    url = storage.upload_image(jpeg.getvalue(), USER_ID, "Pika")

    assert api.get(url).headers["content-type"] == "image/jpeg"
    assert api.get("/api/v1/download", params={"url": url}).headers["content-type"] == "image/jpeg"


# --- Startup ---

def test_startup_releases_video_jobs_of_the_previous_process(store, saved_card, monkeypatch):
    store.transition_video_status(USER_ID, saved_card.id, VideoStatus.PENDING, VideoStatus.GENERATING)
    monkeypatch.setattr(main, "card_store", store)
    monkeypatch.setattr(main, "configure_logging", lambda level: None)

    with TestClient(main.app) as client:
        assert client.get("/health").status_code == 200

    assert store.get_card(USER_ID, saved_card.id).video_generation_status == VideoStatus.FAILED


# --- Profiles ---

def test_profile_sync_and_read(api):
    synced = api.post("/api/v1/profile/sync", json={
        "email": "ash@example.com", "displayName": "Ash", "photoURL": "http://img/ash.png",
    })

    assert synced.json() == {"synced": True}
    profile = api.get("/api/v1/profile").json()
    assert profile == {
        "id": USER_ID,
        "email": "ash@example.com",
        "displayName": "Ash",
        "photoURL": "http://img/ash.png",
        "apiKeyProviders": [],
    }


def test_profile_sync_failure_does_not_fail_the_caller(api, store, monkeypatch):
    def broken(*args, **kwargs):
        raise PersistenceError("Failed to create/update user profile.", detail="db down")

    monkeypatch.setattr(store, "upsert_user_profile", broken)

    response = api.post("/api/v1/profile/sync", json={"email": "ash@example.com"})

    assert response.status_code == 200
    assert response.json() == {"synced": False}


def test_api_keys_are_merged_and_never_returned(api):
    first = api.put("/api/v1/profile/api-keys", json={"openaiApiKey": "sk-1"})
    second = api.put("/api/v1/profile/api-keys", json={"geminiApiKey": "gm-1"})

    assert first.json()["hasOpenaiKey"] and not first.json()["hasGeminiKey"]
    assert second.json() == {
        "hasOpenaiKey": True,
        "hasGeminiKey": True,
        "hasAnyKey": True,
        "tasks": {"image": True, "vision": True, "grading": True, "video": True},
    }
    profile = api.get("/api/v1/profile").json()
    assert profile["apiKeyProviders"] == ["gemini", "openai"]
    assert "sk-1" not in str(profile)

    cleared = api.put("/api/v1/profile/api-keys", json={"openaiApiKey": ""})
    assert cleared.json()["hasOpenaiKey"] is False
    assert api.get("/api/v1/profile/api-key-status").json()["hasGeminiKey"] is True


def test_key_status_without_keys(api):
    assert api.get("/api/v1/profile/api-key-status").json() == {
        "hasOpenaiKey": False,
        "hasGeminiKey": False,
        "hasAnyKey": False,
        "tasks": {"image": False, "vision": False, "grading": False, "video": False},
    }
