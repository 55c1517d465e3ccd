import base64
import io
import os
import random
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Isolate module-level singletons from the developer's data directory and keys.
_TEST_DIR = Path(tempfile.mkdtemp(prefix="cardex-tests-"))
os.environ["CARDEX_DATABASE_URL"] = f"sqlite:///{(_TEST_DIR / 'cardex.db').as_posix()}"
os.environ["CARDEX_BLOB_ROOT"] = str(_TEST_DIR / "blobs")
os.environ["CARDEX_BLOB_SIGNING_SECRET"] = "test-secret"
os.environ["OPENAI_API_KEY"] = ""
os.environ["GEMINI_API_KEY"] = ""

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from PIL import Image  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import SQLModel, create_engine  # noqa: E402

from cardex import auth, main  # noqa: E402
from cardex.api_models import GradingResult, ScannedCardDetails  # noqa: E402
from cardex.config import Settings  # noqa: E402
from cardex.services.ai_gateway import GeneratedImage, GeneratedVideo, GenerationGateway, Task  # noqa: E402
from cardex.services.blob_storage import LocalBlobStorage, UploadCache  # noqa: E402
from cardex.services.card_store import CardStore  # noqa: E402
from cardex.services.card_workflows import CardWorkflows  # noqa: E402
from cardex.services.video_pipeline import VideoPipeline  # noqa: E402

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
BLOB_BASE_URL = "http://testserver/blobs"
FAKE_VIDEO = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 64


def make_png(width: int = 64, height: int = 90, color=(200, 40, 40)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (width, height), color).save(out, format="PNG")
    return out.getvalue()


def make_noise_png(width: int, height: int, seed: int = 7) -> bytes:
    """Random pixels barely compress, so the PNG is about width*height*3 bytes."""
    rng = random.Random(seed)
    img = Image.frombytes("RGB", (width, height), rng.randbytes(width * height * 3))
    out = io.BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()


SMALL_PNG_B64 = base64.b64encode(make_png()).decode("ascii")


class TickingClock:
    """Every read advances one second, so timestamps are strictly ordered."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class FakeGateway(GenerationGateway):
    """Real credential resolution, canned provider answers."""

    def __init__(self, settings, key_lookup):
        super().__init__(settings=settings, key_lookup=key_lookup, client_factory=self._no_client)
        self.calls = []
        self.video_error = None
        self.before_video_returns = None

    @staticmethod
    def _no_client(provider, api_key):
        raise AssertionError("Real providers must not be called in tests.")

    def generate_card_image(self, user_id, params):
        self.require_credential(user_id, Task.IMAGE)
        self.calls.append(("image", params.character_name))
        return GeneratedImage(image_base64=SMALL_PNG_B64, prompt=f"A card of {params.character_name}")

    def generate_card_from_photo(self, user_id, request):
        self.require_credential(user_id, Task.IMAGE)
        self.calls.append(("photo", request.character_name))
        return GeneratedImage(image_base64=SMALL_PNG_B64, prompt=f"A photo card of {request.character_name}")

    def scan_card(self, user_id, photo_data_uri):
        self.require_credential(user_id, Task.VISION)
        self.calls.append(("scan", None))
        return ScannedCardDetails(name="Pikachu", set="Base Set", rarity="Common")

    def summarize_card(self, user_id, request):
        self.require_credential(user_id, Task.VISION)
        self.calls.append(("summary", request.name))
        return f"{request.name} is a card."

    def grade_card(self, user_id, request):
        self.require_credential(user_id, Task.GRADING)
        self.calls.append(("grade", request.grading_scale.value))
        return GradingResult.model_validate({
            "gradingScale": request.grading_scale.value,
            "overallGrade": 8.5,
            "gradeName": "NM-MT+",
            "centering": {"score": 8, "frontCentering": "60/40", "backCentering": "65/35", "notes": "Slightly off."},
            "corners": {"score": 9, "notes": "Sharp."},
            "edges": {"score": 8.5, "notes": "Minor whitening."},
            "surface": {"score": 9, "notes": "Clean."},
            "detailedAnalysis": "A well kept card.",
            "recommendations": ["Submit for grading."],
        })

    def generate_video(self, user_id, card_image, card_name, card_type, game):
        self.require_credential(user_id, Task.VIDEO)
        self.calls.append(("video", card_name))
        if self.before_video_returns is not None:
            self.before_video_returns()
        if self.video_error is not None:
            raise self.video_error
        return GeneratedVideo(video_bytes=FAKE_VIDEO, prompt=f"Bring {card_name} to life")


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    SQLModel.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        blob_root=tmp_path / "blobs",
        blob_public_base_url=BLOB_BASE_URL,
        blob_signing_secret="test-secret",
        download_allowed_hosts=["firebasestorage.googleapis.com", "localhost:9199", "127.0.0.1:9199"],
        openai_api_key=None,
        gemini_api_key=None,
    )


@pytest.fixture
def store(engine):
    return CardStore(db_engine=engine, clock=TickingClock())


@pytest.fixture
def storage(settings):
    return LocalBlobStorage(
        root=settings.blob_root,
        public_base_url=settings.blob_public_base_url,
        signing_secret=settings.blob_signing_secret,
        cache=UploadCache(16),
    )


@pytest.fixture
def gateway(settings, store):
    return FakeGateway(settings, store.get_user_api_keys)


@pytest.fixture
def with_keys(store):
    store.update_user_api_keys(USER_ID, {"openai": "sk-user", "gemini": "gm-user"})


@pytest.fixture
def pipeline(store, storage, gateway):
    return VideoPipeline(store=store, storage=storage, gateway=gateway)


@pytest.fixture
def workflows(store, storage, settings):
    return CardWorkflows(store=store, storage=storage, settings=settings)


@pytest.fixture
def saved_card(store, storage):
    """A card owned by USER_ID whose image lives in blob storage."""
    image_url = storage.upload_image(make_png(), USER_ID, "Pika")
    card_id = store.add_card(USER_ID, {
        "name": "Pika",
        "image_url": image_url,
        "game": "pokemon",
        "is_generated": True,
        "generation_params": {"characterName": "Pika", "characterType": "Electric", "game": "pokemon"},
    })
    return store.get_card(USER_ID, card_id)


@pytest.fixture
def api(engine, settings, store, storage, gateway, pipeline, workflows):
    """A TestClient authenticated as USER_ID, wired to the test services."""
    overrides = {
        main.get_app_settings: lambda: settings,
        main.get_card_store: lambda: store,
        main.get_blob_storage: lambda: storage,
        main.get_gateway: lambda: gateway,
        main.get_video_pipeline: lambda: pipeline,
        main.get_card_workflows: lambda: workflows,
        auth.get_auth_engine: lambda: engine,
    }
    main.app.dependency_overrides.update(overrides)
    token = auth.issue_api_token(USER_ID, db_engine=engine)
    client = TestClient(main.app)
    client.headers.update({"Authorization": f"Bearer {token}"})
    yield client
    main.app.dependency_overrides.clear()


@pytest.fixture
def png():
    return make_png


@pytest.fixture
def noise_png():
    return make_noise_png
