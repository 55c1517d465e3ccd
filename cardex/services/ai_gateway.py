"""
A uniform gateway to the image, vision, grading and video model providers.

Every provider is reached through the `openai` SDK: OpenAI with its default
endpoint, Gemini through its OpenAI-compatible endpoint as a second
`base_url`-configured client. Each task (image, vision, grading, video) is
routed to a configurable provider and model.

Credentials are resolved per call: the acting user's stored key for the
provider first, then the shared default key. When neither exists the call
fails fast with `CredentialRequiredError` before anything is sent. Transient
provider failures are retried; everything else surfaces as `ProviderError`.
The gateway never writes to persistence.
"""

import io
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Type, TypeVar

import openai
from PIL import Image, ImageOps, UnidentifiedImageError
from pydantic import BaseModel, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..api_models import (
    CardGenerationParams,
    GenerateCardFromPhotoRequest,
    GradeCardRequest,
    GradingResult,
    ScannedCardDetails,
    SummarizeCardRequest,
    SummarizeCardResponse,
)
from ..config import Settings, get_settings
from ..errors import CardexError, CredentialRequiredError, ProviderError
from . import prompts
from .blob_storage import decode_payload
from .card_store import card_store

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
KeyLookup = Callable[[str], Mapping[str, str]]


class Provider(str, Enum):
    OPENAI = "openai"
    GEMINI = "gemini"


class Task(str, Enum):
    IMAGE = "image"
    VISION = "vision"
    GRADING = "grading"
    VIDEO = "video"


# --- Constants ---
PROVIDER_BASE_URLS: Dict[Provider, Optional[str]] = {
    Provider.OPENAI: None,
    Provider.GEMINI: "https://generativelanguage.googleapis.com/v1beta/openai/",
}
CARD_IMAGE_SIZE = "1024x1536"
VIDEO_SIZE = (720, 1280)
VIDEO_PENDING_STATES = ("queued", "in_progress")
TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)
# --- End Constants ---


@dataclass(frozen=True)
class GeneratedImage:
    image_base64: str
    prompt: str


@dataclass(frozen=True)
class GeneratedVideo:
    video_bytes: bytes
    prompt: str


def _as_data_uri(photo: str) -> str:
    return photo if photo.startswith("data:") else f"data:image/jpeg;base64,{photo}"


def _reference_frame(image_bytes: bytes) -> Tuple[str, bytes, str]:
    """Pads the card image to the video frame size; the video model needs an exact match."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as opened:
            frame = ImageOps.pad(opened.convert("RGB"), VIDEO_SIZE, color=(0, 0, 0))
            out = io.BytesIO()
            frame.save(out, format="JPEG", quality=90)
    except (UnidentifiedImageError, OSError) as e:
        raise ProviderError("The card image could not be prepared for video generation.", detail=str(e)) from e
    return "card.jpg", out.getvalue(), "image/jpeg"


class GenerationGateway:
    """Routes generation requests to the configured providers."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        key_lookup: Optional[KeyLookup] = None,
        client_factory: Optional[Callable[[Provider, str], Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.key_lookup = key_lookup
        self.client_factory = client_factory or self._build_client
        self.sleep = sleep
        self.clock = clock

    # =========================================================================
    # Routing and credentials
    # =========================================================================

    def route(self, task: Task) -> Tuple[Provider, str]:
        provider, model = {
            Task.IMAGE: (self.settings.image_provider, self.settings.image_model),
            Task.VISION: (self.settings.vision_provider, self.settings.vision_model),
            Task.GRADING: (self.settings.grading_provider, self.settings.grading_model),
            Task.VIDEO: (self.settings.video_provider, self.settings.video_model),
        }[task]
        return Provider(provider), model

    def default_key(self, provider: Provider) -> Optional[str]:
        return {
            Provider.OPENAI: self.settings.openai_api_key,
            Provider.GEMINI: self.settings.gemini_api_key,
        }[provider]

    def user_keys(self, user_id: Optional[str]) -> Mapping[str, str]:
        """The user's stored keys; a failed lookup counts as having none."""
        if not user_id or self.key_lookup is None:
            return {}
        try:
            return self.key_lookup(user_id) or {}
        except CardexError as e:
            logger.warning("API key lookup failed for user %s, using defaults: %s", user_id, e.detail or e)
            return {}

    def resolve_credential(self, user_id: Optional[str], provider: Provider) -> Optional[str]:
        return self.user_keys(user_id).get(provider.value) or self.default_key(provider)

    def require_credential(self, user_id: Optional[str], task: Task) -> Tuple[Provider, str, str]:
        """Returns (provider, model, key) for a task or raises `CredentialRequiredError`."""
        provider, model = self.route(task)
        key = self.resolve_credential(user_id, provider)
        if not key:
            logger.info("No %s key available for user %s (task: %s).", provider.value, user_id, task.value)
            raise CredentialRequiredError(provider.value)
        return provider, model, key

    def credential_status(self, user_id: Optional[str]) -> Dict[str, Any]:
        keys = self.user_keys(user_id)
        tasks = {}
        for task in Task:
            provider, _ = self.route(task)
            tasks[task.value] = bool(keys.get(provider.value) or self.default_key(provider))
        return {
            "has_openai_key": bool(keys.get(Provider.OPENAI.value)),
            "has_gemini_key": bool(keys.get(Provider.GEMINI.value)),
            "has_any_key": any(keys.get(p.value) for p in Provider),
            "tasks": tasks,
        }

    def _build_client(self, provider: Provider, api_key: str) -> openai.OpenAI:
        return openai.OpenAI(
            api_key=api_key,
            base_url=PROVIDER_BASE_URLS[provider],
            timeout=self.settings.provider_timeout_seconds,
            max_retries=0,
        )

    # =========================================================================
    # Provider calls
    # =========================================================================

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        reraise=True,
    )
    def _invoke(self, fn: Callable[..., Any], **kwargs: Any) -> Any:
        return fn(**kwargs)

    def _call(self, what: str, provider: Provider, fn: Callable[..., Any], **kwargs: Any) -> Any:
        try:
            return self._invoke(fn, **kwargs)
        except openai.AuthenticationError as e:
            logger.error("%s: %s rejected the API key: %s", what, provider.value, e)
            raise ProviderError(
                f"The {provider.value} API key was rejected. Please check it in Settings.", detail=str(e)
            ) from e
        except openai.BadRequestError as e:
            # Content-policy and validation rejections carry a message meant for the caller.
            logger.error("%s: %s rejected the request: %s", what, provider.value, e)
            raise ProviderError(f"{what} was rejected by the provider: {e.message}", detail=str(e)) from e
        except openai.OpenAIError as e:
            logger.error("%s failed with %s: %s", what, provider.value, e, exc_info=True)
            raise ProviderError(f"{what} failed. Please try again later.", detail=str(e)) from e

    def _json_completion(
        self,
        task: Task,
        user_id: Optional[str],
        system_prompt: str,
        user_prompt: str,
        images: List[str],
        schema: Type[ModelT],
        what: str,
        defaults: Optional[Dict[str, Any]] = None,
    ) -> ModelT:
        provider, model, key = self.require_credential(user_id, task)
        client = self.client_factory(provider, key)
        content: List[Dict[str, Any]] = [{"type": "text", "text": user_prompt}]
        content.extend({"type": "image_url", "image_url": {"url": _as_data_uri(img)}} for img in images)

        logger.info("%s with %s (model: %s)...", what, provider.value, model)
        response = self._call(
            what,
            provider,
            client.chat.completions.create,
            model=model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": content},
            ],
            temperature=0.0,
            response_format={"type": "json_object"},
        )
        if not response.choices:
            logger.error("%s returned no choices from %s.", what, provider.value)
            raise ProviderError(f"{what} returned an unexpected response. Please try again.", detail="no choices")
        raw = response.choices[0].message.content or "{}"
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise TypeError(f"expected a JSON object, got {type(data).__name__}")
            if defaults:
                for field, value in defaults.items():
                    data.setdefault(field, value)
            return schema.model_validate(data)
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.error("%s returned malformed output from %s: %s", what, provider.value, e)
            raise ProviderError(f"{what} returned an unexpected response. Please try again.", detail=str(e)) from e

    # =========================================================================
    # Operations
    # =========================================================================

    def generate_card_image(self, user_id: Optional[str], params: CardGenerationParams) -> GeneratedImage:
        provider, model, key = self.require_credential(user_id, Task.IMAGE)
        model = params.ai_model or model
        prompt = prompts.build_card_prompt(params)
        client = self.client_factory(provider, key)

        kwargs: Dict[str, Any] = {"model": model, "prompt": prompt, "n": 1}
        if model.startswith("gpt-image"):
            kwargs["size"] = CARD_IMAGE_SIZE
        else:
            kwargs["response_format"] = "b64_json"

        logger.info("Generating card image with %s (model: %s)...", provider.value, model)
        result = self._call("Card generation", provider, client.images.generate, **kwargs)
        return GeneratedImage(image_base64=self._image_from(result, provider), prompt=prompt)

    def generate_card_from_photo(self, user_id: Optional[str], request: GenerateCardFromPhotoRequest) -> GeneratedImage:
        provider, model, key = self.require_credential(user_id, Task.IMAGE)
        model = request.ai_model or model
        params = request.params()
        prompt = prompts.build_photo_card_prompt(params)
        photo, mime = decode_payload(request.photo_data_uri)
        client = self.client_factory(provider, key)

        logger.info("Generating card from photo with %s (model: %s)...", provider.value, model)
        result = self._call(
            "Photo card generation",
            provider,
            client.images.edit,
            model=model,
            image=("photo.png", photo, mime or "image/png"),
            prompt=prompt,
        )
        return GeneratedImage(image_base64=self._image_from(result, provider), prompt=prompt)

    @staticmethod
    def _image_from(result: Any, provider: Provider) -> str:
        data = getattr(result, "data", None) or []
        encoded = data[0].b64_json if data else None
        if not encoded:
            logger.error("Image response from %s carried no image data.", provider.value)
            raise ProviderError("The image model returned no image. Please try again.")
        return encoded

    def scan_card(self, user_id: Optional[str], photo_data_uri: str) -> ScannedCardDetails:
        return self._json_completion(
            Task.VISION, user_id, prompts.SCAN_SYSTEM_PROMPT,
            "Identify this card.", [photo_data_uri], ScannedCardDetails, "Card scan",
        )

    def summarize_card(self, user_id: Optional[str], request: SummarizeCardRequest) -> str:
        result = self._json_completion(
            Task.VISION, user_id, prompts.SUMMARY_SYSTEM_PROMPT,
            prompts.build_summary_prompt(request), [], SummarizeCardResponse, "Card summary",
        )
        return result.summary

    def grade_card(self, user_id: Optional[str], request: GradeCardRequest) -> GradingResult:
        images = [request.front_photo_data_uri]
        if request.back_photo_data_uri:
            images.append(request.back_photo_data_uri)
        return self._json_completion(
            Task.GRADING, user_id, prompts.GRADING_SYSTEM_PROMPT,
            prompts.build_grading_prompt(request), images, GradingResult, "Card grading",
            defaults={"gradingScale": request.grading_scale.value},
        )

    def generate_video(
        self,
        user_id: Optional[str],
        card_image: bytes,
        card_name: str,
        card_type: Optional[str],
        game: str,
    ) -> GeneratedVideo:
        """
        Starts a video job seeded with the card image, polls it until it
        finishes and downloads the result. Polling stops with a
        `ProviderError` once `video_max_wait_seconds` is exceeded.
        """
        provider, model, key = self.require_credential(user_id, Task.VIDEO)
        prompt = prompts.build_video_prompt(card_name, card_type, game)
        client = self.client_factory(provider, key)

        logger.info("Starting video generation with %s (model: %s)...", provider.value, model)
        job = self._call(
            "Video generation",
            provider,
            client.videos.create,
            model=model,
            prompt=prompt,
            seconds=str(self.settings.video_seconds),
            size=f"{VIDEO_SIZE[0]}x{VIDEO_SIZE[1]}",
            input_reference=_reference_frame(card_image),
        )

        deadline = self.clock() + self.settings.video_max_wait_seconds
        while job.status in VIDEO_PENDING_STATES:
            if self.clock() >= deadline:
                logger.error("Video job %s still %s after %ss.", job.id, job.status, self.settings.video_max_wait_seconds)
                raise ProviderError("Video generation timed out.", detail=f"job={job.id} status={job.status}")
            self.sleep(self.settings.video_poll_seconds)
            job = self._call("Video generation", provider, client.videos.retrieve, video_id=job.id)

        if job.status != "completed":
            error = getattr(job, "error", None)
            reason = getattr(error, "message", None) or job.status
            logger.error("Video job %s ended as %s: %s", job.id, job.status, reason)
            raise ProviderError(f"Video generation failed: {reason}", detail=f"job={job.id}")

        content = self._call("Video download", provider, client.videos.download_content, video_id=job.id)
        video_bytes = content.read()
        if not video_bytes:
            raise ProviderError("The video model returned an empty video.", detail=f"job={job.id}")
        logger.info("Video job %s completed (%d bytes).", job.id, len(video_bytes))
        return GeneratedVideo(video_bytes=video_bytes, prompt=prompt)


# A singleton instance of the gateway for convenient access across the application.
generation_gateway = GenerationGateway(key_lookup=card_store.get_user_api_keys)
