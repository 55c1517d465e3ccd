"""
Lifecycle of the short video attached to a card.

    pending | failed --request--> generating --success--> completed
                                            \\--failure--> failed

A request is a compare-and-set on the stored status, so two concurrent
requests can never both enter `generating`; a card that is already
generating or completed is rejected with a conflict. The request writes
`generating` before the provider is contacted so polling clients see the job
immediately. The job itself runs afterwards (as a background task of the
request) and ends in exactly one of `completed` (with a stored video URL) or
`failed` (without one). Retrying a failed card is the same request again.
A job cut off by a server restart is failed at the next startup
(`CardStore.fail_abandoned_video_jobs`), so its card can be retried too.
"""

import logging
from typing import Optional

import requests

from ..database.models import Card, VideoStatus
from ..errors import (
    BlobStorageError,
    CardexError,
    CardNotFoundError,
    InvalidRequestError,
    VideoStatusConflictError,
)
from .ai_gateway import GenerationGateway, Task, generation_gateway
from .blob_storage import BlobStorage, blob_storage, decode_payload
from .card_store import CardStore, card_store

logger = logging.getLogger(__name__)

REQUESTABLE_STATES = (VideoStatus.PENDING, VideoStatus.FAILED)
IMAGE_FETCH_TIMEOUT_SECONDS = 30


class VideoPipeline:
    """Drives a card's video through its states."""

    def __init__(
        self,
        store: CardStore = card_store,
        storage: BlobStorage = blob_storage,
        gateway: GenerationGateway = generation_gateway,
    ):
        self.store = store
        self.storage = storage
        self.gateway = gateway

    def request_video_generation(self, user_id: str, card_id: str) -> Card:
        """
        Moves a pending or failed card to `generating`.

        The credential check runs first so a user without a usable key is told
        so without the card ever leaving its current state.
        """
        missing = [name for name, value in (("userId", user_id), ("cardId", card_id)) if not value]
        if missing:
            raise InvalidRequestError("User ID and Card ID are required", missing_fields=missing)

        card = self.store.get_card(user_id, card_id)
        if card is None:
            raise CardNotFoundError(card_id)
        if card.video_generation_status not in REQUESTABLE_STATES:
            raise VideoStatusConflictError(
                f"This card's video is already {card.video_generation_status.value}."
            )

        self.gateway.require_credential(user_id, Task.VIDEO)

        if not self.store.transition_video_status(user_id, card_id, REQUESTABLE_STATES, VideoStatus.GENERATING):
            raise VideoStatusConflictError("Video generation is already in progress for this card.")
        logger.info("Video generation requested for card %s.", card_id)
        return self.store.get_card(user_id, card_id)

    def run_video_generation(self, user_id: str, card_id: str) -> Optional[VideoStatus]:
        """
        Produces, stores and attaches the video for a card in `generating`.

        Returns the status the card was left in, or None when the card was
        deleted or moved on while the job ran (the uploaded video is then
        removed again).
        """
        video_url = None
        try:
            card = self.store.get_card(user_id, card_id)
            if card is None:
                logger.warning("Card %s disappeared before its video job started.", card_id)
                return None

            image = self._load_card_image(card.image_url)
            video = self.gateway.generate_video(
                user_id, image, card.name, self._card_type(card), card.game
            )
            video_url = self.storage.upload_video(video.video_bytes, user_id, card.name)

            completed = self.store.transition_video_status(
                user_id, card_id, VideoStatus.GENERATING, VideoStatus.COMPLETED,
                video_url=video_url, video_prompt=video.prompt,
            )
            if completed:
                logger.info("Video generation completed for card %s.", card_id)
                return VideoStatus.COMPLETED

            logger.warning("Card %s left 'generating' while its video was produced; discarding it.", card_id)
            self._discard(video_url)
            return None
        except CardexError as e:
            logger.error("Video generation failed for card %s: %s (%s)", card_id, e.message, e.detail)
            return self._fail(user_id, card_id, video_url)
        except Exception:
            logger.exception("Unexpected error in video generation for card %s.", card_id)
            return self._fail(user_id, card_id, video_url)

    # --- Helpers ---

    @staticmethod
    def _card_type(card: Card) -> Optional[str]:
        for params in (card.generation_params, card.photo_generation_params):
            if params and params.get("characterType"):
                return params["characterType"]
        return None

    def _load_card_image(self, image_url: str) -> bytes:
        if image_url.startswith("data:"):
            return decode_payload(image_url)[0]
        if self.storage.owns(image_url):
            return self.storage.read(image_url)
        try:
            response = requests.get(image_url, timeout=IMAGE_FETCH_TIMEOUT_SECONDS)
            response.raise_for_status()
        except requests.RequestException as e:
            raise BlobStorageError("Failed to load the card image.", detail=str(e)) from e
        return response.content

    def _discard(self, video_url: str) -> None:
        try:
            self.storage.delete(video_url)
        except BlobStorageError as e:
            logger.warning("Could not remove orphaned video %s: %s", video_url, e.detail)

    def _fail(self, user_id: str, card_id: str, video_url: Optional[str]) -> Optional[VideoStatus]:
        if video_url:
            self._discard(video_url)
        try:
            failed = self.store.transition_video_status(
                user_id, card_id, VideoStatus.GENERATING, VideoStatus.FAILED
            )
        except CardexError as e:
            logger.error("Could not mark card %s as failed: %s", card_id, e.detail or e.message)
            return None
        return VideoStatus.FAILED if failed else None


# A singleton instance of the pipeline for convenient access across the application.
video_pipeline = VideoPipeline()
