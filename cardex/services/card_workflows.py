"""
Save, edit and delete flows for collection cards.

These sequence the lower services: an incoming image is decoded, put through
the two-pass compression policy when it is over budget, then either inlined
(legacy mode, only when it fits) or uploaded to blob storage, and finally the
card document is written. Blobs left behind by a failed write or replaced by
an edit are removed best-effort.
"""

import base64
import logging
from typing import Any, Dict, Optional, Tuple

from ..api_models import SaveCardRequest, UpdateCardRequest
from ..config import Settings, get_settings
from ..database.models import Card
from ..errors import BlobStorageError, CardexError, CardNotFoundError
from .blob_storage import BlobStorage, blob_storage, decode_payload
from .card_store import CardStore, card_store
from .image_compression import fit_within_budget, format_bytes

logger = logging.getLogger(__name__)


def _params_document(params: Any) -> Optional[Dict[str, Any]]:
    if params is None:
        return None
    return params.model_dump(mode="json", by_alias=True, exclude_none=True)


class CardWorkflows:
    def __init__(
        self,
        store: CardStore = card_store,
        storage: BlobStorage = blob_storage,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.storage = storage
        self.settings = settings or get_settings()

    def store_image(self, user_id: str, image: str, card_name: str) -> str:
        """
        Returns the `image_url` to persist for an incoming image.

        Over-budget images get the compression policy first. The result is
        inlined as a data URL only in legacy inline mode and only when the
        encoded image fits the budget; every other image goes to blob storage.
        """
        raw, mime = decode_payload(image)
        budget = self.settings.inline_image_budget_bytes
        outcome = fit_within_budget(raw, budget)

        if self.settings.inline_image_storage and outcome.within_budget:
            encoded = base64.b64encode(outcome.data).decode("ascii")
            stored_mime = (mime or "image/png") if outcome.passes == 0 else "image/jpeg"
            data_url = f"data:{stored_mime};base64,{encoded}"
            if len(data_url) <= budget:
                logger.info("Storing %s image inline.", format_bytes(outcome.size))
                return data_url
            logger.info("Encoded image of %d chars exceeds the inline budget; uploading instead.", len(data_url))

        return self.storage.upload_image(outcome.data, user_id, card_name)

    def _release_image(self, user_id: str, image_url: Optional[str]) -> None:
        """Deletes an image blob unless another card of the user still points at it."""
        if not image_url or not self.storage.owns(image_url):
            return
        if any(card.image_url == image_url for card in self.store.get_cards(user_id)):
            return
        self._delete_blob(image_url)

    def _delete_blob(self, url: Optional[str]) -> None:
        if not url or not self.storage.owns(url):
            return
        try:
            self.storage.delete(url)
        except BlobStorageError as e:
            logger.warning("Failed to delete blob %s: %s", url, e.detail)

    # =========================================================================
    # Flows
    # =========================================================================

    def save_card(self, user_id: str, request: SaveCardRequest) -> Card:
        image_url = self.store_image(user_id, request.image_base64, request.name)
        values = {
            "name": request.name,
            "set_name": request.set_name,
            "rarity": request.rarity,
            "game": request.game.value,
            "image_url": image_url,
            "is_generated": request.is_generated,
            "is_photo_generated": request.is_photo_generated,
            "prompt": request.prompt,
            "generation_params": _params_document(request.generation_params),
            "photo_generation_params": _params_document(request.photo_generation_params),
        }
        try:
            card_id = self.store.add_card(user_id, values)
        except Exception:
            self._release_image(user_id, image_url)
            raise
        return self.store.get_card(user_id, card_id)

    def edit_card(self, user_id: str, card_id: str, request: UpdateCardRequest) -> Card:
        """Applies metadata changes and, when given, replaces the card image."""
        existing = self.store.get_card(user_id, card_id)
        if existing is None:
            raise CardNotFoundError(card_id)

        fields: Dict[str, Any] = {
            key: value
            for key, value in request.model_dump(
                exclude_unset=True,
                exclude={"image_base64", "generation_params", "photo_generation_params"},
            ).items()
            if value is not None
        }
        if "game" in fields:
            fields["game"] = request.game.value
        for key in ("generation_params", "photo_generation_params"):
            if key in request.model_fields_set:
                fields[key] = _params_document(getattr(request, key))

        new_image_url = None
        if request.image_base64:
            new_image_url = self.store_image(user_id, request.image_base64, fields.get("name", existing.name))
            fields["image_url"] = new_image_url

        try:
            card = self.store.update_card(user_id, card_id, fields)
        except Exception:
            if new_image_url and new_image_url != existing.image_url:
                self._release_image(user_id, new_image_url)
            raise

        if new_image_url and new_image_url != existing.image_url:
            self._release_image(user_id, existing.image_url)
        return card

    def delete_card(self, user_id: str, card_id: str) -> Card:
        card = self.store.delete_card(user_id, card_id)
        if card is None:
            raise CardNotFoundError(card_id)
        self._release_image(user_id, card.image_url)
        self._delete_blob(card.video_url)
        return card

    def migrate_inline_images(self) -> Tuple[int, int]:
        """Moves images still stored inline into blob storage. Returns (migrated, failed)."""
        migrated = failed = 0
        for card in self.store.get_cards_with_inline_images():
            try:
                image_url = self.storage.upload_image(card.image_url, card.user_id, card.name)
                self.store.update_card(card.user_id, card.id, {"image_url": image_url})
            except CardexError as e:
                logger.error("Failed to migrate the image of card %s: %s (%s)", card.id, e.message, e.detail)
                failed += 1
                continue
            logger.info("Migrated the image of card %s to %s", card.id, image_url)
            migrated += 1
        return migrated, failed


# A singleton instance of the workflows for convenient access across the application.
card_workflows = CardWorkflows()
