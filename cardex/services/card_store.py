"""
Persistence gateway for card collections and user profiles.

Every operation is partitioned by the owning user's id. Writes are checked
against the document-size ceiling of the store and against the card
invariants (artifact fields hold URLs, never payloads; a video URL exists
only on a completed video). Store failures are wrapped in `PersistenceError`
with the driver message preserved in `detail`; card payloads are never logged.
"""

import json
import logging
from datetime import datetime
from typing import Any, Callable, Collection, Dict, List, Mapping, Optional, Union

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from ..config import get_settings
from ..database.connection import engine
from ..database.models import Card, UserProfile, VideoStatus, utcnow
from ..errors import (
    CardNotFoundError,
    DocumentTooLargeError,
    ImmutableFieldError,
    InvalidCardStateError,
    InvalidRequestError,
    PersistenceError,
)

logger = logging.getLogger(__name__)

# --- Constants ---
MAX_DOCUMENT_BYTES = 1024 * 1024  # 1 MiB per card document
FIELD_SOFT_LIMIT_BYTES = 800_000  # single fields above this should have been pre-processed
MAX_URL_LENGTH = 2048
# --- End Constants ---

MUTABLE_FIELDS = frozenset({
    "name", "set_name", "rarity", "game",
    "image_url", "video_url",
    "is_generated", "is_photo_generated", "prompt",
    "generation_params", "photo_generation_params",
    "video_generation_status", "video_prompt",
})
IMMUTABLE_FIELDS = frozenset({"id", "user_id", "created_at", "updated_at"})


def document_size(values: Mapping[str, Any]) -> int:
    """Approximate stored size of a document: its UTF-8 JSON encoding."""
    return len(json.dumps(values, default=str).encode("utf-8"))


def _field_sizes(values: Mapping[str, Any]) -> Dict[str, int]:
    return {key: document_size({key: value}) for key, value in values.items()}


def _is_http_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


class CardStore:
    """Typed CRUD over `Card` and `UserProfile` rows."""

    def __init__(
        self,
        db_engine: Engine = engine,
        clock: Callable[[], datetime] = utcnow,
        allow_inline_images: bool = False,
    ):
        self.engine = db_engine
        self.clock = clock
        self.allow_inline_images = allow_inline_images

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # =========================================================================
    # Validation helpers
    # =========================================================================

    def _check_fields(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        immutable = sorted(IMMUTABLE_FIELDS.intersection(values))
        if immutable:
            raise ImmutableFieldError(f"Fields cannot be changed: {', '.join(immutable)}")
        unknown = sorted(set(values) - MUTABLE_FIELDS)
        if unknown:
            raise InvalidRequestError(f"Unknown card fields: {', '.join(unknown)}")

        checked = dict(values)
        if "video_generation_status" in checked:
            try:
                checked["video_generation_status"] = VideoStatus(checked["video_generation_status"])
            except ValueError:
                raise InvalidRequestError(
                    f"Invalid video generation status '{checked['video_generation_status']}'."
                )
        return checked

    def _check_artifact_urls(self, values: Mapping[str, Any]) -> None:
        image_url = values.get("image_url")
        if image_url is not None:
            inline_ok = self.allow_inline_images and image_url.startswith("data:")
            if not inline_ok and not (_is_http_url(image_url) and len(image_url) <= MAX_URL_LENGTH):
                raise InvalidCardStateError("Card images must be stored in blob storage, not inline.")

        video_url = values.get("video_url")
        if video_url is not None and not (_is_http_url(video_url) and len(video_url) <= MAX_URL_LENGTH):
            logger.error("Rejected a video_url that is not a storage URL (length=%d).", len(video_url))
            raise InvalidCardStateError("Videos must be stored in blob storage, not in the card document.")

    @staticmethod
    def _check_video_invariant(status: VideoStatus, video_url: Optional[str]) -> None:
        if (video_url is not None) != (status == VideoStatus.COMPLETED):
            raise InvalidCardStateError(
                "A video URL may only be present when video generation is completed."
            )

    def _check_document_size(self, values: Mapping[str, Any]) -> None:
        sizes = _field_sizes(values)
        oversized = {k: v for k, v in sizes.items() if v > FIELD_SOFT_LIMIT_BYTES}
        if oversized:
            logger.warning("Card write carries oversized fields: %s", oversized)
        total = document_size(values)
        if total > MAX_DOCUMENT_BYTES:
            logger.error("Card document of %d bytes exceeds the %d byte ceiling.", total, MAX_DOCUMENT_BYTES)
            raise DocumentTooLargeError(
                "The card is too large to be stored. Try a smaller image.",
                detail=f"document_bytes={total} field_bytes={sizes}",
            )

    # =========================================================================
    # Card CRUD
    # =========================================================================

    def add_card(self, user_id: str, card_data: Mapping[str, Any]) -> str:
        """Creates a card owned by `user_id` and returns its store-assigned id."""
        if not user_id:
            logger.error("add_card called without a user id.")
            raise InvalidRequestError("User ID is required to add a card.", missing_fields=["userId"])

        values = self._check_fields(card_data)
        if not values.get("name") or not values.get("image_url"):
            raise InvalidRequestError.missing([f for f in ("name", "image_url") if not values.get(f)])
        self._check_artifact_urls(values)
        self._check_video_invariant(
            values.get("video_generation_status", VideoStatus.PENDING), values.get("video_url")
        )
        self._check_document_size(values)

        now = self.clock()
        card = Card(user_id=user_id, created_at=now, updated_at=now, **values)
        try:
            with self._session() as session:
                session.add(card)
                session.commit()
        except SQLAlchemyError as e:
            logger.error("Error adding card for user %s (fields: %s): %s", user_id, sorted(values), e)
            raise PersistenceError("Failed to add card to collection.", detail=str(e)) from e

        logger.info("Card %s added to the collection of user %s.", card.id, user_id)
        return card.id

    def get_cards(self, user_id: str) -> List[Card]:
        """All of a user's cards, most recently touched first."""
        if not user_id:
            return []
        statement = (
            select(Card)
            .where(Card.user_id == user_id)
            .order_by(col(Card.updated_at).desc(), col(Card.created_at).desc())
        )
        try:
            with self._session() as session:
                return list(session.exec(statement).all())
        except SQLAlchemyError as e:
            logger.error("Error fetching cards for user %s: %s", user_id, e)
            raise PersistenceError("Failed to fetch card collection.", detail=str(e)) from e

    def get_card(self, user_id: str, card_id: str) -> Optional[Card]:
        if not user_id or not card_id:
            return None
        statement = select(Card).where(Card.id == card_id, Card.user_id == user_id)
        try:
            with self._session() as session:
                return session.exec(statement).first()
        except SQLAlchemyError as e:
            logger.error("Error fetching card %s: %s", card_id, e)
            raise PersistenceError("Failed to fetch card details.", detail=str(e)) from e

    def get_cards_with_inline_images(self) -> List[Card]:
        """Cards of any user whose image is still stored inline as a data URL."""
        statement = select(Card).where(col(Card.image_url).startswith("data:")).order_by(col(Card.created_at))
        try:
            with self._session() as session:
                return list(session.exec(statement).all())
        except SQLAlchemyError as e:
            logger.error("Error fetching cards with inline images: %s", e)
            raise PersistenceError("Failed to fetch cards.", detail=str(e)) from e

    def update_card(self, user_id: str, card_id: str, fields: Mapping[str, Any]) -> Card:
        """
        Applies a partial update and refreshes `updated_at`.

        Moving the video status away from COMPLETED clears the video URL so a
        pending, generating or failed card never carries a stale one.
        """
        if not user_id or not card_id:
            raise InvalidRequestError.missing([f for f, v in (("userId", user_id), ("cardId", card_id)) if not v])

        values = self._check_fields(fields)
        status = values.get("video_generation_status")
        if status is not None and status != VideoStatus.COMPLETED:
            values["video_url"] = None
        self._check_artifact_urls(values)

        try:
            with self._session() as session:
                card = session.exec(
                    select(Card).where(Card.id == card_id, Card.user_id == user_id)
                ).first()
                if card is None:
                    raise CardNotFoundError(card_id)

                self._check_video_invariant(
                    values.get("video_generation_status", card.video_generation_status),
                    values["video_url"] if "video_url" in values else card.video_url,
                )
                for key, value in values.items():
                    setattr(card, key, value)
                card.updated_at = self.clock()
                self._check_document_size(card.model_dump(exclude={"id", "user_id", "created_at", "updated_at"}))

                session.add(card)
                session.commit()
                return card
        except SQLAlchemyError as e:
            logger.error("Error updating card %s (fields: %s): %s", card_id, sorted(values), e)
            raise PersistenceError("Failed to update card.", detail=str(e)) from e

    def delete_card(self, user_id: str, card_id: str) -> Optional[Card]:
        """
        Hard-deletes a card. Returns the deleted row, or None when it did not
        exist; deleting a missing card is not an error here.
        """
        if not user_id or not card_id:
            raise InvalidRequestError.missing([f for f, v in (("userId", user_id), ("cardId", card_id)) if not v])
        try:
            with self._session() as session:
                card = session.exec(
                    select(Card).where(Card.id == card_id, Card.user_id == user_id)
                ).first()
                if card is None:
                    return None
                session.delete(card)
                session.commit()
                logger.info("Card %s deleted for user %s.", card_id, user_id)
                return card
        except SQLAlchemyError as e:
            logger.error("Error deleting card %s: %s", card_id, e)
            raise PersistenceError("Failed to delete card.", detail=str(e)) from e

    def transition_video_status(
        self,
        user_id: str,
        card_id: str,
        expected: Union[VideoStatus, Collection[VideoStatus]],
        new_status: VideoStatus,
        **fields: Any,
    ) -> bool:
        """
        Compare-and-set on the video status.

        The row is only written when its stored status is one of `expected`;
        the check and the write are a single UPDATE statement. Returns whether
        the transition happened.
        """
        expected_set = {expected} if isinstance(expected, VideoStatus) else set(expected)
        values = self._check_fields({"video_generation_status": new_status, **fields})
        if new_status != VideoStatus.COMPLETED:
            values["video_url"] = None
        self._check_video_invariant(new_status, values.get("video_url"))
        self._check_artifact_urls(values)
        values["updated_at"] = self.clock()

        statement = (
            update(Card)
            .where(
                col(Card.id) == card_id,
                col(Card.user_id) == user_id,
                col(Card.video_generation_status).in_(expected_set),
            )
            .values(**values)
        )
        try:
            with self._session() as session:
                result = session.execute(statement)
                session.commit()
        except SQLAlchemyError as e:
            logger.error("Error moving card %s to video status %s: %s", card_id, new_status.value, e)
            raise PersistenceError("Failed to update video status.", detail=str(e)) from e

        changed = result.rowcount == 1
        if changed:
            logger.info("Card %s video status -> %s.", card_id, new_status.value)
        else:
            logger.warning(
                "Card %s was not in %s; video status left unchanged.",
                card_id, sorted(s.value for s in expected_set),
            )
        return changed

    def fail_abandoned_video_jobs(self) -> int:
        """
        Moves every card still in `generating`, of any user, to `failed`.

        Video jobs run inside the server process, so at startup none of them
        is alive any more. Returns the number of cards released.
        """
        statement = (
            update(Card)
            .where(col(Card.video_generation_status) == VideoStatus.GENERATING)
            .values(video_generation_status=VideoStatus.FAILED, video_url=None, updated_at=self.clock())
        )
        try:
            with self._session() as session:
                result = session.execute(statement)
                session.commit()
        except SQLAlchemyError as e:
            logger.error("Error releasing abandoned video jobs: %s", e)
            raise PersistenceError("Failed to release abandoned video jobs.", detail=str(e)) from e

        if result.rowcount:
            logger.warning("Marked %d abandoned video job(s) as failed.", result.rowcount)
        return result.rowcount

    # =========================================================================
    # User profiles
    # =========================================================================

    def upsert_user_profile(
        self,
        user_id: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> UserProfile:
        """Creates the profile on first sign-in, otherwise merges the given fields."""
        if not user_id:
            raise InvalidRequestError("User ID is required to create/update profile.", missing_fields=["userId"])

        updates = {
            key: value
            for key, value in (("email", email), ("display_name", display_name), ("photo_url", photo_url))
            if value is not None
        }
        try:
            with self._session() as session:
                profile = session.get(UserProfile, user_id)
                now = self.clock()
                if profile is None:
                    profile = UserProfile(id=user_id, created_at=now, updated_at=now, **updates)
                else:
                    for key, value in updates.items():
                        setattr(profile, key, value)
                    profile.updated_at = now
                session.add(profile)
                session.commit()
                return profile
        except SQLAlchemyError as e:
            logger.error("Error creating/updating profile %s: %s", user_id, e)
            raise PersistenceError("Failed to create/update user profile.", detail=str(e)) from e

    def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        if not user_id:
            raise InvalidRequestError("User ID is required to get profile.", missing_fields=["userId"])
        try:
            with self._session() as session:
                return session.get(UserProfile, user_id)
        except SQLAlchemyError as e:
            logger.error("Error getting profile %s: %s", user_id, e)
            raise PersistenceError("Failed to get user profile.", detail=str(e)) from e

    def update_user_api_keys(self, user_id: str, api_keys: Mapping[str, Optional[str]]) -> UserProfile:
        """Replaces the stored provider keys; empty values remove a key."""
        if not user_id:
            raise InvalidRequestError("User ID is required to update API keys.", missing_fields=["userId"])
        cleaned = {provider: key.strip() for provider, key in api_keys.items() if key and key.strip()}
        try:
            with self._session() as session:
                profile = session.get(UserProfile, user_id)
                now = self.clock()
                if profile is None:
                    profile = UserProfile(id=user_id, created_at=now)
                profile.api_keys = cleaned or None
                profile.updated_at = now
                session.add(profile)
                session.commit()
                logger.info("Stored API keys for user %s: %s", user_id, sorted(cleaned))
                return profile
        except SQLAlchemyError as e:
            logger.error("Error updating API keys for %s: %s", user_id, e)
            raise PersistenceError("Failed to update API keys.", detail=str(e)) from e

    def get_user_api_keys(self, user_id: str) -> Dict[str, str]:
        profile = self.get_user_profile(user_id)
        return dict(profile.api_keys or {}) if profile else {}


# A singleton instance of the store for convenient access across the application.
card_store = CardStore(allow_inline_images=get_settings().inline_image_storage)
