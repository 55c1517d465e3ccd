"""
Defines the database schema using SQLModel.

This module contains the table definitions for the application: the user's
card collection, the per-account profile (including stored provider keys),
and the API tokens that identify callers.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON
from sqlmodel import Column, Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_card_id() -> str:
    return uuid.uuid4().hex


class VideoStatus(str, Enum):
    """Lifecycle of the optional video attached to a card."""
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (VideoStatus.COMPLETED, VideoStatus.FAILED)


class Card(SQLModel, table=True):
    """
    A single trading card in a user's collection.

    `image_url` and `video_url` hold references into blob storage. The video
    URL is set exactly when `video_generation_status` is COMPLETED.
    """
    __tablename__ = "cards"

    id: str = Field(default_factory=new_card_id, primary_key=True)
    # Owner of the card; the partition key for every read and write.
    user_id: str = Field(index=True)

    name: str
    set_name: str = ""
    rarity: str = ""
    game: str = Field(default="pokemon")

    image_url: str
    video_url: Optional[str] = None

    is_generated: bool = Field(default=False)
    is_photo_generated: bool = Field(default=False)
    prompt: Optional[str] = None
    # Structured input used to produce the image, kept so it can be regenerated.
    generation_params: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    photo_generation_params: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    video_generation_status: VideoStatus = Field(default=VideoStatus.PENDING)
    video_prompt: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, index=True)


class UserProfile(SQLModel, table=True):
    """One row per account, keyed by the identity provider's user id."""
    __tablename__ = "user_profiles"

    id: str = Field(primary_key=True)
    email: str = ""
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    # Provider name -> key, e.g. {"openai": "...", "gemini": "..."}
    api_keys: Optional[Dict[str, str]] = Field(default=None, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ApiToken(SQLModel, table=True):
    """Opaque bearer tokens; only the SHA-256 of the token is stored."""
    __tablename__ = "api_tokens"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    token_hash: str = Field(unique=True, index=True)
    name: str = "default"
    created_at: datetime = Field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
