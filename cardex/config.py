"""
Application configuration.

All settings are read from environment variables (a local `.env` file is loaded
first) and exposed through a single cached `Settings` object so that services,
routes and scripts agree on paths, credentials and provider choices.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

# --- Defaults ---
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = PROJECT_ROOT / "data"
DEFAULT_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'cardex.db').resolve()}"
DEFAULT_BLOB_ROOT = DATA_DIR / "blobs"
DEFAULT_PUBLIC_BASE_URL = "http://localhost:8000/blobs"
# --- End Defaults ---


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    """Runtime configuration for the API, the services and the scripts."""
    database_url: str = DEFAULT_DATABASE_URL
    blob_root: Path = DEFAULT_BLOB_ROOT
    blob_public_base_url: str = DEFAULT_PUBLIC_BASE_URL
    blob_signing_secret: str = "dev-secret"
    download_allowed_hosts: List[str] = ["firebasestorage.googleapis.com"]

    # Shared default credentials, used when a user has not stored their own.
    openai_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None

    image_provider: str = "openai"
    image_model: str = "gpt-image-1"
    vision_provider: str = "gemini"
    vision_model: str = "gemini-2.5-flash"
    grading_provider: str = "gemini"
    grading_model: str = "gemini-2.5-pro"
    video_provider: str = "openai"
    video_model: str = "sora-2"
    video_seconds: int = 4
    video_poll_seconds: float = 10.0
    video_max_wait_seconds: float = 900.0
    provider_timeout_seconds: float = 120.0

    inline_image_storage: bool = False
    inline_image_budget_bytes: int = 800_000
    upload_cache_size: int = 256

    log_level: str = "INFO"

    @property
    def effective_download_hosts(self) -> List[str]:
        """The configured allow-list plus the host serving our own blobs."""
        hosts = list(self.download_allowed_hosts)
        own = urlparse(self.blob_public_base_url).netloc.lower()
        if own and own not in hosts:
            hosts.append(own)
        return hosts

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("CARDEX_DATABASE_URL", DEFAULT_DATABASE_URL),
            blob_root=Path(os.getenv("CARDEX_BLOB_ROOT", str(DEFAULT_BLOB_ROOT))),
            blob_public_base_url=os.getenv("CARDEX_BLOB_PUBLIC_BASE_URL", DEFAULT_PUBLIC_BASE_URL).rstrip("/"),
            blob_signing_secret=os.getenv("CARDEX_BLOB_SIGNING_SECRET", "dev-secret"),
            download_allowed_hosts=_env_list("CARDEX_DOWNLOAD_ALLOWED_HOSTS", "firebasestorage.googleapis.com"),
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            image_provider=os.getenv("CARDEX_IMAGE_PROVIDER", "openai"),
            image_model=os.getenv("CARDEX_IMAGE_MODEL", "gpt-image-1"),
            vision_provider=os.getenv("CARDEX_VISION_PROVIDER", "gemini"),
            vision_model=os.getenv("CARDEX_VISION_MODEL", "gemini-2.5-flash"),
            grading_provider=os.getenv("CARDEX_GRADING_PROVIDER", "gemini"),
            grading_model=os.getenv("CARDEX_GRADING_MODEL", "gemini-2.5-pro"),
            video_provider=os.getenv("CARDEX_VIDEO_PROVIDER", "openai"),
            video_model=os.getenv("CARDEX_VIDEO_MODEL", "sora-2"),
            video_seconds=int(os.getenv("CARDEX_VIDEO_SECONDS", "4")),
            video_poll_seconds=float(os.getenv("CARDEX_VIDEO_POLL_SECONDS", "10")),
            video_max_wait_seconds=float(os.getenv("CARDEX_VIDEO_MAX_WAIT_SECONDS", "900")),
            provider_timeout_seconds=float(os.getenv("CARDEX_PROVIDER_TIMEOUT_SECONDS", "120")),
            inline_image_storage=_env_bool("CARDEX_INLINE_IMAGE_STORAGE", False),
            inline_image_budget_bytes=int(os.getenv("CARDEX_INLINE_IMAGE_BUDGET_BYTES", "800000")),
            upload_cache_size=int(os.getenv("CARDEX_UPLOAD_CACHE_SIZE", "256")),
            log_level=os.getenv("CARDEX_LOG_LEVEL", "INFO"),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
