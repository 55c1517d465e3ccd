"""
Blob storage for card images and videos.

Artifacts are written under an owner-namespaced path with a sanitized,
timestamp-suffixed name and are addressed afterwards only by the durable URL
returned from the upload. The local backend serves objects from
`/blobs/{path}`; URLs carry an HMAC download token so owner-only objects can
be fetched by whoever holds the URL, like signed storage URLs.

Layout:
    users/{userId}/cards/{name}_{timestamp}.png   public read
    users/{userId}/videos/{name}_{timestamp}.mp4  token read
    cards/{name}_{timestamp}.png                  legacy shared images, public read
"""

import base64
import binascii
import hashlib
import hmac
import logging
import mimetypes
import re
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Optional, Tuple, Union
from urllib.parse import quote, unquote, urlparse, parse_qs

from PIL import Image, UnidentifiedImageError

from ..config import get_settings
from ..errors import BlobStorageError, InvalidUploadError

logger = logging.getLogger(__name__)

Payload = Union[bytes, str]

_PUBLIC_PATH = re.compile(r"^(users/[^/]+/cards|cards)/[^/]+$")
_OWNER_PATH = re.compile(r"^users/[^/]+/videos/[^/]+$")
_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(;[\w=-]+)*;base64,", re.IGNORECASE)


def sanitize_artifact_name(name: str) -> str:
    """Lowercases a card name and replaces anything but letters and digits."""
    cleaned = re.sub(r"[^a-zA-Z0-9]", "_", name or "").lower()
    return cleaned or "card"


def decode_payload(data: Payload) -> Tuple[bytes, Optional[str]]:
    """
    Turns raw bytes, a data URL or a bare base64 string into bytes.

    Returns the bytes and the MIME type declared by a data URL, if any.
    """
    if isinstance(data, (bytes, bytearray)):
        return bytes(data), None
    match = _DATA_URL.match(data)
    mime = None
    if match:
        mime = match.group("mime")
        data = data[match.end():]
    try:
        return base64.b64decode(data, validate=True), mime
    except (binascii.Error, ValueError) as e:
        raise InvalidUploadError("Upload payload is not valid base64 data.", detail=str(e)) from e


def _looks_like_url(data: Payload) -> bool:
    head = data[:8] if isinstance(data, str) else bytes(data[:8]).decode("ascii", "ignore")
    return head.lower().startswith(("http://", "https:/"))


def blob_access_allowed(path: str, token: Optional[str], secret: str) -> bool:
    """
    Storage rules: card images are world-readable, everything else under a
    user needs a valid download token, and unknown paths are denied.
    """
    if ".." in path.split("/"):
        return False
    if _PUBLIC_PATH.match(path):
        return True
    if _OWNER_PATH.match(path):
        return bool(token) and hmac.compare_digest(token, sign_path(path, secret))
    return False


def sign_path(path: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), path.encode("utf-8"), hashlib.sha256).hexdigest()[:32]


class UploadCache:
    """
    Bounded LRU mapping (owner, SHA-256 of content) to an uploaded URL, so the
    same image bytes are not uploaded twice by the same owner.
    """

    def __init__(self, max_entries: int = 256):
        self.max_entries = max_entries
        self._entries: "OrderedDict[Tuple[str, str], str]" = OrderedDict()

    @staticmethod
    def key(owner: str, data: bytes) -> Tuple[str, str]:
        return owner, hashlib.sha256(data).hexdigest()

    def get(self, owner: str, data: bytes) -> Optional[str]:
        key = self.key(owner, data)
        url = self._entries.get(key)
        if url is not None:
            self._entries.move_to_end(key)
        return url

    def put(self, owner: str, data: bytes, url: str) -> None:
        if self.max_entries <= 0:
            return
        key = self.key(owner, data)
        self._entries[key] = url
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def discard_url(self, url: str) -> None:
        for key in [k for k, v in self._entries.items() if v == url]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class BlobStorage(ABC):
    """Contract of the blob store used by the workflows and the video pipeline."""

    @abstractmethod
    def upload_image(self, data: Payload, owner_id: Optional[str], artifact_name: str) -> str:
        """Stores an image and returns its durable URL."""

    @abstractmethod
    def upload_video(self, data: Payload, owner_id: str, artifact_name: str) -> str:
        """Stores an MP4 video and returns its durable URL."""

    @abstractmethod
    def read(self, url: str) -> bytes:
        """Reads back an object previously returned by an upload."""

    @abstractmethod
    def delete(self, url: str) -> bool:
        """Removes an object; returns False when there was nothing to remove."""

    @abstractmethod
    def owns(self, url: str) -> bool:
        """Whether the URL points into this store."""

    @abstractmethod
    def readable(self, url: str) -> bool:
        """Whether the access policy lets the holder of this URL read it."""


class LocalBlobStorage(BlobStorage):
    """Filesystem-backed blob store served by the API under `/blobs`."""

    def __init__(
        self,
        root: Path,
        public_base_url: str,
        signing_secret: str,
        cache: Optional[UploadCache] = None,
        clock_ms: Callable[[], int] = lambda: int(time.time() * 1000),
    ):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.signing_secret = signing_secret
        self.cache = cache
        self.clock_ms = clock_ms

    # --- Paths and URLs ---

    def _object_path(self, prefix: str, artifact_name: str, extension: str) -> str:
        base = f"{prefix}/{sanitize_artifact_name(artifact_name)}"
        timestamp = self.clock_ms()
        path = f"{base}_{timestamp}.{extension}"
        while (self.root / path).exists():
            timestamp += 1
            path = f"{base}_{timestamp}.{extension}"
        return path

    def url_for(self, path: str) -> str:
        return f"{self.public_base_url}/{quote(path)}?token={sign_path(path, self.signing_secret)}"

    def path_for(self, url: str) -> Optional[str]:
        """The object path of one of our URLs, or None for foreign URLs."""
        if not url.startswith(self.public_base_url + "/"):
            return None
        parsed = urlparse(url)
        path = unquote(parsed.path[len(urlparse(self.public_base_url).path):].lstrip("/"))
        if not path or ".." in path.split("/"):
            return None
        return path

    def file_for(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise BlobStorageError("Invalid storage path.", detail=path)
        return target

    def media_type(self, path: str) -> str:
        """
        Content type of a stored object. Card images keep a `.png` name even
        when compression re-encoded them as JPEG, so images are sniffed.
        """
        target = self.file_for(path)
        try:
            with Image.open(target) as img:
                mime = Image.MIME.get(img.format or "")
            if mime:
                return mime
        except (UnidentifiedImageError, OSError):
            pass
        return mimetypes.guess_type(target.name)[0] or "application/octet-stream"

    def owns(self, url: str) -> bool:
        return self.path_for(url) is not None

    def readable(self, url: str) -> bool:
        path = self.path_for(url)
        token = parse_qs(urlparse(url).query).get("token", [None])[0]
        return path is not None and blob_access_allowed(path, token, self.signing_secret)

    # --- Operations ---

    def _write(self, path: str, data: bytes) -> str:
        target = self.file_for(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            logger.error("Failed to write blob %s: %s", path, e)
            raise BlobStorageError("Failed to upload file to storage.", detail=str(e)) from e
        url = self.url_for(path)
        logger.info("Uploaded %d bytes to %s", len(data), path)
        return url

    def upload_image(self, data: Payload, owner_id: Optional[str], artifact_name: str) -> str:
        raw, _ = decode_payload(data)
        if not raw:
            raise InvalidUploadError("Image payload is empty.")
        owner_key = owner_id or ""
        if self.cache is not None:
            cached = self.cache.get(owner_key, raw)
            cached_path = self.path_for(cached) if cached else None
            if cached_path and self.file_for(cached_path).exists():
                logger.info("Reusing previously uploaded image for %s", owner_id or "shared")
                return cached

        prefix = f"users/{owner_id}/cards" if owner_id else "cards"
        url = self._write(self._object_path(prefix, artifact_name, "png"), raw)
        if self.cache is not None:
            self.cache.put(owner_key, raw, url)
        return url

    def upload_video(self, data: Payload, owner_id: str, artifact_name: str) -> str:
        if _looks_like_url(data):
            raise InvalidUploadError(
                "upload_video received a URL instead of video data. The video must be downloaded first."
            )
        if not owner_id:
            raise InvalidUploadError("An owner is required to upload a video.")
        raw, _ = decode_payload(data)
        if not raw:
            raise InvalidUploadError("Video payload is empty.")
        return self._write(self._object_path(f"users/{owner_id}/videos", artifact_name, "mp4"), raw)

    def read(self, url: str) -> bytes:
        path = self.path_for(url)
        if path is None:
            raise BlobStorageError("The file is not held in storage.", detail=url)
        try:
            return self.file_for(path).read_bytes()
        except OSError as e:
            raise BlobStorageError("Failed to read file from storage.", detail=str(e)) from e

    def delete(self, url: str) -> bool:
        path = self.path_for(url)
        if path is None:
            return False
        if self.cache is not None:
            self.cache.discard_url(url)
        target = self.file_for(path)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise BlobStorageError("Failed to delete file from storage.", detail=str(e)) from e
        logger.info("Deleted blob %s", path)
        return True


def _build_default_storage() -> LocalBlobStorage:
    settings = get_settings()
    return LocalBlobStorage(
        root=settings.blob_root,
        public_base_url=settings.blob_public_base_url,
        signing_secret=settings.blob_signing_secret,
        cache=UploadCache(settings.upload_cache_size),
    )


# A singleton instance of the store for convenient access across the application.
blob_storage = _build_default_storage()
