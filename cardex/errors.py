"""
Exception taxonomy shared by the services and the HTTP layer.

Every error carries the HTTP status it maps to and a message that is safe to
show to the end user. Provider and store details go into `detail`, which is
logged but never returned to the client.
"""

from typing import List, Optional


class CardexError(Exception):
    """Base class for all application-level errors."""
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_payload(self) -> dict:
        return {"error": self.message, "code": self.code}


# --- Validation ---

class InvalidRequestError(CardexError):
    status_code = 400
    code = "invalid_request"

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None):
        super().__init__(message)
        self.missing_fields = missing_fields or []

    @classmethod
    def missing(cls, fields: List[str]) -> "InvalidRequestError":
        return cls(f"Missing required fields: {', '.join(fields)}", missing_fields=fields)

    def to_payload(self) -> dict:
        payload = super().to_payload()
        if self.missing_fields:
            payload["missingFields"] = self.missing_fields
        return payload


class ImmutableFieldError(InvalidRequestError):
    code = "immutable_field"


# --- Credentials and identity ---

class CredentialRequiredError(CardexError):
    """No user key and no shared default key exist for a provider."""
    status_code = 400
    code = "api_key_required"

    def __init__(self, provider: str):
        super().__init__(
            f"An API key for '{provider}' is required. Please configure it in Settings."
        )
        self.provider = provider

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["provider"] = self.provider
        return payload


class AuthenticationError(CardexError):
    status_code = 401
    code = "authentication_required"


class IdentityMismatchError(CardexError):
    status_code = 403
    code = "identity_mismatch"


class ForbiddenDownloadError(CardexError):
    status_code = 403
    code = "download_forbidden"


class DownloadFailedError(CardexError):
    status_code = 502
    code = "download_failed"


# --- Persistence ---

class CardNotFoundError(CardexError):
    status_code = 404
    code = "card_not_found"

    def __init__(self, card_id: str):
        super().__init__(f"Card '{card_id}' was not found.")
        self.card_id = card_id


class VideoStatusConflictError(CardexError):
    status_code = 409
    code = "video_status_conflict"


class InvalidCardStateError(CardexError):
    status_code = 400
    code = "invalid_card_state"


class PersistenceError(CardexError):
    status_code = 500
    code = "persistence_error"


class DocumentTooLargeError(PersistenceError):
    status_code = 413
    code = "document_too_large"


# --- Providers, images and blobs ---

class ProviderError(CardexError):
    status_code = 500
    code = "provider_error"


class ImageProcessingError(CardexError):
    status_code = 500
    code = "image_processing_error"


class BlobStorageError(CardexError):
    status_code = 500
    code = "upload_failed"


class InvalidUploadError(BlobStorageError):
    """The caller handed a reference instead of raw bytes; never retried."""
    status_code = 400
    code = "invalid_upload"
