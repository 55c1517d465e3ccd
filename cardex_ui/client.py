"""
HTTP client for the Cardex API, used by the Streamlit UI and by scripts.

Also holds the polling loop that follows video generation: the API has no
push channel, so clients re-fetch the collection on an interval until every
watched card has reached a terminal video state.
"""

import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import requests

# --- Configuration ---
BACKEND_URL = "http://localhost:8000/api/v1"
POLL_INTERVAL_SECONDS = 10.0
TERMINAL_STATES = {"completed", "failed"}
NOTIFICATIONS = {
    "completed": ("Video Ready!", "Your card '{name}' is now live!"),
    "failed": ("Video Generation Failed", "Failed to generate video for '{name}'."),
}
DOWNLOAD_EXTENSIONS = {"image/png": ".png", "image/jpeg": ".jpg", "image/webp": ".webp", "video/mp4": ".mp4"}
# --- End Configuration ---


class CardexAPIError(Exception):
    """A non-2xx answer from the API, or no answer at all (status 0)."""

    def __init__(self, status_code: int, message: str, code: Optional[str] = None, payload: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.payload = payload or {}

    @property
    def needs_api_key(self) -> bool:
        return self.code == "api_key_required"


class CardexClient:
    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = BACKEND_URL,
        user_id: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 120,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            res = self.session.request(
                method, f"{self.base_url}{path}", headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            raise CardexAPIError(0, f"Connection Error: {e}") from e

        if res.status_code >= 400:
            try:
                payload = res.json()
            except ValueError:
                payload = {"error": res.text}
            message = payload.get("error") or payload.get("detail") or f"HTTP {res.status_code}"
            raise CardexAPIError(res.status_code, str(message), payload.get("code"), payload)
        if res.status_code == 204 or not res.content:
            return None
        return res.json()

    # --- Generation ---

    def generate_card(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/generate-card", json={**params, "userId": self.user_id})

    def generate_card_from_photo(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/generate-card-from-photo", json={**params, "userId": self.user_id})

    def grade_card(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/grade-card", json={**request, "userId": self.user_id})["gradingResult"]

    def scan_card(self, photo_data_uri: str) -> Dict[str, Any]:
        body = {"photoDataUri": photo_data_uri, "userId": self.user_id}
        return self._request("POST", "/scan-card", json=body)["cardDetails"]

    def summarize_card(self, name: str, set_name: str = "", rarity: str = "") -> str:
        body = {"name": name, "set": set_name, "rarity": rarity, "userId": self.user_id}
        return self._request("POST", "/summarize-card", json=body)["summary"]

    def generate_video(self, card_id: str) -> Dict[str, Any]:
        return self._request("POST", "/generate-video", json={"userId": self.user_id, "cardId": card_id})

    # --- Collection ---

    def list_cards(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/cards")

    def get_card(self, card_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/cards/{card_id}")

    def save_card(self, card: Mapping[str, Any]) -> str:
        return self._request("POST", "/cards", json=dict(card))["id"]

    def update_card(self, card_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", f"/cards/{card_id}", json=dict(fields))

    def delete_card(self, card_id: str) -> None:
        self._request("DELETE", f"/cards/{card_id}")

    def download(self, url: str) -> Tuple[bytes, str]:
        """Fetches a stored file through the download proxy; returns its bytes and content type."""
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            res = self.session.request(
                "GET", f"{self.base_url}/download", params={"url": url}, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise CardexAPIError(0, f"Connection Error: {e}") from e
        if res.status_code != 200:
            raise CardexAPIError(res.status_code, "Failed to download file")
        return res.content, res.headers.get("content-type", "application/octet-stream")

    # --- Profile ---

    def sync_profile(self, email: Optional[str] = None, display_name: Optional[str] = None) -> bool:
        body = {"email": email, "displayName": display_name}
        return self._request("POST", "/profile/sync", json=body)["synced"]

    def get_profile(self) -> Dict[str, Any]:
        profile = self._request("GET", "/profile")
        self.user_id = profile["id"]
        return profile

    def update_api_keys(self, openai_api_key: Optional[str] = None, gemini_api_key: Optional[str] = None) -> Dict[str, Any]:
        body = {}
        if openai_api_key is not None:
            body["openaiApiKey"] = openai_api_key
        if gemini_api_key is not None:
            body["geminiApiKey"] = gemini_api_key
        return self._request("PUT", "/profile/api-keys", json=body)

    def api_key_status(self) -> Dict[str, Any]:
        return self._request("GET", "/profile/api-key-status")


# =============================================================================
# Video status polling
# =============================================================================

@dataclass(frozen=True)
class StatusChange:
    card_id: str
    card_name: str
    previous: Optional[str]
    current: str

    @property
    def title(self) -> str:
        return NOTIFICATIONS[self.current][0]

    @property
    def description(self) -> str:
        return NOTIFICATIONS[self.current][1].format(name=self.card_name)


def video_status(card: Mapping[str, Any]) -> str:
    return card.get("videoGenerationStatus") or "pending"


def download_filename(card_name: str, content_type: str) -> str:
    """File name offered for a downloaded card image or video."""
    stem = re.sub(r"[^a-z0-9]+", "_", card_name.lower()).strip("_") or "card"
    media_type = content_type.split(";")[0].strip()
    return stem + DOWNLOAD_EXTENSIONS.get(media_type, "")


def diff_video_statuses(previous: Mapping[str, str], cards: Iterable[Mapping[str, Any]]) -> List[StatusChange]:
    """Cards that went from `generating` to a terminal state since `previous`."""
    changes = []
    for card in cards:
        before = previous.get(card["id"])
        now = video_status(card)
        if before == "generating" and now in TERMINAL_STATES:
            changes.append(StatusChange(card["id"], card.get("name", ""), before, now))
    return changes


def poll_video_statuses(
    client: CardexClient,
    card_ids: Iterable[str],
    interval: float = POLL_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    on_change: Optional[Callable[[StatusChange], None]] = None,
    max_polls: Optional[int] = None,
) -> Dict[str, str]:
    """
    Re-fetches the collection every `interval` seconds and reports cards whose
    video finished, until every watched card is completed or failed.

    Watched cards are assumed to be generating when polling starts. Cards that
    disappear from the collection, or turn out to be pending, are dropped from
    the watch list. Returns the last observed status per card.
    """
    watched = set(card_ids)
    statuses = {card_id: "generating" for card_id in watched}
    polls = 0
    while watched:
        cards = [card for card in client.list_cards() if card["id"] in watched]
        for change in diff_video_statuses(statuses, cards):
            if on_change is not None:
                on_change(change)

        seen = {card["id"]: video_status(card) for card in cards}
        for card_id in watched - set(seen):
            statuses.pop(card_id, None)
        statuses.update(seen)
        watched = {card_id for card_id, status in seen.items() if status == "generating"}

        polls += 1
        if not watched or (max_polls is not None and polls >= max_polls):
            break
        sleep(interval)
    return statuses
