"""
Main entry point for the FastAPI application.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests
from fastapi import APIRouter, BackgroundTasks, Body, Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse

# --- Application Service Imports ---
from .api_models import (
    ApiKeysRequest, ApiKeyStatus, CardOut, GenerateCardFromPhotoRequest, GenerateCardRequest,
    GeneratedCardResponse, GenerateVideoRequest, GenerateVideoResponse, GradeCardRequest,
    GradeCardResponse, ProfileOut, ProfileSyncRequest, ProfileSyncResponse, SaveCardRequest,
    SaveCardResponse, ScanCardRequest, ScanCardResponse, SummarizeCardRequest,
    SummarizeCardResponse, UpdateCardRequest, validate_request,
)
from .auth import ensure_same_user, get_current_user_id
from .config import Settings, get_settings
from .database.connection import create_db_and_tables
from .database.models import VideoStatus
from .errors import (
    CardexError, CardNotFoundError, DownloadFailedError, ForbiddenDownloadError, InvalidRequestError,
)
from .logging_config import configure_logging
from .services.ai_gateway import GenerationGateway, generation_gateway
from .services.blob_storage import LocalBlobStorage, blob_access_allowed, blob_storage
from .services.card_store import CardStore, card_store
from .services.card_workflows import CardWorkflows, card_workflows
from .services.video_pipeline import VideoPipeline, video_pipeline

logger = logging.getLogger(__name__)

# --- Required request fields ---
GENERATE_CARD_FIELDS = (
    "userId", "game", "characterName", "characterType", "backgroundDescription", "characterDescription",
)
GENERATE_FROM_PHOTO_FIELDS = ("userId", "photoDataUri", "characterName", "characterType", "styleDescription")
GRADE_CARD_FIELDS = ("frontPhotoDataUri",)
SCAN_CARD_FIELDS = ("photoDataUri",)
SUMMARIZE_CARD_FIELDS = ("name",)
GENERATE_VIDEO_FIELDS = ("userId", "cardId")
SAVE_CARD_FIELDS = ("name", "imageBase64")
# --- End Required request fields ---

DOWNLOAD_TIMEOUT_SECONDS = 30
DOWNLOAD_CHUNK_BYTES = 64 * 1024


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Application startup...")
    create_db_and_tables()
    # Video jobs die with the process that ran them.
    card_store.fail_abandoned_video_jobs()
    settings.blob_root.mkdir(parents=True, exist_ok=True)
    logger.info("Initialization complete.")
    yield
    logger.info("Application shutdown.")


# =============================================================================
# Dependencies
# =============================================================================

def get_app_settings() -> Settings:
    return get_settings()


def get_card_store() -> CardStore:
    return card_store


def get_blob_storage() -> LocalBlobStorage:
    return blob_storage


def get_gateway() -> GenerationGateway:
    return generation_gateway


def get_video_pipeline() -> VideoPipeline:
    return video_pipeline


def get_card_workflows() -> CardWorkflows:
    return card_workflows


def check_download_url(url: str, allowed_hosts: List[str]) -> None:
    """
    Only http(s) URLs on an allow-listed host are proxied. Entries with a port
    must match exactly; entries without one allow only the default ports.
    """
    parsed = urlparse(url)
    try:
        port = parsed.port
    except ValueError:
        raise ForbiddenDownloadError("Only storage URLs are allowed.")
    host = (parsed.hostname or "").lower()
    if parsed.scheme not in ("http", "https") or not host or parsed.username or parsed.password:
        raise ForbiddenDownloadError("Only storage URLs are allowed.")

    allowed = set(allowed_hosts)
    if port is not None and f"{host}:{port}" in allowed:
        return
    if host in allowed and port in (None, 80, 443):
        return
    logger.warning("Rejected download of a URL on host %s.", parsed.netloc)
    raise ForbiddenDownloadError("Only storage URLs are allowed.")


# =============================================================================
# API Router Definition
# =============================================================================
router = APIRouter(prefix="/api/v1", dependencies=[Depends(get_current_user_id)])

# --- Generation Endpoints ---

@router.post("/generate-card", response_model=GeneratedCardResponse, tags=["Generation"])
def handle_generate_card(
    body: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user_id),
    gateway: GenerationGateway = Depends(get_gateway),
):
    request = validate_request(body, GenerateCardRequest, GENERATE_CARD_FIELDS)
    ensure_same_user(request.user_id, user_id)
    result = gateway.generate_card_image(user_id, request)
    return GeneratedCardResponse(image_base64=result.image_base64, prompt=result.prompt)


@router.post("/generate-card-from-photo", response_model=GeneratedCardResponse, tags=["Generation"])
def handle_generate_card_from_photo(
    body: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user_id),
    gateway: GenerationGateway = Depends(get_gateway),
):
    request = validate_request(body, GenerateCardFromPhotoRequest, GENERATE_FROM_PHOTO_FIELDS)
    ensure_same_user(request.user_id, user_id)
    result = gateway.generate_card_from_photo(user_id, request)
    return GeneratedCardResponse(image_base64=result.image_base64, prompt=result.prompt)


@router.post("/grade-card", response_model=GradeCardResponse, tags=["Vision"])
def handle_grade_card(
    body: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user_id),
    gateway: GenerationGateway = Depends(get_gateway),
):
    """Grades a card's condition from one or two photos on the PSA, BGS or CGC scale."""
    request = validate_request(body, GradeCardRequest, GRADE_CARD_FIELDS)
    ensure_same_user(request.user_id, user_id)
    return GradeCardResponse(grading_result=gateway.grade_card(user_id, request))


@router.post("/scan-card", response_model=ScanCardResponse, tags=["Vision"])
def handle_scan_card(
    body: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user_id),
    gateway: GenerationGateway = Depends(get_gateway),
):
    request = validate_request(body, ScanCardRequest, SCAN_CARD_FIELDS)
    ensure_same_user(request.user_id, user_id)
    return ScanCardResponse(card_details=gateway.scan_card(user_id, request.photo_data_uri))


@router.post("/summarize-card", response_model=SummarizeCardResponse, tags=["Vision"])
def handle_summarize_card(
    body: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user_id),
    gateway: GenerationGateway = Depends(get_gateway),
):
    request = validate_request(body, SummarizeCardRequest, SUMMARIZE_CARD_FIELDS)
    ensure_same_user(request.user_id, user_id)
    return SummarizeCardResponse(summary=gateway.summarize_card(user_id, request))


@router.post("/generate-video", response_model=GenerateVideoResponse, tags=["Generation"])
def handle_generate_video(
    background_tasks: BackgroundTasks,
    body: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user_id),
    pipeline: VideoPipeline = Depends(get_video_pipeline),
):
    """
    Marks the card as generating and starts the video job in the background.
    Clients follow the job by re-fetching the card.
    """
    request = validate_request(body, GenerateVideoRequest, GENERATE_VIDEO_FIELDS)
    ensure_same_user(request.user_id, user_id)
    pipeline.request_video_generation(user_id, request.card_id)
    background_tasks.add_task(pipeline.run_video_generation, user_id, request.card_id)
    return GenerateVideoResponse(
        success=True,
        message="Video generation started successfully",
        video_generation_status=VideoStatus.GENERATING,
    )


# --- Download Proxy ---

@router.get("/download", tags=["Storage"])
def handle_download(
    url: Optional[str] = None,
    settings: Settings = Depends(get_app_settings),
    storage: LocalBlobStorage = Depends(get_blob_storage),
):
    """Re-serves a stored file as an attachment; only allow-listed storage hosts are fetched."""
    if not url:
        raise InvalidRequestError.missing(["url"])
    check_download_url(url, settings.effective_download_hosts)

    headers = {"Content-Disposition": "attachment", "Cache-Control": "public, max-age=31536000"}
    if storage.owns(url):
        if not storage.readable(url):
            raise ForbiddenDownloadError("You do not have access to this file.")
        content = storage.read(url)
        return Response(content=content, media_type=storage.media_type(storage.path_for(url)), headers=headers)

    try:
        upstream = requests.get(
            url,
            stream=True,
            timeout=DOWNLOAD_TIMEOUT_SECONDS,
            allow_redirects=False,
            headers={"User-Agent": "Cardex-Download-Proxy/1.0"},
        )
    except requests.RequestException as e:
        raise DownloadFailedError("Failed to download file", detail=str(e)) from e
    if upstream.status_code != 200:
        upstream.close()
        raise DownloadFailedError("Failed to download file", detail=f"upstream status {upstream.status_code}")

    media_type = upstream.headers.get("content-type", "application/octet-stream")
    return StreamingResponse(upstream.iter_content(DOWNLOAD_CHUNK_BYTES), media_type=media_type, headers=headers)


# --- Collection Endpoints ---

@router.get("/cards", response_model=List[CardOut], tags=["Collection"])
def handle_list_cards(
    user_id: str = Depends(get_current_user_id),
    store: CardStore = Depends(get_card_store),
):
    return [CardOut.model_validate(card) for card in store.get_cards(user_id)]


@router.post("/cards", response_model=SaveCardResponse, status_code=201, tags=["Collection"])
def handle_save_card(
    body: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user_id),
    workflows: CardWorkflows = Depends(get_card_workflows),
):
    request = validate_request(body, SaveCardRequest, SAVE_CARD_FIELDS)
    card = workflows.save_card(user_id, request)
    return SaveCardResponse(id=card.id, image_url=card.image_url)


@router.get("/cards/{card_id}", response_model=CardOut, tags=["Collection"])
def handle_get_card(
    card_id: str,
    user_id: str = Depends(get_current_user_id),
    store: CardStore = Depends(get_card_store),
):
    card = store.get_card(user_id, card_id)
    if card is None:
        raise CardNotFoundError(card_id)
    return CardOut.model_validate(card)


@router.patch("/cards/{card_id}", response_model=CardOut, tags=["Collection"])
def handle_update_card(
    card_id: str,
    body: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user_id),
    workflows: CardWorkflows = Depends(get_card_workflows),
):
    request = validate_request(body, UpdateCardRequest)
    return CardOut.model_validate(workflows.edit_card(user_id, card_id, request))


@router.delete("/cards/{card_id}", status_code=204, tags=["Collection"])
def handle_delete_card(
    card_id: str,
    user_id: str = Depends(get_current_user_id),
    workflows: CardWorkflows = Depends(get_card_workflows),
):
    workflows.delete_card(user_id, card_id)
    return Response(status_code=204)


# --- Profile Endpoints ---

@router.post("/profile/sync", response_model=ProfileSyncResponse, tags=["Profile"])
def handle_profile_sync(
    body: Optional[Dict[str, Any]] = Body(None),
    user_id: str = Depends(get_current_user_id),
    store: CardStore = Depends(get_card_store),
):
    """Sign-in upsert of the caller's profile. A failed write never fails the sign-in."""
    try:
        request = validate_request(body or {}, ProfileSyncRequest)
        store.upsert_user_profile(user_id, request.email, request.display_name, request.photo_url)
    except CardexError as e:
        logger.error("Profile sync failed for user %s: %s (%s)", user_id, e.message, e.detail)
        return ProfileSyncResponse(synced=False)
    return ProfileSyncResponse(synced=True)


@router.get("/profile", response_model=ProfileOut, tags=["Profile"])
def handle_get_profile(
    user_id: str = Depends(get_current_user_id),
    store: CardStore = Depends(get_card_store),
):
    profile = store.get_user_profile(user_id)
    if profile is None:
        return ProfileOut(id=user_id)
    return ProfileOut(
        id=profile.id,
        email=profile.email,
        display_name=profile.display_name,
        photo_url=profile.photo_url,
        api_key_providers=sorted(profile.api_keys or {}),
    )


@router.put("/profile/api-keys", response_model=ApiKeyStatus, tags=["Profile"])
def handle_update_api_keys(
    body: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user_id),
    store: CardStore = Depends(get_card_store),
    gateway: GenerationGateway = Depends(get_gateway),
):
    """Stores the given provider keys; keys left out of the body are kept, empty ones removed."""
    request = validate_request(body, ApiKeysRequest)
    keys = store.get_user_api_keys(user_id)
    if "openai_api_key" in request.model_fields_set:
        keys["openai"] = request.openai_api_key
    if "gemini_api_key" in request.model_fields_set:
        keys["gemini"] = request.gemini_api_key
    store.update_user_api_keys(user_id, keys)
    return ApiKeyStatus(**gateway.credential_status(user_id))


@router.get("/profile/api-key-status", response_model=ApiKeyStatus, tags=["Profile"])
def handle_api_key_status(
    user_id: str = Depends(get_current_user_id),
    gateway: GenerationGateway = Depends(get_gateway),
):
    return ApiKeyStatus(**gateway.credential_status(user_id))


# =============================================================================
# Main FastAPI Application
# =============================================================================
app = FastAPI(
    title="Cardex API",
    description="API for generating, grading and collecting AI-made trading cards.",
    version="0.1.0",
    lifespan=lifespan,
)
app.include_router(router)


@app.exception_handler(CardexError)
async def handle_cardex_error(request: Request, exc: CardexError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    fields = sorted({".".join(str(part) for part in err["loc"] if part != "body") or "body" for err in exc.errors()})
    error = InvalidRequestError(f"Invalid values for fields: {', '.join(fields)}", missing_fields=fields)
    return JSONResponse(status_code=400, content=error.to_payload())


@app.get("/blobs/{path:path}", tags=["Storage"])
def serve_blob(
    path: str,
    token: Optional[str] = None,
    storage: LocalBlobStorage = Depends(get_blob_storage),
):
    """Serves stored files under the storage access rules."""
    if not blob_access_allowed(path, token, storage.signing_secret):
        raise ForbiddenDownloadError("You do not have access to this file.")
    target = storage.file_for(path)
    if not target.is_file():
        raise HTTPException(status_code=404, detail="File not found.")
    return FileResponse(target, media_type=storage.media_type(path))


@app.get("/health", tags=["Status"])
def health_check(): return {"status": "ok"}
