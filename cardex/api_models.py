"""
Pydantic models for API request and response validation.

JSON bodies use camelCase keys; the models expose snake_case attributes and
accept either spelling on input.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .database.models import VideoStatus
from .errors import InvalidRequestError
from .games import Language, TCGGame

StatValue = Union[bool, int, float, str]
ModelT = TypeVar("ModelT", bound=BaseModel)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def validate_request(body: Mapping[str, Any], model: Type[ModelT], required: Iterable[str] = ()) -> ModelT:
    """
    Checks required-field presence, then validates the body against `model`.

    Missing or empty required fields and schema violations both surface as a
    400 that names the offending fields.
    """
    missing = [field for field in required if not body.get(field)]
    if missing:
        raise InvalidRequestError.missing(missing)
    try:
        return model.model_validate(body)
    except ValidationError as e:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in e.errors()})
        raise InvalidRequestError(f"Invalid values for fields: {', '.join(fields)}", missing_fields=fields)


# =============================================================================
# Generation
# =============================================================================

class CardGenerationParams(CamelModel):
    """The structured input used to produce a card image from text."""
    game: TCGGame = TCGGame.POKEMON
    character_name: str = Field(..., min_length=1)
    character_type: str = Field(..., min_length=1)
    background_description: str = ""
    character_description: str = ""
    language: Language = Language.ENGLISH
    is_holo: bool = False
    is_illustration_rare: bool = False
    # Game-specific stats such as hp/attackName1 or power/cost.
    stats: Dict[str, StatValue] = Field(default_factory=dict)
    ai_model: Optional[str] = None


class PhotoCardGenerationParams(CamelModel):
    """The structured input used to turn a photo into a card image."""
    game: TCGGame = TCGGame.POKEMON
    character_name: str = Field(..., min_length=1)
    character_type: str = Field(..., min_length=1)
    style_description: str = ""
    language: Language = Language.ENGLISH
    stats: Dict[str, StatValue] = Field(default_factory=dict)
    ai_model: Optional[str] = None


class GenerateCardRequest(CardGenerationParams):
    user_id: str


class GenerateCardFromPhotoRequest(PhotoCardGenerationParams):
    user_id: str
    photo_data_uri: str

    def params(self) -> PhotoCardGenerationParams:
        """The parameters worth persisting; the photo itself is never stored."""
        return PhotoCardGenerationParams.model_validate(
            self.model_dump(exclude={"user_id", "photo_data_uri"})
        )


class GeneratedCardResponse(CamelModel):
    image_base64: str
    prompt: str


# =============================================================================
# Scanning, summaries and grading
# =============================================================================

class ScanCardRequest(CamelModel):
    user_id: Optional[str] = None
    photo_data_uri: str


class ScannedCardDetails(CamelModel):
    name: Optional[str] = None
    set: Optional[str] = None
    rarity: Optional[str] = None


class ScanCardResponse(CamelModel):
    card_details: ScannedCardDetails


class SummarizeCardRequest(CamelModel):
    user_id: Optional[str] = None
    name: str
    set: str = ""
    rarity: str = ""


class SummarizeCardResponse(CamelModel):
    summary: str


class GradingScale(str, Enum):
    PSA = "PSA"
    BGS = "BGS"
    CGC = "CGC"


class GradeCardRequest(CamelModel):
    user_id: Optional[str] = None
    front_photo_data_uri: str
    back_photo_data_uri: Optional[str] = None
    card_name: Optional[str] = None
    card_set: Optional[str] = None
    game: Optional[TCGGame] = None
    grading_scale: GradingScale = GradingScale.PSA


class CategoryScore(CamelModel):
    score: float = Field(..., ge=0, le=10)
    notes: str = ""


class CenteringScore(CategoryScore):
    front_centering: str = ""
    back_centering: str = ""


class GradingResult(CamelModel):
    grading_scale: GradingScale
    overall_grade: float = Field(..., ge=0, le=10)
    grade_name: str
    centering: CenteringScore
    corners: CategoryScore
    edges: CategoryScore
    surface: CategoryScore
    detailed_analysis: str = ""
    recommendations: List[str] = Field(default_factory=list)
    estimated_value: Optional[str] = None


class GradeCardResponse(CamelModel):
    grading_result: GradingResult


# =============================================================================
# Collection
# =============================================================================

class SaveCardRequest(CamelModel):
    """A generated or scanned card the user chose to keep."""
    name: str = Field(..., min_length=1)
    set_name: str = Field("", alias="set")
    rarity: str = ""
    game: TCGGame = TCGGame.POKEMON
    # Either bare base64 or a data URL.
    image_base64: str = Field(..., min_length=1)
    is_generated: bool = False
    is_photo_generated: bool = False
    prompt: Optional[str] = None
    generation_params: Optional[CardGenerationParams] = None
    photo_generation_params: Optional[PhotoCardGenerationParams] = None


class UpdateCardRequest(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    set_name: Optional[str] = Field(None, alias="set")
    rarity: Optional[str] = None
    game: Optional[TCGGame] = None
    image_base64: Optional[str] = None
    prompt: Optional[str] = None
    generation_params: Optional[CardGenerationParams] = None
    photo_generation_params: Optional[PhotoCardGenerationParams] = None


class CardOut(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    user_id: str
    name: str
    set_name: str = Field("", alias="set")
    rarity: str
    game: str
    image_url: str
    video_url: Optional[str] = None
    is_generated: bool
    is_photo_generated: bool
    prompt: Optional[str] = None
    generation_params: Optional[Dict[str, Any]] = None
    photo_generation_params: Optional[Dict[str, Any]] = None
    video_generation_status: VideoStatus
    video_prompt: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class SaveCardResponse(CamelModel):
    id: str
    image_url: str


class GenerateVideoRequest(CamelModel):
    user_id: str
    card_id: str


class GenerateVideoResponse(CamelModel):
    success: bool
    message: str
    video_generation_status: VideoStatus


# =============================================================================
# Profiles
# =============================================================================

class ProfileSyncRequest(CamelModel):
    email: Optional[str] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = Field(None, alias="photoURL")


class ProfileSyncResponse(CamelModel):
    synced: bool


class ProfileOut(CamelModel):
    id: str
    email: str = ""
    display_name: Optional[str] = None
    photo_url: Optional[str] = Field(None, alias="photoURL")
    # Providers with a stored key; the keys themselves are never returned.
    api_key_providers: List[str] = Field(default_factory=list)


class ApiKeysRequest(CamelModel):
    openai_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None


class ApiKeyStatus(CamelModel):
    has_openai_key: bool
    has_gemini_key: bool
    has_any_key: bool
    # Task name -> whether a usable credential exists for it (user or default).
    tasks: Dict[str, bool]
