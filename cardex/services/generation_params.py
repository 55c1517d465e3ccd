"""
Round-trips generation parameters through URL query strings.

The UI links a saved card to a pre-filled "edit & regenerate" form by putting
the card's generation parameters in the query string. Keys are the camelCase
field names; game stats are flattened to `stats.<name>`; booleans are written
as `true`/`false`. The source photo of a photo card is never serialized.

Stats are typed on the way back by the game's default stats: a stat whose
default is text stays text, so a name like "007" or "Infinity" survives.
Stats the game does not define are only read as numbers when they are
written the way `str()` writes them.
"""

import re
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import parse_qsl, urlencode

from pydantic import BaseModel

from ..api_models import CardGenerationParams, PhotoCardGenerationParams
from ..games import TCGGame, get_game_config

QueryInput = Union[str, Mapping[str, str]]

STATS_PREFIX = "stats."

_INTEGER = re.compile(r"^-?(0|[1-9][0-9]*)$")
_DECIMAL = re.compile(r"^-?(0|[1-9][0-9]*)(\.[0-9]+)?([eE][-+]?[0-9]+)?$")


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _decode_number(raw: str) -> Optional[Union[int, float]]:
    if _INTEGER.match(raw):
        return int(raw)
    if _DECIMAL.match(raw):
        return float(raw)
    return None


def _decode_stat(raw: str, default: Any = None) -> Any:
    """Types a stat value like the game's default for it; unknown stats by their spelling."""
    if isinstance(default, str):
        return raw
    if isinstance(default, bool) or default is None:
        if raw in ("true", "false"):
            return raw == "true"
        if isinstance(default, bool):
            return raw
    number = _decode_number(raw)
    return raw if number is None else number


def _default_stats(game: Optional[str]) -> Dict[str, Any]:
    try:
        return get_game_config(TCGGame(game or TCGGame.POKEMON)).default_stats
    except ValueError:
        return {}


def _serialize(params: BaseModel) -> str:
    data = params.model_dump(mode="json", by_alias=True, exclude_none=True)
    stats = data.pop("stats", {}) or {}
    pairs = [(key, _encode_value(value)) for key, value in data.items() if value != ""]
    pairs.extend((f"{STATS_PREFIX}{key}", _encode_value(value)) for key, value in stats.items())
    return urlencode(pairs)


def _parse(query: QueryInput, known_fields: Dict[str, Any], boolean_fields: set) -> Dict[str, Any]:
    items = parse_qsl(query.lstrip("?"), keep_blank_values=False) if isinstance(query, str) else query.items()

    parsed: Dict[str, Any] = {}
    raw_stats: Dict[str, str] = {}
    for key, raw in items:
        if key.startswith(STATS_PREFIX):
            raw_stats[key[len(STATS_PREFIX):]] = raw
        elif key in boolean_fields:
            parsed[key] = raw.lower() == "true"
        elif key in known_fields:
            parsed[key] = raw
    if raw_stats:
        defaults = _default_stats(parsed.get("game"))
        parsed["stats"] = {name: _decode_stat(raw, defaults.get(name)) for name, raw in raw_stats.items()}
    return parsed


def _aliases(model: type) -> Dict[str, Any]:
    return {field.alias or name: field for name, field in model.model_fields.items()}


def serialize_generation_params(params: CardGenerationParams) -> str:
    return _serialize(params)


def parse_generation_params(query: QueryInput) -> Dict[str, Any]:
    """
    Reads parameters written by `serialize_generation_params`.

    Returns a partial camelCase mapping suitable for pre-filling a form;
    unknown keys are ignored and missing ones are simply absent.
    """
    return _parse(query, _aliases(CardGenerationParams), {"isHolo", "isIllustrationRare"})


def serialize_photo_generation_params(params: PhotoCardGenerationParams) -> str:
    return _serialize(params)


def parse_photo_generation_params(query: QueryInput) -> Dict[str, Any]:
    return _parse(query, _aliases(PhotoCardGenerationParams), set())
