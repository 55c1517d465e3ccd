from urllib.parse import parse_qs

from cardex.api_models import CardGenerationParams, PhotoCardGenerationParams
from cardex.services.generation_params import (
    parse_generation_params,
    parse_photo_generation_params,
    serialize_generation_params,
    serialize_photo_generation_params,
)


def _params(**extra):
    values = {
        "game": "pokemon",
        "characterName": "Pika & Chu",
        "characterType": "Electric",
        "backgroundDescription": "A stormy sky",
        "isHolo": True,
        "stats": {"hp": 130, "attackName1": "Thunder Shock", "retreatCost": 1.5},
    }
    values.update(extra)
    return CardGenerationParams.model_validate(values)


def test_serialized_form_uses_camel_case_and_flattened_stats():
    query = parse_qs(serialize_generation_params(_params()))

    assert query["characterName"] == ["Pika & Chu"]
    assert query["isHolo"] == ["true"]
    assert query["isIllustrationRare"] == ["false"]
    assert query["stats.hp"] == ["130"]
    assert "stats" not in query
    # Empty text and unset options are left out.
    assert "characterDescription" not in query
    assert "aiModel" not in query


def test_params_survive_a_round_trip_through_the_query_string():
    params = _params(language="japanese", aiModel="gpt-image-1")

    restored = CardGenerationParams.model_validate(
        parse_generation_params(serialize_generation_params(params))
    )

    assert restored == params


def test_parse_types_stat_values():
    parsed = parse_generation_params("?stats.hp=130&stats.ratio=0.5&stats.inkable=true&stats.cost=%7B2%7D%7BG%7D")

    assert parsed["stats"] == {"hp": 130, "ratio": 0.5, "inkable": True, "cost": "{2}{G}"}


def test_parse_accepts_mappings_and_ignores_unknown_keys():
    parsed = parse_generation_params({"characterName": "Eevee", "isHolo": "false", "page": "Generate"})

    assert parsed == {"characterName": "Eevee", "isHolo": False}


def test_parse_of_an_empty_query_is_empty():
    assert parse_generation_params("") == {}


def test_photo_params_never_carry_the_photo():
    params = PhotoCardGenerationParams.model_validate({
        "characterName": "Rex",
        "characterType": "Fire",
        "styleDescription": "Watercolor",
        "stats": {"hp": 90},
    })

    query = serialize_photo_generation_params(params)
    parsed = parse_photo_generation_params(query + "&photoDataUri=data%3Aimage%2Fpng%3Bbase64%2CAAAA")

    assert "photoDataUri" not in parse_qs(query)
    assert "photoDataUri" not in parsed
    assert PhotoCardGenerationParams.model_validate(parsed) == params


def test_text_stats_are_never_read_as_numbers_or_booleans():
    params = _params(stats={"attackName1": "Infinity", "attackName2": "True", "weakness": "1_000", "resistance": "007"})

    restored = CardGenerationParams.model_validate(
        parse_generation_params(serialize_generation_params(params))
    )

    assert restored == params


def test_stats_are_typed_by_the_game_defaults():
    parsed = parse_generation_params(
        "game=lorcana&stats.inkCost=3&stats.inkable=false&stats.lore=007&stats.bonus=NaN&stats.extra=1_000"
    )

    assert parsed["stats"] == {"inkCost": 3, "inkable": False, "lore": "007", "bonus": "NaN", "extra": "1_000"}


def test_unknown_game_keeps_numeric_stats_strict():
    parsed = parse_generation_params("game=chess&stats.rank=12&stats.rating=1e3&stats.code=0x10")

    assert parsed["stats"] == {"rank": 12, "rating": 1000.0, "code": "0x10"}
