"""
Prompt assembly for the generation, vision and grading models.

Each builder turns validated request models into the text sent to a provider.
Game-specific card layouts are filled from the card's stats, falling back to
the catalogue defaults of its game.
"""

from typing import Any, Dict, Mapping, Optional

from ..api_models import (
    CardGenerationParams,
    GradeCardRequest,
    PhotoCardGenerationParams,
    SummarizeCardRequest,
)
from ..games import Language, TCGGame, get_game_config

# =============================================================================
# Card layouts
# =============================================================================

_LAYOUTS: Dict[TCGGame, str] = {
    TCGGame.POKEMON: (
        'The card layout includes: the top left corner displays "{name}" in a stylized font, '
        'with "HP {hp}" next to it in red. Below the name, the {type} type symbol is clearly visible. '
        "The first attack is {attackName1}, dealing {attackDamage1} damage. The second attack is "
        "{attackName2}, dealing {attackDamage2} damage. Weakness is {weakness} (x2), resistance is "
        "{resistance} (-30) and the retreat cost shows {retreatCost} energy symbols. "
        "The overall style matches official Pokémon TCG card design."
    ),
    TCGGame.ONEPIECE: (
        'The card follows One Piece Card Game design: the character name "{name}" appears at the top, '
        "with a {type} color indicator. The cost of {cost} is in the top left corner, the power of "
        "{power} is shown prominently and the counter value of {counter} appears at the bottom."
    ),
    TCGGame.LORCANA: (
        'The card follows Disney Lorcana design: "{name}" appears at the top and the {type} ink color '
        "sets the color scheme. The ink cost of {inkCost} sits in a circle in the top left corner. "
        "Strength {strength}, willpower {willpower} and lore {lore} are clearly displayed."
    ),
    TCGGame.MAGIC: (
        'The card follows Magic: The Gathering design: "{name}" appears as the card name at the top '
        "with the mana cost {manaCost} in the top right corner and a {type} color frame. "
        'The type line reads "{cardType} - {subType}" and the power/toughness is {powerToughness}.'
    ),
    TCGGame.DRAGONBALL: (
        'The card follows Dragon Ball Super Card Game design: the character name "{name}" appears at '
        "the top with a {type} color border. The combat power of {combatPower} is in the top right "
        'corner, the combo cost shows {comboCost} and combo energy {comboEnergy}. The era "{era}" is indicated.'
    ),
}


class _Defaults(dict):
    """Leaves unknown placeholders readable instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return key


def _card_layout(game: TCGGame, name: str, card_type: str, stats: Mapping[str, Any]) -> str:
    config = get_game_config(game)
    values = _Defaults({**config.default_stats, **stats, "name": name, "type": card_type})
    return _LAYOUTS[config.id].format_map(values)


def _language_note(language: Language) -> str:
    if language == Language.ENGLISH:
        return ""
    return f" All card text, attack names and descriptions should be written in {language.value}."


# =============================================================================
# Builders
# =============================================================================

def build_card_prompt(params: CardGenerationParams) -> str:
    config = get_game_config(params.game)
    finish = []
    if params.is_holo:
        finish.append("a holographic foil finish")
    if params.is_illustration_rare:
        finish.append("full-art illustration rare artwork that extends across the whole card")
    finish_text = f" The card has {' and '.join(finish)}." if finish else ""

    return (
        f"A {config.name} trading card featuring {params.character_name}, a {params.character_type} "
        f"character. {params.character_description} The background shows {params.background_description or 'a fitting scene'}. "
        f"{_card_layout(params.game, params.character_name, params.character_type, params.stats)}"
        f"{finish_text}{_language_note(params.language)}"
    ).strip()


def build_photo_card_prompt(params: PhotoCardGenerationParams) -> str:
    config = get_game_config(params.game)
    style = params.style_description or "the official art style of the game"
    return (
        f"Transform the subject of the provided photo into {params.character_name}, a "
        f"{params.character_type} character on a {config.name} trading card, drawn in {style}. "
        "Keep the subject recognizable. "
        f"{_card_layout(params.game, params.character_name, params.character_type, params.stats)}"
        f"{_language_note(params.language)}"
    ).strip()


def build_video_prompt(card_name: str, card_type: Optional[str], game: str) -> str:
    try:
        game_name = get_game_config(TCGGame(game)).name
    except ValueError:
        game_name = "trading card"
    return (
        f"Bring this {game_name} card of {card_name} to life: the {card_type or 'Normal'} type character "
        "moves inside the card frame with subtle energy effects and a slow camera push-in, "
        "while the card border, text and stats stay still and legible."
    )


SCAN_SYSTEM_PROMPT = (
    "You identify trading cards from photos. Respond with a JSON object with the keys "
    '"name", "set" and "rarity". Use null for anything that cannot be read from the card.'
)

SUMMARY_SYSTEM_PROMPT = (
    "You summarize trading cards for collectors. Respond with a JSON object with a single "
    '"summary" key holding two or three sentences.'
)


def build_summary_prompt(request: SummarizeCardRequest) -> str:
    return (
        "Summarize the key information of the following card, including its name, set, and rarity:\n\n"
        f"Name: {request.name}\nSet: {request.set}\nRarity: {request.rarity}"
    )


GRADING_SYSTEM_PROMPT = (
    "You are a professional trading card grader. Grade the card in the photos on the requested "
    "scale from 1 to 10 (half points allowed). Respond with a JSON object with the keys "
    '"gradingScale", "overallGrade", "gradeName", "centering" (score, frontCentering, '
    'backCentering, notes), "corners", "edges", "surface" (each with score and notes), '
    '"detailedAnalysis", "recommendations" (a list of strings) and optionally "estimatedValue".'
)


def build_grading_prompt(request: GradeCardRequest) -> str:
    lines = [f"Grade this card on the {request.grading_scale.value} scale."]
    if request.card_name:
        lines.append(f"Card name: {request.card_name}")
    if request.card_set:
        lines.append(f"Set: {request.card_set}")
    if request.game:
        lines.append(f"Game: {get_game_config(request.game).name}")
    if request.back_photo_data_uri:
        lines.append("The first image is the front of the card, the second is the back.")
    else:
        lines.append("Only the front of the card is available; estimate back centering as 'N/A'.")
    return "\n".join(lines)
