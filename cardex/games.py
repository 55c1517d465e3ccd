"""
Catalogue of the trading card games a card can be generated for.
"""

from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel


class TCGGame(str, Enum):
    POKEMON = "pokemon"
    ONEPIECE = "onepiece"
    LORCANA = "lorcana"
    MAGIC = "magic"
    DRAGONBALL = "dragonball"


class Language(str, Enum):
    ENGLISH = "english"
    JAPANESE = "japanese"
    CHINESE = "chinese"
    KOREAN = "korean"
    SPANISH = "spanish"
    FRENCH = "french"
    GERMAN = "german"
    ITALIAN = "italian"


class GameConfig(BaseModel):
    id: TCGGame
    name: str
    types: List[str]
    rarities: List[str]
    default_stats: Dict[str, Any]


TCG_GAMES: Dict[TCGGame, GameConfig] = {
    TCGGame.POKEMON: GameConfig(
        id=TCGGame.POKEMON,
        name="Pokémon TCG",
        types=[
            "Normal", "Fire", "Water", "Electric", "Grass", "Ice", "Fighting", "Poison",
            "Ground", "Flying", "Psychic", "Bug", "Rock", "Ghost", "Dragon", "Dark",
            "Steel", "Fairy",
        ],
        rarities=["Common", "Uncommon", "Rare", "Holo Rare", "Ultra Rare", "Secret Rare"],
        default_stats={
            "hp": 130, "attackName1": "Quick Attack", "attackDamage1": 60,
            "attackName2": "Special Move", "attackDamage2": 90,
            "weakness": "Fighting", "resistance": "Psychic", "retreatCost": 2,
        },
    ),
    TCGGame.ONEPIECE: GameConfig(
        id=TCGGame.ONEPIECE,
        name="One Piece Card Game",
        types=["Red", "Green", "Blue", "Purple", "Black", "Yellow"],
        rarities=["Common", "Uncommon", "Rare", "Super Rare", "Secret Rare", "Leader"],
        default_stats={"power": 5000, "cost": 4, "counter": 1000, "color": "Red"},
    ),
    TCGGame.LORCANA: GameConfig(
        id=TCGGame.LORCANA,
        name="Disney Lorcana",
        types=["Amber", "Amethyst", "Emerald", "Ruby", "Sapphire", "Steel"],
        rarities=["Common", "Uncommon", "Rare", "Super Rare", "Legendary", "Enchanted"],
        default_stats={"inkCost": 3, "strength": 2, "willpower": 3, "lore": 2, "inkable": True},
    ),
    TCGGame.MAGIC: GameConfig(
        id=TCGGame.MAGIC,
        name="Magic: The Gathering",
        types=["White", "Blue", "Black", "Red", "Green", "Colorless", "Multicolor"],
        rarities=["Common", "Uncommon", "Rare", "Mythic Rare"],
        default_stats={
            "manaCost": "{2}{G}", "cardType": "Creature",
            "subType": "Elf Warrior", "powerToughness": "3/3",
        },
    ),
    TCGGame.DRAGONBALL: GameConfig(
        id=TCGGame.DRAGONBALL,
        name="Dragon Ball Super Card Game",
        types=["Red", "Blue", "Green", "Yellow"],
        rarities=["Common", "Uncommon", "Rare", "Super Rare", "Special Rare", "Secret Rare"],
        default_stats={
            "combatPower": 20000, "comboCost": 1, "comboEnergy": 5000,
            "era": "Universe Survival Saga",
        },
    ),
}


def get_game_config(game: TCGGame) -> GameConfig:
    return TCG_GAMES[TCGGame(game)]
