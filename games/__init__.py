"""
Game variant registry.

Rule engines are looked up by game type; the session engine never
subclasses them.
"""
from typing import Dict, List

from shared.errors import ResourceNotFound

from .base import GameEnd, GameRules
from .connect4 import ConnectFourRules
from .tictactoe import TicTacToeRules

GAME_REGISTRY: Dict[str, GameRules] = {
    'tictactoe': TicTacToeRules(),
    'connect4': ConnectFourRules(),
}


def get_rules(game_type: str) -> GameRules:
    rules = GAME_REGISTRY.get(game_type)
    if rules is None:
        raise ResourceNotFound("Game type", game_type)
    return rules


def register(rules: GameRules):
    GAME_REGISTRY[rules.game_type] = rules


def supported_games() -> List[dict]:
    return [
        {
            'id': rules.game_type,
            'name': rules.name,
            'min_players': rules.min_players,
            'max_players': rules.max_players,
        }
        for rules in GAME_REGISTRY.values()
    ]


__all__ = [
    'GAME_REGISTRY',
    'GameEnd',
    'GameRules',
    'get_rules',
    'register',
    'supported_games',
]
