"""Capability contract every game variant implements.

The engine never inspects board state; it only calls these hooks.
"""
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol


@dataclass(frozen=True)
class GameEnd:
    """Returned by ``check_end`` when the board is decided."""
    outcome: str  # 'win' or 'draw'
    winner_id: Optional[str] = None
    reason: str = ""


class GameRules(Protocol):
    game_type: str
    name: str
    min_players: int
    max_players: int

    def create_initial_state(self, participants: List[str], config: dict = None) -> Any:
        """Build a fresh board for the ordered participants."""
        ...

    def is_legal(self, state: Any, participant_id: str, move: Any) -> bool:
        """Whether ``move`` may be applied by ``participant_id``."""
        ...

    def apply(self, state: Any, participant_id: str, move: Any) -> Any:
        """Return the state after ``move``; must not mutate ``state``."""
        ...

    def check_end(self, state: Any) -> Optional[GameEnd]:
        ...

    def public_view(self, state: Any) -> dict:
        ...
