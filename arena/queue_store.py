import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from shared.errors import ValidationError

logger = logging.getLogger(__name__)


class MatchType(str, Enum):
    CASUAL = "casual"
    RANKED = "ranked"

    @classmethod
    def parse(cls, value) -> "MatchType":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Unknown match type: {value!r}")


@dataclass(frozen=True)
class Entrant:
    participant_id: str
    game_type: str
    match_type: MatchType
    skill_rating: int
    join_timestamp: float
    preferences: dict = field(default_factory=dict)
    region: str = "global"
    liveness_token: Optional[str] = None
    display_name: Optional[str] = None

    def wait_seconds(self, now: float) -> float:
        return max(0.0, now - self.join_timestamp)

    def to_dict(self) -> dict:
        return {
            'participant_id': self.participant_id,
            'display_name': self.display_name,
            'game_type': self.game_type,
            'match_type': self.match_type.value,
            'skill_rating': self.skill_rating,
            'join_timestamp': self.join_timestamp,
            'preferences': dict(self.preferences),
            'region': self.region,
        }


class _Partition:
    def __init__(self):
        self.lock = threading.Lock()
        self.entrants: Dict[str, Entrant] = {}


class QueueStore:
    """
    Pending entrants, partitioned by (game type, match type).

    Join and leave touch several partitions of one game type, so they are
    serialised by the membership lock and then take each partition lock in
    turn. Claims only take the partition lock.
    """

    def __init__(self, connections=None, clock: Callable[[], float] = time.time):
        self.connections = connections
        self._clock = clock
        self._membership_lock = threading.Lock()
        self._partitions_lock = threading.Lock()
        self._partitions: Dict[Tuple[str, MatchType], _Partition] = {}

    def _partition(self, game_type: str, match_type: MatchType, create: bool = False) -> Optional[_Partition]:
        key = (game_type, match_type)
        with self._partitions_lock:
            partition = self._partitions.get(key)
            if partition is None and create:
                partition = self._partitions[key] = _Partition()
            return partition

    def _game_partitions(self, game_type: Optional[str]) -> List[_Partition]:
        with self._partitions_lock:
            return [p for (gt, _), p in self._partitions.items() if game_type is None or gt == game_type]

    def join(
        self,
        participant_id: str,
        game_type: str,
        match_type,
        skill_rating: int,
        preferences: dict = None,
        region: str = "global",
        display_name: str = None,
    ) -> Entrant:
        if not participant_id or not isinstance(participant_id, str):
            raise ValidationError("participant_id is required")
        if not game_type or not isinstance(game_type, str):
            raise ValidationError("game_type is required")
        match_type = MatchType.parse(match_type)
        if isinstance(skill_rating, bool) or not isinstance(skill_rating, int) or skill_rating < 0:
            raise ValidationError("skill_rating must be a non-negative integer")
        if preferences is not None and not isinstance(preferences, dict):
            raise ValidationError("preferences must be an object")

        token = self.connections.channel_for(participant_id) if self.connections else None
        with self._membership_lock:
            for partition in self._game_partitions(game_type):
                with partition.lock:
                    displaced = partition.entrants.pop(participant_id, None)
                if displaced is not None:
                    logger.info(f"{participant_id} displaced from {game_type}/{displaced.match_type.value}")

            entrant = Entrant(
                participant_id=participant_id,
                game_type=game_type,
                match_type=match_type,
                skill_rating=skill_rating,
                join_timestamp=self._clock(),
                preferences=dict(preferences or {}),
                region=region or "global",
                liveness_token=token,
                display_name=display_name,
            )
            partition = self._partition(game_type, match_type, create=True)
            with partition.lock:
                partition.entrants[participant_id] = entrant

        logger.info(f"{participant_id} joined {game_type}/{match_type.value} queue with rating {skill_rating}")
        return entrant

    def leave(self, participant_id: str, game_type: str = None) -> List[Entrant]:
        removed = []
        with self._membership_lock:
            for partition in self._game_partitions(game_type):
                with partition.lock:
                    entrant = partition.entrants.pop(participant_id, None)
                if entrant is not None:
                    removed.append(entrant)
        if removed:
            logger.info(f"{participant_id} left {len(removed)} queue(s)")
        return removed

    def snapshot(self, game_type: str, match_type) -> List[Entrant]:
        """Live entrants oldest first; expired ones are evicted on the way."""
        partition = self._partition(game_type, MatchType.parse(match_type))
        if partition is None:
            return []

        with partition.lock:
            if self.connections is not None:
                expired = [
                    pid for pid in partition.entrants
                    if not self.connections.is_connected(pid)
                ]
                for pid in expired:
                    del partition.entrants[pid]
                    logger.info(f"{pid} has no live connection, removed from {game_type} queue")
            entrants = list(partition.entrants.values())

        return sorted(entrants, key=lambda e: e.join_timestamp)

    def claim(
        self,
        game_type: str,
        match_type,
        participant_ids: List[str],
        expected: List[Entrant] = None,
    ) -> Optional[List[Entrant]]:
        """Remove all of ``participant_ids`` at once, or none of them.

        With ``expected``, each queued entry must still equal the one the
        caller saw in its snapshot; a rejoin in between fails the claim.
        """
        partition = self._partition(game_type, MatchType.parse(match_type))
        if partition is None:
            return None

        with partition.lock:
            if not all(pid in partition.entrants for pid in participant_ids):
                return None
            if expected is not None:
                for entrant in expected:
                    if partition.entrants[entrant.participant_id] != entrant:
                        return None
            return [partition.entrants.pop(pid) for pid in participant_ids]

    def release(self, entrants: List[Entrant]) -> List[Entrant]:
        """Put claimed entrants back, keeping their original join time."""
        restored = []
        with self._membership_lock:
            for entrant in entrants:
                if self.entrants_for(entrant.participant_id, entrant.game_type):
                    continue  # rejoined meanwhile
                partition = self._partition(entrant.game_type, entrant.match_type, create=True)
                with partition.lock:
                    partition.entrants[entrant.participant_id] = entrant
                restored.append(entrant)
        return restored

    def entrants_for(self, participant_id: str, game_type: str = None) -> List[Entrant]:
        found = []
        for partition in self._game_partitions(game_type):
            with partition.lock:
                entrant = partition.entrants.get(participant_id)
            if entrant is not None:
                found.append(entrant)
        return found

    def size(self, game_type: str, match_type) -> int:
        partition = self._partition(game_type, MatchType.parse(match_type))
        if partition is None:
            return 0
        with partition.lock:
            return len(partition.entrants)

    def status(self, game_type: str, match_type) -> dict:
        match_type = MatchType.parse(match_type)
        partition = self._partition(game_type, match_type)
        ratings = []
        if partition is not None:
            with partition.lock:
                ratings = [e.skill_rating for e in partition.entrants.values()]
        return {
            'game_type': game_type,
            'match_type': match_type.value,
            'players_in_queue': len(ratings),
            'average_skill': round(sum(ratings) / len(ratings)) if ratings else None,
        }

    def active_partitions(self) -> List[Tuple[str, MatchType]]:
        with self._partitions_lock:
            items = list(self._partitions.items())
        active = []
        for key, partition in items:
            with partition.lock:
                if partition.entrants:
                    active.append(key)
        return active
