import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Tuple

from .queue_store import Entrant, MatchType, QueueStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchGroup:
    game_type: str
    match_type: MatchType
    entrants: Tuple[Entrant, ...]

    @property
    def participant_ids(self) -> List[str]:
        return [e.participant_id for e in self.entrants]

    @property
    def average_skill(self) -> int:
        return round(sum(e.skill_rating for e in self.entrants) / len(self.entrants))

    @property
    def skill_spread(self) -> int:
        ratings = [e.skill_rating for e in self.entrants]
        return max(ratings) - min(ratings)


class PairingEngine:
    """
    Oldest-first greedy pairing.

    Each unclaimed entrant, in join order, anchors a candidate group and
    admits later entrants compatible with the anchor until the group is full.
    Only exact-size groups are emitted. Ranked compatibility is a skill gap
    that widens with the anchor's wait time::

        threshold = base + floor(wait / interval) * step
    """

    def __init__(
        self,
        base_threshold: int = 100,
        expansion_interval: int = 30,
        expansion_step: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        self.base_threshold = base_threshold
        self.expansion_interval = expansion_interval
        self.expansion_step = expansion_step
        self._clock = clock

    def threshold(self, anchor: Entrant, now: float) -> int:
        expansions = int(anchor.wait_seconds(now) // self.expansion_interval)
        return self.base_threshold + expansions * self.expansion_step

    def compatible(self, anchor: Entrant, candidate: Entrant, match_type: MatchType, now: float) -> bool:
        if match_type == MatchType.CASUAL:
            return True
        return abs(anchor.skill_rating - candidate.skill_rating) <= self.threshold(anchor, now)

    def find_groups(
        self,
        entrants: List[Entrant],
        required_players: int,
        match_type,
        now: float = None,
    ) -> List[MatchGroup]:
        match_type = MatchType.parse(match_type)
        now = self._clock() if now is None else now
        ordered = sorted(entrants, key=lambda e: e.join_timestamp)

        groups = []
        claimed = set()
        for i, anchor in enumerate(ordered):
            if len(ordered) - len(claimed) < required_players:
                break
            if anchor.participant_id in claimed:
                continue

            group = [anchor]
            for candidate in ordered[i + 1:]:
                if len(group) == required_players:
                    break
                if candidate.participant_id in claimed:
                    continue
                if self.compatible(anchor, candidate, match_type, now):
                    group.append(candidate)

            if len(group) == required_players:
                claimed.update(e.participant_id for e in group)
                groups.append(MatchGroup(anchor.game_type, match_type, tuple(group)))

        return groups

    def pair_partition(
        self,
        queue_store: QueueStore,
        game_type: str,
        match_type,
        required_players: int,
    ) -> List[MatchGroup]:
        """Scan one partition and claim every group found."""
        match_type = MatchType.parse(match_type)
        entrants = queue_store.snapshot(game_type, match_type)
        if len(entrants) < required_players:
            return []

        committed = []
        for group in self.find_groups(entrants, required_players, match_type):
            claimed = queue_store.claim(game_type, match_type, group.participant_ids, expected=group.entrants)
            if claimed is None:
                logger.info(f"Group {group.participant_ids} changed before commit, skipping")
                continue
            logger.info(
                f"Paired {' vs '.join(group.participant_ids)} in {game_type}/{match_type.value} "
                f"(spread {group.skill_spread})"
            )
            committed.append(group)
        return committed
