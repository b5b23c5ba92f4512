import math
import logging
import threading
from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, List, Optional, Tuple

from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from shared.errors import TransientInfrastructureError

logger = logging.getLogger(__name__)

ACTUAL_SCORES = {
    'win': 1.0,
    'draw': 0.5,
    'loss': 0.0,
    'forfeit': 0.0,
    'disconnect': 0.0,
    'timeout': 0.0,
}


@dataclass(frozen=True)
class RatingInput:
    participant_id: str
    prior_rating: int
    outcome: str
    score: Optional[float] = None


@dataclass
class RatingCommit:
    session_id: str
    status: str  # 'applied' or 'pending'
    new_ratings: Dict[str, int]
    changes: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'session_id': self.session_id,
            'status': self.status,
            'new_ratings': dict(self.new_ratings),
            'changes': dict(self.changes),
            'error': self.error,
        }


class RatingEngine:
    """
    ELO rating updates for concluded matches.
    K-factor of 32 and a floor of 500 by default.

    Two participants use the standard ELO formula. With more seats the
    default ``pairwise`` mode plays every pair as a two-player game scaled
    by K/(n-1); ``flat`` keeps the fixed +0.6K / -0.4K adjustment.
    """

    def __init__(
        self,
        ledger=None,
        k_factor: int = 32,
        rating_floor: int = 500,
        multiplayer_mode: str = 'pairwise',
        retry_attempts: int = 3,
        retry_wait: float = 0.5,
        result_stream=None,
    ):
        if multiplayer_mode not in ('pairwise', 'flat'):
            raise ValueError(f"Unknown multiplayer rating mode: {multiplayer_mode}")
        self.ledger = ledger
        self.k_factor = k_factor
        self.rating_floor = rating_floor
        self.multiplayer_mode = multiplayer_mode
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait
        self.result_stream = result_stream
        self._pending_lock = threading.Lock()
        self._pending: Dict[str, dict] = {}

    def expected_score(self, rating_a: int, rating_b: int) -> float:
        return 1 / (1 + math.pow(10, (rating_b - rating_a) / 400))

    def actual_score(self, outcome: str) -> float:
        return ACTUAL_SCORES.get(outcome, 0.0)

    def calculate_win_probability(self, rating_a: int, rating_b: int) -> Tuple[float, float]:
        """
        Win probabilities for two participants.

        Returns:
            (prob_a_wins, prob_b_wins) as floats between 0 and 1
        """
        expected_a = self.expected_score(rating_a, rating_b)
        return (expected_a, 1 - expected_a)

    def _floor(self, rating: float) -> int:
        return max(self.rating_floor, round(rating))

    def calculate_new_ratings(self, results: List[RatingInput]) -> Dict[str, int]:
        if len(results) < 2:
            return {r.participant_id: r.prior_rating for r in results}

        if len(results) == 2:
            a, b = results
            new_a = a.prior_rating + self.k_factor * (
                self.actual_score(a.outcome) - self.expected_score(a.prior_rating, b.prior_rating))
            new_b = b.prior_rating + self.k_factor * (
                self.actual_score(b.outcome) - self.expected_score(b.prior_rating, a.prior_rating))
            return {a.participant_id: self._floor(new_a), b.participant_id: self._floor(new_b)}

        if self.multiplayer_mode == 'flat':
            return self._flat_ratings(results)
        return self._pairwise_ratings(results)

    def _flat_ratings(self, results: List[RatingInput]) -> Dict[str, int]:
        gain = round(self.k_factor * 0.6)
        loss = round(self.k_factor * 0.4)
        return {
            r.participant_id: self._floor(r.prior_rating + (gain if r.outcome == 'win' else -loss))
            for r in results
        }

    def _pairwise_ratings(self, results: List[RatingInput]) -> Dict[str, int]:
        k = self.k_factor / (len(results) - 1)
        deltas = {r.participant_id: 0.0 for r in results}
        for a, b in combinations(results, 2):
            score_a = a.score if a.score is not None else self.actual_score(a.outcome)
            score_b = b.score if b.score is not None else self.actual_score(b.outcome)
            if score_a > score_b:
                actual_a = 1.0
            elif score_a < score_b:
                actual_a = 0.0
            else:
                actual_a = 0.5
            change = k * (actual_a - self.expected_score(a.prior_rating, b.prior_rating))
            deltas[a.participant_id] += change
            deltas[b.participant_id] -= change
        return {r.participant_id: self._floor(r.prior_rating + deltas[r.participant_id]) for r in results}

    # ------------------------------------------------------------ persistence

    def persist(
        self,
        session_id: str,
        new_ratings: Dict[str, int],
        prior_ratings: Dict[str, int],
        outcomes: Dict[str, str],
        match: dict = None,
    ) -> RatingCommit:
        """
        Write one session's ratings to the ledger in a single transaction.

        Transient ledger failures are retried with backoff. If every attempt
        fails the update is kept as pending for ``reconcile_pending``.
        """
        changes = {pid: new_ratings[pid] - prior_ratings[pid] for pid in new_ratings}

        @retry(
            reraise=True,
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=10),
            retry=retry_if_exception_type(TransientInfrastructureError),
        )
        def write():
            self.ledger.apply_session_ratings(session_id, new_ratings, prior_ratings, outcomes, match)

        try:
            write()
        except TransientInfrastructureError as e:
            logger.error(f"Rating update for session {session_id} left pending: {e}")
            return self.keep_pending(session_id, new_ratings, prior_ratings, outcomes, match, str(e))

        logger.info(f"Ratings applied for session {session_id}: {changes}")
        return RatingCommit(session_id, 'applied', dict(new_ratings), changes)

    def keep_pending(
        self,
        session_id: str,
        new_ratings: Dict[str, int],
        prior_ratings: Dict[str, int],
        outcomes: Dict[str, str],
        match: dict = None,
        error: str = None,
    ) -> RatingCommit:
        """Hold an unwritten update until ``reconcile_pending`` succeeds."""
        with self._pending_lock:
            self._pending[session_id] = {
                'new_ratings': dict(new_ratings),
                'prior_ratings': dict(prior_ratings),
                'outcomes': dict(outcomes),
                'match': match,
            }
        if self.result_stream is not None:
            self.result_stream.publish_pending_rating(session_id, new_ratings, error)
        changes = {pid: new_ratings[pid] - prior_ratings[pid] for pid in new_ratings}
        return RatingCommit(session_id, 'pending', dict(new_ratings), changes, error)

    def pending_sessions(self) -> List[str]:
        with self._pending_lock:
            return list(self._pending)

    def reconcile_pending(self) -> List[str]:
        """Retry every pending update once; returns the sessions applied."""
        with self._pending_lock:
            pending = list(self._pending.items())

        applied = []
        for session_id, update in pending:
            try:
                self.ledger.apply_session_ratings(
                    session_id,
                    update['new_ratings'],
                    update['prior_ratings'],
                    update['outcomes'],
                    update['match'],
                )
            except TransientInfrastructureError as e:
                logger.warning(f"Session {session_id} still pending: {e}")
                continue
            with self._pending_lock:
                self._pending.pop(session_id, None)
            applied.append(session_id)
            logger.info(f"Reconciled pending ratings for session {session_id}")
        return applied
