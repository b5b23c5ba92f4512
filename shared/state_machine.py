import copy
import logging
import threading
import time
from enum import Enum
from typing import Optional, Callable, Dict, List
from dataclasses import dataclass, field

from .errors import StateConflict, ResourceNotFound, ValidationError
from .events import Event, EventType

logger = logging.getLogger(__name__)


class GameStatus(str, Enum):
    WAITING = "waiting"
    RUNNING = "running"
    PAUSED = "paused"
    CONCLUDED = "concluded"


class Outcome(str, Enum):
    WIN = "win"
    DRAW = "draw"
    FORFEIT = "forfeit"
    TIMEOUT = "timeout"
    DISCONNECT = "disconnect"


LOSS = "loss"

PARTICIPANT_SCORES = {
    Outcome.WIN.value: 1.0,
    Outcome.DRAW.value: 0.5,
}


@dataclass
class Transition:
    from_state: GameStatus
    to_state: GameStatus
    action: str


@dataclass(frozen=True)
class Move:
    participant_id: str
    payload: object
    sequence_number: int
    timestamp: float

    def to_dict(self) -> dict:
        return {
            "participant_id": self.participant_id,
            "payload": self.payload,
            "sequence_number": self.sequence_number,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Result:
    outcome: Outcome
    winner_id: Optional[str]
    scores: Dict[str, float]
    participant_outcomes: Dict[str, str]
    duration_seconds: int
    move_count: int
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "winner_id": self.winner_id,
            "scores": dict(self.scores),
            "participant_outcomes": dict(self.participant_outcomes),
            "duration_seconds": self.duration_seconds,
            "move_count": self.move_count,
            "reason": self.reason,
        }


class SessionStateMachine:
    """Authoritative engine for one live match.

    Every mutating operation runs under the session lock. Timers are armed
    with a token; a timer whose token no longer matches fired after the event
    it guarded and is ignored.
    """

    TRANSITIONS = [
        Transition(GameStatus.WAITING, GameStatus.RUNNING, "start"),
        Transition(GameStatus.RUNNING, GameStatus.RUNNING, "move"),
        Transition(GameStatus.RUNNING, GameStatus.PAUSED, "pause"),
        Transition(GameStatus.PAUSED, GameStatus.RUNNING, "resume"),
        Transition(GameStatus.WAITING, GameStatus.CONCLUDED, "conclude"),
        Transition(GameStatus.RUNNING, GameStatus.CONCLUDED, "conclude"),
        Transition(GameStatus.PAUSED, GameStatus.CONCLUDED, "conclude"),
    ]

    def __init__(
        self,
        session_id: str,
        participants: List[str],
        rules,
        config: dict = None,
        move_timeout: float = None,
        duration_limit: float = None,
        grace_period: float = 30.0,
        clock: Callable[[], float] = time.time,
        timer_factory: Callable = threading.Timer,
        listener: Callable[[Event], None] = None,
    ):
        if len(participants) < 2 or len(set(participants)) != len(participants):
            raise ValidationError("A session needs at least two distinct participants")

        self.session_id = session_id
        self.participants = list(participants)
        self.rules = rules
        self.move_timeout_seconds = move_timeout
        self.duration_limit = duration_limit
        self.grace_period = grace_period
        self._clock = clock
        self._timer_factory = timer_factory
        self._listener = listener

        self._lock = threading.RLock()
        self._status = GameStatus.WAITING
        self._history: List[tuple] = []
        self.turn_index = 0
        self.board_state = rules.create_initial_state(list(participants), config or {})
        self._moves: List[Move] = []
        self._result: Optional[Result] = None
        self._started_at: Optional[float] = None
        self._unreachable = set()
        self._eliminated: Dict[str, str] = {}

        self._move_timer = None
        self._move_token = 0
        self._duration_timer = None
        self._grace_timers = {}
        self._grace_tokens = {}

    # ---------------------------------------------------------------- state

    @property
    def status(self) -> GameStatus:
        return self._status

    @property
    def result(self) -> Optional[Result]:
        return self._result

    @property
    def moves(self) -> List[Move]:
        with self._lock:
            return list(self._moves)

    @property
    def current_participant(self) -> Optional[str]:
        if self._status == GameStatus.CONCLUDED:
            return None
        return self.participants[self.turn_index]

    def active_participants(self) -> List[str]:
        return [p for p in self.participants if p not in self._eliminated]

    def get_history(self) -> List[tuple]:
        return self._history.copy()

    def _transition(self, action: str) -> GameStatus:
        for t in self.TRANSITIONS:
            if t.from_state == self._status and t.action == action:
                old_state = self._status
                self._status = t.to_state
                self._history.append((old_state, action, self._status))
                return self._status

        raise StateConflict(self._status.value, action)

    def _emit(self, event_type: EventType, data: dict):
        if self._listener is None:
            return
        try:
            self._listener(Event(type=event_type, session_id=self.session_id, data=data))
        except Exception:
            logger.exception(f"Listener failed on {event_type.value} for session {self.session_id}")

    # --------------------------------------------------------------- timers

    def _arm(self, seconds: float, callback: Callable):
        timer = self._timer_factory(seconds, callback)
        timer.daemon = True
        timer.start()
        return timer

    def _arm_move_timer(self):
        self._cancel_move_timer()
        if not self.move_timeout_seconds:
            return
        token = self._move_token
        self._move_timer = self._arm(self.move_timeout_seconds, lambda: self._on_move_timer(token))

    def _cancel_move_timer(self):
        self._move_token += 1
        if self._move_timer is not None:
            self._move_timer.cancel()
            self._move_timer = None

    def _arm_grace_timer(self, participant_id: str):
        self._cancel_grace_timer(participant_id)
        token = self._grace_tokens.get(participant_id, 0) + 1
        self._grace_tokens[participant_id] = token
        self._grace_timers[participant_id] = self._arm(
            self.grace_period, lambda: self._on_grace_expired(participant_id, token)
        )

    def _cancel_grace_timer(self, participant_id: str):
        self._grace_tokens[participant_id] = self._grace_tokens.get(participant_id, 0) + 1
        timer = self._grace_timers.pop(participant_id, None)
        if timer is not None:
            timer.cancel()

    def _cancel_all_timers(self):
        self._cancel_move_timer()
        for participant_id in list(self._grace_timers):
            self._cancel_grace_timer(participant_id)
        if self._duration_timer is not None:
            self._duration_timer.cancel()
            self._duration_timer = None

    def stop_timers(self):
        """Cancel pending timers without concluding. Used on shutdown."""
        with self._lock:
            self._cancel_all_timers()

    def _on_move_timer(self, token: int) -> bool:
        with self._lock:
            if token != self._move_token:
                return False
            return self.move_timeout()

    def _on_grace_expired(self, participant_id: str, token: int) -> bool:
        with self._lock:
            if self._status == GameStatus.CONCLUDED:
                return False
            if self._grace_tokens.get(participant_id) != token or participant_id not in self._unreachable:
                return False
            self._grace_timers.pop(participant_id, None)

            reachable = [p for p in self.active_participants() if p not in self._unreachable]
            if not reachable:
                logger.info(f"Session {self.session_id}: nobody reconnected, ending without a winner")
                self._conclude(
                    Outcome.DISCONNECT, None, "all participants disconnected",
                    {p: Outcome.DRAW.value for p in self.active_participants()}
                )
                return True

            self._eliminate(participant_id, Outcome.DISCONNECT)
            return True

    def _on_duration_expired(self) -> bool:
        with self._lock:
            if self._status == GameStatus.CONCLUDED:
                return False
            self._duration_timer = None
            self._conclude(
                Outcome.TIMEOUT, None, "duration limit reached",
                {p: Outcome.DRAW.value for p in self.active_participants()}
            )
            return True

    # ------------------------------------------------------------ operations

    def start(self):
        with self._lock:
            self._transition("start")
            self._started_at = self._clock()
            if self.duration_limit:
                self._duration_timer = self._arm(self.duration_limit, self._on_duration_expired)

            self._emit(EventType.GAME_STARTED, self.snapshot())

            if self._unreachable:
                self._transition("pause")
                for participant_id in self._unreachable:
                    self._arm_grace_timer(participant_id)
                self._emit(EventType.GAME_PAUSED, {"unreachable": sorted(self._unreachable)})
            else:
                self._arm_move_timer()

    def submit_move(self, participant_id: str, payload) -> Move:
        with self._lock:
            if self._status == GameStatus.CONCLUDED:
                raise StateConflict(self._status.value, "move", "Session has concluded")
            if participant_id not in self.participants:
                raise ResourceNotFound("Participant", participant_id)
            if self._status != GameStatus.RUNNING:
                raise StateConflict(self._status.value, "move")
            if participant_id != self.current_participant:
                raise StateConflict(self._status.value, "move", f"It is not {participant_id}'s turn")

            try:
                legal = self.rules.is_legal(self.board_state, participant_id, payload)
            except (KeyError, TypeError, ValueError, IndexError):
                legal = False
            if not legal:
                raise ValidationError(f"Illegal move from {participant_id}")

            # nothing is recorded until the rule engine has produced the new state
            new_state = self.rules.apply(self.board_state, participant_id, payload)

            self._cancel_move_timer()
            move = Move(
                participant_id=participant_id,
                payload=copy.deepcopy(payload),
                sequence_number=len(self._moves) + 1,
                timestamp=self._clock(),
            )
            self._moves.append(move)
            self.board_state = new_state
            self._transition("move")

            end = self.rules.check_end(self.board_state)
            if end is None:
                self._advance_turn()
                self._arm_move_timer()

            self._emit(EventType.MOVE_APPLIED, {
                "move": move.to_dict(),
                "board": self.rules.public_view(self.board_state),
                "current_participant": None if end else self.current_participant,
            })

            if end is not None:
                self._conclude_from_rules(end)
            return move

    def move_timeout(self) -> bool:
        """Current turn holder ran out of time."""
        with self._lock:
            if self._status != GameStatus.RUNNING:
                return False
            participant_id = self.current_participant
            logger.info(f"Session {self.session_id}: move timer expired for {participant_id}")
            self._eliminate(participant_id, Outcome.TIMEOUT)
            return True

    def disconnect(self, participant_id: str) -> bool:
        with self._lock:
            if self._status == GameStatus.CONCLUDED:
                return False
            if participant_id not in self.participants:
                raise ResourceNotFound("Participant", participant_id)
            if participant_id in self._eliminated or participant_id in self._unreachable:
                return False

            self._unreachable.add(participant_id)
            if self._status == GameStatus.WAITING:
                return True

            if self._status == GameStatus.RUNNING:
                self._cancel_move_timer()
                self._transition("pause")
                self._emit(EventType.GAME_PAUSED, {"unreachable": sorted(self._unreachable)})

            self._arm_grace_timer(participant_id)
            return True

    def reconnect(self, participant_id: str) -> bool:
        with self._lock:
            if self._status == GameStatus.CONCLUDED:
                return False
            if participant_id not in self._unreachable:
                return False

            self._unreachable.discard(participant_id)
            self._cancel_grace_timer(participant_id)
            if not self._unreachable and self._status == GameStatus.PAUSED:
                self._resume()
            return True

    def forfeit(self, participant_id: str) -> Optional[Result]:
        with self._lock:
            if self._status == GameStatus.CONCLUDED:
                raise StateConflict(self._status.value, "forfeit", "Session has concluded")
            if participant_id not in self.participants:
                raise ResourceNotFound("Participant", participant_id)
            if participant_id in self._eliminated:
                raise StateConflict(self._status.value, "forfeit", f"{participant_id} is no longer playing")

            return self._eliminate(participant_id, Outcome.FORFEIT)

    # -------------------------------------------------------------- helpers

    def _resume(self):
        self._transition("resume")
        self._arm_move_timer()
        self._emit(EventType.GAME_RESUMED, {"current_participant": self.current_participant})

    def _advance_turn(self):
        n = len(self.participants)
        for step in range(1, n + 1):
            index = (self.turn_index + step) % n
            if self.participants[index] not in self._eliminated:
                self.turn_index = index
                return

    def _eliminate(self, participant_id: str, reason: Outcome) -> Optional[Result]:
        was_current = participant_id == self.current_participant
        self._eliminated[participant_id] = reason.value
        self._unreachable.discard(participant_id)
        self._cancel_grace_timer(participant_id)

        remaining = self.active_participants()
        if len(remaining) == 1:
            return self._conclude(
                reason, remaining[0], f"{participant_id} {reason.value}",
                {remaining[0]: Outcome.WIN.value}
            )

        # more than two seats: the match carries on without them
        self._emit(EventType.PARTICIPANT_ELIMINATED, {
            "participant_id": participant_id,
            "reason": reason.value,
            "remaining": remaining,
        })
        if was_current:
            self._advance_turn()
            if self._status == GameStatus.RUNNING:
                self._arm_move_timer()
        if self._status == GameStatus.PAUSED and not self._unreachable:
            self._resume()
        return None

    def _conclude_from_rules(self, end) -> Result:
        active = self.active_participants()
        if end.outcome == Outcome.WIN.value and end.winner_id is not None:
            outcomes = {p: (Outcome.WIN.value if p == end.winner_id else LOSS) for p in active}
            return self._conclude(Outcome.WIN, end.winner_id, end.reason, outcomes)
        return self._conclude(Outcome.DRAW, None, end.reason, {p: Outcome.DRAW.value for p in active})

    def _conclude(self, outcome: Outcome, winner_id: Optional[str], reason: str,
                  active_outcomes: Dict[str, str]) -> Result:
        self._cancel_all_timers()
        self._transition("conclude")

        participant_outcomes = {}
        for p in self.participants:
            if p in self._eliminated:
                participant_outcomes[p] = self._eliminated[p]
            else:
                participant_outcomes[p] = active_outcomes.get(p, LOSS)
        scores = {p: PARTICIPANT_SCORES.get(o, 0.0) for p, o in participant_outcomes.items()}

        duration = 0
        if self._started_at is not None:
            duration = int(round(self._clock() - self._started_at))

        self._result = Result(
            outcome=outcome,
            winner_id=winner_id,
            scores=scores,
            participant_outcomes=participant_outcomes,
            duration_seconds=duration,
            move_count=len(self._moves),
            reason=reason,
        )
        logger.info(f"Session {self.session_id} concluded: {outcome.value} (winner={winner_id})")
        self._emit(EventType.GAME_ENDED, {"result": self._result.to_dict()})
        return self._result

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "session_id": self.session_id,
                "status": self._status.value,
                "participants": list(self.participants),
                "current_participant": self.current_participant,
                "move_count": len(self._moves),
                "board": self.rules.public_view(self.board_state),
                "unreachable": sorted(self._unreachable),
                "eliminated": dict(self._eliminated),
                "result": self._result.to_dict() if self._result else None,
            }
