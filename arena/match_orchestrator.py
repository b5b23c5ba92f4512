import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from games import GAME_REGISTRY, get_rules
from shared.errors import StateConflict, ResourceNotFound, ValidationError, TransientInfrastructureError
from shared.events import (
    Event,
    EventType,
    queue_joined_event,
    queue_status_event,
    match_found_event,
    game_ended_event,
    rating_pending_event,
)
from shared.state_machine import SessionStateMachine, Result
from .name_generator import generate_room_name, generate_session_id
from .pairing import MatchGroup
from .queue_store import MatchType
from .rating_engine import RatingInput

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    CONCLUDED = "concluded"


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class Session:
    session_id: str
    room_name: str
    game_type: str
    match_type: MatchType
    participants: List[str]
    average_skill: int
    prior_ratings: Dict[str, int]
    created_at: float
    display_names: Dict[str, str] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.CREATED
    concluded_at: Optional[float] = None
    result: Optional[Result] = None
    rating_status: str = "unrated"
    rating_changes: Dict[str, int] = field(default_factory=dict)
    machine: Optional[SessionStateMachine] = None

    @property
    def is_open(self) -> bool:
        return self.status != SessionStatus.CONCLUDED

    def to_dict(self) -> dict:
        data = {
            'session_id': self.session_id,
            'room_name': self.room_name,
            'game_type': self.game_type,
            'match_type': self.match_type.value,
            'participants': list(self.participants),
            'display_names': dict(self.display_names),
            'average_skill': self.average_skill,
            'status': self.status.value,
            'created_at': _iso(self.created_at),
            'concluded_at': _iso(self.concluded_at),
            'result': self.result.to_dict() if self.result else None,
            'rating_status': self.rating_status,
            'rating_changes': dict(self.rating_changes),
        }
        if self.machine is not None:
            snapshot = self.machine.snapshot()
            data['game'] = {
                'status': snapshot['status'],
                'board': snapshot['board'],
                'current_participant': snapshot['current_participant'],
                'move_count': snapshot['move_count'],
                'unreachable': snapshot['unreachable'],
                'eliminated': snapshot['eliminated'],
            }
        return data


class MatchOrchestrator:
    """
    Wires queueing, pairing, live sessions and rating updates together.

    A participant belongs to at most one open session. The participant
    index is reserved when a session is created and released when it
    concludes; concluded sessions stay queryable for the retention window.
    """

    def __init__(
        self,
        queue_store,
        pairing_engine,
        rating_engine,
        ledger,
        notifier,
        connections,
        result_stream=None,
        move_timeout: float = None,
        duration_limit: float = None,
        grace_period: float = 30.0,
        retention: float = 30.0,
        clock: Callable[[], float] = time.time,
        timer_factory: Callable = threading.Timer,
    ):
        self.queue_store = queue_store
        self.pairing_engine = pairing_engine
        self.rating_engine = rating_engine
        self.ledger = ledger
        self.notifier = notifier
        self.connections = connections
        self.result_stream = result_stream
        self.move_timeout = move_timeout
        self.duration_limit = duration_limit
        self.grace_period = grace_period
        self.retention = retention
        self.scheduler = None
        self._clock = clock
        self._timer_factory = timer_factory

        self._lock = threading.RLock()
        self._sessions: Dict[str, Session] = {}
        self._participant_sessions: Dict[str, str] = {}
        self._retention_timers = {}

    # ------------------------------------------------------------------ queue

    def _validate_game_type(self, game_type: str):
        if game_type not in GAME_REGISTRY:
            raise ValidationError(f"Unknown game type: {game_type!r}")

    def join_queue(
        self,
        participant_id: str,
        game_type: str,
        match_type,
        skill_rating: int = None,
        preferences: dict = None,
        region: str = "global",
        display_name: str = None,
        channel_ref: str = None,
    ):
        self._validate_game_type(game_type)
        match_type = MatchType.parse(match_type)

        open_session = self.session_for(participant_id)
        if open_session is not None:
            raise StateConflict(
                open_session.status.value, "join_queue",
                f"{participant_id} is already playing in session {open_session.session_id}"
            )

        # ranked play always starts from the ledger's rating
        if match_type == MatchType.RANKED or skill_rating is None:
            recorded = self.ledger.get_ratings([participant_id])[participant_id]
            if skill_rating is not None and skill_rating != recorded:
                logger.warning(f"Ignoring client rating {skill_rating!r} for {participant_id}, "
                               f"ledger has {recorded}")
            skill_rating = recorded

        if channel_ref is not None or not self.connections.is_connected(participant_id):
            self.connections.connect(participant_id, channel_ref or f"user:{participant_id}:notifications")
        else:
            self.connections.touch(participant_id)

        entrant = self.queue_store.join(
            participant_id,
            game_type,
            match_type,
            skill_rating,
            preferences=preferences,
            region=region,
            display_name=display_name,
        )

        status = self.queue_store.status(game_type, match_type)
        self.notifier.notify([participant_id], queue_joined_event(entrant.to_dict(), status))
        self._broadcast_queue_status(game_type, match_type)

        if self.scheduler is not None:
            self.scheduler.notify()
        return entrant

    def leave_queue(self, participant_id: str, game_type: str = None) -> List[dict]:
        removed = self.queue_store.leave(participant_id, game_type)
        if not removed:
            return []

        self.notifier.notify([participant_id], Event(
            type=EventType.QUEUE_LEFT,
            data={'queues': [{'game_type': e.game_type, 'match_type': e.match_type.value} for e in removed]},
        ))
        for entrant in removed:
            self._broadcast_queue_status(entrant.game_type, entrant.match_type)
        return [e.to_dict() for e in removed]

    def queue_status(self, game_type: str, match_type) -> dict:
        self._validate_game_type(game_type)
        return self.queue_store.status(game_type, match_type)

    def _broadcast_queue_status(self, game_type: str, match_type: MatchType):
        members = [e.participant_id for e in self.queue_store.snapshot(game_type, match_type)]
        if members:
            self.notifier.notify(members, queue_status_event(self.queue_store.status(game_type, match_type)))

    # ---------------------------------------------------------------- pairing

    def scan_partition(self, game_type: str, match_type) -> List[Session]:
        rules = get_rules(game_type)
        groups = self.pairing_engine.pair_partition(
            self.queue_store, game_type, match_type, rules.max_players
        )

        sessions = []
        for group in groups:
            try:
                sessions.append(self.create_session(group))
            except StateConflict as e:
                with self._lock:
                    free = [
                        entrant for entrant in group.entrants
                        if entrant.participant_id not in self._participant_sessions
                    ]
                restored = self.queue_store.release(free)
                logger.warning(f"Dropped group {group.participant_ids}: {e.message}; "
                               f"{len(restored)} returned to the queue")
                if restored and self.scheduler is not None:
                    self.scheduler.notify()
        return sessions

    def run_pairing(self) -> List[Session]:
        sessions = []
        for game_type, match_type in self.queue_store.active_partitions():
            sessions.extend(self.scan_partition(game_type, match_type))
        return sessions

    # --------------------------------------------------------------- sessions

    def create_session(self, group: MatchGroup) -> Session:
        rules = get_rules(group.game_type)
        session_id = generate_session_id(group.game_type)
        session = Session(
            session_id=session_id,
            room_name=generate_room_name(),
            game_type=group.game_type,
            match_type=group.match_type,
            participants=group.participant_ids,
            average_skill=group.average_skill,
            prior_ratings={e.participant_id: e.skill_rating for e in group.entrants},
            display_names={e.participant_id: e.display_name for e in group.entrants if e.display_name},
            created_at=self._clock(),
        )
        session.machine = SessionStateMachine(
            session_id,
            group.participant_ids,
            rules,
            move_timeout=self.move_timeout,
            duration_limit=self.duration_limit,
            grace_period=self.grace_period,
            clock=self._clock,
            timer_factory=self._timer_factory,
            listener=self._listener_for(session),
        )

        with self._lock:
            busy = [pid for pid in group.participant_ids if pid in self._participant_sessions]
            if busy:
                raise StateConflict("in_session", "create_session",
                                    f"{', '.join(busy)} already in an open session")
            self._sessions[session_id] = session
            for participant_id in group.participant_ids:
                self._participant_sessions[participant_id] = session_id

        for participant_id in group.participant_ids:
            self.queue_store.leave(participant_id)

        logger.info(f"Session {session_id} ({session.room_name}) created for "
                    f"{' vs '.join(group.participant_ids)} in {group.game_type}/{group.match_type.value}")

        win_probabilities = None
        if group.match_type == MatchType.RANKED and len(group.entrants) == 2:
            a, b = group.entrants
            prob_a, prob_b = self.rating_engine.calculate_win_probability(a.skill_rating, b.skill_rating)
            win_probabilities = {a.participant_id: round(prob_a, 3), b.participant_id: round(prob_b, 3)}
        self.notifier.notify(session.participants, match_found_event(session.to_dict(), win_probabilities))

        for participant_id in group.participant_ids:
            if not self.connections.is_connected(participant_id):
                session.machine.disconnect(participant_id)

        try:
            session.machine.start()
        except StateConflict:
            # a forfeit while the match was being announced already ended it
            if session.machine.result is None:
                raise
            logger.info(f"Session {session_id} ended before it started")
        return session

    def _listener_for(self, session: Session):
        def listener(event: Event):
            if event.type == EventType.GAME_ENDED:
                self._on_concluded(session)
                return
            if event.type == EventType.GAME_STARTED and session.status == SessionStatus.CREATED:
                session.status = SessionStatus.RUNNING
            self.notifier.notify(session.participants, event)
        return listener

    def _on_concluded(self, session: Session):
        result = session.machine.result
        session.result = result
        session.status = SessionStatus.CONCLUDED
        session.concluded_at = self._clock()

        try:
            self._settle(session, result)
        finally:
            with self._lock:
                for participant_id in session.participants:
                    if self._participant_sessions.get(participant_id) == session.session_id:
                        del self._participant_sessions[participant_id]
                self._schedule_retirement(session.session_id)

        logger.info(f"Session {session.session_id} concluded ({result.outcome.value}), "
                    f"rating {session.rating_status}")

    def _settle(self, session: Session, result: Result):
        match = {
            'session_id': session.session_id,
            'game_type': session.game_type,
            'match_type': session.match_type.value,
            'outcome': result.outcome.value,
            'winner_id': result.winner_id,
            'participants': list(session.participants),
            'duration_seconds': result.duration_seconds,
            'move_count': result.move_count,
            'average_skill': session.average_skill,
            'display_names': dict(session.display_names),
        }

        commit = None
        if session.match_type == MatchType.RANKED:
            inputs = [
                RatingInput(
                    participant_id=pid,
                    prior_rating=session.prior_ratings[pid],
                    outcome=result.participant_outcomes[pid],
                    score=result.scores[pid],
                )
                for pid in session.participants
            ]
            new_ratings = self.rating_engine.calculate_new_ratings(inputs)
            try:
                commit = self.rating_engine.persist(
                    session.session_id, new_ratings, session.prior_ratings, result.participant_outcomes, match
                )
            except Exception as e:
                logger.exception(f"Rating update for session {session.session_id} failed")
                commit = self.rating_engine.keep_pending(
                    session.session_id, new_ratings, session.prior_ratings,
                    result.participant_outcomes, match, str(e)
                )
            session.rating_status = commit.status
            session.rating_changes = commit.changes
        else:
            try:
                self.ledger.record_match(match)
            except TransientInfrastructureError as e:
                logger.error(f"Could not record casual session {session.session_id}: {e}")

        self.notifier.notify(session.participants, game_ended_event(
            session.session_id,
            result.to_dict(),
            session.rating_status,
            session.rating_changes if session.rating_status == 'applied' else None,
        ))
        if commit is not None and commit.status == "pending":
            self.notifier.notify(session.participants, rating_pending_event(
                session.session_id, commit.new_ratings, commit.error
            ))

        if self.result_stream is not None:
            self.result_stream.publish_match_result(session.session_id, session.to_dict())

    def _schedule_retirement(self, session_id: str):
        timer = self._timer_factory(self.retention, lambda: self.retire_session(session_id))
        timer.daemon = True
        self._retention_timers[session_id] = timer
        timer.start()

    def retire_session(self, session_id: str) -> bool:
        with self._lock:
            self._retention_timers.pop(session_id, None)
            session = self._sessions.get(session_id)
            if session is None or session.is_open:
                return False
            del self._sessions[session_id]
        logger.info(f"Session {session_id} retired")
        return True

    def get_session(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise ResourceNotFound("Session", session_id)
        return session

    def session_for(self, participant_id: str) -> Optional[Session]:
        with self._lock:
            session_id = self._participant_sessions.get(participant_id)
            return self._sessions.get(session_id) if session_id else None

    def list_sessions(self, status: str = None) -> List[Session]:
        with self._lock:
            sessions = list(self._sessions.values())
        if status is not None:
            sessions = [s for s in sessions if s.status.value == status]
        return sorted(sessions, key=lambda s: s.created_at)

    def submit_move(self, session_id: str, participant_id: str, payload):
        return self.get_session(session_id).machine.submit_move(participant_id, payload)

    def forfeit(self, session_id: str, participant_id: str) -> Optional[Result]:
        return self.get_session(session_id).machine.forfeit(participant_id)

    # ----------------------------------------------------------- connectivity

    def connection_established(self, participant_id: str, channel_ref: str) -> Optional[Session]:
        self.connections.connect(participant_id, channel_ref)
        session = self.session_for(participant_id)
        if session is not None and session.machine.reconnect(participant_id):
            logger.info(f"{participant_id} reconnected to session {session.session_id}")
        return session

    def connection_lost(self, participant_id: str) -> Optional[Session]:
        self.connections.disconnect(participant_id)
        session = self.session_for(participant_id)
        if session is not None and session.machine.disconnect(participant_id):
            logger.info(f"{participant_id} lost connection in session {session.session_id}, "
                        f"grace window {self.grace_period}s")
        return session

    def explicit_leave(self, participant_id: str):
        self.leave_queue(participant_id)
        session = self.session_for(participant_id)
        if session is None:
            return None
        try:
            return session.machine.forfeit(participant_id)
        except StateConflict as e:
            logger.warning(f"Leave from {participant_id} ignored: {e.message}")
            return None

    def shutdown(self):
        if self.scheduler is not None:
            self.scheduler.stop()
        with self._lock:
            timers = list(self._retention_timers.values())
            self._retention_timers.clear()
            open_sessions = [s for s in self._sessions.values() if s.is_open]
        for timer in timers:
            timer.cancel()
        for session in open_sessions:
            session.machine.stop_timers()
        logger.info("Match orchestrator shut down")
