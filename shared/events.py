from enum import Enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import json


class EventType(str, Enum):
    # Queue
    QUEUE_JOINED = "queue.joined"
    QUEUE_LEFT = "queue.left"
    QUEUE_STATUS = "queue.status"

    # Session lifecycle
    MATCH_FOUND = "match.found"
    GAME_STARTED = "game.started"
    MOVE_APPLIED = "move.applied"
    GAME_PAUSED = "game.paused"
    GAME_RESUMED = "game.resumed"
    PARTICIPANT_ELIMINATED = "participant.eliminated"
    GAME_ENDED = "game.ended"

    # Ledger
    RATING_PENDING = "rating.pending"


@dataclass
class Event:
    type: EventType
    session_id: Optional[str] = None
    timestamp: str = None
    data: dict = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow().isoformat() + "Z"
        if self.data is None:
            self.data = {}

    def to_dict(self) -> dict:
        return {
            "type": self.type.value if isinstance(self.type, EventType) else self.type,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "data": self.data
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        return cls(
            type=EventType(data["type"]) if data["type"] in [e.value for e in EventType] else data["type"],
            session_id=data.get("session_id"),
            timestamp=data.get("timestamp"),
            data=data.get("data", {})
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        return cls.from_dict(json.loads(json_str))


def queue_joined_event(entrant: dict, queue_status: dict) -> Event:
    return Event(
        type=EventType.QUEUE_JOINED,
        data={
            "entrant": entrant,
            "queue": queue_status
        }
    )


def queue_status_event(queue_status: dict) -> Event:
    return Event(type=EventType.QUEUE_STATUS, data=queue_status)


def match_found_event(session: dict, win_probabilities: dict = None) -> Event:
    return Event(
        type=EventType.MATCH_FOUND,
        session_id=session["session_id"],
        data={
            "session": session,
            "win_probabilities": win_probabilities or {}
        }
    )


def game_ended_event(session_id: str, result: dict, rating_status: str, rating_changes: dict = None) -> Event:
    return Event(
        type=EventType.GAME_ENDED,
        session_id=session_id,
        data={
            "result": result,
            "rating_status": rating_status,
            "rating_changes": rating_changes or {}
        }
    )


def rating_pending_event(session_id: str, new_ratings: dict, error: str) -> Event:
    return Event(
        type=EventType.RATING_PENDING,
        session_id=session_id,
        data={
            "new_ratings": new_ratings,
            "error": error
        }
    )
