import os
import logging
import threading
from collections import defaultdict, deque
from typing import Iterable, List

import redis

from .events import Event

logger = logging.getLogger(__name__)

EVENT_LOG_SIZE = 1000


class PubSubClient:
    """Delivers notifications over redis channels.

    Participants listen on ``user:<id>:notifications``; spectators and the
    session event log use ``session:<id>:events``.
    """

    def __init__(self, redis_url: str = None, redis_client: redis.Redis = None):
        self.redis_url = redis_url or os.getenv('REDIS_URL', 'redis://localhost:6379')
        self.redis = redis_client or redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )

    def publish(self, channel: str, event: Event):
        self.redis.publish(channel, event.to_json())

    def publish_session_event(self, session_id: str, event: Event):
        self.publish(f"session:{session_id}:events", event)
        self.log_event(session_id, event)

    def publish_user_notification(self, user_id: str, event: Event):
        self.publish(f"user:{user_id}:notifications", event)

    def notify(self, participant_ids: Iterable[str], event: Event):
        for participant_id in participant_ids:
            try:
                self.publish_user_notification(participant_id, event)
            except redis.RedisError as e:
                logger.error(f"Failed to notify {participant_id} of {event.type}: {e}")
        if event.session_id:
            try:
                self.publish_session_event(event.session_id, event)
            except redis.RedisError as e:
                logger.error(f"Failed to publish {event.type} for session {event.session_id}: {e}")

    def get_recent_events(self, session_id: str, count: int = 50) -> list:
        key = f"session:{session_id}:event_log"
        events_json = self.redis.lrange(key, 0, count - 1)
        return [Event.from_json(e) for e in events_json]

    def log_event(self, session_id: str, event: Event):
        key = f"session:{session_id}:event_log"
        self.redis.lpush(key, event.to_json())
        self.redis.ltrim(key, 0, EVENT_LOG_SIZE - 1)


class LocalNotifier:
    """In-process notifier used in development and tests (no redis)."""

    def __init__(self, log_size: int = EVENT_LOG_SIZE):
        self._lock = threading.Lock()
        self._log_size = log_size
        self._inbox = defaultdict(list)
        self._session_log = defaultdict(lambda: deque(maxlen=self._log_size))

    def notify(self, participant_ids: Iterable[str], event: Event):
        with self._lock:
            for participant_id in participant_ids:
                self._inbox[participant_id].append(event)
            if event.session_id:
                self._session_log[event.session_id].appendleft(event)
        logger.debug(f"Local mode: {event.type} for {event.session_id or 'queue'}")

    def events_for(self, participant_id: str) -> List[Event]:
        with self._lock:
            return list(self._inbox.get(participant_id, []))

    def get_recent_events(self, session_id: str, count: int = 50) -> list:
        with self._lock:
            return list(self._session_log.get(session_id, []))[:count]
