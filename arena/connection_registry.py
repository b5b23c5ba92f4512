import logging
import threading
import time
from typing import Callable, Optional

import redis

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300


class RedisConnectionRegistry:
    """
    Tracks which participants hold a live channel.

    Each participant has one ``connection:<id>`` key holding the channel
    reference; the key's TTL is the liveness window.
    """

    def __init__(self, redis_client: redis.Redis, ttl: int = DEFAULT_TTL):
        self.redis = redis_client
        self.ttl = ttl

    def _key(self, participant_id: str) -> str:
        return f"connection:{participant_id}"

    def connect(self, participant_id: str, channel_ref: str):
        self.redis.setex(self._key(participant_id), self.ttl, channel_ref)

    def touch(self, participant_id: str) -> bool:
        return bool(self.redis.expire(self._key(participant_id), self.ttl))

    def disconnect(self, participant_id: str):
        self.redis.delete(self._key(participant_id))

    def channel_for(self, participant_id: str) -> Optional[str]:
        return self.redis.get(self._key(participant_id))

    def is_connected(self, participant_id: str) -> bool:
        return bool(self.redis.exists(self._key(participant_id)))


class InMemoryConnectionRegistry:
    """Same expiry semantics as the redis registry, kept in process."""

    def __init__(self, ttl: int = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._channels = {}

    def connect(self, participant_id: str, channel_ref: str):
        with self._lock:
            self._channels[participant_id] = (channel_ref, self._clock() + self.ttl)

    def touch(self, participant_id: str) -> bool:
        with self._lock:
            entry = self._live_entry(participant_id)
            if entry is None:
                return False
            self._channels[participant_id] = (entry[0], self._clock() + self.ttl)
            return True

    def disconnect(self, participant_id: str):
        with self._lock:
            self._channels.pop(participant_id, None)

    def channel_for(self, participant_id: str) -> Optional[str]:
        with self._lock:
            entry = self._live_entry(participant_id)
            return entry[0] if entry else None

    def is_connected(self, participant_id: str) -> bool:
        return self.channel_for(participant_id) is not None

    def _live_entry(self, participant_id: str):
        entry = self._channels.get(participant_id)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._channels[participant_id]
            logger.debug(f"Connection for {participant_id} expired")
            return None
        return entry
