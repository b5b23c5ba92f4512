import os
import json
from datetime import datetime
from typing import Optional, Dict, Any
from google.cloud import pubsub_v1
from google.api_core import exceptions as gcp_exceptions
import logging

logger = logging.getLogger(__name__)

LOCAL_ENVS = ('development', 'testing')


class PubSubManager:
    """
    Publishes concluded matches to the external results stream on Google
    Cloud Pub/Sub. Rating updates that could not reach the ledger are
    published too so an operator can replay them.
    """

    def __init__(self, project_id: str = None, topic: str = None):
        self.project_id = project_id or os.getenv('GCP_PROJECT_ID')
        self.topic = topic or os.getenv('RESULTS_TOPIC', 'match-results')
        self.is_local = os.getenv('FLASK_ENV') in LOCAL_ENVS or not self.project_id
        self._topic_ready = False

        if not self.is_local:
            self.publisher = pubsub_v1.PublisherClient()
        else:
            # Local mode - no actual Pub/Sub
            self.publisher = None
            self.published = []
            logger.info("PubSubManager running in local mode (no actual Pub/Sub)")

    def get_topic_path(self) -> str:
        if self.is_local:
            return f"local-topic-{self.topic}"
        return self.publisher.topic_path(self.project_id, self.topic)

    def ensure_topic_exists(self) -> bool:
        """
        Ensure the results topic exists.
        Creates it if it doesn't exist.
        """
        if self.is_local or self._topic_ready:
            return True

        topic_path = self.get_topic_path()
        try:
            self.publisher.get_topic(request={"topic": topic_path})
            logger.info(f"Topic exists: {topic_path}")
        except gcp_exceptions.NotFound:
            try:
                self.publisher.create_topic(request={"name": topic_path})
                logger.info(f"Created topic: {topic_path}")
            except gcp_exceptions.GoogleAPICallError as e:
                logger.error(f"Failed to create topic {topic_path}: {e}")
                return False
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(f"Failed to look up topic {topic_path}: {e}")
            return False

        self._topic_ready = True
        return True

    def publish_event(
        self,
        event_type: str,
        session_id: str,
        data: Dict[str, Any],
        ensure_topic: bool = True
    ) -> Optional[str]:
        """
        Publish an event to the results topic.

        Args:
            event_type: Type of event (e.g., 'game.ended', 'rating.pending')
            session_id: Session the event belongs to
            data: Event data payload
            ensure_topic: Whether to ensure topic exists before publishing

        Returns:
            Message ID if successful, None otherwise
        """
        message_data = {
            'event_type': event_type,
            'session_id': session_id,
            'data': data,
            'timestamp': datetime.utcnow().isoformat()
        }

        if self.is_local:
            self.published.append(message_data)
            logger.info(f"Local mode: Published {event_type} for {session_id}")
            return "local-message-id"

        try:
            if ensure_topic:
                self.ensure_topic_exists()

            message_bytes = json.dumps(message_data, default=str).encode('utf-8')
            future = self.publisher.publish(
                self.get_topic_path(),
                message_bytes,
                event_type=event_type  # attribute for subscriber filtering
            )

            message_id = future.result(timeout=5.0)
            logger.info(f"Published {event_type} for {session_id}: {message_id}")
            return message_id

        except Exception as e:
            # The stream is best effort; a failed publish never fails the match.
            logger.error(f"Failed to publish event {event_type} for {session_id}: {e}")
            return None

    def publish_match_result(self, session_id: str, payload: Dict[str, Any]) -> Optional[str]:
        return self.publish_event('game.ended', session_id, payload)

    def publish_pending_rating(self, session_id: str, new_ratings: Dict[str, int], error: str) -> Optional[str]:
        return self.publish_event('rating.pending', session_id, {
            'new_ratings': dict(new_ratings),
            'error': error,
        })

