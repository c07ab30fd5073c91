"""Dapr publisher for routine change notifications."""
import json
import logging
import uuid
from datetime import datetime
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from dapr.clients import DaprClient

from taskwatch.config import Settings, get_settings

logger = logging.getLogger(__name__)

RULES_UPDATED = "routine.rules.updated"
RULE_DELETED = "routine.rule.deleted"
EXCEPTIONS_UPDATED = "routine.exceptions.updated"
RECENT_EVENTS_KEPT = 100


class RoutineEventPublisher:
    """Publishes routine events to the pub/sub topic via the Dapr sidecar."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.dapr_enabled = self.settings.dapr_enabled
        # recent envelopes, newest last
        self.published: Deque[Dict[str, Any]] = deque(maxlen=RECENT_EVENTS_KEPT)

    def publish_event(self, event_type: str, data: Dict[str, Any], source: str = "taskwatch-routines") -> Dict[str, Any]:
        """Publish an event envelope; in development mode the event is only logged."""
        event_envelope = {
            "event_id": str(uuid.uuid4()),
            "type": event_type,
            "timestamp": datetime.utcnow().isoformat(),
            "source": source,
            "data": data,
        }
        self.published.append(event_envelope)

        if not self.dapr_enabled:
            logger.info(
                f"[DEV MODE] Would publish to topic '{self.settings.routine_events_topic}': {event_type} from {source}"
            )
            return {"success": True, "message": "Event logged in dev mode"}

        try:
            with DaprClient() as client:
                client.publish_event(
                    pubsub_name=self.settings.dapr_pubsub_name,
                    topic_name=self.settings.routine_events_topic,
                    data=json.dumps(event_envelope, default=str),
                    data_content_type="application/json",
                )
        except Exception as e:
            logger.error(f"Failed to publish {event_type} to topic {self.settings.routine_events_topic}: {str(e)}")
            raise

        logger.info(f"Published event {event_type} to topic {self.settings.routine_events_topic}")
        return {"success": True, "event_id": event_envelope["event_id"]}

    def publish_rules_updated(self, user_id: str, rule_ids: List[str]):
        """Publish routine.rules.updated event."""
        return self.publish_event(RULES_UPDATED, {"user_id": user_id, "rule_ids": rule_ids})

    def publish_rule_deleted(self, user_id: str, rule_id: str):
        """Publish routine.rule.deleted event."""
        return self.publish_event(RULE_DELETED, {"user_id": user_id, "rule_id": rule_id})

    def publish_exceptions_updated(self, user_id: str, exception_ids: List[str]):
        """Publish routine.exceptions.updated event."""
        return self.publish_event(EXCEPTIONS_UPDATED, {"user_id": user_id, "exception_ids": exception_ids})
