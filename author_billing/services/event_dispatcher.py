"""Lifecycle event publishing to Google Cloud Pub/Sub.

Every committed subscription transition is published as a SubscriptionEvent
JSON message. Publishing happens after the store commit and is best effort:
a failed publish is logged and never undoes or fails the transition.
"""

from datetime import datetime
from threading import RLock
from typing import Optional

from google.cloud import pubsub_v1

from author_billing.config import Config, get_config
from author_billing.logging_config import get_logger
from author_billing.models import LifecycleEventType, SubscriptionEvent, SubscriptionRecord

logger = get_logger(__name__)

PUBLISH_TIMEOUT_SECONDS = 5.0


class EventDispatcher:
    """Publishes subscription lifecycle events to a Pub/Sub topic.

    Disabled unless events.enabled is set; a disabled dispatcher accepts
    and drops every event.
    """

    def __init__(self, config: Optional[Config] = None):
        self._lock = RLock()
        self._publisher: Optional[pubsub_v1.PublisherClient] = None
        self._topic_path: Optional[str] = None
        self._settings = (config or get_config()).events_settings
        self._enabled = self._settings.enabled

        self._initialize()

    def _initialize(self) -> None:
        if not self._enabled:
            logger.info("event_dispatcher_disabled", message="Lifecycle events are disabled in config")
            return

        try:
            self._publisher = pubsub_v1.PublisherClient()
            self._topic_path = self._publisher.topic_path(self._settings.project_id, self._settings.topic)
            self._ensure_topic_exists()
            logger.info(
                "event_dispatcher_initialized",
                project_id=self._settings.project_id,
                topic=self._settings.topic,
                topic_path=self._topic_path,
            )
        except Exception as e:
            logger.error(
                "event_dispatcher_init_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            self._enabled = False

    def _ensure_topic_exists(self) -> None:
        try:
            self._publisher.get_topic(request={"topic": self._topic_path})
            logger.info("pubsub_topic_exists", topic_path=self._topic_path)
        except Exception:
            topic = self._publisher.create_topic(request={"name": self._topic_path})
            logger.info("pubsub_topic_created", topic_path=topic.name)

    def is_enabled(self) -> bool:
        """Check if events are enabled and the publisher is initialized."""
        return self._enabled and self._publisher is not None

    def publish(
        self,
        event_type: LifecycleEventType,
        subscription: SubscriptionRecord,
        event_time: datetime,
    ) -> bool:
        """Publish a lifecycle event for a committed transition.

        Args:
            event_type: Lifecycle event type
            subscription: Subscription state after the transition
            event_time: Transition time

        Returns:
            True if published, False if disabled or publishing failed
        """
        if not self.is_enabled():
            logger.debug("event_dispatcher_disabled", message="Skipping event publication")
            return False

        event = SubscriptionEvent(
            event_type=event_type,
            subscription_id=subscription.subscription_id,
            subscriber_id=subscription.subscriber_id,
            author_id=subscription.author_id,
            status=subscription.status.value,
            plan_type=subscription.plan_type.value,
            event_time=event_time,
        )

        with self._lock:
            try:
                future = self._publisher.publish(
                    self._topic_path,
                    event.model_dump_json().encode("utf-8"),
                    event_type=event_type.value,
                    author_id=subscription.author_id,
                )
                message_id = future.result(timeout=PUBLISH_TIMEOUT_SECONDS)
                logger.info(
                    "subscription_event_published",
                    event_type=event_type.value,
                    subscription_id=subscription.subscription_id,
                    message_id=message_id,
                )
                return True
            except Exception as e:
                logger.error(
                    "subscription_event_publish_failed",
                    event_type=event_type.value,
                    subscription_id=subscription.subscription_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                return False

    def shutdown(self) -> None:
        """Drop the publisher client."""
        with self._lock:
            if self._publisher:
                logger.info("event_dispatcher_shutting_down")
                self._publisher = None
                self._topic_path = None


_event_dispatcher: Optional[EventDispatcher] = None
_dispatcher_lock = RLock()


def get_event_dispatcher() -> EventDispatcher:
    """Get or create the singleton EventDispatcher instance."""
    global _event_dispatcher
    if _event_dispatcher is None:
        with _dispatcher_lock:
            if _event_dispatcher is None:
                _event_dispatcher = EventDispatcher()
    return _event_dispatcher


def reset_event_dispatcher() -> None:
    """Reset the singleton EventDispatcher instance (for testing)."""
    global _event_dispatcher
    with _dispatcher_lock:
        if _event_dispatcher is not None:
            _event_dispatcher.shutdown()
            _event_dispatcher = None
