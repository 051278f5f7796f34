"""Async topic hub for real-time task notifications.

This module provides a TopicHub class that fans notification envelopes out
to every client currently reading a topic (one topic per task id).

The hub is thread-safe and supports:
- Multiple subscribers per topic
- Async delivery via asyncio.Queue
- Topic closing (terminates all subscribers with a sentinel)

Delivery is at-most-once: a message published while nobody reads the
topic is dropped, and nothing is replayed on reconnect.
"""

import asyncio
import threading
from collections import defaultdict
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

Message = dict[str, Any]

# Put on every subscriber queue by close_topic().
TOPIC_CLOSED = None


class TopicHub:
    """Async pub/sub hub keyed by topic name.

    Usage:
        >>> hub = TopicHub()
        >>> queue = hub.subscribe("tasks/abc")
        >>> await hub.publish("tasks/abc", {"type": "Started", "taskId": "abc"})
        >>> message = await queue.get()
        >>> hub.unsubscribe("tasks/abc", queue)

    Attributes:
        put_timeout: Seconds to wait on a stalled subscriber queue before
            dropping the message for that subscriber.
        _subscribers: Mapping from topic to subscriber queues.
        _lock: Threading lock guarding the subscriber registry.
    """

    def __init__(self, put_timeout: float = 5.0) -> None:
        self.put_timeout = put_timeout
        self._subscribers: dict[str, list[asyncio.Queue[Message | None]]] = defaultdict(list)
        self._lock = threading.Lock()
        logger.info("topic_hub_initialized")

    def subscribe(self, topic: str) -> asyncio.Queue[Message | None]:
        """Register a new subscriber queue for a topic.

        Args:
            topic: The topic to read, e.g. ``tasks/<task id>``.

        Returns:
            A queue receiving every message published on the topic from now
            on, or ``TOPIC_CLOSED`` once the topic is closed.
        """
        queue: asyncio.Queue[Message | None] = asyncio.Queue()
        with self._lock:
            self._subscribers[topic].append(queue)
            subscriber_count = len(self._subscribers[topic])

        logger.info("subscriber_added", topic=topic, subscriber_count=subscriber_count)
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue[Message | None]) -> None:
        """Remove a subscriber queue. Unknown queues are ignored."""
        with self._lock:
            if topic not in self._subscribers:
                return
            try:
                self._subscribers[topic].remove(queue)
            except ValueError:
                logger.warning("unsubscribe_queue_not_found", topic=topic)
                return
            subscriber_count = len(self._subscribers[topic])
            if not self._subscribers[topic]:
                del self._subscribers[topic]

        logger.info("subscriber_removed", topic=topic, subscriber_count=subscriber_count)

    async def publish(self, topic: str, message: Message) -> int:
        """Deliver a message to every current subscriber of a topic.

        A subscriber whose queue does not accept the message within
        ``put_timeout`` misses it; the others still receive it.

        Args:
            topic: Target topic.
            message: JSON-ready message.

        Returns:
            Number of subscribers the message was delivered to.
        """
        with self._lock:
            subscribers = list(self._subscribers.get(topic, []))

        if not subscribers:
            logger.debug("message_dropped_no_subscribers", topic=topic, type=message.get("type"))
            return 0

        delivered = 0
        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(message), timeout=self.put_timeout)
                delivered += 1
            except TimeoutError:
                logger.warning("message_delivery_timeout", topic=topic, type=message.get("type"))

        logger.debug(
            "message_published",
            topic=topic,
            type=message.get("type"),
            subscriber_count=len(subscribers),
            delivered=delivered,
        )
        return delivered

    async def close_topic(self, topic: str) -> None:
        """Signal every subscriber of a topic to stop reading, then drop them."""
        with self._lock:
            queues = self._subscribers.pop(topic, [])

        for queue in queues:
            await queue.put(TOPIC_CLOSED)

        if queues:
            logger.info("topic_closed", topic=topic, subscribers_removed=len(queues))

    def get_subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, []))

    def get_active_topics(self) -> list[str]:
        """Topics with at least one subscriber."""
        with self._lock:
            return list(self._subscribers.keys())


# Global hub instance
_topic_hub: TopicHub | None = None
_hub_lock = threading.Lock()


def get_topic_hub() -> TopicHub:
    """Get the global TopicHub instance.

    Creates the instance on first call (lazy initialization).
    This function is thread-safe.
    """
    global _topic_hub
    if _topic_hub is None:
        with _hub_lock:
            # Double-check locking pattern
            if _topic_hub is None:
                from config import settings

                _topic_hub = TopicHub(put_timeout=settings.notification_put_timeout_seconds)
    return _topic_hub


def reset_topic_hub() -> None:
    """Reset the global TopicHub instance (used by tests)."""
    global _topic_hub
    with _hub_lock:
        _topic_hub = None
    logger.info("topic_hub_reset")
