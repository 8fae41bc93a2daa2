"""
bus/publisher.py -- Best-effort publishing of deletion notifications.

After a destructive operation commits (account deactivation, class deletion,
membership removal) other services are told which ids went away so they can
drop data that now points nowhere. Delivery is fire-and-forget:

  - one bounded attempt (socket timeouts from Settings.bus_timeout_seconds),
  - no retry, no acknowledgement,
  - a failure is logged and swallowed. It never reaches the request that
    triggered it and never rolls anything back: the data is already
    unreachable through this service, a lost message only delays cleanup
    elsewhere.

Subscribers get no ordering guarantee relative to the local commit and must
be idempotent.

Publishers:
  RedisPublisher -- redis-py PUBLISH of a JSON payload.
  LogPublisher   -- dry-run / no bus configured; logs the message only.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import redis

logger = logging.getLogger("rollcall.bus")

TOPIC_USER_DELETE = "users.delete"
TOPIC_CLASS_DELETE = "classes.delete"
TOPIC_CLASS_LEAVE = "classes.leave"


class Publisher(Protocol):
    def publish(self, topic: str, payload: dict[str, Any]) -> None: ...

    def close(self) -> None: ...


class RedisPublisher:
    """Publish JSON messages on Redis pub/sub channels named after the topic."""

    def __init__(self, url: str, timeout: float = 0.5) -> None:
        self._client = redis.Redis.from_url(
            url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            retry_on_timeout=False,
        )

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        self._client.publish(topic, json.dumps(payload, sort_keys=True))

    def close(self) -> None:
        self._client.close()


class LogPublisher:
    """Stand-in used when no bus URL is configured."""

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        logger.info("bus disabled; would publish %s %s", topic, json.dumps(payload, sort_keys=True))

    def close(self) -> None:
        pass


def make_publisher(url: str, timeout: float) -> Publisher:
    if not url:
        return LogPublisher()
    return RedisPublisher(url, timeout)


class ConsistencyPropagator:
    """Wrap a Publisher so that notify() never raises."""

    def __init__(self, publisher: Publisher) -> None:
        self.publisher = publisher

    def notify(self, topic: str, payload: dict[str, Any]) -> bool:
        """Publish once. Returns False (after logging) if the publish failed."""
        try:
            self.publisher.publish(topic, payload)
        except Exception as exc:
            logger.warning("publish to %s failed, dropping notification %s: %s", topic, payload, exc)
            return False
        logger.debug("published %s %s", topic, payload)
        return True
