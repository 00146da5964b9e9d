from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

import redis

from . import config

_log = logging.getLogger("serials.events")


class NotificationGateway:
    """
    Fire-and-forget delivery of booking notifications.

    With ``EVENTS_ENABLED`` the JSON envelope is published on the serials
    Redis channel where the notification service picks it up; otherwise it
    degrades to a structured log line. Delivery is at-most-once and a
    failure never reaches the caller.
    """

    def __init__(self, enabled: Optional[bool] = None, url: Optional[str] = None, channel: Optional[str] = None) -> None:
        self._enabled = config.EVENTS_ENABLED if enabled is None else enabled
        self._url = url or config.EVENTS_REDIS_URL
        self._channel = channel or config.EVENTS_CHANNEL
        self._client = None
        if self._enabled:
            try:
                # send() runs inside the request, so bound it like a store call.
                self._client = redis.Redis.from_url(
                    self._url,
                    socket_timeout=config.STORE_TIMEOUT_SECONDS,
                    socket_connect_timeout=config.STORE_TIMEOUT_SECONDS,
                )
            except (redis.RedisError, ValueError) as e:
                _log.warning("events: failed to connect to redis '%s': %s", self._url, e)
                self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled and self._client is not None

    def send(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        data = {
            "domain": "serials",
            "type": event_type,
            "user_id": user_id,
            "ts_ms": int(time.time() * 1000),
            "payload": payload,
        }
        if self.enabled:
            try:
                self._client.publish(self._channel, json.dumps(data, default=str))
                return
            except redis.RedisError as e:
                _log.warning("events: redis publish failed: %s", e)
        # Fallback: structured log
        _log.info("event %s", event_type, extra={"event": data})


gateway = NotificationGateway()
