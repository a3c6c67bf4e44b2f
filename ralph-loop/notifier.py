"""Fire-and-forget webhook notifications for session events."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import requests

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SESSION_START = "session_start"
    SESSION_COMPLETE = "session_complete"
    SESSION_FAILED = "session_failed"


def build_payload(event: EventType, message: str) -> dict:
    return {
        "event": event.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "message": message,
    }


def post_event(url: str, event: EventType, message: str, timeout: float = 10.0) -> bool:
    """POST one event. Returns True on a 2xx response; never raises."""
    try:
        resp = requests.post(url, json=build_payload(event, message), timeout=timeout)
    except requests.RequestException as e:
        logger.warning("Webhook failed: %s", e)
        return False
    if not resp.ok:
        logger.warning("Webhook returned %d: %s", resp.status_code, event.value)
        return False
    logger.debug("Webhook sent: %s", event.value)
    return True


class Notifier:
    """Sends session events to a webhook URL, if one is configured."""

    def __init__(self, url: Optional[str], timeout: float = 10.0) -> None:
        self.url = url
        self.timeout = timeout
        self._threads: list[threading.Thread] = []

    def send(self, event: EventType, message: str) -> None:
        if not self.url:
            return
        thread = threading.Thread(
            target=post_event,
            args=(self.url, event, message, self.timeout),
            daemon=True,
        )
        thread.start()
        self._threads.append(thread)

    def flush(self, timeout: float = 5.0) -> None:
        """Give pending notifications a chance to finish before exit."""
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = [t for t in self._threads if t.is_alive()]
