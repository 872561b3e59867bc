"""Bounded in-memory outbox of published record events."""

from __future__ import annotations

import copy
import threading
from collections import deque
from typing import Deque

from event_bus import Event, validate_event


class Outbox:
    """Keeps the most recent ``max_events`` events until acked.

    When full, the oldest pending event is evicted and counted in ``evicted``.
    """

    def __init__(self, max_events: int = 1000) -> None:
        self._events: Deque[Event] = deque()
        self._max = max(1, int(max_events))
        self._lock = threading.Lock()
        self.evicted = 0

    def enqueue(self, event: dict) -> None:
        validate_event(event)
        with self._lock:
            if len(self._events) >= self._max:
                self._events.popleft()
                self.evicted += 1
            self._events.append(copy.deepcopy(event))

    def pending(self) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(event) for event in self._events]

    def ack(self, event_id: str) -> bool:
        with self._lock:
            for event in self._events:
                if event.get("meta", {}).get("event_id") == event_id:
                    self._events.remove(event)
                    return True
        return False

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
