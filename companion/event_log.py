from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Deque, Dict, List

from companion.core.config import settings

logger = logging.getLogger(__name__)

EventListener = Callable[[Dict[str, Any]], None]

PRIORITY_NORMAL = "normal"
PRIORITY_HIGH = "high"


class EventLog:
    """Bounded, newest-first feed of operational events.

    Listeners registered with :meth:`subscribe` receive every entry as it is
    added; the host wires them to real alerting. A listener that raises is
    logged and skipped.
    """

    def __init__(self, max_len: int | None = None) -> None:
        self._max_len = max_len or settings.event_log_limit
        self._log: Deque[Dict[str, Any]] = deque(maxlen=self._max_len)
        self._lock = Lock()
        self._listeners: List[EventListener] = []

    def subscribe(self, listener: EventListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def add_event(self, kind: str, payload: Dict[str, Any], priority: str = PRIORITY_NORMAL) -> Dict[str, Any]:
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "kind": kind,
            "priority": priority,
            "payload": payload,
        }
        with self._lock:
            self._log.appendleft(entry)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(entry)
            except Exception:
                logger.exception("Event listener failed for %s", kind)
        return entry

    def get_events(self, limit: int | None = None, kind_prefix: str | None = None) -> List[Dict[str, Any]]:
        with self._lock:
            items = list(self._log)
        if kind_prefix:
            items = [e for e in items if e["kind"].startswith(kind_prefix)]
        if limit is None:
            return items
        return items[: max(0, min(limit, self._max_len))]

    def clear(self) -> None:
        with self._lock:
            self._log.clear()
