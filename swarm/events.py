"""
Event Bus — typed notifications from the swarm to whoever is watching.

Publishers (orchestrator, provisioner, recovery) never wait on consumers:
- callback subscribers run inline; an exception in one is logged and dropped
- queue subscribers get put_nowait(); a full queue sheds its oldest event
- a bounded history (newest last) serves pollers like the control API
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Callable, Optional, Union

logger = logging.getLogger("swarm.events")

LOG_LEVELS = ("info", "warning", "error", "success")

# "success" is an info-level record as far as logging is concerned
PY_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class LogEvent:
    level: str                      # info | warning | error | success
    message: str
    transaction_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    kind: str = "log"


@dataclass
class StatsEvent:
    stats: dict
    timestamp: float = field(default_factory=time.time)
    kind: str = "stats"


@dataclass
class WorkersEvent:
    public_keys: list[str]
    timestamp: float = field(default_factory=time.time)
    kind: str = "workers"


Event = Union[LogEvent, StatsEvent, WorkersEvent]


class EventBus:
    def __init__(self, history_size: int = 500):
        self._callbacks: list[Callable[[Event], None]] = []
        self._queues: list[asyncio.Queue] = []
        self._history: deque = deque(maxlen=history_size)

    def subscribe(self, callback: Callable[[Event], None]) -> Callable[[Event], None]:
        self._callbacks.append(callback)
        return callback

    def unsubscribe(self, callback: Callable[[Event], None]):
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def queue(self, maxsize: int = 100) -> asyncio.Queue:
        """Async subscriber. Caller drains it; we never block on it."""
        q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._queues.append(q)
        return q

    def close_queue(self, q: asyncio.Queue):
        if q in self._queues:
            self._queues.remove(q)

    def publish(self, event: Event):
        self._history.append(event)

        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Event subscriber {getattr(callback, '__name__', callback)!r} failed: {e}")

        for q in list(self._queues):
            if q.full():
                try:
                    q.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Event queue still full — event dropped")

    def recent(self, limit: int = 100, kind: Optional[str] = None) -> list[dict]:
        events = [e for e in self._history if kind is None or e.kind == kind]
        return [asdict(e) for e in events[-limit:]] if limit > 0 else []

    # Convenience publishers

    def log(self, level: str, message: str, transaction_id: Optional[str] = None):
        if level not in LOG_LEVELS:
            level = "info"
        self.publish(LogEvent(level=level, message=message, transaction_id=transaction_id))

    def stats(self, stats: dict):
        self.publish(StatsEvent(stats=dict(stats)))

    def workers(self, public_keys: list[str]):
        self.publish(WorkersEvent(public_keys=list(public_keys)))
