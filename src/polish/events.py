# Copyright (c) Syntropy Systems
"""Per-session event bus: append to the log, then fan out to subscribers."""
from __future__ import annotations

import logging
import queue
import threading
from typing import TYPE_CHECKING, Optional

from polish import db
from polish.models import JSONObject, PolishEvent

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

logger = logging.getLogger(__name__)


class Subscription:
    """An ordered view of the events published after it was opened."""

    def __init__(self, bus: SessionEventBus) -> None:
        self._bus = bus
        self._queue: queue.Queue[Optional[PolishEvent]] = queue.Queue()
        self._ended = False

    def _push(self, event: Optional[PolishEvent]) -> None:
        self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[PolishEvent]:
        """Next event, or None when the bus closed (or on timeout)."""
        if self._ended:
            return None
        try:
            event = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if event is None:
            self._ended = True
        return event

    def __iter__(self) -> Iterator[PolishEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    @property
    def ended(self) -> bool:
        return self._ended

    def close(self) -> None:
        self._bus.unsubscribe(self)
        self._ended = True


class SessionEventBus:
    """Event bus for one session.

    A single writer (the controller) publishes; each event is appended to the
    `session_events` table before it reaches in-memory subscribers, so a
    reader tailing the table never misses what a subscriber saw.
    """

    def __init__(self, db_path: Optional[Path], session_id: str) -> None:
        self.session_id = session_id
        self._conn = db.get_connection(db_path) if db_path is not None else None
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()
        self._closed = False

    def publish(self, event: PolishEvent) -> Optional[int]:
        """Append and fan out. Returns the log ID when persisted."""
        with self._lock:
            if self._closed:
                logger.debug("Dropping %s event on closed bus %s", event.type, self.session_id)
                return None
            event_id = None
            if self._conn is not None:
                event_id = db.add_event(
                    self._conn,
                    self.session_id,
                    event.type,
                    event.data,
                    event.timestamp,
                )
            for subscriber in self._subscribers:
                subscriber._push(event)  # noqa: SLF001
            return event_id

    def emit(self, event_type: str, data: Optional[JSONObject] = None) -> Optional[int]:
        """Publish an event built from a type and payload."""
        return self.publish(PolishEvent.model_validate({"type": event_type, "data": data or {}}))

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        with self._lock:
            if self._closed:
                subscription._push(None)  # noqa: SLF001
            else:
                self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """End every subscription and release the database connection."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for subscriber in self._subscribers:
                subscriber._push(None)  # noqa: SLF001
            self._subscribers.clear()
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> SessionEventBus:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
