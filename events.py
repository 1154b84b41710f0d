"""
In-process broadcaster for order, payment and delivery events.

Producers call `emit` from request threads. Each connected listener owns an
asyncio.Queue drained by its Server-Sent Events stream; delivery is
at-most-once and a slow listener only loses its own events.
"""
import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Set

logger = logging.getLogger(__name__)

LISTENER_QUEUE_SIZE = 100


class _Listener:
    def __init__(self, channels: Set[str], queue: asyncio.Queue, loop: asyncio.AbstractEventLoop):
        self.channels = channels
        self.queue = queue
        self.loop = loop


def channels_for(event_name: str, payload: Dict[str, Any]) -> Set[str]:
    channels = {"all"}
    if payload.get("restaurantId"):
        channels.add(f"restaurant:{payload['restaurantId']}")
    if payload.get("customerId"):
        channels.add(f"user:{payload['customerId']}")
    if payload.get("agentId"):
        channels.add(f"user:{payload['agentId']}")
    if event_name == "order-status-update" and payload.get("status") == "ready":
        channels.add("agents")
    return channels


class EventBroadcaster:
    def __init__(self):
        self._listeners: List[_Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, channels: Iterable[str]) -> asyncio.Queue:
        """Register a listener; must be called from the event loop that will drain the queue."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=LISTENER_QUEUE_SIZE)
        listener = _Listener(set(channels), queue, asyncio.get_running_loop())
        with self._lock:
            self._listeners.append(listener)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._listeners = [l for l in self._listeners if l.queue is not queue]

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        """Fire-and-forget. Never raises."""
        try:
            event = {"type": event_name, **payload, "timestamp": datetime.now(timezone.utc).isoformat()}
            targets = channels_for(event_name, payload)
            with self._lock:
                listeners = list(self._listeners)
            for listener in listeners:
                if listener.channels & targets:
                    self._deliver(listener, event)
        except Exception:
            logger.exception("Failed to emit %s event", event_name)

    def _deliver(self, listener: _Listener, event: Dict[str, Any]) -> None:
        try:
            listener.loop.call_soon_threadsafe(_offer, listener.queue, event)
        except RuntimeError:
            # loop already closed; the stream is gone
            logger.debug("Dropping listener with closed event loop")
            self.unsubscribe(listener.queue)


def _offer(queue: asyncio.Queue, event: Dict[str, Any]) -> None:
    try:
        queue.put_nowait(event)
    except asyncio.QueueFull:
        logger.warning("Listener queue full, dropping %s event", event.get("type"))
