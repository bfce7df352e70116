"""
One-way event publishing.

Responsibilities:
- Convert payloads to JSON-safe values before they leave the process
- Write every published event to the JSONL log
- Fan events out to bounded subscriber queues (operator WebSocket)

Non-responsibilities:
- NO delivery guarantees: slow subscribers lose their oldest events
- NEVER raises to the publisher
"""

from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Protocol, runtime_checkable

from constants import EVENT_SUBSCRIBER_QUEUE_MAX, JSON_SAFE_INT_MAX
from observability.logger import log_event, now_ms


# ---------------------------------------------------------------------
# JSON safety
# ---------------------------------------------------------------------

def json_safe(value: Any) -> Any:
    """
    Recursively convert a value into something json.dumps accepts losslessly.

    - Decimal and ints beyond 2**53 become strings (JS clients lose precision)
    - Enums become their values
    - dataclasses become dicts; sets/tuples become lists
    - bytes become hex strings
    """
    if isinstance(value, Enum):
        return json_safe(value.value)
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return str(value) if abs(value) > JSON_SAFE_INT_MAX else value
    if isinstance(value, float):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return json_safe(dataclasses.asdict(value))
    if isinstance(value, Mapping):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else value
        return [json_safe(v) for v in items]
    return str(value)


# ---------------------------------------------------------------------
# Sink protocol
# ---------------------------------------------------------------------

@runtime_checkable
class EventSink(Protocol):
    def publish(self, topic: str, payload: Mapping[str, Any]) -> None: ...


LOG_TOPIC = "log"


def publish_log(
    sink: EventSink | None,
    event: Mapping[str, Any],
    *,
    level: str = "warn",
) -> None:
    """
    Write event to the JSONL log and mirror it on the "log" topic.

    Observers use these to tell a degraded but progressing run (skips,
    retries, failed recovery steps) from a stuck one.
    """
    log_event(event)
    if sink is not None:
        sink.publish(LOG_TOPIC, {"level": level, **event})


@dataclass
class DropCounters:
    """Events dropped from subscriber queues because they were full."""
    overflow: int = 0


class EventBus:
    """
    In-process fan-out sink.

    Each subscriber gets its own bounded asyncio.Queue. A full queue drops
    its OLDEST event so subscribers always see the most recent state.
    """

    def __init__(self, *, queue_max: int = EVENT_SUBSCRIBER_QUEUE_MAX) -> None:
        if queue_max <= 0:
            raise ValueError("queue_max must be > 0")
        self._queue_max = queue_max
        self._subscribers: set[asyncio.Queue[dict[str, Any]]] = set()
        self.drops = DropCounters()
        self.published = 0

    def subscribe(self) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_max)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, topic: str, payload: Mapping[str, Any]) -> None:
        try:
            event = {"topic": topic, "ts_ms": now_ms(), "payload": json_safe(payload)}
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "PUBLISH_ERROR",
                "topic": topic,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            return

        self.published += 1
        log_event({"event_type": "PUBLISH", **event})

        for queue in list(self._subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                self.drops.overflow += 1
            queue.put_nowait(event)

    def snapshot(self) -> dict[str, int]:
        return {
            "subscribers": len(self._subscribers),
            "published": self.published,
            "dropped_overflow": self.drops.overflow,
        }
