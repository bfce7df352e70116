"""
Work items: the auctions a run bids on.

Business content is opaque to the orchestrator. It only needs an id, a
topic for affinity matching, a quality score, a reserve price and an
open/close window. WorkItemBoard is the authoritative "is it still open?"
source the bid scheduler re-reads before every lock.
"""

from __future__ import annotations

import random
import time
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Protocol, runtime_checkable

from constants import (
    WORK_ITEM_PRICE_RANGE,
    WORK_ITEM_QUALITY_RANGE,
    WORK_ITEM_WINDOW_S,
)
from workload.profiles import TOPICS


Clock = Callable[[], float]


@dataclass(frozen=True)
class WorkItem:
    item_id: str
    topic: str
    quality: int
    reserve_price: int
    opened_at: float
    closes_at: float
    is_open: bool = True


@runtime_checkable
class WorkItemSource(Protocol):
    async def is_open(self, item_id: str) -> bool: ...


class WorkItemBoard:
    """In-memory registry of published work items."""

    def __init__(self) -> None:
        self._items: dict[str, WorkItem] = {}

    def publish(self, item: WorkItem) -> WorkItem:
        self._items[item.item_id] = item
        return item

    def close(self, item_id: str) -> WorkItem | None:
        item = self._items.get(item_id)
        if item is None:
            return None
        closed = replace(item, is_open=False)
        self._items[item_id] = closed
        return closed

    def discard(self, item_id: str) -> None:
        """Forget an item; is_open() reports it closed from now on."""
        self._items.pop(item_id, None)

    def get(self, item_id: str) -> WorkItem | None:
        return self._items.get(item_id)

    def __len__(self) -> int:
        return len(self._items)

    async def is_open(self, item_id: str) -> bool:
        item = self._items.get(item_id)
        return item is not None and item.is_open

    def open_items(self) -> list[WorkItem]:
        return [i for i in self._items.values() if i.is_open]


class WorkItemGenerator:
    """Produces randomized work items (seedable for tests)."""

    def __init__(
        self,
        *,
        rng: random.Random | None = None,
        clock: Clock = time.monotonic,
        window_s: float = WORK_ITEM_WINDOW_S,
        topics: tuple[str, ...] = TOPICS,
        price_range: tuple[int, int] = WORK_ITEM_PRICE_RANGE,
    ) -> None:
        self._rng = rng or random.Random()
        self._clock = clock
        self._window_s = window_s
        self._topics = topics
        self._price_range = price_range

    def next(self) -> WorkItem:
        now = self._clock()
        return WorkItem(
            item_id=uuid.uuid4().hex[:12],
            topic=self._rng.choice(self._topics),
            quality=self._rng.randint(*WORK_ITEM_QUALITY_RANGE),
            reserve_price=self._rng.randint(*self._price_range),
            opened_at=now,
            closes_at=now + self._window_s,
        )
