"""
Per-identity sequence number allocation.

Responsibilities:
- Hand out strictly increasing sequence numbers per signing identity
- Serialize callers of one identity in arrival order (FIFO lane)
- Hold a lane across one submission so the next read sees its outcome

Non-responsibilities:
- NO fee decisions or retries (see orchestrator/retry.py)
- NO ordering between different identities

asyncio.Lock wakes waiters in FIFO order, so one lock per identity is the
whole ordering mechanism.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from ledger.base import Identity, LedgerClient, StaleSequenceError
from observability.logger import log_event


class SequenceLane:
    """Ordering lane for one identity."""

    def __init__(self, address: str) -> None:
        self.address = address
        self.lock = asyncio.Lock()
        # None until the ledger has been read (or after a reset)
        self.next_sequence: int | None = None

    def snapshot(self) -> dict[str, object]:
        return {
            "address": self.address,
            "next_sequence": self.next_sequence,
            "locked": self.lock.locked(),
        }


class SequencedSubmitter:
    """
    Allocates sequence numbers for concurrent submitters.

    The number handed out is max(ledger pending view, local cursor), so a
    stale ledger read can never produce a number already handed out, and a
    ledger that moved ahead (external submissions) is followed.
    """

    def __init__(self, ledger: LedgerClient) -> None:
        self._ledger = ledger
        self._lanes: dict[str, SequenceLane] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def allocate(self, identity: Identity) -> int:
        """
        Allocate the next sequence number for identity.

        Concurrent callers for the same identity receive numbers in call order.

        Raises:
            LedgerError if the pending-sequence query fails. The lane is
            released either way.
        """
        lane = self._lane(identity)
        async with lane.lock:
            return await self._take(lane)

    def release(self, identity: Identity, sequence: int) -> bool:
        """
        Give back an allocation that never reached the ledger.

        Only rolls back if it was the most recently allocated number,
        otherwise a gap would be created.
        """
        lane = self._lane(identity)
        if lane.next_sequence == sequence + 1:
            lane.next_sequence = sequence
            return True

        log_event({
            "event_type": "SEQUENCE_RELEASE_SKIPPED",
            "address": identity.address,
            "sequence": sequence,
            "next_sequence": lane.next_sequence,
        })
        return False

    @asynccontextmanager
    async def lease(self, identity: Identity) -> AsyncIterator[int]:
        """
        Allocate a number and keep the identity's lane until the block exits.

        Normal exit commits the number. An exception rolls it back so the
        next holder re-derives from the ledger view, except a stale-sequence
        rejection: the number is already taken on the ledger, so the cursor
        stays past it even when the pending view lags.
        """
        lane = self._lane(identity)
        async with lane.lock:
            sequence = await self._take(lane)
            try:
                yield sequence
            except StaleSequenceError:
                raise
            except BaseException:
                if lane.next_sequence == sequence + 1:
                    lane.next_sequence = sequence
                raise

    def reset(self, identity: Identity) -> None:
        """Forget the local cursor; the next allocation trusts the ledger."""
        self._lane(identity).next_sequence = None

    def lanes(self) -> list[dict[str, object]]:
        return [lane.snapshot() for lane in self._lanes.values()]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _lane(self, identity: Identity) -> SequenceLane:
        lane = self._lanes.get(identity.address)
        if lane is None:
            lane = SequenceLane(identity.address)
            self._lanes[identity.address] = lane
        return lane

    async def _take(self, lane: SequenceLane) -> int:
        # Caller holds lane.lock
        observed = await self._ledger.pending_sequence(lane.address)
        sequence = observed if lane.next_sequence is None else max(observed, lane.next_sequence)
        lane.next_sequence = sequence + 1
        return sequence
