"""
In-process escrow ledger.

Responsibilities:
- Implement LedgerClient deterministically, in memory
- Enforce sequence ordering, minimum fees and balance rules
- Support failure injection and submit observers for local runs and tests

Non-responsibilities:
- No persistence
- No real signing (signing keys are ignored)
"""

from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict, deque
from dataclasses import dataclass, replace
from typing import Callable, Deque, Sequence

from ledger.base import (
    FeeTooLowError,
    Identity,
    InsufficientFundsError,
    LedgerError,
    LockEvent,
    ObligationNotLockedError,
    Operation,
    OperationKind,
    Receipt,
    SequenceGapError,
    SolvencyReport,
    StaleSequenceError,
)


ReceiptObserver = Callable[[Receipt], None]


@dataclass(frozen=True)
class SimObligation:
    obligation_id: str
    owner: str
    amount: int
    work_item_id: str
    height: int
    state: str = "locked"


class SimulatedLedger:
    """
    Deterministic ledger used by the `simulated` backend and the test suite.

    Accounting model:
    - external: wallet balances outside the escrow
    - balances: escrowed balance per account (free + locked)
    - locked: locked portion of each escrowed balance
    - held: what the escrow actually holds; equals the sum of balances
      unless a shortfall is injected
    """

    ESCROW_ADDRESS = "escrow"

    def __init__(
        self,
        *,
        network: str = "sim-1",
        base_fee: int = 10,
        latency_s: float = 0.0,
    ) -> None:
        self._network = network
        self._base_fee = base_fee
        self._latency_s = latency_s

        self._external: dict[str, int] = defaultdict(int)
        self._balances: dict[str, int] = defaultdict(int)
        self._locked: dict[str, int] = defaultdict(int)
        self._allowances: dict[tuple[str, str], int] = defaultdict(int)
        self._held = 0

        self._next_sequence: dict[str, int] = defaultdict(int)
        self._height = 0
        self._obligations: dict[str, SimObligation] = {}
        self._obligation_ids = itertools.count(1)
        self._last_report: SolvencyReport | None = None

        self._injected: dict[OperationKind | None, Deque[LedgerError]] = defaultdict(deque)
        self._observers: list[ReceiptObserver] = []

        self.receipts: list[Receipt] = []
        self.fees_paid: dict[str, int] = defaultdict(int)

    # ------------------------------------------------------------------
    # Seeding / inspection
    # ------------------------------------------------------------------

    @property
    def escrow_address(self) -> str:
        return self.ESCROW_ADDRESS

    def fund_external(self, address: str, amount: int) -> None:
        self._external[address] += amount

    def seed_deposit(self, address: str, amount: int) -> None:
        """Credit an escrowed balance directly, bypassing the deposit flow."""
        self._balances[address] += amount
        self._held += amount

    def set_base_fee(self, fee: int) -> None:
        self._base_fee = fee

    def inject_shortfall(self, amount: int) -> None:
        """Make the escrow hold less than it owes (for solvency checks)."""
        self._held -= amount

    def fail_next(
        self,
        error: LedgerError,
        *,
        kind: OperationKind | None = None,
        times: int = 1,
    ) -> None:
        """Queue `error` to be raised by the next `times` matching submissions."""
        for _ in range(times):
            self._injected[kind].append(error)

    def add_observer(self, observer: ReceiptObserver) -> None:
        self._observers.append(observer)

    def obligation(self, obligation_id: str) -> SimObligation | None:
        return self._obligations.get(obligation_id)

    def obligations(self, *, state: str | None = None) -> list[SimObligation]:
        return [
            o for o in self._obligations.values()
            if state is None or o.state == state
        ]

    def receipts_of(self, kind: OperationKind) -> list[Receipt]:
        return [r for r in self.receipts if r.kind is kind]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def network_id(self) -> str:
        return self._network

    async def current_height(self) -> int:
        return self._height

    async def pending_sequence(self, address: str) -> int:
        await self._tick()
        return self._next_sequence[address]

    async def fee_baseline(self) -> int:
        return self._base_fee

    async def balance_of(self, address: str) -> int:
        return self._balances[address]

    async def locked_balance_of(self, address: str) -> int:
        return self._locked[address]

    async def external_balance_of(self, address: str) -> int:
        return self._external[address]

    async def allowance(self, owner: str, spender: str) -> int:
        return self._allowances[(owner, spender)]

    async def find_lock_events(
        self, address: str, since_height: int
    ) -> Sequence[LockEvent]:
        return [
            LockEvent(o.obligation_id, o.owner, o.amount, o.height)
            for o in self._obligations.values()
            if o.owner == address and o.height >= since_height
        ]

    async def solvency(self) -> SolvencyReport | None:
        return self._last_report

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def submit(
        self,
        signer: Identity,
        operation: Operation,
        *,
        sequence: int,
        fee: int,
    ) -> Receipt:
        await self._tick()

        injected = self._take_injected(operation.kind)
        if injected is not None:
            raise injected

        address = signer.address
        expected = self._next_sequence[address]
        if sequence < expected:
            raise StaleSequenceError(f"nonce too low: got {sequence}, expected {expected}")
        if sequence > expected:
            raise SequenceGapError(f"nonce too high: got {sequence}, expected {expected}")
        if fee < self._base_fee:
            raise FeeTooLowError(f"fee {fee} below minimum {self._base_fee}")

        obligation_id = self._apply(address, operation)

        self._next_sequence[address] = expected + 1
        self._height += 1
        self.fees_paid[address] += fee

        receipt = Receipt(
            ref=f"sim-{self._height:08d}",
            kind=operation.kind,
            signer=address,
            sequence=sequence,
            fee=fee,
            obligation_id=obligation_id,
            height=self._height,
        )
        self.receipts.append(receipt)

        for observer in list(self._observers):
            observer(receipt)

        return receipt

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _tick(self) -> None:
        # Always yield so concurrent callers interleave like real I/O
        await asyncio.sleep(self._latency_s)

    def _take_injected(self, kind: OperationKind) -> LedgerError | None:
        for key in (kind, None):
            queue = self._injected.get(key)
            if queue:
                return queue.popleft()
        return None

    def _apply(self, address: str, op: Operation) -> str | None:
        params = op.params
        kind = op.kind

        if kind is OperationKind.LOCK:
            owner = params["owner"]
            amount = int(params["amount"])
            if self._balances[owner] - self._locked[owner] < amount:
                raise InsufficientFundsError(f"insufficient free balance for {owner}")
            obligation_id = f"obl-{next(self._obligation_ids)}"
            self._locked[owner] += amount
            self._obligations[obligation_id] = SimObligation(
                obligation_id=obligation_id,
                owner=owner,
                amount=amount,
                work_item_id=str(params.get("work_item_id", "")),
                height=self._height + 1,
            )
            return obligation_id

        if kind is OperationKind.SETTLE:
            obligation = self._open_obligation(params["obligation_id"])
            payee = params["payee"]
            self._locked[obligation.owner] -= obligation.amount
            self._balances[obligation.owner] -= obligation.amount
            self._balances[payee] += obligation.amount
            self._obligations[obligation.obligation_id] = replace(obligation, state="settled")
            return obligation.obligation_id

        if kind is OperationKind.REFUND:
            obligation = self._open_obligation(params["obligation_id"])
            self._locked[obligation.owner] -= obligation.amount
            self._obligations[obligation.obligation_id] = replace(obligation, state="refunded")
            return obligation.obligation_id

        if kind is OperationKind.DEPOSIT:
            amount = int(params["amount"])
            if self._external[address] < amount:
                raise InsufficientFundsError(f"insufficient external balance for {address}")
            if self._allowances[(address, self.ESCROW_ADDRESS)] < amount:
                raise InsufficientFundsError(f"insufficient allowance for {address}")
            self._allowances[(address, self.ESCROW_ADDRESS)] -= amount
            self._external[address] -= amount
            self._balances[address] += amount
            self._held += amount
            return None

        if kind is OperationKind.WITHDRAW:
            amount = int(params["amount"])
            if self._balances[address] - self._locked[address] < amount:
                raise InsufficientFundsError(f"insufficient free balance for {address}")
            self._balances[address] -= amount
            self._held -= amount
            self._external[address] += amount
            return None

        if kind is OperationKind.TRANSFER:
            amount = int(params["amount"])
            if self._external[address] < amount:
                raise InsufficientFundsError(f"insufficient external balance for {address}")
            self._external[address] -= amount
            self._external[params["to"]] += amount
            return None

        if kind is OperationKind.APPROVE:
            self._allowances[(address, params["spender"])] = int(params["amount"])
            return None

        if kind is OperationKind.VERIFY_SOLVENCY:
            claimed = sum(self._balances.values())
            margin = self._held - claimed
            self._last_report = SolvencyReport(
                solvent=margin >= 0,
                margin=margin,
                held=self._held,
                claimed=claimed,
            )
            return None

        raise LedgerError(f"unsupported operation: {kind}")

    def _open_obligation(self, obligation_id: str) -> SimObligation:
        obligation = self._obligations.get(obligation_id)
        if obligation is None:
            raise ObligationNotLockedError(f"unknown obligation {obligation_id}")
        if obligation.state != "locked":
            raise ObligationNotLockedError(
                f"obligation {obligation_id} already {obligation.state}"
            )
        return obligation


