"""
Ledger boundary: identities, operations, receipts, errors and the client protocol.

Responsibilities:
- Define the data exchanged with the external escrow ledger
- Define the ledger error taxonomy (retriable vs terminal)
- Define the LedgerClient protocol every backend implements

Non-responsibilities:
- No sequencing, retry, or fee policy (see orchestrator/sequencing.py, retry.py)
- No settlement rules (the ledger owns true obligation state)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Mapping, Protocol, Sequence, runtime_checkable


# =============================================================================
# Identities
# =============================================================================

class IdentityRole(str, Enum):
    """
    Role of a signing identity.

    CUSTODIAN:
        Holds the run reserve, signs locks/settlements/refunds and receives sweeps.

    PAYEE:
        Fixed recipient of every settlement.

    PARTICIPANT:
        Bidder whose ledger balance is locked for obligations.
    """

    CUSTODIAN = "custodian"
    PAYEE = "payee"
    PARTICIPANT = "participant"


@dataclass(frozen=True)
class Identity:
    """A keyed account. The signing key is never part of repr or logs."""
    role: IdentityRole
    address: str
    index: int = 0
    signing_key: str | None = field(default=None, repr=False, compare=False)

    def label(self) -> str:
        if self.role is IdentityRole.PARTICIPANT:
            return f"{self.role.value}[{self.index}]"
        return self.role.value


# =============================================================================
# Operations
# =============================================================================

class OperationKind(str, Enum):
    """Ledger write kinds."""

    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    LOCK = "lock"
    SETTLE = "settle"
    REFUND = "refund"
    VERIFY_SOLVENCY = "verify_solvency"
    TRANSFER = "transfer"
    APPROVE = "approve"


@dataclass(frozen=True)
class Operation:
    """
    Declarative ledger write.

    params are opaque to the orchestrator apart from the constructors below.
    """
    kind: OperationKind
    params: Mapping[str, Any] = field(default_factory=dict)

    @staticmethod
    def deposit(amount: int) -> Operation:
        return Operation(OperationKind.DEPOSIT, {"amount": amount})

    @staticmethod
    def withdraw(amount: int) -> Operation:
        return Operation(OperationKind.WITHDRAW, {"amount": amount})

    @staticmethod
    def lock(owner: str, amount: int, work_item_id: str) -> Operation:
        return Operation(
            OperationKind.LOCK,
            {"owner": owner, "amount": amount, "work_item_id": work_item_id},
        )

    @staticmethod
    def settle(obligation_id: str, payee: str) -> Operation:
        return Operation(
            OperationKind.SETTLE,
            {"obligation_id": obligation_id, "payee": payee},
        )

    @staticmethod
    def refund(obligation_id: str) -> Operation:
        return Operation(OperationKind.REFUND, {"obligation_id": obligation_id})

    @staticmethod
    def verify_solvency() -> Operation:
        return Operation(OperationKind.VERIFY_SOLVENCY, {})

    @staticmethod
    def transfer(to: str, amount: int) -> Operation:
        return Operation(OperationKind.TRANSFER, {"to": to, "amount": amount})

    @staticmethod
    def approve(spender: str, amount: int) -> Operation:
        return Operation(OperationKind.APPROVE, {"spender": spender, "amount": amount})


@dataclass(frozen=True)
class Receipt:
    """Confirmation of an accepted write."""
    ref: str
    kind: OperationKind
    signer: str
    sequence: int
    fee: int
    obligation_id: str | None = None
    height: int = 0


@dataclass(frozen=True)
class SolvencyReport:
    """
    Result of the last solvency verification.

    margin = held - claimed, where held is what the ledger actually holds
    and claimed is the sum of all account balances it owes.
    """
    solvent: bool
    margin: int
    held: int
    claimed: int


@dataclass(frozen=True)
class LockEvent:
    """Historical lock record, used to find orphaned obligations."""
    obligation_id: str
    owner: str
    amount: int
    height: int


# =============================================================================
# Errors
# =============================================================================

class LedgerError(Exception):
    """
    Base ledger failure.

    retriable marks errors caused by fee-market or sequencing contention,
    which a resubmission at a higher fee (or a fresh sequence) can clear.
    """
    retriable: ClassVar[bool] = False


class FeeTooLowError(LedgerError):
    """Fee below the current minimum, or replacement underpriced."""
    retriable = True


class ConflictingPendingError(LedgerError):
    """An operation with the same sequence is already pending."""
    retriable = True


class StaleSequenceError(LedgerError):
    """Sequence number already consumed."""
    retriable = True


class InsufficientFundsError(LedgerError):
    pass


class ObligationNotLockedError(LedgerError):
    """Obligation is unknown, or already settled/refunded."""


class SequenceGapError(LedgerError):
    """Sequence number ahead of the ledger's next expected value."""


class LedgerUnavailableError(LedgerError):
    """Transport failure talking to the ledger."""


# =============================================================================
# Client Protocol
# =============================================================================

@runtime_checkable
class LedgerClient(Protocol):
    """
    Boundary to the external escrow ledger.

    Reads are side-effect free. Every write goes through submit(), which
    either returns a Receipt or raises a LedgerError subclass.
    """

    async def network_id(self) -> str: ...

    async def current_height(self) -> int: ...

    async def pending_sequence(self, address: str) -> int: ...

    async def fee_baseline(self) -> int: ...

    async def balance_of(self, address: str) -> int: ...

    async def locked_balance_of(self, address: str) -> int: ...

    async def external_balance_of(self, address: str) -> int: ...

    async def allowance(self, owner: str, spender: str) -> int: ...

    async def find_lock_events(
        self, address: str, since_height: int
    ) -> Sequence[LockEvent]: ...

    async def solvency(self) -> SolvencyReport | None: ...

    async def submit(
        self,
        signer: Identity,
        operation: Operation,
        *,
        sequence: int,
        fee: int,
    ) -> Receipt: ...

    @property
    def escrow_address(self) -> str: ...
