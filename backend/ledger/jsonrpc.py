"""
JSON-RPC 2.0 ledger client.

Talks to a ledger gateway that holds the signing keys and exposes
`ledger_<method>` calls over HTTP. Gateway error messages are classified
into the ledger error taxonomy so the retry layer can tell fee-market
contention from terminal rejections.
"""

from __future__ import annotations

import itertools
from typing import Any, Sequence

import httpx

from ledger.base import (
    ConflictingPendingError,
    FeeTooLowError,
    Identity,
    InsufficientFundsError,
    LedgerError,
    LedgerUnavailableError,
    LockEvent,
    ObligationNotLockedError,
    Operation,
    OperationKind,
    Receipt,
    SequenceGapError,
    SolvencyReport,
    StaleSequenceError,
)
from observability.logger import log_event


# Ordered: first match wins
_ERROR_PATTERNS: tuple[tuple[str, type[LedgerError]], ...] = (
    ("replacement fee too low", FeeTooLowError),
    ("underpriced", FeeTooLowError),
    ("fee too low", FeeTooLowError),
    ("already known", ConflictingPendingError),
    ("nonce too low", StaleSequenceError),
    ("nonce too high", SequenceGapError),
    ("insufficient", InsufficientFundsError),
    ("not locked", ObligationNotLockedError),
    ("already settled", ObligationNotLockedError),
    ("already refunded", ObligationNotLockedError),
    ("unknown obligation", ObligationNotLockedError),
)


def classify_error_message(message: str) -> type[LedgerError]:
    """Map a gateway error message onto a LedgerError subclass."""
    lowered = message.lower()
    for needle, error_cls in _ERROR_PATTERNS:
        if needle in lowered:
            return error_cls
    return LedgerError


class JsonRpcLedger:
    """
    LedgerClient over HTTP JSON-RPC.

    The httpx client is created lazily and may be injected (tests pass one
    built on httpx.MockTransport).
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_s: float = 10.0,
        escrow_address: str = "escrow",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout_s = timeout_s
        self._escrow_address = escrow_address
        self._client = client
        self._ids = itertools.count(1)

    @property
    def escrow_address(self) -> str:
        return self._escrow_address

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    async def _call(self, method: str, params: dict[str, Any]) -> Any:
        request_id = next(self._ids)
        body = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": f"ledger_{method}",
            "params": params,
        }

        try:
            response = await self._http().post(self._url, json=body)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            log_event({
                "event_type": "LEDGER_RPC_TRANSPORT_ERROR",
                "method": method,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            raise LedgerUnavailableError(f"{method}: {exc}") from exc

        error = payload.get("error")
        if error:
            message = str(error.get("message", "unknown ledger error"))
            raise classify_error_message(message)(message)

        return payload.get("result")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def network_id(self) -> str:
        return str(await self._call("networkId", {}))

    async def current_height(self) -> int:
        return int(await self._call("height", {}))

    async def pending_sequence(self, address: str) -> int:
        return int(await self._call("pendingSequence", {"address": address}))

    async def fee_baseline(self) -> int:
        return int(await self._call("feeBaseline", {}))

    async def balance_of(self, address: str) -> int:
        return int(await self._call("balanceOf", {"address": address}))

    async def locked_balance_of(self, address: str) -> int:
        return int(await self._call("lockedBalanceOf", {"address": address}))

    async def external_balance_of(self, address: str) -> int:
        return int(await self._call("externalBalanceOf", {"address": address}))

    async def allowance(self, owner: str, spender: str) -> int:
        return int(await self._call("allowance", {"owner": owner, "spender": spender}))

    async def find_lock_events(
        self, address: str, since_height: int
    ) -> Sequence[LockEvent]:
        rows = await self._call(
            "lockEvents", {"address": address, "sinceHeight": since_height}
        )
        return [
            LockEvent(
                obligation_id=str(row["obligationId"]),
                owner=str(row["owner"]),
                amount=int(row["amount"]),
                height=int(row["height"]),
            )
            for row in rows or []
        ]

    async def solvency(self) -> SolvencyReport | None:
        row = await self._call("solvency", {})
        if not row:
            return None
        return SolvencyReport(
            solvent=bool(row["solvent"]),
            margin=int(row["margin"]),
            held=int(row["held"]),
            claimed=int(row["claimed"]),
        )

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
        # Keys stay with the gateway; only the address selects the signer
        row = await self._call(
            "submit",
            {
                "signer": signer.address,
                "kind": operation.kind.value,
                "params": dict(operation.params),
                "sequence": sequence,
                "fee": fee,
            },
        )
        obligation_id = row.get("obligationId")
        return Receipt(
            ref=str(row["ref"]),
            kind=OperationKind(row.get("kind", operation.kind.value)),
            signer=signer.address,
            sequence=sequence,
            fee=int(row.get("fee", fee)),
            obligation_id=str(obligation_id) if obligation_id is not None else None,
            height=int(row.get("height", 0)),
        )
