"""
Ledger and identity construction from AppConfig.
"""

from __future__ import annotations

from dataclasses import dataclass

from config import AppConfig
from ledger.base import Identity, IdentityRole, LedgerClient
from ledger.jsonrpc import JsonRpcLedger
from ledger.simulated import SimulatedLedger


@dataclass(frozen=True)
class IdentitySet:
    """The identities a run signs with."""
    custodian: Identity
    payee: Identity
    participants: tuple[Identity, ...]

    def all(self) -> tuple[Identity, ...]:
        return (self.custodian, self.payee, *self.participants)


def build_identities(config: AppConfig) -> IdentitySet:
    keys = config.participant_keys
    participants = tuple(
        Identity(
            role=IdentityRole.PARTICIPANT,
            address=address,
            index=i,
            signing_key=keys[i] if i < len(keys) else None,
        )
        for i, address in enumerate(config.participant_addresses)
    )
    return IdentitySet(
        custodian=Identity(
            IdentityRole.CUSTODIAN, config.custodian_address, signing_key=config.custodian_key
        ),
        payee=Identity(IdentityRole.PAYEE, config.payee_address, signing_key=config.payee_key),
        participants=participants,
    )


def build_ledger(config: AppConfig, identities: IdentitySet) -> LedgerClient:
    """
    Build the configured ledger backend.

    Raises:
        ValueError for an unknown backend or a jsonrpc backend without URL.
    """
    backend = config.ledger_backend.lower()

    if backend == "simulated":
        ledger = SimulatedLedger(
            network=config.ledger_network_id,
            base_fee=config.sim_base_fee,
        )
        ledger.fund_external(identities.custodian.address, config.sim_custodian_balance)
        for participant in identities.participants:
            ledger.seed_deposit(participant.address, config.sim_participant_balance)
        return ledger

    if backend == "jsonrpc":
        if not config.ledger_rpc_url:
            raise ValueError("LEDGER_RPC_URL is required for the jsonrpc ledger backend")
        return JsonRpcLedger(config.ledger_rpc_url, timeout_s=config.ledger_timeout_s)

    raise ValueError(f"unknown ledger backend: {config.ledger_backend}")
