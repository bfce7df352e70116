"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object

Non-responsibilities:
- No orchestration logic
- No behavioral constants (see constants.py)
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from constants import (
    RECOVERY_TIMEOUT_S,
    REPLENISH_TARGET_DEFAULT,
    RESERVE_REQUIRED_DEFAULT,
)


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default) == "1"


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.environ.get(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_optional_float(name: str) -> float | None:
    raw = os.environ.get(name, "").strip()
    return float(raw) if raw else None


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the ledger factory and the run controller.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str
    log_level: str

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    enable_json_logs: bool

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    ledger_backend: str
    ledger_rpc_url: str | None
    ledger_network_id: str
    ledger_timeout_s: float

    # ------------------------------------------------------------------
    # Identities (signing keys never logged)
    # ------------------------------------------------------------------

    custodian_address: str
    custodian_key: str | None = field(repr=False)
    payee_address: str
    payee_key: str | None = field(repr=False)
    participant_addresses: tuple[str, ...]
    participant_keys: tuple[str, ...] = field(repr=False)

    # ------------------------------------------------------------------
    # Run policy
    # ------------------------------------------------------------------

    reserve_required: int
    replenish_target: int
    recovery_timeout_s: float
    recover_after_stop: bool
    bid_delay_scale: float
    cycle_hold_s: float | None
    run_store_path: str | None

    # ------------------------------------------------------------------
    # Simulated ledger seed
    # ------------------------------------------------------------------

    sim_custodian_balance: int
    sim_participant_balance: int
    sim_base_fee: int

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ValueError if a numeric variable is malformed.
        """
        participant_addresses = _env_list("PARTICIPANT_ADDRESSES") or tuple(
            f"participant-{i}" for i in range(10)
        )

        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),

            enable_json_logs=_env_flag("ENABLE_JSON_LOGS", "1"),

            ledger_backend=os.environ.get("LEDGER_BACKEND", "simulated"),
            ledger_rpc_url=os.environ.get("LEDGER_RPC_URL"),
            ledger_network_id=os.environ.get("LEDGER_NETWORK_ID", "sim-1"),
            ledger_timeout_s=float(os.environ.get("LEDGER_TIMEOUT_S", "10")),

            custodian_address=os.environ.get("CUSTODIAN_ADDRESS", "custodian"),
            custodian_key=os.environ.get("CUSTODIAN_KEY"),
            payee_address=os.environ.get("PAYEE_ADDRESS", "payee"),
            payee_key=os.environ.get("PAYEE_KEY"),
            participant_addresses=participant_addresses,
            participant_keys=_env_list("PARTICIPANT_KEYS"),

            reserve_required=int(
                os.environ.get("RESERVE_REQUIRED", str(RESERVE_REQUIRED_DEFAULT))
            ),
            replenish_target=int(
                os.environ.get("REPLENISH_TARGET", str(REPLENISH_TARGET_DEFAULT))
            ),
            recovery_timeout_s=float(
                os.environ.get("RECOVERY_TIMEOUT_S", str(RECOVERY_TIMEOUT_S))
            ),
            recover_after_stop=_env_flag("RECOVER_AFTER_STOP", "0"),
            bid_delay_scale=float(os.environ.get("BID_DELAY_SCALE", "1.0")),
            cycle_hold_s=_env_optional_float("CYCLE_HOLD_S"),
            run_store_path=os.environ.get("RUN_STORE_PATH"),

            sim_custodian_balance=int(os.environ.get("SIM_CUSTODIAN_BALANCE", "5000")),
            sim_participant_balance=int(
                os.environ.get("SIM_PARTICIPANT_BALANCE", "200")
            ),
            sim_base_fee=int(os.environ.get("SIM_BASE_FEE", "10")),
        )
