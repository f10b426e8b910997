"""
Payment Rules - Layer 0 (Immutable)

Fixed constants for balance tracking, funding and settlement, plus the
chain registry. Nothing here is read from the environment: deploy-time
knobs live in main.py, these are the rules every deployment shares.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Final, Tuple


class ConfigError(Exception):
    """Raised at wiring time for an impossible configuration (unknown chain, bad asset)."""
    pass


class ActionStatus(Enum):
    """Outcome of any user-triggered core operation."""
    ACCEPTED = "accepted"       # Submitted / recorded
    REJECTED = "rejected"       # Input rejected: nothing mutated, nothing sent
    CONFLICT = "conflict"       # Already paid, already in flight, or not pending
    FAILED = "failed"           # Upstream failure, safe to retry


class BalanceAsset(Enum):
    NATIVE = "native"           # ETH, read via get_balance
    TOKEN = "token"             # USDC, read via balanceOf


# ============================================================
# RULES - shared by every deployment
# ============================================================

@dataclass(frozen=True)
class PaymentRules:
    """Frozen dataclass = immutable at runtime."""

    # --- BALANCE TRACKING ---
    BALANCE_POLL_SECONDS: Final[float] = 30.0          # Fixed cadence, no backoff
    STALE_AFTER_INTERVALS: Final[int] = 2              # Stale when older than 2 poll intervals
    NATIVE_DECIMALS: Final[int] = 18                   # wei
    TOKEN_DECIMALS: Final[int] = 6                     # USDC base units
    NATIVE_DISPLAY_DIGITS: Final[int] = 6
    CURRENCY_DISPLAY_DIGITS: Final[int] = 2

    # --- FUNDING ---
    DEVELOPER_FEE: Final[str] = "0.5"                  # Sent verbatim to the funding partner
    BANK_SOURCE_RAIL: Final[str] = "ach_push"
    BANK_SOURCE_CURRENCY: Final[str] = "usd"
    BANK_DESTINATION_RAIL: Final[str] = "ethereum"
    BANK_DESTINATION_CURRENCY: Final[str] = "usdc"
    ACCOUNT_REF_PREFIX: Final[str] = "cust_"
    ACCOUNT_REF_LENGTH: Final[int] = 16                # Hex chars of the address kept

    # --- FUND PROMPT (once per session) ---
    FUND_PROMPT_AMOUNT_USD: Final[str] = "1.00"
    FUND_PROMPT_DURATION_MS: Final[int] = 10_000

    # --- NOTIFICATIONS ---
    MAX_NOTIFICATIONS: Final[int] = 200                # Ring buffer size


RULES = PaymentRules()


# ============================================================
# CHAIN REGISTRY
# ============================================================

@dataclass(frozen=True)
class ChainConfig:
    """Immutable per-chain configuration."""
    chain_id: str           # "base"
    chain_id_int: int       # EIP-155 id
    display_name: str
    rpc: str
    token_symbol: str
    token_address: str
    explorer: str


SUPPORTED_CHAINS: Final[Tuple[ChainConfig, ...]] = (
    ChainConfig(
        chain_id="base",
        chain_id_int=8453,
        display_name="Base",
        rpc="https://mainnet.base.org",
        token_symbol="USDC",
        token_address="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        explorer="https://basescan.org",
    ),
    ChainConfig(
        chain_id="base-sepolia",
        chain_id_int=84532,
        display_name="Base Sepolia",
        rpc="https://sepolia.base.org",
        token_symbol="USDC",
        token_address="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        explorer="https://sepolia.basescan.org",
    ),
)

DEFAULT_CHAIN: Final[str] = "base"


def get_chain_config(chain_id: str) -> ChainConfig:
    """Get chain config by ID. Raises ConfigError if unknown."""
    for chain in SUPPORTED_CHAINS:
        if chain.chain_id == chain_id:
            return chain
    raise ConfigError(
        f"Unknown chain: {chain_id}. Supported: {[c.chain_id for c in SUPPORTED_CHAINS]}"
    )


def short_address(address: str) -> str:
    """Truncated address for logs."""
    if not address:
        return "<none>"
    return address[:10] + "..." if len(address) > 10 else address
