"""
Chain Layer - On-Chain Reads and Writes

Two capabilities the rest of the core consumes:
- ChainReader: native balance + ERC20 balanceOf for an address
- SigningWallet: write(TransactionRequest) -> tx hash

Design:
- Sync Web3 calls wrapped in asyncio.run_in_executor() (web3.py async is fragile)
- Embedded minimal ABI - only the functions we call
- Gas estimation + 20% buffer, nonce auto from chain
- Writes return a WriteResult; they never wait for a receipt because
  nothing downstream consumes confirmation
"""

import os
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from eth_abi import encode
from eth_account import Account
from eth_utils import to_checksum_address
from web3 import Web3

from core.rules import ChainConfig, short_address

logger = logging.getLogger("billpay.chain")


# ============================================================
# MINIMAL ABI - only functions we call at runtime
# ============================================================

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]

# keccak("transfer(address,uint256)")[:4]
TRANSFER_SELECTOR = "a9059cbb"

DEFAULT_GAS_LIMIT = 200_000


# ============================================================
# REQUEST / RESULT TYPES
# ============================================================

@dataclass(frozen=True)
class TransactionRequest:
    """What the wallet is asked to sign and send."""
    chain_id: int
    to: str
    data: str
    value: int = 0


@dataclass
class WriteResult:
    """Result of a wallet write attempt."""
    success: bool
    tx_hash: str = ""
    error: str = ""


def encode_transfer(to_address: str, amount_raw: int) -> str:
    """Calldata for ERC20 transfer(to, amount)."""
    args = encode(["address", "uint256"], [to_checksum_address(to_address), int(amount_raw)])
    return "0x" + TRANSFER_SELECTOR + args.hex()


def build_token_transfer(chain: ChainConfig, to_address: str, amount_raw: int) -> TransactionRequest:
    """Settlement instruction: move `amount_raw` token base units to `to_address`."""
    return TransactionRequest(
        chain_id=chain.chain_id_int,
        to=to_checksum_address(chain.token_address),
        data=encode_transfer(to_address, amount_raw),
        value=0,
    )


def explorer_tx_url(chain: ChainConfig, tx_hash: str) -> str:
    return f"{chain.explorer}/tx/{tx_hash}"


def connect(chain: ChainConfig, rpc_url: Optional[str] = None) -> Web3:
    """
    Build a Web3 client for `chain`. RPC precedence: explicit argument,
    <CHAIN>_RPC_URL env var, chain default.
    """
    env_key = f"{chain.chain_id.upper().replace('-', '_')}_RPC_URL"
    url = rpc_url or os.getenv(env_key, "") or chain.rpc
    logger.info(f"Chain client for {chain.chain_id} -> {url}")
    return Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": 30}))


# ============================================================
# READS
# ============================================================

class ChainReader:
    """
    Read-only chain access. Errors propagate to the caller; the balance
    tracker decides what a failed read means.
    """

    def __init__(self, w3: Web3):
        self._w3 = w3

    async def get_balance(self, address: str) -> int:
        account = to_checksum_address(address)
        return await asyncio.get_running_loop().run_in_executor(
            None, self._w3.eth.get_balance, account,
        )

    async def read_contract(self, token_address: str, function: str, args: Sequence) -> int:
        contract = self._w3.eth.contract(
            address=to_checksum_address(token_address), abi=ERC20_ABI,
        )
        call_args = [
            to_checksum_address(a) if isinstance(a, str) and a.startswith("0x") else a
            for a in args
        ]
        fn = getattr(contract.functions, function)(*call_args)
        return await asyncio.get_running_loop().run_in_executor(None, fn.call)


# ============================================================
# WRITES
# ============================================================

class UnconfiguredWallet:
    """Stand-in when no signing key is configured: every write fails cleanly."""

    address = ""

    async def write(self, request: TransactionRequest) -> WriteResult:
        return WriteResult(success=False, error="wallet not configured")

    def get_status(self) -> dict:
        return {"address": "", "tx_count": 0, "last_error": "wallet not configured"}


class SigningWallet:
    """
    Local-key wallet. Builds, signs and broadcasts a TransactionRequest.

    Usage:
        wallet = SigningWallet(w3, private_key)
        result = await wallet.write(build_token_transfer(chain, payee, units))
    """

    def __init__(self, w3: Web3, private_key: str):
        self._w3 = w3
        self._private_key = private_key
        self._address = Account.from_key(private_key).address
        self._tx_count = 0
        self._last_error = ""
        logger.info(f"Signing wallet ready: {short_address(self._address)}")

    @property
    def address(self) -> str:
        return self._address

    async def write(self, request: TransactionRequest) -> WriteResult:
        w3 = self._w3

        def _execute() -> str:
            tx = {
                "from": self._address,
                "to": to_checksum_address(request.to),
                "data": request.data,
                "value": request.value,
                "nonce": w3.eth.get_transaction_count(self._address),
                "gasPrice": w3.eth.gas_price,
                "chainId": request.chain_id,
            }

            # Gas estimation + 20% buffer
            try:
                tx["gas"] = int(w3.eth.estimate_gas(tx) * 1.2)
            except Exception as gas_err:
                logger.warning(f"Gas estimation failed, using default {DEFAULT_GAS_LIMIT}: {gas_err}")
                tx["gas"] = DEFAULT_GAS_LIMIT

            signed = w3.eth.account.sign_transaction(tx, self._private_key)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            return Web3.to_hex(tx_hash)

        try:
            tx_hash_hex = await asyncio.get_running_loop().run_in_executor(None, _execute)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"TX ERROR [chain {request.chain_id}]: {error}")
            self._last_error = error
            return WriteResult(success=False, error=error)

        self._tx_count += 1
        logger.info(f"TX SENT [chain {request.chain_id}]: {tx_hash_hex[:16]}...")
        return WriteResult(success=True, tx_hash=tx_hash_hex)

    def get_status(self) -> dict:
        return {
            "address": short_address(self._address),
            "tx_count": self._tx_count,
            "last_error": self._last_error,
        }
