"""
Balance Tracker - Polls the wallet's on-chain balance

Keeps the latest WalletBalance for one address:
- Fixed cadence (30s) plus one immediate read on start / address change
- Every read runs as its own task, so a stuck RPC call never delays the cadence
- A failed read keeps the previous value and reports the error; the loop goes on
- Results for a previous address are dropped (generation check)
- Among reads for the same address, an older read finishing after a newer
  one was applied is dropped (sequence check)

stop() cancels future reads only. A read already in flight still lands,
unless the tracker was restarted for a different address in the meantime.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from core.rules import RULES, BalanceAsset, ChainConfig, short_address
from core.units import to_display

logger = logging.getLogger("billpay.balance")


@dataclass(frozen=True)
class WalletBalance:
    """One successful balance read. Replaced wholesale, never mutated."""
    address: str
    asset: BalanceAsset
    raw_amount: int
    decimals: int
    display_amount: str
    as_of: float

    def is_stale(self, now: Optional[float] = None,
                 poll_interval: float = RULES.BALANCE_POLL_SECONDS) -> bool:
        now = time.time() if now is None else now
        return now - self.as_of > poll_interval * RULES.STALE_AFTER_INTERVALS

    def to_dict(self, now: Optional[float] = None,
                poll_interval: float = RULES.BALANCE_POLL_SECONDS) -> dict:
        return {
            "address": self.address,
            "asset": self.asset.value,
            "raw_amount": str(self.raw_amount),
            "decimals": self.decimals,
            "display_amount": self.display_amount,
            "as_of": self.as_of,
            "stale": self.is_stale(now, poll_interval),
        }


class BalanceTracker:
    """
    Usage:
        tracker = BalanceTracker(reader, chain, on_error=notify)
        tracker.start("0xabc...")
        tracker.latest          # WalletBalance or None
        tracker.stop()
    """

    def __init__(
        self,
        reader,
        chain: ChainConfig,
        asset: BalanceAsset = BalanceAsset.TOKEN,
        poll_interval: float = RULES.BALANCE_POLL_SECONDS,
        on_error: Optional[Callable[[str, Exception], None]] = None,
        on_update: Optional[Callable[[WalletBalance], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._reader = reader
        self._chain = chain
        self._asset = asset
        self._interval = poll_interval
        self._on_error = on_error
        self._on_update = on_update
        self._clock = clock

        if asset is BalanceAsset.NATIVE:
            self._decimals = RULES.NATIVE_DECIMALS
            self._digits = RULES.NATIVE_DISPLAY_DIGITS
        else:
            self._decimals = RULES.TOKEN_DECIMALS
            self._digits = RULES.CURRENCY_DISPLAY_DIGITS

        self._address: str = ""
        self._latest: Optional[WalletBalance] = None
        self._generation: int = 0      # bumped on address change
        self._seq: int = 0             # bumped per read
        self._applied_seq: int = 0
        self._cadence: Optional[asyncio.Task] = None
        self._reads: set[asyncio.Task] = set()

        self._read_count: int = 0
        self._failure_count: int = 0
        self._last_error: str = ""

    # ----------------------------------------------------------
    # STATE
    # ----------------------------------------------------------

    @property
    def latest(self) -> Optional[WalletBalance]:
        return self._latest

    @property
    def address(self) -> str:
        return self._address

    @property
    def poll_interval(self) -> float:
        return self._interval

    @property
    def display_digits(self) -> int:
        return self._digits

    @property
    def running(self) -> bool:
        return self._cadence is not None and not self._cadence.done()

    def is_stale(self) -> bool:
        """No value yet counts as stale."""
        if self._latest is None:
            return True
        return self._latest.is_stale(self._clock(), self._interval)

    # ----------------------------------------------------------
    # LIFECYCLE
    # ----------------------------------------------------------

    def start(self, address: str) -> "BalanceTracker":
        """
        Start (or retarget) polling. Same address while running is a no-op.
        Must be called from inside the event loop.
        """
        if not address:
            logger.warning("Balance tracker start ignored: empty address")
            return self

        if address == self._address and self.running:
            return self

        if address != self._address:
            self._generation += 1
            self._address = address
            self._latest = None
            logger.info(f"Balance tracker -> {short_address(address)} ({self._asset.value})")

        self._cancel_cadence()
        self._cadence = asyncio.create_task(self._run(self._generation, address))
        return self

    def stop(self):
        """Cancel future polls. Idempotent. In-flight reads are left alone."""
        if self._cancel_cadence():
            logger.info(f"Balance tracker stopped for {short_address(self._address)}")

    async def refresh(self) -> Optional[WalletBalance]:
        """Immediate out-of-cadence read of the current address."""
        if not self._address:
            return None
        self._seq += 1
        await self._read(self._seq, self._generation, self._address)
        return self._latest

    async def drain(self):
        """Wait for reads already in flight."""
        if self._reads:
            await asyncio.gather(*list(self._reads), return_exceptions=True)

    def _cancel_cadence(self) -> bool:
        if self._cadence is None:
            return False
        task, self._cadence = self._cadence, None
        if task.done():
            return False
        task.cancel()
        return True

    # ----------------------------------------------------------
    # POLLING
    # ----------------------------------------------------------

    async def _run(self, generation: int, address: str):
        while True:
            self._spawn_read(generation, address)
            await asyncio.sleep(self._interval)

    def _spawn_read(self, generation: int, address: str):
        self._seq += 1
        task = asyncio.create_task(self._read(self._seq, generation, address))
        self._reads.add(task)
        task.add_done_callback(self._reads.discard)

    async def _fetch(self, address: str) -> int:
        if self._asset is BalanceAsset.NATIVE:
            return await self._reader.get_balance(address)
        return await self._reader.read_contract(
            self._chain.token_address, "balanceOf", [address],
        )

    async def _read(self, seq: int, generation: int, address: str):
        self._read_count += 1
        try:
            raw = await self._fetch(address)
            if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
                raise ValueError(f"malformed balance response: {raw!r}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if generation != self._generation:
                return
            self._failure_count += 1
            self._last_error = f"{type(e).__name__}: {e}"
            logger.warning(f"Balance read failed for {short_address(address)}: {self._last_error}")
            if self._on_error:
                self._on_error(address, e)
            return

        if generation != self._generation:
            logger.debug(f"Dropped balance for previous address {short_address(address)}")
            return
        if seq < self._applied_seq:
            logger.debug(f"Dropped out-of-order balance read #{seq} (applied #{self._applied_seq})")
            return

        balance = WalletBalance(
            address=address,
            asset=self._asset,
            raw_amount=raw,
            decimals=self._decimals,
            display_amount=to_display(raw, self._decimals, self._digits),
            as_of=self._clock(),
        )
        self._latest = balance
        self._applied_seq = seq
        logger.debug(f"Balance {short_address(address)}: {balance.display_amount}")
        if self._on_update:
            self._on_update(balance)

    def get_status(self) -> dict:
        return {
            "address": short_address(self._address),
            "asset": self._asset.value,
            "running": self.running,
            "poll_interval": self._interval,
            "reads": self._read_count,
            "failures": self._failure_count,
            "in_flight": len(self._reads),
            "last_error": self._last_error,
            "stale": self.is_stale(),
        }
