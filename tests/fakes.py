"""In-memory collaborators for the test suite."""

import asyncio
from typing import Optional

from core.adapters.bank_transfer import SubmissionResult
from core.chain import WriteResult

ADDRESS_A = "0x" + "a1" * 20
ADDRESS_B = "0x" + "b2" * 20
PAYEE = "0x" + "c3" * 20


async def settle(rounds: int = 10):
    """Let pending tasks run up to their next real suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeReader:
    """
    balances: address -> int (or Exception to raise).
    queue(address, *items): per-call script; an item may be an int, an
    Exception, or an asyncio.Future the read waits on.
    """

    def __init__(self, balances: Optional[dict] = None):
        self.balances = dict(balances or {})
        self.scripts: dict[str, list] = {}
        self.calls: list[str] = []

    def queue(self, address: str, *items):
        self.scripts.setdefault(address, []).extend(items)

    async def _value(self, address: str):
        self.calls.append(address)
        script = self.scripts.get(address)
        item = script.pop(0) if script else self.balances.get(address, 0)
        if isinstance(item, asyncio.Future):
            item = await item
        if isinstance(item, Exception):
            raise item
        return item

    async def get_balance(self, address: str) -> int:
        return await self._value(address)

    async def read_contract(self, token_address: str, function: str, args) -> int:
        assert function == "balanceOf"
        return await self._value(args[0])


class FakeWallet:
    def __init__(self):
        self.requests = []
        self.gate: Optional[asyncio.Event] = None
        self.fail_with = ""
        self.raise_exc: Optional[Exception] = None
        self._sent = 0

    async def write(self, request) -> WriteResult:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail_with:
            return WriteResult(success=False, error=self.fail_with)
        self._sent += 1
        return WriteResult(success=True, tx_hash=f"0x{self._sent:064x}")


class FakeBankAdapter:
    def __init__(self, accept: bool = True, status_code: int = 201):
        self.accept = accept
        self.status_code = status_code
        self.raise_exc: Optional[Exception] = None
        self.intents: list[dict] = []
        self._n = 0

    async def submit(self, intent: dict) -> SubmissionResult:
        self.intents.append(intent)
        if self.raise_exc is not None:
            raise self.raise_exc
        self._n += 1
        key = f"idem-{self._n}"
        if self.accept:
            return SubmissionResult(accepted=True, idempotency_key=key, status_code=self.status_code)
        return SubmissionResult(
            accepted=False, idempotency_key=key, status_code=self.status_code,
            error=f"HTTP {self.status_code}",
        )

    async def close(self):
        pass


class RecordingHandoff:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def send(self, request):
        self.sent.append(request)
        if self.fail:
            raise RuntimeError("card widget unavailable")


class NeverResolvingHandoff:
    """Async handoff that never completes."""

    def __init__(self):
        self.sent = []
        self.cancelled = 0
        self._never = asyncio.Event()

    async def send(self, request):
        self.sent.append(request)
        try:
            await self._never.wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
