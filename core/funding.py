"""
Funding Lifecycle Manager - Top-ups across two rails

Rails:
1. ACH  - funding intent POSTed to the funding partner; recorded only if accepted
2. CARD - recorded optimistically, then handed off to the card UI (one-way)

Both rails leave a TopUp in PENDING. Neither rail reports completion on its
own; reconcile() is the explicit entry point for whoever does learn the
outcome (funding partner webhook, ops tooling).

History is newest-first and append-only, except for in-place status
transitions on the matching id.
"""

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from core.adapters.card_funding import CardFundingRequest
from core.rules import RULES, ActionStatus, ChainConfig, short_address
from core.units import AmountInput, format_usd, parse_amount

logger = logging.getLogger("billpay.funding")


# ============================================================
# DATA TYPES
# ============================================================

class TopUpMethod(Enum):
    ACH = "ACH"
    CARD = "CARD"


class TopUpStatus(Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class HandoffOutcome(Enum):
    """What the core knows about an external handoff. CARD stays UNKNOWN forever."""
    NOT_APPLICABLE = "not_applicable"
    UNKNOWN = "unknown"


@dataclass
class TopUp:
    id: str
    amount: Decimal
    method: TopUpMethod
    status: TopUpStatus
    created_at: float
    reference: str = ""         # funding-partner idempotency key (ACH only)
    updated_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": format_usd(self.amount),
            "method": self.method.value,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at or self.created_at,
            "reference": self.reference,
        }


@dataclass
class FundingResult:
    status: ActionStatus
    top_up: Optional[TopUp] = None
    error: str = ""
    handoff: HandoffOutcome = HandoffOutcome.NOT_APPLICABLE

    @property
    def ok(self) -> bool:
        return self.status is ActionStatus.ACCEPTED


def account_reference(address: str) -> str:
    """Synthetic funding-partner customer reference derived from the wallet address."""
    hex_part = address.lower()
    if hex_part.startswith("0x"):
        hex_part = hex_part[2:]
    return RULES.ACCOUNT_REF_PREFIX + hex_part[:RULES.ACCOUNT_REF_LENGTH]


def build_funding_intent(address: str, amount: Decimal) -> dict:
    """Body of the funding-partner POST: ACH push in USD -> USDC to `address`."""
    return {
        "amount": str(amount),
        "on_behalf_of": account_reference(address),
        "developer_fee": RULES.DEVELOPER_FEE,
        "source": {
            "payment_rail": RULES.BANK_SOURCE_RAIL,
            "currency": RULES.BANK_SOURCE_CURRENCY,
        },
        "destination": {
            "payment_rail": RULES.BANK_DESTINATION_RAIL,
            "currency": RULES.BANK_DESTINATION_CURRENCY,
            "to_address": address,
        },
    }


# ============================================================
# FUNDING MANAGER
# ============================================================

class FundingManager:
    """
    Usage:
        funding = FundingManager(bank_adapter, card_outbox, chain)
        result = await funding.submit_bank_transfer(address, "25")
        result = await funding.submit_card_funding(address, "1.00")
        funding.list_top_ups()
    """

    def __init__(self, bank_adapter, card_handoff, chain: ChainConfig,
                 clock: Callable[[], float] = time.time):
        self._bank = bank_adapter
        self._card = card_handoff
        self._chain = chain
        self._clock = clock
        self._history: list[TopUp] = []           # newest first
        self._handoff_tasks: set[asyncio.Task] = set()

    # ----------------------------------------------------------
    # INPUT GUARD
    # ----------------------------------------------------------

    @staticmethod
    def _validate(address: str, amount_usd: Optional[AmountInput]) -> tuple[Optional[Decimal], str]:
        if not address:
            return None, "wallet address is not available"
        amount = parse_amount(amount_usd)
        if amount is None:
            return None, f"invalid amount: {amount_usd!r}"
        return amount, ""

    def _record(self, amount: Decimal, method: TopUpMethod, reference: str = "") -> TopUp:
        now = self._clock()
        top_up = TopUp(
            id=uuid.uuid4().hex,
            amount=amount,
            method=method,
            status=TopUpStatus.PENDING,
            created_at=now,
            reference=reference,
            updated_at=now,
        )
        self._history.insert(0, top_up)
        return top_up

    # ----------------------------------------------------------
    # ACH RAIL
    # ----------------------------------------------------------

    async def submit_bank_transfer(self, address: str, amount_usd: Optional[AmountInput]) -> FundingResult:
        amount, reason = self._validate(address, amount_usd)
        if amount is None:
            logger.info(f"Bank transfer rejected before submit: {reason}")
            return FundingResult(status=ActionStatus.REJECTED, error=reason)

        intent = build_funding_intent(address, amount)
        try:
            submission = await self._bank.submit(intent)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"Bank transfer failed for {short_address(address)}: {error}")
            return FundingResult(status=ActionStatus.FAILED, error=error)

        if not submission.accepted:
            # No history entry for a rejected intent
            logger.warning(
                f"Bank transfer ${amount} for {short_address(address)} not accepted: {submission.error}"
            )
            return FundingResult(status=ActionStatus.FAILED, error=submission.error or "rejected")

        top_up = self._record(amount, TopUpMethod.ACH, reference=submission.idempotency_key)
        logger.info(f"Bank transfer pending: ${amount} -> {short_address(address)} [{top_up.id[:8]}]")
        return FundingResult(status=ActionStatus.ACCEPTED, top_up=top_up)

    # ----------------------------------------------------------
    # CARD RAIL
    # ----------------------------------------------------------

    async def submit_card_funding(self, address: str, amount_usd: Optional[AmountInput]) -> FundingResult:
        amount, reason = self._validate(address, amount_usd)
        if amount is None:
            logger.info(f"Card funding rejected before handoff: {reason}")
            return FundingResult(status=ActionStatus.REJECTED, error=reason)

        # Record first: the entry must exist whatever the handoff does
        top_up = self._record(amount, TopUpMethod.CARD)
        self._dispatch_handoff(CardFundingRequest(
            address=address,
            chain=self._chain.chain_id,
            amount_usd=str(amount),
            top_up_id=top_up.id,
        ))
        logger.info(f"Card funding handed off: ${amount} -> {short_address(address)} [{top_up.id[:8]}]")
        return FundingResult(
            status=ActionStatus.ACCEPTED, top_up=top_up, handoff=HandoffOutcome.UNKNOWN,
        )

    def _dispatch_handoff(self, request: CardFundingRequest):
        """Fire-and-forget. Sync senders run inline; coroutine senders become a detached task."""
        try:
            outcome = self._card.send(request)
        except Exception as e:
            logger.warning(f"Card funding handoff failed: {type(e).__name__}: {e}")
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._handoff_tasks.add(task)
            task.add_done_callback(self._on_handoff_done)

    def _on_handoff_done(self, task: asyncio.Task):
        self._handoff_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Card funding handoff failed: {type(exc).__name__}: {exc}")

    # ----------------------------------------------------------
    # HISTORY + RECONCILIATION
    # ----------------------------------------------------------

    def list_top_ups(self) -> tuple[TopUp, ...]:
        return tuple(self._history)

    def get(self, top_up_id: str) -> Optional[TopUp]:
        for top_up in self._history:
            if top_up.id == top_up_id:
                return top_up
        return None

    def reconcile(self, top_up_id: str, status: TopUpStatus) -> FundingResult:
        """Apply an externally learned outcome: PENDING -> COMPLETED | FAILED."""
        if status is TopUpStatus.PENDING:
            return FundingResult(status=ActionStatus.REJECTED, error="target status must be final")
        top_up = self.get(top_up_id)
        if top_up is None:
            return FundingResult(status=ActionStatus.REJECTED, error=f"unknown top-up: {top_up_id}")
        if top_up.status is not TopUpStatus.PENDING:
            return FundingResult(
                status=ActionStatus.CONFLICT, top_up=top_up,
                error=f"top-up already {top_up.status.value}",
            )
        top_up.status = status
        top_up.updated_at = self._clock()
        logger.info(f"Top-up {top_up_id[:8]} ({top_up.method.value}) -> {status.value}")
        return FundingResult(status=ActionStatus.ACCEPTED, top_up=top_up)

    def cancel_handoffs(self):
        for task in list(self._handoff_tasks):
            task.cancel()

    def get_status(self) -> dict:
        pending = sum(1 for t in self._history if t.status is TopUpStatus.PENDING)
        return {
            "top_ups": len(self._history),
            "pending": pending,
            "handoffs_in_flight": len(self._handoff_tasks),
        }
