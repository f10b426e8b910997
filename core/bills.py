"""
Bill Settlement Manager - Pay bills from the tracked wallet

Lifecycle per bill:
    UNPAID --pay_bill ok--> PENDING --confirm_paid--> PAID

- The catalog is loaded once and never mutated; local progress lives in
  an overlay (bill_id -> status) that list_bills() applies
- At most one payment per bill in flight; different bills run concurrently
- Amounts go USD -> USDC base units with exact Decimal scaling
- A failed write releases the guard and leaves the status untouched
"""

import json
import logging
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from core.chain import WriteResult, build_token_transfer
from core.rules import RULES, ActionStatus, ChainConfig, short_address
from core.units import format_usd, parse_amount, to_base_units

logger = logging.getLogger("billpay.bills")


class BillStatus(Enum):
    UNPAID = "UNPAID"
    PENDING = "PENDING"
    PAID = "PAID"


@dataclass(frozen=True)
class Bill:
    id: str
    vendor: str
    amount: Decimal
    received_date: date
    due_date: date
    status: BillStatus = BillStatus.UNPAID
    payee: str = ""             # empty = settlement payee from config

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "vendor": self.vendor,
            "amount": format_usd(self.amount),
            "received_date": self.received_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "status": self.status.value,
        }

    @classmethod
    def from_mapping(cls, payload: dict) -> "Bill":
        amount = parse_amount(payload.get("amount"))
        if amount is None:
            raise ValueError(f"bill {payload.get('id')!r}: amount must be a positive decimal")
        return cls(
            id=str(payload["id"]),
            vendor=str(payload["vendor"]),
            amount=amount,
            received_date=date.fromisoformat(payload["received_date"]),
            due_date=date.fromisoformat(payload["due_date"]),
            status=BillStatus(payload.get("status", BillStatus.UNPAID.value)),
            payee=str(payload.get("payee", "")),
        )


@dataclass
class SettlementResult:
    status: ActionStatus
    bill: Optional[Bill] = None
    tx_hash: str = ""
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status is ActionStatus.ACCEPTED


DEFAULT_BILLS: tuple[Bill, ...] = (
    Bill(id="1", vendor="Comcast Internet", amount=Decimal("89.99"),
         received_date=date(2024, 3, 1), due_date=date(2024, 3, 15)),
    Bill(id="2", vendor="PG&E Electric", amount=Decimal("142.50"),
         received_date=date(2024, 3, 3), due_date=date(2024, 3, 20)),
    Bill(id="3", vendor="City Water Utility", amount=Decimal("45.00"),
         received_date=date(2024, 3, 5), due_date=date(2024, 3, 25)),
)


def load_bill_catalog(path: Optional[Union[str, Path]] = None) -> tuple[Bill, ...]:
    """Read the seed catalog from JSON ({"bills": [...]}); fall back to DEFAULT_BILLS."""
    if not path:
        return DEFAULT_BILLS
    path = Path(path)
    if not path.exists():
        logger.info(f"Bill catalog {path} not found - using built-in catalog")
        return DEFAULT_BILLS
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    bills = tuple(Bill.from_mapping(entry) for entry in data.get("bills", []))
    logger.info(f"Loaded {len(bills)} bills from {path}")
    return bills


# ============================================================
# SETTLEMENT MANAGER
# ============================================================

class BillSettlementManager:
    """
    Usage:
        bills = BillSettlementManager(wallet, chain, payee, load_bill_catalog())
        result = await bills.pay_bill("1", address)
        if result.status is ActionStatus.CONFLICT: ...
    """

    def __init__(self, wallet, chain: ChainConfig, default_payee: str, catalog: tuple[Bill, ...]):
        self._wallet = wallet
        self._chain = chain
        self._default_payee = default_payee
        self._catalog: dict[str, Bill] = {b.id: b for b in catalog}
        self._order: list[str] = [b.id for b in catalog]
        self._overlay: dict[str, BillStatus] = {}
        self._in_flight: set[str] = set()
        self._submitted: dict[str, str] = {}       # bill_id -> last tx hash

    def status_of(self, bill_id: str) -> Optional[BillStatus]:
        bill = self._catalog.get(bill_id)
        if bill is None:
            return None
        return self._overlay.get(bill_id, bill.status)

    def get(self, bill_id: str) -> Optional[Bill]:
        bill = self._catalog.get(bill_id)
        if bill is None:
            return None
        return replace(bill, status=self.status_of(bill_id))

    def list_bills(self) -> tuple[Bill, ...]:
        return tuple(self.get(bill_id) for bill_id in self._order)

    def in_flight_ids(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def last_tx_hash(self, bill_id: str) -> str:
        return self._submitted.get(bill_id, "")

    # ----------------------------------------------------------
    # PAYMENT
    # ----------------------------------------------------------

    async def pay_bill(self, bill_id: str, address: str) -> SettlementResult:
        bill = self._catalog.get(bill_id)
        if bill is None:
            return SettlementResult(status=ActionStatus.REJECTED, error=f"unknown bill: {bill_id}")
        if not address:
            return SettlementResult(status=ActionStatus.REJECTED, bill=self.get(bill_id),
                                    error="wallet address is not available")

        if self.status_of(bill_id) is BillStatus.PAID:
            return SettlementResult(status=ActionStatus.CONFLICT, bill=self.get(bill_id),
                                    error="bill already paid")
        if bill_id in self._in_flight:
            return SettlementResult(status=ActionStatus.CONFLICT, bill=self.get(bill_id),
                                    error="payment already in progress")

        payee = bill.payee or self._default_payee
        amount_raw = to_base_units(bill.amount, RULES.TOKEN_DECIMALS)
        try:
            request = build_token_transfer(self._chain, payee, amount_raw)
        except Exception as e:
            logger.warning(f"Bill {bill_id}: cannot build transfer to {payee!r}: {e}")
            return SettlementResult(status=ActionStatus.REJECTED, bill=self.get(bill_id),
                                    error=f"invalid payee for bill {bill_id}")

        # Guard goes up before the first await
        self._in_flight.add(bill_id)
        logger.info(
            f"Paying bill {bill_id} ({bill.vendor}) ${format_usd(bill.amount)} "
            f"= {amount_raw} units from {short_address(address)}"
        )
        try:
            try:
                result = await self._wallet.write(request)
            except Exception as e:
                result = WriteResult(success=False, error=f"{type(e).__name__}: {e}")
        finally:
            self._in_flight.discard(bill_id)

        if not result.success:
            logger.warning(f"Bill {bill_id} payment failed: {result.error}")
            return SettlementResult(status=ActionStatus.FAILED, bill=self.get(bill_id),
                                    error=result.error or "payment failed")

        if self.status_of(bill_id) is not BillStatus.PAID:
            self._overlay[bill_id] = BillStatus.PENDING
        self._submitted[bill_id] = result.tx_hash
        logger.info(f"Bill {bill_id} payment submitted: {result.tx_hash[:16]}...")
        return SettlementResult(status=ActionStatus.ACCEPTED, bill=self.get(bill_id),
                                tx_hash=result.tx_hash)

    def confirm_paid(self, bill_id: str) -> SettlementResult:
        """Externally confirmed settlement: mark the bill PAID locally."""
        if bill_id not in self._catalog:
            return SettlementResult(status=ActionStatus.REJECTED, error=f"unknown bill: {bill_id}")
        if self.status_of(bill_id) is BillStatus.PAID:
            return SettlementResult(status=ActionStatus.CONFLICT, bill=self.get(bill_id),
                                    error="bill already paid")
        self._overlay[bill_id] = BillStatus.PAID
        logger.info(f"Bill {bill_id} confirmed paid")
        return SettlementResult(status=ActionStatus.ACCEPTED, bill=self.get(bill_id),
                                tx_hash=self._submitted.get(bill_id, ""))

    # ----------------------------------------------------------
    # SUMMARY
    # ----------------------------------------------------------

    def summary(self) -> dict:
        bills = self.list_bills()
        paid = [b for b in bills if b.status is BillStatus.PAID]
        return {
            "pending_invoices": len(bills) - len(paid),
            "total_paid": format_usd(sum((b.amount for b in paid), Decimal("0"))),
        }
