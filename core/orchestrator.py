"""
Orchestrator - Session gate over balance, funding and settlement

The only component with UI-facing side effects. Owns, per authenticated
session:
- one BalanceTracker (started on authentication, stopped on teardown)
- one FundingManager (top-up history)
- one BillSettlementManager (catalog overlay + in-flight guards)

Everything is rebuilt on authentication and dropped on deauthentication.
Operations started in a session that has since ended finish against the
dropped managers and never notify.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from core.balance import BalanceTracker, WalletBalance
from core.bills import DEFAULT_BILLS, Bill, BillSettlementManager, SettlementResult
from core.chain import explorer_tx_url
from core.funding import FundingManager, FundingResult, TopUp, TopUpStatus
from core.notifications import NotificationAction, NotificationCenter
from core.rules import RULES, ActionStatus, BalanceAsset, ChainConfig, short_address
from core.units import AmountInput, format_usd, to_display

logger = logging.getLogger("billpay.orchestrator")

NOT_AUTHENTICATED = "not authenticated"


@dataclass(frozen=True)
class Session:
    """Identity-provider state as last pushed to us. `epoch` changes on every transition."""
    ready: bool = False
    authenticated: bool = False
    wallet_address: str = ""
    epoch: int = 0

    @property
    def active(self) -> bool:
        return self.ready and self.authenticated and bool(self.wallet_address)

    def to_dict(self) -> dict:
        return {
            "ready": self.ready,
            "authenticated": self.authenticated,
            "wallet_address": self.wallet_address,
            "active": self.active,
        }


@dataclass(frozen=True)
class ReadModel:
    session: Session
    balance: Optional[WalletBalance] = None
    balance_stale: bool = True
    top_ups: tuple[TopUp, ...] = ()
    bills: tuple[Bill, ...] = ()
    in_flight_bill_ids: frozenset[str] = field(default_factory=frozenset)
    pending_invoices: int = 0
    total_paid: str = "0.00"
    display_digits: int = RULES.CURRENCY_DISPLAY_DIGITS

    def to_dict(self) -> dict:
        balance = None
        if self.balance is not None:
            balance = self.balance.to_dict()
            balance["stale"] = self.balance_stale
        return {
            "session": self.session.to_dict(),
            "balance": balance,
            "top_ups": [t.to_dict() for t in self.top_ups],
            "bills": [b.to_dict() for b in self.bills],
            "in_flight_bill_ids": sorted(self.in_flight_bill_ids),
            "summary": {
                "balance_display": (
                    self.balance.display_amount if self.balance
                    else to_display(0, 0, self.display_digits)
                ),
                "pending_invoices": self.pending_invoices,
                "total_paid": self.total_paid,
            },
        }


class Orchestrator:
    """
    Usage:
        orch = Orchestrator(reader, wallet, bank_adapter, card_outbox, chain, payee)
        orch.on_session(ready=True, authenticated=True, wallet_address="0x...")
        await orch.pay_bill("1")
        orch.snapshot()
        orch.on_session(ready=True, authenticated=False)
    """

    def __init__(
        self,
        reader,
        wallet,
        bank_adapter,
        card_handoff,
        chain: ChainConfig,
        settlement_payee: str,
        bill_catalog: tuple[Bill, ...] = DEFAULT_BILLS,
        balance_asset: BalanceAsset = BalanceAsset.TOKEN,
        poll_interval: float = RULES.BALANCE_POLL_SECONDS,
        notifications: Optional[NotificationCenter] = None,
        on_logout: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._reader = reader
        self._wallet = wallet
        self._bank = bank_adapter
        self._card = card_handoff
        self._chain = chain
        self._payee = settlement_payee
        self._catalog = bill_catalog
        self._asset = balance_asset
        self._poll_interval = poll_interval
        self.notifications = notifications or NotificationCenter()
        self._on_logout = on_logout
        self._clock = clock

        self._session = Session()
        self._tracker: Optional[BalanceTracker] = None
        self._funding: Optional[FundingManager] = None
        self._bills: Optional[BillSettlementManager] = None
        self._fund_prompted: bool = False

    @property
    def session(self) -> Session:
        return self._session

    @property
    def tracker(self) -> Optional[BalanceTracker]:
        return self._tracker

    # ============================================================
    # SESSION GATE
    # ============================================================

    def on_session(self, ready: bool, authenticated: bool, wallet_address: str = ""):
        """Single entry point for identity-provider updates."""
        if ready and authenticated and wallet_address:
            self.on_authenticated(wallet_address)
            return
        if self._session.active:
            self.on_deauthenticated()
        self._session = Session(
            ready=ready,
            authenticated=authenticated,
            wallet_address=wallet_address,
            epoch=self._session.epoch,
        )

    def on_authenticated(self, address: str):
        if self._session.active and self._session.wallet_address == address:
            return
        if self._session.active:
            logger.info("Wallet address changed - starting a new session")
            self.on_deauthenticated()

        self._session = Session(
            ready=True, authenticated=True, wallet_address=address,
            epoch=self._session.epoch + 1,
        )
        epoch = self._session.epoch

        self._funding = FundingManager(self._bank, self._card, self._chain, clock=self._clock)
        self._bills = BillSettlementManager(self._wallet, self._chain, self._payee, self._catalog)
        self._tracker = BalanceTracker(
            self._reader,
            self._chain,
            asset=self._asset,
            poll_interval=self._poll_interval,
            on_error=lambda addr, err: self._on_balance_error(epoch, addr, err),
            clock=self._clock,
        )
        self._tracker.start(address)
        logger.info(f"Session {epoch} started for {short_address(address)}")
        self._prompt_funding(address)

    def on_deauthenticated(self):
        """Full reset: stop polling, drop history, pending card handoffs, catalog overlay and in-flight guards."""
        if self._tracker is not None:
            self._tracker.stop()
        if self._funding is not None:
            self._funding.cancel_handoffs()
        # Card handoffs not yet picked up belong to the session being dropped
        clear_handoffs = getattr(self._card, "clear", None)
        if callable(clear_handoffs):
            clear_handoffs()
        was_active = self._session.active
        self._tracker = None
        self._funding = None
        self._bills = None
        self._fund_prompted = False
        self._session = Session(epoch=self._session.epoch + 1)
        if was_active:
            logger.info("Session ended - state discarded")

    def logout(self):
        if self._on_logout is not None:
            try:
                self._on_logout()
            except Exception as e:
                logger.warning(f"Identity provider logout failed: {e}")
        self.on_deauthenticated()

    def _prompt_funding(self, address: str):
        if self._fund_prompted:
            return
        self._fund_prompted = True
        self.notifications.info(
            "Fund Your Wallet",
            "Add funds to get started with crypto payments",
            action=NotificationAction(
                label="Fund Wallet",
                kind="fund_card",
                payload={
                    "address": address,
                    "chain": self._chain.chain_id,
                    "amount": RULES.FUND_PROMPT_AMOUNT_USD,
                },
            ),
            duration_ms=RULES.FUND_PROMPT_DURATION_MS,
        )

    def _is_current(self, epoch: int) -> bool:
        return self._session.active and self._session.epoch == epoch

    def _on_balance_error(self, epoch: int, address: str, error: Exception):
        if not self._is_current(epoch):
            return
        self.notifications.error(
            "Balance Unavailable",
            f"Could not refresh your balance: {error}",
        )

    # ============================================================
    # FUNDING
    # ============================================================

    async def fund_by_bank(self, amount_usd: Optional[AmountInput]) -> FundingResult:
        if not self._session.active:
            return FundingResult(status=ActionStatus.REJECTED, error=NOT_AUTHENTICATED)
        epoch, funding, address = self._session.epoch, self._funding, self._session.wallet_address

        result = await funding.submit_bank_transfer(address, amount_usd)
        if not self._is_current(epoch):
            return result

        if result.status is ActionStatus.ACCEPTED:
            self.notifications.info(
                "Transfer Initiated",
                f"Your bank transfer of ${format_usd(result.top_up.amount)} is being processed",
            )
        elif result.status is ActionStatus.FAILED:
            self.notifications.error(
                "Transfer Failed",
                f"The bank transfer could not be started: {result.error}",
            )
        return result

    async def fund_by_card(self, amount_usd: Optional[AmountInput]) -> FundingResult:
        if not self._session.active:
            return FundingResult(status=ActionStatus.REJECTED, error=NOT_AUTHENTICATED)
        epoch, funding, address = self._session.epoch, self._funding, self._session.wallet_address

        result = await funding.submit_card_funding(address, amount_usd)
        if self._is_current(epoch) and result.status is ActionStatus.ACCEPTED:
            self.notifications.info(
                "Card Funding Started",
                f"Complete your ${format_usd(result.top_up.amount)} card purchase to fund your wallet",
            )
        return result

    def confirm_top_up(self, top_up_id: str, status: TopUpStatus) -> FundingResult:
        if not self._session.active:
            return FundingResult(status=ActionStatus.REJECTED, error=NOT_AUTHENTICATED)
        result = self._funding.reconcile(top_up_id, status)
        if result.status is ActionStatus.ACCEPTED:
            amount = format_usd(result.top_up.amount)
            if status is TopUpStatus.COMPLETED:
                self.notifications.info("Funds Received", f"${amount} has arrived in your wallet")
            else:
                self.notifications.error("Top-Up Failed", f"Your ${amount} top-up did not complete")
        return result

    # ============================================================
    # SETTLEMENT
    # ============================================================

    async def pay_bill(self, bill_id: str) -> SettlementResult:
        if not self._session.active:
            return SettlementResult(status=ActionStatus.REJECTED, error=NOT_AUTHENTICATED)
        epoch, bills, address = self._session.epoch, self._bills, self._session.wallet_address

        result = await bills.pay_bill(bill_id, address)
        if not self._is_current(epoch):
            return result

        if result.status is ActionStatus.ACCEPTED:
            url = explorer_tx_url(self._chain, result.tx_hash)
            self.notifications.info(
                "Payment Processing",
                f"Payment to {result.bill.vendor} submitted: {result.tx_hash}",
                action=NotificationAction(label="View Transaction", kind="open_url",
                                          payload={"url": url}),
            )
        elif result.status is ActionStatus.FAILED:
            self.notifications.error(
                "Payment Failed",
                f"Could not pay {result.bill.vendor if result.bill else bill_id}: {result.error}",
            )
        return result

    def confirm_bill(self, bill_id: str) -> SettlementResult:
        if not self._session.active:
            return SettlementResult(status=ActionStatus.REJECTED, error=NOT_AUTHENTICATED)
        result = self._bills.confirm_paid(bill_id)
        if result.status is ActionStatus.ACCEPTED:
            self.notifications.info("Bill Paid", f"{result.bill.vendor} is paid in full")
        return result

    # ============================================================
    # BALANCE + READ MODEL
    # ============================================================

    async def refresh_balance(self) -> Optional[WalletBalance]:
        if not self._session.active or self._tracker is None:
            return None
        return await self._tracker.refresh()

    def snapshot(self) -> ReadModel:
        if not self._session.active:
            return ReadModel(session=self._session)
        summary = self._bills.summary()
        return ReadModel(
            session=self._session,
            balance=self._tracker.latest,
            balance_stale=self._tracker.is_stale(),
            top_ups=self._funding.list_top_ups(),
            bills=self._bills.list_bills(),
            in_flight_bill_ids=self._bills.in_flight_ids(),
            pending_invoices=summary["pending_invoices"],
            total_paid=summary["total_paid"],
            display_digits=self._tracker.display_digits,
        )

    async def shutdown(self):
        tracker = self._tracker
        self.on_deauthenticated()
        if tracker is not None:
            await tracker.drain()
        if hasattr(self._bank, "close"):
            await self._bank.close()

    def get_status(self) -> dict:
        status = {"session": self._session.to_dict(), "fund_prompted": self._fund_prompted}
        if self._tracker is not None:
            status["balance_tracker"] = self._tracker.get_status()
        if self._funding is not None:
            status["funding"] = self._funding.get_status()
        if self._bills is not None:
            status["bills_in_flight"] = sorted(self._bills.in_flight_ids())
        return status
