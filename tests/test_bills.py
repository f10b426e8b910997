import asyncio
import json
from dataclasses import replace
from decimal import Decimal
from pathlib import Path

from eth_utils import to_checksum_address

from core.bills import (
    DEFAULT_BILLS,
    BillSettlementManager,
    BillStatus,
    load_bill_catalog,
)
from core.chain import TRANSFER_SELECTOR
from core.rules import ActionStatus, get_chain_config

from fakes import ADDRESS_A, PAYEE, FakeWallet, settle

CHAIN = get_chain_config("base")


def make_manager(wallet=None, catalog=DEFAULT_BILLS, payee=PAYEE) -> BillSettlementManager:
    return BillSettlementManager(wallet or FakeWallet(), CHAIN, payee, catalog)


async def test_settlement_instruction_uses_exact_base_units():
    wallet = FakeWallet()
    bills = make_manager(wallet)
    result = await bills.pay_bill("1", ADDRESS_A)

    assert result.ok
    (request,) = wallet.requests
    assert request.chain_id == 8453
    assert request.to == to_checksum_address(CHAIN.token_address)
    assert request.value == 0
    assert request.data.startswith("0x" + TRANSFER_SELECTOR)
    payload = request.data[2 + len(TRANSFER_SELECTOR):]
    assert int(payload[:64], 16) == int(PAYEE, 16)
    assert int(payload[64:], 16) == 89_990_000


async def test_success_marks_pending_without_touching_catalog():
    bills = make_manager()
    result = await bills.pay_bill("1", ADDRESS_A)

    assert result.status is ActionStatus.ACCEPTED
    assert result.tx_hash
    assert bills.status_of("1") is BillStatus.PENDING
    assert result.bill.status is BillStatus.PENDING
    assert DEFAULT_BILLS[0].status is BillStatus.UNPAID
    assert bills.last_tx_hash("1") == result.tx_hash


async def test_second_call_while_in_flight_is_a_conflict():
    wallet = FakeWallet()
    wallet.gate = asyncio.Event()
    bills = make_manager(wallet)

    first = asyncio.create_task(bills.pay_bill("1", ADDRESS_A))
    await settle()
    assert bills.in_flight_ids() == frozenset({"1"})

    second = await bills.pay_bill("1", ADDRESS_A)
    assert second.status is ActionStatus.CONFLICT

    wallet.gate.set()
    assert (await first).ok
    assert len(wallet.requests) == 1
    assert bills.in_flight_ids() == frozenset()


async def test_different_bills_run_concurrently():
    wallet = FakeWallet()
    wallet.gate = asyncio.Event()
    bills = make_manager(wallet)

    tasks = [asyncio.create_task(bills.pay_bill(bid, ADDRESS_A)) for bid in ("1", "2")]
    await settle()
    assert bills.in_flight_ids() == frozenset({"1", "2"})

    wallet.gate.set()
    results = await asyncio.gather(*tasks)
    assert all(r.ok for r in results)
    assert len(wallet.requests) == 2


async def test_failure_releases_guard_and_keeps_status():
    wallet = FakeWallet()
    wallet.fail_with = "user rejected signature"
    bills = make_manager(wallet)

    result = await bills.pay_bill("2", ADDRESS_A)
    assert result.status is ActionStatus.FAILED
    assert result.error == "user rejected signature"
    assert bills.status_of("2") is BillStatus.UNPAID
    assert bills.in_flight_ids() == frozenset()

    wallet.fail_with = ""
    retry = await bills.pay_bill("2", ADDRESS_A)
    assert retry.ok
    assert len(wallet.requests) == 2


async def test_wallet_exception_is_a_failure():
    wallet = FakeWallet()
    wallet.raise_exc = TimeoutError("rpc timeout")
    bills = make_manager(wallet)

    result = await bills.pay_bill("3", ADDRESS_A)
    assert result.status is ActionStatus.FAILED
    assert "rpc timeout" in result.error
    assert bills.in_flight_ids() == frozenset()


async def test_rejections_never_reach_the_wallet():
    wallet = FakeWallet()
    catalog = (replace(DEFAULT_BILLS[0], status=BillStatus.PAID),) + DEFAULT_BILLS[1:]
    bills = make_manager(wallet, catalog=catalog)

    assert (await bills.pay_bill("1", ADDRESS_A)).status is ActionStatus.CONFLICT
    assert (await bills.pay_bill("404", ADDRESS_A)).status is ActionStatus.REJECTED
    assert (await bills.pay_bill("2", "")).status is ActionStatus.REJECTED
    assert wallet.requests == []


async def test_missing_payee_is_rejected():
    wallet = FakeWallet()
    bills = make_manager(wallet, payee="")
    result = await bills.pay_bill("1", ADDRESS_A)
    assert result.status is ActionStatus.REJECTED
    assert wallet.requests == []
    assert bills.in_flight_ids() == frozenset()


async def test_pending_bill_can_be_paid_again():
    wallet = FakeWallet()
    bills = make_manager(wallet)
    await bills.pay_bill("1", ADDRESS_A)
    again = await bills.pay_bill("1", ADDRESS_A)
    assert again.ok
    assert len(wallet.requests) == 2


async def test_confirm_paid_then_pay_is_conflict():
    bills = make_manager()
    await bills.pay_bill("1", ADDRESS_A)
    confirmed = bills.confirm_paid("1")
    assert confirmed.ok
    assert bills.status_of("1") is BillStatus.PAID
    assert bills.confirm_paid("1").status is ActionStatus.CONFLICT
    assert bills.confirm_paid("404").status is ActionStatus.REJECTED
    assert (await bills.pay_bill("1", ADDRESS_A)).status is ActionStatus.CONFLICT


def test_summary_counts_unpaid_and_sums_paid():
    bills = make_manager()
    assert bills.summary() == {"pending_invoices": 3, "total_paid": "0.00"}
    bills.confirm_paid("1")
    bills.confirm_paid("3")
    assert bills.summary() == {"pending_invoices": 1, "total_paid": "134.99"}


def test_load_catalog_from_json(tmp_path):
    path = tmp_path / "bills.json"
    path.write_text(json.dumps({"bills": [
        {"id": "9", "vendor": "Landlord", "amount": "1500", "received_date": "2024-04-01",
         "due_date": "2024-04-05", "payee": PAYEE},
        {"id": "10", "vendor": "Gym", "amount": "30.00", "received_date": "2024-04-01",
         "due_date": "2024-04-10", "status": "PAID"},
    ]}), encoding="utf-8")

    catalog = load_bill_catalog(path)
    assert [b.id for b in catalog] == ["9", "10"]
    assert catalog[0].amount == Decimal("1500")
    assert catalog[0].payee == PAYEE
    assert catalog[1].status is BillStatus.PAID


def test_load_catalog_falls_back_to_defaults(tmp_path):
    assert load_bill_catalog(tmp_path / "missing.json") == DEFAULT_BILLS
    assert load_bill_catalog(None) == DEFAULT_BILLS


def test_shipped_seed_matches_builtin_catalog():
    seed = Path(__file__).resolve().parent.parent / "data" / "bills.json"
    assert load_bill_catalog(seed) == DEFAULT_BILLS
