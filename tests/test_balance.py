import asyncio

from core.balance import BalanceTracker, WalletBalance
from core.rules import BalanceAsset, get_chain_config

from fakes import ADDRESS_A, ADDRESS_B, FakeReader, settle

CHAIN = get_chain_config("base")


def make_tracker(reader, **kwargs) -> BalanceTracker:
    kwargs.setdefault("poll_interval", 3600)
    return BalanceTracker(reader, CHAIN, **kwargs)


async def test_immediate_read_on_start():
    reader = FakeReader({ADDRESS_A: 12_345_678})
    tracker = make_tracker(reader)
    tracker.start(ADDRESS_A)
    await settle()

    balance = tracker.latest
    assert isinstance(balance, WalletBalance)
    assert balance.address == ADDRESS_A
    assert balance.raw_amount == 12_345_678
    assert balance.display_amount == "12.35"
    assert balance.decimals == 6
    tracker.stop()


async def test_native_asset_uses_get_balance_and_six_digits():
    reader = FakeReader({ADDRESS_A: 1_234_567_890_123_456_789})
    tracker = make_tracker(reader, asset=BalanceAsset.NATIVE)
    tracker.start(ADDRESS_A)
    await settle()

    assert tracker.latest.display_amount == "1.234568"
    assert tracker.latest.decimals == 18
    tracker.stop()


async def test_empty_address_is_ignored():
    reader = FakeReader()
    tracker = make_tracker(reader)
    tracker.start("")
    await settle()
    assert not tracker.running
    assert reader.calls == []


async def test_failed_read_keeps_previous_value_and_reports():
    errors = []
    reader = FakeReader({ADDRESS_A: 5_000_000})
    tracker = make_tracker(reader, on_error=lambda addr, err: errors.append((addr, err)))
    tracker.start(ADDRESS_A)
    await settle()
    first = tracker.latest

    reader.balances[ADDRESS_A] = ConnectionError("rpc down")
    await tracker.refresh()

    assert tracker.latest is first
    assert len(errors) == 1
    assert errors[0][0] == ADDRESS_A
    assert tracker.running
    tracker.stop()


async def test_malformed_response_is_a_failure():
    errors = []
    reader = FakeReader({ADDRESS_A: "not-a-number"})
    tracker = make_tracker(reader, on_error=lambda addr, err: errors.append(err))
    tracker.start(ADDRESS_A)
    await settle()
    assert tracker.latest is None
    assert isinstance(errors[0], ValueError)
    tracker.stop()


async def test_polling_continues_after_failure():
    reader = FakeReader({ADDRESS_A: 1_000_000})
    reader.queue(ADDRESS_A, RuntimeError("flaky"))
    tracker = make_tracker(reader, poll_interval=0.01)
    tracker.start(ADDRESS_A)
    await asyncio.sleep(0.05)
    tracker.stop()
    await tracker.drain()

    assert len(reader.calls) >= 2
    assert tracker.latest.raw_amount == 1_000_000


async def test_stale_address_result_is_discarded():
    loop = asyncio.get_running_loop()
    slow_a = loop.create_future()
    reader = FakeReader({ADDRESS_B: 2_000_000})
    reader.queue(ADDRESS_A, slow_a)
    tracker = make_tracker(reader)

    tracker.start(ADDRESS_A)
    await settle()
    tracker.start(ADDRESS_B)
    await settle()
    assert tracker.latest.address == ADDRESS_B

    slow_a.set_result(9_999_000_000)
    await tracker.drain()

    assert tracker.latest.address == ADDRESS_B
    assert tracker.latest.raw_amount == 2_000_000
    tracker.stop()


async def test_older_read_finishing_late_is_discarded():
    loop = asyncio.get_running_loop()
    slow = loop.create_future()
    reader = FakeReader()
    reader.queue(ADDRESS_A, slow, 200)
    tracker = make_tracker(reader)

    tracker.start(ADDRESS_A)
    await settle()
    await tracker.refresh()
    assert tracker.latest.raw_amount == 200

    slow.set_result(100)
    await tracker.drain()
    assert tracker.latest.raw_amount == 200
    tracker.stop()


async def test_in_flight_read_lands_after_stop():
    loop = asyncio.get_running_loop()
    slow = loop.create_future()
    reader = FakeReader()
    reader.queue(ADDRESS_A, slow)
    tracker = make_tracker(reader)

    tracker.start(ADDRESS_A)
    await settle()
    tracker.stop()
    slow.set_result(7_000_000)
    await tracker.drain()

    assert tracker.latest.raw_amount == 7_000_000


async def test_stop_is_idempotent_and_halts_polling():
    reader = FakeReader({ADDRESS_A: 1})
    tracker = make_tracker(reader, poll_interval=0.01)
    tracker.start(ADDRESS_A)
    await asyncio.sleep(0.035)
    tracker.stop()
    tracker.stop()
    await tracker.drain()
    reads = len(reader.calls)

    await asyncio.sleep(0.05)
    assert len(reader.calls) == reads
    assert not tracker.running


async def test_restart_same_address_while_running_is_noop():
    reader = FakeReader({ADDRESS_A: 1})
    tracker = make_tracker(reader)
    tracker.start(ADDRESS_A)
    await settle()
    tracker.start(ADDRESS_A)
    await settle()
    assert len(reader.calls) == 1
    tracker.stop()


async def test_staleness_is_two_poll_intervals():
    now = [1000.0]
    reader = FakeReader({ADDRESS_A: 1})
    tracker = make_tracker(reader, poll_interval=30, clock=lambda: now[0])
    assert tracker.is_stale()

    tracker.start(ADDRESS_A)
    await settle()
    assert not tracker.is_stale()

    now[0] = 1060.0
    assert not tracker.is_stale()
    now[0] = 1060.5
    assert tracker.is_stale()
    assert tracker.latest.is_stale(now=1060.5, poll_interval=30)
    tracker.stop()
