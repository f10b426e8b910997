"""
billpay self-check
Offline run of every core subsystem against in-memory stubs, plus an
environment check. Exit code 1 if any check FAILs.

Usage:
    python selfcheck.py
"""
import sys, os, time, asyncio, traceback
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

RESULTS = []
WARNINGS = []
ERRORS = []
START_TIME = time.time()

ADDR = "0x" + "a1" * 20
PAYEE = "0x" + "c3" * 20


def ok(section, name, detail=""):
    RESULTS.append((section, name, "PASS", detail))
    print(f"  [PASS] {name}" + (f"  → {detail}" if detail else ""))

def warn(section, name, detail=""):
    RESULTS.append((section, name, "WARN", detail))
    WARNINGS.append((section, name, detail))
    print(f"  [WARN] {name}" + (f"  → {detail}" if detail else ""))

def fail(section, name, detail=""):
    RESULTS.append((section, name, "FAIL", detail))
    ERRORS.append((section, name, detail))
    print(f"  [FAIL] {name}" + (f"  → {detail}" if detail else ""))

def check(section, name, condition, detail=""):
    (ok if condition else fail)(section, name, detail)

def section(name):
    print(f"\n{'='*60}")
    print(f"  {name}")
    print(f"{'='*60}")


# ================================================================
# STUB COLLABORATORS
# ================================================================

class _Reader:
    def __init__(self, raw):
        self.raw = raw
        self.calls = 0

    async def get_balance(self, address):
        self.calls += 1
        return self.raw

    async def read_contract(self, token_address, function, args):
        self.calls += 1
        return self.raw


class _Wallet:
    def __init__(self):
        self.requests = []
        self.gate = asyncio.Event()
        self.gate.set()

    async def write(self, request):
        from core.chain import WriteResult
        self.requests.append(request)
        await self.gate.wait()
        return WriteResult(success=True, tx_hash="0x" + "ab" * 32)


class _Bank:
    def __init__(self, accept):
        self.accept = accept
        self.intents = []

    async def submit(self, intent):
        from core.adapters.bank_transfer import SubmissionResult
        self.intents.append(intent)
        return SubmissionResult(accepted=self.accept, idempotency_key="selfcheck",
                                status_code=201 if self.accept else 400)


# ================================================================
# SUBSYSTEM 1: RULES + UNITS
# ================================================================
section("SUBSYSTEM 1 · RULES + UNITS  (Fixed-point math)")
try:
    from core.rules import RULES, SUPPORTED_CHAINS, get_chain_config, ConfigError
    from core.units import to_display, to_base_units, parse_amount

    ok("S1_rules", "RULES",
       f"poll={RULES.BALANCE_POLL_SECONDS}s | token_dec={RULES.TOKEN_DECIMALS} | "
       f"native_dec={RULES.NATIVE_DECIMALS} | fee={RULES.DEVELOPER_FEE}")
    ok("S1_rules", "SUPPORTED_CHAINS", str([c.chain_id for c in SUPPORTED_CHAINS]))
    try:
        get_chain_config("nowhere")
        fail("S1_rules", "ConfigError", "unknown chain accepted")
    except ConfigError:
        ok("S1_rules", "ConfigError raised for unknown chain")

    vectors = [
        ((0, 6, 2), "0.00"),
        ((1, 18, 6), "0.000000"),
        ((2**60, 18, 6), "1.152922"),
        ((125, 2, 1), "1.3"),
    ]
    for args, expected in vectors:
        got = to_display(*args)
        check("S1_units", f"to_display{args}", got == expected, f"{got} (want {expected})")
    check("S1_units", "to_base_units 89.99 USDC", to_base_units(Decimal("89.99"), 6) == 89_990_000)
    check("S1_units", "parse_amount guards", all(parse_amount(v) is None for v in ("", "-3", "0", "x")))

except Exception as e:
    fail("S1_rules", "FATAL", str(e)); traceback.print_exc()


# ================================================================
# SUBSYSTEM 2: ORCHESTRATOR (balance + funding + settlement)
# ================================================================
section("SUBSYSTEM 2 · ORCHESTRATOR  (Session-gated core)")
try:
    from core.adapters.card_funding import CardFundingOutbox
    from core.orchestrator import Orchestrator
    from core.rules import ActionStatus, get_chain_config

    async def scenario():
        reader, wallet, bank, outbox = _Reader(12_340_000), _Wallet(), _Bank(accept=True), CardFundingOutbox()
        orch = Orchestrator(reader, wallet, bank, outbox, get_chain_config("base"), PAYEE, poll_interval=3600)

        r = await orch.pay_bill("1")
        check("S2_orch", "Inert before auth", r.status is ActionStatus.REJECTED, r.error)

        orch.on_session(ready=True, authenticated=True, wallet_address=ADDR)
        await orch.refresh_balance()
        model = orch.snapshot()
        check("S2_orch", "Balance tracked", model.balance is not None and model.balance.display_amount == "12.34",
              model.balance.display_amount if model.balance else "none")

        prompts = [n for n in orch.notifications.recent() if n.title == "Fund Your Wallet"]
        check("S2_orch", "Fund prompt shown once", len(prompts) == 1)

        r = await orch.fund_by_bank("")
        check("S2_orch", "Bank guard: empty amount", r.status is ActionStatus.REJECTED and not bank.intents)
        r = await orch.fund_by_bank("25")
        check("S2_orch", "Bank transfer accepted", r.ok and r.top_up.status.value == "PENDING")
        bank.accept = False
        before = len(orch.snapshot().top_ups)
        r = await orch.fund_by_bank("25")
        check("S2_orch", "Rejected transfer leaves no trace",
              r.status is ActionStatus.FAILED and len(orch.snapshot().top_ups) == before)

        r = await orch.fund_by_card("1.00")
        check("S2_orch", "Card record before handoff", r.ok and orch.snapshot().top_ups[0].method.value == "CARD",
              f"handoff={r.handoff.value}")

        wallet.gate.clear()
        first = asyncio.create_task(orch.pay_bill("1"))
        await asyncio.sleep(0)
        second = await orch.pay_bill("1")
        wallet.gate.set()
        first = await first
        check("S2_orch", "Single in-flight payment per bill",
              first.ok and second.status is ActionStatus.CONFLICT and len(wallet.requests) == 1,
              f"writes={len(wallet.requests)}")

        orch.on_session(ready=True, authenticated=False)
        reads = reader.calls
        await asyncio.sleep(0.01)
        model = orch.snapshot()
        check("S2_orch", "Teardown clears state",
              not model.top_ups and not model.in_flight_bill_ids and reader.calls == reads)
        await orch.shutdown()

    asyncio.run(scenario())

except Exception as e:
    fail("S2_orch", "FATAL", str(e)); traceback.print_exc()


# ================================================================
# SUBSYSTEM 3: BILL CATALOG
# ================================================================
section("SUBSYSTEM 3 · BILL CATALOG")
try:
    from core.bills import load_bill_catalog

    path = os.getenv("BILLS_FILE", "data/bills.json")
    bills = load_bill_catalog(path)
    ok("S3_bills", f"Catalog ({path})", f"{len(bills)} bills: " + ", ".join(b.vendor for b in bills))
    bad_dates = [b.id for b in bills if b.due_date < b.received_date]
    if bad_dates:
        warn("S3_bills", "due_date before received_date", str(bad_dates))
    else:
        ok("S3_bills", "Dates ordered")

except Exception as e:
    fail("S3_bills", "FATAL", str(e)); traceback.print_exc()


# ================================================================
# ENVIRONMENT
# ================================================================
section("ENVIRONMENT")
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    warn("env_check", "python-dotenv", "not installed - reading process env only")

env_groups = {
    "CRITICAL - Settlement": ["WALLET_PRIVATE_KEY", "SETTLEMENT_PAYEE"],
    "CRITICAL - Funding partner": ["FUNDING_API_URL", "FUNDING_API_KEY"],
    "OPTIONAL - Chain": ["CHAIN", "RPC_URL"],
}
for cat, keys in env_groups.items():
    missing = [k for k in keys if not os.getenv(k)]
    if missing:
        warn("env_check", cat, f"missing: {missing} (normal for dev environment)")
    else:
        ok("env_check", cat, "all present")


# ================================================================
# FINAL SUMMARY
# ================================================================
section("FINAL SUMMARY")
total = len(RESULTS)
passed = sum(1 for r in RESULTS if r[2] == "PASS")
warned = sum(1 for r in RESULTS if r[2] == "WARN")
failed = sum(1 for r in RESULTS if r[2] == "FAIL")
elapsed = time.time() - START_TIME

print(f"\n  Total checks  : {total}")
print(f"  PASS          : {passed}")
print(f"  WARN          : {warned}")
print(f"  FAIL          : {failed}")
print(f"  Elapsed       : {elapsed:.1f}s")

if ERRORS:
    print("\n  CRITICAL FAILURES:")
    for s, n, d in ERRORS:
        print(f"    [{s}] {n}: {d}")
if WARNINGS:
    print("\n  WARNINGS:")
    for s, n, d in WARNINGS:
        print(f"    [{s}] {n}: {d}")

sys.exit(1 if ERRORS else 0)
