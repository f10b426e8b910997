"""
billpay - main entry point

Reads configuration, builds the collaborators, wires the orchestrator
into the API server and starts it.

Usage:
    python main.py              # Start the service
    uvicorn main:app            # Or via uvicorn directly
"""

import os
import re
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (private keys) and the funding API key from log output."""
    _PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def __init__(self, extra_secrets: tuple[str, ...] = ()):
        super().__init__()
        self._extra = tuple(s for s in extra_secrets if s and len(s) >= 8)

    def _mask(self, text: str) -> str:
        text = self._PATTERN.sub('[REDACTED]', text)
        for secret in self._extra:
            text = text.replace(secret, '[REDACTED]')
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        if record.args:
            formatted = record.getMessage()
            masked = self._mask(formatted)
            if masked != formatted:
                record.msg = masked
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter((os.getenv("FUNDING_API_KEY", ""),))
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("billpay.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from core.adapters.bank_transfer import BankTransferAdapter
from core.adapters.card_funding import CardFundingOutbox
from core.bills import load_bill_catalog
from core.chain import ChainReader, SigningWallet, UnconfiguredWallet, connect
from core.orchestrator import Orchestrator
from core.rules import RULES, DEFAULT_CHAIN, BalanceAsset, ConfigError, get_chain_config
from api.server import create_app


# ============================================================
# WIRING
# ============================================================

def _build_orchestrator() -> tuple[Orchestrator, CardFundingOutbox]:
    chain = get_chain_config(os.getenv("CHAIN", DEFAULT_CHAIN))
    w3 = connect(chain, os.getenv("RPC_URL", ""))
    reader = ChainReader(w3)

    private_key = os.getenv("WALLET_PRIVATE_KEY", "")
    if private_key:
        wallet = SigningWallet(w3, private_key)
    else:
        logger.warning("No WALLET_PRIVATE_KEY - bill payments will fail")
        wallet = UnconfiguredWallet()

    payee = os.getenv("SETTLEMENT_PAYEE", "")
    if not payee:
        logger.warning("No SETTLEMENT_PAYEE - only bills with their own payee can be paid")

    asset_name = os.getenv("BALANCE_ASSET", BalanceAsset.TOKEN.value).lower()
    try:
        asset = BalanceAsset(asset_name)
    except ValueError:
        raise ConfigError(f"BALANCE_ASSET must be 'token' or 'native', got {asset_name!r}")

    poll_seconds = float(os.getenv("BALANCE_POLL_SECONDS", str(RULES.BALANCE_POLL_SECONDS)))
    card_outbox = CardFundingOutbox()

    orchestrator = Orchestrator(
        reader=reader,
        wallet=wallet,
        bank_adapter=BankTransferAdapter(),
        card_handoff=card_outbox,
        chain=chain,
        settlement_payee=payee,
        bill_catalog=load_bill_catalog(os.getenv("BILLS_FILE", "data/bills.json")),
        balance_asset=asset,
        poll_interval=poll_seconds,
    )
    logger.info(
        f"Orchestrator ready: chain={chain.chain_id} asset={asset.value} poll={poll_seconds}s"
    )
    return orchestrator, card_outbox


orchestrator, card_outbox = _build_orchestrator()


@asynccontextmanager
async def lifespan(app):
    """Startup and shutdown."""
    logger.info("billpay starting - waiting for a session")
    yield
    logger.info("billpay shutting down...")
    await orchestrator.shutdown()
    logger.info("Goodbye.")


def create_billpay_app():
    """Create the fully wired FastAPI app."""
    app = create_app(orchestrator, card_outbox=card_outbox)
    app.router.lifespan_context = lifespan
    return app


# ============================================================
# ENTRY POINT
# ============================================================

app = create_billpay_app()

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("DEV", "").lower() in ("1", "true", "yes")

    logger.info(f"Starting server on {host}:{port} (reload={reload})")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=LOG_LEVEL.lower(),
    )
