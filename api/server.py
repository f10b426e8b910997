"""
billpay API Server - FastAPI Backend

Endpoints:
- GET  /health                        Heartbeat
- POST /session                       Identity provider pushes {ready, authenticated, wallet_address}
- POST /logout                        End the session
- GET  /dashboard                     Read model: balance, top-ups, bills, in-flight bills, summary
- POST /balance/refresh               Out-of-cadence balance read
- POST /funding/bank                  Start an ACH top-up
- POST /funding/card                  Start a card top-up (handoff to the card UI)
- GET  /funding/card/handoffs         Drain pending card handoffs (card UI polls this)
- GET  /funding/top-ups               Top-up history, newest first
- POST /funding/top-ups/{id}/status   Reconcile a top-up (funding partner / ops)
- GET  /bills                         Bill catalog with local status
- POST /bills/{id}/pay                Submit payment for a bill
- POST /bills/{id}/confirm            Reconcile a bill as paid
- GET  /notifications                 Notifications since a timestamp

Action endpoints map outcomes to status codes:
accepted 200, rejected 400, conflict 409, upstream failure 502, no session 401.
"""

import os
import logging
from enum import Enum
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from core.funding import TopUpStatus
from core.orchestrator import NOT_AUTHENTICATED, Orchestrator
from core.rules import ActionStatus

logger = logging.getLogger("billpay.api")


# ============================================================
# MODELS
# ============================================================

class SessionRequest(BaseModel):
    ready: bool
    authenticated: bool
    wallet_address: str = Field("", max_length=100)


class FundingRequest(BaseModel):
    amount: str = Field(..., max_length=40)


class ReconcileStatus(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ReconcileRequest(BaseModel):
    status: ReconcileStatus


class ActionResponse(BaseModel):
    status: str
    error: str = ""
    top_up: Optional[dict] = None
    bill: Optional[dict] = None
    tx_hash: str = ""
    handoff: Optional[str] = None


_STATUS_CODES = {
    ActionStatus.REJECTED: 400,
    ActionStatus.CONFLICT: 409,
    ActionStatus.FAILED: 502,
}


def _raise_for(status: ActionStatus, error: str):
    if status is ActionStatus.ACCEPTED:
        return
    if status is ActionStatus.REJECTED and error == NOT_AUTHENTICATED:
        raise HTTPException(status_code=401, detail=error)
    raise HTTPException(status_code=_STATUS_CODES[status], detail=error or status.value)


def create_app(orchestrator: Orchestrator, card_outbox=None) -> FastAPI:
    """
    Create FastAPI app wired to the orchestrator.

    card_outbox: the CardFundingOutbox the orchestrator hands card top-ups to;
                 exposed so the card UI can drain it.
    """
    app = FastAPI(
        title="billpay",
        description="Fund an on-chain balance and pay bills from it.",
        version="0.1.0",
    )

    # CORS: allow all in dev, restrict in production via CORS_ORIGINS env var
    cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _funding_response(result) -> ActionResponse:
        _raise_for(result.status, result.error)
        return ActionResponse(
            status=result.status.value,
            top_up=result.top_up.to_dict() if result.top_up else None,
            handoff=result.handoff.value,
        )

    def _settlement_response(result) -> ActionResponse:
        _raise_for(result.status, result.error)
        return ActionResponse(
            status=result.status.value,
            bill=result.bill.to_dict() if result.bill else None,
            tx_hash=result.tx_hash,
        )

    def _require_session():
        if not orchestrator.session.active:
            raise HTTPException(status_code=401, detail=NOT_AUTHENTICATED)

    # ---- health / session ----

    @app.get("/health")
    async def health():
        return {"ok": True, **orchestrator.get_status()}

    @app.post("/session")
    async def update_session(req: SessionRequest):
        orchestrator.on_session(req.ready, req.authenticated, req.wallet_address.strip())
        return orchestrator.session.to_dict()

    @app.post("/logout")
    async def logout():
        orchestrator.logout()
        return orchestrator.session.to_dict()

    # ---- read model ----

    @app.get("/dashboard")
    async def dashboard():
        return orchestrator.snapshot().to_dict()

    @app.post("/balance/refresh")
    async def refresh_balance():
        _require_session()
        await orchestrator.refresh_balance()
        return orchestrator.snapshot().to_dict()["balance"]

    # ---- funding ----

    @app.post("/funding/bank", response_model=ActionResponse)
    async def fund_bank(req: FundingRequest):
        return _funding_response(await orchestrator.fund_by_bank(req.amount))

    @app.post("/funding/card", response_model=ActionResponse)
    async def fund_card(req: FundingRequest):
        return _funding_response(await orchestrator.fund_by_card(req.amount))

    @app.get("/funding/card/handoffs")
    async def card_handoffs():
        if card_outbox is None:
            return {"handoffs": []}
        return {"handoffs": [h.to_dict() for h in card_outbox.drain()]}

    @app.get("/funding/top-ups")
    async def top_ups():
        return {"top_ups": [t.to_dict() for t in orchestrator.snapshot().top_ups]}

    @app.post("/funding/top-ups/{top_up_id}/status", response_model=ActionResponse)
    async def reconcile_top_up(top_up_id: str, req: ReconcileRequest):
        result = orchestrator.confirm_top_up(top_up_id, TopUpStatus(req.status.value))
        return _funding_response(result)

    # ---- bills ----

    @app.get("/bills")
    async def bills():
        model = orchestrator.snapshot()
        return {
            "bills": [b.to_dict() for b in model.bills],
            "in_flight_bill_ids": sorted(model.in_flight_bill_ids),
        }

    @app.post("/bills/{bill_id}/pay", response_model=ActionResponse)
    async def pay_bill(bill_id: str):
        return _settlement_response(await orchestrator.pay_bill(bill_id))

    @app.post("/bills/{bill_id}/confirm", response_model=ActionResponse)
    async def confirm_bill(bill_id: str):
        return _settlement_response(orchestrator.confirm_bill(bill_id))

    # ---- notifications ----

    @app.get("/notifications")
    async def notifications(since: float = 0.0):
        return {"notifications": [n.to_dict() for n in orchestrator.notifications.recent(since)]}

    return app
