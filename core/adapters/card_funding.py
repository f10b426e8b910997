"""
Card Funding Handoff - one-way message to the embedded-wallet funding UI.

The card rail is driven entirely by the client: the backend can only say
"open the card flow for this address and amount". Nothing comes back, so
the handoff is a send, not a call.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field

from core.rules import short_address

logger = logging.getLogger("billpay.adapter.card")


@dataclass(frozen=True)
class CardFundingRequest:
    address: str
    chain: str
    amount_usd: str
    top_up_id: str = ""
    requested_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "chain": self.chain,
            "amount_usd": self.amount_usd,
            "top_up_id": self.top_up_id,
            "requested_at": self.requested_at,
        }


class CardFundingOutbox:
    """
    Holds card-funding handoffs until the presentation layer picks them up
    (GET /funding/card/handoffs). Oldest are dropped past `max_pending`.
    """

    def __init__(self, max_pending: int = 50):
        self._pending: deque[CardFundingRequest] = deque(maxlen=max_pending)
        self._sent = 0

    def send(self, request: CardFundingRequest) -> None:
        self._pending.append(request)
        self._sent += 1
        logger.info(
            f"Card funding handoff queued: {short_address(request.address)} "
            f"${request.amount_usd} on {request.chain}"
        )

    def drain(self) -> list[CardFundingRequest]:
        items = list(self._pending)
        self._pending.clear()
        return items

    def clear(self) -> int:
        """Drop every pending handoff. Returns how many were dropped."""
        dropped = len(self._pending)
        self._pending.clear()
        if dropped:
            logger.info(f"Card funding outbox cleared: {dropped} pending handoff(s) dropped")
        return dropped

    def get_status(self) -> dict:
        return {"pending": len(self._pending), "sent": self._sent}
