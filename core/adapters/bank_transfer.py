"""
Bank Transfer Adapter - Funding Partner HTTP Client

Submits a funding intent (ACH push in USD -> USDC to the user's address)
to the funding partner. The partner either accepts (2xx) or rejects; no
callback is consumed here.

Every call carries a fresh Idempotency-Key so a retry by the user is a
new intent, never a replay.

Requires FUNDING_API_URL and FUNDING_API_KEY in .env.
"""

import os
import uuid
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

logger = logging.getLogger("billpay.adapter.bank")

_DEFAULT_FUNDING_API_URL = "https://api.sandbox.bridge.xyz/v0/transfers"


@dataclass
class SubmissionResult:
    """Outcome of one POST to the funding partner."""
    accepted: bool
    idempotency_key: str
    status_code: int = 0        # 0 = transport failure
    error: str = ""
    body: Optional[dict] = None


class BankTransferAdapter:
    """
    POSTs funding intents to the funding partner.

    Usage:
        adapter = BankTransferAdapter()
        result = await adapter.submit(intent)
        ...
        await adapter.close()
    """

    def __init__(self, api_url: Optional[str] = None, api_key: Optional[str] = None,
                 timeout_seconds: float = 30):
        self._api_url = api_url or os.getenv("FUNDING_API_URL", _DEFAULT_FUNDING_API_URL)
        self._api_key = api_key if api_key is not None else os.getenv("FUNDING_API_KEY", "")
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

        if not self._api_key:
            logger.info("Funding API key not configured - bank transfers will be rejected upstream")

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    def _headers(self, idempotency_key: str) -> dict:
        return {
            "Content-Type": "application/json",
            "Api-Key": self._api_key,
            "Idempotency-Key": idempotency_key,
        }

    async def submit(self, intent: dict) -> SubmissionResult:
        """POST one funding intent. Never raises for HTTP or transport errors."""
        idempotency_key = str(uuid.uuid4())
        session = await self._get_session()

        try:
            async with session.post(
                self._api_url,
                json=intent,
                headers=self._headers(idempotency_key),
            ) as resp:
                body = None
                try:
                    body = await resp.json(content_type=None)
                except Exception:
                    body = None
                if 200 <= resp.status < 300:
                    logger.info(f"Funding intent accepted: HTTP {resp.status} key={idempotency_key[:8]}")
                    return SubmissionResult(
                        accepted=True,
                        idempotency_key=idempotency_key,
                        status_code=resp.status,
                        body=body if isinstance(body, dict) else None,
                    )

                detail = ""
                if isinstance(body, dict):
                    detail = str(body.get("message") or body.get("error") or "")
                logger.warning(f"Funding intent rejected: HTTP {resp.status} {detail}")
                return SubmissionResult(
                    accepted=False,
                    idempotency_key=idempotency_key,
                    status_code=resp.status,
                    error=f"HTTP {resp.status}" + (f": {detail}" if detail else ""),
                    body=body if isinstance(body, dict) else None,
                )

        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"Funding intent transport failure: {error}")
            return SubmissionResult(accepted=False, idempotency_key=idempotency_key, error=error)

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
