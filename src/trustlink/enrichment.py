"""On-chain wallet enrichment: wallet age, transaction count, token holdings."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from .config import Settings

logger = logging.getLogger(__name__)

TOKEN_PROGRAM_ID = "TokenkegQEcfiz4PoN1V4UfBbQN2tTKtbpLLCLxR8mQ"
SIGNATURE_LIMIT = 1000


@dataclass
class WalletEnrichment:
    wallet_age_days: Optional[int] = None
    wallet_tx_count: int = 0
    wallet_has_tokens: bool = False

    def as_signals(self) -> dict:
        return {
            "wallet_age_days": self.wallet_age_days,
            "wallet_tx_count": self.wallet_tx_count,
            "wallet_has_tokens": self.wallet_has_tokens,
        }


class RpcError(Exception):
    pass


class WalletEnricher:
    """Solana JSON-RPC client. Each query falls back to empty values on failure."""

    def __init__(self, rpc_url: str, timeout: float = 15.0):
        self.rpc_url = rpc_url
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "WalletEnricher":
        return cls(settings.solana_rpc_url)

    async def _call(self, client: httpx.AsyncClient, method: str, params: list):
        resp = await client.post(self.rpc_url, json={
            "jsonrpc": "2.0", "id": 1, "method": method, "params": params,
        })
        if resp.status_code != 200:
            raise RpcError(f"{method}: HTTP {resp.status_code}")
        body = resp.json()
        if not isinstance(body, dict) or "error" in body:
            raise RpcError(f"{method}: {body.get('error') if isinstance(body, dict) else body}")
        return body.get("result")

    async def enrich(self, address: str, now: Optional[float] = None) -> WalletEnrichment:
        out = WalletEnrichment()
        now = time.time() if now is None else now

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            # Newest first; the oldest in the batch is a lower bound on wallet age
            try:
                sigs = await self._call(client, "getSignaturesForAddress",
                                        [address, {"limit": SIGNATURE_LIMIT}]) or []
                out.wallet_tx_count = len(sigs)
                if sigs and sigs[-1].get("blockTime"):
                    out.wallet_age_days = max(0, int((now - sigs[-1]["blockTime"]) // 86400))
            except (httpx.HTTPError, RpcError, ValueError) as e:
                logger.warning("wallet enrichment signatures failed for %s: %s", address, e)

            try:
                result = await self._call(client, "getTokenAccountsByOwner", [
                    address, {"programId": TOKEN_PROGRAM_ID}, {"encoding": "jsonParsed"},
                ]) or {}
                out.wallet_has_tokens = any(_ui_amount(acc) > 0 for acc in result.get("value", []))
            except (httpx.HTTPError, RpcError, ValueError) as e:
                logger.warning("wallet enrichment tokens failed for %s: %s", address, e)

        return out


def _ui_amount(account: dict) -> float:
    try:
        amount = account["account"]["data"]["parsed"]["info"]["tokenAmount"]["uiAmount"]
    except (KeyError, TypeError):
        return 0.0
    return float(amount or 0)


__all__ = ["WalletEnricher", "WalletEnrichment", "TOKEN_PROGRAM_ID"]
