"""DexScreener market data client.

Provides current USD price and market cap for on-chain tokens.

Features:
- Tokens endpoint with search fallback (pair must match chain and token)
- Timeout-bounded requests; every HTTP or parse error is a miss (None)
- No API key required

API docs: https://docs.dexscreener.com/api/reference
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from core.types import Chain, PriceSnapshot

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.dexscreener.com"

CHAIN_IDS: dict[Chain, str] = {
    Chain.SOLANA: "solana",
    Chain.BASE: "base",
}


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        return None
    return result if result.is_finite() else None


def _matches(pair: dict[str, Any], chain_id: str, token_address: str) -> bool:
    needle = token_address.lower()
    base = (pair.get("baseToken") or {}).get("address", "")
    quote = (pair.get("quoteToken") or {}).get("address", "")
    return pair.get("chainId") == chain_id and needle in (base.lower(), quote.lower())


def snapshot_from_pair(pair: dict[str, Any], token_address: str) -> Optional[PriceSnapshot]:
    """Build a snapshot from one DexScreener pair object."""
    price = _to_decimal(pair.get("priceUsd"))
    if price is None:
        return None
    market_cap = _to_decimal(pair.get("marketCap"))
    if market_cap is None:
        market_cap = _to_decimal(pair.get("fdv")) or Decimal("0")

    base = pair.get("baseToken") or {}
    quote = pair.get("quoteToken") or {}
    token = base if base.get("address", "").lower() == token_address.lower() else quote
    return PriceSnapshot(price_usd=price, market_cap_usd=market_cap, symbol=token.get("symbol"))


class DexScreenerClient:
    """Async client for the DexScreener public API."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Accept": "application/json", "User-Agent": "custody-trader/1.0"},
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> DexScreenerClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def _get_json(self, path: str, params: Optional[dict[str, str]] = None) -> Any:
        client = await self._get_client()
        response = await client.get(path, params=params)
        response.raise_for_status()
        return response.json()

    async def get_pairs(self, chain: Chain, token_address: str) -> list[dict[str, Any]]:
        """Pairs for a token: tokens endpoint first, then the search endpoint."""
        chain_id = CHAIN_IDS[chain]
        data = await self._get_json(f"/tokens/v1/{chain_id}/{token_address}")
        if isinstance(data, list) and data:
            return [p for p in data if isinstance(p, dict)]

        search = await self._get_json("/latest/dex/search", params={"q": token_address})
        pairs = search.get("pairs") if isinstance(search, dict) else None
        return [p for p in (pairs or []) if isinstance(p, dict) and _matches(p, chain_id, token_address)]

    async def get_price(self, chain: Chain, token_address: str) -> Optional[PriceSnapshot]:
        """Current price and market cap, or None on any failure."""
        try:
            pairs = await self.get_pairs(chain, token_address)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("DexScreener lookup failed for %s on %s: %s", token_address, chain.value, exc)
            return None

        if not pairs:
            logger.debug("No DexScreener pairs for %s on %s", token_address, chain.value)
            return None
        # First pair is usually the deepest pool.
        return snapshot_from_pair(pairs[0], token_address)
