"""Market data for on-chain tokens."""

from core.market_data.dexscreener import DexScreenerClient, snapshot_from_pair

__all__ = ["DexScreenerClient", "snapshot_from_pair"]
