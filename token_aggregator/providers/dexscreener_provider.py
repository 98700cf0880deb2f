"""
DexScreener data provider implementation.
Returns the trading pairs DexScreener knows for a token.
"""

from typing import Any, Dict, List

from .base import BaseDataProvider, InvalidPayloadError
from ..api.schemas import DataSource
from ..core.logging_config import create_logger

logger = create_logger(__name__)


class DexScreenerProvider(BaseDataProvider):
    """DexScreener provider: zero or more pair records per token."""

    source = DataSource.DEXSCREENER

    def __init__(self, *args, network: str = "solana", **kwargs):
        super().__init__(*args, **kwargs)
        self.network = network

    async def fetch(self, address: str) -> List[Dict[str, Any]]:
        """Get all pairs for a token. An empty list means DexScreener has no data."""
        payload = await self._get_json(
            f"/tokens/v1/{self.network}/{address}",
            address=address
        )

        if payload is None:
            pairs: List[Dict[str, Any]] = []
        elif isinstance(payload, list):
            pairs = payload
        elif isinstance(payload, dict) and isinstance(payload.get('pairs'), list):
            pairs = payload['pairs']
        elif isinstance(payload, dict) and payload.get('pairs') is None:
            pairs = []
        else:
            raise InvalidPayloadError(
                f"Unexpected response shape from {self.name}",
                self.name,
                address=address
            )

        pairs = [pair for pair in pairs if isinstance(pair, dict)]

        logger.info("Retrieved pairs from DexScreener", extra={
            "provider": self.name,
            "address": address,
            "pairs": len(pairs)
        })

        return pairs
