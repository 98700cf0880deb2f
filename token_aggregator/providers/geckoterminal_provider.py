"""
GeckoTerminal data provider implementation.
Returns the token record plus its top pools.
"""

from typing import Any, Dict

from .base import BaseDataProvider, InvalidPayloadError
from ..api.schemas import DataSource
from ..core.logging_config import create_logger

logger = create_logger(__name__)


class GeckoTerminalProvider(BaseDataProvider):
    """GeckoTerminal provider: one token record with zero or more pools."""

    source = DataSource.GECKOTERMINAL

    def __init__(self, *args, network: str = "solana", **kwargs):
        super().__init__(*args, **kwargs)
        self.network = network

    def _get_default_headers(self) -> Dict[str, str]:
        headers = super()._get_default_headers()
        headers['Accept'] = 'application/json;version=20230302'
        return headers

    async def fetch(self, address: str) -> Dict[str, Any]:
        """Get the token record with ``included`` top pools."""
        payload = await self._get_json(
            f"/networks/{self.network}/tokens/{address}",
            params={
                'include': 'top_pools',
                'include_composition': 'false'
            },
            address=address
        )

        data = payload.get('data') if isinstance(payload, dict) else None
        if not isinstance(data, dict) or not isinstance(data.get('attributes'), dict):
            raise InvalidPayloadError(
                f"Missing token attributes in {self.name} response",
                self.name,
                address=address
            )

        included = payload.get('included')
        if not isinstance(included, list):
            payload['included'] = []

        logger.info("Retrieved token from GeckoTerminal", extra={
            "provider": self.name,
            "address": address,
            "pools": len(payload['included'])
        })

        return payload
