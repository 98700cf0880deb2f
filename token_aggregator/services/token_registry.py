"""
Token metadata registry.
Loads the tracked token list (tab-separated: name, symbol, address) once at startup.
"""

import csv
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from ..api.schemas import TokenMetadata
from ..core.logging_config import create_logger

logger = create_logger(__name__)


class TokenRegistry:
    """Read-only address -> metadata lookup. Addresses match case-insensitively."""

    def __init__(self, tokens: Optional[Iterable[TokenMetadata]] = None):
        self._tokens: Dict[str, TokenMetadata] = {}
        self._loaded = False
        if tokens is not None:
            for token in tokens:
                self._tokens[token.address.lower()] = token
            self._loaded = True

    def load(self, file_path: Union[str, Path]) -> int:
        """Load tokens from a tab-separated file with a header row."""
        if self._loaded:
            return len(self._tokens)

        path = Path(file_path).resolve()
        with path.open(newline='', encoding='utf-8') as handle:
            reader = csv.reader(handle, delimiter='\t')
            next(reader, None)  # header

            for row in reader:
                if len(row) < 3:
                    continue
                name, symbol, address = (cell.strip() for cell in row[:3])
                if not address:
                    continue
                token = TokenMetadata(address=address, name=name, symbol=symbol)
                self._tokens[address.lower()] = token

        self._loaded = True
        logger.info("Loaded token metadata", extra={
            "path": str(path),
            "count": len(self._tokens)
        })
        return len(self._tokens)

    def get_token(self, address: str) -> Optional[TokenMetadata]:
        return self._tokens.get(address.strip().lower())

    def get_all_tokens(self) -> List[TokenMetadata]:
        return list(self._tokens.values())

    def is_ready(self) -> bool:
        return self._loaded

    def count(self) -> int:
        return len(self._tokens)
