"""
Pydantic schemas for Token Aggregator Service.
Defines the canonical token record and the API / event payloads built on it.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class DataSource(str, Enum):
    """Upstream market data providers."""
    DEXSCREENER = "dexscreener"
    GECKOTERMINAL = "geckoterminal"


class TimePeriod(str, Enum):
    """Time windows accepted by token queries."""
    H1 = "1h"
    H6 = "6h"
    H24 = "24h"
    D7 = "7d"


class SortField(str, Enum):
    """Sortable token fields."""
    VOLUME = "volume"
    PRICE_CHANGE = "priceChange"
    MARKET_CAP = "marketCap"
    FDV = "fdv"
    TRANSACTIONS = "transactions"
    PRICE = "price"
    LIQUIDITY = "liquidity"


class TokenMetadata(BaseModel):
    """Static token identity loaded from the token list."""
    model_config = ConfigDict(frozen=True)

    address: str = Field(..., description="Token mint address")
    name: str = Field(..., description="Token name")
    symbol: str = Field(..., description="Token symbol")

    @field_validator('address')
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Validate token address."""
        if not v or not v.strip():
            raise ValueError("Token address cannot be empty")
        return v.strip()


class WindowedValues(BaseModel):
    """A metric sampled over the 1h / 6h / 24h windows."""
    model_config = ConfigDict(frozen=True)

    h1: float = 0.0
    h6: float = 0.0
    h24: float = 0.0


class TransactionCount(BaseModel):
    """Buy and sell counts for one window."""
    model_config = ConfigDict(frozen=True)

    buys: int = 0
    sells: int = 0


class TransactionWindows(BaseModel):
    """Transaction counts over the 1h / 6h / 24h windows."""
    model_config = ConfigDict(frozen=True)

    h1: TransactionCount = Field(default_factory=TransactionCount)
    h6: TransactionCount = Field(default_factory=TransactionCount)
    h24: TransactionCount = Field(default_factory=TransactionCount)


class TokenData(BaseModel):
    """Canonical, provider-agnostic market data record for one token."""
    model_config = ConfigDict(frozen=True)

    address: str = Field(..., description="Token mint address")
    name: str = Field(..., description="Token name")
    symbol: str = Field(..., description="Token symbol")
    chain_id: str = Field("solana", description="Chain identifier")
    price_usd: float = Field(0.0, description="Price in USD")
    price_native: float = Field(0.0, description="Price in the chain's native currency")
    price_change: WindowedValues = Field(default_factory=WindowedValues, description="Price change percentage")
    volume: WindowedValues = Field(default_factory=WindowedValues, description="Volume in USD")
    transactions: TransactionWindows = Field(default_factory=TransactionWindows, description="Buy/sell counts")
    fdv: float = Field(0.0, description="Fully diluted valuation")
    market_cap: Optional[float] = Field(None, description="Market capitalization")
    liquidity: float = Field(0.0, description="Liquidity in USD")
    pair_address: str = Field("", description="Address of the selected pool/pair")
    dex_id: str = Field("unknown", description="DEX identifier")
    sources: List[DataSource] = Field(..., description="Providers that contributed, in contribution order")
    last_updated: datetime = Field(default_factory=utcnow, description="Aggregation timestamp")

    @field_validator('sources')
    @classmethod
    def validate_sources(cls, v: List[DataSource]) -> List[DataSource]:
        """A record always has at least one contributing provider."""
        if not v:
            raise ValueError("A token record requires at least one source")
        if len(set(v)) != len(v):
            raise ValueError("Sources must not repeat")
        return v


class PriceUpdateEvent(BaseModel):
    """Price change for one token between two aggregation cycles."""
    address: str
    symbol: str
    price_usd: float
    price_change: float = Field(..., description="Percentage change vs previous price")
    volume: float = Field(..., description="Current 24h volume")
    timestamp: datetime = Field(default_factory=utcnow)


class VolumeSpikeEvent(BaseModel):
    """24h volume jump for one token between two aggregation cycles."""
    address: str
    symbol: str
    volume: float
    previous_volume: float
    percentage_increase: float
    timestamp: datetime = Field(default_factory=utcnow)


class RateLimitStatus(BaseModel):
    """Quota state of one provider."""
    remaining: int
    total: int
    reset_time: datetime


class Pagination(BaseModel):
    """Cursor pagination details."""
    total: int
    limit: int
    cursor: str
    next_cursor: Optional[str] = None
    has_more: bool


class PaginatedTokens(BaseModel):
    """Page of token records."""
    data: List[TokenData]
    pagination: Pagination


class ApiResponse(BaseModel):
    """Standard success envelope."""
    success: bool = True
    message: str = "Success"
    data: Optional[Any] = None
    timestamp: datetime = Field(default_factory=utcnow)


class ErrorResponse(BaseModel):
    """Model for error responses."""
    success: bool = False
    message: str = Field(..., description="Error message")
    error_code: str = Field(..., description="Error code")
    errors: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    timestamp: datetime = Field(default_factory=utcnow, description="Error timestamp")


class HealthResponse(BaseModel):
    """Model for health check response."""
    status: Literal["healthy", "degraded"] = Field(..., description="Service status")
    timestamp: datetime = Field(default_factory=utcnow, description="Health check timestamp")
    version: str = Field(..., description="Service version")
    redis_connected: bool = Field(..., description="Redis connection status")
    scheduler_running: bool = Field(..., description="Scheduler status")
    tokens_loaded: bool = Field(..., description="Whether token metadata is loaded")
    token_count: int = Field(..., description="Number of known tokens")
