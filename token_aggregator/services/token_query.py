"""
Filtering, sorting and cursor pagination over aggregated token lists.
"""

from dataclasses import dataclass
from typing import List, Optional

from ..api.schemas import PaginatedTokens, Pagination, SortField, TimePeriod, TokenData

MAX_PAGE_SIZE = 100


@dataclass
class TokenFilters:
    time_period: TimePeriod = TimePeriod.H24
    sort_by: SortField = SortField.VOLUME
    sort_order: str = "desc"
    limit: int = 20
    cursor: Optional[str] = None
    min_volume: Optional[float] = None
    min_price_change: Optional[float] = None
    min_market_cap: Optional[float] = None
    min_liquidity: Optional[float] = None


def window_key(time_period: Optional[TimePeriod]) -> str:
    """Map a requested period to a stored window.

    There is no 7-day data upstream; ``7d`` reads the 24h window.
    """
    if time_period == TimePeriod.H1:
        return "h1"
    if time_period == TimePeriod.H6:
        return "h6"
    return "h24"


def apply_filters(tokens: List[TokenData], filters: TokenFilters) -> List[TokenData]:
    key = window_key(filters.time_period)
    filtered = list(tokens)

    if filters.min_volume:
        filtered = [t for t in filtered if getattr(t.volume, key) >= filters.min_volume]

    if filters.min_price_change is not None:
        filtered = [t for t in filtered if getattr(t.price_change, key) >= filters.min_price_change]

    if filters.min_market_cap:
        filtered = [t for t in filtered if (t.market_cap or 0) >= filters.min_market_cap]

    if filters.min_liquidity:
        filtered = [t for t in filtered if t.liquidity >= filters.min_liquidity]

    return filtered


def _sort_value(token: TokenData, sort_by: SortField, key: str) -> float:
    if sort_by == SortField.VOLUME:
        return getattr(token.volume, key)
    if sort_by == SortField.PRICE_CHANGE:
        return getattr(token.price_change, key)
    if sort_by == SortField.MARKET_CAP:
        return token.market_cap or 0
    if sort_by == SortField.FDV:
        return token.fdv
    if sort_by == SortField.PRICE:
        return token.price_usd
    if sort_by == SortField.LIQUIDITY:
        return token.liquidity
    if sort_by == SortField.TRANSACTIONS:
        window = getattr(token.transactions, key)
        return window.buys + window.sells
    return token.volume.h24


def sort_tokens(tokens: List[TokenData], filters: TokenFilters) -> List[TokenData]:
    key = window_key(filters.time_period)
    return sorted(
        tokens,
        key=lambda token: _sort_value(token, filters.sort_by, key),
        reverse=filters.sort_order != "asc"
    )


def paginate(tokens: List[TokenData], limit: int, cursor: Optional[str] = None) -> PaginatedTokens:
    """Offset-style cursor pagination; the cursor is the start index."""
    try:
        start = max(0, int(cursor)) if cursor else 0
    except ValueError:
        start = 0

    safe_limit = min(max(1, limit), MAX_PAGE_SIZE)
    end = start + safe_limit
    has_more = end < len(tokens)

    return PaginatedTokens(
        data=tokens[start:end],
        pagination=Pagination(
            total=len(tokens),
            limit=safe_limit,
            cursor=str(start),
            next_cursor=str(end) if has_more else None,
            has_more=has_more
        )
    )


def query_tokens(tokens: List[TokenData], filters: TokenFilters) -> PaginatedTokens:
    """Filter, sort, then paginate."""
    return paginate(sort_tokens(apply_filters(tokens, filters), filters), filters.limit, filters.cursor)
