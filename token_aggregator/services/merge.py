"""Merge engine: turns provider payloads into one canonical token record.

Provider payloads are first normalized into :class:`SourceQuote` values, then
classified into exactly one contribution shape:

    NoData                              neither provider returned data
    SingleSource(source, quote)         one provider returned data
    DualSource(dexscreener, geckoterminal)

:func:`merge_token_data` consumes that variant. Prices and per-window volumes
are averaged when both providers contributed, liquidity prefers GeckoTerminal
and everything else comes from DexScreener. A single contributor passes through
unchanged. ``NoData`` never produces a record.

.. code-block:: python

    >>> record = merge_token_data(pairs, gecko_payload, metadata)
    >>> record.sources
    [<DataSource.DEXSCREENER: 'dexscreener'>, <DataSource.GECKOTERMINAL: 'geckoterminal'>]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from ..api.schemas import (
    DataSource,
    TokenData,
    TokenMetadata,
    TransactionCount,
    TransactionWindows,
    WindowedValues,
    utcnow,
)

WINDOWS = ("h1", "h6", "h24")


def to_float(value: Any, default: float = 0.0) -> float:
    """Parse a provider number that may arrive as a string, null or garbage."""
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_int(value: Any) -> int:
    return int(to_float(value))


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class SourceQuote:
    """Provider payload normalized to canonical field types.

    :ivar liquidity: ``None`` when the provider does not report liquidity.
    """

    price_usd: float = 0.0
    price_native: float = 0.0
    price_change: WindowedValues = field(default_factory=WindowedValues)
    volume: WindowedValues = field(default_factory=WindowedValues)
    transactions: TransactionWindows = field(default_factory=TransactionWindows)
    fdv: float = 0.0
    market_cap: Optional[float] = None
    liquidity: Optional[float] = None
    pair_address: str = ""
    dex_id: str = "unknown"
    chain_id: Optional[str] = None


@dataclass(frozen=True)
class NoData:
    """Neither provider contributed."""


@dataclass(frozen=True)
class SingleSource:
    """Exactly one provider contributed."""

    source: DataSource
    quote: SourceQuote


@dataclass(frozen=True)
class DualSource:
    """Both providers contributed."""

    dexscreener: SourceQuote
    geckoterminal: SourceQuote


Contribution = Union[NoData, SingleSource, DualSource]


def _windowed(values: Dict[str, Any]) -> WindowedValues:
    return WindowedValues(**{window: to_float(values.get(window)) for window in WINDOWS})


def _transactions(txns: Dict[str, Any]) -> TransactionWindows:
    counts = {}
    for window in WINDOWS:
        window_txns = _mapping(txns.get(window))
        counts[window] = TransactionCount(
            buys=to_int(window_txns.get('buys')),
            sells=to_int(window_txns.get('sells'))
        )
    return TransactionWindows(**counts)


def select_best_pair(pairs: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Pair with the highest 24h volume; the first one wins ties."""
    best: Optional[Dict[str, Any]] = None
    best_volume = 0.0
    for pair in pairs:
        volume = to_float(_mapping(pair.get('volume')).get('h24'))
        if best is None or volume > best_volume:
            best = pair
            best_volume = volume
    return best


def normalize_dexscreener_pair(pair: Dict[str, Any]) -> SourceQuote:
    """Normalize one DexScreener pair record."""
    market_cap = pair.get('marketCap')
    return SourceQuote(
        price_usd=to_float(pair.get('priceUsd')),
        price_native=to_float(pair.get('priceNative')),
        price_change=_windowed(_mapping(pair.get('priceChange'))),
        volume=_windowed(_mapping(pair.get('volume'))),
        transactions=_transactions(_mapping(pair.get('txns'))),
        fdv=to_float(pair.get('fdv')),
        market_cap=to_float(market_cap) if market_cap else None,
        liquidity=None,
        pair_address=str(pair.get('pairAddress') or ''),
        dex_id=str(pair.get('dexId') or 'unknown'),
        chain_id=pair.get('chainId')
    )


def normalize_geckoterminal_token(payload: Dict[str, Any]) -> SourceQuote:
    """Normalize a GeckoTerminal token record, using its first pool for window data."""
    attributes = _mapping(_mapping(payload.get('data')).get('attributes'))
    included = payload.get('included') or []
    pool = _mapping(included[0]).get('attributes') if included else None
    pool = _mapping(pool)

    pool_volume = _mapping(pool.get('volume_usd'))
    token_volume = _mapping(attributes.get('volume_usd'))
    market_cap = attributes.get('market_cap_usd')

    return SourceQuote(
        price_usd=to_float(attributes.get('price_usd')),
        price_native=to_float(pool.get('base_token_price_native_currency')),
        price_change=_windowed(_mapping(pool.get('price_change_percentage'))),
        volume=WindowedValues(
            h1=to_float(pool_volume.get('h1')),
            h6=to_float(pool_volume.get('h6')),
            h24=to_float(token_volume.get('h24'))
        ),
        transactions=_transactions(_mapping(pool.get('transactions'))),
        fdv=to_float(attributes.get('fdv_usd')),
        market_cap=to_float(market_cap) if market_cap else None,
        liquidity=to_float(attributes.get('total_reserve_in_usd')),
        pair_address=str(pool.get('address') or ''),
        dex_id='unknown'
    )


def classify_contribution(
    dexscreener_pairs: Optional[List[Dict[str, Any]]],
    geckoterminal_token: Optional[Dict[str, Any]]
) -> Contribution:
    """Decide which providers contributed. An empty pair list counts as no data."""
    best_pair = select_best_pair(dexscreener_pairs or [])
    dexscreener = normalize_dexscreener_pair(best_pair) if best_pair is not None else None
    geckoterminal = (
        normalize_geckoterminal_token(geckoterminal_token)
        if geckoterminal_token is not None else None
    )

    if dexscreener is not None and geckoterminal is not None:
        return DualSource(dexscreener=dexscreener, geckoterminal=geckoterminal)
    if dexscreener is not None:
        return SingleSource(source=DataSource.DEXSCREENER, quote=dexscreener)
    if geckoterminal is not None:
        return SingleSource(source=DataSource.GECKOTERMINAL, quote=geckoterminal)
    return NoData()


def _mean(a: float, b: float) -> float:
    return (a + b) / 2


def _merge_quotes(dexscreener: SourceQuote, geckoterminal: SourceQuote) -> SourceQuote:
    return SourceQuote(
        price_usd=_mean(dexscreener.price_usd, geckoterminal.price_usd),
        price_native=dexscreener.price_native,
        price_change=dexscreener.price_change,
        volume=WindowedValues(**{
            window: _mean(getattr(dexscreener.volume, window), getattr(geckoterminal.volume, window))
            for window in WINDOWS
        }),
        transactions=dexscreener.transactions,
        fdv=dexscreener.fdv,
        market_cap=dexscreener.market_cap,
        liquidity=(
            geckoterminal.liquidity if geckoterminal.liquidity is not None
            else dexscreener.liquidity
        ),
        pair_address=dexscreener.pair_address,
        dex_id=dexscreener.dex_id,
        chain_id=dexscreener.chain_id
    )


def _build_record(
    quote: SourceQuote,
    sources: List[DataSource],
    metadata: TokenMetadata,
    default_chain: str,
    now: datetime
) -> TokenData:
    return TokenData(
        address=metadata.address,
        name=metadata.name,
        symbol=metadata.symbol,
        chain_id=quote.chain_id or default_chain,
        price_usd=quote.price_usd,
        price_native=quote.price_native,
        price_change=quote.price_change,
        volume=quote.volume,
        transactions=quote.transactions,
        fdv=quote.fdv,
        market_cap=quote.market_cap,
        liquidity=quote.liquidity or 0.0,
        pair_address=quote.pair_address,
        dex_id=quote.dex_id,
        sources=sources,
        last_updated=now
    )


def merge_contribution(
    contribution: Contribution,
    metadata: TokenMetadata,
    default_chain: str = "solana",
    now: Optional[datetime] = None
) -> Optional[TokenData]:
    """Build the canonical record for a classified contribution."""
    now = now or utcnow()

    if isinstance(contribution, DualSource):
        quote = _merge_quotes(contribution.dexscreener, contribution.geckoterminal)
        sources = [DataSource.DEXSCREENER, DataSource.GECKOTERMINAL]
    elif isinstance(contribution, SingleSource):
        quote = contribution.quote
        sources = [contribution.source]
    elif isinstance(contribution, NoData):
        return None
    else:
        raise TypeError(f"Unknown contribution type: {type(contribution).__name__}")

    return _build_record(quote, sources, metadata, default_chain, now)


def merge_token_data(
    dexscreener_pairs: Optional[List[Dict[str, Any]]],
    geckoterminal_token: Optional[Dict[str, Any]],
    metadata: TokenMetadata,
    default_chain: str = "solana",
    now: Optional[datetime] = None
) -> Optional[TokenData]:
    """Merge raw provider payloads for one token; ``None`` when nobody contributed."""
    contribution = classify_contribution(dexscreener_pairs, geckoterminal_token)
    return merge_contribution(contribution, metadata, default_chain, now)
