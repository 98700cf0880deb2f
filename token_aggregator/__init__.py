"""
Token Aggregator Service
Aggregates live DEX market data for a fixed token set from multiple providers.
"""

__version__ = "1.0.0"
__author__ = "Token Aggregator Team"
__description__ = "Real-time token market data aggregation with two-tier caching and delta broadcasting"
