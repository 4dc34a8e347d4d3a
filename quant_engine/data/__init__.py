"""
Data Module
===========
"""
from .data_manager import (
    Candle,
    PriceArrays,
    DataSource,
    MockDataSource,
    INTERVAL_SECONDS,
    clean_candles,
    to_arrays,
    candles_to_frame,
    is_fresh,
    parse_funding_rate,
    normalize_symbol,
    base_asset,
    display_symbol,
)
from .cache import CacheEntry, CacheStats, CoalescingCache, PeriodicSweeper

__all__ = [
    'Candle',
    'PriceArrays',
    'DataSource',
    'MockDataSource',
    'INTERVAL_SECONDS',
    'clean_candles',
    'to_arrays',
    'candles_to_frame',
    'is_fresh',
    'parse_funding_rate',
    'normalize_symbol',
    'base_asset',
    'display_symbol',
    'CacheEntry',
    'CacheStats',
    'CoalescingCache',
    'PeriodicSweeper',
]
