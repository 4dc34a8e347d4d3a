"""
Data Module
===========
Candle model, the async data-source interface the engine consumes, and the
ingestion boundary that turns raw exchange payloads into aligned, validated
arrays.
"""

import asyncio
import math
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union
import logging

import numpy as np
import pandas as pd

from ..exceptions import UpstreamDataError

logger = logging.getLogger(__name__)


INTERVAL_SECONDS = {
    '1m': 60,
    '5m': 5 * 60,
    '15m': 15 * 60,
    '30m': 30 * 60,
    '1h': 60 * 60,
    '4h': 4 * 60 * 60,
    '1d': 24 * 60 * 60,
}


@dataclass
class Candle:
    """One OHLCV bar. Timestamp is epoch milliseconds."""
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_raw(cls, raw: Union['Candle', Mapping[str, Any], Sequence[Any]]) -> 'Candle':
        """Build a candle from a mapping, a [ts, o, h, l, c, v] row, or a Candle."""
        if isinstance(raw, Candle):
            return raw
        if isinstance(raw, Mapping):
            values = [raw.get(k) for k in ('timestamp', 'open', 'high', 'low', 'close', 'volume')]
        else:
            values = list(raw)[:6]
            if len(values) < 6:
                raise UpstreamDataError(f"Candle row has {len(values)} fields, need 6")
        return cls(
            timestamp=int(_to_float(values[0])),
            open=_to_float(values[1]),
            high=_to_float(values[2]),
            low=_to_float(values[3]),
            close=_to_float(values[4]),
            volume=_to_float(values[5]),
        )

    def is_valid(self) -> bool:
        """All OHLCV fields finite and strictly positive."""
        return all(
            math.isfinite(v) and v > 0
            for v in (self.open, self.high, self.low, self.close, self.volume)
        )

    def to_dict(self) -> dict:
        return {
            'timestamp': self.timestamp,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
        }


def _to_float(value: Any) -> float:
    if value is None:
        return 0.0
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0.0
    return parsed if math.isfinite(parsed) else 0.0


@dataclass
class PriceArrays:
    """Index-aligned OHLCV arrays built from the same filtered candles."""
    timestamps: np.ndarray
    opens: np.ndarray
    highs: np.ndarray
    lows: np.ndarray
    closes: np.ndarray
    volumes: np.ndarray

    def __len__(self) -> int:
        return len(self.closes)

    def tail(self, n: int) -> 'PriceArrays':
        return PriceArrays(
            timestamps=self.timestamps[-n:],
            opens=self.opens[-n:],
            highs=self.highs[-n:],
            lows=self.lows[-n:],
            closes=self.closes[-n:],
            volumes=self.volumes[-n:],
        )


class DataSource(ABC):
    """Abstract exchange data source consumed by the engine."""

    @abstractmethod
    async def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        """Fetch timestamp-ascending OHLCV candles."""
        pass

    @abstractmethod
    async def get_funding_rate(self, symbol: str) -> Union[float, str]:
        """Fetch the current funding rate (decimal or percent string)."""
        pass


class MockDataSource(DataSource):
    """
    Deterministic random-walk data source for testing and demos.

    Candles end at the current wall-clock time so freshness checks pass.
    Explicit candle lists and funding rates can be injected per symbol.
    """

    def __init__(self, seed: int = 42, base_prices: Optional[Dict[str, float]] = None,
                 funding_rates: Optional[Dict[str, Union[float, str]]] = None,
                 candles: Optional[Dict[str, List[Candle]]] = None,
                 failing_symbols: Iterable[str] = (), latency: float = 0.0,
                 volatility: float = 0.01):
        self.seed = seed
        self.base_prices = {k.lower(): v for k, v in (base_prices or {}).items()}
        self.funding_rates = {k.lower(): v for k, v in (funding_rates or {}).items()}
        self.candles = {k.lower(): v for k, v in (candles or {}).items()}
        self.failing_symbols = {s.lower() for s in failing_symbols}
        self.latency = latency
        self.volatility = volatility

        # Call counters
        self.calls: Counter = Counter()
        self.candle_calls: Counter = Counter()

    async def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        self.calls['get_candles'] += 1
        self.candle_calls[(symbol.lower(), interval)] += 1
        await asyncio.sleep(self.latency)

        key = symbol.lower()
        if key in self.failing_symbols:
            raise UpstreamDataError(f"Mock fetch failure for {symbol}", symbol=symbol)
        if key in self.candles:
            return list(self.candles[key][-limit:])
        return self.generate_candles(symbol, interval, limit)

    async def get_funding_rate(self, symbol: str) -> Union[float, str]:
        self.calls['get_funding_rate'] += 1
        await asyncio.sleep(self.latency)

        key = symbol.lower()
        if key in self.failing_symbols:
            raise UpstreamDataError(f"Mock funding failure for {symbol}", symbol=symbol)
        return self.funding_rates.get(key, 0.0001)

    def generate_candles(self, symbol: str, interval: str, limit: int,
                         end_ms: Optional[int] = None) -> List[Candle]:
        """Generate a geometric random walk ending at end_ms (default now)."""
        step_ms = INTERVAL_SECONDS.get(interval, 3600) * 1000
        end_ms = end_ms if end_ms is not None else int(time.time() * 1000)
        # Stable per-symbol stream
        rng = np.random.default_rng([self.seed, sum(ord(c) for c in symbol.lower())])

        price = self.base_prices.get(symbol.lower(), 100.0)
        candles = []
        for i in range(limit):
            ret = rng.normal(0, self.volatility)
            open_price = price
            close_price = max(open_price * (1 + ret), 1e-8)
            wick = abs(rng.normal(0, self.volatility / 2))
            high = max(open_price, close_price) * (1 + wick)
            low = min(open_price, close_price) * (1 - wick)
            volume = float(rng.uniform(500, 1500))
            candles.append(Candle(
                timestamp=end_ms - (limit - 1 - i) * step_ms,
                open=open_price,
                high=high,
                low=max(low, 1e-8),
                close=close_price,
                volume=volume,
            ))
            price = close_price
        return candles


def clean_candles(raw_candles: Iterable[Any]) -> List[Candle]:
    """
    Parse raw candles and keep only fully valid bars.

    Filtering happens once per candle so every derived array refers to the
    same bars index-for-index.
    """
    if raw_candles is None:
        raise UpstreamDataError("Candle payload is missing")
    cleaned = []
    for raw in raw_candles:
        candle = Candle.from_raw(raw)
        if candle.is_valid():
            cleaned.append(candle)
    return cleaned


def to_arrays(candles: Sequence[Candle]) -> PriceArrays:
    """Convert pre-filtered candles into aligned numpy arrays."""
    return PriceArrays(
        timestamps=np.array([c.timestamp for c in candles], dtype=np.int64),
        opens=np.array([c.open for c in candles], dtype=float),
        highs=np.array([c.high for c in candles], dtype=float),
        lows=np.array([c.low for c in candles], dtype=float),
        closes=np.array([c.close for c in candles], dtype=float),
        volumes=np.array([c.volume for c in candles], dtype=float),
    )


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """OHLCV DataFrame indexed by UTC timestamp."""
    df = pd.DataFrame([c.to_dict() for c in candles],
                      columns=['timestamp', 'open', 'high', 'low', 'close', 'volume'])
    df.index = pd.to_datetime(df.pop('timestamp'), unit='ms', utc=True)
    df = df[~df.index.duplicated(keep='last')]
    return df.sort_index()


def is_fresh(candles: Sequence[Candle], max_age_seconds: float, now: Optional[float] = None) -> bool:
    """True when the last candle is within max_age_seconds of now."""
    if not candles:
        return False
    ts = candles[-1].timestamp
    if not math.isfinite(ts) or ts <= 0:
        logger.warning("Candle timestamp invalid, skipping freshness check")
        return True
    now = time.time() if now is None else now
    return now * 1000 - ts <= max_age_seconds * 1000


def parse_funding_rate(raw: Any, symbol: str = '') -> float:
    """
    Normalize an exchange funding rate to decimal form (0.0001 == 0.01%).

    Percent-suffixed strings are divided by 100. Magnitudes above 0.1 are
    assumed to be percentages.
    """
    if isinstance(raw, str):
        text = raw.strip()
        try:
            rate = float(text[:-1]) / 100 if text.endswith('%') else float(text)
        except ValueError:
            raise UpstreamDataError(f"Invalid funding rate format for {symbol}: {raw!r}", symbol=symbol)
    elif isinstance(raw, (int, float)) and not isinstance(raw, bool):
        rate = float(raw)
    else:
        raise UpstreamDataError(f"Invalid funding rate format for {symbol}: {raw!r}", symbol=symbol)

    if not math.isfinite(rate):
        raise UpstreamDataError(f"Invalid funding rate format for {symbol}: {raw!r}", symbol=symbol)

    if abs(rate) > 0.1:
        logger.warning(f"Unexpected funding rate magnitude for {symbol}: {rate}, assuming percentage format")
        rate = rate / 100
    return rate


def normalize_symbol(symbol: str) -> str:
    """Map key form: lowercased and stripped."""
    if not isinstance(symbol, str):
        return ''
    return symbol.strip().lower()


def base_asset(symbol: str) -> str:
    """'cmt_btcusdt' -> 'btc'."""
    s = normalize_symbol(symbol)
    if s.startswith('cmt_'):
        s = s[4:]
    if s.endswith('usdt'):
        s = s[:-4]
    return s


def display_symbol(symbol: str) -> str:
    """'cmt_btcusdt' -> 'BTC'."""
    return base_asset(symbol).upper()


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
]
