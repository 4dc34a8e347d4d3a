"""
Feature Engineering Module
==========================
Technical indicators for the analysis pipeline.

TechnicalIndicators holds pure, fail-fast functions: insufficient or
non-finite input raises InputValidationError, violated output invariants
raise ComputationError. Nothing here returns NaN.

FeatureEngine computes cached multi-timeframe indicator snapshots
(5m intraday, 4h long-term) from an async data source.
"""

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd

from ..config import IndicatorConfig, CacheConfig
from ..exceptions import InputValidationError, ComputationError, UpstreamDataError
from ..data.cache import CoalescingCache
from ..data.data_manager import Candle, DataSource, clean_candles, normalize_symbol

logger = logging.getLogger(__name__)


@dataclass
class MACDResult:
    """Latest MACD triple."""
    macd: float
    signal: float
    histogram: float


@dataclass
class BollingerBands:
    """Bollinger envelope; upper >= middle >= lower."""
    upper: float
    middle: float
    lower: float

    @property
    def width(self) -> float:
        if self.middle == 0:
            return 0.0
        return (self.upper - self.lower) / self.middle


@dataclass
class DonchianChannel:
    """Highest high / lowest low channel."""
    upper: float
    middle: float
    lower: float


@dataclass
class DirectionalIndex:
    """ADX with directional indicators."""
    adx: float
    plus_di: float
    minus_di: float


def _check_period(name: str, period: Any) -> int:
    if isinstance(period, bool) or not isinstance(period, (int, np.integer)) or period <= 0:
        raise InputValidationError(f"{name}: period must be a positive integer, got {period!r}")
    return int(period)


def _finite_array(name: str, values: Any) -> np.ndarray:
    """Validation boundary: convert to a 1-D float array of finite values."""
    if values is None:
        raise InputValidationError(f"{name}: prices must be a sequence")
    try:
        arr = np.asarray(values, dtype=float)
    except (TypeError, ValueError):
        raise InputValidationError(f"{name}: prices must be numeric")
    if arr.ndim != 1:
        raise InputValidationError(f"{name}: prices must be one-dimensional")
    if arr.size == 0:
        raise InputValidationError(f"{name}: prices array is empty")
    bad = np.flatnonzero(~np.isfinite(arr))
    if bad.size:
        raise InputValidationError(f"{name}: invalid price at index {bad[0]}: {arr[bad[0]]}")
    return arr


def _ohlc_arrays(name: str, candles: Any) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Extract high/low/close arrays from Candles, mappings or a DataFrame."""
    if isinstance(candles, pd.DataFrame):
        missing = {'high', 'low', 'close'} - set(candles.columns)
        if missing:
            raise InputValidationError(f"{name}: frame is missing columns {sorted(missing)}")
        highs, lows, closes = candles['high'], candles['low'], candles['close']
    else:
        if candles is None:
            raise InputValidationError(f"{name}: candles must be a sequence")
        rows = list(candles)
        highs, lows, closes = [], [], []
        for i, c in enumerate(rows):
            if isinstance(c, Candle):
                highs.append(c.high)
                lows.append(c.low)
                closes.append(c.close)
            elif isinstance(c, Mapping):
                highs.append(c.get('high'))
                lows.append(c.get('low'))
                closes.append(c.get('close'))
            else:
                raise InputValidationError(f"{name}: invalid candle at index {i}")
    try:
        return (np.asarray(highs, dtype=float), np.asarray(lows, dtype=float),
                np.asarray(closes, dtype=float))
    except (TypeError, ValueError):
        raise InputValidationError(f"{name}: candle fields must be numeric")


class TechnicalIndicators:
    """Technical analysis indicators."""

    @staticmethod
    def ema(prices: Sequence[float], period: int) -> np.ndarray:
        """Exponential Moving Average seeded with the SMA of the first period values."""
        period = _check_period('EMA', period)
        arr = _finite_array('EMA', prices)
        if arr.size < period:
            raise InputValidationError(f"Not enough data for EMA({period}): need {period}, got {arr.size}")

        k = 2 / (period + 1)
        out = np.empty(arr.size - period + 1)
        out[0] = arr[:period].mean()
        for i, price in enumerate(arr[period:], start=1):
            out[i] = price * k + out[i - 1] * (1 - k)

        if not np.all(np.isfinite(out)):
            raise ComputationError(f"EMA({period}): produced a non-finite value")
        return out

    @staticmethod
    def rsi(prices: Sequence[float], period: int = 14) -> np.ndarray:
        """Relative Strength Index with Wilder smoothing."""
        period = _check_period('RSI', period)
        arr = _finite_array('RSI', prices)
        if arr.size < period + 1:
            raise InputValidationError(f"Not enough data for RSI({period}): need {period + 1}, got {arr.size}")

        changes = np.diff(arr)
        gains = np.where(changes > 0, changes, 0.0)
        losses = np.where(changes < 0, -changes, 0.0)

        avg_gain = gains[:period].mean()
        avg_loss = losses[:period].mean()
        out = [TechnicalIndicators._rsi_value(avg_gain, avg_loss, period - 1)]

        for i in range(period, changes.size):
            avg_gain = (avg_gain * (period - 1) + gains[i]) / period
            avg_loss = (avg_loss * (period - 1) + losses[i]) / period
            out.append(TechnicalIndicators._rsi_value(avg_gain, avg_loss, i))

        return np.array(out)

    @staticmethod
    def _rsi_value(avg_gain: float, avg_loss: float, index: int) -> float:
        """RSI from smoothed averages; index is the position in the price changes."""
        if avg_loss == 0:
            value = 50.0 if avg_gain == 0 else 100.0
        else:
            value = 100 - (100 / (1 + avg_gain / avg_loss))
        if not math.isfinite(value) or value < 0 or value > 100:
            raise ComputationError(f"RSI out of range [0, 100] at index {index}: {value}")
        return value

    @staticmethod
    def macd(prices: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> MACDResult:
        """Moving Average Convergence Divergence (latest values)."""
        fast = _check_period('MACD fast', fast)
        slow = _check_period('MACD slow', slow)
        signal = _check_period('MACD signal', signal)
        if fast >= slow:
            raise InputValidationError(f"MACD: fast period ({fast}) must be less than slow period ({slow})")
        arr = _finite_array('MACD', prices)
        if arr.size < slow + signal:
            raise InputValidationError(f"Not enough data for MACD: need {slow + signal}, got {arr.size}")

        ema_fast = TechnicalIndicators.ema(arr, fast)
        ema_slow = TechnicalIndicators.ema(arr, slow)
        offset = ema_fast.size - ema_slow.size
        macd_line = ema_fast[offset:] - ema_slow
        signal_line = TechnicalIndicators.ema(macd_line, signal)

        result = MACDResult(
            macd=float(macd_line[-1]),
            signal=float(signal_line[-1]),
            histogram=float(macd_line[-1] - signal_line[-1]),
        )
        if not all(math.isfinite(v) for v in (result.macd, result.signal, result.histogram)):
            raise ComputationError(f"MACD: non-finite result {result}")
        return result

    @staticmethod
    def true_range(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray) -> np.ndarray:
        """True range for bars 1..n-1."""
        prev_close = closes[:-1]
        h, l = highs[1:], lows[1:]
        return np.maximum.reduce([h - l, np.abs(h - prev_close), np.abs(l - prev_close)])

    @staticmethod
    def atr(candles: Any, period: int = 14) -> float:
        """Average True Range with Wilder's RMA."""
        period = _check_period('ATR', period)
        highs, lows, closes = _ohlc_arrays('ATR', candles)
        if closes.size == 0:
            raise InputValidationError("ATR: candles array is empty")
        if closes.size < period + 1:
            raise InputValidationError(f"Not enough data for ATR({period}): need {period + 1}, got {closes.size}")

        for i in range(1, closes.size):
            high, low, prev_close = highs[i], lows[i], closes[i - 1]
            if not math.isfinite(high) or high <= 0:
                raise InputValidationError(f"ATR: invalid high at index {i}: {high}")
            if not math.isfinite(low) or low <= 0:
                raise InputValidationError(f"ATR: invalid low at index {i}: {low}")
            if not math.isfinite(prev_close) or prev_close <= 0:
                raise InputValidationError(f"ATR: invalid previous close at index {i - 1}: {prev_close}")
            if high < low:
                raise InputValidationError(f"ATR: high ({high}) < low ({low}) at index {i}")

        tr = TechnicalIndicators.true_range(highs, lows, closes)
        atr = tr[:period].mean()
        for value in tr[period:]:
            atr = (atr * (period - 1) + value) / period

        if not math.isfinite(atr) or atr < 0:
            raise ComputationError(f"ATR: calculated value is invalid: {atr}")
        return float(atr)

    @staticmethod
    def bollinger_bands(prices: Sequence[float], period: int = 20, std_dev: float = 2.0) -> BollingerBands:
        """Bollinger Bands over the last period prices (population std)."""
        period = _check_period('Bollinger Bands', period)
        if isinstance(std_dev, bool) or not isinstance(std_dev, (int, float)) \
                or not math.isfinite(std_dev) or std_dev <= 0:
            raise InputValidationError(f"Bollinger Bands: std_dev must be a positive number, got {std_dev!r}")
        arr = _finite_array('Bollinger Bands', prices)
        if arr.size < period:
            raise InputValidationError(
                f"Not enough data for Bollinger Bands({period}): need {period}, got {arr.size}"
            )

        recent = arr[-period:]
        middle = float(recent.mean())
        std = float(recent.std(ddof=0))
        bands = BollingerBands(upper=middle + std * std_dev, middle=middle, lower=middle - std * std_dev)

        if not all(math.isfinite(v) for v in (bands.upper, bands.middle, bands.lower)):
            raise ComputationError(f"Bollinger Bands: non-finite bands {bands}")
        if bands.upper < bands.middle or bands.middle < bands.lower:
            raise ComputationError(f"Bollinger Bands: invalid band ordering {bands}")
        return bands

    @staticmethod
    def donchian_channel(candles: Any, period: int = 20) -> DonchianChannel:
        """Donchian Channel over the last period candles."""
        period = _check_period('Donchian', period)
        highs, lows, _ = _ohlc_arrays('Donchian', candles)
        if highs.size < period:
            raise InputValidationError(f"Not enough data for Donchian({period}): need {period}, got {highs.size}")

        window_h, window_l = highs[-period:], lows[-period:]
        for i, (high, low) in enumerate(zip(window_h, window_l)):
            if not math.isfinite(high) or high <= 0:
                raise InputValidationError(f"Donchian: invalid high at index {i}: {high}")
            if not math.isfinite(low) or low <= 0:
                raise InputValidationError(f"Donchian: invalid low at index {i}: {low}")
            if high < low:
                raise InputValidationError(f"Donchian: high ({high}) < low ({low}) at index {i}")

        upper, lower = float(window_h.max()), float(window_l.min())
        return DonchianChannel(upper=upper, middle=(upper + lower) / 2, lower=lower)

    @staticmethod
    def rolling_donchian(df: pd.DataFrame, period: int = 20) -> pd.DataFrame:
        """Rolling Donchian channel columns for an OHLC frame."""
        period = _check_period('Donchian', period)
        if len(df) < period:
            raise InputValidationError(f"Not enough data for Donchian({period}): need {period}, got {len(df)}")
        inverted = df.index[df['high'] < df['low']]
        if len(inverted):
            raise InputValidationError(f"Donchian: high < low at {inverted[0]}")
        upper = df['high'].rolling(window=period).max()
        lower = df['low'].rolling(window=period).min()
        return pd.DataFrame({
            'dc_upper': upper,
            'dc_middle': (upper + lower) / 2,
            'dc_lower': lower,
        }).dropna()

    @staticmethod
    def atr_history(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float],
                    period: int = 14) -> np.ndarray:
        """EMA-smoothed true range series; empty when there is not enough data."""
        highs, lows, closes = (np.asarray(a, dtype=float) for a in (highs, lows, closes))
        n = min(highs.size, lows.size, closes.size)
        if n < period + 1:
            return np.array([])
        tr = TechnicalIndicators.true_range(highs[:n], lows[:n], closes[:n])
        tr = tr[np.isfinite(tr)]
        if tr.size < period:
            return np.array([])

        multiplier = 2 / (period + 1)
        out = np.empty(tr.size - period + 1)
        out[0] = tr[:period].mean()
        for i, value in enumerate(tr[period:], start=1):
            out[i] = (value - out[i - 1]) * multiplier + out[i - 1]
        return out

    @staticmethod
    def adx(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float],
            period: int = 14) -> DirectionalIndex:
        """ADX/+DI/-DI with Wilder sum smoothing. DX of the smoothed sums is used as ADX."""
        default = DirectionalIndex(adx=20.0, plus_di=25.0, minus_di=25.0)
        highs, lows, closes = (np.asarray(a, dtype=float) for a in (highs, lows, closes))
        n = min(highs.size, lows.size, closes.size)
        if n < period + 1:
            return default

        highs, lows, closes = highs[:n], lows[:n], closes[:n]
        up_move = highs[1:] - highs[:-1]
        down_move = lows[:-1] - lows[1:]
        plus_dm = np.where((up_move > down_move) & (up_move > 0), up_move, 0.0)
        minus_dm = np.where((down_move > up_move) & (down_move > 0), down_move, 0.0)
        tr = TechnicalIndicators.true_range(highs, lows, closes)

        valid = np.isfinite(plus_dm) & np.isfinite(minus_dm) & np.isfinite(tr)
        plus_dm, minus_dm, tr = plus_dm[valid], minus_dm[valid], tr[valid]
        if plus_dm.size < period:
            return default

        def smooth(values: np.ndarray) -> float:
            smoothed = values[:period].sum()
            for v in values[period:]:
                smoothed = smoothed - smoothed / period + v
            return smoothed

        smoothed_tr = smooth(tr)
        if smoothed_tr == 0:
            return default

        plus_di = smooth(plus_dm) / smoothed_tr * 100
        minus_di = smooth(minus_dm) / smoothed_tr * 100
        di_sum = plus_di + minus_di
        dx = abs(plus_di - minus_di) / di_sum * 100 if di_sum > 0 else 0.0

        return DirectionalIndex(
            adx=float(dx) if math.isfinite(dx) else 20.0,
            plus_di=float(plus_di) if math.isfinite(plus_di) else 25.0,
            minus_di=float(minus_di) if math.isfinite(minus_di) else 25.0,
        )


@dataclass
class IntradayIndicators:
    """5m indicator block."""
    ema20: List[float]
    ema50: float
    macd: MACDResult
    rsi7: List[float]
    rsi14: List[float]
    atr: float
    current_price: float


@dataclass
class LongTermIndicators:
    """4h indicator block."""
    ema20: float
    ema50: float
    ema200: float
    atr: float
    macd: MACDResult
    rsi14: float
    bollinger_bands: BollingerBands
    donchian: DonchianChannel
    trend: str  # 'bullish', 'bearish', 'neutral'


@dataclass
class IndicatorSignals:
    """Discrete signals derived from the indicators."""
    ema_crossover: str = 'none'  # 'golden', 'death', 'none'
    rsi_signal: str = 'neutral'  # 'overbought', 'oversold', 'neutral'
    macd_signal: str = 'neutral'  # 'bullish', 'bearish', 'neutral'
    trend_strength: float = 50.0
    volatility: str = 'medium'


@dataclass
class IndicatorSet:
    """Per-symbol multi-timeframe indicator snapshot."""
    symbol: str
    timestamp: float
    intraday: IntradayIndicators
    long_term: LongTermIndicators
    signals: IndicatorSignals = field(default_factory=IndicatorSignals)


class FeatureEngine:
    """
    Computes cached indicator snapshots per symbol.

    Snapshots live in one cache (short TTL); the 4h block lives in a second
    cache with a longer TTL so 4h candles are not refetched every cycle.
    """

    def __init__(self, data_source: DataSource, config=None, cache_config=None,
                 clock=time.monotonic):
        self.config = config or IndicatorConfig()
        self.cache_config = cache_config or CacheConfig()
        self.data_source = data_source
        self.indicators = TechnicalIndicators()

        self.cache = CoalescingCache(
            'indicators', self.cache_config.indicator_ttl_seconds,
            self.cache_config.max_entries, clock=clock,
        )
        self.long_term_cache = CoalescingCache(
            'long_term_indicators', self.cache_config.long_term_ttl_seconds,
            self.cache_config.max_entries, clock=clock,
        )

    async def get_indicators(self, symbol: str) -> IndicatorSet:
        """Cached indicator snapshot for one symbol."""
        key = normalize_symbol(symbol)
        if not key:
            raise InputValidationError(f"Invalid symbol: {symbol!r}")
        return await self.cache.get_or_compute(key, lambda: self._calculate(key))

    async def get_indicators_for_symbols(self, symbols: Sequence[str]) -> Dict[str, IndicatorSet]:
        """Snapshots for many symbols; failed symbols are logged and omitted."""
        unique = list(dict.fromkeys(
            normalize_symbol(s) for s in symbols if isinstance(s, str) and s.strip()
        ))
        if not unique:
            logger.warning("No valid symbols provided for indicator calculation")
            return {}

        results = await asyncio.gather(
            *(self.get_indicators(s) for s in unique), return_exceptions=True
        )
        out = {}
        for symbol, result in zip(unique, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(f"Failed to get indicators for {symbol}: {result}")
            else:
                out[symbol] = result
        logger.info(f"Fetched indicators for {len(out)}/{len(unique)} symbols "
                    f"({len(unique) - len(out)} failures)")
        return out

    async def _fetch(self, symbol: str, interval: str, limit: int, minimum: int) -> List[Candle]:
        try:
            raw = await self.data_source.get_candles(symbol, interval, limit)
        except UpstreamDataError:
            raise
        except Exception as e:
            raise UpstreamDataError(f"Failed to fetch {interval} candles for {symbol}: {e}", symbol=symbol) from e
        candles = clean_candles(raw)
        if len(candles) < minimum:
            raise UpstreamDataError(
                f"Insufficient {interval} candle data for {symbol}: got {len(candles)}, need {minimum}",
                symbol=symbol,
            )
        return candles

    async def _calculate(self, symbol: str) -> IndicatorSet:
        cfg = self.config
        long_term = self.long_term_cache.get(symbol)
        intraday_task = self._fetch(symbol, cfg.intraday_interval, cfg.intraday_limit, cfg.ema_slow_period)
        if long_term is None:
            candles_5m, candles_4h = await asyncio.gather(
                intraday_task,
                self._fetch(symbol, cfg.long_term_interval, cfg.long_term_limit, cfg.ema_trend_period),
            )
            long_term = self._long_term_block(candles_4h)
            self.long_term_cache.set(symbol, long_term)
        else:
            logger.debug(f"Using cached long-term indicators for {symbol}")
            candles_5m = await intraday_task

        intraday = self._intraday_block(candles_5m)
        return IndicatorSet(
            symbol=symbol,
            timestamp=time.time(),
            intraday=intraday,
            long_term=long_term,
            signals=self._signals(candles_5m, intraday),
        )

    def _long_term_block(self, candles: List[Candle]) -> LongTermIndicators:
        cfg = self.config
        ti = self.indicators
        closes = [c.close for c in candles]
        ema20 = float(ti.ema(closes, cfg.ema_fast_period)[-1])
        ema50 = float(ti.ema(closes, cfg.ema_slow_period)[-1])
        ema200 = float(ti.ema(closes, cfg.ema_trend_period)[-1])

        if ema20 > ema50 > ema200:
            trend = 'bullish'
        elif ema20 < ema50 < ema200:
            trend = 'bearish'
        else:
            trend = 'neutral'

        return LongTermIndicators(
            ema20=ema20,
            ema50=ema50,
            ema200=ema200,
            atr=ti.atr(candles, cfg.atr_period),
            macd=ti.macd(closes, cfg.macd_fast, cfg.macd_slow, cfg.macd_signal),
            rsi14=float(ti.rsi(closes, cfg.rsi_period)[-1]),
            bollinger_bands=ti.bollinger_bands(closes, cfg.bollinger_period, cfg.bollinger_std),
            donchian=ti.donchian_channel(candles, cfg.donchian_period),
            trend=trend,
        )

    def _intraday_block(self, candles: List[Candle]) -> IntradayIndicators:
        cfg = self.config
        ti = self.indicators
        closes = [c.close for c in candles]
        return IntradayIndicators(
            ema20=ti.ema(closes, cfg.ema_fast_period)[-5:].tolist(),
            ema50=float(ti.ema(closes, cfg.ema_slow_period)[-1]),
            macd=ti.macd(closes, cfg.macd_fast, cfg.macd_slow, cfg.macd_signal),
            rsi7=ti.rsi(closes, cfg.rsi_short_period)[-5:].tolist(),
            rsi14=ti.rsi(closes, cfg.rsi_period)[-5:].tolist(),
            atr=ti.atr(candles, cfg.atr_period),
            current_price=closes[-1],
        )

    def _signals(self, candles: List[Candle], intraday: IntradayIndicators) -> IndicatorSignals:
        closes = [c.close for c in candles]
        ema_fast = self.indicators.ema(closes, self.config.ema_fast_period)
        ema_slow = self.indicators.ema(closes, self.config.ema_slow_period)

        signals = IndicatorSignals()
        last_rsi = intraday.rsi14[-1]
        signals.rsi_signal = 'overbought' if last_rsi > 70 else 'oversold' if last_rsi < 30 else 'neutral'
        signals.macd_signal = 'bullish' if intraday.macd.histogram > 0 else 'bearish'

        if ema_slow.size >= 2:
            prev_fast, prev_slow = ema_fast[-2], ema_slow[-2]
            if prev_fast <= prev_slow and ema_fast[-1] > ema_slow[-1]:
                signals.ema_crossover = 'golden'
            elif prev_fast >= prev_slow and ema_fast[-1] < ema_slow[-1]:
                signals.ema_crossover = 'death'
        return signals

    def clear_cache(self, symbol: Optional[str] = None):
        if symbol:
            self.cache.invalidate(normalize_symbol(symbol))
        else:
            self.cache.clear()
            self.long_term_cache.clear()

    def sweep(self) -> int:
        return self.cache.sweep() + self.long_term_cache.sweep()
