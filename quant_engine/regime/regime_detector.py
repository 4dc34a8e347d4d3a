"""
Market Regime Detection
=======================
Rule-based regime classification from ADX, Bollinger Bands and ATR.

Four overall regimes:
- TRENDING: ADX >= 25 with directional bias
- RANGING: no clear trend (default)
- VOLATILE: extreme ATR, or high ATR while volatility expands
- QUIET: low volatility with thin volume, or a Bollinger squeeze

A bounded per-symbol history of past classifications feeds the
transition-probability estimate.
"""

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional
import logging

import numpy as np

from ..config import RegimeConfig
from ..data.data_manager import normalize_symbol

logger = logging.getLogger(__name__)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass
class RegimeInput:
    """Indicator snapshot for one symbol."""
    symbol: str
    current_price: float

    # EMAs
    ema9: float
    ema20: float
    ema50: float

    # Volatility
    atr14: float
    atr_history: List[float]

    # Directional movement
    adx: float
    plus_di: float
    minus_di: float

    # Bollinger Bands
    bb_upper: float
    bb_middle: float
    bb_lower: float
    bb_width: float

    # Volume
    current_volume: float
    avg_volume20: float

    # Last 50 closes
    price_history: List[float]


@dataclass
class LeverageRange:
    min: int
    max: int


@dataclass
class MarketRegime:
    """Regime classification with strategy recommendation."""
    symbol: str
    timestamp: float

    # Volatility
    volatility_regime: str  # 'low', 'normal', 'high', 'extreme'
    volatility_percentile: float
    is_volatility_expanding: bool
    atr_ratio: float

    # Trend
    trend_regime: str  # 'strong_bull', 'weak_bull', 'ranging', 'weak_bear', 'strong_bear'
    trend_strength: float
    trend_duration: int
    adx_value: float

    # EMA structure
    ema_structure: str  # 'bullish_stack', 'bearish_stack', 'tangled'
    price_vs_ema20: str  # 'above', 'below', 'at'

    # Liquidity
    liquidity_regime: str  # 'high', 'normal', 'low'
    volume_vs_average: float

    # Combined assessment
    overall_regime: str  # 'trending', 'ranging', 'volatile', 'quiet'
    trading_difficulty: str  # 'easy', 'moderate', 'hard', 'extreme'
    recommended_strategy: str
    recommended_leverage: LeverageRange
    recommended_stop_multiplier: float

    # Transition
    regime_probability: float
    transition_probability: float
    transition_warning: Optional[str] = None


@dataclass
class VolatilityAnalysis:
    regime: str
    percentile: int
    is_expanding: bool
    atr_ratio: float


@dataclass
class TrendAnalysis:
    regime: str
    strength: int
    duration: int
    ema_structure: str
    price_vs_ema20: str


@dataclass
class RegimeHistoryEntry:
    timestamp: float
    overall_regime: str
    trend_regime: str


# (strategy, leverage min, leverage max, stop multiplier)
DIFFICULTY_STRATEGIES = {
    'extreme': ('HOLD recommended - unfavorable regime with extreme difficulty', 10, 10, 2.0),
    'hard': ('Reduced position size (0.5x) - challenging conditions', 10, 12, 1.5),
}

REGIME_STRATEGIES = {
    'trending': ('Trend following - buy dips in uptrend, sell rallies in downtrend', 15, 18, 1.2),
    'ranging': ('Mean reversion - fade extremes at support/resistance', 12, 15, 0.8),
    'volatile': ('Reduced size, wider stops, or sit out - high uncertainty', 10, 12, 1.5),
    'quiet': ('Wait for breakout or skip - low edge environment', 10, 12, 1.0),
}

DEFAULT_STRATEGY = ('Standard approach with normal sizing', 12, 15, 1.0)


class RegimeHistory:
    """
    Bounded per-symbol history of regime classifications.

    Thread-safe: the engine's background sweeper prunes it while analysis
    cycles append to it.
    """

    def __init__(self, max_entries: int = 20, max_symbols: int = 50):
        self.max_entries = max_entries
        self.max_symbols = max_symbols
        self._history: Dict[str, Deque[RegimeHistoryEntry]] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._history)

    def add(self, symbol: str, entry: RegimeHistoryEntry):
        key = normalize_symbol(symbol)
        if not key:
            return
        with self._lock:
            history = self._history.get(key)
            if history is None:
                if len(self._history) >= self.max_symbols:
                    self._evict_oldest(key)
                history = deque(maxlen=self.max_entries)
                self._history[key] = history
            history.append(entry)

    def _evict_oldest(self, incoming: str):
        oldest_symbol, oldest_time = None, math.inf
        for symbol, entries in self._history.items():
            if entries and entries[-1].timestamp < oldest_time:
                oldest_symbol, oldest_time = symbol, entries[-1].timestamp
        if oldest_symbol is not None:
            del self._history[oldest_symbol]
            logger.debug(f"Regime history: evicted {oldest_symbol} to make room for {incoming}")

    def entries(self, symbol: str) -> List[RegimeHistoryEntry]:
        with self._lock:
            return list(self._history.get(normalize_symbol(symbol), ()))

    def duration(self, symbol: str, overall_regime: str) -> int:
        """1 plus the number of trailing entries with the same overall regime."""
        count = 1
        for entry in reversed(self.entries(symbol)):
            if entry.overall_regime != overall_regime:
                break
            count += 1
        return count

    def sweep(self, max_age_seconds: float, now: Optional[float] = None) -> int:
        """Drop entries older than max_age_seconds and symbols left empty."""
        now = time.time() if now is None else now
        removed = 0
        with self._lock:
            for symbol in list(self._history):
                entries = self._history[symbol]
                fresh = [e for e in entries if now - e.timestamp < max_age_seconds]
                removed += len(entries) - len(fresh)
                if fresh:
                    self._history[symbol] = deque(fresh, maxlen=self.max_entries)
                else:
                    del self._history[symbol]
        if removed:
            logger.debug(f"Regime history cleanup: removed {removed} entries")
        return removed

    def clear(self):
        with self._lock:
            self._history.clear()


class RegimeDetector:
    """
    Classifies the market regime of a symbol.

    Invalid snapshots yield the default regime instead of raising, so one bad
    indicator never blocks the analysis cycle.
    """

    def __init__(self, config: RegimeConfig = None, history: RegimeHistory = None, clock=time.time):
        self.config = config or RegimeConfig()
        self.history = history if history is not None else RegimeHistory(
            self.config.history_max_entries, self.config.history_max_symbols)
        self._clock = clock

    def detect(self, data: RegimeInput, now: Optional[float] = None) -> MarketRegime:
        """Classify one snapshot and record it in the history."""
        timestamp = self._clock() if now is None else now
        if data is None or not self.validate_input(data):
            return self.default_regime(data.symbol if data is not None else '', timestamp)

        volatility = self._analyze_volatility(data)
        trend = self._analyze_trend(data)
        liquidity, volume_ratio = self._analyze_liquidity(data)

        overall = self._overall_regime(volatility, trend, liquidity, data)
        difficulty = self._trading_difficulty(overall, volatility, trend)
        strategy, lev_min, lev_max, stop_mult = self._strategy(overall, difficulty)
        regime_prob, transition_prob, warning = self._transition(data.symbol, overall, trend, volatility)

        regime = MarketRegime(
            symbol=data.symbol,
            timestamp=timestamp,
            volatility_regime=volatility.regime,
            volatility_percentile=volatility.percentile,
            is_volatility_expanding=volatility.is_expanding,
            atr_ratio=volatility.atr_ratio,
            trend_regime=trend.regime,
            trend_strength=trend.strength,
            trend_duration=trend.duration,
            adx_value=data.adx,
            ema_structure=trend.ema_structure,
            price_vs_ema20=trend.price_vs_ema20,
            liquidity_regime=liquidity,
            volume_vs_average=volume_ratio,
            overall_regime=overall,
            trading_difficulty=difficulty,
            recommended_strategy=strategy,
            recommended_leverage=LeverageRange(lev_min, lev_max),
            recommended_stop_multiplier=stop_mult,
            regime_probability=regime_prob,
            transition_probability=transition_prob,
            transition_warning=warning,
        )

        self.history.add(data.symbol, RegimeHistoryEntry(timestamp, overall, trend.regime))
        return regime

    @staticmethod
    def validate_input(data: RegimeInput) -> bool:
        def positive(v):
            return isinstance(v, (int, float)) and math.isfinite(v) and v > 0

        def non_negative(v):
            return isinstance(v, (int, float)) and math.isfinite(v) and v >= 0

        if not all(positive(v) for v in (data.current_price, data.ema9, data.ema20, data.ema50,
                                         data.atr14, data.bb_upper, data.bb_middle, data.bb_lower)):
            return False
        if not non_negative(data.adx) or data.adx > 100:
            return False
        if not all(non_negative(v) for v in (data.plus_di, data.minus_di, data.bb_width,
                                             data.current_volume, data.avg_volume20)):
            return False
        if not data.atr_history or not data.price_history:
            return False
        return True

    def _analyze_volatility(self, data: RegimeInput) -> VolatilityAnalysis:
        cfg = self.config
        history = np.asarray(data.atr_history, dtype=float)
        history = history[np.isfinite(history) & (history > 0)]

        percentile = 50.0
        if history.size >= 5:
            percentile = np.count_nonzero(history < data.atr14) / history.size * 100

        avg_atr = history.mean() if history.size else data.atr14
        atr_ratio = data.atr14 / avg_atr if avg_atr > 0 else 1.0
        if not math.isfinite(atr_ratio):
            atr_ratio = 1.0

        expanding = False
        if history.size >= 10:
            recent, older = history[-5:].mean(), history[-10:-5].mean()
            expanding = bool(older > 0 and recent > older * 1.2)

        if percentile >= cfg.extreme_vol_percentile or atr_ratio >= cfg.extreme_vol_ratio:
            regime = 'extreme'
        elif percentile >= cfg.high_vol_percentile or atr_ratio >= cfg.high_vol_ratio:
            regime = 'high'
        elif percentile <= cfg.low_vol_percentile or atr_ratio <= cfg.low_vol_ratio:
            regime = 'low'
        else:
            regime = 'normal'

        return VolatilityAnalysis(regime=regime, percentile=_round_half_up(percentile),
                                  is_expanding=expanding, atr_ratio=float(atr_ratio))

    def _analyze_trend(self, data: RegimeInput) -> TrendAnalysis:
        cfg = self.config
        bullish_stack = data.ema9 > data.ema20 > data.ema50
        bearish_stack = data.ema9 < data.ema20 < data.ema50
        if bullish_stack:
            ema_structure = 'bullish_stack'
        elif bearish_stack:
            ema_structure = 'bearish_stack'
        else:
            ema_structure = 'tangled'

        tolerance = data.ema20 * 0.002
        if data.current_price > data.ema20 + tolerance:
            price_vs_ema20 = 'above'
        elif data.current_price < data.ema20 - tolerance:
            price_vs_ema20 = 'below'
        else:
            price_vs_ema20 = 'at'

        adx = data.adx
        if adx >= cfg.trending_adx:
            if data.plus_di > data.minus_di:
                if adx >= cfg.strong_adx and bullish_stack:
                    regime, strength = 'strong_bull', min(100, adx + 20)
                else:
                    regime, strength = 'weak_bull', min(80, adx)
            else:
                if adx >= cfg.strong_adx and bearish_stack:
                    regime, strength = 'strong_bear', min(100, adx + 20)
                else:
                    regime, strength = 'weak_bear', min(80, adx)
        else:
            regime, strength = 'ranging', max(0, 50 - adx)

        duration = 0
        prices = data.price_history
        if len(prices) >= 3 and regime != 'ranging':
            bullish = 'bull' in regime
            for i in range(len(prices) - 2, -1, -1):
                change = prices[i + 1] - prices[i]
                if (bullish and change > 0) or (not bullish and change < 0):
                    duration += 1
                else:
                    break

        return TrendAnalysis(regime=regime, strength=_round_half_up(strength), duration=duration,
                             ema_structure=ema_structure, price_vs_ema20=price_vs_ema20)

    def _analyze_liquidity(self, data: RegimeInput):
        ratio = data.current_volume / data.avg_volume20 if data.avg_volume20 > 0 else 1.0
        if not math.isfinite(ratio):
            ratio = 1.0
        if ratio >= self.config.high_liquidity_ratio:
            return 'high', ratio
        if ratio <= self.config.low_liquidity_ratio:
            return 'low', ratio
        return 'normal', ratio

    def _overall_regime(self, volatility: VolatilityAnalysis, trend: TrendAnalysis,
                        liquidity: str, data: RegimeInput) -> str:
        # Priority: volatile > trending > quiet > ranging
        if volatility.regime == 'extreme' or (volatility.regime == 'high' and volatility.is_expanding):
            return 'volatile'
        if trend.regime != 'ranging' and trend.strength >= 50:
            return 'trending'
        if volatility.regime == 'low' and liquidity == 'low':
            return 'quiet'
        if data.bb_width < self.config.quiet_bb_width:
            return 'quiet'
        return 'ranging'

    @staticmethod
    def _trading_difficulty(overall: str, volatility: VolatilityAnalysis, trend: TrendAnalysis) -> str:
        if volatility.regime == 'extreme' or (volatility.regime == 'high' and trend.ema_structure == 'tangled'):
            return 'extreme'
        if volatility.regime == 'high' or (overall == 'ranging' and volatility.is_expanding):
            return 'hard'
        if overall == 'trending' and volatility.regime == 'normal' and trend.strength >= 60:
            return 'easy'
        return 'moderate'

    @staticmethod
    def _strategy(overall: str, difficulty: str):
        if difficulty in DIFFICULTY_STRATEGIES:
            return DIFFICULTY_STRATEGIES[difficulty]
        return REGIME_STRATEGIES.get(overall, DEFAULT_STRATEGY)

    def _transition(self, symbol: str, overall: str, trend: TrendAnalysis,
                    volatility: VolatilityAnalysis):
        cfg = self.config
        duration = self.history.duration(symbol, overall)

        regime_probability = cfg.base_regime_probability
        if overall == 'trending':
            if trend.strength >= 70 and trend.ema_structure != 'tangled':
                regime_probability = 85
            elif trend.strength < 50:
                regime_probability = 55
        elif overall == 'ranging':
            if trend.strength < 30 and volatility.regime == 'normal':
                regime_probability = 80
        elif overall == 'volatile':
            regime_probability = 60

        transition_probability = cfg.base_transition_probability
        if duration < 3:
            transition_probability += cfg.short_duration_bonus
        elif duration > 10:
            transition_probability += cfg.exhaustion_bonus
        if overall != 'volatile' and volatility.is_expanding:
            transition_probability += cfg.expansion_bonus
        if overall == 'trending' and trend.strength < 40:
            transition_probability += cfg.weakening_bonus

        regime_probability = min(95, max(30, regime_probability))
        transition_probability = min(80, max(10, transition_probability))

        warning = None
        if transition_probability >= 50:
            warning = (f"Regime transition likely ({transition_probability:g}%) - "
                       f"reduce position size or wait for confirmation")
        elif transition_probability >= 40 and volatility.is_expanding:
            warning = "Volatility expanding - potential regime shift, tighten risk management"

        return regime_probability, transition_probability, warning

    @staticmethod
    def default_regime(symbol: str, timestamp: float) -> MarketRegime:
        return MarketRegime(
            symbol=symbol,
            timestamp=timestamp,
            volatility_regime='normal',
            volatility_percentile=50,
            is_volatility_expanding=False,
            atr_ratio=1.0,
            trend_regime='ranging',
            trend_strength=30,
            trend_duration=0,
            adx_value=20,
            ema_structure='tangled',
            price_vs_ema20='at',
            liquidity_regime='normal',
            volume_vs_average=1.0,
            overall_regime='ranging',
            trading_difficulty='moderate',
            recommended_strategy='Insufficient data - use caution',
            recommended_leverage=LeverageRange(10, 12),
            recommended_stop_multiplier=1.0,
            regime_probability=50,
            transition_probability=30,
            transition_warning=None,
        )

    def sweep(self, now: Optional[float] = None) -> int:
        return self.history.sweep(self.config.history_max_age_seconds,
                                  self._clock() if now is None else now)

    def clear_history(self):
        self.history.clear()
        logger.info("Regime history cleared")


def format_regime(regime: MarketRegime) -> str:
    """Compact multi-line regime description."""
    lines = [
        f"REGIME: {regime.overall_regime.upper()} | Difficulty: {regime.trading_difficulty}",
        f"Trend: {regime.trend_regime} (ADX={regime.adx_value:.0f}, str={regime.trend_strength:g})",
        f"Volatility: {regime.volatility_regime} ({regime.volatility_percentile:g}th pctl, "
        f"ATR ratio={regime.atr_ratio:.2f})",
        f"EMA: {regime.ema_structure} | Price vs EMA20: {regime.price_vs_ema20}",
        f"Strategy: {regime.recommended_strategy}",
        f"Leverage: {regime.recommended_leverage.min}-{regime.recommended_leverage.max}x | "
        f"Stop mult: {regime.recommended_stop_multiplier:g}x",
    ]
    if regime.transition_warning:
        lines.append(f"⚠️ WARNING: {regime.transition_warning}")
    return '\n'.join(lines)
