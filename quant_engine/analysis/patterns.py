"""
Pattern Recognition
===================
Detects chart structure on aligned OHLCV arrays:

- Linear-regression trend with R-squared strength
- Pivot support/resistance levels, clustered within 0.5%
- Volume profile (accumulation / distribution) and anomalies
- Tags: double bottom/top, level tests, consolidation, volume divergence
"""

import math
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple
import logging

import numpy as np

from ..data.data_manager import PriceArrays
from .statistics import mean

logger = logging.getLogger(__name__)


@dataclass
class TrendInfo:
    direction: str = 'sideways'  # 'up', 'down', 'sideways'
    strength: float = 0.0  # R-squared x 100
    duration: int = 0


@dataclass
class VolumeProfile:
    profile: str = 'neutral'  # 'accumulation', 'distribution', 'neutral'
    anomaly: bool = False
    relative: float = 1.0


@dataclass
class PatternFindings:
    """Pattern analysis of one asset."""
    nearest_support: float
    nearest_resistance: float
    support_strength: float
    resistance_strength: float
    trend_direction: str
    trend_strength: float
    trend_duration: int
    volume_profile: str
    volume_anomaly: bool
    relative_volume: float
    patterns: List[str] = field(default_factory=list)


class PatternRecognizer:
    """
    Detects chart patterns and volume anomalies.

    Every method expects arrays that were filtered together, so index i of
    highs, lows, closes and volumes refers to the same candle.
    """

    LEVEL_CLUSTER_PCT = 0.005
    TOUCH_TOLERANCE_PCT = 0.005

    def analyze(self, arrays: PriceArrays) -> PatternFindings:
        """Run every detector over the window."""
        closes, highs, lows = arrays.closes, arrays.highs, arrays.lows
        price = float(closes[-1])

        supports, resistances = self.find_support_resistance(highs, lows)
        support, resistance = self.nearest_levels(price, supports, resistances)
        support_touches = self._count_touches(lows, support)
        resistance_touches = self._count_touches(highs, resistance)

        trend = self.detect_trend(closes)
        volume = self.analyze_volume(arrays.opens, closes, arrays.volumes)

        return PatternFindings(
            nearest_support=support,
            nearest_resistance=resistance,
            support_strength=min(100, support_touches * 25),
            resistance_strength=min(100, resistance_touches * 25),
            trend_direction=trend.direction,
            trend_strength=trend.strength,
            trend_duration=trend.duration,
            volume_profile=volume.profile,
            volume_anomaly=volume.anomaly,
            relative_volume=volume.relative,
            patterns=self.detect_patterns(arrays, price),
        )

    def detect_trend(self, prices: Sequence[float]) -> TrendInfo:
        """OLS trend of price against bar index."""
        arr = np.asarray(prices, dtype=float)
        arr = arr[np.isfinite(arr) & (arr > 0)]
        if arr.size < 10:
            return TrendInfo()

        x = np.arange(arr.size, dtype=float)
        slope, intercept = np.polyfit(x, arr, 1)
        avg_price = arr.mean()
        if not math.isfinite(slope) or avg_price == 0:
            return TrendInfo()

        normalized_slope = slope / avg_price * 100

        ss_total = float(((arr - avg_price) ** 2).sum())
        ss_residual = float(((arr - (intercept + slope * x)) ** 2).sum())
        r_squared = 1 - ss_residual / ss_total if ss_total > 0 else 0.0
        strength = min(100.0, max(0.0, r_squared * 100)) if math.isfinite(r_squared) else 0.0

        if normalized_slope > 0.1:
            direction = 'up'
        elif normalized_slope < -0.1:
            direction = 'down'
        else:
            direction = 'sideways'

        # Consecutive trailing moves in the trend direction
        duration = 0
        for i in range(arr.size - 2, -1, -1):
            if direction == 'up' and arr[i] < arr[i + 1]:
                duration += 1
            elif direction == 'down' and arr[i] > arr[i + 1]:
                duration += 1
            else:
                break

        return TrendInfo(direction=direction, strength=strength, duration=duration)

    def find_support_resistance(self, highs: Sequence[float],
                                lows: Sequence[float]) -> Tuple[List[float], List[float]]:
        """Strict pivot lows/highs against two bars on each side, clustered."""
        highs = np.asarray(highs, dtype=float)
        lows = np.asarray(lows, dtype=float)
        supports, resistances = [], []
        if lows.size < 5:
            return supports, resistances

        for i in range(2, lows.size - 2):
            neighbours = [i - 2, i - 1, i + 1, i + 2]
            if all(lows[i] < lows[j] for j in neighbours):
                supports.append(float(lows[i]))
            if all(highs[i] > highs[j] for j in neighbours):
                resistances.append(float(highs[i]))

        return self._cluster_levels(supports), self._cluster_levels(resistances)

    def _cluster_levels(self, levels: List[float]) -> List[float]:
        if not levels:
            return []
        ordered = sorted(levels)
        clustered = []
        cluster = [ordered[0]]
        for prev, level in zip(ordered, ordered[1:]):
            if prev > 0 and (level - prev) / prev < self.LEVEL_CLUSTER_PCT:
                cluster.append(level)
            else:
                clustered.append(mean(cluster))
                cluster = [level]
        clustered.append(mean(cluster))
        return [c for c in clustered if c > 0]

    @staticmethod
    def nearest_levels(price: float, supports: List[float],
                       resistances: List[float]) -> Tuple[float, float]:
        below = [s for s in supports if math.isfinite(s) and s < price]
        above = [r for r in resistances if math.isfinite(r) and r > price]
        support = max(below) if below else price * 0.95
        resistance = min(above) if above else price * 1.05
        return support, resistance

    def _count_touches(self, values: np.ndarray, level: float) -> int:
        if level <= 0:
            return 0
        return int(np.count_nonzero(np.abs(values - level) / level < self.TOUCH_TOLERANCE_PCT))

    def analyze_volume(self, opens: Sequence[float], closes: Sequence[float],
                       volumes: Sequence[float]) -> VolumeProfile:
        """Recent volume against the earlier window, plus an accumulation score."""
        volumes = np.asarray(volumes, dtype=float)
        positive = volumes[volumes > 0]
        if volumes.size < 20 or positive.size < 20:
            return VolumeProfile()

        avg_volume = mean(positive[:-5])
        recent_volume = mean(positive[-5:])
        relative = recent_volume / avg_volume if avg_volume > 0 else 1.0
        if not math.isfinite(relative):
            relative = 1.0

        # Up on heavy volume or down on light volume counts as accumulation
        score = 0
        opens = np.asarray(opens, dtype=float)
        closes = np.asarray(closes, dtype=float)
        for o, c, v in zip(opens[-10:], closes[-10:], volumes[-10:]):
            if o <= 0 or c <= 0 or v <= 0:
                continue
            change = c - o
            if change > 0 and v > avg_volume:
                score += 1
            if change < 0 and v < avg_volume:
                score += 1
            if change < 0 and v > avg_volume:
                score -= 1
            if change > 0 and v < avg_volume:
                score -= 1

        if score > 2:
            profile = 'accumulation'
        elif score < -2:
            profile = 'distribution'
        else:
            profile = 'neutral'

        return VolumeProfile(profile=profile, anomaly=relative > 2, relative=relative)

    def detect_patterns(self, arrays: PriceArrays, current_price: float) -> List[str]:
        """Pattern tags for the window; empty with fewer than 20 candles."""
        patterns: List[str] = []
        if len(arrays) < 20 or not math.isfinite(current_price) or current_price <= 0:
            return patterns

        closes, highs, lows, volumes = arrays.closes, arrays.highs, arrays.lows, arrays.volumes

        if self._is_double_extreme(lows[-30:], bottom=True):
            patterns.append('double_bottom')
        if self._is_double_extreme(highs[-30:], bottom=False):
            patterns.append('double_top')

        # Level tests against structure of the last 50 candles
        supports, resistances = self.find_support_resistance(highs[-50:], lows[-50:])
        above = sorted(r for r in resistances if r > current_price)
        below = sorted((s for s in supports if s < current_price), reverse=True)
        if above and current_price > above[0] * 0.995:
            patterns.append('resistance_test')
        if below and current_price < below[0] * 1.005:
            patterns.append('support_test')

        recent_range = highs[-10:].max() - lows[-10:].min()
        older_range = highs[-30:-10].max() - lows[-30:-10].min()
        if older_range > 0 and recent_range / older_range < 0.5:
            patterns.append('consolidation')

        recent_close, older_close = closes[-1], closes[-10]
        if older_close > 0:
            price_change = (recent_close - older_close) / older_close
            older_volume = volumes[-20:-10].sum()
            volume_change = volumes[-10:].sum() / older_volume if older_volume > 0 else 1.0
            if price_change > 0.02 and volume_change < 0.8:
                patterns.append('bearish_divergence')
            if price_change < -0.02 and volume_change < 0.8:
                patterns.append('bullish_divergence')

        return patterns

    @staticmethod
    def _is_double_extreme(values: np.ndarray, bottom: bool) -> bool:
        """Two touches within 1% of the window extreme, 6-24 bars apart."""
        if values.size < 5:
            return False
        if bottom:
            extreme = values.min()
            hits = np.flatnonzero(values < extreme * 1.01)
        else:
            extreme = values.max()
            hits = np.flatnonzero(values > extreme * 0.99)
        if extreme <= 0 or hits.size < 2:
            return False
        gap = hits[-1] - hits[0]
        return 5 < gap < 25
