"""
Probability Metrics
===================
Historical win rates at similar z-scores, ATR-based stop/target levels and
the entry quality score.
"""

import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd

from ..config import AnalyzerConfig
from ..exceptions import InputValidationError
from ..features.feature_engine import TechnicalIndicators
from .statistics import mean, std_dev, z_score


@dataclass
class OptimalLevels:
    stop_percent: float = 2.0
    target_percent: float = 4.0
    risk_reward: float = 2.0


@dataclass
class ProbabilityMetrics:
    """Win rates, levels and entry quality for one asset."""
    long_win_rate: float
    short_win_rate: float
    expected_rr: float
    optimal_stop_percent: float
    optimal_target_percent: float
    entry_quality: str  # 'excellent', 'good', 'fair', 'poor'
    entry_score: float


def win_rates(closes: Sequence[float], current_z: float,
              config: AnalyzerConfig = None) -> Tuple[float, float]:
    """
    Backtest long/short outcomes at bars whose local z-score resembles the
    current one.

    For each bar i the z-score is taken against the previous lookback closes.
    Bars within the z tolerance are scored by the close horizon bars later:
    a long wins above entry x (1 + threshold), a short below entry x (1 - threshold).

    Returns:
        (long_win_rate, short_win_rate) in percent, 50/50 when undecidable
    """
    cfg = config or AnalyzerConfig()
    arr = np.asarray(closes, dtype=float)
    arr = arr[np.isfinite(arr) & (arr > 0)]
    if arr.size < cfg.min_win_rate_candles or not math.isfinite(current_z):
        return 50.0, 50.0

    lookback = cfg.win_rate_lookback
    threshold = cfg.win_rate_threshold_pct / 100
    long_wins = short_wins = total = 0

    for i in range(lookback, arr.size - 10):
        window = arr[i - lookback:i]
        sigma = std_dev(window)
        if sigma == 0:
            continue
        historical_z = z_score(arr[i], mean(window), sigma)
        if abs(historical_z - current_z) > cfg.win_rate_z_tolerance:
            continue

        entry, future = arr[i], arr[i + cfg.win_rate_horizon]
        total += 1
        if future > entry * (1 + threshold):
            long_wins += 1
        if future < entry * (1 - threshold):
            short_wins += 1

    if total == 0:
        return 50.0, 50.0
    return long_wins / total * 100, short_wins / total * 100


def optimal_levels(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float],
                   period: int = 14) -> OptimalLevels:
    """Stop at 1.5x ATR% (clamped 0.5-5%), target at twice the stop."""
    if len(closes) < period + 1:
        return OptimalLevels()

    frame = pd.DataFrame({'high': highs, 'low': lows, 'close': closes})
    try:
        atr = TechnicalIndicators.atr(frame, period)
    except InputValidationError:
        return OptimalLevels()

    price = float(closes[-1])
    if price <= 0:
        return OptimalLevels()
    atr_percent = atr / price * 100
    if not math.isfinite(atr_percent):
        return OptimalLevels()

    stop = max(0.5, min(5.0, atr_percent * 1.5))
    return OptimalLevels(stop_percent=stop, target_percent=stop * 2, risk_reward=2.0)


def entry_score(z: float, trend_strength: float, volume_profile: str,
                patterns: List[str]) -> Tuple[str, float]:
    """Score entry quality 0-100 from z-score, trend, volume and patterns."""
    score = 50.0
    z = z if math.isfinite(z) else 0.0
    if abs(z) > 2:
        score += 15
    elif abs(z) > 1.5:
        score += 10
    elif abs(z) > 1:
        score += 5

    strength = max(0.0, min(100.0, trend_strength)) if math.isfinite(trend_strength) else 0.0
    score += strength / 100 * 15

    if volume_profile == 'accumulation':
        score += 10
    elif volume_profile == 'distribution':
        score -= 5

    tags = set(patterns or [])
    if tags & {'double_bottom', 'double_top'}:
        score += 10
    if 'consolidation' in tags:
        score += 5
    if tags & {'bullish_divergence', 'bearish_divergence'}:
        score += 8
    if tags & {'resistance_test', 'support_test'}:
        score -= 5

    score = max(0.0, min(100.0, score))

    if score >= 75:
        quality = 'excellent'
    elif score >= 60:
        quality = 'good'
    elif score >= 40:
        quality = 'fair'
    else:
        quality = 'poor'
    return quality, score
