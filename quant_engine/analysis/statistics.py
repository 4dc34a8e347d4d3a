"""
Statistical Analysis
====================
Descriptive statistics over price series:

1. Mean / sample standard deviation / z-score
2. Percentile rank
3. Annualized log-return volatility and its rolling history
4. Mean-reversion signal from the price z-score

All helpers ignore non-finite values and fall back to neutral numbers
(0 or 50) instead of returning NaN.
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from ..config import AnalyzerConfig


@dataclass
class QuantSignal:
    """Directional signal with strength and confidence on a 0-100 scale."""
    direction: str  # 'long', 'short', 'neutral'
    strength: float
    confidence: float
    reason: str


@dataclass
class StatisticalProfile:
    """Statistics of the analysis window."""
    mean: float
    std_dev: float
    z_score: float
    percentile: float
    volatility_24h: float
    volatility_rank: float
    is_volatility_expanding: bool
    mean_reversion_signal: QuantSignal
    distance_from_mean: float


def _finite(values: Sequence[float]) -> np.ndarray:
    if values is None:
        return np.array([])
    arr = np.asarray(values, dtype=float).ravel()
    return arr[np.isfinite(arr)]


def mean(values: Sequence[float]) -> float:
    """Mean of the finite values (0 if there are none)."""
    arr = _finite(values)
    if arr.size == 0:
        return 0.0
    result = float(arr.mean())
    return result if math.isfinite(result) else 0.0


def std_dev(values: Sequence[float], mu: Optional[float] = None) -> float:
    """Sample standard deviation (n - 1); 0 with fewer than 2 values."""
    arr = _finite(values)
    if arr.size < 2:
        return 0.0
    m = mu if mu is not None and math.isfinite(mu) else float(arr.mean())
    result = math.sqrt(float(((arr - m) ** 2).sum()) / (arr.size - 1))
    return result if math.isfinite(result) else 0.0


def z_score(value: float, mu: float, sigma: float) -> float:
    if not all(math.isfinite(v) for v in (value, mu, sigma)) or sigma == 0:
        return 0.0
    result = (value - mu) / sigma
    return result if math.isfinite(result) else 0.0


def percentile_rank(value: float, values: Sequence[float]) -> float:
    """Share of values strictly below value, as a percentage (50 if undefined)."""
    if value is None or not math.isfinite(value):
        return 50.0
    arr = _finite(values)
    if arr.size == 0:
        return 50.0
    return float(np.count_nonzero(arr < value)) / arr.size * 100


def log_returns(prices: Sequence[float]) -> np.ndarray:
    """Log returns over consecutive positive finite prices."""
    arr = np.asarray(prices, dtype=float)
    if arr.size < 2:
        return np.array([])
    prev, curr = arr[:-1], arr[1:]
    valid = np.isfinite(prev) & np.isfinite(curr) & (prev > 0) & (curr > 0)
    returns = np.log(curr[valid] / prev[valid])
    return returns[np.isfinite(returns)]


def annualized_volatility(prices: Sequence[float], periods_per_year: float = 365 * 24) -> float:
    """std(log returns) x sqrt(periods_per_year) x 100."""
    if prices is None or len(prices) < 2:
        return 0.0
    if not math.isfinite(periods_per_year) or periods_per_year <= 0:
        return 0.0
    returns = log_returns(prices)
    if returns.size == 0:
        return 0.0
    sigma = std_dev(returns)
    if sigma == 0:
        return 0.0
    result = sigma * math.sqrt(periods_per_year) * 100
    return result if math.isfinite(result) else 0.0


def rolling_volatility(closes: Sequence[float], window: int = 24,
                       periods_per_year: float = 365 * 24) -> List[float]:
    """Volatility of each trailing window closes[i - window:i], i = window..n-1."""
    closes = list(closes)
    return [
        annualized_volatility(closes[i - window:i], periods_per_year)
        for i in range(window, len(closes))
    ]


def mean_reversion_signal(z: float, threshold: float = 2.0) -> QuantSignal:
    """Fade prices more than threshold standard deviations from the mean."""
    if z < -threshold:
        return QuantSignal(
            direction='long',
            strength=min(100.0, abs(z) * 30),
            confidence=70,
            reason=f"Price {abs(z):.1f} std devs below mean - oversold",
        )
    if z > threshold:
        return QuantSignal(
            direction='short',
            strength=min(100.0, abs(z) * 30),
            confidence=70,
            reason=f"Price {z:.1f} std devs above mean - overbought",
        )
    return QuantSignal(direction='neutral', strength=0, confidence=50, reason='Price within normal range')


def compute_statistics(closes: Sequence[float], config=None) -> StatisticalProfile:
    """Build the statistical profile of a close series (last value = current price)."""
    cfg = config or AnalyzerConfig()

    closes = [float(c) for c in closes]
    current = closes[-1] if closes else 0.0
    mu = mean(closes)
    sigma = std_dev(closes, mu)
    z = z_score(current, mu, sigma)

    window = cfg.volatility_window
    volatility_24h = annualized_volatility(closes[-window:], cfg.periods_per_year)
    history = rolling_volatility(closes, window, cfg.periods_per_year)
    volatility_rank = percentile_rank(volatility_24h, history) if history else 50.0

    # Recent 5 rolling samples against the 5 before them
    expanding = False
    if len(history) >= 10:
        recent, older = mean(history[-5:]), mean(history[-10:-5])
        expanding = older > 0 and recent > older * cfg.expansion_ratio

    distance = (current - mu) / mu * 100 if mu != 0 else 0.0

    return StatisticalProfile(
        mean=mu,
        std_dev=sigma,
        z_score=z,
        percentile=percentile_rank(current, closes),
        volatility_24h=volatility_24h,
        volatility_rank=volatility_rank,
        is_volatility_expanding=expanding,
        mean_reversion_signal=mean_reversion_signal(z, cfg.mean_reversion_z),
        distance_from_mean=distance if math.isfinite(distance) else 0.0,
    )
