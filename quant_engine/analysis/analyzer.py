"""
Asset Analyzer
==============
Per-asset quantitative analysis and the cross-asset pass built on top of it.

Pipeline for one symbol:
    candles -> clean/align -> statistics -> patterns -> probability
            -> primary / secondary signals -> risk score
"""

import math
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence
import logging

import numpy as np

from ..config import AnalyzerConfig
from ..data.data_manager import base_asset, clean_candles, display_symbol, is_fresh, to_arrays
from ..exceptions import UpstreamDataError
from ..features.feature_engine import TechnicalIndicators
from ..regime.regime_detector import RegimeInput
from .patterns import PatternFindings, PatternRecognizer
from .probability import ProbabilityMetrics, entry_score, optimal_levels, win_rates
from .statistics import QuantSignal, StatisticalProfile, compute_statistics, mean, std_dev

logger = logging.getLogger(__name__)

# Minimum cleaned candles for a full analysis
MIN_VALID_CANDLES = 50
MIN_REGIME_CANDLES = 20


@dataclass
class AssetAnalysis:
    """Complete quantitative analysis of one asset."""
    symbol: str
    timestamp: float
    current_price: float
    statistics: StatisticalProfile
    patterns: PatternFindings
    probability: ProbabilityMetrics
    primary_signal: QuantSignal
    secondary_signals: List[QuantSignal] = field(default_factory=list)
    risk_level: str = 'medium'  # 'low', 'medium', 'high', 'extreme'
    risk_score: float = 50.0

    # Aligned tails of the analysed window, reused for correlation and regimes
    closes: List[float] = field(default_factory=list)
    highs: List[float] = field(default_factory=list)
    lows: List[float] = field(default_factory=list)
    volumes: List[float] = field(default_factory=list)


@dataclass
class CrossAssetAnalysis:
    btc_dominance: float = 50.0
    correlation_matrix: Dict[str, Dict[str, float]] = field(default_factory=dict)
    market_regime: str = 'neutral'  # 'risk_on', 'risk_off', 'neutral'
    sector_rotation: str = 'None'


class AssetAnalyzer:
    """Runs the statistical, pattern and probability analysis for one asset."""

    def __init__(self, config: AnalyzerConfig = None):
        self.config = config or AnalyzerConfig()
        self.patterns = PatternRecognizer()

    def analyze(self, symbol: str, candles: Sequence, now: Optional[float] = None) -> AssetAnalysis:
        """
        Analyze one asset from timestamp-ascending candles.

        Args:
            symbol: Exchange symbol
            candles: Raw candles (Candle objects, mappings or OHLCV rows)
            now: Epoch seconds used for the freshness check

        Returns:
            AssetAnalysis

        Raises:
            UpstreamDataError: Too few candles or stale data
        """
        cfg = self.config
        raw = list(candles or [])
        if len(raw) < cfg.min_candles:
            logger.warning(f"Insufficient candle data for {symbol}: got {len(raw)}, need {cfg.min_candles}")
            raise UpstreamDataError(
                f"Insufficient candle data for {symbol}: got {len(raw)}, need {cfg.min_candles}",
                symbol=symbol,
            )

        cleaned = clean_candles(raw)
        if len(cleaned) < MIN_VALID_CANDLES:
            logger.warning(f"Insufficient valid candles for {symbol}: {len(cleaned)} of {len(raw)} usable")
            raise UpstreamDataError(
                f"Insufficient valid candles for {symbol}: {len(cleaned)} of {len(raw)} usable",
                symbol=symbol,
            )
        if not is_fresh(cleaned, cfg.max_candle_age_seconds, now):
            logger.warning(f"Stale candle data for {symbol}")
            raise UpstreamDataError(f"Stale candle data for {symbol}", symbol=symbol)

        arrays = to_arrays(cleaned)
        closes = arrays.closes
        current_price = float(closes[-1])

        statistics = compute_statistics(closes, cfg)
        z = statistics.z_score
        patterns = self.patterns.analyze(arrays)

        long_wr, short_wr = win_rates(closes, z, cfg)
        levels = optimal_levels(arrays.highs, arrays.lows, closes)
        quality, score = entry_score(z, patterns.trend_strength, patterns.volume_profile, patterns.patterns)

        probability = ProbabilityMetrics(
            long_win_rate=long_wr,
            short_win_rate=short_wr,
            expected_rr=levels.risk_reward,
            optimal_stop_percent=levels.stop_percent,
            optimal_target_percent=levels.target_percent,
            entry_quality=quality,
            entry_score=score,
        )

        risk_score = self._risk_score(statistics, patterns)
        window = cfg.output_window
        return AssetAnalysis(
            symbol=symbol,
            timestamp=time.time(),
            current_price=current_price,
            statistics=statistics,
            patterns=patterns,
            probability=probability,
            primary_signal=self._primary_signal(z, patterns, probability),
            secondary_signals=self._secondary_signals(patterns),
            risk_level=risk_level(risk_score),
            risk_score=risk_score,
            closes=closes[-window:].tolist(),
            highs=arrays.highs[-window:].tolist(),
            lows=arrays.lows[-window:].tolist(),
            volumes=arrays.volumes[-window:].tolist(),
        )

    def _primary_signal(self, z: float, patterns: PatternFindings,
                        probability: ProbabilityMetrics) -> QuantSignal:
        cfg = self.config
        trend, profile = patterns.trend_direction, patterns.volume_profile
        confidence = min(90.0, 50 + probability.entry_score / 2)

        if z < -cfg.primary_signal_z and trend != 'down' and profile != 'distribution':
            strength = min(100.0, abs(z) * 20 + (probability.long_win_rate - 50))
            return QuantSignal(
                direction='long',
                strength=strength if math.isfinite(strength) else 50.0,
                confidence=confidence,
                reason=f"Oversold (z={z:.1f}) with {profile} volume",
            )
        if z > cfg.primary_signal_z and trend != 'up' and profile != 'accumulation':
            strength = min(100.0, abs(z) * 20 + (probability.short_win_rate - 50))
            return QuantSignal(
                direction='short',
                strength=strength if math.isfinite(strength) else 50.0,
                confidence=confidence,
                reason=f"Overbought (z={z:.1f}) with {profile} volume",
            )
        if patterns.trend_strength > cfg.strong_trend_strength:
            ts = patterns.trend_strength
            return QuantSignal(
                direction={'up': 'long', 'down': 'short'}.get(trend, 'neutral'),
                strength=ts,
                confidence=min(80.0, 40 + ts / 2),
                reason=f"Strong {trend} trend (strength: {ts:.0f})",
            )
        return QuantSignal(direction='neutral', strength=0, confidence=60,
                           reason='No clear edge - wait for better setup')

    @staticmethod
    def _secondary_signals(patterns: PatternFindings) -> List[QuantSignal]:
        signals = []
        if 'double_bottom' in patterns.patterns:
            signals.append(QuantSignal('long', 70, 65, 'Double bottom pattern detected'))
        if 'double_top' in patterns.patterns:
            signals.append(QuantSignal('short', 70, 65, 'Double top pattern detected'))
        if patterns.volume_anomaly:
            profile = patterns.volume_profile
            direction = {'accumulation': 'long', 'distribution': 'short'}.get(profile, 'neutral')
            signals.append(QuantSignal(
                direction, 60, 55,
                f"Volume anomaly ({patterns.relative_volume:.1f}x average) - {profile}",
            ))
        return signals

    @staticmethod
    def _risk_score(statistics: StatisticalProfile, patterns: PatternFindings) -> float:
        score = 50
        if statistics.is_volatility_expanding:
            score += 15
        if statistics.volatility_rank > 80:
            score += 20
        if abs(statistics.z_score) > 2.5:
            score += 10
        if 'resistance_test' in patterns.patterns or 'support_test' in patterns.patterns:
            score += 10
        return float(min(100, score))


def risk_level(score: float) -> str:
    if score >= 80:
        return 'extreme'
    if score >= 60:
        return 'high'
    if score >= 40:
        return 'medium'
    return 'low'


def regime_input(symbol: str, closes: Sequence[float], highs: Sequence[float],
                 lows: Sequence[float], volumes: Sequence[float]) -> Optional[RegimeInput]:
    """
    Build the regime detector's indicator snapshot from aligned price arrays.

    Returns None when fewer than 20 closes, highs or lows are available.
    """
    if min(len(closes), len(highs), len(lows)) < MIN_REGIME_CANDLES:
        return None

    ti = TechnicalIndicators
    closes = [float(c) for c in closes]
    ema9 = float(ti.ema(closes, 9)[-1])
    ema20 = float(ti.ema(closes, 20)[-1])
    ema50 = float(ti.ema(closes, 50)[-1]) if len(closes) >= 50 else ema20

    atr_values = ti.atr_history(highs, lows, closes, 14)
    atr14 = float(atr_values[-1]) if atr_values.size else 0.0
    directional = ti.adx(highs, lows, closes, 14)

    # Bollinger(20, 2) on sample std; squeeze detection keys off the width
    recent = closes[-20:]
    middle = mean(recent)
    spread = std_dev(recent, middle) * 2
    if middle != 0:
        bb_upper, bb_middle, bb_lower = middle + spread, middle, middle - spread
        bb_width = (bb_upper - bb_lower) / middle
    else:
        bb_upper = bb_middle = bb_lower = 0.0
        bb_width = 0.02

    volumes = [float(v) for v in volumes]
    avg_volume20 = mean(volumes[-20:]) if volumes else 0.0
    current_volume = volumes[-1] if volumes and volumes[-1] else avg_volume20

    return RegimeInput(
        symbol=symbol,
        current_price=closes[-1],
        ema9=ema9,
        ema20=ema20,
        ema50=ema50,
        atr14=atr14,
        atr_history=atr_values.tolist(),
        adx=directional.adx,
        plus_di=directional.plus_di,
        minus_di=directional.minus_di,
        bb_upper=bb_upper,
        bb_middle=bb_middle,
        bb_lower=bb_lower,
        bb_width=bb_width,
        current_volume=current_volume,
        avg_volume20=avg_volume20,
        price_history=closes[-50:],
    )


def correlation(series1: Sequence[float], series2: Sequence[float]) -> float:
    """Pearson correlation of the overlapping tails (0 when undefined)."""
    n = min(len(series1), len(series2))
    if n < 2:
        return 0.0
    a = np.asarray(series1[-n:], dtype=float)
    b = np.asarray(series2[-n:], dtype=float)
    valid = np.isfinite(a) & np.isfinite(b)
    a, b = a[valid], b[valid]
    if a.size < 2:
        return 0.0

    sd_a, sd_b = std_dev(a), std_dev(b)
    if sd_a == 0 or sd_b == 0:
        return 0.0
    covariance = float(((a - a.mean()) * (b - b.mean())).sum()) / (a.size - 1)
    result = covariance / (sd_a * sd_b)
    if not math.isfinite(result):
        return 0.0
    return max(-1.0, min(1.0, result))


def analyze_cross_asset(assets: Dict[str, AssetAnalysis],
                        closes_by_symbol: Dict[str, Sequence[float]]) -> CrossAssetAnalysis:
    """Correlation matrix, BTC dominance, risk regime and the leading asset."""
    symbols = list(closes_by_symbol)
    matrix = {
        s1: {s2: 1.0 if s1 == s2 else correlation(closes_by_symbol[s1], closes_by_symbol[s2])
             for s2 in symbols}
        for s1 in symbols
    }

    btc_closes = next((closes for sym, closes in closes_by_symbol.items()
                       if base_asset(sym) == 'btc' and len(closes) > 0), None)
    influences = []
    if btc_closes is not None:
        influences = [
            abs(correlation(btc_closes, closes))
            for sym, closes in closes_by_symbol.items()
            if base_asset(sym) != 'btc' and len(closes) > 0
        ]
    btc_dominance = mean(influences) * 100 if influences else 50.0

    bullish = sum(1 for a in assets.values() if a.primary_signal.direction == 'long')
    bearish = sum(1 for a in assets.values() if a.primary_signal.direction == 'short')
    if bullish > bearish * 1.5:
        market_regime = 'risk_on'
    elif bearish > bullish * 1.5:
        market_regime = 'risk_off'
    else:
        market_regime = 'neutral'

    leader, max_strength = '', 0.0
    for sym, analysis in assets.items():
        signal = analysis.primary_signal
        if signal.direction != 'neutral' and signal.strength > max_strength:
            max_strength = signal.strength
            leader = display_symbol(sym)

    return CrossAssetAnalysis(
        btc_dominance=btc_dominance if math.isfinite(btc_dominance) else 50.0,
        correlation_matrix=matrix,
        market_regime=market_regime,
        sector_rotation=leader or 'None',
    )
