"""
Text Formatting
===============
Human-readable market summary and the compact block fed to the trading
model's prompt.
"""

import math
from typing import Dict, List, Optional

from .analysis.analyzer import AssetAnalysis, CrossAssetAnalysis
from .data.data_manager import base_asset, display_symbol
from .funding.funding_tracker import FundingAnalysis
from .regime.regime_detector import MarketRegime

EMPTY_SUMMARY = '=== QUANT ANALYSIS SUMMARY ===\n\nNo data available.'
EMPTY_PROMPT = '=== QUANT ANALYSIS ===\nNo quant data available.'

DIFFICULTY_MARKERS = {
    'easy': '✓',
    'extreme': '⚠️',
    'hard': '!',
}


def fixed(value: float, decimals: int) -> str:
    """Fixed-point text; non-finite values render as '0'."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return '0'
    if not math.isfinite(value):
        return '0'
    return f"{value:.{decimals}f}"


def generate_market_summary(assets: Dict[str, AssetAnalysis], cross_asset: Optional[CrossAssetAnalysis],
                            funding: Dict[str, FundingAnalysis] = None,
                            regimes: Dict[str, MarketRegime] = None) -> str:
    """Multi-section summary of every analysed asset."""
    if not isinstance(assets, dict) or cross_asset is None:
        return EMPTY_SUMMARY

    lines: List[str] = [
        '=== QUANT ANALYSIS SUMMARY ===',
        '',
        f"Market Regime: {(cross_asset.market_regime or 'neutral').upper()}",
        f"BTC Dominance: {fixed(cross_asset.btc_dominance, 0)}%",
        f"Leading Asset: {cross_asset.sector_rotation or 'None'}",
        '',
        '--- Asset Signals ---',
    ]

    for symbol, analysis in assets.items():
        signal, stats = analysis.primary_signal, analysis.statistics
        lines.append(
            f"{display_symbol(symbol)}: {signal.direction.upper()} "
            f"(strength: {fixed(signal.strength, 0)}, conf: {fixed(signal.confidence, 0)}%)"
            f" | z-score: {fixed(stats.z_score, 2)} | vol-rank: {fixed(stats.volatility_rank, 0)}%"
            f" | entry: {analysis.probability.entry_quality} | risk: {analysis.risk_level}"
        )
        if analysis.patterns.patterns:
            lines.append(f"  Patterns: {', '.join(analysis.patterns.patterns)}")
        if analysis.secondary_signals:
            lines.append(f"  Secondary: {'; '.join(s.reason for s in analysis.secondary_signals)}")

    lines.extend(['', '--- Optimal Levels ---'])
    for symbol, analysis in assets.items():
        prob, pat = analysis.probability, analysis.patterns
        lines.append(
            f"{display_symbol(symbol)}: Support {fixed(pat.nearest_support, 2)}"
            f" | Resistance {fixed(pat.nearest_resistance, 2)}"
            f" | SL: {fixed(prob.optimal_stop_percent, 1)}% | TP: {fixed(prob.optimal_target_percent, 1)}%"
        )

    lines.extend(['', '--- Win Rate Estimates ---'])
    for symbol, analysis in assets.items():
        prob = analysis.probability
        lines.append(
            f"{display_symbol(symbol)}: Long {fixed(prob.long_win_rate, 0)}% | Short {fixed(prob.short_win_rate, 0)}%"
        )

    if funding:
        lines.extend(['', '--- Funding Rate Analysis ---'])
        for symbol, f in funding.items():
            persistence = f" [PERSISTENT {f.persistence_count}p]" if f.is_persistent else ''
            lines.append(
                f"{display_symbol(symbol)}: {fixed(f.current_rate * 100, 4)}% ({fixed(f.percentile, 0)}th pctl)"
                f" | {f.extreme_direction}{persistence}"
                f" | Signal: {f.signal.direction.upper()} (str: {fixed(f.signal.strength, 0)})"
            )
            if f.is_persistent and f.signal.direction != 'neutral':
                lines.append(f"  → Contrarian {f.signal.direction.upper()}: {f.signal.reason}")
                lines.append(f"  → Expected carry: {fixed(f.signal.carry_expected_pct, 2)}% per cycle")

    if regimes:
        lines.extend(['', '--- Regime Analysis ---'])
        for symbol, regime in regimes.items():
            leverage = regime.recommended_leverage
            lines.append(
                f"{display_symbol(symbol)}: {regime.overall_regime.upper()} | Difficulty: {regime.trading_difficulty}"
                f" | Trend: {regime.trend_regime} (ADX={fixed(regime.adx_value, 0)})"
                f" | Vol: {regime.volatility_regime} (ATR×{fixed(regime.atr_ratio, 2)})"
            )
            lines.append(
                f"  Strategy: {regime.recommended_strategy[:80]}"
                f" | Leverage: {leverage.min}-{leverage.max}x"
            )
            if regime.transition_warning:
                lines.append(f"  ⚠️ {regime.transition_warning}")

    return '\n'.join(lines)


def correlation_to_btc(symbol: str, cross_asset: CrossAssetAnalysis) -> float:
    """Correlation of symbol to BTC from the cross-asset matrix (0 if unknown)."""
    row = cross_asset.correlation_matrix.get(symbol)
    if row is None:
        row = next((r for s, r in cross_asset.correlation_matrix.items()
                    if base_asset(s) == base_asset(symbol)), None)
    if not row:
        return 0.0
    return next((c for s, c in row.items() if base_asset(s) == 'btc'), 0.0)


def format_quant_for_prompt(context) -> str:
    """
    Compact per-asset block for the trading prompt.

    Signal strength is discounted by the absolute correlation to BTC.
    """
    cross_asset = getattr(context, 'cross_asset', None)
    assets = getattr(context, 'assets', None)
    if cross_asset is None or not isinstance(assets, dict):
        return EMPTY_PROMPT

    funding = getattr(context, 'funding_analysis', None) or {}
    regimes = getattr(context, 'regime_analysis', None) or {}

    lines: List[str] = [
        '=== QUANT ANALYSIS ===',
        f"Regime: {cross_asset.market_regime or 'neutral'} | BTC Dominance: {fixed(cross_asset.btc_dominance, 0)}%",
        '',
    ]

    for symbol, analysis in assets.items():
        if analysis is None:
            continue
        signal, prob = analysis.primary_signal, analysis.probability

        f = funding.get(symbol)
        funding_text = f" funding:{fixed(f.percentile, 0)}pctl{'*' if f.is_persistent else ''}" if f else ''

        penalty = max(0.0, min(1.0, abs(correlation_to_btc(symbol, cross_asset))))
        adjusted = max(0.0, signal.strength * (1 - penalty))

        lines.append(
            f"{display_symbol(symbol)}: {signal.direction}({fixed(adjusted, 0)}) "
            f"z={fixed(analysis.statistics.z_score, 1)} "
            f"entry={prob.entry_quality} risk={analysis.risk_level or 'medium'} "
            f"win:L{fixed(prob.long_win_rate, 0)}%/S{fixed(prob.short_win_rate, 0)}%{funding_text}"
        )

    persistent = [
        f"{display_symbol(symbol)}: {f.signal.direction.upper()} ({f.signal.reason[:60]})"
        for symbol, f in funding.items()
        if f.is_persistent and f.signal.direction != 'neutral'
    ]
    if persistent:
        lines.extend(['', 'FUNDING SIGNALS (persistent):'])
        lines.extend(persistent)

    if regimes:
        lines.extend(['', 'REGIME ANALYSIS:'])
        for symbol, regime in regimes.items():
            marker = DIFFICULTY_MARKERS.get(regime.trading_difficulty, '')
            leverage = regime.recommended_leverage
            lines.append(
                f"{display_symbol(symbol)}: {regime.overall_regime}{marker} ADX={fixed(regime.adx_value, 0)} "
                f"ATR×{fixed(regime.atr_ratio, 1)} Lev:{leverage.min}-{leverage.max}x"
            )
            if regime.transition_warning:
                lines.append(f"  ⚠️ {regime.transition_warning[:70]}")

    return '\n'.join(lines)
