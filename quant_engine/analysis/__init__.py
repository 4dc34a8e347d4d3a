"""
Analysis Module
===============
"""
from .statistics import (
    QuantSignal,
    StatisticalProfile,
    mean,
    std_dev,
    z_score,
    percentile_rank,
    annualized_volatility,
    rolling_volatility,
    mean_reversion_signal,
    compute_statistics,
)
from .patterns import PatternRecognizer, PatternFindings, TrendInfo, VolumeProfile
from .probability import ProbabilityMetrics, OptimalLevels, win_rates, optimal_levels, entry_score
from .analyzer import (
    AssetAnalyzer,
    AssetAnalysis,
    CrossAssetAnalysis,
    analyze_cross_asset,
    correlation,
    regime_input,
    risk_level,
)

__all__ = [
    'QuantSignal',
    'StatisticalProfile',
    'mean',
    'std_dev',
    'z_score',
    'percentile_rank',
    'annualized_volatility',
    'rolling_volatility',
    'mean_reversion_signal',
    'compute_statistics',
    'PatternRecognizer',
    'PatternFindings',
    'TrendInfo',
    'VolumeProfile',
    'ProbabilityMetrics',
    'OptimalLevels',
    'win_rates',
    'optimal_levels',
    'entry_score',
    'AssetAnalyzer',
    'AssetAnalysis',
    'CrossAssetAnalysis',
    'analyze_cross_asset',
    'correlation',
    'regime_input',
    'risk_level',
]
