"""
Quantitative Analysis Engine
============================

Statistical market analysis for a perpetual-futures trading bot:

FEATURES:
- Technical indicators (EMA, RSI, MACD, ATR, Bollinger, Donchian, ADX)
- Statistics, chart patterns and historical win rates per asset
- Cross-asset correlation and BTC dominance
- Market regime detection (trending, ranging, volatile, quiet)
- Funding-rate percentile and persistence tracking
- Fat-tailed Monte Carlo trade simulation with GARCH clustering
- Single-flight TTL caches with background sweeps

PIPELINE:
    ┌─────────┐
    │  DATA   │  ← 1h candles, funding rates (CACHED)
    └────┬────┘
         ↓
    ┌────────────────┐
    │ ASSET ANALYSIS │  ← statistics, patterns, win rates, signals
    └────┬───────────┘
         ↓
    ┌────────────────┐
    │ CROSS-ASSET    │  ← correlations, BTC dominance, risk regime
    └────┬───────────┘
         ↓
    ┌────────────────┐
    │ FUNDING        │  ← percentile, persistence, contrarian signal
    └────┬───────────┘
         ↓
    ┌────────────────┐
    │ REGIME         │  ← volatility, trend, liquidity, strategy
    └────┬───────────┘
         ↓
    ┌────────────────┐
    │ SUMMARY        │  ← text for humans and the trading prompt
    └────────────────┘

USAGE:
    # One cycle on mock data
    python -m quant_engine.orchestrator --symbols cmt_btcusdt cmt_ethusdt

    # Programmatic usage
    from quant_engine import QuantEngine, EngineConfig

    with QuantEngine(my_data_source, EngineConfig()) as engine:
        context = await engine.get_quant_context(['cmt_btcusdt', 'cmt_ethusdt'])
        print(engine.format_for_prompt(context))

MODULES:
    - data: Candle model, data-source interface, caches and sweeper
    - features: Technical indicators and cached indicator snapshots
    - analysis: Statistics, patterns, probability, asset and cross-asset analysis
    - regime: Market regime detection
    - funding: Funding-rate tracking
    - risk: Monte Carlo simulation
"""

from .config import (
    EngineConfig,
    CacheConfig,
    IndicatorConfig,
    AnalyzerConfig,
    RegimeConfig,
    FundingConfig,
    MonteCarloConfig,
    DEFAULT_CONFIG,
)
from .exceptions import (
    QuantEngineError,
    InputValidationError,
    ComputationError,
    UpstreamDataError,
    ConfigurationError,
)
from .data import Candle, DataSource, MockDataSource, CoalescingCache, PeriodicSweeper
from .features import FeatureEngine, TechnicalIndicators, IndicatorSet
from .analysis import AssetAnalyzer, AssetAnalysis, CrossAssetAnalysis, PatternRecognizer, QuantSignal
from .regime import RegimeDetector, RegimeInput, MarketRegime
from .funding import FundingTracker, FundingAnalysis
from .risk import MonteCarloSimulator, MonteCarloResult, MonteCarloAnalysis, TradeValidation
from .formatting import generate_market_summary, format_quant_for_prompt
from .orchestrator import QuantEngine, QuantContext, configure_logging, main

__version__ = "1.0.0"
__all__ = [
    # Main
    'QuantEngine',
    'QuantContext',
    'configure_logging',
    'main',

    # Config
    'EngineConfig',
    'CacheConfig',
    'IndicatorConfig',
    'AnalyzerConfig',
    'RegimeConfig',
    'FundingConfig',
    'MonteCarloConfig',
    'DEFAULT_CONFIG',

    # Errors
    'QuantEngineError',
    'InputValidationError',
    'ComputationError',
    'UpstreamDataError',
    'ConfigurationError',

    # Data
    'Candle',
    'DataSource',
    'MockDataSource',
    'CoalescingCache',
    'PeriodicSweeper',

    # Features
    'FeatureEngine',
    'TechnicalIndicators',
    'IndicatorSet',

    # Analysis
    'AssetAnalyzer',
    'AssetAnalysis',
    'CrossAssetAnalysis',
    'PatternRecognizer',
    'QuantSignal',

    # Regime
    'RegimeDetector',
    'RegimeInput',
    'MarketRegime',

    # Funding
    'FundingTracker',
    'FundingAnalysis',

    # Risk
    'MonteCarloSimulator',
    'MonteCarloResult',
    'MonteCarloAnalysis',
    'TradeValidation',

    # Formatting
    'generate_market_summary',
    'format_quant_for_prompt',
]
