"""
Quant Engine Orchestrator
=========================
Main pipeline orchestrating all components:
    DATA → ASSET ANALYSIS → CROSS-ASSET → FUNDING → REGIME → SUMMARY

- Per-symbol analyses fan out concurrently; one failing symbol never
  fails the cycle
- Identical concurrent requests share one computation (single-flight)
- Bounded per-symbol state is pruned by a background sweeper thread
"""

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence
import logging

from .analysis.analyzer import (
    AssetAnalysis,
    AssetAnalyzer,
    CrossAssetAnalysis,
    analyze_cross_asset,
    regime_input,
)
from .config import EngineConfig
from .data.cache import CoalescingCache, PeriodicSweeper
from .data.data_manager import DataSource, MockDataSource, normalize_symbol, parse_funding_rate
from .exceptions import ConfigurationError, InputValidationError, QuantEngineError, UpstreamDataError
from .features.feature_engine import FeatureEngine, IndicatorSet
from .formatting import EMPTY_SUMMARY, format_quant_for_prompt, generate_market_summary
from .funding.funding_tracker import FundingAnalysis, FundingTracker
from .regime.regime_detector import MarketRegime, RegimeDetector
from .risk.monte_carlo import MonteCarloAnalysis, MonteCarloSimulator, TradeValidation

logger = logging.getLogger(__name__)


@dataclass
class QuantContext:
    """Result of one analysis cycle over a symbol set."""
    timestamp: str
    assets: Dict[str, AssetAnalysis] = field(default_factory=dict)
    cross_asset: CrossAssetAnalysis = field(default_factory=CrossAssetAnalysis)
    funding_analysis: Dict[str, FundingAnalysis] = field(default_factory=dict)
    regime_analysis: Dict[str, MarketRegime] = field(default_factory=dict)
    market_summary: str = EMPTY_SUMMARY

    @classmethod
    def empty(cls) -> 'QuantContext':
        return cls(timestamp=datetime.now(timezone.utc).isoformat())


class QuantEngine:
    """
    Main quant engine orchestrator.

    Coordinates the analysis pipeline:
    1. DATA: Fetch 1h candles per symbol (cached per symbol)
    2. ANALYSIS: Statistics, patterns, probability and signals
    3. CROSS-ASSET: Correlations, BTC dominance, risk regime
    4. FUNDING: Percentile and persistence of funding rates
    5. REGIME: Volatility / trend / liquidity classification
    6. SUMMARY: Text for humans and for the trading prompt
    """

    def __init__(self, data_source: DataSource, config: EngineConfig = None):
        self.config = (config or EngineConfig()).validate()
        self.data_source = data_source

        cache_cfg = self.config.cache
        self.context_cache = CoalescingCache('quant_context', cache_cfg.context_ttl_seconds,
                                             cache_cfg.max_entries)
        self.analysis_cache = CoalescingCache('asset_analysis', cache_cfg.analysis_ttl_seconds,
                                              cache_cfg.max_entries)

        self.feature_engine = FeatureEngine(data_source, config=self.config.indicators, cache_config=cache_cfg)
        self.analyzer = AssetAnalyzer(self.config.analyzer)
        self.regime_detector = RegimeDetector(self.config.regime)
        self.funding_tracker = FundingTracker(self.config.funding)
        self.simulator = MonteCarloSimulator(self.config.monte_carlo)

        self.sweeper = PeriodicSweeper()
        self.sweeper.register('quant_context', cache_cfg.sweep_interval_seconds, self.context_cache.sweep)
        self.sweeper.register('asset_analysis', cache_cfg.sweep_interval_seconds, self.analysis_cache.sweep)
        self.sweeper.register('indicators', cache_cfg.sweep_interval_seconds, self.feature_engine.sweep)
        self.sweeper.register('funding_history', cache_cfg.sweep_interval_seconds, self.funding_tracker.sweep)
        self.sweeper.register('regime_history', self.config.regime.sweep_interval_seconds,
                              self.regime_detector.sweep)
        if self.config.enable_background_sweeps:
            self.sweeper.start()

        logger.info(f"QuantEngine initialized for {len(self.config.symbols)} configured symbols")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False

    def shutdown(self):
        """Stop the background sweeper and drop all cached state."""
        logger.info("Shutting down quant engine...")
        self.sweeper.stop()
        self.context_cache.clear()
        self.analysis_cache.clear()
        self.feature_engine.clear_cache()
        self.regime_detector.clear_history()
        self.funding_tracker.clear()
        logger.info("Quant engine shutdown complete")

    # ------------------------------------------------------------------
    # Analysis cycle
    # ------------------------------------------------------------------

    async def get_quant_context(self, symbols: Optional[Sequence[str]] = None) -> QuantContext:
        """
        Full quant context for a symbol set (default: configured symbols).

        Concurrent calls for the same set share one computation.
        """
        if symbols is None:
            symbols = self.config.symbols
        unique = list(dict.fromkeys(
            normalize_symbol(s) for s in symbols if isinstance(s, str) and s.strip()
        ))
        if not unique:
            return QuantContext.empty()

        key = ','.join(sorted(unique))
        return await self.context_cache.get_or_compute(key, lambda: self._build_context(unique))

    async def _build_context(self, symbols: List[str]) -> QuantContext:
        results = await asyncio.gather(
            *(self.get_asset_analysis(s) for s in symbols), return_exceptions=True
        )
        assets: Dict[str, AssetAnalysis] = {}
        for symbol, result in zip(symbols, results):
            if isinstance(result, BaseException):
                if isinstance(result, ConfigurationError) or not isinstance(result, Exception):
                    raise result
                logger.error(f"Failed to analyze {symbol}: {result}")
                continue
            assets[symbol] = result

        cross_asset = analyze_cross_asset(assets, {s: a.closes for s, a in assets.items()})
        funding = await self._analyze_funding(symbols)
        regimes = self._detect_regimes(assets)

        context = QuantContext(
            timestamp=datetime.now(timezone.utc).isoformat(),
            assets=assets,
            cross_asset=cross_asset,
            funding_analysis=funding,
            regime_analysis=regimes,
            market_summary=generate_market_summary(assets, cross_asset, funding, regimes),
        )
        logger.info(f"Quant analysis complete: {len(assets)} assets analyzed")
        return context

    async def get_asset_analysis(self, symbol: str) -> AssetAnalysis:
        """Cached analysis of one symbol."""
        key = normalize_symbol(symbol)
        if not key:
            raise InputValidationError(f"Invalid symbol: {symbol!r}")
        return await self.analysis_cache.get_or_compute(key, lambda: self._analyze_symbol(key))

    async def _analyze_symbol(self, symbol: str) -> AssetAnalysis:
        cfg = self.config.analyzer
        try:
            candles = await self.data_source.get_candles(symbol, cfg.candle_interval, cfg.candle_limit)
        except UpstreamDataError:
            raise
        except Exception as e:
            raise UpstreamDataError(f"Failed to fetch candles for {symbol}: {e}", symbol=symbol) from e
        return self.analyzer.analyze(symbol, candles)

    async def _fetch_funding(self, symbol: str) -> Optional[float]:
        try:
            raw = await self.data_source.get_funding_rate(symbol)
            return parse_funding_rate(raw, symbol)
        except Exception as e:
            logger.warning(f"Failed to fetch funding rate for {symbol}: {e}")
            return None

    async def _analyze_funding(self, symbols: List[str]) -> Dict[str, FundingAnalysis]:
        rates = await asyncio.gather(*(self._fetch_funding(s) for s in symbols))
        return {
            symbol: self.funding_tracker.analyze(symbol, rate)
            for symbol, rate in zip(symbols, rates)
            if rate is not None
        }

    def _detect_regimes(self, assets: Dict[str, AssetAnalysis]) -> Dict[str, MarketRegime]:
        regimes = {}
        for symbol, analysis in assets.items():
            try:
                data = regime_input(symbol, analysis.closes, analysis.highs, analysis.lows, analysis.volumes)
            except QuantEngineError as e:
                logger.debug(f"Failed to detect regime for {symbol}: {e}")
                continue
            if data is None:
                logger.debug(f"Skipping regime detection for {symbol}: insufficient candle data")
                continue
            regimes[symbol] = self.regime_detector.detect(data)
        return regimes

    # ------------------------------------------------------------------
    # Indicators
    # ------------------------------------------------------------------

    async def get_indicators(self, symbol: str) -> IndicatorSet:
        return await self.feature_engine.get_indicators(symbol)

    async def get_indicators_for_symbols(self, symbols: Sequence[str]) -> Dict[str, IndicatorSet]:
        return await self.feature_engine.get_indicators_for_symbols(symbols)

    # ------------------------------------------------------------------
    # Monte Carlo
    # ------------------------------------------------------------------

    def run_monte_carlo(self, volatility: float, stop_loss_percent: float, take_profit_percent: float,
                        drift: float = 0.0, simulations: int = None,
                        time_horizon: int = None) -> MonteCarloAnalysis:
        """Simulate long and short trades with the given hourly volatility (%)."""
        return self.simulator.analyze(volatility, stop_loss_percent, take_profit_percent,
                                      drift, simulations, time_horizon)

    def validate_trade(self, direction: str, volatility: float, stop_loss_percent: float,
                       take_profit_percent: float, drift: float = 0.0) -> TradeValidation:
        return self.simulator.validate_trade(direction, volatility, stop_loss_percent,
                                             take_profit_percent, drift)

    async def analyze_monte_carlo_for(self, symbol: str) -> MonteCarloAnalysis:
        """Monte Carlo run parameterized from the symbol's latest analysis."""
        analysis = await self.get_asset_analysis(symbol)
        hourly_volatility = analysis.statistics.volatility_24h / math.sqrt(self.config.analyzer.periods_per_year)
        probability = analysis.probability
        return self.run_monte_carlo(hourly_volatility, probability.optimal_stop_percent,
                                    probability.optimal_target_percent)

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    @staticmethod
    def format_for_prompt(context: QuantContext) -> str:
        return format_quant_for_prompt(context)

    def get_status(self) -> Dict:
        """Cache and history sizes for monitoring."""
        return {
            'context_cache': self.context_cache.stats(),
            'analysis_cache': self.analysis_cache.stats(),
            'indicator_cache': self.feature_engine.cache.stats(),
            'funding_symbols': len(self.funding_tracker),
            'regime_symbols': len(self.regime_detector.history),
            'sweeper_running': self.sweeper.running,
        }


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def main():
    """Run one analysis cycle against the mock data source and print it."""
    import argparse

    parser = argparse.ArgumentParser(description='Quantitative Analysis Engine')
    parser.add_argument('--symbols', nargs='*', help='Symbols to analyze (default: configured universe)')
    parser.add_argument('--config', type=str, help='Path to config file')
    parser.add_argument('--seed', type=int, default=42, help='Mock data seed')
    parser.add_argument('--prompt', action='store_true', help='Print the compact prompt block instead')
    parser.add_argument('--monte-carlo', type=str, metavar='SYMBOL', help='Also run Monte Carlo for SYMBOL')

    args = parser.parse_args()

    config = EngineConfig.load(args.config) if args.config else EngineConfig()
    config.enable_background_sweeps = False
    configure_logging(config.log_level)

    async def run():
        with QuantEngine(MockDataSource(seed=args.seed), config) as engine:
            context = await engine.get_quant_context(args.symbols)
            print(engine.format_for_prompt(context) if args.prompt else context.market_summary)
            if args.monte_carlo:
                from .risk.monte_carlo import format_analysis
                analysis = await engine.analyze_monte_carlo_for(args.monte_carlo)
                print()
                print(format_analysis(analysis))

    asyncio.run(run())


if __name__ == "__main__":
    main()
