"""
Configuration Management
========================
Central configuration for the quantitative analysis engine.

Every component config validates itself; EngineConfig.validate() is called
once when the engine is constructed so bad values fail fast instead of
propagating NaN through the analysis.
"""

from dataclasses import dataclass, field, asdict, fields
from typing import List, Dict, Any
import json
import math
import os

from .exceptions import ConfigurationError


def _require_positive(owner: str, **values: float):
    for name, value in values.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"{owner}.{name} must be a number, got {value!r}")
        if not math.isfinite(value) or value <= 0:
            raise ConfigurationError(f"{owner}.{name} must be a positive finite number, got {value}")


def _require_int(owner: str, **values: int):
    for name, value in values.items():
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ConfigurationError(f"{owner}.{name} must be a positive integer, got {value!r}")


@dataclass
class CacheConfig:
    """Cache and background sweep configuration."""
    # TTLs (seconds)
    indicator_ttl_seconds: float = 60
    long_term_ttl_seconds: float = 15 * 60
    context_ttl_seconds: float = 5 * 60
    analysis_ttl_seconds: float = 5 * 60

    # Bounds
    max_entries: int = 100

    # Expired-entry sweep
    sweep_interval_seconds: float = 5 * 60

    def validate(self):
        _require_positive(
            'CacheConfig',
            indicator_ttl_seconds=self.indicator_ttl_seconds,
            long_term_ttl_seconds=self.long_term_ttl_seconds,
            context_ttl_seconds=self.context_ttl_seconds,
            analysis_ttl_seconds=self.analysis_ttl_seconds,
            sweep_interval_seconds=self.sweep_interval_seconds,
        )
        _require_int('CacheConfig', max_entries=self.max_entries)


@dataclass
class IndicatorConfig:
    """Technical indicator configuration."""
    ema_fast_period: int = 20
    ema_slow_period: int = 50
    ema_trend_period: int = 200
    rsi_short_period: int = 7
    rsi_period: int = 14
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    atr_period: int = 14
    bollinger_period: int = 20
    bollinger_std: float = 2.0
    donchian_period: int = 20

    # Candle windows
    intraday_interval: str = "5m"
    intraday_limit: int = 100
    long_term_interval: str = "4h"
    long_term_limit: int = 200

    def validate(self):
        _require_int(
            'IndicatorConfig',
            ema_fast_period=self.ema_fast_period,
            ema_slow_period=self.ema_slow_period,
            ema_trend_period=self.ema_trend_period,
            rsi_short_period=self.rsi_short_period,
            rsi_period=self.rsi_period,
            macd_fast=self.macd_fast,
            macd_slow=self.macd_slow,
            macd_signal=self.macd_signal,
            atr_period=self.atr_period,
            bollinger_period=self.bollinger_period,
            donchian_period=self.donchian_period,
            intraday_limit=self.intraday_limit,
            long_term_limit=self.long_term_limit,
        )
        _require_positive('IndicatorConfig', bollinger_std=self.bollinger_std)
        if self.macd_fast >= self.macd_slow:
            raise ConfigurationError(
                f"IndicatorConfig.macd_fast ({self.macd_fast}) must be less than macd_slow ({self.macd_slow})"
            )
        if self.long_term_limit < self.ema_trend_period:
            raise ConfigurationError(
                f"IndicatorConfig.long_term_limit ({self.long_term_limit}) must cover "
                f"ema_trend_period ({self.ema_trend_period})"
            )


@dataclass
class AnalyzerConfig:
    """Statistical and pattern analyzer configuration."""
    candle_interval: str = "1h"
    candle_limit: int = 200
    min_candles: int = 50
    max_candle_age_seconds: float = 2 * 60 * 60
    output_window: int = 100

    # Volatility
    periods_per_year: int = 365 * 24
    volatility_window: int = 24
    expansion_ratio: float = 1.2

    # Signals
    mean_reversion_z: float = 2.0
    primary_signal_z: float = 1.5
    strong_trend_strength: float = 60.0

    # Win-rate backtest
    win_rate_lookback: int = 20
    win_rate_horizon: int = 5
    win_rate_threshold_pct: float = 0.5
    win_rate_z_tolerance: float = 0.5
    min_win_rate_candles: int = 50

    def validate(self):
        _require_int(
            'AnalyzerConfig',
            candle_limit=self.candle_limit,
            min_candles=self.min_candles,
            output_window=self.output_window,
            periods_per_year=self.periods_per_year,
            volatility_window=self.volatility_window,
            win_rate_lookback=self.win_rate_lookback,
            win_rate_horizon=self.win_rate_horizon,
            min_win_rate_candles=self.min_win_rate_candles,
        )
        _require_positive(
            'AnalyzerConfig',
            max_candle_age_seconds=self.max_candle_age_seconds,
            expansion_ratio=self.expansion_ratio,
            mean_reversion_z=self.mean_reversion_z,
            primary_signal_z=self.primary_signal_z,
            strong_trend_strength=self.strong_trend_strength,
            win_rate_threshold_pct=self.win_rate_threshold_pct,
            win_rate_z_tolerance=self.win_rate_z_tolerance,
        )
        if self.candle_limit < self.min_candles:
            raise ConfigurationError(
                f"AnalyzerConfig.candle_limit ({self.candle_limit}) is below min_candles ({self.min_candles})"
            )
        # The backtest needs room for the lookback plus the 10-bar tail
        if self.win_rate_horizon >= 10:
            raise ConfigurationError(
                f"AnalyzerConfig.win_rate_horizon must be below 10 bars, got {self.win_rate_horizon}"
            )


@dataclass
class RegimeConfig:
    """Regime detector configuration."""
    # Volatility thresholds (ATR percentile / ATR ratio)
    extreme_vol_percentile: float = 90
    extreme_vol_ratio: float = 2.0
    high_vol_percentile: float = 70
    high_vol_ratio: float = 1.5
    low_vol_percentile: float = 20
    low_vol_ratio: float = 0.5

    # Trend thresholds (ADX)
    trending_adx: float = 25
    strong_adx: float = 40

    # Liquidity thresholds (volume / 20-period average)
    high_liquidity_ratio: float = 1.5
    low_liquidity_ratio: float = 0.5

    # Bollinger squeeze
    quiet_bb_width: float = 0.02

    # Transition heuristic weights
    base_regime_probability: float = 70
    base_transition_probability: float = 20
    short_duration_bonus: float = 20
    exhaustion_bonus: float = 15
    expansion_bonus: float = 15
    weakening_bonus: float = 20

    # History bounds
    history_max_entries: int = 20
    history_max_symbols: int = 50
    history_max_age_seconds: float = 24 * 60 * 60
    sweep_interval_seconds: float = 10 * 60

    def validate(self):
        _require_positive(
            'RegimeConfig',
            extreme_vol_percentile=self.extreme_vol_percentile,
            extreme_vol_ratio=self.extreme_vol_ratio,
            high_vol_percentile=self.high_vol_percentile,
            high_vol_ratio=self.high_vol_ratio,
            low_vol_percentile=self.low_vol_percentile,
            low_vol_ratio=self.low_vol_ratio,
            trending_adx=self.trending_adx,
            strong_adx=self.strong_adx,
            high_liquidity_ratio=self.high_liquidity_ratio,
            low_liquidity_ratio=self.low_liquidity_ratio,
            quiet_bb_width=self.quiet_bb_width,
            base_regime_probability=self.base_regime_probability,
            base_transition_probability=self.base_transition_probability,
            history_max_age_seconds=self.history_max_age_seconds,
            sweep_interval_seconds=self.sweep_interval_seconds,
        )
        _require_int(
            'RegimeConfig',
            history_max_entries=self.history_max_entries,
            history_max_symbols=self.history_max_symbols,
        )
        if not (self.low_vol_percentile < self.high_vol_percentile <= self.extreme_vol_percentile <= 100):
            raise ConfigurationError("RegimeConfig volatility percentiles must be ordered low < high <= extreme <= 100")
        if not (self.low_vol_ratio < self.high_vol_ratio <= self.extreme_vol_ratio):
            raise ConfigurationError("RegimeConfig volatility ratios must be ordered low < high <= extreme")
        if self.trending_adx > self.strong_adx:
            raise ConfigurationError("RegimeConfig.trending_adx must not exceed strong_adx")


@dataclass
class FundingConfig:
    """Funding-rate tracker configuration."""
    max_entries: int = 21  # 7 days x 3 funding periods/day
    max_age_seconds: float = 7 * 24 * 60 * 60
    max_symbols: int = 50
    dedupe_window_seconds: float = 4 * 60 * 60
    extreme_percentile: float = 95
    min_persistence: int = 2
    preliminary_extreme_rate: float = 0.0008

    def validate(self):
        _require_int(
            'FundingConfig',
            max_entries=self.max_entries,
            max_symbols=self.max_symbols,
            min_persistence=self.min_persistence,
        )
        _require_positive(
            'FundingConfig',
            max_age_seconds=self.max_age_seconds,
            dedupe_window_seconds=self.dedupe_window_seconds,
            extreme_percentile=self.extreme_percentile,
            preliminary_extreme_rate=self.preliminary_extreme_rate,
        )
        if not 50 < self.extreme_percentile < 100:
            raise ConfigurationError(
                f"FundingConfig.extreme_percentile must be in (50, 100), got {self.extreme_percentile}"
            )


@dataclass
class MonteCarloConfig:
    """Monte Carlo simulator configuration."""
    simulations: int = 500
    time_horizon: int = 24  # hourly steps
    degrees_of_freedom: int = 3
    garch_alpha: float = 0.1
    garch_beta: float = 0.85
    trading_cost_pct: float = 0.06  # per side
    min_sharpe: float = 1.2
    trades_per_year: int = 750
    validation_simulations: int = 200
    seed: Any = None

    def validate(self):
        _require_int(
            'MonteCarloConfig',
            simulations=self.simulations,
            time_horizon=self.time_horizon,
            degrees_of_freedom=self.degrees_of_freedom,
            trades_per_year=self.trades_per_year,
            validation_simulations=self.validation_simulations,
        )
        _require_positive(
            'MonteCarloConfig',
            garch_alpha=self.garch_alpha,
            garch_beta=self.garch_beta,
            min_sharpe=self.min_sharpe,
        )
        if self.garch_alpha + self.garch_beta >= 1:
            raise ConfigurationError(
                f"MonteCarloConfig: garch_alpha + garch_beta must be < 1, got {self.garch_alpha + self.garch_beta}"
            )
        if not math.isfinite(self.trading_cost_pct) or self.trading_cost_pct < 0:
            raise ConfigurationError(
                f"MonteCarloConfig.trading_cost_pct must be non-negative, got {self.trading_cost_pct}"
            )
        if self.seed is not None and (isinstance(self.seed, bool) or not isinstance(self.seed, int)):
            raise ConfigurationError(f"MonteCarloConfig.seed must be an int or None, got {self.seed!r}")


@dataclass
class EngineConfig:
    """Master engine configuration."""
    # Symbol universe
    symbols: List[str] = field(default_factory=lambda: [
        "cmt_btcusdt", "cmt_ethusdt", "cmt_solusdt", "cmt_dogeusdt",
        "cmt_xrpusdt", "cmt_adausdt", "cmt_bnbusdt", "cmt_ltcusdt",
    ])

    # Component configs
    cache: CacheConfig = field(default_factory=CacheConfig)
    indicators: IndicatorConfig = field(default_factory=IndicatorConfig)
    analyzer: AnalyzerConfig = field(default_factory=AnalyzerConfig)
    regime: RegimeConfig = field(default_factory=RegimeConfig)
    funding: FundingConfig = field(default_factory=FundingConfig)
    monte_carlo: MonteCarloConfig = field(default_factory=MonteCarloConfig)

    # Background sweeps
    enable_background_sweeps: bool = True

    # Logging
    log_level: str = "INFO"

    def validate(self) -> 'EngineConfig':
        """Validate every component; raises ConfigurationError."""
        if not isinstance(self.symbols, list) or not all(isinstance(s, str) and s.strip() for s in self.symbols):
            raise ConfigurationError("EngineConfig.symbols must be a list of non-empty strings")
        levels = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
        if not isinstance(self.log_level, str) or self.log_level.upper() not in levels:
            raise ConfigurationError(f"EngineConfig.log_level is not a logging level: {self.log_level!r}")
        for component in (self.cache, self.indicators, self.analyzer,
                          self.regime, self.funding, self.monte_carlo):
            component.validate()
        return self

    def save(self, filepath: str):
        """Save configuration to JSON file."""
        directory = os.path.dirname(filepath)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(filepath, 'w') as f:
            json.dump(self._to_dict(), f, indent=2)

    @classmethod
    def load(cls, filepath: str) -> 'EngineConfig':
        """Load configuration from JSON file."""
        with open(filepath, 'r') as f:
            data = json.load(f)
        return cls._from_dict(data)

    def _to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> 'EngineConfig':
        nested = {
            'cache': CacheConfig,
            'indicators': IndicatorConfig,
            'analyzer': AnalyzerConfig,
            'regime': RegimeConfig,
            'funding': FundingConfig,
            'monte_carlo': MonteCarloConfig,
        }
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config must be a JSON object, got {type(data).__name__}")
        unknown = set(data) - {f.name for f in fields(cls)}
        if unknown:
            raise ConfigurationError(f"Unknown config keys: {sorted(unknown)}")

        kwargs = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            if f.name in nested:
                component_cls = nested[f.name]
                if not isinstance(data[f.name], dict):
                    raise ConfigurationError(
                        f"{f.name} config must be an object, got {type(data[f.name]).__name__}"
                    )
                known = {cf.name for cf in fields(component_cls)}
                unknown = set(data[f.name]) - known
                if unknown:
                    raise ConfigurationError(f"Unknown {f.name} config keys: {sorted(unknown)}")
                kwargs[f.name] = component_cls(**data[f.name])
            else:
                kwargs[f.name] = data[f.name]
        return cls(**kwargs)


# Default configuration instance
DEFAULT_CONFIG = EngineConfig()
