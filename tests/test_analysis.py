"""
Statistical, pattern, probability and asset analysis tests.
"""

import time
from dataclasses import replace
from types import SimpleNamespace

import numpy as np
import pytest

from quant_engine.analysis import (
    AssetAnalyzer,
    PatternFindings,
    PatternRecognizer,
    ProbabilityMetrics,
    QuantSignal,
    analyze_cross_asset,
    annualized_volatility,
    compute_statistics,
    correlation,
    entry_score,
    mean,
    mean_reversion_signal,
    optimal_levels,
    percentile_rank,
    regime_input,
    risk_level,
    rolling_volatility,
    std_dev,
    win_rates,
    z_score,
)
from quant_engine.data import PriceArrays
from quant_engine.exceptions import UpstreamDataError

from conftest import make_candles, random_walk


def flat_arrays(n=30) -> PriceArrays:
    """A featureless window: highs 101, lows 99, closes 100, steady volume."""
    return PriceArrays(
        timestamps=np.arange(n, dtype=float),
        opens=np.full(n, 100.0),
        highs=np.full(n, 101.0),
        lows=np.full(n, 99.0),
        closes=np.full(n, 100.0),
        volumes=np.full(n, 1000.0),
    )


def findings(**overrides) -> PatternFindings:
    base = dict(
        nearest_support=95.0,
        nearest_resistance=105.0,
        support_strength=0,
        resistance_strength=0,
        trend_direction='sideways',
        trend_strength=10.0,
        trend_duration=0,
        volume_profile='neutral',
        volume_anomaly=False,
        relative_volume=1.0,
        patterns=[],
    )
    base.update(overrides)
    return PatternFindings(**base)


def probability(**overrides) -> ProbabilityMetrics:
    base = dict(
        long_win_rate=50.0,
        short_win_rate=50.0,
        expected_rr=2.0,
        optimal_stop_percent=2.0,
        optimal_target_percent=4.0,
        entry_quality='fair',
        entry_score=50.0,
    )
    base.update(overrides)
    return ProbabilityMetrics(**base)


class TestStatistics:

    def test_mean_ignores_non_finite(self):
        assert mean([1.0, float('nan'), 3.0, float('inf')]) == 2.0
        assert mean([]) == 0.0

    def test_sample_std_dev(self):
        assert std_dev([1, 2, 3, 4]) == pytest.approx((5 / 3) ** 0.5)
        assert std_dev([7]) == 0.0

    def test_z_score_zero_sigma(self):
        assert z_score(10, 5, 0) == 0.0
        assert z_score(10, 5, 2.5) == 2.0

    def test_percentile_rank(self):
        assert percentile_rank(3, [1, 2, 3, 4]) == 50.0
        assert percentile_rank(float('nan'), [1, 2]) == 50.0
        assert percentile_rank(1, []) == 50.0

    def test_flat_prices_have_no_volatility(self):
        assert annualized_volatility([100.0] * 30) == 0.0
        assert annualized_volatility([100.0]) == 0.0

    def test_rolling_volatility_windows(self):
        history = rolling_volatility(random_walk(30), window=24)
        assert len(history) == 6
        assert all(v > 0 for v in history)

    def test_mean_reversion_signal(self):
        oversold = mean_reversion_signal(-2.5)
        assert (oversold.direction, oversold.strength, oversold.confidence) == ('long', 75.0, 70)
        overbought = mean_reversion_signal(4.0)
        assert (overbought.direction, overbought.strength) == ('short', 100.0)
        assert mean_reversion_signal(1.0).direction == 'neutral'

    def test_compute_statistics_uptrend(self):
        profile = compute_statistics([float(i) for i in range(1, 101)])
        assert profile.z_score > 1.5
        assert profile.percentile == 99.0
        assert profile.distance_from_mean > 0
        assert 0 <= profile.volatility_rank <= 100


class TestPatternRecognizer:

    def test_linear_uptrend(self):
        trend = PatternRecognizer().detect_trend([float(i) for i in range(1, 51)])
        assert trend.direction == 'up'
        assert trend.strength == pytest.approx(100.0)
        assert trend.duration == 49

    def test_short_series_is_sideways(self):
        trend = PatternRecognizer().detect_trend([1.0, 2.0, 3.0])
        assert (trend.direction, trend.strength) == ('sideways', 0.0)

    def test_pivot_levels(self):
        lows = [5, 4, 3, 4, 5, 6, 5, 4, 5, 6]
        highs = [v + 1 for v in lows]
        supports, resistances = PatternRecognizer().find_support_resistance(highs, lows)
        assert supports == [3.0, 4.0]
        assert resistances == [7.0]

    def test_nearby_levels_cluster(self):
        clustered = PatternRecognizer()._cluster_levels([100.0, 100.2, 110.0])
        assert clustered == pytest.approx([100.1, 110.0])

    def test_nearest_level_defaults(self):
        support, resistance = PatternRecognizer.nearest_levels(100.0, [], [])
        assert support == pytest.approx(95.0)
        assert resistance == pytest.approx(105.0)

    def test_accumulation_with_volume_anomaly(self):
        opens = [100.0] * 30
        closes = [101.0] * 30
        volumes = [1000.0] * 25 + [3000.0] * 5
        profile = PatternRecognizer().analyze_volume(opens, closes, volumes)
        assert profile.profile == 'accumulation'
        assert profile.anomaly
        assert profile.relative == pytest.approx(3.0)

    def test_double_bottom(self):
        lows = np.full(30, 10.0)
        lows[[5, 15]] = 9.0
        assert PatternRecognizer._is_double_extreme(lows, bottom=True)
        assert not PatternRecognizer._is_double_extreme(lows, bottom=False)

    def test_short_window_has_no_patterns(self):
        assert PatternRecognizer().detect_patterns(flat_arrays(19), 100.0) == []

    def test_flat_window_has_no_patterns(self):
        assert PatternRecognizer().detect_patterns(flat_arrays(), 100.0) == []

    def test_double_top(self):
        arrays = flat_arrays()
        arrays.highs[[10, 20]] = 105.0
        assert 'double_top' in PatternRecognizer().detect_patterns(arrays, 100.0)

        arrays = flat_arrays()
        arrays.highs[[10, 12]] = 105.0
        assert 'double_top' not in PatternRecognizer().detect_patterns(arrays, 100.0)

    def test_consolidation(self):
        arrays = flat_arrays()
        arrays.highs[:20] = 110.0
        arrays.lows[:20] = 90.0
        assert 'consolidation' in PatternRecognizer().detect_patterns(arrays, 100.0)

        arrays.highs[:20] = 102.0
        arrays.lows[:20] = 98.0
        assert 'consolidation' not in PatternRecognizer().detect_patterns(arrays, 100.0)

    def test_bearish_divergence(self):
        arrays = flat_arrays()
        arrays.closes[-1] = 103.0
        arrays.volumes[-10:] = 500.0
        patterns = PatternRecognizer().detect_patterns(arrays, 103.0)
        assert 'bearish_divergence' in patterns
        assert 'bullish_divergence' not in patterns

    def test_rally_on_steady_volume_is_not_divergence(self):
        arrays = flat_arrays()
        arrays.closes[-1] = 103.0
        assert 'bearish_divergence' not in PatternRecognizer().detect_patterns(arrays, 103.0)

    def test_bullish_divergence(self):
        arrays = flat_arrays()
        arrays.closes[-1] = 97.0
        arrays.volumes[-10:] = 500.0
        patterns = PatternRecognizer().detect_patterns(arrays, 97.0)
        assert 'bullish_divergence' in patterns
        assert 'bearish_divergence' not in patterns

        arrays.closes[-1] = 99.0
        assert 'bullish_divergence' not in PatternRecognizer().detect_patterns(arrays, 99.0)

    def test_resistance_test(self):
        arrays = flat_arrays()
        arrays.highs[15] = 104.0
        assert 'resistance_test' in PatternRecognizer().detect_patterns(arrays, 103.8)
        assert 'resistance_test' not in PatternRecognizer().detect_patterns(arrays, 102.0)

    def test_support_test(self):
        arrays = flat_arrays()
        arrays.lows[15] = 96.0
        assert 'support_test' in PatternRecognizer().detect_patterns(arrays, 96.3)
        assert 'support_test' not in PatternRecognizer().detect_patterns(arrays, 98.0)


class TestProbability:

    def test_win_rates_need_history(self):
        assert win_rates(random_walk(40), 0.0) == (50.0, 50.0)

    def test_win_rates_in_range(self):
        long_wr, short_wr = win_rates(random_walk(200), 0.0)
        assert 0 <= long_wr <= 100
        assert 0 <= short_wr <= 100

    def test_optimal_levels_defaults(self):
        levels = optimal_levels([1.0] * 10, [1.0] * 10, [1.0] * 10)
        assert (levels.stop_percent, levels.target_percent, levels.risk_reward) == (2.0, 4.0, 2.0)

    def test_optimal_levels_from_atr(self):
        levels = optimal_levels([101.0] * 30, [99.0] * 30, [100.0] * 30)
        assert levels.stop_percent == pytest.approx(3.0)
        assert levels.target_percent == pytest.approx(6.0)

    def test_entry_score_excellent(self):
        assert entry_score(2.5, 100, 'accumulation', ['double_bottom']) == ('excellent', 100.0)

    def test_entry_score_penalties(self):
        assert entry_score(0.0, 0, 'distribution', ['support_test']) == ('fair', 40.0)


class TestAssetAnalyzer:

    def test_full_analysis(self):
        analysis = AssetAnalyzer().analyze('cmt_btcusdt', make_candles(random_walk(200)))
        assert analysis.symbol == 'cmt_btcusdt'
        assert len(analysis.closes) == len(analysis.highs) == len(analysis.volumes) == 100
        assert analysis.current_price == analysis.closes[-1]
        assert analysis.primary_signal.direction in ('long', 'short', 'neutral')
        assert analysis.primary_signal.confidence <= 90
        assert analysis.risk_level == risk_level(analysis.risk_score)
        assert analysis.probability.entry_quality in ('excellent', 'good', 'fair', 'poor')

    def test_too_few_candles(self):
        with pytest.raises(UpstreamDataError):
            AssetAnalyzer().analyze('cmt_btcusdt', make_candles(random_walk(30)))

    def test_too_few_valid_candles(self):
        candles = make_candles(random_walk(60))
        for c in candles[:20]:
            c.volume = 0.0
        with pytest.raises(UpstreamDataError):
            AssetAnalyzer().analyze('cmt_btcusdt', candles)

    def test_stale_data(self):
        candles = make_candles(random_walk(100))
        with pytest.raises(UpstreamDataError):
            AssetAnalyzer().analyze('cmt_btcusdt', candles, now=time.time() + 10 * 3600)

    def test_oversold_primary_signal(self):
        signal = AssetAnalyzer()._primary_signal(
            -2.0, findings(), probability(long_win_rate=60.0, entry_score=70.0))
        assert signal.direction == 'long'
        assert signal.strength == pytest.approx(50.0)
        assert signal.confidence == pytest.approx(85.0)
        assert signal.reason == 'Oversold (z=-2.0) with neutral volume'

    def test_oversold_blocked_by_downtrend(self):
        signal = AssetAnalyzer()._primary_signal(-2.0, findings(trend_direction='down'), probability())
        assert signal.direction == 'neutral'

    def test_strong_trend_signal(self):
        signal = AssetAnalyzer()._primary_signal(
            0.0, findings(trend_direction='up', trend_strength=75.0), probability())
        assert signal.direction == 'long'
        assert signal.confidence == pytest.approx(77.5)
        assert signal.reason == 'Strong up trend (strength: 75)'

    def test_no_edge(self):
        signal = AssetAnalyzer()._primary_signal(0.3, findings(), probability())
        assert (signal.direction, signal.strength, signal.confidence) == ('neutral', 0, 60)
        assert signal.reason == 'No clear edge - wait for better setup'

    def test_secondary_signals(self):
        signals = AssetAnalyzer._secondary_signals(findings(
            patterns=['double_bottom'], volume_anomaly=True,
            volume_profile='distribution', relative_volume=2.5,
        ))
        assert [s.direction for s in signals] == ['long', 'short']
        assert signals[1].reason == 'Volume anomaly (2.5x average) - distribution'

    def test_risk_score(self):
        stats = replace(compute_statistics(random_walk(100)),
                        is_volatility_expanding=True, volatility_rank=90.0, z_score=3.0)
        score = AssetAnalyzer._risk_score(stats, findings(patterns=['support_test']))
        assert score == 100.0
        assert risk_level(score) == 'extreme'

    def test_risk_levels(self):
        assert [risk_level(s) for s in (85, 65, 45, 20)] == ['extreme', 'high', 'medium', 'low']


class TestRegimeInput:

    def test_needs_twenty_bars(self):
        closes = random_walk(10)
        assert regime_input('cmt_btcusdt', closes, closes, closes, [1000.0] * 10) is None

    def test_snapshot(self):
        closes = random_walk(100)
        highs = [c * 1.01 for c in closes]
        lows = [c * 0.99 for c in closes]
        volumes = [1000.0] * 99 + [0.0]
        data = regime_input('cmt_btcusdt', closes, highs, lows, volumes)

        assert data.current_price == closes[-1]
        assert len(data.price_history) == 50
        assert data.bb_upper > data.bb_middle > data.bb_lower
        assert data.bb_width == pytest.approx((data.bb_upper - data.bb_lower) / data.bb_middle)
        assert data.atr14 == data.atr_history[-1]
        assert data.current_volume == data.avg_volume20

    def test_short_history_reuses_ema20(self):
        closes = random_walk(30)
        data = regime_input('x', closes, closes, closes, [1.0] * 30)
        assert data.ema50 == data.ema20


class TestCrossAsset:

    def test_correlation(self):
        a = [float(i) for i in range(1, 31)]
        assert correlation(a, [2 * v for v in a]) == pytest.approx(1.0)
        assert correlation(a, [-v for v in a]) == pytest.approx(-1.0)
        assert correlation(a, [5.0] * 30) == 0.0
        assert correlation([1.0], [2.0]) == 0.0

    def test_correlation_uses_overlapping_tail(self):
        a = [float(i) for i in range(1, 31)]
        assert correlation([100.0, -100.0] + a, a) == pytest.approx(1.0)

    def test_dominance_regime_and_leader(self):
        base = [float(i) for i in range(1, 31)]
        assets = {
            'cmt_btcusdt': SimpleNamespace(primary_signal=QuantSignal('long', 40, 60, '')),
            'cmt_ethusdt': SimpleNamespace(primary_signal=QuantSignal('long', 80, 70, '')),
            'cmt_solusdt': SimpleNamespace(primary_signal=QuantSignal('neutral', 95, 60, '')),
        }
        closes = {
            'cmt_btcusdt': base,
            'cmt_ethusdt': [2 * v for v in base],
            'cmt_solusdt': [-v for v in base],
        }
        result = analyze_cross_asset(assets, closes)

        assert result.btc_dominance == pytest.approx(100.0)
        assert result.market_regime == 'risk_on'
        assert result.sector_rotation == 'ETH'
        assert result.correlation_matrix['cmt_btcusdt']['cmt_btcusdt'] == 1.0
        assert result.correlation_matrix['cmt_btcusdt']['cmt_solusdt'] == pytest.approx(-1.0)

    def test_defaults_without_btc(self):
        assets = {'cmt_ethusdt': SimpleNamespace(primary_signal=QuantSignal('short', 50, 60, ''))}
        result = analyze_cross_asset(assets, {'cmt_ethusdt': random_walk(50)})
        assert result.btc_dominance == 50.0
        assert result.market_regime == 'risk_off'

    def test_all_neutral(self):
        assets = {'cmt_ethusdt': SimpleNamespace(primary_signal=QuantSignal('neutral', 0, 60, ''))}
        result = analyze_cross_asset(assets, {})
        assert result.market_regime == 'neutral'
        assert result.sector_rotation == 'None'
