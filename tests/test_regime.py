"""
Regime detector tests on hand-built indicator snapshots.
"""

from dataclasses import replace

import pytest

from quant_engine.regime import (
    RegimeDetector,
    RegimeHistory,
    RegimeHistoryEntry,
    RegimeInput,
    format_regime,
)

NOW = 1_700_000_000.0


def snapshot(**overrides) -> RegimeInput:
    """Strong bullish trend with normal volatility and volume."""
    base = RegimeInput(
        symbol='cmt_btcusdt',
        current_price=103.0,
        ema9=102.0,
        ema20=101.0,
        ema50=100.0,
        atr14=1.0,
        atr_history=[0.8, 1.2] * 10 + [1.0],
        adx=45.0,
        plus_di=30.0,
        minus_di=10.0,
        bb_upper=104.0,
        bb_middle=101.0,
        bb_lower=98.0,
        bb_width=0.04,
        current_volume=1000.0,
        avg_volume20=1000.0,
        price_history=[100.0, 101.0, 102.0, 103.0],
    )
    return replace(base, **overrides)


class TestRegimeClassification:

    def test_strong_bull_trend(self):
        regime = RegimeDetector().detect(snapshot(), now=NOW)

        assert regime.trend_regime == 'strong_bull'
        assert regime.trend_strength == 65
        assert regime.trend_duration == 3
        assert regime.ema_structure == 'bullish_stack'
        assert regime.price_vs_ema20 == 'above'
        assert regime.overall_regime == 'trending'
        assert regime.trading_difficulty == 'easy'
        assert (regime.recommended_leverage.min, regime.recommended_leverage.max) == (15, 18)
        assert regime.recommended_stop_multiplier == 1.2
        assert regime.timestamp == NOW

    def test_volatility_profile(self):
        regime = RegimeDetector().detect(snapshot(), now=NOW)
        assert regime.volatility_regime == 'normal'
        assert regime.volatility_percentile == 48
        assert regime.atr_ratio == pytest.approx(1.0)
        assert not regime.is_volatility_expanding
        assert regime.liquidity_regime == 'normal'

    def test_extreme_volatility_overrides_trend(self):
        regime = RegimeDetector().detect(snapshot(atr14=2.5), now=NOW)
        assert regime.volatility_regime == 'extreme'
        assert regime.overall_regime == 'volatile'
        assert regime.trading_difficulty == 'extreme'
        assert regime.recommended_strategy.startswith('HOLD')
        assert (regime.recommended_leverage.min, regime.recommended_leverage.max) == (10, 10)
        assert regime.recommended_stop_multiplier == 2.0
        assert regime.regime_probability == 60

    def test_bollinger_squeeze_is_quiet(self):
        regime = RegimeDetector().detect(snapshot(adx=15.0, bb_width=0.01), now=NOW)
        assert regime.trend_regime == 'ranging'
        assert regime.trend_strength == 35
        assert regime.trend_duration == 0
        assert regime.overall_regime == 'quiet'
        assert regime.recommended_strategy.startswith('Wait for breakout')

    def test_ranging_market(self):
        regime = RegimeDetector().detect(snapshot(adx=22.0), now=NOW)
        assert regime.overall_regime == 'ranging'
        assert regime.trading_difficulty == 'moderate'
        assert regime.regime_probability == 80
        assert (regime.recommended_leverage.min, regime.recommended_leverage.max) == (12, 15)
        assert regime.recommended_stop_multiplier == 0.8

    def test_weak_bear_without_stack(self):
        regime = RegimeDetector().detect(snapshot(plus_di=10.0, minus_di=30.0, current_price=99.0), now=NOW)
        assert regime.trend_regime == 'weak_bear'
        assert regime.trend_strength == 45
        assert regime.price_vs_ema20 == 'below'

    def test_thin_volume(self):
        regime = RegimeDetector().detect(snapshot(current_volume=300.0), now=NOW)
        assert regime.liquidity_regime == 'low'
        assert regime.volume_vs_average == pytest.approx(0.3)


class TestRegimeValidation:

    @pytest.mark.parametrize('overrides', [
        {'adx': 150.0},
        {'current_price': 0.0},
        {'ema20': float('nan')},
        {'atr_history': []},
        {'current_volume': -1.0},
    ])
    def test_invalid_snapshot_yields_default(self, overrides):
        detector = RegimeDetector()
        regime = detector.detect(snapshot(**overrides), now=NOW)
        assert regime.recommended_strategy == 'Insufficient data - use caution'
        assert regime.overall_regime == 'ranging'
        assert regime.symbol == 'cmt_btcusdt'
        assert len(detector.history) == 0


class TestRegimeTransitions:

    def test_new_regime_is_likely_to_change(self):
        regime = RegimeDetector().detect(snapshot(), now=NOW)
        assert regime.regime_probability == 70
        assert regime.transition_probability == 40
        assert regime.transition_warning is None

    def test_established_regime_settles(self):
        detector = RegimeDetector()
        for i in range(2):
            detector.detect(snapshot(), now=NOW + i)
        regime = detector.detect(snapshot(), now=NOW + 2)
        assert regime.transition_probability == 20

    def test_exhausted_regime(self):
        detector = RegimeDetector()
        for i in range(10):
            detector.detect(snapshot(), now=NOW + i)
        regime = detector.detect(snapshot(), now=NOW + 10)
        assert regime.transition_probability == 35

    def test_expanding_volatility_warning(self):
        history = [1.5] * 10 + [0.8] * 5 + [1.0] * 5
        regime = RegimeDetector().detect(snapshot(atr_history=history, atr14=1.2), now=NOW)
        assert regime.is_volatility_expanding
        assert regime.volatility_regime == 'normal'
        assert regime.transition_probability == 55
        assert regime.transition_warning.startswith('Regime transition likely (55%)')


class TestRegimeHistory:

    def test_bounded_entries(self):
        history = RegimeHistory(max_entries=3, max_symbols=5)
        for i in range(5):
            history.add('cmt_btcusdt', RegimeHistoryEntry(NOW + i, 'trending', 'strong_bull'))
        entries = history.entries('CMT_BTCUSDT')
        assert [e.timestamp for e in entries] == [NOW + 2, NOW + 3, NOW + 4]

    def test_evicts_stalest_symbol(self):
        history = RegimeHistory(max_entries=3, max_symbols=2)
        history.add('a', RegimeHistoryEntry(NOW, 'ranging', 'ranging'))
        history.add('b', RegimeHistoryEntry(NOW + 1, 'ranging', 'ranging'))
        history.add('c', RegimeHistoryEntry(NOW + 2, 'ranging', 'ranging'))
        assert len(history) == 2
        assert history.entries('a') == []

    def test_duration_counts_matching_tail(self):
        history = RegimeHistory()
        history.add('a', RegimeHistoryEntry(NOW, 'ranging', 'ranging'))
        history.add('a', RegimeHistoryEntry(NOW + 1, 'trending', 'weak_bull'))
        history.add('a', RegimeHistoryEntry(NOW + 2, 'trending', 'weak_bull'))
        assert history.duration('a', 'trending') == 3
        assert history.duration('a', 'ranging') == 1

    def test_detector_sweep(self):
        detector = RegimeDetector()
        detector.detect(snapshot(), now=NOW)
        detector.detect(snapshot(symbol='cmt_ethusdt'), now=NOW + 3600)
        removed = detector.sweep(now=NOW + 24 * 3600 + 1)
        assert removed == 1
        assert len(detector.history) == 1
        assert detector.history.entries('cmt_btcusdt') == []

    def test_injected_empty_history_is_used(self):
        history = RegimeHistory()
        detector = RegimeDetector(history=history)
        detector.detect(snapshot(), now=NOW)
        assert len(history) == 1


def test_format_regime():
    text = format_regime(RegimeDetector().detect(snapshot(), now=NOW))
    assert text.startswith('REGIME: TRENDING | Difficulty: easy')
    assert 'Leverage: 15-18x' in text
    assert 'WARNING' not in text
