"""
Candle ingestion, funding-rate parsing and mock data source tests.
"""

import time

import pytest

from quant_engine.data import (
    Candle,
    MockDataSource,
    base_asset,
    candles_to_frame,
    clean_candles,
    display_symbol,
    is_fresh,
    normalize_symbol,
    parse_funding_rate,
    to_arrays,
)
from quant_engine.exceptions import UpstreamDataError

from conftest import HOUR_MS


class TestCandleParsing:

    def test_from_mapping_and_row(self):
        from_map = Candle.from_raw({'timestamp': '1000', 'open': '1', 'high': '2',
                                    'low': '0.5', 'close': '1.5', 'volume': '10'})
        from_row = Candle.from_raw([1000, 1, 2, 0.5, 1.5, 10])
        assert from_map == from_row
        assert from_map.is_valid()

    def test_short_row_rejected(self):
        with pytest.raises(UpstreamDataError):
            Candle.from_raw([1000, 1, 2])

    def test_garbage_fields_become_invalid(self):
        candle = Candle.from_raw([1000, 'x', None, float('nan'), 1.0, 1.0])
        assert candle.open == 0.0
        assert not candle.is_valid()

    def test_clean_keeps_arrays_aligned(self):
        raw = [
            [1000, 1, 2, 0.5, 1.5, 10],
            [2000, 1, 2, 0.5, 1.5, 0],
            [3000, 2, 3, 1.5, 2.5, 20],
        ]
        cleaned = clean_candles(raw)
        arrays = to_arrays(cleaned)
        assert len(arrays) == 2
        assert arrays.timestamps.tolist() == [1000, 3000]
        assert arrays.volumes.tolist() == [10.0, 20.0]
        assert len(arrays.tail(1)) == 1

    def test_missing_payload(self):
        with pytest.raises(UpstreamDataError):
            clean_candles(None)

    def test_frame_is_time_indexed(self):
        candles = clean_candles([[2000, 1, 2, 0.5, 1.5, 10], [1000, 1, 2, 0.5, 1.2, 10]])
        frame = candles_to_frame(candles)
        assert list(frame.columns) == ['open', 'high', 'low', 'close', 'volume']
        assert frame['close'].tolist() == [1.2, 1.5]


class TestFreshness:

    def test_fresh_and_stale(self):
        now = 1_700_000_000.0
        candles = [Candle(int(now * 1000) - HOUR_MS, 1, 1, 1, 1, 1)]
        assert is_fresh(candles, 7200, now=now)
        assert not is_fresh(candles, 1800, now=now)

    def test_empty_is_stale(self):
        assert not is_fresh([], 7200)

    def test_invalid_timestamp_skips_check(self):
        assert is_fresh([Candle(0, 1, 1, 1, 1, 1)], 7200)


class TestFundingRateParsing:

    @pytest.mark.parametrize('raw, expected', [
        (0.0001, 0.0001),
        ('0.0001', 0.0001),
        ('0.01%', 0.0001),
        (0.5, 0.005),
        (-0.0002, -0.0002),
    ])
    def test_normalization(self, raw, expected):
        assert parse_funding_rate(raw, 'cmt_btcusdt') == pytest.approx(expected)

    @pytest.mark.parametrize('raw', ['abc', None, True, float('nan'), [0.1]])
    def test_invalid_formats(self, raw):
        with pytest.raises(UpstreamDataError):
            parse_funding_rate(raw, 'cmt_btcusdt')


class TestSymbols:

    def test_symbol_helpers(self):
        assert normalize_symbol(' CMT_BTCUSDT ') == 'cmt_btcusdt'
        assert normalize_symbol(None) == ''
        assert base_asset('cmt_ethusdt') == 'eth'
        assert display_symbol('cmt_solusdt') == 'SOL'
        assert display_symbol('BTC') == 'BTC'


class TestMockDataSource:

    @pytest.mark.asyncio
    async def test_candles_are_deterministic_and_fresh(self):
        first = await MockDataSource(seed=1).get_candles('cmt_btcusdt', '1h', 120)
        second = await MockDataSource(seed=1).get_candles('cmt_btcusdt', '1h', 120)
        assert len(first) == 120
        assert [c.close for c in first] == [c.close for c in second]
        assert all(c.is_valid() for c in first)
        assert all(c.low <= min(c.open, c.close) and c.high >= max(c.open, c.close) for c in first)
        assert is_fresh(first, 7200, now=time.time())

    @pytest.mark.asyncio
    async def test_injected_data_and_failures(self):
        injected = [Candle(1000, 1, 2, 0.5, 1.5, 10)] * 3
        source = MockDataSource(candles={'CMT_BTCUSDT': injected},
                                funding_rates={'cmt_btcusdt': '0.02%'},
                                failing_symbols=['cmt_badusdt'])
        assert await source.get_candles('cmt_btcusdt', '1h', 2) == injected[-2:]
        assert await source.get_funding_rate('cmt_btcusdt') == '0.02%'
        assert await source.get_funding_rate('cmt_ethusdt') == 0.0001
        with pytest.raises(UpstreamDataError):
            await source.get_candles('cmt_badusdt', '1h', 10)
        assert source.calls['get_candles'] == 2
        assert source.candle_calls[('cmt_btcusdt', '1h')] == 1
