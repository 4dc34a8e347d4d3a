"""Shared candle builders and engine fixtures."""

import time
from typing import List, Optional, Sequence

import numpy as np
import pytest

from quant_engine.config import EngineConfig
from quant_engine.data import Candle, MockDataSource
from quant_engine.orchestrator import QuantEngine

HOUR_MS = 60 * 60 * 1000


def make_candles(closes: Sequence[float], volumes: Optional[Sequence[float]] = None,
                 end_ms: Optional[int] = None, step_ms: int = HOUR_MS, wick: float = 0.002) -> List[Candle]:
    """Candles whose open is the previous close, ending at end_ms (default now)."""
    end_ms = end_ms if end_ms is not None else int(time.time() * 1000)
    n = len(closes)
    candles = []
    prev = closes[0]
    for i, close in enumerate(closes):
        high = max(prev, close) * (1 + wick)
        low = min(prev, close) * (1 - wick)
        volume = volumes[i] if volumes is not None else 1000.0
        candles.append(Candle(end_ms - (n - 1 - i) * step_ms, prev, high, low, close, volume))
        prev = close
    return candles


def random_walk(n: int = 200, seed: int = 3, start: float = 100.0, sigma: float = 0.01) -> List[float]:
    rng = np.random.default_rng(seed)
    return (start * np.cumprod(1 + rng.normal(0, sigma, n))).tolist()


@pytest.fixture
def mock_source():
    return MockDataSource(seed=7)


@pytest.fixture
def engine_config():
    return EngineConfig(enable_background_sweeps=False)


@pytest.fixture
def engine(mock_source, engine_config):
    quant_engine = QuantEngine(mock_source, engine_config)
    yield quant_engine
    quant_engine.shutdown()
