"""
Funding Rate Tracker
====================
Seven-day rolling funding-rate history per symbol with percentile ranking,
extreme detection, a persistence filter and contrarian signals.

Crowded longs pay high positive funding; when that stays in the top 5% of
recent history for two or more periods, fading the crowd is the signal.
"""

import math
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from ..config import FundingConfig
from ..data.data_manager import normalize_symbol
from ..analysis.statistics import percentile_rank

logger = logging.getLogger(__name__)


@dataclass
class FundingHistoryEntry:
    timestamp: float
    rate: float
    is_extreme: bool = False
    extreme_side: Optional[str] = None  # 'high', 'low' or None


@dataclass
class FundingSignal:
    direction: str  # 'long', 'short', 'neutral'
    strength: float
    confidence: float
    reason: str
    carry_expected_pct: float = 0.0


@dataclass
class FundingAnalysis:
    """Funding-rate assessment for one symbol."""
    symbol: str
    current_rate: float
    percentile: float
    is_extreme: bool
    extreme_direction: str  # 'long_crowded', 'short_crowded', 'neutral'
    persistence_count: int
    is_persistent: bool
    signal: FundingSignal
    annualized_yield: float
    history: List[FundingHistoryEntry] = field(default_factory=list)


@dataclass
class _FundingStore:
    entries: List[FundingHistoryEntry]
    last_updated: float


NEUTRAL_SIGNAL_REASON = 'Funding rate within normal range'


class FundingTracker:
    """
    Bounded funding-rate history with percentile analysis.

    Thread-safe; the background sweeper prunes stale symbols while analysis
    cycles record new observations.
    """

    def __init__(self, config: FundingConfig = None, clock=time.time):
        self.config = config or FundingConfig()
        self._clock = clock
        self._stores: Dict[str, _FundingStore] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._stores)

    def record(self, symbol: str, rate: float, now: Optional[float] = None):
        """Add an observation; one per funding period (4h dedupe window)."""
        if rate is None or not math.isfinite(rate):
            return
        key = normalize_symbol(symbol)
        if not key:
            return

        cfg = self.config
        now = self._clock() if now is None else now

        with self._lock:
            store = self._stores.get(key)
            if store is None:
                if len(self._stores) >= cfg.max_symbols:
                    self._evict_oldest(key)
                store = _FundingStore(entries=[], last_updated=now)
                self._stores[key] = store

            recent = next((e for e in store.entries
                           if now - e.timestamp < cfg.dedupe_window_seconds), None)
            if recent is not None:
                if abs(recent.rate - rate) > 1e-5:
                    recent.rate = rate
                    # Preliminary flag until the next full recalculation
                    recent.is_extreme = abs(rate) > cfg.preliminary_extreme_rate
                    recent.extreme_side = ('high' if rate > 0 else 'low') if recent.is_extreme else None
                store.last_updated = now
                return

            store.entries.append(FundingHistoryEntry(timestamp=now, rate=rate))
            store.last_updated = now

            store.entries = [e for e in store.entries if now - e.timestamp < cfg.max_age_seconds]
            if len(store.entries) > cfg.max_entries:
                store.entries.sort(key=lambda e: e.timestamp, reverse=True)
                store.entries = store.entries[:cfg.max_entries]

            self._recalculate_extremes(store)

    def _evict_oldest(self, incoming: str):
        oldest = min(self._stores, key=lambda s: self._stores[s].last_updated)
        del self._stores[oldest]
        logger.debug(f"Funding history: evicted {oldest} to make room for {incoming}")

    def _recalculate_extremes(self, store: _FundingStore):
        """Flag entries in the top or bottom 5% of the stored distribution."""
        rates = sorted(e.rate for e in store.entries if math.isfinite(e.rate))
        n = len(rates)
        if n < 3:
            return

        tail = (100 - self.config.extreme_percentile) / 100
        low_threshold = rates[max(0, math.floor(n * tail))]
        high_threshold = rates[min(n - 1, math.floor(n * (1 - tail)))]

        # Identical thresholds on tiny samples: only the literal min/max count
        use_min_max = low_threshold == high_threshold
        for entry in store.entries:
            if use_min_max:
                high = entry.rate == rates[-1]
                low = entry.rate == rates[0]
            else:
                high = entry.rate >= high_threshold
                low = entry.rate <= low_threshold
            entry.is_extreme = high or low
            entry.extreme_side = 'high' if high else 'low' if low else None

    def history(self, symbol: str) -> List[FundingHistoryEntry]:
        """Stored entries, newest first."""
        with self._lock:
            store = self._stores.get(normalize_symbol(symbol))
            if store is None:
                return []
            return sorted(store.entries, key=lambda e: e.timestamp, reverse=True)

    def percentile(self, symbol: str, rate: float) -> float:
        """Percentile of rate within stored history (50 with fewer than 3 samples)."""
        if rate is None or not math.isfinite(rate):
            return 50.0
        rates = [e.rate for e in self.history(symbol) if math.isfinite(e.rate)]
        if len(rates) < 3:
            return 50.0
        return percentile_rank(rate, rates)

    def persistence(self, symbol: str, extreme_direction: str) -> int:
        """
        Consecutive newest-first entries whose own percentile within the
        stored history is extreme on the crowded side.

        Entries are re-ranked with the same rule analyze() applies to the
        current rate; the stored is_extreme flags are for display only.
        """
        if extreme_direction == 'neutral':
            return 0
        history = self.history(symbol)
        rates = [e.rate for e in history if math.isfinite(e.rate)]
        if len(rates) < 3:
            return 0

        high_cutoff = self.config.extreme_percentile
        low_cutoff = 100 - high_cutoff
        count = 0
        for entry in history:
            pct = percentile_rank(entry.rate, rates)
            extreme = pct >= high_cutoff if extreme_direction == 'long_crowded' else pct <= low_cutoff
            if not extreme:
                break
            count += 1
        return count

    def analyze(self, symbol: str, rate: float, now: Optional[float] = None) -> FundingAnalysis:
        """Record the observation and assess crowding."""
        cfg = self.config
        self.record(symbol, rate, now)

        pct = self.percentile(symbol, rate)
        low_cutoff = 100 - cfg.extreme_percentile
        if pct >= cfg.extreme_percentile:
            direction = 'long_crowded'
        elif pct <= low_cutoff:
            direction = 'short_crowded'
        else:
            direction = 'neutral'
        is_extreme = direction != 'neutral'

        persistence = self.persistence(symbol, direction) if is_extreme else 0
        is_persistent = is_extreme and persistence >= cfg.min_persistence

        annualized = rate * 3 * 365 * 100
        return FundingAnalysis(
            symbol=symbol,
            current_rate=rate,
            percentile=pct,
            is_extreme=is_extreme,
            extreme_direction=direction,
            persistence_count=persistence,
            is_persistent=is_persistent,
            signal=self.generate_signal(rate, pct, is_persistent, direction),
            annualized_yield=annualized if math.isfinite(annualized) else 0.0,
            history=self.history(symbol)[:10],
        )

    @staticmethod
    def generate_signal(rate: float, percentile: float, is_persistent: bool,
                        extreme_direction: str) -> FundingSignal:
        """Contrarian signal: fade the crowded side, stronger when persistent."""
        if extreme_direction == 'neutral':
            return FundingSignal(direction='neutral', strength=0, confidence=50,
                                 reason=NEUTRAL_SIGNAL_REASON, carry_expected_pct=0.0)

        safe_rate = rate if math.isfinite(rate) else 0.0
        carry = min(0.3, max(0.05, abs(safe_rate) * 100))
        direction = 'short' if extreme_direction == 'long_crowded' else 'long'

        if not is_persistent:
            return FundingSignal(
                direction=direction,
                strength=30,
                confidence=55,
                reason=(f"Funding {extreme_direction} ({percentile:.0f}th percentile) "
                        f"but not persistent - wait for confirmation"),
                carry_expected_pct=carry,
            )

        return FundingSignal(
            direction=direction,
            strength=min(70.0, 40 + abs(percentile - 50) / 2),
            confidence=70,
            reason=(f"Funding {extreme_direction} ({percentile:.0f}th percentile) for 2+ periods - "
                    f"contrarian {direction.upper()} signal"),
            carry_expected_pct=carry,
        )

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop entries past the max age and symbols left empty."""
        now = self._clock() if now is None else now
        removed = 0
        with self._lock:
            for key in list(self._stores):
                store = self._stores[key]
                fresh = [e for e in store.entries if now - e.timestamp < self.config.max_age_seconds]
                removed += len(store.entries) - len(fresh)
                if fresh:
                    store.entries = fresh
                else:
                    del self._stores[key]
        if removed:
            logger.debug(f"Funding history cleanup: removed {removed} entries")
        return removed

    def clear(self):
        with self._lock:
            self._stores.clear()
        logger.info("Funding rate history cleared")
