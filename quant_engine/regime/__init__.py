"""
Regime Detection Module
=======================
"""
from .regime_detector import (
    RegimeDetector,
    RegimeHistory,
    RegimeHistoryEntry,
    RegimeInput,
    MarketRegime,
    LeverageRange,
    format_regime,
)

__all__ = [
    'RegimeDetector',
    'RegimeHistory',
    'RegimeHistoryEntry',
    'RegimeInput',
    'MarketRegime',
    'LeverageRange',
    'format_regime',
]
