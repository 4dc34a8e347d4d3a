"""
Feature Engineering Module
==========================
"""
from .feature_engine import (
    FeatureEngine,
    TechnicalIndicators,
    MACDResult,
    BollingerBands,
    DonchianChannel,
    DirectionalIndex,
    IntradayIndicators,
    LongTermIndicators,
    IndicatorSignals,
    IndicatorSet,
)

__all__ = [
    'FeatureEngine',
    'TechnicalIndicators',
    'MACDResult',
    'BollingerBands',
    'DonchianChannel',
    'DirectionalIndex',
    'IntradayIndicators',
    'LongTermIndicators',
    'IndicatorSignals',
    'IndicatorSet',
]
