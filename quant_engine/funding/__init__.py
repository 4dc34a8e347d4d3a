"""
Funding Rate Module
===================
"""
from .funding_tracker import (
    FundingTracker,
    FundingAnalysis,
    FundingSignal,
    FundingHistoryEntry,
)

__all__ = [
    'FundingTracker',
    'FundingAnalysis',
    'FundingSignal',
    'FundingHistoryEntry',
]
