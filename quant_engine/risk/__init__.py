"""
Risk Module
===========
"""
from .monte_carlo import (
    MonteCarloSimulator,
    MonteCarloResult,
    MonteCarloAnalysis,
    TradeValidation,
    SimulationParams,
    ProfitDistribution,
    format_result,
    format_analysis,
)

__all__ = [
    'MonteCarloSimulator',
    'MonteCarloResult',
    'MonteCarloAnalysis',
    'TradeValidation',
    'SimulationParams',
    'ProfitDistribution',
    'format_result',
    'format_analysis',
]
